"""WebSocket endpoint and broadcaster for real-time encounter events."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from auth import is_facilitator_secret

logger = logging.getLogger(__name__)

router = APIRouter()


class WebSocketBroadcaster:
    """Broadcaster that fans events out to connected WebSocket clients.

    Facilitator connections receive every event. Participant connections
    receive public events plus choice prompts addressed to their controller.
    """

    def __init__(self) -> None:
        # (controller_id, is_facilitator, websocket)
        self.connections: list[tuple[str | None, bool, WebSocket]] = []

    def connect(self, websocket: WebSocket, controller_id: str | None, is_facilitator: bool) -> None:
        self.connections.append((controller_id, is_facilitator, websocket))

    def disconnect(self, websocket: WebSocket) -> None:
        for i, (_, _, ws) in enumerate(self.connections):
            if ws == websocket:
                self.connections.pop(i)
                break

    async def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        """Send an event to every client allowed to see it."""
        message = {"type": event_type, **payload}
        addressed_to = payload.get("controller_id") if event_type == "choice_requested" else None
        disconnected = []
        for i, (controller_id, is_facilitator, ws) in enumerate(self.connections):
            if addressed_to is not None and not is_facilitator and controller_id != addressed_to:
                continue
            try:
                await ws.send_json(message)
            except Exception:
                logger.info("Dropping WebSocket client %s", controller_id)
                disconnected.append(i)
        for i in reversed(disconnected):
            self.connections.pop(i)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    controller_id: str | None = Query(None),
    secret: str | None = Query(None),
) -> None:
    """Stream encounter events.

    Participants connect with ``controller_id``; the facilitator connects
    with ``secret``.
    """
    is_facilitator = is_facilitator_secret(secret)
    if secret is not None and not is_facilitator:
        await websocket.close(code=4003, reason="Invalid facilitator secret")
        return
    if not is_facilitator and not controller_id:
        await websocket.close(code=4001, reason="Missing controller_id")
        return

    broadcaster: WebSocketBroadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    broadcaster.connect(websocket, controller_id, is_facilitator)

    try:
        await websocket.send_json({
            "type": "connected",
            "controller_id": controller_id,
            "facilitator": is_facilitator,
        })

        # Keep the connection open; client messages are ignored
        while True:
            try:
                await websocket.receive_text()
            except WebSocketDisconnect:
                break
    finally:
        broadcaster.disconnect(websocket)
