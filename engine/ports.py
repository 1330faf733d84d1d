"""Choice and broadcast ports used by the resolution core."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class ChoicePort(Protocol):
    """Asks the controlling participant to make a choice.

    Returns the participant's answer, or None if they declined or cancelled.
    """

    async def prompt_choice(self, kind: str, context: dict[str, Any]) -> dict[str, Any] | None: ...


class Broadcaster(Protocol):
    """Fan-out of core events to interested participants."""

    async def notify(self, event_type: str, payload: dict[str, Any]) -> None: ...


class EventRecorder:
    """Broadcaster that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [payload for kind, payload in self.events if kind == event_type]


class ScriptedChoices:
    """Choice port answering from queued responses.

    Responses queued for a specific actor are used before those queued for
    the kind as a whole. A prompt with nothing queued declines (returns None).
    """

    def __init__(self, responses: dict[str, list[dict[str, Any] | None]] | None = None):
        self.responses = {kind: list(items) for kind, items in (responses or {}).items()}
        self.prompts: list[tuple[str, dict[str, Any]]] = []

    def queue(self, kind: str, response: dict[str, Any] | None, actor_id: str | None = None) -> None:
        key = f"{kind}:{actor_id}" if actor_id else kind
        self.responses.setdefault(key, []).append(response)

    async def prompt_choice(self, kind: str, context: dict[str, Any]) -> dict[str, Any] | None:
        self.prompts.append((kind, context))
        for key in (f"{kind}:{context.get('actor_id')}", kind):
            queued = self.responses.get(key)
            if queued:
                return queued.pop(0)
        return None


class PendingChoices:
    """Choice port whose prompts are answered later, e.g. through the API.

    Each prompt waits without a timeout until ``answer`` or ``cancel`` is
    called for its choice ID.
    """

    def __init__(self, broadcaster: Broadcaster | None = None):
        self.broadcaster = broadcaster
        self._pending: dict[str, tuple[str, dict[str, Any], asyncio.Future]] = {}

    async def prompt_choice(self, kind: str, context: dict[str, Any]) -> dict[str, Any] | None:
        choice_id = uuid.uuid4().hex[:12]
        future = asyncio.get_running_loop().create_future()
        self._pending[choice_id] = (kind, context, future)
        logger.info("Waiting on %s choice %s", kind, choice_id)
        try:
            if self.broadcaster is not None:
                await self.broadcaster.notify(
                    "choice_requested",
                    {"choice_id": choice_id, "kind": kind, **context},
                )
            return await future
        finally:
            self._pending.pop(choice_id, None)

    def answer(self, choice_id: str, result: dict[str, Any] | None) -> bool:
        """Resolve a pending choice. Returns False if it is not pending."""
        entry = self._pending.get(choice_id)
        if entry is None or entry[2].done():
            return False
        entry[2].set_result(result)
        return True

    def cancel(self, choice_id: str) -> bool:
        return self.answer(choice_id, None)

    def pending(self, actor_id: str | None = None) -> list[dict[str, Any]]:
        """List open prompts, optionally only those for one actor."""
        return [
            {"choice_id": choice_id, "kind": kind, **context}
            for choice_id, (kind, context, _) in self._pending.items()
            if actor_id is None or context.get("actor_id") == actor_id
        ]
