"""Shared fixtures for Mastery Server tests."""

import pytest

from engine.store import ActorRepository, MemoryStateStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def repo() -> ActorRepository:
    """An actor repository over an empty in-memory store."""
    return ActorRepository(MemoryStateStore())
