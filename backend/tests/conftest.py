"""Shared fixtures for the layer store test suite.

Every API test runs against ``InMemoryLayerRepository`` and a recording
broadcaster injected through ``app.dependency_overrides``; no database or
WebSocket client is required. Bearer tokens are signed with the secret
from the cached settings so the real identity dependency is exercised.
"""

from __future__ import annotations

import datetime
from typing import TYPE_CHECKING, Any

import pytest
from fastapi import testclient
from jose import jwt

from layer_store import main
from layer_store.api import deps
from layer_store.core import config
from layer_store.db import database

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


class RecordingBroadcaster:
    """Broadcaster that keeps every published event in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    async def publish(self, event: str, payload: Any) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [event for event, _ in self.events]


def make_token(user_id: object = 7, expires_in: int = 3600, **claims: Any) -> str:
    """Sign a token the way the identity provider does."""
    settings = config.get_settings()
    payload: dict[str, Any] = {
        "user_id": user_id,
        "exp": datetime.datetime.now(tz=datetime.UTC)
        + datetime.timedelta(seconds=expires_in),
        **claims,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


@pytest.fixture
def repo() -> database.InMemoryLayerRepository:
    return database.InMemoryLayerRepository()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def auth_headers() -> Callable[..., dict[str, str]]:
    def _headers(user_id: object = 7, **claims: Any) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, **claims)}"}

    return _headers


@pytest.fixture
def client(
    repo: database.InMemoryLayerRepository,
    broadcaster: RecordingBroadcaster,
) -> Iterator[testclient.TestClient]:
    app = main.create_app()
    app.dependency_overrides[deps.get_repository] = lambda: repo
    app.dependency_overrides[deps.get_broadcaster] = lambda: broadcaster
    try:
        yield testclient.TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def token() -> Callable[..., str]:
    return make_token
