"""Shared API dependencies.

The repository and the broadcaster are built once in the application
lifespan and kept on ``app.state``. Routes receive them through these
dependencies, which tests replace with ``app.dependency_overrides``.
"""

from __future__ import annotations

import fastapi
from starlette import requests

from layer_store.db import database
from layer_store.services import broadcast, layers


def get_repository(
    connection: requests.HTTPConnection,
) -> database.LayerRepositoryProtocol:
    """Resolve the layer repository owned by the running application."""
    return connection.app.state.layer_repository


def get_broadcaster(
    connection: requests.HTTPConnection,
) -> broadcast.ConnectionManager:
    """Resolve the WebSocket broadcaster owned by the running application."""
    return connection.app.state.broadcaster


def get_layer_service(
    repo: database.LayerRepositoryProtocol = fastapi.Depends(get_repository),  # noqa: B008
    broadcaster: broadcast.ConnectionManager = fastapi.Depends(get_broadcaster),  # noqa: B008
) -> layers.LayerService:
    """Build the per-request layer service over the shared collaborators."""
    return layers.LayerService(repo, broadcaster)
