"""User-drawn layer CRUD API endpoints.

This module provides REST API endpoints for creating, listing, updating
and deleting layers drawn by users on a project map. A layer is created
from a single geometry or a GeoJSON FeatureCollection and stored as one
row per feature; listing reassembles those rows into one object per
layer. Updates and single deletes address individual features by id.

Every response is wrapped in a ``{"data": ..., "error": ...}`` envelope.
Requests must carry a bearer token; the caller only ever sees and
changes their own rows.

Example:
    Create a layer from a FeatureCollection:
        >>> response = client.post(
        ...     "/api/user-layers",
        ...     headers={"Authorization": f"Bearer {token}"},
        ...     json={
        ...         "project_number": "P-100",
        ...         "layer_name": "plume-2024",
        ...         "layer_type": "iso-concentration",
        ...         "geometry": {
        ...             "type": "FeatureCollection",
        ...             "features": [
        ...                 {"type": "Feature",
        ...                  "geometry": {"type": "Point",
        ...                               "coordinates": [1, 2]}},
        ...             ],
        ...         },
        ...     },
        ... )
        >>> response.json()["data"]["ids"]
        >>> # Returns: [42]

    Delete the whole layer:
        >>> client.delete(
        ...     "/api/user-layers/42",
        ...     params={"project_number": "P-100",
        ...             "parent_layer_id": layer["parent_layer_id"]},
        ...     headers={"Authorization": f"Bearer {token}"},
        ... )
"""

from __future__ import annotations

from typing import Any, TypedDict

import fastapi
import pydantic

from layer_store.api import deps
from layer_store.core import security
from layer_store.db import models as db_models
from layer_store.services import layers

router = fastapi.APIRouter(prefix="/api/user-layers", tags=["user-layers"])


class Envelope(TypedDict):
    data: Any
    error: str | None


class CreateLayerRequest(pydantic.BaseModel):
    """Body of ``POST /api/user-layers``.

    Required fields are optional here so that a missing field is reported
    by the service as ``Missing required fields`` rather than as a schema
    error.
    """

    model_config = pydantic.ConfigDict(coerce_numbers_to_str=True)

    project_number: str | None = None
    layer_name: str | None = None
    layer_type: str | None = None
    geometry: dict[str, Any] | None = None
    properties: dict[str, Any] | None = None
    is_visible: bool = True
    z_index: int = 0
    layer_type_group: str | None = None
    crs: str = db_models.DEFAULT_CRS
    shared_with: dict[str, Any] = pydantic.Field(default_factory=dict)


class UpdateFeatureRequest(pydantic.BaseModel):
    """Body of ``PUT /api/user-layers/{id}``; every field is optional."""

    model_config = pydantic.ConfigDict(coerce_numbers_to_str=True)

    project_number: str | None = None
    layer_name: str | None = None
    layer_type: str | None = None
    geometry: dict[str, Any] | None = None
    properties: dict[str, Any] | None = None
    is_visible: bool | None = None
    z_index: int | None = None
    layer_type_group: str | None = None
    crs: str | None = None
    shared_with: dict[str, Any] | None = None

    def changes(self) -> dict[str, Any]:
        """Return only the fields the client actually sent."""
        sent = self.model_dump(exclude_unset=True)
        sent.pop("project_number", None)
        return sent


@router.post("")
async def create_layer(
    body: CreateLayerRequest,
    identity: security.Identity = fastapi.Depends(security.get_current_identity),  # noqa: B008
    service: layers.LayerService = fastapi.Depends(deps.get_layer_service),  # noqa: B008
) -> Envelope:
    """Create a layer, storing each feature of the submission as a row.

    Invalid members of a FeatureCollection are skipped; the layer is
    created from the remaining ones.

    Args:
        body: Layer attributes and geometry.
        identity: Caller identity (injected via FastAPI Depends).
        service: Layer service (injected via FastAPI Depends).

    Returns:
        Envelope whose ``data`` is the layer view with a FeatureCollection
        of the stored features and their ``ids``.

    Raises:
        InvalidInput: 400 for a missing field, unknown layer_type,
            malformed geometry or no usable feature.
        DuplicateLayerName: 409 when the name is already used by another
            layer of this user in this project.
    """
    layer = await service.create_layer(
        identity,
        project_number=body.project_number,
        layer_name=body.layer_name,
        layer_type=body.layer_type,
        geometry=body.geometry,
        properties=body.properties,
        is_visible=body.is_visible,
        z_index=body.z_index,
        layer_type_group=body.layer_type_group,
        crs=body.crs,
        shared_with=body.shared_with,
    )
    return Envelope(data=layer, error=None)


@router.get("")
async def list_layers(
    project_number: str | None = None,
    identity: security.Identity = fastapi.Depends(security.get_current_identity),  # noqa: B008
    service: layers.LayerService = fastapi.Depends(deps.get_layer_service),  # noqa: B008
) -> Envelope:
    """List the caller's layers in a project.

    Rows are grouped by ``parent_layer_id`` and ordered by it; features
    inside a layer keep their creation order.

    Args:
        project_number: Project to list (query parameter, required).
        identity: Caller identity (injected via FastAPI Depends).
        service: Layer service (injected via FastAPI Depends).

    Returns:
        Envelope whose ``data`` is a list of layer views.
    """
    return Envelope(
        data=await service.list_layers(identity, project_number),
        error=None,
    )


@router.put("/{feature_id}")
async def update_feature(
    feature_id: int,
    body: UpdateFeatureRequest,
    identity: security.Identity = fastapi.Depends(security.get_current_identity),  # noqa: B008
    service: layers.LayerService = fastapi.Depends(deps.get_layer_service),  # noqa: B008
) -> Envelope:
    """Update one feature; fields absent from the body are left as they are.

    Args:
        feature_id: Id of the feature to change.
        body: ``project_number`` plus any subset of the mutable fields.
        identity: Caller identity (injected via FastAPI Depends).
        service: Layer service (injected via FastAPI Depends).

    Returns:
        Envelope whose ``data`` is the updated feature row.

    Raises:
        NotFoundOrUnauthorized: 404 when the caller owns no such feature.
        DuplicateLayerName: 409 when the new name is used by another layer.
    """
    feature = await service.update_feature(
        identity,
        body.project_number,
        feature_id,
        body.changes(),
    )
    return Envelope(data=feature, error=None)


@router.delete("/{feature_id}")
async def delete_feature(
    feature_id: int,
    project_number: str | None = None,
    parent_layer_id: str | None = None,
    identity: security.Identity = fastapi.Depends(security.get_current_identity),  # noqa: B008
    service: layers.LayerService = fastapi.Depends(deps.get_layer_service),  # noqa: B008
) -> Envelope:
    """Delete one feature, or the whole layer when ``parent_layer_id`` is set.

    Args:
        feature_id: Id of the feature to delete. Ignored when
            ``parent_layer_id`` is given.
        project_number: Project the rows belong to (required).
        parent_layer_id: Delete every feature of this layer instead.
        identity: Caller identity (injected via FastAPI Depends).
        service: Layer service (injected via FastAPI Depends).

    Returns:
        Envelope whose ``data`` is ``{"ids": [...]}``.
    """
    if parent_layer_id:
        deleted = await service.delete_features(
            identity, project_number, parent_layer_id=parent_layer_id
        )
    else:
        deleted = await service.delete_features(
            identity, project_number, feature_id=feature_id
        )
    return Envelope(data={"ids": deleted}, error=None)
