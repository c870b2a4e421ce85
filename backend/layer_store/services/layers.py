"""User layer service: create, list, update and delete drawn features.

A submitted geometry or FeatureCollection becomes one row per feature,
all sharing a fresh ``parent_layer_id``. Reads reassemble those rows into
layer views. Updates touch exactly one feature; deletes touch one feature
or every feature of a layer. Each mutation writes history through the
repository and publishes change events once the datastore work is done.

Validation happens here, before the repository is called, so a rejected
request never reaches the database.

Example:
    >>> service = LayerService(database.InMemoryLayerRepository(),
    ...                        broadcast.ConnectionManager())
    >>> layer = asyncio.run(service.create_layer(
    ...     security.Identity(user_id=1),
    ...     project_number="P-1",
    ...     layer_name="wells",
    ...     layer_type="utilities",
    ...     geometry={"type": "Point", "coordinates": [1, 2]},
    ... ))
    >>> layer["ids"]
    [1]
"""

from __future__ import annotations

import dataclasses
import uuid
from typing import TYPE_CHECKING, Any

from fastapi import concurrency
from loguru import logger

from layer_store.core import errors
from layer_store.db import database
from layer_store.db import models as db_models
from layer_store.services import geometry as geo

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from layer_store.core import security
    from layer_store.services import broadcast

# Fields that may be explicitly cleared with null on update.
NULLABLE_FIELDS: frozenset[str] = frozenset({"layer_type_group"})


def feature_view(feature: db_models.Feature) -> dict[str, Any]:
    """Return the client representation of a single feature row."""
    return dataclasses.asdict(feature)


def assemble_layers(features: Iterable[db_models.Feature]) -> list[dict[str, Any]]:
    """Group feature rows into layer views, keeping first-seen order.

    Layer-level attributes come from the first row of each group; each
    row contributes one Feature to the FeatureCollection and its id to
    ``ids``, in the order given.
    """
    layers: dict[str, dict[str, Any]] = {}
    for feature in features:
        key = database.group_key(feature)
        layer = layers.get(key)
        if layer is None:
            layer = {
                "parent_layer_id": key,
                "layer_name": feature.layer_name,
                "layer_type": feature.layer_type,
                "project_number": feature.project_number,
                "user_id": feature.user_id,
                "is_visible": feature.is_visible,
                "z_index": feature.z_index,
                "layer_type_group": feature.layer_type_group,
                "crs": feature.crs,
                "shared_with": feature.shared_with,
                "geometry": {"type": "FeatureCollection", "features": []},
                "ids": [],
            }
            layers[key] = layer
        layer["geometry"]["features"].append(
            {
                "type": "Feature",
                "geometry": feature.geometry,
                "properties": feature.properties,
            }
        )
        layer["ids"].append(feature.id)
    return list(layers.values())


def _require(**fields: Any) -> None:
    for value in fields.values():
        if value is None or (isinstance(value, str) and not value.strip()):
            raise errors.InvalidInput("Missing required fields")


def _validate_layer_type(layer_type: Any) -> None:
    if layer_type not in db_models.LAYER_TYPES:
        raise errors.InvalidLayerType()


class LayerService:
    """Layer Store operations over a repository and a broadcaster.

    Repository calls are blocking and run in the threadpool so the event
    loop is never held by a database round trip.
    """

    def __init__(
        self,
        repo: database.LayerRepositoryProtocol,
        broadcaster: broadcast.BroadcasterProtocol,
    ) -> None:
        self.repo = repo
        self.broadcaster = broadcaster

    async def _publish(self, event: broadcast.LayerEvent, payload: Any) -> None:
        try:
            await self.broadcaster.publish(event, payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Broadcast of {} failed: {}", event, exc)

    @staticmethod
    def build_drafts(
        identity: security.Identity,
        *,
        parent_layer_id: str,
        project_number: str,
        layer_name: str,
        layer_type: str,
        geometry: Mapping[str, Any],
        properties: Mapping[str, Any] | None,
        is_visible: bool,
        z_index: int,
        layer_type_group: str | None,
        crs: str,
        shared_with: Mapping[str, Any],
    ) -> list[db_models.FeatureDraft]:
        """Decompose a submission into one draft per usable feature.

        Members of a FeatureCollection that do not wrap an accepted
        geometry, or whose ``properties`` is not an object, are skipped.
        A member's own properties, even an empty object, take precedence
        over the request-level ``properties``.
        """
        if geo.is_feature_collection(geometry):
            members = list(geometry["features"])
        else:
            members = [
                {
                    "type": "Feature",
                    "geometry": dict(geometry),
                    "properties": dict(properties or {}),
                }
            ]

        drafts: list[db_models.FeatureDraft] = []
        for index, member in enumerate(members):
            member_properties = (
                member.get("properties") if isinstance(member, dict) else None
            )
            if not geo.is_valid_feature(member) or not (
                member_properties is None or isinstance(member_properties, dict)
            ):
                logger.warning(
                    "Skipping invalid feature {} of layer {!r}", index, layer_name
                )
                continue
            if member_properties is None:
                member_properties = properties or {}
            drafts.append(
                db_models.FeatureDraft(
                    parent_layer_id=parent_layer_id,
                    project_number=project_number,
                    user_id=identity.user_id,
                    layer_name=layer_name,
                    layer_type=layer_type,
                    geometry=dict(member["geometry"]),
                    properties=dict(member_properties),
                    is_visible=is_visible,
                    z_index=z_index,
                    layer_type_group=layer_type_group,
                    crs=crs,
                    shared_with=dict(shared_with),
                )
            )
        return drafts

    async def create_layer(
        self,
        identity: security.Identity,
        *,
        project_number: str | None,
        layer_name: str | None,
        layer_type: str | None,
        geometry: Mapping[str, Any] | None,
        properties: Mapping[str, Any] | None = None,
        is_visible: bool = True,
        z_index: int = 0,
        layer_type_group: str | None = None,
        crs: str = db_models.DEFAULT_CRS,
        shared_with: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create a layer from a geometry or a FeatureCollection.

        Returns:
            The layer view: layer attributes, a FeatureCollection of the
            stored features and their ``ids``.

        Raises:
            InvalidInput: A required field is missing.
            InvalidLayerType: ``layer_type`` is not a known type.
            InvalidGeometry: ``geometry`` is neither an accepted geometry
                nor a FeatureCollection.
            NoValidFeatures: No member of the collection was usable.
            DuplicateLayerName: Another layer of this user and project
                already has ``layer_name``.
        """
        _require(
            project_number=project_number,
            layer_name=layer_name,
            layer_type=layer_type,
            geometry=geometry or None,
        )
        _validate_layer_type(layer_type)
        if not geo.is_layer_submission(geometry):
            raise errors.InvalidGeometry()
        if not geo.is_valid_geojson(geometry):
            logger.warning(
                "Layer {!r} contains invalid features; they will be skipped",
                layer_name,
            )

        logger.info(
            "Create layer request: project={} user={} name={!r} type={} geometry={}",
            project_number,
            identity.user_id,
            layer_name,
            layer_type,
            geometry.get("type"),
        )

        parent_layer_id = str(uuid.uuid4())
        drafts = self.build_drafts(
            identity,
            parent_layer_id=parent_layer_id,
            project_number=project_number,
            layer_name=layer_name,
            layer_type=layer_type,
            geometry=geometry,
            properties=properties,
            is_visible=is_visible,
            z_index=z_index,
            layer_type_group=layer_type_group,
            crs=crs,
            shared_with=shared_with or {},
        )
        if not drafts:
            raise errors.NoValidFeatures()

        features = await concurrency.run_in_threadpool(
            self.repo.create_features, drafts, identity.user_id
        )
        logger.info(
            "Created layer {} with {} feature(s)", parent_layer_id, len(features)
        )

        for feature in features:
            await self._publish("layerCreated", feature_view(feature))

        return assemble_layers(features)[0]

    async def list_layers(
        self,
        identity: security.Identity,
        project_number: str | None,
    ) -> list[dict[str, Any]]:
        """Return the caller's layers in a project, one view per layer.

        Raises:
            InvalidInput: ``project_number`` is missing.
        """
        if not project_number:
            raise errors.InvalidInput("Missing project_number parameter")

        features = await concurrency.run_in_threadpool(
            self.repo.list_features, project_number, identity.user_id
        )
        logger.info(
            "Fetched {} feature(s) for project={} user={}",
            len(features),
            project_number,
            identity.user_id,
        )
        return assemble_layers(features)

    def _validate_changes(self, changes: Mapping[str, Any]) -> dict[str, Any]:
        validated: dict[str, Any] = {}
        for field, value in changes.items():
            if field not in db_models.MUTABLE_FIELDS:
                raise errors.InvalidInput(f"Unknown field: {field}")
            if value is None and field not in NULLABLE_FIELDS:
                raise errors.InvalidInput(f"{field} cannot be null")
            validated[field] = value

        if "layer_name" in validated and not str(validated["layer_name"]).strip():
            raise errors.InvalidInput("layer_name cannot be empty")
        if "layer_type" in validated:
            _validate_layer_type(validated["layer_type"])
        if "geometry" in validated:
            geometry = geo.unwrap_feature(validated["geometry"])
            if not geo.is_valid_geometry(geometry):
                raise errors.InvalidGeometry()
            validated["geometry"] = dict(geometry)
        return validated

    async def update_feature(
        self,
        identity: security.Identity,
        project_number: str | None,
        feature_id: int,
        changes: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Apply a partial update to one feature owned by the caller.

        Only keys present in ``changes`` are written; ``updated_at`` is
        refreshed even when ``changes`` is empty.

        Raises:
            InvalidInput: ``project_number`` missing or a field invalid.
            NotFoundOrUnauthorized: No such feature for this user and
                project.
            DuplicateLayerName: The new name belongs to another layer.
        """
        if not project_number:
            raise errors.InvalidInput("Missing project_number")
        validated = self._validate_changes(changes)

        logger.info(
            "Update feature request: id={} project={} user={} fields={}",
            feature_id,
            project_number,
            identity.user_id,
            sorted(validated),
        )
        feature = await concurrency.run_in_threadpool(
            self.repo.update_feature,
            feature_id,
            project_number,
            identity.user_id,
            validated,
            identity.user_id,
        )
        if feature is None:
            raise errors.NotFoundOrUnauthorized()

        view = feature_view(feature)
        await self._publish("layerUpdated", view)
        return view

    async def delete_features(
        self,
        identity: security.Identity,
        project_number: str | None,
        feature_id: int | None = None,
        parent_layer_id: str | None = None,
    ) -> list[int]:
        """Delete one feature, or every feature of one layer.

        Exactly one of ``feature_id`` and ``parent_layer_id`` selects the
        scope. The matched rows are removed together or not at all.

        Returns:
            Ids of the deleted features.

        Raises:
            InvalidInput: ``project_number`` missing or scope ambiguous.
            NotFoundOrUnauthorized: Nothing owned by the caller matched.
        """
        if not project_number:
            raise errors.InvalidInput("Missing project_number")
        if (feature_id is None) == (parent_layer_id is None):
            raise errors.InvalidInput(
                "Exactly one of feature id or parent_layer_id is required"
            )

        logger.info(
            "Delete request: id={} parent_layer_id={} project={} user={}",
            feature_id,
            parent_layer_id,
            project_number,
            identity.user_id,
        )
        deleted_ids = await concurrency.run_in_threadpool(
            self.repo.delete_features,
            project_number,
            identity.user_id,
            identity.user_id,
            feature_id,
            parent_layer_id,
        )
        if not deleted_ids:
            if parent_layer_id is not None:
                raise errors.NotFoundOrUnauthorized("Layer not found or unauthorized")
            raise errors.NotFoundOrUnauthorized()

        logger.info("Deleted feature(s): {}", deleted_ids)
        for deleted_id in deleted_ids:
            await self._publish(
                "layerDeleted",
                {
                    "id": deleted_id,
                    "project_number": project_number,
                    "user_id": identity.user_id,
                },
            )
        return deleted_ids
