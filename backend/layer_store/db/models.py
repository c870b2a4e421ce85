"""Data models for user-drawn layer features and their history.

A user layer is not stored as a row of its own: it is the set of
``Feature`` rows sharing one ``parent_layer_id``. Every mutation of a
feature is preceded by a ``HistoryEntry`` that snapshots the row.

Example:
    Creating a draft for a point feature:
        >>> from layer_store.db.models import FeatureDraft
        >>> draft = FeatureDraft(
        ...     parent_layer_id="5f0c...",
        ...     project_number="P-100",
        ...     user_id=7,
        ...     layer_name="wells",
        ...     layer_type="utilities",
        ...     geometry={"type": "Point", "coordinates": [1.0, 2.0]},
        ... )
"""

from __future__ import annotations

import copy
import dataclasses
import datetime
from typing import Any, Literal

LayerType = Literal["iso-concentration", "potentiometric", "utilities"]
HistoryAction = Literal["create", "update", "delete"]

LAYER_TYPES: frozenset[str] = frozenset(
    {"iso-concentration", "potentiometric", "utilities"}
)
DEFAULT_CRS = "EPSG:4326"

# Columns a client may change through an update.
MUTABLE_FIELDS: tuple[str, ...] = (
    "layer_name",
    "layer_type",
    "geometry",
    "properties",
    "is_visible",
    "z_index",
    "layer_type_group",
    "crs",
    "shared_with",
)

GeoJSON = dict[str, Any]


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.UTC)


@dataclasses.dataclass
class FeatureDraft:
    """A feature that has been validated but not yet persisted."""

    parent_layer_id: str
    project_number: str
    user_id: int
    layer_name: str
    layer_type: str
    geometry: GeoJSON
    properties: dict[str, Any] = dataclasses.field(default_factory=dict)
    is_visible: bool = True
    z_index: int = 0
    layer_type_group: str | None = None
    crs: str = DEFAULT_CRS
    shared_with: dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class Feature:
    """One persisted geometry row of a user layer.

    Attributes:
        id: Datastore-assigned identifier.
        parent_layer_id: Group key shared by all features of one layer.
            May be None on rows written before grouping existed.
        project_number: Project the layer belongs to.
        user_id: Owner of the row.
        layer_name: Display name, unique per (project, user) among layers.
        layer_type: One of LAYER_TYPES.
        geometry: GeoJSON geometry (never a FeatureCollection).
        properties: Free-form attributes of the drawing.
        is_visible: Whether the client renders the feature.
        z_index: Render order.
        layer_type_group: Optional client-side grouping label.
        crs: Coordinate reference system identifier.
        shared_with: Mapping of grantee to permission.
        created_at: Insert timestamp.
        updated_at: Timestamp of the last successful update.
    """

    id: int
    parent_layer_id: str | None
    project_number: str
    user_id: int
    layer_name: str
    layer_type: str
    geometry: GeoJSON
    properties: dict[str, Any] = dataclasses.field(default_factory=dict)
    is_visible: bool = True
    z_index: int = 0
    layer_type_group: str | None = None
    crs: str = DEFAULT_CRS
    shared_with: dict[str, Any] = dataclasses.field(default_factory=dict)
    created_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)
    updated_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)

    @classmethod
    def from_draft(
        cls,
        feature_id: int,
        draft: FeatureDraft,
        now: datetime.datetime | None = None,
    ) -> Feature:
        timestamp = now or _utcnow()
        return cls(
            id=feature_id,
            created_at=timestamp,
            updated_at=timestamp,
            **dataclasses.asdict(draft),
        )


@dataclasses.dataclass(frozen=True)
class HistoryEntry:
    """Immutable audit snapshot of a feature taken around a mutation."""

    layer_id: int
    parent_layer_id: str | None
    project_number: str
    user_id: int
    layer_name: str
    layer_type: str
    geometry: GeoJSON
    properties: dict[str, Any]
    is_visible: bool
    z_index: int
    layer_type_group: str | None
    crs: str
    shared_with: dict[str, Any]
    action: HistoryAction
    modified_by: int
    modified_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)

    @classmethod
    def snapshot(
        cls,
        feature: Feature,
        action: HistoryAction,
        modified_by: int,
    ) -> HistoryEntry:
        """Copy every field of ``feature`` into a new history entry."""
        snapshot = copy.deepcopy(feature)
        return cls(
            layer_id=snapshot.id,
            parent_layer_id=snapshot.parent_layer_id,
            project_number=snapshot.project_number,
            user_id=snapshot.user_id,
            layer_name=snapshot.layer_name,
            layer_type=snapshot.layer_type,
            geometry=snapshot.geometry,
            properties=snapshot.properties,
            is_visible=snapshot.is_visible,
            z_index=snapshot.z_index,
            layer_type_group=snapshot.layer_type_group,
            crs=snapshot.crs,
            shared_with=snapshot.shared_with,
            action=action,
            modified_by=modified_by,
        )
