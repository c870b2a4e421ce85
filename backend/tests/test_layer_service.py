"""Tests for layer_store.services.layers.LayerService.

Exercises the layer lifecycle against InMemoryLayerRepository and a
recording broadcaster:
    - decomposition of FeatureCollections into feature rows,
    - validation before persistence,
    - name conflicts on create and update,
    - partial updates and history snapshots,
    - scoped deletes and change events,
    - atomicity when the datastore fails mid-batch.

Coroutines are driven with asyncio.run so no async plugin is needed.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import pytest
from loguru import logger

from layer_store.core import errors, security
from layer_store.db import database
from layer_store.db import models as db_models
from layer_store.services import layers

if TYPE_CHECKING:
    from collections.abc import Sequence

    from conftest import RecordingBroadcaster

OWNER = security.Identity(user_id=7, username="ana", role="editor")
STRANGER = security.Identity(user_id=8)
POINT = {"type": "Point", "coordinates": [1.0, 2.0]}
LINE = {"type": "LineString", "coordinates": [[0.0, 0.0], [1.0, 1.0]]}


def _collection(*geometries: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "geometry": g} for g in geometries],
    }


def _create(
    service: layers.LayerService,
    identity: security.Identity = OWNER,
    **overrides: Any,
) -> dict[str, Any]:
    values: dict[str, Any] = {
        "project_number": "P-1",
        "layer_name": "A",
        "layer_type": "utilities",
        "geometry": _collection(POINT, LINE),
    }
    values.update(overrides)
    return asyncio.run(service.create_layer(identity, **values))


@pytest.fixture
def service(
    repo: database.InMemoryLayerRepository,
    broadcaster: RecordingBroadcaster,
) -> layers.LayerService:
    return layers.LayerService(repo, broadcaster)


def test_create_decomposes_collection(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
    broadcaster: RecordingBroadcaster,
) -> None:
    """Test one row per member, all sharing a fresh parent id."""
    layer = _create(service)
    rows = repo.list_features("P-1", 7)
    assert len(rows) == 2
    assert {row.parent_layer_id for row in rows} == {layer["parent_layer_id"]}
    assert layer["ids"] == [row.id for row in rows]
    assert [f["geometry"] for f in layer["geometry"]["features"]] == [POINT, LINE]
    assert broadcaster.names() == ["layerCreated", "layerCreated"]
    assert [h.action for h in repo.history_entries] == ["create", "create"]


def test_create_generates_new_parent_per_call(
    service: layers.LayerService,
) -> None:
    """Test that each create gets its own parent_layer_id."""
    first = _create(service, layer_name="A")
    second = _create(service, layer_name="B")
    assert first["parent_layer_id"] != second["parent_layer_id"]


def test_create_skips_invalid_members(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
) -> None:
    """Test that a bad member is skipped instead of failing the request."""
    geometry = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [1, 2]}},
            {"type": "Feature", "geometry": {"type": "BadType"}},
        ],
    }
    layer = _create(service, geometry=geometry)
    assert len(layer["ids"]) == 1
    assert len(repo.list_features("P-1", 7)) == 1


def test_create_single_geometry_uses_request_properties(
    service: layers.LayerService,
) -> None:
    """Test that a bare geometry becomes one feature with the properties."""
    layer = _create(service, geometry=POINT, properties={"label": "MW-1"})
    assert len(layer["ids"]) == 1
    assert layer["geometry"]["features"][0]["properties"] == {"label": "MW-1"}


def test_create_member_properties_win(service: layers.LayerService) -> None:
    """Test per-feature properties take precedence over request ones."""
    geometry = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "geometry": POINT, "properties": {"own": True}},
            {"type": "Feature", "geometry": LINE},
        ],
    }
    layer = _create(service, geometry=geometry, properties={"shared": True})
    props = [f["properties"] for f in layer["geometry"]["features"]]
    assert props == [{"own": True}, {"shared": True}]


@pytest.mark.parametrize("bad_properties", [[1, 2], "x", [["a", 1]]])
def test_create_skips_member_with_non_object_properties(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
    bad_properties: Any,
) -> None:
    """Test that a member whose properties is not an object is skipped."""
    geometry = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "geometry": POINT, "properties": {"ok": 1}},
            {"type": "Feature", "geometry": POINT, "properties": bad_properties},
        ],
    }
    layer = _create(service, geometry=geometry)
    assert len(layer["ids"]) == 1
    assert layer["geometry"]["features"][0]["properties"] == {"ok": 1}
    assert len(repo.list_features("P-1", 7)) == 1


def test_create_keeps_explicit_empty_member_properties(
    service: layers.LayerService,
) -> None:
    """Test an empty properties object is not replaced by request ones."""
    geometry = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "geometry": POINT, "properties": {}},
            {"type": "Feature", "geometry": LINE, "properties": None},
        ],
    }
    layer = _create(service, geometry=geometry, properties={"shared": True})
    props = [f["properties"] for f in layer["geometry"]["features"]]
    assert props == [{}, {"shared": True}]


def test_create_warns_when_members_are_dropped(
    service: layers.LayerService,
) -> None:
    """Test that only a collection with bad members is reported."""
    messages: list[str] = []
    sink_id = logger.add(messages.append, level="WARNING", format="{message}")
    try:
        _create(service, layer_name="clean")
        assert not any("contains invalid features" in m for m in messages)
        geometry = {
            "type": "FeatureCollection",
            "features": [
                {"type": "Feature", "geometry": POINT},
                {"type": "Feature", "geometry": {"type": "BadType"}},
            ],
        }
        _create(service, layer_name="partial", geometry=geometry)
    finally:
        logger.remove(sink_id)
    assert any("'partial' contains invalid features" in m for m in messages)


def test_create_applies_defaults(service: layers.LayerService) -> None:
    """Test default visibility, order, crs and sharing."""
    layer = _create(service)
    assert layer["is_visible"] is True
    assert layer["z_index"] == 0
    assert layer["crs"] == "EPSG:4326"
    assert layer["shared_with"] == {}
    assert layer["layer_type_group"] is None
    assert layer["user_id"] == 7


@pytest.mark.parametrize(
    "missing", ["project_number", "layer_name", "layer_type", "geometry"]
)
def test_create_missing_field(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
    missing: str,
) -> None:
    """Test each required field."""
    with pytest.raises(errors.InvalidInput, match="Missing required fields"):
        _create(service, **{missing: None})
    assert repo.history_entries == []


def test_create_blank_name_is_missing(service: layers.LayerService) -> None:
    with pytest.raises(errors.InvalidInput):
        _create(service, layer_name="   ")


def test_create_invalid_layer_type(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
) -> None:
    """Test that unknown layer types are rejected before persistence."""
    with pytest.raises(errors.InvalidLayerType):
        _create(service, layer_type="roads")
    assert repo.list_features("P-1", 7) == []


def test_create_unknown_geometry_type(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
    broadcaster: RecordingBroadcaster,
) -> None:
    """Test unrecognized geometry types leave no rows and no history."""
    with pytest.raises(errors.InvalidGeometry):
        _create(service, geometry={"type": "Circle", "radius": 3})
    assert repo.list_features("P-1", 7) == []
    assert repo.history_entries == []
    assert broadcaster.events == []


def test_create_no_valid_features(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
) -> None:
    """Test a collection without usable members."""
    geometry = {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "geometry": {"type": "BadType"}}],
    }
    with pytest.raises(errors.NoValidFeatures):
        _create(service, geometry=geometry)
    with pytest.raises(errors.NoValidFeatures):
        _create(service, geometry={"type": "FeatureCollection", "features": []})
    assert repo.history_entries == []


def test_create_duplicate_name(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
    broadcaster: RecordingBroadcaster,
) -> None:
    """Test that a second layer with the same name changes nothing."""
    _create(service)
    before = repo.list_features("P-1", 7)
    history_before = repo.history_entries
    events_before = list(broadcaster.events)
    with pytest.raises(errors.DuplicateLayerName):
        _create(service, geometry=POINT)
    assert repo.list_features("P-1", 7) == before
    assert repo.history_entries == history_before
    assert broadcaster.events == events_before


def test_create_same_name_for_other_user(service: layers.LayerService) -> None:
    _create(service)
    layer = _create(service, identity=STRANGER)
    assert layer["user_id"] == 8


class _FailingRepository(database.InMemoryLayerRepository):
    """Fails after writing part of a batch, like a dropped connection."""

    def create_features(
        self,
        drafts: Sequence[db_models.FeatureDraft],
        modified_by: int,
    ) -> list[db_models.Feature]:
        with self._lock:
            snapshot = dict(self._features), list(self._history)
            try:
                for index, draft in enumerate(drafts):
                    if index == 1:
                        raise RuntimeError("connection lost")
                    feature = db_models.Feature.from_draft(next(self._ids), draft)
                    self._features[feature.id] = feature
            except RuntimeError:
                self._features, self._history = snapshot
                raise
        return []


def test_create_failure_mid_batch_leaves_nothing(
    broadcaster: RecordingBroadcaster,
) -> None:
    """Test that a datastore failure propagates and nothing is announced."""
    repo = _FailingRepository()
    service = layers.LayerService(repo, broadcaster)
    with pytest.raises(RuntimeError, match="connection lost"):
        _create(service)
    assert repo.list_features("P-1", 7) == []
    assert repo.history_entries == []
    assert broadcaster.events == []


def test_list_round_trip(service: layers.LayerService) -> None:
    """Test that a created layer comes back unchanged from list."""
    created = _create(service)
    listed = asyncio.run(service.list_layers(OWNER, "P-1"))
    assert listed == [created]


def test_list_groups_and_scopes(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
) -> None:
    """Test grouping per layer and isolation between users."""
    _create(service, layer_name="A")
    _create(service, layer_name="B", geometry=POINT)
    _create(service, identity=STRANGER, layer_name="C")
    listed = asyncio.run(service.list_layers(OWNER, "P-1"))
    assert sorted(layer["layer_name"] for layer in listed) == ["A", "B"]
    assert sum(len(layer["ids"]) for layer in listed) == 3
    assert [layer["parent_layer_id"] for layer in listed] == sorted(
        layer["parent_layer_id"] for layer in listed
    )


def test_list_legacy_rows_grouped_by_id(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
) -> None:
    """Test rows without parent_layer_id form single-feature layers."""
    (legacy,) = repo.create_features(
        [
            db_models.FeatureDraft(
                parent_layer_id="tmp",
                project_number="P-1",
                user_id=7,
                layer_name="legacy",
                layer_type="potentiometric",
                geometry=POINT,
            )
        ],
        modified_by=7,
    )
    repo._features[legacy.id].parent_layer_id = None
    (layer,) = asyncio.run(service.list_layers(OWNER, "P-1"))
    assert layer["parent_layer_id"] == str(legacy.id)
    assert layer["ids"] == [legacy.id]


def test_list_requires_project(service: layers.LayerService) -> None:
    with pytest.raises(errors.InvalidInput, match="project_number"):
        asyncio.run(service.list_layers(OWNER, None))


def test_update_partial_fields(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
    broadcaster: RecordingBroadcaster,
) -> None:
    """Test that only sent fields change and history holds the old row."""
    layer = _create(service, properties={"keep": 1})
    feature_id = layer["ids"][0]
    before = repo.get_feature(feature_id, "P-1", 7)
    updated = asyncio.run(
        service.update_feature(OWNER, "P-1", feature_id, {"is_visible": False})
    )
    assert updated["is_visible"] is False
    assert updated["layer_name"] == "A"
    assert updated["geometry"] == POINT
    assert updated["updated_at"] >= before.updated_at  # type: ignore[union-attr]
    update_entries = [e for e in repo.history(feature_id) if e.action == "update"]
    assert len(update_entries) == 1
    assert update_entries[0].is_visible is True
    assert broadcaster.names()[-1] == "layerUpdated"
    assert broadcaster.events[-1][1]["id"] == feature_id


def test_update_without_fields_refreshes_timestamp(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
) -> None:
    """Test an empty update still succeeds and records history."""
    feature_id = _create(service)["ids"][0]
    before = repo.get_feature(feature_id, "P-1", 7)
    updated = asyncio.run(service.update_feature(OWNER, "P-1", feature_id, {}))
    assert updated["updated_at"] >= before.updated_at  # type: ignore[union-attr]
    assert [e.action for e in repo.history(feature_id)] == ["create", "update"]


def test_update_geometry_accepts_feature_wrapper(
    service: layers.LayerService,
) -> None:
    feature_id = _create(service)["ids"][0]
    updated = asyncio.run(
        service.update_feature(
            OWNER,
            "P-1",
            feature_id,
            {"geometry": {"type": "Feature", "geometry": LINE}},
        )
    )
    assert updated["geometry"] == LINE


@pytest.mark.parametrize(
    ("changes", "error"),
    [
        ({"geometry": {"type": "BadType"}}, errors.InvalidGeometry),
        ({"geometry": _collection(POINT)}, errors.InvalidGeometry),
        ({"layer_type": "roads"}, errors.InvalidLayerType),
        ({"layer_name": ""}, errors.InvalidInput),
        ({"z_index": None}, errors.InvalidInput),
        ({"owner": 3}, errors.InvalidInput),
    ],
)
def test_update_invalid_changes(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
    changes: dict[str, Any],
    error: type[Exception],
) -> None:
    """Test validation errors leave the feature and history untouched."""
    feature_id = _create(service)["ids"][0]
    with pytest.raises(error):
        asyncio.run(service.update_feature(OWNER, "P-1", feature_id, changes))
    assert [e.action for e in repo.history(feature_id)] == ["create"]


def test_update_can_clear_layer_type_group(service: layers.LayerService) -> None:
    feature_id = _create(service, layer_type_group="plumes")["ids"][0]
    updated = asyncio.run(
        service.update_feature(OWNER, "P-1", feature_id, {"layer_type_group": None})
    )
    assert updated["layer_type_group"] is None


def test_update_not_found_or_foreign(service: layers.LayerService) -> None:
    """Test that another user's feature looks exactly like a missing one."""
    feature_id = _create(service)["ids"][0]
    with pytest.raises(errors.NotFoundOrUnauthorized) as foreign:
        asyncio.run(service.update_feature(STRANGER, "P-1", feature_id, {}))
    with pytest.raises(errors.NotFoundOrUnauthorized) as missing:
        asyncio.run(service.update_feature(OWNER, "P-1", 999, {}))
    assert foreign.value.message == missing.value.message


def test_update_requires_project(service: layers.LayerService) -> None:
    with pytest.raises(errors.InvalidInput, match="project_number"):
        asyncio.run(service.update_feature(OWNER, "", 1, {}))


def test_update_duplicate_name(service: layers.LayerService) -> None:
    """Test renaming onto another layer's name and onto its own name."""
    first = _create(service, layer_name="A")
    _create(service, layer_name="B", geometry=POINT)
    feature_id = first["ids"][0]
    with pytest.raises(errors.DuplicateLayerName):
        asyncio.run(
            service.update_feature(OWNER, "P-1", feature_id, {"layer_name": "B"})
        )
    same = asyncio.run(
        service.update_feature(OWNER, "P-1", feature_id, {"layer_name": "A"})
    )
    assert same["layer_name"] == "A"


def test_delete_single_feature(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
    broadcaster: RecordingBroadcaster,
) -> None:
    """Test deleting one feature of a two-feature layer."""
    layer = _create(service)
    first, second = layer["ids"]
    deleted = asyncio.run(service.delete_features(OWNER, "P-1", feature_id=first))
    assert deleted == [first]
    assert [row.id for row in repo.list_features("P-1", 7)] == [second]
    assert broadcaster.events[-1] == (
        "layerDeleted",
        {"id": first, "project_number": "P-1", "user_id": 7},
    )
    assert repo.history(first)[-1].action == "delete"


def test_delete_whole_layer(
    service: layers.LayerService,
    repo: database.InMemoryLayerRepository,
    broadcaster: RecordingBroadcaster,
) -> None:
    """Test deleting by parent_layer_id removes exactly that layer."""
    layer = _create(service, layer_name="A")
    other = _create(service, layer_name="B", geometry=POINT)
    deleted = asyncio.run(
        service.delete_features(
            OWNER, "P-1", parent_layer_id=layer["parent_layer_id"]
        )
    )
    assert deleted == layer["ids"]
    assert [row.id for row in repo.list_features("P-1", 7)] == other["ids"]
    assert broadcaster.names()[-2:] == ["layerDeleted", "layerDeleted"]
    delete_entries = [e for e in repo.history_entries if e.action == "delete"]
    assert sorted(e.layer_id for e in delete_entries) == sorted(layer["ids"])


def test_delete_missing_or_foreign(service: layers.LayerService) -> None:
    layer = _create(service)
    with pytest.raises(errors.NotFoundOrUnauthorized):
        asyncio.run(service.delete_features(OWNER, "P-1", feature_id=999))
    with pytest.raises(errors.NotFoundOrUnauthorized, match="Layer not found"):
        asyncio.run(
            service.delete_features(
                STRANGER, "P-1", parent_layer_id=layer["parent_layer_id"]
            )
        )


@pytest.mark.parametrize(
    ("feature_id", "parent_layer_id"),
    [(None, None), (1, "parent")],
)
def test_delete_requires_exactly_one_scope(
    service: layers.LayerService,
    feature_id: int | None,
    parent_layer_id: str | None,
) -> None:
    with pytest.raises(errors.InvalidInput, match="Exactly one"):
        asyncio.run(
            service.delete_features(
                OWNER,
                "P-1",
                feature_id=feature_id,
                parent_layer_id=parent_layer_id,
            )
        )


def test_delete_requires_project(service: layers.LayerService) -> None:
    with pytest.raises(errors.InvalidInput, match="project_number"):
        asyncio.run(service.delete_features(OWNER, None, feature_id=1))


def test_broadcast_failure_does_not_fail_request(
    repo: database.InMemoryLayerRepository,
) -> None:
    """Test that a broken broadcaster is logged, not raised."""

    class BrokenBroadcaster:
        async def publish(self, event: str, payload: Any) -> None:
            raise ConnectionError("socket gone")

    service = layers.LayerService(repo, BrokenBroadcaster())
    layer = _create(service)
    assert len(layer["ids"]) == 2
    assert len(repo.list_features("P-1", 7)) == 2
