"""Structural GeoJSON validation for user-drawn layers.

The checks here are shape-only; coordinates are left to the database to
parse. None of the functions raise; anything unexpected is reported as
invalid.

- ``is_layer_submission`` gates layer creation: an accepted geometry, or
  a FeatureCollection with a ``features`` list.
- ``is_valid_feature`` decides, member by member, which features of a
  submission are stored.
- ``is_valid_geojson`` is the strict check: an accepted geometry, or a
  FeatureCollection whose every member is valid. Creation uses it to
  report submissions that will lose members.
- ``is_valid_geometry`` gates geometry replacement on update, after
  ``unwrap_feature``.

Example:
    >>> is_valid_geojson({"type": "Point", "coordinates": [1, 2]})
    True
    >>> is_valid_geojson({"type": "FeatureCollection", "features": []})
    True
    >>> is_valid_geojson({"type": "GeometryCollection", "geometries": []})
    False
"""

from __future__ import annotations

from typing import Any

GEOMETRY_TYPES: frozenset[str] = frozenset(
    {
        "Point",
        "LineString",
        "Polygon",
        "MultiPoint",
        "MultiLineString",
        "MultiPolygon",
    }
)


def _type_of(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    geojson_type = value.get("type")
    return geojson_type if isinstance(geojson_type, str) else None


def is_valid_geometry(value: Any) -> bool:
    """Return True if ``value`` is a bare geometry of an accepted type."""
    return _type_of(value) in GEOMETRY_TYPES


def is_valid_feature(value: Any) -> bool:
    """Return True if ``value`` is a Feature wrapping an accepted geometry."""
    return _type_of(value) == "Feature" and is_valid_geometry(value.get("geometry"))


def is_feature_collection(value: Any) -> bool:
    return _type_of(value) == "FeatureCollection"


def is_valid_geojson(value: Any) -> bool:
    """Return True for an accepted geometry or a valid FeatureCollection.

    A FeatureCollection is valid when ``features`` is a list and every
    member is a Feature wrapping an accepted (non-collection) geometry.
    """
    if is_feature_collection(value):
        features = value.get("features")
        return isinstance(features, list) and all(
            is_valid_feature(feature) for feature in features
        )
    return is_valid_geometry(value)


def is_layer_submission(value: Any) -> bool:
    """Return True if ``value`` can be decomposed into layer features.

    Looser than ``is_valid_geojson``: a FeatureCollection only needs a
    ``features`` list here, because invalid members are skipped one by
    one when the layer is created.
    """
    if is_feature_collection(value):
        return isinstance(value.get("features"), list)
    return is_valid_geometry(value)


def unwrap_feature(value: Any) -> Any:
    """Return the geometry inside a Feature, or ``value`` unchanged."""
    if _type_of(value) == "Feature":
        return value.get("geometry")
    return value
