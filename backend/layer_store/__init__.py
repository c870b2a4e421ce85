"""User layer store: backend for user-drawn GIS layers.

This package contains the REST backend that stores layers drawn by users
on a project map. A submitted geometry or GeoJSON FeatureCollection is
split into one PostGIS row per feature, grouped under a shared
``parent_layer_id``, and reassembled into layer objects on read.

- Every create, update and delete records a history snapshot
- Multi-feature creates and deletes are atomic
- Change events are pushed to WebSocket listeners
- Callers are identified by a verified bearer token and only see their
  own rows

See module sub-docstrings for details on architecture and usage.
"""
