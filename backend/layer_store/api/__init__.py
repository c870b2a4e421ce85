"""API router subpackage for the layer store backend.

Submodules:
    - user_layers: CRUD endpoints for user-drawn layers and features.
    - auth: Bearer-token validation.
    - ws: WebSocket stream of layer change events.
    - deps: Dependencies resolving the shared repository and broadcaster.
"""
