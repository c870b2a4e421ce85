"""Domain exceptions raised by the user layer service.

Every exception carries the HTTP status it maps to and a human-readable
message. The application registers a single handler for
``LayerStoreError`` that renders ``{"data": None, "error": message}``.

Example:
    >>> from layer_store.core import errors
    >>> try:
    ...     raise errors.DuplicateLayerName()
    ... except errors.LayerStoreError as exc:
    ...     print(exc.status_code, exc.message)
    409 Layer name already exists for this user and project
"""

from __future__ import annotations


class LayerStoreError(Exception):
    """Base class for errors that are reported to the client as-is."""

    status_code: int = 500
    default_message: str = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(LayerStoreError):
    """Missing or malformed request field, detected before persistence."""

    status_code = 400
    default_message = "Missing required fields"


class InvalidLayerType(InvalidInput):
    default_message = "Invalid layer_type"


class InvalidGeometry(InvalidInput):
    default_message = "Invalid GeoJSON geometry"


class NoValidFeatures(InvalidInput):
    default_message = "No valid features to insert"


class DuplicateLayerName(LayerStoreError):
    """The datastore rejected a name already used by another layer."""

    status_code = 409
    default_message = "Layer name already exists for this user and project"


class NotFoundOrUnauthorized(LayerStoreError):
    """No row owned by the caller matches the requested scope.

    Rows owned by other users are reported the same way as missing rows.
    """

    status_code = 404
    default_message = "Feature not found or unauthorized"
