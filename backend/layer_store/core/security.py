"""Bearer-token verification for API requests.

Tokens are issued elsewhere; this module only verifies them and extracts
the caller identity. The ``user_id`` claim is mandatory, ``username`` and
``role`` are passed through when present.

Example:
    Protect a route:
        >>> @router.get("/me")
        ... async def me(
        ...     identity: security.Identity = fastapi.Depends(
        ...         security.get_current_identity
        ...     ),
        ... ) -> dict[str, object]:
        ...     return {"user_id": identity.user_id}
"""

from __future__ import annotations

import dataclasses
from typing import Any

import fastapi
from jose import JWTError, jwt
from loguru import logger

from layer_store.core import config


@dataclasses.dataclass(frozen=True)
class Identity:
    """Verified caller identity extracted from a bearer token."""

    user_id: int
    username: str | None = None
    role: str | None = None


def decode_access_token(token: str, settings: config.Settings) -> dict[str, Any]:
    """Decode and verify a JWT, returning its claims.

    Raises:
        JWTError: If the signature is invalid or the token has expired.
    """
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def identity_from_claims(claims: dict[str, Any]) -> Identity:
    """Build an Identity from decoded claims.

    Raises:
        ValueError: If ``user_id`` is missing or not an integer.
    """
    user_id = claims.get("user_id")
    if user_id is None or isinstance(user_id, bool):
        raise ValueError("user_id claim missing")
    return Identity(
        user_id=int(user_id),
        username=claims.get("username"),
        role=claims.get("role"),
    )


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ")
    if len(parts) < 2 or not parts[1]:
        return None
    return parts[1]


async def get_current_identity(
    authorization: str | None = fastapi.Header(default=None),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> Identity:
    """Resolve the caller identity from the ``Authorization`` header.

    Raises:
        HTTPException: 401 when no token is supplied, 403 when the token
            is invalid, expired, or carries no usable ``user_id``.
    """
    token = bearer_token(authorization)
    if token is None:
        raise fastapi.HTTPException(status_code=401, detail="Access token required")

    try:
        return identity_from_claims(decode_access_token(token, settings))
    except (JWTError, ValueError, TypeError) as exc:
        logger.warning("Rejected bearer token: {}", exc)
        raise fastapi.HTTPException(
            status_code=403,
            detail="Invalid or expired token",
        ) from exc
