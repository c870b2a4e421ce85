"""Bearer-token validation endpoint.

Tokens are issued by the identity provider; this endpoint only lets a
client check that the token it holds is still accepted, and learn the
identity it carries.
"""

from __future__ import annotations

import fastapi
from jose import JWTError
from loguru import logger

from layer_store.core import config, security

router = fastapi.APIRouter(prefix="/api/auth", tags=["auth"])


@router.get("/validate")
async def validate_token(
    authorization: str | None = fastapi.Header(default=None),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> dict[str, object]:
    """Return the identity in a valid bearer token.

    Raises:
        HTTPException: 401 when the token is missing, invalid or expired.
    """
    token = security.bearer_token(authorization)
    if token is None:
        logger.warning("No token provided for validation")
        raise fastapi.HTTPException(status_code=401, detail="No token provided")

    try:
        identity = security.identity_from_claims(
            security.decode_access_token(token, settings)
        )
    except (JWTError, ValueError, TypeError) as exc:
        logger.warning("Token validation failed: {}", exc)
        raise fastapi.HTTPException(
            status_code=401,
            detail="Invalid or expired token",
        ) from exc

    logger.info("Token validated for user_id={}", identity.user_id)
    return {
        "data": {
            "valid": True,
            "user_id": identity.user_id,
            "username": identity.username,
            "role": identity.role,
        },
        "error": None,
    }
