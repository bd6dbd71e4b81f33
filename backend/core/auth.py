"""
Auth utilities for the subscription API.

Validates HS256 bearer tokens issued by the upstream auth gateway and
extracts user_id from the 'sub' claim. Outside prod, falls back to the
X-User-Id header (tests, local tools).
"""
from fastapi import Header, HTTPException, Request
from typing import Optional
from backend.core.config import settings
import jwt
import logging

logger = logging.getLogger("subengine.auth")


def verify_token(token: str) -> Optional[str]:
    """
    Verify a bearer token and extract user_id.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        user_id from the 'sub' claim, or None when no secret is configured

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.AUTH_JWT_SECRET:
        logger.debug("No AUTH_JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return user_id


def _header_fallback_allowed() -> bool:
    return settings.ENVIRONMENT.lower() != "prod"


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Non-prod: caller user ID"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (not in prod)
    3. Raise 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_token(auth_header[7:].strip())
        if user_id:
            return user_id

    if x_user_id and _header_fallback_allowed():
        return x_user_id.strip()

    raise HTTPException(
        status_code=401,
        detail={
            "error": "unauthorized",
            "message": "Missing Authorization (Bearer JWT) or X-User-Id header",
        },
    )
