"""
Admin authentication.

Admin endpoints take the shared X-Admin-Key header. The key is never stored
in audit rows; actors are identified as "admin:<sha256 prefix>".

Security guarantees:
- Constant-time key comparison
- No key configured means admin endpoints answer 503, not open access
- All admin actions audited with actor identity
"""
import os
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional
from fastapi import Request, HTTPException
from backend.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "admin:<hash>"
    actor_display: Optional[str] = None
    auth_mechanism: str = "x_admin_key"


def get_admin_api_key() -> Optional[str]:
    """Prefer ADMIN_API_KEY env var; fall back to settings.ADMIN_KEY."""
    env_key = os.getenv("ADMIN_API_KEY")
    if env_key:
        return env_key
    return settings.ADMIN_KEY


def actor_for_key(key: str) -> AdminActor:
    key_hash = hashlib.sha256(key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin:{key_hash}", actor_display="Admin Key")


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Returns AdminActor if the X-Admin-Key header matches, None otherwise."""
    expected_key = get_admin_api_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None
    return actor_for_key(header_key)


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.get("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = verify_admin_key(request)
    if actor:
        return actor

    if not get_admin_api_key():
        raise HTTPException(
            status_code=503,
            detail={
                "error": "Admin authentication not configured",
                "code": "admin_auth_unconfigured",
                "hint": "Set ADMIN_KEY",
            },
        )
    raise HTTPException(
        status_code=401,
        detail={
            "error": "Unauthorized: invalid or missing admin credentials",
            "code": "admin_unauthorized",
            "hint": "Use the X-Admin-Key header.",
        },
    )
