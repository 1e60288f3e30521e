"""
Admin authentication for operator endpoints.

Operators authenticate with a shared X-Admin-Key header. The key is
compared against ADMIN_API_KEY (env) or settings.ADMIN_KEY; the resulting
AdminActor carries a hashed identity so audit rows never store the secret.
"""
import os
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from access_engine.core.config import settings
from access_engine.core.errors import UnauthorizedError


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "legacy:<hash>"
    actor_display: Optional[str] = None
    auth_mechanism: str = "x_admin_key"


def get_admin_api_key() -> str | None:
    """Get admin API key.
    Prefer ADMIN_API_KEY env var; fall back to settings.ADMIN_KEY.
    """
    env_key = os.getenv("ADMIN_API_KEY")
    if env_key:
        return env_key
    return settings.ADMIN_KEY


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """
    Verify X-Admin-Key header.
    Returns AdminActor if valid, None if not present/invalid.
    """
    expected_key = get_admin_api_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(
        actor_id=f"legacy:{key_hash}",
        actor_display="Admin Key",
    )


def require_admin(request: Request) -> AdminActor:
    """FastAPI dependency for operator endpoints."""
    actor = verify_admin_key(request)
    if actor is None:
        raise UnauthorizedError("Admin authentication required")
    request.state.admin_actor = actor
    return actor
