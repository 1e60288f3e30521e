import logging
from typing import Any, Dict, Optional

from sqlalchemy import insert, select

from access_engine.core.admin_auth import AdminActor
from access_engine.core.database import admin_audit, get_db_session
from access_engine.core.logging import get_request_id
from access_engine.models.common import utc_now

logger = logging.getLogger(__name__)


def _safe_truncate(value: Any, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def resolve_actor_id(actor: Optional[AdminActor | str], default: Optional[str] = "system") -> Optional[str]:
    """Identifier stored for an operator; ``default`` when the call came from the system."""
    if actor is None:
        return default
    if isinstance(actor, str):
        return actor
    return actor.actor_id


def record_admin_action(
    *,
    action: str,
    actor: Optional[AdminActor | str],
    target_phone: Optional[str] = None,
    target_resource: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    session=None,
) -> None:
    """Append an operator action to admin_audit.

    When ``session`` is given the row joins the caller's transaction, so the
    audit entry commits or rolls back with the change it describes.
    """
    values = {
        "actor_id": resolve_actor_id(actor),
        "action": action,
        "target_phone": target_phone,
        "target_resource": target_resource,
        "payload": {k: _safe_truncate(v) for k, v in (payload or {}).items()},
        "request_id": get_request_id(),
        "created_at": utc_now(),
    }
    if session is not None:
        session.execute(insert(admin_audit).values(**values))
    else:
        with get_db_session() as own_session:
            own_session.execute(insert(admin_audit).values(**values))

    logger.info(
        "[audit] admin action",
        extra={"action": action, "actor_id": values["actor_id"], "target_resource": target_resource},
    )


def list_admin_actions(*, action: Optional[str] = None, limit: int = 100) -> list[dict]:
    stmt = select(admin_audit).order_by(admin_audit.c.id.desc()).limit(limit)
    if action:
        stmt = stmt.where(admin_audit.c.action == action)
    with get_db_session() as session:
        return [dict(r._mapping) for r in session.execute(stmt).fetchall()]
