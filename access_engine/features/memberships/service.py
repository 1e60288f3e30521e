"""
Full-membership lookup.

Memberships are sold and managed elsewhere; this module only answers whether a
phone currently holds one, which the resolution engine checks before any
per-feature grant.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional, Protocol

from sqlalchemy import and_, insert, or_, select

from access_engine.core.database import get_db_session, user_memberships
from access_engine.models.common import normalize_now, normalize_phone
from access_engine.models.membership import UserMembership

logger = logging.getLogger(__name__)


class MembershipLookup(Protocol):
    def find_active_membership(self, phone: str, now: Optional[datetime] = None) -> Optional[UserMembership]:
        ...


class DatabaseMembershipLookup:
    """Reads user_memberships."""

    def find_active_membership(self, phone: str, now: Optional[datetime] = None) -> Optional[UserMembership]:
        return find_active_membership(phone, now=now)


def find_active_membership(phone: str, *, now: Optional[datetime] = None) -> Optional[UserMembership]:
    current = normalize_now(now)
    stmt = (
        select(user_memberships)
        .where(
            and_(
                user_memberships.c.phone == phone,
                user_memberships.c.status == "ACTIVE",
                user_memberships.c.is_deleted.is_(False),
                or_(
                    user_memberships.c.is_lifetime.is_(True),
                    user_memberships.c.end_date > current,
                ),
            )
        )
        .order_by(user_memberships.c.is_lifetime.desc(), user_memberships.c.end_date.desc())
    )
    with get_db_session() as session:
        rows = session.execute(stmt).fetchall()
    for row in rows:
        membership = UserMembership.from_row(row)
        if membership.is_valid(current):
            return membership
    return None


def record_membership(
    phone: str,
    *,
    plan_name: Optional[str] = None,
    duration_in_days: Optional[int] = None,
    status: str = "ACTIVE",
    start_date: Optional[datetime] = None,
) -> UserMembership:
    """Write a membership row (seed data, operator tooling, tests)."""
    normalized = normalize_phone(phone)
    start = normalize_now(start_date)
    lifetime = not duration_in_days
    values = {
        "id": str(uuid.uuid4()),
        "phone": normalized,
        "plan_name": plan_name,
        "status": status,
        "payment_status": "SUCCESS",
        "start_date": start,
        "end_date": None if lifetime else start + timedelta(days=duration_in_days),
        "is_lifetime": lifetime,
        "is_deleted": False,
        "created_at": start,
    }
    with get_db_session() as session:
        session.execute(insert(user_memberships).values(**values))
    logger.info("[membership] recorded", extra={"phone": normalized, "plan_name": plan_name, "lifetime": lifetime})
    return UserMembership.model_validate(values)
