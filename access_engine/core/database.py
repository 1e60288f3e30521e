"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for SQLite)
- Test database support
- Table definitions for the catalog, gates, requests and entitlements
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Float,
    Index, UniqueConstraint,
)
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import os

from access_engine.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # Single shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits when the block exits cleanly, rolls back on any exception.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope(session: Optional[Session] = None):
    """Join the caller's session when given, otherwise open a managed one."""
    if session is not None:
        yield session
        return
    with get_db_session() as own_session:
        yield own_session


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def truncate_all_tables():
    """Delete every row from every table, keeping the schema."""
    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())


# ============================================================================
# Table Definitions
# ============================================================================

feature_pricing = Table(
    "feature_pricing",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("feature_key", String(50), nullable=False),
    Column("name", String(100), nullable=False),
    Column("description", Text, nullable=True),
    Column("price", Float, nullable=False),
    Column("compare_at_price", Float, nullable=True),
    Column("duration_in_days", Integer, nullable=True),  # NULL or 0 means lifetime
    Column("is_lifetime", Boolean, nullable=False, default=False),
    Column("is_bundle", Boolean, nullable=False, default=False),
    Column("included_features", JSON, nullable=False, default=list),
    Column("perks", JSON, nullable=False, default=list),
    Column("metadata_json", JSON, nullable=False, default=dict),
    Column("display_order", Integer, nullable=False, default=0),
    Column("is_featured", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("max_purchases", Integer, nullable=True),
    Column("current_purchases", Integer, nullable=False, default=0),
    Column("created_by", String(100), nullable=True),
    Column("updated_by", String(100), nullable=True),
    Column("deleted_by", String(100), nullable=True),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("deleted_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("feature_key", name="uq_feature_pricing_feature_key"),
    Index("idx_feature_pricing_active_order", "is_active", "is_deleted", "display_order"),
)

feature_gates = Table(
    "feature_gates",
    metadata,
    Column("feature_key", String(50), primary_key=True),
    Column("feature_name", String(100), nullable=False),
    Column("description", Text, nullable=True),
    Column("requires_membership", Boolean, nullable=False, default=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

feature_requests = Table(
    "feature_requests",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("phone", String(10), nullable=False),
    Column("name", String(100), nullable=False),
    Column("requested_features", JSON, nullable=False, default=list),
    Column("requested_bundle_id", String(36), nullable=True),
    Column("approved_features", JSON, nullable=False, default=list),
    Column("status", String(20), nullable=False, default="PENDING"),
    Column("reviewed_by", String(100), nullable=True),
    Column("reviewed_at", DateTime(timezone=True), nullable=True),
    Column("rejection_reason", String(500), nullable=True),
    Column("admin_notes", String(1000), nullable=True),
    Column("original_amount", Float, nullable=True),
    Column("payment_amount", Float, nullable=True),
    Column("coupon_code", String(50), nullable=True),
    Column("discount_percent", Float, nullable=True),
    Column("discount_amount", Float, nullable=False, default=0),
    Column("payment_link_id", String(255), nullable=True),
    Column("payment_url", Text, nullable=True),
    Column("payment_expires_at", DateTime(timezone=True), nullable=True),
    Column("payment_link_deactivated_at", DateTime(timezone=True), nullable=True),
    Column("order_id", String(64), nullable=True),
    Column("payment_id", String(255), nullable=True),
    Column("duration_in_days", Integer, nullable=True),
    Column("pricing_snapshot", JSON, nullable=False, default=dict),
    Column("user_feature_access_ids", JSON, nullable=False, default=list),
    Column("last_payment_error", Text, nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("deleted_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("order_id", name="uq_feature_requests_order_id"),
    Index("idx_feature_requests_phone_status", "phone", "status"),
    Index("idx_feature_requests_status_created", "status", "created_at"),
    Index("idx_feature_requests_payment_link", "payment_link_id"),
)

# One row per (phone, feature) while a request is PENDING. The unique
# constraint serializes concurrent submissions for the same feature.
pending_feature_claims = Table(
    "pending_feature_claims",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("phone", String(10), nullable=False),
    Column("feature_key", String(50), nullable=False),
    Column("request_id", String(36), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("phone", "feature_key", name="uq_pending_claim_phone_feature"),
    Index("idx_pending_claim_request", "request_id"),
)

user_feature_access = Table(
    "user_feature_access",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("phone", String(10), nullable=False),
    Column("user_id", String(100), nullable=True),
    Column("feature_key", String(50), nullable=False),
    Column("source", String(20), nullable=False, default="REQUEST"),
    Column("feature_request_id", String(36), nullable=True),
    Column("feature_pricing_id", String(36), nullable=True),
    Column("order_id", String(100), nullable=False),
    Column("request_order_id", String(64), nullable=True),
    Column("payment_id", String(255), nullable=True),
    Column("amount_paid", Float, nullable=False, default=0),
    Column("start_date", DateTime(timezone=True), nullable=False),
    Column("end_date", DateTime(timezone=True), nullable=True),
    Column("is_lifetime", Boolean, nullable=False, default=False),
    Column("status", String(20), nullable=False, default="PENDING"),
    Column("payment_status", String(20), nullable=False, default="PENDING"),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
    Column("cancelled_by", String(100), nullable=True),
    Column("cancellation_reason", String(500), nullable=True),
    Column("pricing_snapshot", JSON, nullable=False, default=dict),
    Column("admin_notes", String(1000), nullable=True),
    Column("metadata_json", JSON, nullable=False, default=dict),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("deleted_at", DateTime(timezone=True), nullable=True),
    Column("deleted_by", String(100), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("order_id", name="uq_user_feature_access_order_id"),
    Index("idx_ufa_phone_feature_status", "phone", "feature_key", "status"),
    Index("idx_ufa_status_end_date", "status", "end_date"),
    Index("idx_ufa_request_order", "request_order_id"),
)

user_memberships = Table(
    "user_memberships",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("phone", String(10), nullable=False),
    Column("plan_name", String(100), nullable=True),
    Column("status", String(20), nullable=False, default="ACTIVE"),
    Column("payment_status", String(20), nullable=False, default="SUCCESS"),
    Column("start_date", DateTime(timezone=True), nullable=False),
    Column("end_date", DateTime(timezone=True), nullable=True),
    Column("is_lifetime", Boolean, nullable=False, default=False),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index("idx_user_memberships_phone_status", "phone", "status"),
)

coupons = Table(
    "coupons",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("code", String(50), nullable=False),
    Column("description", Text, nullable=True),
    Column("discount_percent", Float, nullable=False),
    Column("max_discount_amount", Float, nullable=True),
    Column("min_purchase_amount", Float, nullable=False, default=0),
    Column("max_usage_limit", Integer, nullable=True),
    Column("usage_count", Integer, nullable=False, default=0),
    Column("max_usage_per_user", Integer, nullable=False, default=1),
    Column("valid_from", DateTime(timezone=True), nullable=True),
    Column("valid_until", DateTime(timezone=True), nullable=True),
    Column("applicable_to", JSON, nullable=False, default=list),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("code", name="uq_coupons_code"),
)

payment_events = Table(
    "payment_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_id", String(255), nullable=False),
    Column("event_type", String(100), nullable=False),
    Column("order_id", String(64), nullable=True),
    Column("payload_hash", String(64), nullable=False),
    Column("processed", Boolean, nullable=False, default=False),
    Column("error", Text, nullable=True),
    Column("received_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("processed_at", DateTime(timezone=True), nullable=True),
    UniqueConstraint("event_id", name="uq_payment_events_event_id"),
)

admin_audit = Table(
    "admin_audit",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", String(100), nullable=False),
    Column("action", String(100), nullable=False),
    Column("target_phone", String(10), nullable=True),
    Column("target_resource", String(255), nullable=True),
    Column("payload", JSON, nullable=True),
    Column("request_id", String(100), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index("idx_admin_audit_created", "created_at"),
)
