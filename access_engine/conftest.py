# access_engine/conftest.py
import os
from datetime import datetime, timezone

import pytest

# In-memory SQLite shared through StaticPool; must be set before the engine is built.
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}
PHONE = "9876543210"


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create all database tables once per test session."""
    from access_engine.core.database import create_all_tables, init_engine

    init_engine(os.environ["TEST_DATABASE_URL"])
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Empty every table and reseed the default gates before each test."""
    from access_engine.core.database import truncate_all_tables
    from access_engine.features.feature_access.service import seed_feature_gates

    truncate_all_tables()
    seed_feature_gates()
    yield


@pytest.fixture
def fake_provider():
    from access_engine.features.payments.service import set_payment_provider
    from access_engine.tests.mocks import FakePaymentProvider

    provider = FakePaymentProvider()
    set_payment_provider(provider)
    yield provider
    set_payment_provider(None)


@pytest.fixture
def notifier():
    from access_engine.tests.mocks import RecordingNotifier

    return RecordingNotifier()


@pytest.fixture
def now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def admin_headers():
    return dict(ADMIN_HEADERS)


@pytest.fixture
def client(fake_provider):
    from fastapi.testclient import TestClient
    from access_engine.main import app

    return TestClient(app)


@pytest.fixture
def catalog():
    """Individual offers for every feature plus one SOS+CONNECT bundle."""
    from access_engine.features.pricing.service import create_pricing

    sos = create_pricing({"feature_key": "SOS", "name": "SOS Tab", "price": 100, "duration_in_days": 30})
    connect = create_pricing({"feature_key": "CONNECT", "name": "Connect Tab", "price": 200, "duration_in_days": 30})
    challenge = create_pricing({"feature_key": "CHALLENGE", "name": "Challenge Tab", "price": 150, "duration_in_days": 30})
    bundle = create_pricing(
        {
            "feature_key": "SOS_CONNECT",
            "name": "SOS + Connect",
            "price": 250,
            "compare_at_price": 300,
            "is_bundle": True,
            "included_features": ["SOS", "CONNECT"],
        }
    )
    return {"SOS": sos, "CONNECT": connect, "CHALLENGE": challenge, "bundle": bundle}


@pytest.fixture
def gated():
    """Require membership for every seeded gate."""
    from access_engine.features.feature_access.service import upsert_feature_gate

    for key in ("SOS", "CONNECT", "CHALLENGE"):
        upsert_feature_gate(key, requires_membership=True, is_active=True)
