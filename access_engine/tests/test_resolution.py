"""
Access resolution precedence: gate, open-to-all, membership, grant, no access.
"""
from datetime import timedelta

import pytest

from access_engine.core.errors import ValidationError
from access_engine.features.entitlements.service import AccessReason, AccessType, resolve_access
from access_engine.features.feature_access.service import grant_access, upsert_feature_gate
from access_engine.features.memberships.service import record_membership
from access_engine.tests.mocks import StaticMemberships

PHONE = "9876543210"


def test_seeded_gates_are_open_to_all(now):
    decision = resolve_access(PHONE, "sos", now=now)

    assert decision.has_access is True
    assert decision.reason == AccessReason.OPEN_TO_ALL
    assert decision.feature_key == "SOS"
    assert decision.access_type is None


def test_inactive_gate_denies_even_with_membership_and_grant(gated, now):
    record_membership(PHONE, plan_name="Gold", duration_in_days=365, start_date=now - timedelta(days=1))
    grant_access(PHONE, "CONNECT", duration_in_days=30, now=now - timedelta(days=1))
    upsert_feature_gate("CONNECT", is_active=False)

    decision = resolve_access(PHONE, "CONNECT", now=now)

    assert decision.has_access is False
    assert decision.reason == AccessReason.FEATURE_INACTIVE
    assert decision.purchase_options is None


def test_unknown_feature_without_gate_is_inactive(now):
    decision = resolve_access(PHONE, "TELEPORT", now=now)

    assert decision.has_access is False
    assert decision.reason == AccessReason.FEATURE_INACTIVE


def test_membership_wins_over_grant(gated, now):
    record_membership(PHONE, plan_name="Gold", duration_in_days=10, start_date=now - timedelta(days=1))
    grant_access(PHONE, "SOS", duration_in_days=30, now=now - timedelta(days=1))

    decision = resolve_access(PHONE, "SOS", now=now)

    assert decision.reason == AccessReason.MEMBERSHIP_VALID
    assert decision.access_type == AccessType.FULL_MEMBERSHIP
    assert decision.detail["plan_name"] == "Gold"
    assert decision.detail["days_remaining"] == 9


def test_expired_membership_falls_through_to_grant(gated, now):
    record_membership(PHONE, plan_name="Old", duration_in_days=5, start_date=now - timedelta(days=10))
    access = grant_access(PHONE, "SOS", duration_in_days=30, now=now - timedelta(days=1))

    decision = resolve_access(PHONE, "SOS", now=now)

    assert decision.reason == AccessReason.FEATURE_ACCESS_VALID
    assert decision.access_type == AccessType.INDIVIDUAL_FEATURE
    assert decision.detail["access_id"] == access.id
    assert decision.detail["days_remaining"] == 29
    assert decision.detail["is_lifetime"] is False


def test_membership_lookup_is_injectable(gated, now):
    from access_engine.models.membership import UserMembership

    membership = UserMembership(id="m1", phone=PHONE, plan_name="Injected", start_date=now, is_lifetime=True)

    decision = resolve_access(PHONE, "CHALLENGE", now=now, memberships=StaticMemberships(membership))

    assert decision.reason == AccessReason.MEMBERSHIP_VALID
    assert decision.detail["days_remaining"] is None


def test_lapsed_grant_denies_even_before_sweep(gated, now):
    grant_access(PHONE, "SOS", duration_in_days=30, now=now - timedelta(days=31))

    decision = resolve_access(PHONE, "SOS", now=now)

    assert decision.has_access is False
    assert decision.reason == AccessReason.NO_ACCESS


def test_future_dated_grant_is_not_active_yet(gated, now):
    grant_access(PHONE, "SOS", duration_in_days=30, now=now + timedelta(days=1))

    assert resolve_access(PHONE, "SOS", now=now).has_access is False
    assert resolve_access(PHONE, "SOS", now=now + timedelta(days=2)).has_access is True


def test_no_access_lists_purchase_options(gated, catalog, now):
    decision = resolve_access(PHONE, "SOS", now=now)

    assert decision.reason == AccessReason.NO_ACCESS
    options = decision.purchase_options
    assert options["membership"] is True
    assert options["individual_feature"] is True
    assert options["feature_pricing"]["price"] == 100
    assert [b["feature_key"] for b in options["bundles"]] == ["SOS_CONNECT"]


def test_no_access_without_offer(gated, now):
    decision = resolve_access(PHONE, "CHALLENGE", now=now)

    assert decision.purchase_options["individual_feature"] is False
    assert decision.purchase_options["feature_pricing"] is None
    assert decision.purchase_options["bundles"] == []


@pytest.mark.parametrize("phone,key", [("12345", "SOS"), (PHONE, "s"), (PHONE, "sos-1"), ("", "SOS")])
def test_malformed_input_is_rejected(phone, key):
    with pytest.raises(ValidationError):
        resolve_access(phone, key)


def test_phone_is_normalized_to_last_ten_digits(gated, now):
    grant_access("+91 98765-43210", "SOS", duration_in_days=30, now=now - timedelta(hours=1))

    assert resolve_access("919876543210", "SOS", now=now).has_access is True
