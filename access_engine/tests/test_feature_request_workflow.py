"""
Request -> approval -> payment -> grant workflow.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from access_engine.core.database import get_db_session, pending_feature_claims
from access_engine.core.errors import (
    ConflictError,
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
    PermissionError,
    ValidationError,
)
from access_engine.features.entitlements.service import AccessReason, resolve_access
from access_engine.features.feature_access.service import (
    expire_lapsed_access,
    grant_access,
    list_access_for_request,
)
from access_engine.features.feature_requests import service as workflow
from access_engine.features.feature_requests.service import (
    allocate_amount,
    approve_request,
    confirm_payment,
    get_request,
    list_requests,
    pending_count,
    record_payment_failure,
    reject_request,
    resend_payment_link,
    submit_request,
    withdraw_request,
)
from access_engine.features.pricing.service import get_pricing, increment_purchase_count, update_pricing
from access_engine.models.feature_request import RequestStatus
from access_engine.models.user_feature_access import AccessSource, AccessStatus, PaymentStatus
from access_engine.tests.mocks import FailingNotifier, FakeCouponValidator, FakePaymentProvider

PHONE = "9876543210"


def _claims(request_id):
    with get_db_session() as session:
        return session.execute(
            select(pending_feature_claims).where(pending_feature_claims.c.request_id == request_id)
        ).fetchall()


# ---------------------------------------------------------------------------
# submit / withdraw
# ---------------------------------------------------------------------------

def test_submit_creates_pending_request(catalog, now):
    request = submit_request("+91 98765 43210", "  asha   rao ", requested_features=["sos", "connect", "SOS"], now=now)

    assert request.status == RequestStatus.PENDING
    assert request.phone == PHONE
    assert request.name == "Asha Rao"
    assert request.requested_features == ["SOS", "CONNECT"]
    assert request.original_amount == 300
    assert len(_claims(request.id)) == 2


def test_submit_requires_features_or_bundle(catalog):
    with pytest.raises(ValidationError):
        submit_request(PHONE, "Asha")
    with pytest.raises(ValidationError):
        submit_request(PHONE, "Asha", requested_features=["SOS"], bundle_id=catalog["bundle"].id)


def test_submit_rejects_unknown_feature(catalog):
    with pytest.raises(ValidationError) as exc:
        submit_request(PHONE, "Asha", requested_features=["TELEPORT"])
    assert "Valid features are" in exc.value.message


def test_submit_rejects_feature_without_offer(now):
    with pytest.raises(ValidationError) as exc:
        submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)
    assert "not available for purchase" in exc.value.message


def test_overlapping_pending_request_conflicts(catalog, now):
    first = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)

    with pytest.raises(ConflictError) as exc:
        submit_request(PHONE, "Asha", requested_features=["CONNECT", "SOS"], now=now)

    assert exc.value.details["existing_request_id"] == first.id
    assert exc.value.details["can_withdraw"] is True
    assert exc.value.details["features"] == ["SOS"]
    # a different phone is unaffected
    submit_request("9000000001", "Ravi", requested_features=["SOS"], now=now)


def test_active_grant_blocks_new_request(catalog, now):
    grant_access(PHONE, "CHALLENGE", duration_in_days=30, now=now - timedelta(days=1))

    with pytest.raises(ConflictError) as exc:
        submit_request(PHONE, "Asha", requested_features=["CHALLENGE"], now=now)

    assert exc.value.message == "You already have active access to: CHALLENGE"


def test_expired_grant_does_not_block_new_request(catalog, now):
    grant_access(PHONE, "CHALLENGE", duration_in_days=30, now=now - timedelta(days=40))

    request = submit_request(PHONE, "Asha", requested_features=["CHALLENGE"], now=now)

    assert request.status == RequestStatus.PENDING


def test_withdraw_releases_claims(catalog, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)

    result = withdraw_request(request.id, PHONE, now=now)

    assert result["status"] == "WITHDRAWN"
    assert _claims(request.id) == []
    assert get_request(request.id, include_deleted=True).display_status == "WITHDRAWN"
    with pytest.raises(NotFoundError):
        get_request(request.id)
    # the feature can be requested again
    submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)


def test_withdraw_other_phone_is_forbidden(catalog, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)

    with pytest.raises(PermissionError):
        withdraw_request(request.id, "9000000001", now=now)


def test_withdraw_after_approval_is_invalid(catalog, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)
    approve_request(request.id, duration_in_days=30, notifier=notifier, now=now)

    with pytest.raises(InvalidStateError) as exc:
        withdraw_request(request.id, PHONE, now=now)
    assert exc.value.current_status == "PAYMENT_SENT"


def test_submit_with_coupon_stores_discount(catalog, now):
    coupons = FakeCouponValidator("SAVE10", 10)

    request = submit_request(PHONE, "Asha", requested_features=["CONNECT"], coupon_code="save10", coupons=coupons, now=now)

    assert request.coupon_code == "SAVE10"
    assert request.discount_amount == 20
    assert request.payment_amount == 180


def test_submit_with_invalid_coupon_fails(catalog, now):
    with pytest.raises(ValidationError) as exc:
        submit_request(PHONE, "Asha", requested_features=["CONNECT"], coupon_code="NOPE", coupons=FakeCouponValidator(), now=now)
    assert exc.value.message.startswith("Coupon error:")


# ---------------------------------------------------------------------------
# approve / reject / resend
# ---------------------------------------------------------------------------

def test_approve_issues_link_and_notifies(catalog, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS", "CONNECT"], now=now)

    result = approve_request(request.id, duration_in_days=30, notifier=notifier, now=now)

    approved = result.request
    assert approved.status == RequestStatus.PAYMENT_SENT
    assert approved.approved_features == ["SOS", "CONNECT"]
    assert approved.original_amount == 300
    assert approved.payment_amount == 300
    assert approved.order_id.startswith("FR_")
    assert approved.payment_expires_at == now + timedelta(days=7)
    assert result.payment_url.startswith("https://pay.test/mock-pay/")
    assert result.notification_sent is True
    assert notifier.sent[0]["description"] == "Feature Access: SOS + CONNECT"
    assert fake_provider.last_link["notes"]["features"] == "SOS,CONNECT"
    assert fake_provider.last_link["notes"]["duration_in_days"] == "30"
    assert _claims(request.id) == []


def test_approve_defaults_duration(catalog, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)

    approved = approve_request(request.id, notifier=notifier, now=now).request

    assert approved.duration_in_days == 30


def test_approve_subset_and_amount_override(catalog, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS", "CONNECT"], now=now)

    approved = approve_request(
        request.id, duration_in_days=60, approved_features=["connect"], payment_amount=150, notifier=notifier, now=now
    ).request

    assert approved.approved_features == ["CONNECT"]
    assert approved.original_amount == 200
    assert approved.payment_amount == 150
    assert approved.discount_amount == 50


def test_approve_rejects_negative_amount(catalog, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)

    with pytest.raises(ValidationError):
        approve_request(request.id, duration_in_days=30, payment_amount=-1, notifier=notifier, now=now)
    assert get_request(request.id).status == RequestStatus.PENDING


def test_approve_applies_submitted_coupon(catalog, fake_provider, notifier, now):
    coupons = FakeCouponValidator("SAVE10", 10)
    request = submit_request(PHONE, "Asha", requested_features=["SOS", "CONNECT"], coupon_code="SAVE10", coupons=coupons, now=now)

    approved = approve_request(request.id, duration_in_days=30, coupons=coupons, notifier=notifier, now=now).request

    assert approved.coupon_code == "SAVE10"
    assert approved.payment_amount == 270
    assert approved.discount_amount == 30


def test_provider_failure_persists_nothing(catalog, notifier, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)

    with pytest.raises(ExternalServiceError):
        approve_request(request.id, duration_in_days=30, provider=FakePaymentProvider(fail=True), notifier=notifier, now=now)

    unchanged = get_request(request.id)
    assert unchanged.status == RequestStatus.PENDING
    assert unchanged.order_id is None
    assert len(_claims(request.id)) == 1


def test_notification_failure_does_not_fail_approval(catalog, fake_provider, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)
    failing = FailingNotifier()

    result = approve_request(request.id, duration_in_days=30, notifier=failing, now=now)

    assert failing.calls == 1
    assert result.notification_sent is False
    assert result.request.status == RequestStatus.PAYMENT_SENT


def test_approve_twice_is_invalid(catalog, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)
    approve_request(request.id, duration_in_days=30, notifier=notifier, now=now)

    with pytest.raises(InvalidStateError):
        approve_request(request.id, duration_in_days=30, notifier=notifier, now=now)


def test_reject_requires_reason(catalog, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)

    with pytest.raises(ValidationError):
        reject_request(request.id, "   ", now=now)


def test_reject_releases_claims(catalog, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)

    rejected = reject_request(request.id, "Incomplete profile", now=now)

    assert rejected.status == RequestStatus.REJECTED
    assert rejected.rejection_reason == "Incomplete profile"
    assert _claims(request.id) == []
    with pytest.raises(InvalidStateError):
        reject_request(request.id, "again", now=now)
    submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)


def test_resend_link(catalog, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)
    with pytest.raises(InvalidStateError):
        resend_payment_link(request.id, notifier=notifier, now=now)

    approve_request(request.id, duration_in_days=30, send_notification=False, notifier=notifier, now=now)
    resend_payment_link(request.id, notifier=notifier, now=now)

    assert len(notifier.sent) == 1
    assert notifier.sent[0]["description"] == "SOS Tab Access"
    with pytest.raises(ExternalServiceError):
        resend_payment_link(request.id, notifier=FailingNotifier(), now=now)
    with pytest.raises(InvalidStateError):
        resend_payment_link(request.id, notifier=notifier, now=now + timedelta(days=8))


# ---------------------------------------------------------------------------
# payment confirmation
# ---------------------------------------------------------------------------

def test_paid_order_grants_every_approved_feature(catalog, gated, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS", "CONNECT"], now=now)
    order_id = approve_request(request.id, duration_in_days=30, notifier=notifier, now=now).request.order_id

    confirmation = confirm_payment(order_id, "pay_123", now=now)

    assert confirmation.already_processed is False
    assert confirmation.request.status == RequestStatus.COMPLETED
    records = {r.feature_key: r for r in confirmation.access}
    assert set(records) == {"SOS", "CONNECT"}
    for key, record in records.items():
        assert record.status == AccessStatus.ACTIVE
        assert record.payment_status == PaymentStatus.SUCCESS
        assert record.source == AccessSource.REQUEST
        assert record.order_id == f"{order_id}_{key}"
        assert record.request_order_id == order_id
        assert record.end_date == now + timedelta(days=30)
        assert record.days_remaining(now) == 30
        assert record.pricing_snapshot["price"] == catalog[key].price
    assert records["SOS"].amount_paid == 100
    assert records["CONNECT"].amount_paid == 200
    assert sorted(confirmation.request.user_feature_access_ids) == sorted(r.id for r in confirmation.access)
    assert get_pricing(catalog["SOS"].id).current_purchases == 1
    assert get_pricing(catalog["CONNECT"].id).current_purchases == 1
    assert resolve_access(PHONE, "CONNECT", now=now + timedelta(days=1)).reason == AccessReason.FEATURE_ACCESS_VALID


def test_confirm_is_idempotent(catalog, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)
    order_id = approve_request(request.id, duration_in_days=30, notifier=notifier, now=now).request.order_id

    first = confirm_payment(order_id, "pay_1", now=now)
    second = confirm_payment(order_id, "pay_1", now=now + timedelta(minutes=5))

    assert second.already_processed is True
    assert [a.id for a in second.access] == [a.id for a in first.access]
    assert len(list_access_for_request(request.id)) == 1
    assert get_pricing(catalog["SOS"].id).current_purchases == 1


def test_confirm_unknown_order():
    with pytest.raises(NotFoundError):
        confirm_payment("FR_0_missing", "pay_1")


def test_coupon_redeemed_on_confirmation(catalog, fake_provider, notifier, now):
    coupons = FakeCouponValidator("SAVE10", 10)
    request = submit_request(PHONE, "Asha", requested_features=["CONNECT"], coupon_code="SAVE10", coupons=coupons, now=now)
    order_id = approve_request(request.id, duration_in_days=30, coupons=coupons, notifier=notifier, now=now).request.order_id

    confirmation = confirm_payment(order_id, "pay_1", coupons=coupons, now=now)

    assert coupons.redeemed == ["SAVE10"]
    assert confirmation.access[0].amount_paid == 180


def test_bundle_approved_as_lifetime(catalog, gated, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", bundle_id=catalog["bundle"].id, now=now)
    assert request.requested_features == ["SOS", "CONNECT"]
    assert request.original_amount == 250

    order_id = approve_request(request.id, duration_in_days=0, notifier=notifier, now=now).request.order_id
    confirmation = confirm_payment(order_id, "pay_b", now=now)

    assert len(confirmation.access) == 2
    for record in confirmation.access:
        assert record.is_lifetime is True
        assert record.end_date is None
        assert record.days_remaining(now) is None
        assert record.amount_paid == 125
        assert record.pricing_snapshot["bundle_key"] == "SOS_CONNECT"
    assert get_pricing(catalog["bundle"].id).current_purchases == 1
    assert get_pricing(catalog["SOS"].id).current_purchases == 0

    far_future = now + timedelta(days=3650)
    assert expire_lapsed_access(now=far_future)["expired"] == 0
    assert resolve_access(PHONE, "SOS", now=far_future).has_access is True


def test_bundle_partially_approved_uses_individual_prices(catalog, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", bundle_id=catalog["bundle"].id, now=now)

    approved = approve_request(request.id, duration_in_days=30, approved_features=["SOS"], notifier=notifier, now=now).request

    assert approved.original_amount == 100
    assert approved.pricing_snapshot["bundle_id"] is None


def test_payment_failure_keeps_link_usable(catalog, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)
    order_id = approve_request(request.id, duration_in_days=30, notifier=notifier, now=now).request.order_id

    failed = record_payment_failure(order_id, "card declined")

    assert failed.status == RequestStatus.PAYMENT_SENT
    assert failed.last_payment_error == "card declined"
    assert confirm_payment(order_id, "pay_retry", now=now).request.status == RequestStatus.COMPLETED


# ---------------------------------------------------------------------------
# listing
# ---------------------------------------------------------------------------

def test_list_and_pending_count(catalog, fake_provider, notifier, now):
    a = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)
    submit_request("9000000001", "Ravi", requested_features=["CONNECT"], now=now)
    submit_request("9000000002", "Meera", requested_features=["CHALLENGE", "SOS"], now=now)
    approve_request(a.id, duration_in_days=30, notifier=notifier, now=now)

    assert pending_count() == 2
    assert list_requests(status="payment_sent")["items"][0].id == a.id
    sos = list_requests(feature_key="sos")
    assert sos["pagination"]["total_items"] == 2
    assert list_requests(search="ravi")["items"][0].phone == "9000000001"
    page = list_requests(limit=2, page=2)
    assert page["pagination"]["total_pages"] == 2
    assert len(page["items"]) == 1
    with pytest.raises(ValidationError):
        list_requests(status="BOGUS")


def test_allocate_amount_keeps_total():
    shares = allocate_amount(100, [1, 1, 1])
    assert shares == [33.33, 33.33, 33.34]
    assert allocate_amount(0, [0, 0]) == [0.0, 0.0]


def test_approved_is_not_a_request_status():
    with pytest.raises(ValidationError):
        list_requests(status="APPROVED")


# ---------------------------------------------------------------------------
# concurrent submissions and deliveries
# ---------------------------------------------------------------------------

def test_submit_losing_claim_race_conflicts(catalog, now, monkeypatch):
    first = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)
    real_overlap = workflow._pending_overlap
    calls = []

    def overlap_read_before_first_commit(phone, features):
        calls.append(list(features))
        return None if len(calls) == 1 else real_overlap(phone, features)

    monkeypatch.setattr(workflow, "_pending_overlap", overlap_read_before_first_commit)

    with pytest.raises(ConflictError) as exc:
        submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)

    assert exc.value.code == "pending_request_exists"
    assert exc.value.details["features"] == ["SOS"]
    assert exc.value.details["existing_request_id"] == first.id
    assert len(calls) == 2
    assert list_requests()["pagination"]["total_items"] == 1


def test_confirm_after_concurrent_completion_is_already_processed(catalog, fake_provider, notifier, now, monkeypatch):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)
    order_id = approve_request(request.id, duration_in_days=30, notifier=notifier, now=now).request.order_id
    stale = get_request(request.id)
    first = confirm_payment(order_id, "pay_1", now=now)

    real_lookup = workflow._request_by_order
    lookups = []

    def read_before_other_delivery_committed(session, order):
        lookups.append(order)
        return stale if len(lookups) == 1 else real_lookup(session, order)

    monkeypatch.setattr(workflow, "_request_by_order", read_before_other_delivery_committed)

    second = confirm_payment(order_id, "pay_1", now=now + timedelta(seconds=1))

    assert stale.status == RequestStatus.PAYMENT_SENT
    assert len(lookups) == 2
    assert second.already_processed is True
    assert second.request.status == RequestStatus.COMPLETED
    assert [a.id for a in second.access] == [a.id for a in first.access]
    assert len(list_access_for_request(request.id)) == 1
    assert get_pricing(catalog["SOS"].id).current_purchases == 1


# ---------------------------------------------------------------------------
# availability at approval
# ---------------------------------------------------------------------------

def test_approve_rechecks_purchase_limit(catalog, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], now=now)
    update_pricing(catalog["SOS"].id, {"max_purchases": 1})
    increment_purchase_count(catalog["SOS"].id)

    with pytest.raises(ValidationError) as exc:
        approve_request(request.id, duration_in_days=30, notifier=notifier, now=now)

    assert exc.value.message == "Purchase limit reached"
    assert exc.value.details["feature_key"] == "SOS"
    assert get_request(request.id).status == RequestStatus.PENDING
    assert fake_provider.links == []


def test_approve_rechecks_bundle_availability(catalog, fake_provider, notifier, now):
    request = submit_request(PHONE, "Asha", bundle_id=catalog["bundle"].id, now=now)
    update_pricing(catalog["bundle"].id, {"max_purchases": 1})
    increment_purchase_count(catalog["bundle"].id)

    with pytest.raises(ValidationError) as exc:
        approve_request(request.id, notifier=notifier, now=now)

    assert exc.value.message == "Purchase limit reached"
    assert exc.value.details["pricing_id"] == catalog["bundle"].id
