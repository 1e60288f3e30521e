from datetime import timedelta

import pytest
from sqlalchemy import select

from access_engine.core.database import coupons, get_db_session
from access_engine.core.errors import ConflictError, ValidationError
from access_engine.features.coupons.service import DatabaseCouponValidator, create_coupon
from access_engine.features.feature_access.service import list_access_for_request
from access_engine.features.feature_requests.service import approve_request, confirm_payment, get_request, submit_request
from access_engine.models.feature_request import RequestStatus

PHONE = "9876543210"


def test_valid_coupon_with_cap(now):
    create_coupon("welcome", 50, max_discount_amount=60, applicable_to=["FEATURE"])

    result = DatabaseCouponValidator(now=now).validate("WELCOME", 200, PHONE, "FEATURE")

    assert result.is_valid is True
    assert result.discount_amount == 60
    assert result.final_amount == 140
    assert result.coupon.code == "WELCOME"


@pytest.mark.parametrize(
    "kwargs,amount,request_type,error",
    [
        ({"is_active": False}, 100, "FEATURE", "Coupon is not active"),
        ({"applicable_to": ["EVENT"]}, 100, "FEATURE", "Coupon is not applicable to feature purchases"),
        ({"min_purchase_amount": 500}, 100, "FEATURE", "Minimum purchase amount of 500 required"),
        ({"max_usage_limit": 0}, 100, "FEATURE", "Coupon usage limit reached"),
    ],
)
def test_coupon_rules(kwargs, amount, request_type, error, now):
    create_coupon("RULES", 10, **kwargs)

    result = DatabaseCouponValidator(now=now).validate("rules", amount, PHONE, request_type)

    assert result.is_valid is False
    assert result.error == error
    assert result.final_amount == amount


def test_coupon_validity_window(now):
    create_coupon("LATER", 10, valid_from=now + timedelta(days=1), valid_until=now + timedelta(days=2))
    create_coupon("OVER", 10, valid_from=now - timedelta(days=2), valid_until=now - timedelta(days=1))

    validator = DatabaseCouponValidator(now=now)
    assert validator.validate("LATER", 100, PHONE, "FEATURE").error == "Coupon is not yet valid"
    assert validator.validate("OVER", 100, PHONE, "FEATURE").error == "Coupon has expired"
    assert validator.validate("MISSING", 100, PHONE, "FEATURE").error == "Invalid coupon code"


def test_duplicate_code_conflicts():
    create_coupon("ONCE", 10)

    with pytest.raises(ConflictError):
        create_coupon("once", 20)


def test_bad_percent_is_rejected():
    with pytest.raises(ValidationError):
        create_coupon("BIG", 150)


def test_per_user_limit_counts_completed_purchases(catalog, fake_provider, notifier, now):
    create_coupon("FIRST", 10, max_usage_per_user=1)
    validator = DatabaseCouponValidator(now=now)

    request = submit_request(PHONE, "Asha", requested_features=["SOS"], coupon_code="FIRST", coupons=validator, now=now)
    order_id = approve_request(request.id, duration_in_days=30, coupons=validator, notifier=notifier, now=now).request.order_id
    confirm_payment(order_id, "pay_1", coupons=validator, now=now)

    result = validator.validate("FIRST", 100, PHONE, "FEATURE")
    assert result.error == "You have reached the maximum usage limit for this coupon"
    assert validator.validate("FIRST", 100, "9000000001", "FEATURE").is_valid is True
    assert result.coupon is None


def _usage_count(code):
    with get_db_session() as session:
        return session.execute(select(coupons.c.usage_count).where(coupons.c.code == code)).scalar()


def test_redemption_commits_with_the_completed_order(catalog, fake_provider, notifier, now, monkeypatch):
    create_coupon("SAVE", 10)
    validator = DatabaseCouponValidator(now=now)
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], coupon_code="SAVE", coupons=validator, now=now)
    order_id = approve_request(request.id, duration_in_days=30, coupons=validator, notifier=notifier, now=now).request.order_id

    def broken_redemption(self, code, *, session=None):
        raise RuntimeError("coupon table locked")

    monkeypatch.setattr(DatabaseCouponValidator, "record_redemption", broken_redemption)
    with pytest.raises(RuntimeError):
        confirm_payment(order_id, "pay_1", coupons=validator, now=now)

    assert get_request(request.id).status == RequestStatus.PAYMENT_SENT
    assert list_access_for_request(request.id) == []
    assert _usage_count("SAVE") == 0

    monkeypatch.undo()
    confirmation = confirm_payment(order_id, "pay_1", coupons=validator, now=now)
    redelivery = confirm_payment(order_id, "pay_1", coupons=validator, now=now)

    assert confirmation.request.status == RequestStatus.COMPLETED
    assert redelivery.already_processed is True
    assert _usage_count("SAVE") == 1


def test_default_validator_redeems_once(catalog, fake_provider, notifier, now):
    create_coupon("SAVE", 10)
    request = submit_request(PHONE, "Asha", requested_features=["SOS"], coupon_code="SAVE", now=now)
    order_id = approve_request(request.id, duration_in_days=30, notifier=notifier, now=now).request.order_id

    confirm_payment(order_id, "pay_1", now=now)
    confirm_payment(order_id, "pay_1", now=now)

    assert _usage_count("SAVE") == 1
