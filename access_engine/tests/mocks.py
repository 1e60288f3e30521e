from datetime import datetime
from typing import Dict, List, Optional

from access_engine.features.coupons.service import CouponValidation
from access_engine.features.payments.provider import PaymentLink, PaymentProviderError
from access_engine.features.payments.mock_provider import MockPaymentProvider


class FakePaymentProvider(MockPaymentProvider):
    """Mock provider that can be told to fail link creation or deactivation."""

    def __init__(self, fail: bool = False, fail_deactivation: bool = False):
        super().__init__(base_url="https://pay.test")
        self.fail = fail
        self.fail_deactivation = fail_deactivation

    def create_payment_link(self, **kwargs) -> PaymentLink:
        if self.fail:
            raise PaymentProviderError("gateway unavailable")
        return super().create_payment_link(**kwargs)

    def deactivate_payment_link(self, link_id: str) -> None:
        if self.fail_deactivation:
            raise PaymentProviderError("gateway unavailable")
        super().deactivate_payment_link(link_id)

    @property
    def last_link(self) -> Optional[dict]:
        return self.links[-1] if self.links else None


class RecordingNotifier:
    def __init__(self):
        self.sent: List[Dict] = []

    def send_payment_link(self, *, phone, name, description, url, amount, request_id) -> None:
        self.sent.append(
            {"phone": phone, "name": name, "description": description, "url": url, "amount": amount, "request_id": request_id}
        )


class FailingNotifier:
    def __init__(self):
        self.calls = 0

    def send_payment_link(self, **kwargs) -> None:
        self.calls += 1
        raise RuntimeError("whatsapp down")


class FakeCouponValidator:
    """Accepts one code with a fixed percentage; everything else is invalid."""

    def __init__(self, code: str = "SAVE10", percent: float = 10):
        self.code = code
        self.percent = percent
        self.redeemed: List[str] = []

    def validate(self, code, amount, phone, request_type):
        if code.strip().upper() != self.code:
            return CouponValidation(is_valid=False, discount_amount=0, final_amount=amount, coupon=None, error="Invalid coupon code")
        discount = round(amount * self.percent / 100, 2)
        return CouponValidation(is_valid=True, discount_amount=discount, final_amount=round(amount - discount, 2), coupon=None)

    def record_redemption(self, code: str) -> None:
        self.redeemed.append(code)


class StaticMemberships:
    def __init__(self, membership=None):
        self.membership = membership

    def find_active_membership(self, phone: str, now: Optional[datetime] = None):
        return self.membership
