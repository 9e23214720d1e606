"""In-process gateway for development and tests. Makes no network calls."""

from uuid import uuid4

from storefront.core.errors import GatewayError, GatewayUnavailable
from storefront.gateway.port import PaymentGateway, PaymentSession, VerificationResult


class FakeGateway(PaymentGateway):
    name = "fake"

    def __init__(self) -> None:
        self.verify_status: str = "SUCCESS"
        self.unavailable: bool = False
        self.refuse_reason: str | None = None
        self.calls: list[dict] = []

    def configure(self, verify_status: str = "SUCCESS", unavailable: bool = False, refuse_reason: str | None = None) -> None:
        self.verify_status = verify_status
        self.unavailable = unavailable
        self.refuse_reason = refuse_reason

    def create_payment(self, amount_minor: int, order_id: str, success_link: str, fail_link: str) -> PaymentSession:
        self.calls.append({
            "method": "create_payment",
            "amount_minor": amount_minor,
            "order_id": order_id,
            "success_link": success_link,
            "fail_link": fail_link,
        })
        if self.unavailable:
            raise GatewayUnavailable("fake gateway is down")
        if self.refuse_reason:
            raise GatewayError(self.refuse_reason, {"message": self.refuse_reason})
        payment_id = f"fake_pay_{uuid4().hex[:12]}"
        return PaymentSession(payment_id=payment_id, redirect_link=f"https://pay.example.test/{payment_id}")

    def verify_payment(self, payment_id: str) -> VerificationResult:
        self.calls.append({"method": "verify_payment", "payment_id": payment_id})
        if self.unavailable:
            raise GatewayUnavailable("fake gateway is down")
        success = self.verify_status == "SUCCESS"
        return VerificationResult(
            success=success,
            status=self.verify_status,
            transaction_id=f"fake_txn_{payment_id}" if success else None,
            raw={"result": {"status": self.verify_status}},
        )
