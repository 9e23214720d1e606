"""Online payment gateway port.

Adapters create a hosted payment session for an order and later report
whether that session was paid. They do not touch the database: applying the
result is the payment service's job.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class PaymentSession:
    """A hosted checkout created at the provider."""

    payment_id: str
    redirect_link: str


@dataclass(frozen=True)
class VerificationResult:
    """The provider's verdict on a payment session."""

    success: bool
    status: str
    transaction_id: str | None = None
    raw: dict = field(default_factory=dict)


class PaymentGateway(ABC):
    name: str = "gateway"

    @abstractmethod
    def create_payment(self, amount_minor: int, order_id: str, success_link: str, fail_link: str) -> PaymentSession:
        """Open a payment session for ``amount_minor`` and return its correlation id and redirect link.

        Raises GatewayUnavailable on transport failure and GatewayError when the
        provider explicitly refuses.
        """
        ...

    @abstractmethod
    def verify_payment(self, payment_id: str) -> VerificationResult:
        """Ask the provider whether ``payment_id`` was paid.

        A readable non-success answer is returned, not raised. Transport
        failures raise GatewayUnavailable.
        """
        ...
