"""Payment gateway factory.

``get_gateway()`` builds the adapter named by ``PAYMENT_GATEWAY`` on first use;
``set_gateway()`` swaps it, e.g. for a FakeGateway in tests.
"""

from storefront.core.config import settings
from storefront.gateway.fake import FakeGateway
from storefront.gateway.flouci import FlouciGateway
from storefront.gateway.port import PaymentGateway, PaymentSession, VerificationResult

_ADAPTERS = {
    "flouci": FlouciGateway,
    "fake": FakeGateway,
}

_current_gateway: PaymentGateway | None = None


def get_gateway() -> PaymentGateway:
    global _current_gateway
    if _current_gateway is None:
        try:
            factory = _ADAPTERS[settings.PAYMENT_GATEWAY]
        except KeyError:
            raise RuntimeError(f"Unknown PAYMENT_GATEWAY {settings.PAYMENT_GATEWAY!r}") from None
        _current_gateway = factory()
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None


__all__ = [
    "FakeGateway", "FlouciGateway", "PaymentGateway", "PaymentSession", "VerificationResult",
    "get_gateway", "set_gateway", "reset_gateway",
]
