"""Error taxonomy for order settlement and payment handling."""


class OrderValidationError(ValueError):
    """Malformed checkout / payment request, rejected before any write."""


class OrderNotFound(LookupError):
    def __init__(self, order_id):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class SettlementError(RuntimeError):
    """Opaque failure of the settlement transaction. Nothing was persisted."""


class InsufficientStock(SettlementError):
    user_message = "Some items in your cart are no longer available in the requested quantity."

    def __init__(self, product_id, requested: int, available: int, reason: str = "insufficient_stock"):
        super().__init__(
            f"Insufficient stock for product {product_id}. Requested: {requested}, Available: {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.reason = reason


class IllegalTransition(Exception):
    def __init__(self, order_status, payment_status, event):
        super().__init__(
            f"Event '{event}' is not allowed for order status '{order_status}' "
            f"with payment status '{payment_status}'"
        )
        self.order_status = order_status
        self.payment_status = payment_status
        self.event = event


class GatewayUnavailable(Exception):
    """Transport-level gateway failure (timeout, connection error, unreadable reply). Retryable."""


class GatewayError(Exception):
    """The provider answered with an explicit, parseable failure."""

    def __init__(self, message: str, payload: dict | None = None):
        super().__init__(message)
        self.payload = payload or {}


class CartError(ValueError):
    """Cart write rejected: unknown or inactive product, or more than is in stock."""
