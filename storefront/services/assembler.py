"""Checkout request -> order header and line-item payloads.

Pure function of its inputs: no database access. Prices arrive in minor units
and leave in persisted major units.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from storefront.core.config import settings
from storefront.core.errors import OrderValidationError
from storefront.db.models import OrderStatus, PaymentMethod, PaymentStatus
from storefront.services.currency import convert_totals, quantize_major, to_major_units


@dataclass(frozen=True)
class CartLine:
    """A cart row joined with the product data needed to price and snapshot it."""

    product_id: int
    quantity: int
    name_ar: str
    name_fr: str
    price: int  # minor units
    wholesale_price: int | None = None  # minor units
    wholesale_min_quantity: int = 0
    stock: int = 0
    is_active: bool = True
    is_wholesale_only: bool = False
    image: str | None = None


@dataclass(frozen=True)
class CheckoutTotals:
    """Caller-side totals, all in minor units. The grand total is never taken from here.

    ``subtotal`` is what the buyer was shown; when given it must equal the
    server-priced sum of the lines. ``None`` means price from the lines only.
    """

    subtotal: int | None = None
    shipping_fee: int = 0
    fee: int = 0
    discount: int = 0


@dataclass(frozen=True)
class CheckoutRequest:
    shipping_address: dict
    payment_method: PaymentMethod | str
    totals: CheckoutTotals
    items: list[CartLine]
    is_wholesale: bool = False
    wholesale_approved: bool = False
    user_id: str | None = None
    guest_email: str | None = None
    guest_phone: str | None = None
    billing_address: dict | None = None
    notes: str | None = None


@dataclass(frozen=True)
class ItemDraft:
    product_id: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    product_snapshot: dict
    is_wholesale_price: bool


@dataclass(frozen=True)
class OrderDraft:
    header: dict
    items: tuple[ItemDraft, ...] = field(default_factory=tuple)


def applicable_unit_price(line: CartLine, is_wholesale: bool) -> tuple[int, bool]:
    """Wholesale price iff the order is wholesale and the product has one."""
    if is_wholesale and line.wholesale_price is not None:
        return line.wholesale_price, True
    return line.price, False


def product_snapshot(line: CartLine) -> dict:
    return {
        "id": line.product_id,
        "name_ar": line.name_ar,
        "name_fr": line.name_fr,
        "sku": None,
        "image": line.image,
    }


def _parse_payment_method(value) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise OrderValidationError(f"Unknown payment method: {value!r}") from None


def validate(req: CheckoutRequest) -> PaymentMethod:
    method = _parse_payment_method(req.payment_method)

    if not req.items:
        raise OrderValidationError("Cart is empty")
    seen = set()
    for line in req.items:
        if line.quantity <= 0:
            raise OrderValidationError(f"Quantity for product {line.product_id} must be positive")
        if line.product_id in seen:
            raise OrderValidationError(f"Product {line.product_id} appears more than once")
        seen.add(line.product_id)

    t = req.totals
    for name in ("subtotal", "shipping_fee", "fee", "discount"):
        value = getattr(t, name)
        if name == "subtotal" and value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise OrderValidationError(f"totals.{name} must be a non-negative integer amount in minor units")

    if not (req.shipping_address or {}).get("full_name"):
        raise OrderValidationError("Shipping address requires full_name")
    if not req.user_id and not (req.guest_email or req.guest_phone):
        raise OrderValidationError("Guest checkout requires an email or phone number")

    if req.is_wholesale:
        _validate_wholesale(req)
    else:
        for line in req.items:
            if line.is_wholesale_only:
                raise OrderValidationError(f"Product {line.product_id} is sold to wholesale buyers only")
    return method


def _validate_wholesale(req: CheckoutRequest) -> None:
    if not req.wholesale_approved:
        raise OrderValidationError("Wholesale ordering requires an approved wholesale account")
    subtotal = 0
    for line in req.items:
        unit, wholesale = applicable_unit_price(line, True)
        if wholesale and line.quantity < line.wholesale_min_quantity:
            raise OrderValidationError(
                f"Product {line.product_id} requires at least {line.wholesale_min_quantity} units at wholesale price"
            )
        subtotal += unit * line.quantity
    minimum = settings.WHOLESALE_MINIMUM_ORDER_MINOR
    if subtotal < minimum:
        short = to_major_units(minimum - subtotal)
        raise OrderValidationError(f"Minimum wholesale order value not met, {short} {settings.CURRENCY} short")


def assemble(req: CheckoutRequest) -> OrderDraft:
    method = validate(req)

    items = []
    subtotal_minor = 0
    for line in req.items:
        unit_minor, wholesale = applicable_unit_price(line, req.is_wholesale)
        subtotal_minor += unit_minor * line.quantity
        unit_price = to_major_units(unit_minor)
        items.append(ItemDraft(
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=unit_price,
            total_price=quantize_major(unit_price * line.quantity),
            product_snapshot=product_snapshot(line),
            is_wholesale_price=wholesale,
        ))

    if req.totals.subtotal is not None and req.totals.subtotal != subtotal_minor:
        raise OrderValidationError(
            f"Cart subtotal is {to_major_units(subtotal_minor)} {settings.CURRENCY}, "
            f"not {to_major_units(req.totals.subtotal)}; prices have changed"
        )
    totals = convert_totals(subtotal_minor, req.totals.shipping_fee, req.totals.fee, req.totals.discount)
    header = {
        "user_id": req.user_id,
        "guest_email": req.guest_email,
        "guest_phone": req.guest_phone,
        "customer_name": req.shipping_address["full_name"],
        "status": OrderStatus.PENDING,
        "payment_method": method,
        "payment_status": PaymentStatus.PENDING,
        "subtotal": totals.subtotal,
        "shipping_cost": totals.shipping,
        "fee": totals.fee,
        "discount": totals.discount,
        "total": totals.total,
        "currency": settings.CURRENCY,
        "shipping_address": dict(req.shipping_address),
        "billing_address": dict(req.billing_address or req.shipping_address),
        "is_wholesale_order": req.is_wholesale,
        "notes": req.notes,
    }
    return OrderDraft(header=header, items=tuple(items))
