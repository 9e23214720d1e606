"""Checkout entry point: load product data, assemble the order, settle it."""

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.core.errors import InsufficientStock, OrderValidationError
from storefront.db.models import Product
from storefront.services.assembler import CartLine, CheckoutRequest, CheckoutTotals, assemble
from storefront.services.cart_merge import cart_items
from storefront.services.currency import to_minor_units
from storefront.services.settlement import SettlementResult, settle

logger = structlog.get_logger(__name__)


def cart_line(product: Product, quantity: int) -> CartLine:
    images = product.images or []
    return CartLine(
        product_id=product.id,
        quantity=quantity,
        name_ar=product.name_ar,
        name_fr=product.name_fr,
        price=to_minor_units(product.price),
        wholesale_price=to_minor_units(product.wholesale_price) if product.wholesale_price is not None else None,
        wholesale_min_quantity=product.wholesale_min_quantity or 0,
        stock=product.stock,
        is_active=product.is_active,
        is_wholesale_only=product.is_wholesale_only,
        image=images[0] if images else None,
    )


def load_lines(db: Session, items: list[tuple[int, int]]) -> list[CartLine]:
    """Join requested (product_id, qty) pairs with current product rows, keeping request order."""
    ids = [pid for pid, _ in items]
    products = {p.id: p for p in db.scalars(select(Product).where(Product.id.in_(ids)))}
    lines = []
    for product_id, qty in items:
        product = products.get(product_id)
        if product is None:
            raise InsufficientStock(product_id, qty, 0, reason="not_found")
        lines.append(cart_line(product, qty))
    return lines


def checkout(
    db: Session,
    *,
    shipping_address: dict,
    payment_method: str,
    totals: CheckoutTotals,
    items: list[tuple[int, int]] | None = None,
    user_id: str | None = None,
    wholesale_approved: bool = False,
    is_wholesale: bool = False,
    guest_email: str | None = None,
    guest_phone: str | None = None,
    billing_address: dict | None = None,
    notes: str | None = None,
) -> SettlementResult:
    if not items and user_id:
        items = [(ci.product_id, ci.quantity) for ci in cart_items(db, user_id)]
    if not items:
        raise OrderValidationError("Cart is empty")

    request = CheckoutRequest(
        shipping_address=shipping_address,
        payment_method=payment_method,
        totals=totals,
        items=load_lines(db, items),
        is_wholesale=is_wholesale,
        wholesale_approved=wholesale_approved,
        user_id=user_id,
        guest_email=guest_email,
        guest_phone=guest_phone,
        billing_address=billing_address,
        notes=notes,
    )
    draft = assemble(request)
    # End the read transaction; settlement opens its own.
    db.rollback()
    return settle(db, draft)
