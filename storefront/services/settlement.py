"""Atomic settlement: order number, order header, stock re-check, items, stock decrement.

Everything happens inside one database transaction. Product rows are locked
with ``SELECT ... FOR UPDATE`` in ascending id order before any quantity is
compared, and stay locked until commit, so two settlements racing for the last
unit serialize and the loser sees the already-decremented stock.
"""

import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.core.errors import InsufficientStock, SettlementError
from storefront.db.models import Cart, CartItem, Order, OrderItem, OrderNumberCounter, Product, utcnow
from storefront.db.session import atomic, insert_for
from storefront.kafka import producer
from storefront.services.assembler import OrderDraft

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SettlementResult:
    order_id: uuid.UUID
    order_number: str


def format_order_number(day: date, sequence: int) -> str:
    return f"ORD-{day:%Y%m%d}-{sequence:04d}"


def next_order_number(db: Session, day: date) -> str:
    """Allocate the next per-day sequence.

    The upsert takes the row lock on the day's counter and keeps it until the
    surrounding transaction ends, so concurrent settlements on the same day
    queue up here. A rolled-back settlement gives its number back.
    """
    table = OrderNumberCounter.__table__
    stmt = (
        insert_for(db)(table)
        .values(day=day, last_value=1)
        .on_conflict_do_update(index_elements=[table.c.day], set_={"last_value": table.c.last_value + 1})
        .returning(table.c.last_value)
    )
    sequence = db.execute(stmt).scalar_one()
    return format_order_number(day, sequence)


def lock_products(db: Session, product_ids) -> dict[int, Product]:
    """Lock product rows for the rest of the transaction, lowest id first."""
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    stmt = (
        select(Product)
        .where(Product.id.in_(ids))
        .order_by(Product.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return {p.id: p for p in db.scalars(stmt)}


def _check_stock(locked: dict[int, Product], wanted: Counter) -> None:
    for product_id, qty in wanted.items():
        product = locked.get(product_id)
        if product is None:
            raise InsufficientStock(product_id, qty, 0, reason="not_found")
        if not product.is_active:
            raise InsufficientStock(product_id, qty, 0, reason="inactive")
        if product.stock < qty:
            raise InsufficientStock(product_id, qty, product.stock)


def _decrement(db: Session, product_id: int, qty: int, available: int) -> None:
    # Guarded so the stock can never go negative even if a lock was skipped.
    res = db.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock >= qty)
        .values(stock=Product.stock - qty)
    )
    if res.rowcount != 1:
        raise InsufficientStock(product_id, qty, available)


def _clear_user_cart(db: Session, user_id: str) -> None:
    cart_ids = select(Cart.id).where(Cart.user_id == user_id)
    db.execute(delete(CartItem).where(CartItem.cart_id.in_(cart_ids)).execution_options(synchronize_session=False))


def settle(db: Session, draft: OrderDraft, now: datetime | None = None) -> SettlementResult:
    """Persist ``draft`` as a pending order and decrement stock, all or nothing.

    Raises :class:`InsufficientStock` when any line cannot be served, and
    :class:`SettlementError` for any other persistence failure. In both cases
    no order, item or stock change survives.
    """
    now = now or utcnow()
    wanted = Counter()
    for item in draft.items:
        wanted[item.product_id] += item.quantity

    try:
        with atomic(db):
            order_number = next_order_number(db, now.date())
            order = Order(id=uuid.uuid4(), order_number=order_number, created_at=now, updated_at=now, **draft.header)
            db.add(order)
            db.flush()

            locked = lock_products(db, wanted)
            _check_stock(locked, wanted)

            for item in draft.items:
                db.add(OrderItem(
                    order_id=order.id,
                    product_id=item.product_id,
                    product_snapshot=item.product_snapshot,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    total_price=item.total_price,
                    is_wholesale_price=item.is_wholesale_price,
                ))
            db.flush()

            for product_id, qty in wanted.items():
                _decrement(db, product_id, qty, locked[product_id].stock)

            if order.user_id:
                _clear_user_cart(db, order.user_id)
    except InsufficientStock as exc:
        logger.info(
            "settlement.insufficient_stock",
            product_id=exc.product_id, requested=exc.requested, available=exc.available, reason=exc.reason,
        )
        raise
    except SQLAlchemyError as exc:
        logger.error("settlement.failed", error=str(exc))
        raise SettlementError("Order could not be created") from exc

    logger.info(
        "settlement.committed",
        order_id=str(order.id), order_number=order.order_number,
        items=len(draft.items), total=str(order.total), payment_method=order.payment_method.value,
    )
    producer.publish_order_event(order, "order.created")
    return SettlementResult(order_id=order.id, order_number=order.order_number)
