"""Order status x payment status transition table.

Every change to an order's status or payment status goes through
:func:`apply_event`, or :func:`apply_locked` for callers that already hold the
order lock. A (order status, payment status, event) key that is not in
``TRANSITIONS`` (or whose rule excludes the order's payment method) is
rejected with :class:`IllegalTransition` and nothing is written.

    pending ──► processing ──► shipped ──► delivered ──► refunded
       │                                                   ▲
       └──► cancelled ─────────────────────────────────────┘
    payment: pending ──► paid ──► refunded
                 └─────► failed ──► paid
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.core.errors import IllegalTransition, OrderNotFound, OrderValidationError
from storefront.db.models import (
    Order, OrderStatus, PaymentMethod, PaymentStatus, PaymentVerification, Product,
    VerificationAction, VerificationActor, utcnow,
)
from storefront.db.session import atomic
from storefront.kafka import producer
from storefront.services.settlement import lock_products

logger = structlog.get_logger(__name__)


class OrderEvent(str, Enum):
    CONFIRM_PAYMENT = "confirm_payment"
    REJECT_PAYMENT = "reject_payment"
    START_PROCESSING = "start_processing"
    SHIP = "ship"
    DELIVER = "deliver"
    CANCEL = "cancel"
    REFUND = "refund"


ALL_METHODS = frozenset(PaymentMethod)
# Cash on delivery is collected at the door, so fulfilment may run ahead of payment.
COD_ONLY = frozenset({PaymentMethod.COD})


@dataclass(frozen=True)
class Transition:
    order_status: OrderStatus
    payment_status: PaymentStatus
    methods: frozenset = ALL_METHODS
    restores_stock: bool = False
    audit: VerificationAction | None = None


O, P, E = OrderStatus, PaymentStatus, OrderEvent

TRANSITIONS: dict[tuple[OrderStatus, PaymentStatus, OrderEvent], Transition] = {
    # payment verification
    (O.PENDING, P.PENDING, E.CONFIRM_PAYMENT): Transition(O.PROCESSING, P.PAID, audit=VerificationAction.APPROVE),
    (O.PENDING, P.FAILED, E.CONFIRM_PAYMENT): Transition(O.PROCESSING, P.PAID, audit=VerificationAction.APPROVE),
    (O.PROCESSING, P.PENDING, E.CONFIRM_PAYMENT): Transition(O.PROCESSING, P.PAID, audit=VerificationAction.APPROVE),
    (O.SHIPPED, P.PENDING, E.CONFIRM_PAYMENT): Transition(O.SHIPPED, P.PAID, audit=VerificationAction.APPROVE),
    (O.DELIVERED, P.PENDING, E.CONFIRM_PAYMENT): Transition(O.DELIVERED, P.PAID, audit=VerificationAction.APPROVE),
    # money arrived after the customer cancelled: record it so it can be refunded
    (O.CANCELLED, P.PENDING, E.CONFIRM_PAYMENT): Transition(O.CANCELLED, P.PAID, audit=VerificationAction.APPROVE),
    (O.PENDING, P.PENDING, E.REJECT_PAYMENT): Transition(O.PENDING, P.FAILED, audit=VerificationAction.REJECT),

    # fulfilment
    (O.PENDING, P.PENDING, E.START_PROCESSING): Transition(O.PROCESSING, P.PENDING, methods=COD_ONLY),
    (O.PROCESSING, P.PENDING, E.SHIP): Transition(O.SHIPPED, P.PENDING, methods=COD_ONLY),
    (O.PROCESSING, P.PAID, E.SHIP): Transition(O.SHIPPED, P.PAID),
    (O.SHIPPED, P.PENDING, E.DELIVER): Transition(O.DELIVERED, P.PENDING, methods=COD_ONLY),
    (O.SHIPPED, P.PAID, E.DELIVER): Transition(O.DELIVERED, P.PAID),

    # cancellation and refund
    (O.PENDING, P.PENDING, E.CANCEL): Transition(O.CANCELLED, P.PENDING, restores_stock=True),
    (O.PENDING, P.FAILED, E.CANCEL): Transition(O.CANCELLED, P.FAILED, restores_stock=True),
    (O.CANCELLED, P.PAID, E.REFUND): Transition(O.REFUNDED, P.REFUNDED),
    (O.DELIVERED, P.PAID, E.REFUND): Transition(O.REFUNDED, P.REFUNDED, restores_stock=True),
}

del O, P, E


@dataclass(frozen=True)
class VerificationRecord:
    """Who verified a payment, and the method-specific evidence."""

    actor: VerificationActor
    verified_by: str | None = None
    amount: Decimal | None = None
    bank_reference: str | None = None
    gateway_payment_id: str | None = None
    gateway_transaction_id: str | None = None
    note: str | None = None


def resolve(order: Order, event: OrderEvent) -> Transition:
    key = (order.status, order.payment_status, event)
    transition = TRANSITIONS.get(key)
    if transition is None or order.payment_method not in transition.methods:
        raise IllegalTransition(order.status.value, order.payment_status.value, event.value)
    return transition


def allowed_events(order: Order) -> list[OrderEvent]:
    return [
        event for (o, p, event), t in TRANSITIONS.items()
        if o == order.status and p == order.payment_status and order.payment_method in t.methods
    ]


def lock_order(db: Session, order_id) -> Order:
    stmt = (
        select(Order)
        .where(Order.id == as_order_id(order_id))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    order = db.scalars(stmt).one_or_none()
    if order is None:
        raise OrderNotFound(order_id)
    return order


def as_order_id(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise OrderNotFound(value) from None


def _restore_stock(db: Session, order: Order) -> None:
    quantities: dict[int, int] = {}
    for item in order.items:
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
    lock_products(db, quantities)
    for product_id, qty in quantities.items():
        db.execute(update(Product).where(Product.id == product_id).values(stock=Product.stock + qty))


def _write_audit(db: Session, order: Order, action: VerificationAction, record: VerificationRecord) -> None:
    row = PaymentVerification(
        order_id=order.id,
        actor=record.actor,
        verified_by=record.verified_by,
        payment_method=order.payment_method,
        action=action,
        amount_verified=record.amount if record.amount is not None else order.total,
        bank_reference=record.bank_reference,
        gateway_payment_id=record.gateway_payment_id,
        gateway_transaction_id=record.gateway_transaction_id,
        note=record.note,
    )
    # The status change is already flushed; a failed audit insert only rolls back its savepoint.
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except SQLAlchemyError:
        logger.error(
            "payment_verification.write_failed",
            order_id=str(order.id), order_number=order.order_number, action=action.value,
            actor=record.actor.value, exc_info=True,
        )


def apply_locked(
    db: Session,
    order: Order,
    event: OrderEvent,
    record: VerificationRecord | None = None,
    now: datetime | None = None,
) -> Transition:
    """Apply ``event`` to an order the caller has locked inside an open transaction."""
    transition = resolve(order, event)
    if transition.audit is not None and record is None:
        raise OrderValidationError(f"'{event.value}' requires a payment verification record")

    now = now or utcnow()
    previous = (order.status, order.payment_status)
    order.status = transition.order_status
    order.payment_status = transition.payment_status
    order.updated_at = now
    if transition.payment_status == PaymentStatus.PAID and previous[1] != PaymentStatus.PAID:
        order.paid_at = now
    db.flush()

    if transition.restores_stock:
        _restore_stock(db, order)
    if transition.audit is not None:
        _write_audit(db, order, transition.audit, record)

    logger.info(
        "order.transition",
        order_id=str(order.id), order_number=order.order_number, order_event=event.value,
        from_status=previous[0].value, from_payment=previous[1].value,
        to_status=order.status.value, to_payment=order.payment_status.value,
    )
    return transition


def apply_event(
    db: Session,
    order_id,
    event: OrderEvent | str,
    record: VerificationRecord | None = None,
    now: datetime | None = None,
) -> Order:
    """Lock the order, apply ``event`` and commit. Publishes ``order.updated`` after commit."""
    try:
        event = OrderEvent(event)
    except ValueError:
        raise OrderValidationError(f"Unknown order event: {event!r}") from None

    try:
        with atomic(db):
            order = lock_order(db, order_id)
            apply_locked(db, order, event, record=record, now=now)
    except IllegalTransition as exc:
        logger.info("order.transition_rejected", order_id=str(order_id), order_event=exc.event,
                    status=exc.order_status, payment_status=exc.payment_status)
        raise

    producer.publish_order_event(order, "order.updated", event=event.value)
    return order
