"""Payment verification: online gateway round trip and manual staff confirmation.

Gateway calls are made with no row locks held. A successful verification
then re-reads the order under ``FOR UPDATE`` and applies ``CONFIRM_PAYMENT``
only if it is not already paid, so a callback and a client poll racing for
the same order record exactly one verification.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.core.errors import OrderNotFound, OrderValidationError
from storefront.db.models import (
    Order, OrderStatus, PaymentMethod, PaymentStatus, VerificationAction, VerificationActor, utcnow,
)
from storefront.db.session import atomic
from storefront.gateway import get_gateway
from storefront.gateway.port import PaymentGateway, PaymentSession
from storefront.kafka import producer
from storefront.services.currency import quantize_major, to_minor_units
from storefront.services.state_machine import (
    OrderEvent, VerificationRecord, apply_event, apply_locked, as_order_id, lock_order,
)

logger = structlog.get_logger(__name__)

MANUAL_METHODS = (PaymentMethod.COD, PaymentMethod.BANK_TRANSFER)
# Payment already settled; later callbacks must not touch the order.
SETTLED = (PaymentStatus.PAID, PaymentStatus.REFUNDED)


@dataclass(frozen=True)
class VerifyOutcome:
    success: bool
    status: str
    order: Order
    already_paid: bool = False


def _load(db: Session, order_id) -> Order:
    order = db.get(Order, as_order_id(order_id))
    if order is None:
        raise OrderNotFound(order_id)
    return order


def initiate_payment(
    db: Session,
    order_id,
    amount: Decimal,
    success_link: str,
    fail_link: str,
    gateway: PaymentGateway | None = None,
) -> PaymentSession:
    """Open a gateway session for a pending online-payment order and remember its id."""
    gateway = gateway or get_gateway()
    order = _load(db, order_id)

    if order.payment_method != PaymentMethod.FLOUCI:
        raise OrderValidationError("Order is not payable online")
    if order.status != OrderStatus.PENDING or order.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
        raise OrderValidationError(
            f"Order is {order.status.value} with payment {order.payment_status.value}; it cannot be paid"
        )
    if quantize_major(Decimal(str(amount))) != order.total:
        raise OrderValidationError(f"Amount {amount} does not match order total {order.total}")

    amount_minor = to_minor_units(order.total)
    order_key = str(order.id)
    db.commit()

    session = gateway.create_payment(amount_minor, order_key, success_link, fail_link)

    with atomic(db):
        order = lock_order(db, order_key)
        if order.payment_status == PaymentStatus.PAID:
            raise OrderValidationError("Order is already paid")
        order.payment_reference = session.payment_id
        order.updated_at = utcnow()

    logger.info("payment.initiated", order_id=order_key, order_number=order.order_number,
                gateway=gateway.name, payment_id=session.payment_id, amount_minor=amount_minor)
    return session


def verify_payment(
    db: Session,
    order_id,
    gateway: PaymentGateway | None = None,
    now: datetime | None = None,
) -> VerifyOutcome:
    """Ask the gateway whether the order's payment went through and settle it if so.

    Safe to call repeatedly: an already-paid or refunded order short-circuits without a
    gateway call and without a second audit row. A non-success answer leaves
    the order untouched. Transport failures propagate as GatewayUnavailable.
    """
    gateway = gateway or get_gateway()
    order = _load(db, order_id)
    if order.payment_status in SETTLED:
        return VerifyOutcome(True, "SUCCESS", order, already_paid=True)
    if not order.payment_reference:
        raise OrderValidationError("No gateway payment reference recorded for this order")

    payment_id = order.payment_reference
    order_key = str(order.id)
    db.commit()

    result = gateway.verify_payment(payment_id)
    if not result.success:
        logger.info("payment.not_successful", order_id=order_key, payment_id=payment_id, status=result.status)
        return VerifyOutcome(False, result.status, order)

    already_paid = False
    with atomic(db):
        order = lock_order(db, order_key)
        if order.payment_status in SETTLED:
            already_paid = True
        else:
            apply_locked(db, order, OrderEvent.CONFIRM_PAYMENT, record=VerificationRecord(
                actor=VerificationActor.SYSTEM,
                amount=order.total,
                gateway_payment_id=payment_id,
                gateway_transaction_id=result.transaction_id,
                note=f"Auto-verified via {gateway.name}",
            ), now=now)

    if already_paid:
        logger.info("payment.verify_raced", order_id=order_key, payment_id=payment_id)
    else:
        logger.info("payment.verified", order_id=order_key, order_number=order.order_number,
                    payment_id=payment_id, transaction_id=result.transaction_id)
        producer.publish_order_event(order, "order.updated", event=OrderEvent.CONFIRM_PAYMENT.value)
    return VerifyOutcome(True, result.status, order, already_paid=already_paid)


def verify_by_reference(db: Session, payment_id: str, gateway: PaymentGateway | None = None) -> VerifyOutcome:
    """Gateway callback entry point: find the order by its stored payment id."""
    order_id = db.scalars(select(Order.id).where(Order.payment_reference == payment_id)).one_or_none()
    if order_id is None:
        raise OrderNotFound(payment_id)
    return verify_payment(db, order_id, gateway=gateway)


def record_manual_verification(
    db: Session,
    order_id,
    action: VerificationAction | str,
    admin_id: str,
    amount: Decimal | None = None,
    bank_reference: str | None = None,
    note: str | None = None,
) -> Order:
    """Staff confirmation (or rejection) of a cash-on-delivery or bank-transfer payment."""
    try:
        action = VerificationAction(action)
    except ValueError:
        raise OrderValidationError(f"Unknown verification action: {action!r}") from None
    order = _load(db, order_id)
    if order.payment_method not in MANUAL_METHODS:
        raise OrderValidationError("Online payments are verified through the gateway")
    db.commit()

    event = OrderEvent.CONFIRM_PAYMENT if action == VerificationAction.APPROVE else OrderEvent.REJECT_PAYMENT
    record = VerificationRecord(
        actor=VerificationActor.ADMIN,
        verified_by=admin_id,
        amount=quantize_major(Decimal(str(amount))) if amount is not None else None,
        bank_reference=bank_reference,
        note=note,
    )
    return apply_event(db, order_id, event, record=record)
