from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy import select
from sqlalchemy.orm import Session
import structlog

from storefront.api.deps import can_see_order, domain_errors, get_db
from storefront.api.schemas import (
    CheckoutIn, CheckoutOut, ManualVerificationIn, OrderRead, OrderSummary, TransitionIn,
)
from storefront.core.auth import (
    get_current_identity, get_optional_identity, is_admin, is_wholesale_approved, require_admin,
)
from storefront.db.models import Order, PaymentMethod, PaymentStatus, utcnow
from storefront.services import storage
from storefront.services.assembler import CheckoutTotals
from storefront.services.checkout import checkout as run_checkout
from storefront.services.payments import record_manual_verification
from storefront.services.state_machine import OrderEvent, apply_event

logger = structlog.get_logger(__name__)

router = APIRouter()

PAYMENT_EVENTS = (OrderEvent.CONFIRM_PAYMENT, OrderEvent.REJECT_PAYMENT)

def _get_order(db: Session, order_id: UUID) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order

@router.post("/v1/orders/checkout", response_model=CheckoutOut, status_code=201)
def checkout(payload: CheckoutIn, identity: dict | None = Depends(get_optional_identity), db: Session = Depends(get_db)):
    t = payload.totals
    items = [(it.product_id, it.quantity) for it in payload.items] if payload.items else None
    with domain_errors():
        result = run_checkout(
            db,
            shipping_address=payload.shipping_address.model_dump(),
            billing_address=payload.billing_address.model_dump() if payload.billing_address else None,
            payment_method=payload.payment_method,
            totals=CheckoutTotals(subtotal=t.subtotal, shipping_fee=t.shipping_fee, fee=t.fee, discount=t.discount),
            items=items,
            user_id=identity.get("sub") if identity else None,
            wholesale_approved=is_wholesale_approved(identity),
            is_wholesale=payload.is_wholesale,
            guest_email=payload.guest_email,
            guest_phone=payload.guest_phone,
            notes=payload.notes,
        )
    order = _get_order(db, result.order_id)
    return CheckoutOut(
        order_id=order.id,
        order_number=order.order_number,
        status=order.status,
        payment_status=order.payment_status,
        total=order.total,
    )

@router.get("/v1/orders", response_model=List[OrderSummary])
def list_orders(
    user_id: Optional[str] = None,
    limit: int = 50,
    identity: dict = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    stmt = select(Order).order_by(Order.created_at.desc()).limit(max(1, min(limit, 200)))
    if is_admin(identity):
        if user_id:
            stmt = stmt.where(Order.user_id == user_id)
    else:
        stmt = stmt.where(Order.user_id == identity.get("sub"))
    return list(db.scalars(stmt))

@router.get("/v1/orders/{order_id}", response_model=OrderRead)
def get_order(
    order_id: UUID,
    email: Optional[str] = None,
    identity: dict | None = Depends(get_optional_identity),
    db: Session = Depends(get_db),
):
    order = _get_order(db, order_id)
    if not can_see_order(order, identity, email):
        # Same answer as a missing order: ids are not probeable.
        raise HTTPException(status_code=404, detail="Order not found")
    return order

@router.post("/v1/orders/{order_id}/cancel", response_model=OrderRead)
def cancel_order(order_id: UUID, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    order = _get_order(db, order_id)
    if not is_admin(identity) and order.user_id != identity.get("sub"):
        raise HTTPException(status_code=404, detail="Order not found")
    with domain_errors():
        return apply_event(db, order_id, OrderEvent.CANCEL)

@router.post("/v1/orders/{order_id}/transitions", response_model=OrderRead)
def transition_order(
    order_id: UUID,
    payload: TransitionIn,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if payload.event in PAYMENT_EVENTS:
        raise HTTPException(status_code=400, detail="Use the payment verification endpoint")
    with domain_errors():
        order = apply_event(db, order_id, payload.event)
    logger.info("order.admin_transition", order_id=str(order_id), order_event=payload.event.value, admin=admin.get("sub"))
    return order

@router.post("/v1/orders/{order_id}/payment/verify", response_model=OrderRead)
def verify_manual_payment(
    order_id: UUID,
    payload: ManualVerificationIn,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    with domain_errors():
        return record_manual_verification(
            db, order_id, payload.action, admin_id=admin["sub"],
            amount=payload.amount, bank_reference=payload.bank_reference, note=payload.note,
        )

@router.post("/v1/orders/{order_id}/payment-proof", response_model=OrderRead)
def upload_payment_proof(
    order_id: UUID,
    file: UploadFile = File(...),
    identity: dict = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    order = _get_order(db, order_id)
    if order.user_id != identity.get("sub"):
        raise HTTPException(status_code=404, detail="Order not found")
    if order.payment_method != PaymentMethod.BANK_TRANSFER:
        raise HTTPException(status_code=400, detail="Payment proof applies to bank transfer orders only")
    if order.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
        raise HTTPException(status_code=400, detail=f"Payment is already {order.payment_status.value}")
    if file.content_type not in storage.ALLOWED_PROOF_TYPES:
        raise HTTPException(status_code=400, detail="Unsupported file type")
    data = file.file.read(storage.MAX_PROOF_BYTES + 1)
    if not data:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(data) > storage.MAX_PROOF_BYTES:
        raise HTTPException(status_code=413, detail="File too large")

    key, url = storage.upload_payment_proof(order.order_number, data, file.content_type)
    order.bank_transfer_proof_url = url
    order.updated_at = utcnow()
    db.commit()
    logger.info("order.payment_proof_uploaded", order_id=str(order.id), key=key, size=len(data))
    return order
