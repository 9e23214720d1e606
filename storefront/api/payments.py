from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from storefront.api.deps import can_see_order, domain_errors, get_db
from storefront.api.schemas import InitiateIn, InitiateOut, VerifyIn, VerifyOut
from storefront.core.auth import get_optional_identity, is_admin
from storefront.db.models import Order
from storefront.gateway import get_gateway
from storefront.gateway.port import PaymentGateway
from storefront.services.payments import initiate_payment, verify_by_reference, verify_payment

router = APIRouter()

@router.post("/v1/payments/flouci/initiate", response_model=InitiateOut)
def initiate(
    payload: InitiateIn,
    identity: dict | None = Depends(get_optional_identity),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    order = db.get(Order, payload.order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.user_id and not is_admin(identity) and (not identity or identity.get("sub") != order.user_id):
        raise HTTPException(status_code=404, detail="Order not found")
    with domain_errors():
        session = initiate_payment(db, payload.order_id, payload.amount, payload.success_url, payload.fail_url, gateway=gateway)
    return InitiateOut(redirect_link=session.redirect_link, payment_id=session.payment_id)

@router.post("/v1/payments/flouci/verify", response_model=VerifyOut)
def verify(
    payload: VerifyIn,
    identity: dict | None = Depends(get_optional_identity),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    with domain_errors():
        outcome = verify_payment(db, payload.order_id, gateway=gateway)
    # The order body is only for callers allowed to read the order.
    show = outcome.success and can_see_order(outcome.order, identity, payload.email)
    return VerifyOut(success=outcome.success, status=outcome.status, order=outcome.order if show else None)

@router.get("/v1/payments/flouci/callback", response_model=VerifyOut)
def callback(payment_id: str, gateway: PaymentGateway = Depends(get_gateway), db: Session = Depends(get_db)):
    with domain_errors():
        outcome = verify_by_reference(db, payment_id, gateway=gateway)
    return VerifyOut(success=outcome.success, status=outcome.status)
