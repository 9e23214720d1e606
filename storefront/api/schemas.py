from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID
from pydantic import BaseModel, EmailStr, Field
from storefront.db.models import OrderStatus, PaymentMethod, PaymentStatus, VerificationAction, VerificationActor
from storefront.services.state_machine import OrderEvent

# --- checkout ---
class Address(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    phone: Optional[str] = None
    address: str = ""
    city: str = ""
    governorate: Optional[str] = None
    postal_code: Optional[str] = None

class CheckoutItem(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)

class Totals(BaseModel):
    """Minor units (millimes)."""
    subtotal: int = Field(ge=0)
    shipping_fee: int = Field(default=0, ge=0)
    fee: int = Field(default=0, ge=0)
    discount: int = Field(default=0, ge=0)

class CheckoutIn(BaseModel):
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method: PaymentMethod
    totals: Totals
    items: Optional[List[CheckoutItem]] = None
    is_wholesale: bool = False
    guest_email: Optional[EmailStr] = None
    guest_phone: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=2000)

class CheckoutOut(BaseModel):
    order_id: UUID
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    total: Decimal

# --- orders ---
class OrderItemRead(BaseModel):
    product_id: int
    product_snapshot: dict
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    is_wholesale_price: bool
    class Config: from_attributes = True

class PaymentVerificationRead(BaseModel):
    actor: VerificationActor
    verified_by: Optional[str] = None
    action: VerificationAction
    payment_method: PaymentMethod
    amount_verified: Decimal
    bank_reference: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime
    class Config: from_attributes = True

class OrderSummary(BaseModel):
    id: UUID
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    total: Decimal
    currency: str
    created_at: datetime
    class Config: from_attributes = True

class OrderRead(OrderSummary):
    user_id: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    customer_name: str
    subtotal: Decimal
    shipping_cost: Decimal
    fee: Decimal
    discount: Decimal
    shipping_address: dict
    billing_address: dict
    is_wholesale_order: bool
    payment_reference: Optional[str] = None
    bank_transfer_proof_url: Optional[str] = None
    notes: Optional[str] = None
    paid_at: Optional[datetime] = None
    items: List[OrderItemRead] = []
    verifications: List[PaymentVerificationRead] = []

class TransitionIn(BaseModel):
    event: OrderEvent

class ManualVerificationIn(BaseModel):
    action: VerificationAction
    amount: Optional[Decimal] = Field(default=None, ge=0)
    bank_reference: Optional[str] = Field(default=None, max_length=128)
    note: Optional[str] = None

# --- online payment ---
class InitiateIn(BaseModel):
    order_id: UUID
    amount: Decimal = Field(gt=0)
    success_url: str
    fail_url: str

class InitiateOut(BaseModel):
    redirect_link: str
    payment_id: str

class VerifyIn(BaseModel):
    order_id: UUID
    email: Optional[str] = None  # guest orders: the checkout email

class VerifyOut(BaseModel):
    success: bool
    status: str
    order: Optional[OrderRead] = None

# --- cart ---
class CartItemAdd(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)

class CartItemUpdate(BaseModel):
    quantity: int = Field(ge=0)

class CartLineRead(BaseModel):
    product_id: int
    quantity: int

class CartRead(BaseModel):
    items: List[CartLineRead] = []

class MergeOut(BaseModel):
    cart_id: int
    written: Dict[int, int] = {}
    skipped: List[int] = []
