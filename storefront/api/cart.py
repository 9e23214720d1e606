from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from storefront.api.deps import cart_session, domain_errors, get_db
from storefront.api.schemas import CartItemAdd, CartItemUpdate, CartLineRead, CartRead, MergeOut
from storefront.core.auth import get_current_identity
from storefront.core.errors import CartError
from storefront.services import cart_merge
from storefront.store.cart_store import get_guest_store

router = APIRouter()

def _guest_cart(store, session_id: str) -> CartRead:
    items = store.get(session_id)
    return CartRead(items=[CartLineRead(product_id=pid, quantity=qty) for pid, qty in sorted(items.items())])

def _account_cart(db: Session, user_id: str) -> CartRead:
    return CartRead(items=[CartLineRead(product_id=i.product_id, quantity=i.quantity) for i in cart_merge.cart_items(db, user_id)])

# --- guest cart (Redis) ---
@router.get("/v1/guest-cart", response_model=CartRead)
def get_guest_cart(session_id: str = Depends(cart_session), store=Depends(get_guest_store)):
    return _guest_cart(store, session_id)

@router.post("/v1/guest-cart/items", response_model=CartRead, status_code=201)
def add_guest_item(payload: CartItemAdd, session_id: str = Depends(cart_session), store=Depends(get_guest_store), db: Session = Depends(get_db)):
    with domain_errors():
        product = cart_merge.active_product(db, payload.product_id)
        total = store.get(session_id).get(payload.product_id, 0) + payload.quantity
        cart_merge.check_quantity(product, total)
    store.put(session_id, payload.product_id, total)
    return _guest_cart(store, session_id)

@router.patch("/v1/guest-cart/items/{product_id}", response_model=CartRead)
def update_guest_item(product_id: int, payload: CartItemUpdate, session_id: str = Depends(cart_session), store=Depends(get_guest_store), db: Session = Depends(get_db)):
    if payload.quantity == 0:
        store.remove(session_id, product_id)
        return _guest_cart(store, session_id)
    with domain_errors():
        if product_id not in store.get(session_id):
            raise CartError(f"Product {product_id} is not in the cart")
        cart_merge.check_quantity(cart_merge.active_product(db, product_id), payload.quantity)
    store.put(session_id, product_id, payload.quantity)
    return _guest_cart(store, session_id)

@router.delete("/v1/guest-cart/items/{product_id}", response_model=CartRead)
def remove_guest_item(product_id: int, session_id: str = Depends(cart_session), store=Depends(get_guest_store)):
    store.remove(session_id, product_id)
    return _guest_cart(store, session_id)

# --- account cart (database) ---
@router.get("/v1/cart", response_model=CartRead)
def get_my_cart(identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    return _account_cart(db, identity["sub"])

@router.post("/v1/cart/items", response_model=CartRead, status_code=201)
def add_item(payload: CartItemAdd, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    with domain_errors():
        cart_merge.add_item(db, identity["sub"], payload.product_id, payload.quantity)
    return _account_cart(db, identity["sub"])

@router.patch("/v1/cart/items/{product_id}", response_model=CartRead)
def update_item(product_id: int, payload: CartItemUpdate, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    with domain_errors():
        cart_merge.set_quantity(db, identity["sub"], product_id, payload.quantity)
    return _account_cart(db, identity["sub"])

@router.delete("/v1/cart/items/{product_id}", response_model=CartRead)
def remove_item(product_id: int, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    cart_merge.remove_item(db, identity["sub"], product_id)
    return _account_cart(db, identity["sub"])

@router.post("/v1/cart/merge", response_model=MergeOut)
def merge(session_id: str = Depends(cart_session), identity: dict = Depends(get_current_identity), store=Depends(get_guest_store), db: Session = Depends(get_db)):
    result = cart_merge.merge_from_store(db, identity["sub"], session_id, store)
    return MergeOut(cart_id=result.cart_id, written=result.written, skipped=result.skipped)
