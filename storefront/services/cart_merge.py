"""Account carts and the guest-to-account merge run at login.

Merge rule: for a product present on both sides the persisted quantity
becomes ``max(persisted, guest)``, never the sum, so replaying the same merge
changes nothing. Guest quantities are capped at current stock; products that
cannot be bought right now are dropped and reported as skipped. The guest
store is cleared only after the merge has committed.
"""

from dataclasses import dataclass, field

import structlog
from sqlalchemy import case, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.core.errors import CartError
from storefront.db.models import Cart, CartItem, Product, utcnow
from storefront.db.session import atomic, insert_for

logger = structlog.get_logger(__name__)


@dataclass
class MergeResult:
    cart_id: int
    written: dict[int, int] = field(default_factory=dict)
    skipped: list[int] = field(default_factory=list)


def get_or_create_cart(db: Session, user_id: str) -> int:
    """Return the id of the user's single cart, creating it if needed.

    Two concurrent callers both issue the insert; the unique constraint on
    ``user_id`` makes the loser's insert a no-op and both read the same row.
    """
    table = Cart.__table__
    now = utcnow()
    db.execute(
        insert_for(db)(table)
        .values(user_id=user_id, created_at=now, updated_at=now)
        .on_conflict_do_nothing(index_elements=[table.c.user_id])
    )
    return db.scalars(select(Cart.id).where(Cart.user_id == user_id)).one()


def _raise_to(db: Session, cart_id: int, product_id: int, quantity: int) -> None:
    # Upsert that only ever raises the stored quantity.
    table = CartItem.__table__
    stmt = insert_for(db)(table).values(cart_id=cart_id, product_id=product_id, quantity=quantity, updated_at=utcnow())
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.cart_id, table.c.product_id],
        set_={
            "quantity": case(
                (table.c.quantity >= stmt.excluded.quantity, table.c.quantity),
                else_=stmt.excluded.quantity,
            ),
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)


def merge_guest_cart(db: Session, user_id: str, guest_items: dict[int, int]) -> MergeResult:
    """Fold ``guest_items`` ({product_id: qty}) into the user's persisted cart. Commits once."""
    try:
        with atomic(db):
            cart_id = get_or_create_cart(db, user_id)
            result = MergeResult(cart_id=cart_id)
            if not guest_items:
                return result

            existing = dict(db.execute(
                select(CartItem.product_id, CartItem.quantity).where(CartItem.cart_id == cart_id)
            ).all())
            products = {p.id: p for p in db.scalars(select(Product).where(Product.id.in_(list(guest_items))))}

            for product_id, guest_qty in sorted(guest_items.items()):
                product = products.get(product_id)
                if product is None or not product.is_active or guest_qty <= 0 or product.stock <= 0:
                    result.skipped.append(product_id)
                    continue
                current = existing.get(product_id, 0)
                target = max(current, min(guest_qty, product.stock))
                if target == current:
                    continue
                _raise_to(db, cart_id, product_id, target)
                result.written[product_id] = target
    except SQLAlchemyError:
        logger.error("cart.merge_failed", user_id=user_id, items=len(guest_items), exc_info=True)
        raise

    logger.info("cart.merged", user_id=user_id, cart_id=result.cart_id,
                written=len(result.written), skipped=len(result.skipped))
    return result


def merge_from_store(db: Session, user_id: str, session_id: str, store) -> MergeResult:
    """Merge the guest session's cart, then clear it. A failed merge leaves the guest cart intact."""
    guest_items = store.get(session_id)
    result = merge_guest_cart(db, user_id, guest_items)
    store.clear(session_id)
    return result


def active_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if product is None or not product.is_active:
        raise CartError(f"Product {product_id} is not available")
    return product


def check_quantity(product: Product, quantity: int) -> None:
    if quantity > product.stock:
        raise CartError(f"Only {product.stock} units of product {product.id} are in stock")


def cart_items(db: Session, user_id: str) -> list[CartItem]:
    stmt = (
        select(CartItem)
        .join(Cart, Cart.id == CartItem.cart_id)
        .where(Cart.user_id == user_id)
        .order_by(CartItem.id)
        .execution_options(populate_existing=True)
    )
    return list(db.scalars(stmt))


def add_item(db: Session, user_id: str, product_id: int, quantity: int) -> None:
    """Add ``quantity`` units on top of what the cart already holds."""
    with atomic(db):
        product = active_product(db, product_id)
        cart_id = get_or_create_cart(db, user_id)
        item = db.scalars(
            select(CartItem).where(CartItem.cart_id == cart_id, CartItem.product_id == product_id)
        ).one_or_none()
        total = quantity + (item.quantity if item else 0)
        check_quantity(product, total)
        if item is None:
            db.add(CartItem(cart_id=cart_id, product_id=product_id, quantity=total))
        else:
            item.quantity = total


def set_quantity(db: Session, user_id: str, product_id: int, quantity: int) -> None:
    """Set the line to exactly ``quantity``; zero removes it."""
    if quantity <= 0:
        remove_item(db, user_id, product_id)
        return
    with atomic(db):
        item = db.scalars(
            select(CartItem).join(Cart, Cart.id == CartItem.cart_id)
            .where(Cart.user_id == user_id, CartItem.product_id == product_id)
        ).one_or_none()
        if item is None:
            raise CartError(f"Product {product_id} is not in the cart")
        check_quantity(active_product(db, product_id), quantity)
        item.quantity = quantity


def remove_item(db: Session, user_id: str, product_id: int) -> None:
    cart_ids = select(Cart.id).where(Cart.user_id == user_id)
    with atomic(db):
        db.execute(
            delete(CartItem)
            .where(CartItem.cart_id.in_(cart_ids), CartItem.product_id == product_id)
            .execution_options(synchronize_session=False)
        )
