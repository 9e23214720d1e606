import re
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from storefront.core.errors import InsufficientStock, SettlementError
from storefront.db.models import Cart, CartItem, Order, OrderItem, OrderStatus, PaymentStatus, Product
from storefront.services.settlement import format_order_number, next_order_number

ORDER_NUMBER = re.compile(r"^ORD-\d{8}-\d{4}$")


def stock_of(session, product_id):
    return session.scalar(select(Product.stock).where(Product.id == product_id))


class TestEndToEnd:
    def test_cod_checkout_decrements_stock_and_stays_pending(self, make_product, place_order, fresh):
        last_units = make_product(stock=2)
        plenty = make_product(stock=10, price="12.500")

        result = place_order([(last_units.id, 2), (plenty.id, 1)], subtotal=26500)

        check = fresh()
        order = check.get(Order, result.order_id)
        assert order.order_number == result.order_number
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.total == Decimal("33.500")
        assert stock_of(check, last_units.id) == 0
        assert stock_of(check, plenty.id) == 9
        assert [(i.product_id, i.quantity) for i in order.items] == [(last_units.id, 2), (plenty.id, 1)]
        assert order.items[1].unit_price == Decimal("12.500")
        assert order.items[1].total_price == Decimal("12.500")

    def test_publishes_order_created_after_commit(self, make_product, place_order, events):
        product = make_product()
        result = place_order([(product.id, 1)], subtotal=7000)
        assert len(events) == 1
        topic, key, value = events[0]
        assert topic == "order.events"
        assert key == str(result.order_id)
        assert value["type"] == "order.created"
        assert value["order_number"] == result.order_number

    def test_snapshot_survives_catalog_edit(self, db, make_product, place_order, fresh):
        product = make_product(name_fr="Harissa")
        result = place_order([(product.id, 1)], subtotal=7000)

        product = db.get(Product, product.id)
        product.name_fr = "Harissa piquante"
        product.price = Decimal("9.000")
        db.commit()

        item = fresh().scalars(select(OrderItem).where(OrderItem.order_id == result.order_id)).one()
        assert item.product_snapshot["name_fr"] == "Harissa"
        assert item.unit_price == Decimal("7.000")

    def test_owner_cart_is_cleared(self, db, make_product, place_order, fresh):
        product = make_product()
        cart = Cart(user_id="user-1")
        db.add(cart)
        db.flush()
        db.add(CartItem(cart_id=cart.id, product_id=product.id, quantity=2))
        db.commit()

        place_order(None, user_id="user-1", subtotal=14000)

        check = fresh()
        assert check.scalar(select(func.count()).select_from(CartItem)) == 0
        assert stock_of(check, product.id) == 8


class TestInsufficientStock:
    def test_whole_transaction_rolls_back(self, make_product, place_order, fresh, events):
        ok = make_product(stock=5)
        short = make_product(stock=1)

        with pytest.raises(InsufficientStock) as exc:
            place_order([(ok.id, 2), (short.id, 3)], subtotal=35000)

        assert exc.value.product_id == short.id
        assert exc.value.requested == 3
        assert exc.value.available == 1
        assert isinstance(exc.value, SettlementError)
        assert exc.value.user_message.startswith("Some items in your cart")

        check = fresh()
        assert check.scalar(select(func.count()).select_from(Order)) == 0
        assert check.scalar(select(func.count()).select_from(OrderItem)) == 0
        assert stock_of(check, ok.id) == 5
        assert stock_of(check, short.id) == 1
        assert events == []

    def test_inactive_product(self, make_product, place_order):
        product = make_product(is_active=False)
        with pytest.raises(InsufficientStock) as exc:
            place_order([(product.id, 1)], subtotal=7000)
        assert exc.value.reason == "inactive"

    def test_unknown_product(self, place_order):
        with pytest.raises(InsufficientStock) as exc:
            place_order([(9999, 1)], subtotal=7000)
        assert exc.value.reason == "not_found"

    def test_failed_settlement_returns_its_order_number(self, make_product, place_order):
        product = make_product(stock=1)
        with pytest.raises(InsufficientStock):
            place_order([(product.id, 2)], subtotal=14000)
        first = place_order([(product.id, 1)], subtotal=7000)
        assert first.order_number.endswith("-0001")


class TestOrderNumbers:
    def test_format(self):
        assert format_order_number(date(2026, 10, 18), 7) == "ORD-20261018-0007"

    def test_sequential_within_a_day(self, make_product, place_order):
        product = make_product(stock=10)
        numbers = [place_order([(product.id, 1)], subtotal=7000).order_number for _ in range(3)]
        assert all(ORDER_NUMBER.match(n) for n in numbers)
        sequences = [int(n.rsplit("-", 1)[1]) for n in numbers]
        assert sequences == [1, 2, 3]
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        assert all(n.startswith(f"ORD-{today}-") for n in numbers)

    def test_sequence_resets_per_day(self, db):
        assert next_order_number(db, date(2026, 1, 1)) == "ORD-20260101-0001"
        assert next_order_number(db, date(2026, 1, 1)) == "ORD-20260101-0002"
        assert next_order_number(db, date(2026, 1, 2)) == "ORD-20260102-0001"
        db.rollback()
