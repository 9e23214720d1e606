"""Races that need real row locks. Run with TEST_POSTGRES_DSN pointing at a scratch database."""

import os
import threading
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from conftest import ADDRESS
from storefront.core.errors import InsufficientStock
from storefront.db.models import Order, PaymentStatus, PaymentVerification, Product
from storefront.db.session import Base
from storefront.gateway.fake import FakeGateway
from storefront.services.assembler import CheckoutTotals
from storefront.services.checkout import checkout
from storefront.services.payments import initiate_payment, verify_payment

DSN = os.getenv("TEST_POSTGRES_DSN")

pytestmark = [
    pytest.mark.postgres,
    pytest.mark.skipif(not DSN, reason="TEST_POSTGRES_DSN not set"),
]


@pytest.fixture
def pg_factory():
    engine = create_engine(DSN, pool_size=10)
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    Base.metadata.drop_all(engine)
    engine.dispose()


def run_together(n, fn):
    barrier = threading.Barrier(n)
    results = [None] * n

    def worker(i):
        barrier.wait()
        try:
            results[i] = fn(i)
        except Exception as exc:  # collected for assertions
            results[i] = exc

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results


def _product(factory, stock):
    with factory() as s:
        product = Product(name_ar="منتج", name_fr="Produit", price=Decimal("7.000"), stock=stock, images=[])
        s.add(product)
        s.commit()
        return product.id


def _buy(factory, items, method="cod"):
    with factory() as s:
        return checkout(
            s,
            shipping_address=ADDRESS,
            payment_method=method,
            totals=CheckoutTotals(shipping_fee=7000),
            items=items,
            guest_email="race@example.com",
        )


def test_last_unit_goes_to_exactly_one_buyer(pg_factory):
    product_id = _product(pg_factory, stock=1)

    results = run_together(8, lambda i: _buy(pg_factory, [(product_id, 1)]))

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert all(isinstance(r, InsufficientStock) for r in losers)
    with pg_factory() as s:
        assert s.get(Product, product_id).stock == 0
        assert s.scalar(select(func.count()).select_from(Order)) == 1


def test_opposite_item_order_does_not_deadlock(pg_factory):
    a = _product(pg_factory, stock=50)
    b = _product(pg_factory, stock=50)

    results = run_together(6, lambda i: _buy(pg_factory, [(a, 1), (b, 1)] if i % 2 else [(b, 1), (a, 1)]))

    assert not [r for r in results if isinstance(r, Exception)]
    with pg_factory() as s:
        assert s.get(Product, a).stock == 44
        assert s.get(Product, b).stock == 44


def test_order_numbers_are_unique_under_load(pg_factory):
    product_id = _product(pg_factory, stock=100)

    results = run_together(10, lambda i: _buy(pg_factory, [(product_id, 1)]))

    numbers = [r.order_number for r in results]
    assert len(set(numbers)) == 10


def test_concurrent_verification_records_one_audit_row(pg_factory):
    product_id = _product(pg_factory, stock=5)
    order_id = _buy(pg_factory, [(product_id, 1)], method="flouci").order_id
    gateway = FakeGateway()
    with pg_factory() as s:
        initiate_payment(s, order_id, Decimal("14.000"), "ok", "ko", gateway=gateway)

    def verify(i):
        with pg_factory() as s:
            return verify_payment(s, order_id, gateway=gateway)

    results = run_together(5, verify)

    assert all(r.success for r in results)
    assert sum(1 for r in results if not r.already_paid) == 1
    with pg_factory() as s:
        assert s.get(Order, order_id).payment_status == PaymentStatus.PAID
        count = s.scalar(select(func.count()).select_from(PaymentVerification).where(PaymentVerification.order_id == order_id))
        assert count == 1
