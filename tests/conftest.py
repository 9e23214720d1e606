import os

os.environ["POSTGRES_DSN"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["PAYMENT_GATEWAY"] = "fake"
os.environ["EVENTS_ENABLED"] = "true"

from decimal import Decimal

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from storefront.core.config import settings
from storefront.db.models import Product
from storefront.db.session import Base, get_db
from storefront.gateway import reset_gateway, set_gateway
from storefront.gateway.fake import FakeGateway
from storefront.services.assembler import CheckoutTotals
from storefront.store.cart_store import get_guest_store

ADDRESS = {"full_name": "Amira Ben Salah", "phone": "+21620000000", "address": "12 Rue de Marseille", "city": "Tunis"}


def _sqlite_engine(url: str):
    engine = create_engine(url)

    # pysqlite: let SQLAlchemy emit BEGIN itself so SAVEPOINT works.
    @event.listens_for(engine, "connect")
    def _connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None
        dbapi_conn.execute("PRAGMA foreign_keys=ON")
        # WAL: an open read in a fresh() session must not block the writer's commit.
        dbapi_conn.execute("PRAGMA journal_mode=WAL")

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture
def engine(tmp_path):
    eng = _sqlite_engine(f"sqlite:///{tmp_path / 'storefront.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fresh(session_factory):
    """Open a second session, for reading committed state without the test session's identity map."""
    opened = []

    def _open():
        s = session_factory()
        opened.append(s)
        return s

    yield _open
    for s in opened:
        s.close()


@pytest.fixture(autouse=True)
def events(monkeypatch):
    sent = []
    monkeypatch.setattr(settings, "EVENTS_ENABLED", True)
    monkeypatch.setattr("storefront.kafka.producer.send", lambda topic, key, value: sent.append((topic, key, value)))
    return sent


class InMemoryGuestStore:
    def __init__(self):
        self.carts = {}

    def get(self, session_id):
        return dict(self.carts.get(session_id, {}))

    def put(self, session_id, product_id, qty):
        self.carts.setdefault(session_id, {})[product_id] = qty

    def remove(self, session_id, product_id):
        self.carts.get(session_id, {}).pop(product_id, None)

    def clear(self, session_id):
        self.carts.pop(session_id, None)


@pytest.fixture
def guest_store():
    return InMemoryGuestStore()


@pytest.fixture
def gateway():
    fake = FakeGateway()
    set_gateway(fake)
    yield fake
    reset_gateway()


@pytest.fixture
def make_product(db):
    counter = {"n": 0}

    def _make(stock=10, price="7.000", wholesale_price=None, **kw):
        counter["n"] += 1
        n = counter["n"]
        product = Product(
            name_ar=kw.pop("name_ar", f"منتج {n}"),
            name_fr=kw.pop("name_fr", f"Produit {n}"),
            price=Decimal(price),
            wholesale_price=Decimal(wholesale_price) if wholesale_price is not None else None,
            stock=stock,
            images=kw.pop("images", [f"https://cdn.example.test/p{n}.jpg"]),
            **kw,
        )
        db.add(product)
        db.commit()
        return product

    return _make


@pytest.fixture
def place_order(db):
    """Run a checkout through the service layer with sensible defaults."""
    from storefront.services.checkout import checkout

    def _place(items, payment_method="cod", subtotal=None, user_id=None, **kw):
        kw.setdefault("guest_email", None if user_id else "guest@example.com")
        return checkout(
            db,
            shipping_address=kw.pop("shipping_address", ADDRESS),
            payment_method=payment_method,
            totals=kw.pop("totals", CheckoutTotals(subtotal=subtotal, shipping_fee=7000)),
            items=items,
            user_id=user_id,
            **kw,
        )

    return _place


def make_token(sub="user-1", role="customer", **claims):
    payload = {"sub": sub, "role": role, "type": "access", **claims}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth(sub="user-1", role="customer", **claims):
    return {"Authorization": f"Bearer {make_token(sub, role, **claims)}"}


@pytest.fixture
def client(session_factory, guest_store, gateway):
    from storefront.main import app
    from storefront.gateway import get_gateway

    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_guest_store] = lambda: guest_store
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
