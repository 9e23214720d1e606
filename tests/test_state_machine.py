from decimal import Decimal

import pytest
from structlog import wrap_logger
from structlog.testing import LogCapture
from sqlalchemy import func, select

from storefront.core.errors import IllegalTransition, OrderNotFound, OrderValidationError
from storefront.db.models import (
    Order, OrderStatus, PaymentMethod, PaymentStatus, PaymentVerification, Product,
    VerificationAction, VerificationActor,
)
from storefront.services import state_machine
from storefront.services.state_machine import (
    TRANSITIONS, OrderEvent, VerificationRecord, allowed_events, apply_event,
)

ADMIN = VerificationRecord(actor=VerificationActor.ADMIN, verified_by="admin-1", bank_reference="TRX-001")


def status_of(session, order_id):
    order = session.get(Order, order_id)
    return order.status, order.payment_status


def stock_of(session, product_id):
    return session.scalar(select(Product.stock).where(Product.id == product_id))


def audit_rows(session, order_id):
    return session.scalars(select(PaymentVerification).where(PaymentVerification.order_id == order_id).order_by(PaymentVerification.id)).all()


@pytest.fixture
def cod_order(make_product, place_order):
    product = make_product(stock=5)
    result = place_order([(product.id, 2)], subtotal=14000)
    return result.order_id, product.id


@pytest.fixture
def bank_order(make_product, place_order):
    product = make_product(stock=5)
    result = place_order([(product.id, 1)], payment_method="bank_transfer", subtotal=7000)
    return result.order_id, product.id


class TestTable:
    def test_every_target_uses_known_statuses(self):
        for (order_status, payment_status, event), t in TRANSITIONS.items():
            assert isinstance(order_status, OrderStatus)
            assert isinstance(payment_status, PaymentStatus)
            assert isinstance(event, OrderEvent)
            assert t.order_status in OrderStatus and t.payment_status in PaymentStatus

    def test_paid_only_through_an_audited_event(self):
        for (_, payment_status, event), t in TRANSITIONS.items():
            if t.payment_status == PaymentStatus.PAID and payment_status != PaymentStatus.PAID:
                assert event == OrderEvent.CONFIRM_PAYMENT
                assert t.audit == VerificationAction.APPROVE

    def test_nothing_leaves_refunded(self):
        assert not [k for k in TRANSITIONS if k[0] == OrderStatus.REFUNDED]


class TestCancel:
    def test_cancel_restores_stock(self, db, cod_order, fresh, events):
        order_id, product_id = cod_order
        assert stock_of(fresh(), product_id) == 3

        apply_event(db, order_id, OrderEvent.CANCEL)

        check = fresh()
        assert status_of(check, order_id) == (OrderStatus.CANCELLED, PaymentStatus.PENDING)
        assert stock_of(check, product_id) == 5
        assert events[-1][2]["type"] == "order.updated"
        assert events[-1][2]["event"] == "cancel"

    def test_cannot_cancel_shipped_order(self, db, cod_order, fresh):
        order_id, product_id = cod_order
        apply_event(db, order_id, OrderEvent.START_PROCESSING)
        apply_event(db, order_id, OrderEvent.SHIP)

        with pytest.raises(IllegalTransition):
            apply_event(db, order_id, OrderEvent.CANCEL)

        check = fresh()
        assert status_of(check, order_id) == (OrderStatus.SHIPPED, PaymentStatus.PENDING)
        assert stock_of(check, product_id) == 3

    def test_cancel_twice_is_rejected(self, db, cod_order, fresh):
        order_id, product_id = cod_order
        apply_event(db, order_id, OrderEvent.CANCEL)
        with pytest.raises(IllegalTransition):
            apply_event(db, order_id, OrderEvent.CANCEL)
        assert stock_of(fresh(), product_id) == 5


class TestCashOnDelivery:
    def test_full_lifecycle(self, db, cod_order, fresh):
        order_id, _ = cod_order
        for event in (OrderEvent.START_PROCESSING, OrderEvent.SHIP, OrderEvent.DELIVER):
            apply_event(db, order_id, event)
        assert status_of(fresh(), order_id) == (OrderStatus.DELIVERED, PaymentStatus.PENDING)

        apply_event(db, order_id, OrderEvent.CONFIRM_PAYMENT, record=ADMIN)

        check = fresh()
        assert status_of(check, order_id) == (OrderStatus.DELIVERED, PaymentStatus.PAID)
        assert check.get(Order, order_id).paid_at is not None
        rows = audit_rows(check, order_id)
        assert len(rows) == 1
        assert rows[0].action == VerificationAction.APPROVE
        assert rows[0].verified_by == "admin-1"
        assert rows[0].amount_verified == Decimal("21.000")

    def test_marking_delivered_order_paid_twice_fails(self, db, cod_order, fresh):
        order_id, _ = cod_order
        for event in (OrderEvent.START_PROCESSING, OrderEvent.SHIP, OrderEvent.DELIVER):
            apply_event(db, order_id, event)
        apply_event(db, order_id, OrderEvent.CONFIRM_PAYMENT, record=ADMIN)

        with pytest.raises(IllegalTransition):
            apply_event(db, order_id, OrderEvent.CONFIRM_PAYMENT, record=ADMIN)
        assert len(audit_rows(fresh(), order_id)) == 1

    def test_refund_of_delivered_order_restores_stock(self, db, cod_order, fresh):
        order_id, product_id = cod_order
        for event in (OrderEvent.START_PROCESSING, OrderEvent.SHIP, OrderEvent.DELIVER):
            apply_event(db, order_id, event)
        apply_event(db, order_id, OrderEvent.CONFIRM_PAYMENT, record=ADMIN)
        apply_event(db, order_id, OrderEvent.REFUND)

        check = fresh()
        assert status_of(check, order_id) == (OrderStatus.REFUNDED, PaymentStatus.REFUNDED)
        assert stock_of(check, product_id) == 5


class TestBankTransfer:
    def test_cannot_ship_before_payment(self, db, bank_order):
        order_id, _ = bank_order
        with pytest.raises(IllegalTransition):
            apply_event(db, order_id, OrderEvent.START_PROCESSING)

    def test_reject_then_approve(self, db, bank_order, fresh):
        order_id, _ = bank_order
        apply_event(db, order_id, OrderEvent.REJECT_PAYMENT, record=ADMIN)
        assert status_of(fresh(), order_id) == (OrderStatus.PENDING, PaymentStatus.FAILED)

        apply_event(db, order_id, OrderEvent.CONFIRM_PAYMENT, record=ADMIN)
        check = fresh()
        assert status_of(check, order_id) == (OrderStatus.PROCESSING, PaymentStatus.PAID)
        assert [r.action for r in audit_rows(check, order_id)] == [VerificationAction.REJECT, VerificationAction.APPROVE]

    def test_allowed_events_follow_payment_method(self, db, bank_order):
        order_id, _ = bank_order
        order = db.get(Order, order_id)
        assert order.payment_method == PaymentMethod.BANK_TRANSFER
        assert OrderEvent.START_PROCESSING not in allowed_events(order)
        assert OrderEvent.CONFIRM_PAYMENT in allowed_events(order)


class TestGuards:
    def test_confirm_requires_a_verification_record(self, db, cod_order, fresh):
        order_id, _ = cod_order
        with pytest.raises(OrderValidationError):
            apply_event(db, order_id, OrderEvent.CONFIRM_PAYMENT)
        assert status_of(fresh(), order_id) == (OrderStatus.PENDING, PaymentStatus.PENDING)

    def test_unknown_event(self, db, cod_order):
        with pytest.raises(OrderValidationError):
            apply_event(db, cod_order[0], "teleport")

    def test_unknown_order(self, db):
        with pytest.raises(OrderNotFound):
            apply_event(db, "00000000-0000-0000-0000-000000000000", OrderEvent.CANCEL)
        with pytest.raises(OrderNotFound):
            apply_event(db, "not-a-uuid", OrderEvent.CANCEL)

    def test_illegal_transition_publishes_nothing(self, db, cod_order, events):
        before = len(events)
        with pytest.raises(IllegalTransition):
            apply_event(db, cod_order[0], OrderEvent.DELIVER)
        assert len(events) == before


class TestAuditWriteFailure:
    def test_paid_status_survives_a_failed_audit_insert(self, db, bank_order, fresh):
        order_id, _ = bank_order
        # An admin row without verified_by violates the audit table's check constraint.
        broken = VerificationRecord(actor=VerificationActor.ADMIN, verified_by=None)

        apply_event(db, order_id, OrderEvent.CONFIRM_PAYMENT, record=broken)

        check = fresh()
        assert status_of(check, order_id) == (OrderStatus.PROCESSING, PaymentStatus.PAID)
        assert check.scalar(select(func.count()).select_from(PaymentVerification)) == 0


class TestTransitionLog:
    @pytest.fixture
    def captured(self, monkeypatch):
        capture = LogCapture()
        monkeypatch.setattr(state_machine, "logger", wrap_logger(None, processors=[capture]))
        return capture.entries

    def test_applied_transition_is_logged_and_committed(self, db, cod_order, fresh, captured):
        order_id, product_id = cod_order

        apply_event(db, order_id, OrderEvent.CANCEL)

        entry = next(e for e in captured if e["event"] == "order.transition")
        assert entry["order_event"] == "cancel"
        assert (entry["from_status"], entry["to_status"]) == ("pending", "cancelled")
        assert stock_of(fresh(), product_id) == 5

    def test_rejected_transition_is_logged_and_raised(self, db, cod_order, captured):
        with pytest.raises(IllegalTransition):
            apply_event(db, cod_order[0], OrderEvent.DELIVER)

        entry = next(e for e in captured if e["event"] == "order.transition_rejected")
        assert entry["order_event"] == "deliver"
