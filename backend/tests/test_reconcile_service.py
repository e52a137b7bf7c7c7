from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import sign
from carepay.errors import Contention, GatewayUnavailable, InvalidSignature, NotFound
from carepay.models import PaymentEvent, PaymentRecord, PaymentStatus
from carepay.services.link_service import PaymentLinkService
from carepay.services.order_service import OrderIssuer
from carepay.services.reconcile_service import CallbackReconciler, select_payment


@pytest.fixture
def reconciler(settings, gateway):
    return CallbackReconciler(settings, gateway)


@pytest.fixture
def order_id(db, settings, gateway):
    issued = OrderIssuer(settings, gateway).issue_order(db, 1500)
    gateway.calls.clear()
    return issued.gateway_order_id


def _record(db, order_id):
    db.expire_all()
    return db.query(PaymentRecord).filter_by(gateway_order_id=order_id).one()


def _actions(db, order_id):
    return [e.action for e in db.query(PaymentEvent).filter_by(order_id=order_id).order_by(PaymentEvent.id)]


def test_signed_callback_captures_payment(db, reconciler, gateway, order_id):
    gateway.add_payment(order_id, "pay_A1", 150000, method="upi", vpa="asha@okhdfc")

    outcome = reconciler.reconcile(db, order_id, "pay_A1", sign(order_id, "pay_A1"))

    assert outcome.succeeded
    assert outcome.signature_verified
    assert outcome.amount == Decimal("1500.00")
    record = _record(db, order_id)
    assert record.status == PaymentStatus.CAPTURED
    assert record.gateway_payment_id == "pay_A1"
    assert record.method == "upi"
    assert record.completed_at is not None
    assert _actions(db, order_id) == ["ORDER_ISSUED", "PAYMENT_CAPTURED"]


def test_replayed_callback_changes_nothing(db, reconciler, gateway, order_id):
    gateway.add_payment(order_id, "pay_A1", 150000)
    signature = sign(order_id, "pay_A1")
    reconciler.reconcile(db, order_id, "pay_A1", signature)
    first = _record(db, order_id)
    snapshot = (first.status, first.amount, first.gateway_payment_id, first.completed_at, first.method)

    outcome = reconciler.reconcile(db, order_id, "pay_A1", signature)

    assert outcome.succeeded
    assert outcome.replayed
    again = _record(db, order_id)
    assert (again.status, again.amount, again.gateway_payment_id, again.completed_at, again.method) == snapshot
    assert db.query(PaymentRecord).count() == 1
    assert _actions(db, order_id) == ["ORDER_ISSUED", "PAYMENT_CAPTURED"]


def test_minor_units_from_gateway_are_divided(db, reconciler, gateway):
    gateway.add_payment("order_LATE01", "pay_B1", 150000)

    outcome = reconciler.reconcile(db, "order_LATE01", "pay_B1", sign("order_LATE01", "pay_B1"))

    assert outcome.amount == Decimal("1500.00")
    assert _record(db, "order_LATE01").amount == Decimal("1500.00")


def test_tampered_signature_leaves_record_untouched(db, reconciler, gateway, order_id):
    gateway.add_payment(order_id, "pay_A1", 150000)
    tampered = sign(order_id, "pay_OTHER")

    with pytest.raises(InvalidSignature):
        reconciler.reconcile(db, order_id, "pay_A1", tampered)

    record = _record(db, order_id)
    assert record.status == PaymentStatus.PENDING
    assert record.gateway_payment_id is None
    assert gateway.calls == []
    assert _actions(db, order_id) == ["ORDER_ISSUED"]


def test_callback_before_local_record_creates_it(db, reconciler, gateway):
    gateway.add_payment("order_EARLY1", "pay_C1", 49900, method="card", card={"last4": "4242", "network": "Visa"})

    outcome = reconciler.reconcile(db, "order_EARLY1", "pay_C1", sign("order_EARLY1", "pay_C1"))

    assert outcome.succeeded
    record = _record(db, "order_EARLY1")
    assert record.amount == Decimal("499.00")
    assert (record.card_last4, record.card_network, record.method) == ("4242", "Visa", "card")


def test_test_mode_never_contacts_gateway(db, reconciler, gateway, order_id):
    outcome = reconciler.reconcile(db, order_id, "pay_test", "whatever", raw_amount="1500")

    assert outcome.succeeded
    assert outcome.test_mode
    assert outcome.signature_verified
    assert gateway.calls == []
    assert _record(db, order_id).amount == Decimal("1500.00")


def test_test_signature_alone_enables_test_mode(db, reconciler, gateway, order_id):
    outcome = reconciler.reconcile(db, order_id, "pay_real_1", "sig_test")
    assert outcome.test_mode
    assert gateway.calls == []
    assert _record(db, order_id).amount == Decimal("1500.00")


def test_unsigned_callback_trusts_gateway_status(db, reconciler, gateway, order_id):
    gateway.add_payment(order_id, "pay_D1", 150000, status="captured")

    outcome = reconciler.reconcile(db, order_id, "pay_D1")

    assert outcome.succeeded
    assert not outcome.signature_verified
    assert "fetch_payment" in gateway.call_names()
    assert _record(db, order_id).status == PaymentStatus.CAPTURED


def test_unsigned_callback_for_unfinished_payment_is_a_failure(db, reconciler, gateway, order_id):
    gateway.add_payment(order_id, "pay_D2", 150000, status="created")

    outcome = reconciler.reconcile(db, order_id, "pay_D2")

    assert not outcome.succeeded
    assert _record(db, order_id).status == PaymentStatus.PENDING


def test_unsigned_callback_for_failed_payment_marks_record_failed(db, reconciler, gateway, order_id):
    gateway.add_payment(order_id, "pay_D3", 150000, status="failed", error_description="Card declined")

    outcome = reconciler.reconcile(db, order_id, "pay_D3")

    assert not outcome.succeeded
    record = _record(db, order_id)
    assert record.status == PaymentStatus.FAILED
    assert record.failure_reason == "Card declined"


def test_missing_payment_id_is_looked_up(db, reconciler, gateway, order_id):
    gateway.add_payment(order_id, "pay_E1", 150000, status="failed")
    gateway.add_payment(order_id, "pay_E2", 150000, status="captured")

    outcome = reconciler.reconcile(db, order_id)

    assert outcome.succeeded
    assert outcome.payment_id == "pay_E2"
    assert _record(db, order_id).gateway_payment_id == "pay_E2"


def test_select_payment_falls_back_to_latest():
    assert select_payment([]) is None
    assert select_payment([{"id": "a", "status": "failed"}, {"id": "b", "status": "created"}])["id"] == "b"
    assert select_payment([{"id": "a", "status": "authorized"}, {"id": "b", "status": "captured"}])["id"] == "a"


def test_no_payment_and_no_record_is_not_found(db, reconciler):
    with pytest.raises(NotFound):
        reconciler.reconcile(db, "order_UNKNOWN")
    assert db.query(PaymentRecord).count() == 0


def test_no_payment_with_local_record_is_failure_without_mutation(db, reconciler, order_id):
    outcome = reconciler.reconcile(db, order_id)

    assert not outcome.succeeded
    assert outcome.payment_status == PaymentStatus.PENDING
    assert _actions(db, order_id) == ["ORDER_ISSUED"]


def test_unreachable_gateway_is_surfaced_when_outcome_unknown(db, reconciler, gateway, order_id):
    gateway.failing.add("fetch_payment")

    with pytest.raises(GatewayUnavailable):
        reconciler.reconcile(db, order_id, "pay_F1")
    assert _record(db, order_id).status == PaymentStatus.PENDING


def test_unreachable_gateway_after_verified_signature_keeps_stored_amount(db, reconciler, gateway, order_id):
    gateway.failing.update({"fetch_payment", "fetch_order"})

    outcome = reconciler.reconcile(db, order_id, "pay_F2", sign(order_id, "pay_F2"))

    assert outcome.succeeded
    assert _record(db, order_id).amount == Decimal("1500.00")


def test_mismatched_gateway_amount_keeps_stored_amount(db, reconciler, gateway, order_id):
    gateway.add_payment(order_id, "pay_G1", 999900)

    reconciler.reconcile(db, order_id, "pay_G1", sign(order_id, "pay_G1"))

    assert _record(db, order_id).amount == Decimal("1500.00")


def test_order_amount_used_when_payment_lacks_one(db, reconciler, gateway):
    gateway.orders["order_ONLY"] = {"id": "order_ONLY", "amount": 75000}
    gateway.add_payment("order_ONLY", "pay_H1", None)

    outcome = reconciler.reconcile(db, "order_ONLY", "pay_H1", sign("order_ONLY", "pay_H1"))

    assert outcome.amount == Decimal("750.00")
    assert "fetch_order" in gateway.call_names()


def test_method_is_not_downgraded(db, reconciler, gateway, order_id):
    record = _record(db, order_id)
    record.method = "upi"
    db.commit()
    gateway.add_payment(order_id, "pay_I1", 150000, method=None)

    reconciler.reconcile(db, order_id, "pay_I1", sign(order_id, "pay_I1"))

    assert _record(db, order_id).method == "upi"


def test_failure_callback_marks_pending_record_failed(db, reconciler, order_id):
    outcome = reconciler.record_failure(db, order_id, "pay_J1", error_code="BAD_REQUEST_ERROR",
                                        error_description="Payment was cancelled by user")

    assert not outcome.succeeded
    record = _record(db, order_id)
    assert record.status == PaymentStatus.FAILED
    assert record.failure_reason == "Payment was cancelled by user"
    assert _actions(db, order_id) == ["ORDER_ISSUED", "PAYMENT_FAILED"]


def test_failure_callback_for_unknown_order_creates_failed_record(db, reconciler):
    reconciler.record_failure(db, "order_GHOST", error_reason="payment_timeout")
    record = _record(db, "order_GHOST")
    assert record.status == PaymentStatus.FAILED
    assert record.failure_reason == "payment_timeout"


def test_captured_is_terminal(db, reconciler, gateway, order_id):
    gateway.add_payment(order_id, "pay_K1", 150000)
    reconciler.reconcile(db, order_id, "pay_K1", sign(order_id, "pay_K1"))

    outcome = reconciler.record_failure(db, order_id, "pay_K1", error_description="late failure")

    assert outcome.succeeded
    record = _record(db, order_id)
    assert record.status == PaymentStatus.CAPTURED
    assert record.failure_reason is None
    assert _actions(db, order_id)[-1] == "TRANSITION_REJECTED"


def test_failed_payment_can_still_be_captured(db, reconciler, gateway, order_id):
    reconciler.record_failure(db, order_id, "pay_L1", error_description="first attempt declined")
    gateway.add_payment(order_id, "pay_L2", 150000)

    outcome = reconciler.reconcile(db, order_id, "pay_L2", sign(order_id, "pay_L2"))

    assert outcome.succeeded
    assert _record(db, order_id).gateway_payment_id == "pay_L2"


def test_unsigned_callback_with_another_orders_payment_is_rejected(db, reconciler, gateway, order_id):
    gateway.add_payment("order_CHEAP", "pay_CHEAP", 100, status="captured")

    with pytest.raises(InvalidSignature):
        reconciler.reconcile(db, order_id, "pay_CHEAP")

    record = _record(db, order_id)
    assert record.status == PaymentStatus.PENDING
    assert record.gateway_payment_id is None
    assert record.amount == Decimal("1500.00")
    assert _actions(db, order_id) == ["ORDER_ISSUED"]


def test_signed_callback_for_payment_filed_elsewhere_is_rejected(db, reconciler, gateway, order_id):
    gateway.add_payment("order_OTHER", "pay_M1", 150000)

    with pytest.raises(InvalidSignature):
        reconciler.reconcile(db, order_id, "pay_M1", sign(order_id, "pay_M1"))

    assert _record(db, order_id).status == PaymentStatus.PENDING


def test_concurrent_insert_is_reread_and_captured(db, reconciler, gateway, monkeypatch):
    gateway.add_payment("order_RACE", "pay_R1", 150000)
    real_find = CallbackReconciler._find
    lookups = []

    def racing_find(session, order_id):
        lookups.append(order_id)
        if len(lookups) == 2:
            # Another worker stores the row between our lookup and our insert
            session.execute(PaymentRecord.__table__.insert().values(
                gateway_order_id=order_id, amount=Decimal("1500.00"), status=PaymentStatus.PENDING,
            ))
            return None
        return real_find(session, order_id)

    monkeypatch.setattr(CallbackReconciler, "_find", staticmethod(racing_find))

    outcome = reconciler.reconcile(db, "order_RACE", "pay_R1", sign("order_RACE", "pay_R1"))

    assert outcome.succeeded
    assert len(lookups) == 3
    rows = db.query(PaymentRecord).filter_by(gateway_order_id="order_RACE").all()
    assert len(rows) == 1
    assert rows[0].status == PaymentStatus.CAPTURED
    assert rows[0].gateway_payment_id == "pay_R1"
    assert rows[0].amount == Decimal("1500.00")


def _storage_error(message):
    def fail(*args, **kwargs):
        raise OperationalError("UPDATE payments", {}, Exception(message))
    return staticmethod(fail)


def test_failure_callback_lock_error_is_contention(db, reconciler, order_id, monkeypatch):
    monkeypatch.setattr(CallbackReconciler, "_upsert", _storage_error("database is locked"))

    with pytest.raises(Contention) as exc:
        reconciler.record_failure(db, order_id, "pay_N1", error_description="declined")

    assert exc.value.retryable
    assert _record(db, order_id).status == PaymentStatus.PENDING


def test_failure_callback_other_storage_error_propagates(db, reconciler, order_id, monkeypatch):
    monkeypatch.setattr(CallbackReconciler, "_upsert", _storage_error("disk I/O error"))

    with pytest.raises(OperationalError):
        reconciler.record_failure(db, order_id, "pay_N2")


def _link(db, settings, gateway, amount=1500, **metadata):
    issued = PaymentLinkService(settings, gateway).create_link(db, amount, metadata=metadata)
    gateway.calls.clear()
    return issued.link_id


def test_paid_link_captures_record(db, reconciler, gateway, settings):
    link_id = _link(db, settings, gateway)
    gateway.pay_link(link_id, "pay_LNK1", method="upi")

    outcome = reconciler.reconcile_link(db, link_id)

    assert outcome.succeeded
    assert outcome.payment_id == "pay_LNK1"
    record = _record(db, link_id)
    assert record.status == PaymentStatus.CAPTURED
    assert record.amount == Decimal("1500.00")
    assert record.method == "upi"
    assert _actions(db, link_id) == ["LINK_ISSUED", "PAYMENT_CAPTURED"]

    again = reconciler.reconcile_link(db, link_id)
    assert again.replayed
    assert _actions(db, link_id) == ["LINK_ISSUED", "PAYMENT_CAPTURED"]


def test_unpaid_link_changes_nothing(db, reconciler, gateway, settings):
    link_id = _link(db, settings, gateway)

    outcome = reconciler.reconcile_link(db, link_id)

    assert not outcome.succeeded
    assert outcome.payment_status == PaymentStatus.PENDING
    assert _actions(db, link_id) == ["LINK_ISSUED"]


def test_expired_link_fails_record(db, reconciler, gateway, settings):
    link_id = _link(db, settings, gateway)
    gateway.links[link_id]["status"] = "expired"

    outcome = reconciler.reconcile_link(db, link_id)

    assert not outcome.succeeded
    record = _record(db, link_id)
    assert record.status == PaymentStatus.FAILED
    assert record.failure_reason == "Payment link expired"
