from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import sign
from carepay.errors import Contention
from carepay.models import BookingCase, CustomerIdentity, PaymentEvent, PaymentRecord, ServiceType
from carepay.services.booking_service import BookingService
from carepay.services.customer_service import CustomerService
from carepay.services.order_service import OrderIssuer
from carepay.services.projection_service import DomainStateProjector
from carepay.services.reconcile_service import CallbackReconciler


@pytest.fixture
def projector(settings):
    return DomainStateProjector(settings)


def _capture(db, settings, gateway, amount=1500, metadata=None):
    issued = OrderIssuer(settings, gateway).issue_order(db, amount, metadata=metadata)
    order_id = issued.gateway_order_id
    gateway.add_payment(order_id, f"pay_{order_id}", int(amount * 100))
    outcome = CallbackReconciler(settings, gateway).reconcile(
        db, order_id, f"pay_{order_id}", sign(order_id, f"pay_{order_id}"),
    )
    return outcome.record


def _paid_cases(db):
    return db.query(BookingCase).filter(BookingCase.payment_status == "paid").all()


def test_pending_case_from_issuance_becomes_paid(db, settings, gateway, projector):
    record = _capture(db, settings, gateway, metadata={
        "customer_name": "Asha Verma",
        "customer_email": "asha@example.com",
        "service_type": "Pet Grooming",
    })
    pending_case_id = record.case_id

    projection = projector.project(db, record)

    assert projection.case_id == pending_case_id
    case = db.get(BookingCase, pending_case_id)
    assert case.payment_status == "paid"
    assert case.amount == Decimal("1500.00")
    assert case.order_id == record.gateway_order_id
    assert projection.service_type == "Pet Grooming"
    assert projection.service_type_id == db.query(ServiceType).filter_by(type="Pet Grooming").one().id
    assert projection.customer_id == db.query(CustomerIdentity).one().id


def test_projecting_twice_yields_one_paid_case(db, settings, gateway, projector):
    record = _capture(db, settings, gateway, metadata={"customer_email": "asha@example.com"})

    first = projector.project(db, record)
    second = projector.project(db, record)

    assert second.already_applied
    assert second.case_id == first.case_id
    assert len(_paid_cases(db)) == 1
    projected = db.query(PaymentEvent).filter_by(order_id=record.gateway_order_id, action="PAYMENT_PROJECTED")
    assert projected.count() == 1


def test_case_created_with_default_service_type(db, settings, gateway, projector):
    record = _capture(db, settings, gateway, amount=800)

    projection = projector.project(db, record)

    case = db.get(BookingCase, projection.case_id)
    assert case.service_type == settings.DEFAULT_SERVICE_TYPE
    assert case.case_code.startswith("CASE@GeneralService@")
    assert case.payment_status == "paid"
    assert case.amount == Decimal("800.00")
    assert projection.customer_id is None
    assert db.get(PaymentRecord, record.id).case_id == case.id


def test_explicit_case_reference_wins(db, settings, gateway, projector):
    customer = CustomerService.upsert(db, {"email": "ravi@example.com"})
    target = BookingService.create_case(db, customer.id, "Pet Training")
    BookingService.create_case(db, customer.id, "Pet Training")
    db.commit()
    record = _capture(db, settings, gateway, metadata={"customer_email": "ravi@example.com"})

    projection = projector.project(db, record, case_ref=target.case_code, service_type="Pet Training")

    assert projection.case_id == target.id
    assert len(_paid_cases(db)) == 1


def test_numeric_case_reference(db, settings, gateway, projector):
    target = BookingService.create_case(db, None, "Vet Visit")
    db.commit()
    record = _capture(db, settings, gateway)

    projection = projector.project(db, record, case_ref=str(target.id))

    assert projection.case_id == target.id


def test_latest_matching_case_is_reused(db, settings, gateway, projector):
    customer = CustomerService.upsert(db, {"email": "meera@example.com", "first_name": "Meera"})
    older = BookingService.create_case(db, customer.id, "Pet Sitting", service_datetime=datetime(2026, 5, 1, 9))
    latest = BookingService.create_case(db, customer.id, "Pet Sitting", service_datetime=datetime(2026, 5, 1, 15))
    other_day = BookingService.create_case(db, customer.id, "Pet Sitting", service_datetime=datetime(2026, 5, 2, 9))
    db.commit()
    record = _capture(db, settings, gateway)

    projection = projector.project(
        db, record,
        service_type="Pet Sitting",
        customer_fields={"email": "MEERA@example.com"},
        service_datetime=datetime(2026, 5, 1, 11),
    )

    assert projection.case_id == latest.id
    assert db.get(BookingCase, older.id).payment_status == "pending"
    assert db.get(BookingCase, other_day.id).payment_status == "pending"


def test_customer_identity_is_merged(db, settings, gateway, projector):
    existing = CustomerService.upsert(db, {
        "first_name": "Asha", "email": "asha@example.com", "phone": "9876543210", "city": "Pune",
    })
    db.commit()
    record = _capture(db, settings, gateway)

    projection = projector.project(db, record, customer_fields={
        "email": "Asha@Example.com", "city": "Mumbai", "pincode": "400001", "phone": "",
    })

    assert projection.customer_id == existing.id
    assert db.query(CustomerIdentity).count() == 1
    customer = db.get(CustomerIdentity, existing.id)
    assert customer.city == "Mumbai"
    assert customer.pincode == "400001"
    assert customer.phone == "9876543210"


def test_uncaptured_record_is_not_projected(db, settings, gateway, projector):
    issued = OrderIssuer(settings, gateway).issue_order(db, 100)
    assert projector.project(db, issued.record) is None
    assert db.query(BookingCase).count() == 0


def test_lock_contention_is_retried(db, settings, gateway, projector, monkeypatch):
    record = _capture(db, settings, gateway)
    real_apply = projector._apply
    attempts = []

    def locked_twice(*args, **kwargs):
        attempts.append(1)
        if len(attempts) < 3:
            raise OperationalError("UPDATE service_cases", {}, Exception("database is locked"))
        return real_apply(*args, **kwargs)

    monkeypatch.setattr(projector, "_apply", locked_twice)

    projection = projector.project(db, record)

    assert len(attempts) == 3
    assert db.get(BookingCase, projection.case_id).payment_status == "paid"


def test_persistent_contention_surfaces(db, settings, gateway, projector, monkeypatch):
    record = _capture(db, settings, gateway)

    def always_locked(*args, **kwargs):
        raise OperationalError("UPDATE service_cases", {}, Exception("database is locked"))

    monkeypatch.setattr(projector, "_apply", always_locked)

    with pytest.raises(Contention):
        projector.project(db, record)
    assert _paid_cases(db) == []
