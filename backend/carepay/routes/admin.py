"""
Admin Routes — Payment listing, customer lookup and audit trail access.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from carepay.database import get_db
from carepay.errors import NotFound
from carepay.models.customer import CustomerIdentity
from carepay.models.payment import PaymentRecord
from carepay.routes.deps import get_gateway
from carepay.schemas.schemas import (
    PaymentListResponse, PaymentSummary, CustomerDetailResponse, CaseSummary,
    EventTrailResponse, PaymentEventEntry, ChainVerifyResponse,
)
from carepay.services.audit_service import AuditService
from carepay.services.gateway import PaymentGateway

router = APIRouter(prefix="/api/admin", tags=["Admin"])


@router.get("/payments", response_model=PaymentListResponse)
def list_payments(
    status: Optional[str] = Query(None, description="pending | created | captured | failed"),
    email: Optional[str] = Query(None, description="Customer email (case-insensitive)"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """List payment records, newest first."""
    query = db.query(PaymentRecord)
    if status:
        query = query.filter(PaymentRecord.status == status.lower())
    if email:
        query = query.filter(func.lower(PaymentRecord.customer_email) == email.strip().lower())

    total = query.count()
    records = query.order_by(PaymentRecord.id.desc()).offset(offset).limit(limit).all()

    return PaymentListResponse(
        total=total,
        items=[PaymentSummary.model_validate(r) for r in records],
        demo_mode=gateway.demo_mode,
    )


@router.get("/customers/{customer_id}", response_model=CustomerDetailResponse)
def get_customer(
    customer_id: int,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """A customer with every booking case linked to them."""
    customer = db.get(CustomerIdentity, customer_id)
    if not customer:
        raise NotFound(f"Customer {customer_id} not found")

    return CustomerDetailResponse(
        id=customer.id,
        first_name=customer.first_name,
        last_name=customer.last_name,
        email=customer.email,
        phone=customer.phone,
        address=customer.address,
        city=customer.city,
        state=customer.state,
        pincode=customer.pincode,
        cases=[CaseSummary.model_validate(c) for c in customer.cases],
        demo_mode=gateway.demo_mode,
    )


@router.get("/events/{order_id}", response_model=EventTrailResponse)
def get_event_trail(
    order_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Get the full payment event trail for an order."""
    events = AuditService.get_trail(db, order_id)
    if not events:
        raise NotFound(f"No payment events found for order {order_id}")

    return EventTrailResponse(
        order_id=order_id,
        events=[PaymentEventEntry.model_validate(e) for e in events],
        demo_mode=gateway.demo_mode,
    )


@router.get("/events/{order_id}/verify", response_model=ChainVerifyResponse)
def verify_event_chain(
    order_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Check that an order's event chain has not been tampered with."""
    result = AuditService.verify_chain(db, order_id)
    return ChainVerifyResponse(order_id=order_id, demo_mode=gateway.demo_mode, **result)
