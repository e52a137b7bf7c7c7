"""
Payment Routes — Order issuance, gateway callbacks and status lookups.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from carepay.config import Settings
from carepay.database import get_db
from carepay.errors import Contention, NotFound, PartialWriteFailure
from carepay.models.payment import PaymentRecord
from carepay.routes.deps import (
    get_app_settings, get_gateway, get_order_issuer, get_reconciler, get_projector,
    callback_payload, failure_payload,
)
from carepay.schemas.schemas import (
    OrderCreateRequest, OrderCreateResponse,
    CallbackRequest, FailureCallbackRequest, ResolveRequest, CallbackResponse,
    PaymentStatusResponse, ProjectionInfo,
)
from carepay.services.customer_service import extract_customer_fields
from carepay.services.gateway import PaymentGateway
from carepay.services.order_service import OrderIssuer
from carepay.services.projection_service import DomainStateProjector
from carepay.services.reconcile_service import CallbackReconciler, ReconcileOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["Payments"])


@router.post("/orders", response_model=OrderCreateResponse)
def create_order(
    payload: OrderCreateRequest,
    db: Session = Depends(get_db),
    issuer: OrderIssuer = Depends(get_order_issuer),
    settings: Settings = Depends(get_app_settings),
):
    """Create a gateway order (or a demo order) and a pending payment record."""
    metadata = payload.model_dump(exclude={"amount", "currency"}, exclude_none=True)
    issued = issuer.issue_order(db, payload.amount, payload.currency, metadata=metadata)

    return OrderCreateResponse(
        order_id=issued.gateway_order_id,
        amount=issued.amount,
        amount_minor=issued.amount_minor,
        currency=issued.currency,
        key_id=issued.key_id,
        demo_mode=issued.demo_mode,
        case_id=issued.case_id,
        case_code=issued.case_code,
        callback_url=settings.success_callback_url,
        failure_url=settings.failure_callback_url,
        message="Demo order created (gateway not reachable)" if issued.demo_mode else "Order created",
    )


@router.post("/callback", response_model=CallbackResponse)
def payment_callback(
    payload: CallbackRequest = Depends(callback_payload),
    db: Session = Depends(get_db),
    reconciler: CallbackReconciler = Depends(get_reconciler),
    projector: DomainStateProjector = Depends(get_projector),
):
    """Success callback from checkout or the gateway redirect."""
    callback_data = payload.customer_data()
    outcome = reconciler.reconcile(
        db, payload.order_id, payload.payment_id, payload.signature, payload.amount,
        callback_data=callback_data,
    )
    projection = None
    if outcome.succeeded:
        projection = project_outcome(
            db, projector, outcome,
            case_ref=payload.case_ref,
            service_type=payload.service_type,
            customer_fields=extract_customer_fields(callback_data),
            service_datetime=payload.service_datetime,
        )
    return callback_response(outcome, projection)


@router.post("/callback/failure", response_model=CallbackResponse)
def payment_failure_callback(
    payload: FailureCallbackRequest = Depends(failure_payload),
    db: Session = Depends(get_db),
    reconciler: CallbackReconciler = Depends(get_reconciler),
):
    """Failure callback: marks the order failed unless it was already captured."""
    outcome = reconciler.record_failure(
        db, payload.order_id, payload.payment_id,
        error_code=payload.error_code,
        error_description=payload.error_description,
        error_reason=payload.error_reason,
    )
    return callback_response(outcome, None)


@router.get("/{order_id}/status", response_model=PaymentStatusResponse)
def payment_status(
    order_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Current local state of an order's payment."""
    record = db.query(PaymentRecord).filter(PaymentRecord.gateway_order_id == order_id).first()
    if not record:
        raise NotFound(f"No payment record for order {order_id}", {"order_id": order_id})

    return PaymentStatusResponse(
        order_id=record.gateway_order_id,
        payment_id=record.gateway_payment_id,
        payment_status=record.status,
        amount=record.amount or 0,
        currency=record.currency,
        method=record.method or "unknown",
        card_last4=record.card_last4,
        card_network=record.card_network,
        customer_name=record.customer_name,
        customer_email=record.customer_email,
        customer_phone=record.customer_phone,
        case_id=record.case_id,
        reference_id=record.reference_id,
        failure_reason=record.failure_reason,
        demo=bool(record.demo),
        demo_mode=gateway.demo_mode,
        created_at=record.created_at,
        completed_at=record.completed_at,
    )


@router.post("/{order_id}/resolve", response_model=CallbackResponse)
def resolve_payment(
    order_id: str,
    payload: Optional[ResolveRequest] = Body(None),
    db: Session = Depends(get_db),
    reconciler: CallbackReconciler = Depends(get_reconciler),
    projector: DomainStateProjector = Depends(get_projector),
):
    """Re-reconcile an order against the gateway and project it if paid."""
    payload = payload or ResolveRequest()
    outcome = reconciler.reconcile(db, order_id, payment_id=payload.payment_id, raw_amount=payload.amount)
    projection = None
    if outcome.succeeded:
        projection = project_outcome(
            db, projector, outcome,
            case_ref=payload.case_ref,
            service_type=payload.service_type,
            service_datetime=payload.service_datetime,
        )
    return callback_response(outcome, projection)


# ─── Helpers ─────────────────────────────────────────────────────────

def project_outcome(db: Session, projector: DomainStateProjector, outcome: ReconcileOutcome, **kwargs):
    """Projection runs after the payment is committed.

    Contention propagates as a retryable error; a redelivered callback replays
    into the same projection. Any other storage failure is logged and the
    response carries no projection.
    """
    try:
        return projector.project(db, outcome.record, **kwargs)
    except Contention:
        raise
    except SQLAlchemyError as e:
        db.rollback()
        failure = PartialWriteFailure(
            f"Projection failed for captured order {outcome.order_id}",
            {"order_id": outcome.order_id, "error": str(e)},
        )
        logger.error("%s: %s", failure.code, failure.message, extra={"context": failure.context})
        return None


def callback_response(outcome: ReconcileOutcome, projection) -> CallbackResponse:
    return CallbackResponse(
        success=outcome.succeeded,
        order_id=outcome.order_id,
        payment_id=outcome.payment_id,
        amount=outcome.amount,
        payment_status=outcome.payment_status,
        signature_verified=outcome.signature_verified,
        test_mode=outcome.test_mode,
        demo_mode=outcome.demo_mode,
        replayed=outcome.replayed,
        message=outcome.message,
        projection=ProjectionInfo.model_validate(projection) if projection else None,
    )
