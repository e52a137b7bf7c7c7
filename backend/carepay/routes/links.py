"""
Payment Link Routes — Hosted link lifecycle and link reconciliation.
"""
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from carepay.config import Settings
from carepay.database import get_db
from carepay.errors import NotFound
from carepay.models.payment import PaymentRecord
from carepay.routes.deps import get_app_settings, get_link_service, get_projector, get_reconciler
from carepay.routes.payment import callback_response, project_outcome
from carepay.schemas.schemas import (
    CallbackResponse, LinkCreateRequest, LinkCreateResponse, LinkDetailResponse,
    LinkNotifyResponse, LinkUpdateRequest,
)
from carepay.services.link_service import PaymentLinkService
from carepay.services.projection_service import DomainStateProjector
from carepay.services.reconcile_service import CallbackReconciler
from carepay.utils.validators import from_minor_units

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments/links", tags=["Payment Links"])


@router.post("", response_model=LinkCreateResponse, status_code=201)
def create_payment_link(
    payload: LinkCreateRequest,
    db: Session = Depends(get_db),
    links: PaymentLinkService = Depends(get_link_service),
):
    """Create a hosted payment link and a pending payment record for it."""
    metadata = payload.model_dump(exclude={"amount", "currency"}, exclude_none=True)
    issued = links.create_link(db, payload.amount, payload.currency, metadata=metadata)

    return LinkCreateResponse(
        link_id=issued.link_id,
        short_url=issued.short_url,
        link_status=issued.link_status,
        amount=issued.amount,
        amount_minor=issued.amount_minor,
        currency=issued.currency,
        demo_mode=issued.demo_mode,
        case_id=issued.case_id,
        case_code=issued.case_code,
        message=(
            "Demo payment link created. Configure Razorpay credentials for real links."
            if issued.demo_mode else "Payment link created"
        ),
    )


@router.get("/callback", response_model=CallbackResponse)
def payment_link_callback(
    link_id: Optional[str] = Query(None, alias="razorpay_payment_link_id"),
    db: Session = Depends(get_db),
    reconciler: CallbackReconciler = Depends(get_reconciler),
    projector: DomainStateProjector = Depends(get_projector),
):
    """Redirect target after a link payment. Only the link id is taken from the query."""
    if not link_id:
        raise NotFound("Callback carries no payment link id")
    return _reconcile_and_project(db, reconciler, projector, link_id)


@router.get("/{link_id}", response_model=LinkDetailResponse)
def get_payment_link(
    link_id: str,
    db: Session = Depends(get_db),
    links: PaymentLinkService = Depends(get_link_service),
    settings: Settings = Depends(get_app_settings),
):
    """Gateway view of a link plus the local payment status."""
    link = links.fetch_link(link_id)
    return _link_detail(db, links, settings, link_id, link)


@router.patch("/{link_id}", response_model=LinkDetailResponse)
def update_payment_link(
    link_id: str,
    payload: LinkUpdateRequest,
    db: Session = Depends(get_db),
    links: PaymentLinkService = Depends(get_link_service),
    settings: Settings = Depends(get_app_settings),
):
    link = links.update_link(link_id, payload.model_dump(exclude_none=True))
    return _link_detail(db, links, settings, link_id, link, message="Payment link updated")


@router.delete("/{link_id}", response_model=LinkDetailResponse)
def cancel_payment_link(
    link_id: str,
    db: Session = Depends(get_db),
    links: PaymentLinkService = Depends(get_link_service),
    settings: Settings = Depends(get_app_settings),
):
    """Cancel a link; its pending record becomes failed, a captured one stays captured."""
    link, outcome = links.cancel_link(db, link_id)
    return _link_detail(
        db, links, settings, link_id, link,
        message=outcome.message if outcome else "Payment link cancelled",
    )


@router.post("/{link_id}/notify/{medium}", response_model=LinkNotifyResponse)
def notify_payment_link(
    link_id: str,
    medium: Literal["sms", "email"],
    links: PaymentLinkService = Depends(get_link_service),
):
    """Re-send a link to its customer by SMS or email."""
    links.notify_link(link_id, medium)
    demo = links.gateway.demo_mode
    return LinkNotifyResponse(
        link_id=link_id,
        medium=medium,
        demo_mode=demo,
        message=f"Demo mode: {medium} notification simulated" if demo else f"{medium} notification sent",
    )


@router.post("/{link_id}/resolve", response_model=CallbackResponse)
def resolve_payment_link(
    link_id: str,
    db: Session = Depends(get_db),
    reconciler: CallbackReconciler = Depends(get_reconciler),
    projector: DomainStateProjector = Depends(get_projector),
):
    """Re-reconcile a link against the gateway and project it if paid."""
    return _reconcile_and_project(db, reconciler, projector, link_id)


# ─── Helpers ─────────────────────────────────────────────────────────

def _reconcile_and_project(db, reconciler, projector, link_id: str) -> CallbackResponse:
    outcome = reconciler.reconcile_link(db, link_id)
    projection = project_outcome(db, projector, outcome) if outcome.succeeded else None
    return callback_response(outcome, projection)


def _link_detail(db: Session, links, settings: Settings, link_id: str, link: dict, message: str = "") -> LinkDetailResponse:
    record = db.query(PaymentRecord).filter(PaymentRecord.gateway_order_id == link_id).first()
    factor = settings.MINOR_UNIT_FACTOR
    return LinkDetailResponse(
        link_id=link_id,
        link_status=link.get("status") or "unknown",
        short_url=link.get("short_url") or (record.payment_link_url if record else None),
        amount=from_minor_units(link.get("amount"), factor),
        amount_paid=from_minor_units(link.get("amount_paid"), factor),
        payment_status=record.status if record else None,
        demo_mode=links.gateway.demo_mode,
        payment_link=link,
        message=message,
    )
