"""
Route Dependencies — Settings, gateway and service providers, callback body parsing.
"""
from fastapi import Depends, Request
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from carepay.config import Settings
from carepay.schemas.schemas import CallbackRequest, FailureCallbackRequest
from carepay.services.gateway import PaymentGateway
from carepay.services.link_service import PaymentLinkService
from carepay.services.order_service import OrderIssuer
from carepay.services.projection_service import DomainStateProjector
from carepay.services.reconcile_service import CallbackReconciler


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_order_issuer(
    settings: Settings = Depends(get_app_settings),
    gateway: PaymentGateway = Depends(get_gateway),
) -> OrderIssuer:
    return OrderIssuer(settings, gateway)


def get_reconciler(
    settings: Settings = Depends(get_app_settings),
    gateway: PaymentGateway = Depends(get_gateway),
) -> CallbackReconciler:
    return CallbackReconciler(settings, gateway)


def get_projector(settings: Settings = Depends(get_app_settings)) -> DomainStateProjector:
    return DomainStateProjector(settings)


async def read_callback_body(request: Request) -> dict:
    """Gateways post callbacks as form data; integrations post JSON. Accept both."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            raise RequestValidationError([{
                "type": "json_invalid", "loc": ("body",), "msg": "Invalid JSON body", "input": None,
            }])
        return data if isinstance(data, dict) else {}
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _validate(model, body: dict):
    try:
        return model.model_validate(body)
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False))


async def callback_payload(body: dict = Depends(read_callback_body)) -> CallbackRequest:
    return _validate(CallbackRequest, body)


async def failure_payload(body: dict = Depends(read_callback_body)) -> FailureCallbackRequest:
    return _validate(FailureCallbackRequest, body)


def get_link_service(
    settings: Settings = Depends(get_app_settings),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentLinkService:
    return PaymentLinkService(settings, gateway)
