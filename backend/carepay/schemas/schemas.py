"""
Pydantic Schemas — Request & Response models for API validation.
"""
import json
from datetime import datetime
from typing import Any, Optional, Dict, List
from pydantic import BaseModel, Field, AliasChoices, ConfigDict, field_validator, model_validator


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


# ──────────────── Orders ────────────────

class OrderCreateRequest(BaseModel):
    amount: Any = Field(None, description="Amount in major units (INR), must be > 0")
    currency: Optional[str] = Field(None, description="ISO currency code, defaults to INR")
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    description: Optional[str] = None
    reference_id: Optional[str] = Field(None, description="Caller's own tracking id, used as the receipt")
    service_type: Optional[str] = Field(None, description="Creates a pending booking case when given")
    service_datetime: Optional[datetime] = None
    notes: Optional[Dict[str, Any]] = None

    @field_validator("*", mode="before")
    @classmethod
    def blank_strings_to_none(cls, value):
        return _blank_to_none(value)


class OrderCreateResponse(BaseModel):
    success: bool = True
    order_id: str
    amount: float                  # major units
    amount_minor: int              # paise, as sent to the gateway
    currency: str
    key_id: Optional[str] = None
    payment_status: str = "pending"
    demo_mode: bool
    case_id: Optional[int] = None
    case_code: Optional[str] = None
    callback_url: str
    failure_url: str
    message: str = ""


# ──────────────── Payment Links ────────────────

class LinkCreateRequest(OrderCreateRequest):
    callback_url: Optional[str] = Field(None, description="Where the gateway redirects after payment")
    expire_by: Optional[int] = Field(None, description="Unix timestamp after which the link expires")
    reminder_enable: Optional[bool] = None
    notify_sms: Optional[bool] = Field(None, description="Defaults to true when a phone is given")
    notify_email: Optional[bool] = Field(None, description="Defaults to true when an email is given")


class LinkCreateResponse(BaseModel):
    success: bool = True
    link_id: str
    short_url: Optional[str] = None
    link_status: str
    amount: float                  # major units
    amount_minor: int
    currency: str
    payment_status: str = "pending"
    demo_mode: bool
    case_id: Optional[int] = None
    case_code: Optional[str] = None
    message: str = ""


class LinkUpdateRequest(BaseModel):
    description: Optional[str] = None
    expire_by: Optional[int] = None
    reminder_enable: Optional[bool] = None
    reference_id: Optional[str] = None
    notes: Optional[Dict[str, Any]] = None

    @field_validator("*", mode="before")
    @classmethod
    def blank_strings_to_none(cls, value):
        return _blank_to_none(value)


class LinkDetailResponse(BaseModel):
    success: bool = True
    link_id: str
    link_status: str
    short_url: Optional[str] = None
    amount: Optional[float] = None         # major units
    amount_paid: Optional[float] = None
    payment_status: Optional[str] = None   # local record, when there is one
    demo_mode: bool
    payment_link: Dict[str, Any] = {}
    message: str = ""


class LinkNotifyResponse(BaseModel):
    success: bool = True
    link_id: str
    medium: str
    demo_mode: bool
    message: str = ""


# ──────────────── Callbacks ────────────────

class CallbackRequest(BaseModel):
    """Success callback. Accepts Razorpay's razorpay_* keys or plain ones."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    order_id: str = Field(..., validation_alias=AliasChoices("razorpay_order_id", "order_id"))
    payment_id: Optional[str] = Field(None, validation_alias=AliasChoices("razorpay_payment_id", "payment_id"))
    signature: Optional[str] = Field(None, validation_alias=AliasChoices("razorpay_signature", "signature"))
    amount: Any = None
    method: Optional[str] = None
    card_last4: Optional[str] = None
    card_network: Optional[str] = None
    case_ref: Optional[str] = Field(None, validation_alias=AliasChoices("case_ref", "case_id", "service_case_id"))
    service_type: Optional[str] = None
    service_datetime: Optional[datetime] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def blank_strings_to_none(cls, value):
        return _blank_to_none(value)

    @field_validator("case_ref", mode="before")
    @classmethod
    def case_ref_as_text(cls, value):
        return str(value) if value is not None else None

    def customer_data(self) -> Dict[str, Any]:
        """Declared plus extra fields, for customer extraction."""
        data = {**(self.model_extra or {}), **self.model_dump()}
        return {k: v for k, v in data.items() if v is not None}


class FailureCallbackRequest(BaseModel):
    """Failure callback: Razorpay's error[...] form keys, a nested "error" object, or plain keys."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: Optional[str] = Field(None, validation_alias=AliasChoices("razorpay_order_id", "order_id"))
    payment_id: Optional[str] = Field(None, validation_alias=AliasChoices("razorpay_payment_id", "payment_id"))
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    error_reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def flatten_error(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        error = data.pop("error", None)
        if isinstance(error, dict):
            for key in ("code", "description", "reason", "metadata"):
                if key in error:
                    data.setdefault(f"error[{key}]", error[key])
        for key in ("code", "description", "reason"):
            if data.get(f"error[{key}]") and not data.get(f"error_{key}"):
                data[f"error_{key}"] = data[f"error[{key}]"]

        metadata = data.get("error[metadata]")
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                metadata = None
        if isinstance(metadata, dict):
            if not (data.get("order_id") or data.get("razorpay_order_id")):
                data["order_id"] = metadata.get("order_id")
            if not (data.get("payment_id") or data.get("razorpay_payment_id")):
                data["payment_id"] = metadata.get("payment_id")
        return {k: _blank_to_none(v) for k, v in data.items()}

    @model_validator(mode="after")
    def require_order_id(self):
        if not self.order_id:
            raise ValueError("order_id is required")
        return self


class ResolveRequest(BaseModel):
    """Optional hints for an administrative re-reconciliation."""

    payment_id: Optional[str] = None
    amount: Any = None
    case_ref: Optional[str] = None
    service_type: Optional[str] = None
    service_datetime: Optional[datetime] = None

    @field_validator("*", mode="before")
    @classmethod
    def blank_strings_to_none(cls, value):
        return _blank_to_none(value)


class ProjectionInfo(BaseModel):
    customer_id: Optional[int] = None
    case_id: int
    case_code: str
    service_type_id: Optional[int] = None
    service_type: str
    already_applied: bool = False

    class Config:
        from_attributes = True


class CallbackResponse(BaseModel):
    success: bool
    order_id: str
    payment_id: Optional[str] = None
    amount: Optional[float] = None
    payment_status: str
    signature_verified: bool = False
    test_mode: bool = False
    demo_mode: bool
    replayed: bool = False
    message: str = ""
    projection: Optional[ProjectionInfo] = None


class PaymentStatusResponse(BaseModel):
    success: bool = True
    order_id: str
    payment_id: Optional[str] = None
    payment_status: str
    amount: float
    currency: str
    method: str
    card_last4: Optional[str] = None
    card_network: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    case_id: Optional[int] = None
    reference_id: Optional[str] = None
    failure_reason: Optional[str] = None
    demo: bool = False
    demo_mode: bool
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ──────────────── Admin / Audit ────────────────

class PaymentSummary(BaseModel):
    id: int
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    amount: float
    currency: str
    status: str
    method: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    case_id: Optional[int] = None
    demo: bool = False
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentListResponse(BaseModel):
    success: bool = True
    total: int
    items: List[PaymentSummary]
    demo_mode: bool


class CaseSummary(BaseModel):
    id: int
    case_code: str
    service_type: Optional[str] = None
    service_datetime: Optional[datetime] = None
    amount: Optional[float] = None
    payment_status: str
    order_id: Optional[str] = None

    class Config:
        from_attributes = True


class CustomerDetailResponse(BaseModel):
    success: bool = True
    id: int
    first_name: str
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    cases: List[CaseSummary] = []
    demo_mode: bool


class PaymentEventEntry(BaseModel):
    id: int
    order_id: str
    action: str
    payload_hash: Optional[str] = None
    previous_hash: Optional[str] = None
    event_metadata: Optional[Dict] = None
    timestamp: datetime

    class Config:
        from_attributes = True


class EventTrailResponse(BaseModel):
    success: bool = True
    order_id: str
    events: List[PaymentEventEntry]
    demo_mode: bool


class ChainVerifyResponse(BaseModel):
    success: bool = True
    order_id: str
    valid: bool
    total_entries: int
    broken_at: Optional[int] = None
    message: Optional[str] = None
    demo_mode: bool


# ──────────────── Generic ────────────────

class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    database: str
    provider: str
    demo_mode: bool
    uptime_seconds: float
