from carepay.models.payment import PaymentRecord, PaymentStatus
from carepay.models.customer import CustomerIdentity
from carepay.models.booking import BookingCase, ServiceType, CasePaymentStatus
from carepay.models.audit import PaymentEvent

__all__ = [
    "PaymentRecord", "PaymentStatus", "CustomerIdentity",
    "BookingCase", "ServiceType", "CasePaymentStatus", "PaymentEvent",
]
