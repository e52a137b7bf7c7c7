from carepay.services.gateway import PaymentGateway, RazorpayGateway, DemoGateway, build_gateway
from carepay.services.audit_service import AuditService
from carepay.services.customer_service import CustomerService
from carepay.services.booking_service import BookingService
from carepay.services.order_service import OrderIssuer, IssuedOrder
from carepay.services.reconcile_service import CallbackReconciler, ReconcileOutcome
from carepay.services.projection_service import DomainStateProjector, Projection
from carepay.services.link_service import PaymentLinkService, IssuedLink

__all__ = [
    "PaymentGateway", "RazorpayGateway", "DemoGateway", "build_gateway",
    "AuditService", "CustomerService", "BookingService",
    "OrderIssuer", "IssuedOrder",
    "CallbackReconciler", "ReconcileOutcome",
    "DomainStateProjector", "Projection",
    "PaymentLinkService", "IssuedLink",
]
