from carepay.routes.payment import router as payment_router
from carepay.routes.links import router as links_router
from carepay.routes.admin import router as admin_router

__all__ = ["payment_router", "links_router", "admin_router"]
