from esign_engine.routes.envelopes import router as envelopes_router
from esign_engine.routes.signing import router as signing_router
from esign_engine.routes.admin import router as admin_router

__all__ = ["envelopes_router", "signing_router", "admin_router"]
