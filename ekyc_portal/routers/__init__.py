from .admin import admin_router
from .auth import auth_router
from .kyc import kyc_router
from .realtime import realtime_router

__all__ = ["admin_router", "auth_router", "kyc_router", "realtime_router"]
