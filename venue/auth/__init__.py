from .routes import auth_router
from .service import AuthService

__all__ = ["auth_router", "AuthService"]
