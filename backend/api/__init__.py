# api/__init__.py
from api.payment_routes import (
    router,
    get_session_manager,
)

__all__ = [
    "router",
    "get_session_manager",
]
