"""API routers."""

from postlab.api.routers.chat import router as chat_router
from postlab.api.routers.history import router as history_router
from postlab.api.routers.simulate import router as simulate_router
from postlab.api.routers.usage import router as usage_router

__all__ = [
    "simulate_router",
    "usage_router",
    "history_router",
    "chat_router",
]
