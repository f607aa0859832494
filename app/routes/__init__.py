"""Routes module"""
from .packets import router as packets_router
from .admin_packets import router as admin_packets_router
from .health import router as health_router

__all__ = ["packets_router", "admin_packets_router", "health_router"]
