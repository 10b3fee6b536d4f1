"""API Routers package"""

from . import queue_router

__all__ = ["queue_router"]
