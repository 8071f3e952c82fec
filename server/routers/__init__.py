"""
API Routers
===========

FastAPI routers for different API endpoints.
"""

from .auto_mode import router as auto_mode_router

__all__ = [
    "auto_mode_router",
]
