"""
API route modules.
"""

from .feeds import router as feeds_router
from .misc import router as misc_router, public_router as misc_public_router
from .notifications import router as notifications_router
from .rules import router as rules_router
from .stream import router as stream_router

__all__ = [
    "feeds_router",
    "misc_router",
    "misc_public_router",
    "notifications_router",
    "rules_router",
    "stream_router",
]
