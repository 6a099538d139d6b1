"""
API routes module.
"""

from webhook_relay.api.routes.events import router as events_router
from webhook_relay.api.routes.health import router as health_router

__all__ = ["events_router", "health_router"]
