"""API routes package."""

from uploadserver.routes.listing_routes import router as listing_router
from uploadserver.routes.upload_routes import router as upload_router

__all__ = ["listing_router", "upload_router"]
