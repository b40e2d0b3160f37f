"""Service layer for business logic."""

from uploadserver.services.listing_service import ListingService
from uploadserver.services.persistence_service import PersistenceService
from uploadserver.services.upload_service import UploadService

__all__ = [
    "ListingService",
    "PersistenceService",
    "UploadService",
]
