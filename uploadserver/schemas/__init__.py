"""Pydantic schemas for API requests and responses."""

from uploadserver.schemas.common import ErrorResponse
from uploadserver.schemas.uploads import (
    FinalizeFile,
    FinishChunksRequest,
    ListingResponse,
    UploadedFile,
    UploadResponse
)

__all__ = [
    "ErrorResponse",
    "FinalizeFile",
    "FinishChunksRequest",
    "ListingResponse",
    "UploadedFile",
    "UploadResponse"
]
