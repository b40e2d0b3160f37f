"""Pydantic schemas for upload and listing endpoints."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel


class FinalizeFile(BaseModel):
    """One chunk session to finalize."""
    uuid: Optional[str] = None
    original: Optional[str] = None
    type: Optional[str] = None
    albumid: Optional[Union[int, str]] = None
    age: Optional[Union[float, str]] = None
    filelength: Optional[Union[int, str]] = None
    size: Optional[int] = None


class FinishChunksRequest(BaseModel):
    """Request model for finalizing chunked uploads."""
    files: List[FinalizeFile] = []


class UploadedFile(BaseModel):
    name: str
    url: str
    expirydate: Optional[int] = None


class UploadResponse(BaseModel):
    """Response model for uploads. files is omitted for accepted chunks."""
    success: bool = True
    files: Optional[List[UploadedFile]] = None


class ListingResponse(BaseModel):
    """Response model for upload listings."""
    success: bool = True
    files: List[Dict[str, Any]]
    count: int
    basedomain: Optional[str] = None
    albums: Optional[Dict[int, str]] = None
    users: Optional[Dict[int, str]] = None
