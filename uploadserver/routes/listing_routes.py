"""Upload listing API routes."""

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Header

from uploadserver.schemas.uploads import ListingResponse
from uploadserver.service_locator import Services, get_services
from uploadserver.services.upload_service import parse_album_id

router = APIRouter(prefix="/api", tags=["Listing"])


@router.get("/uploads", response_model=ListingResponse, response_model_exclude_none=True)
@router.get("/uploads/{page}", response_model=ListingResponse, response_model_exclude_none=True)
async def list_uploads(
    page: str = "0",
    token: Optional[str] = Header(None),
    all_owners: Optional[str] = Header(None, alias="all"),
    filters: Optional[str] = Header(None),
    minoffset: Optional[str] = Header(None),
    services: Services = Depends(get_services)
):
    """
    List one page (25 entries) of uploads.

    Parameters:
        - page: Zero-based page index
        - token header: Account token (required)
        - all header: List uploads of every owner (moderators only)
        - filters header: Filter text (moderators only)
        - minoffset header: Client timezone offset in minutes, for date filters

    Returns:
        - files, count, basedomain and either albums or users

    Raises:
        - 400: Filter names unknown users
        - 401: Missing or invalid token
        - 403: all/filters used without moderator rights
    """
    user = await services.authorizer.authorize(token)
    listing = await services.listing.list_uploads(
        user,
        page=page,
        all_owners=bool(all_owners),
        filters=filters,
        minoffset=minoffset,
    )
    return ListingResponse(success=True, **asdict(listing))


@router.get("/album/{album_id}/{page}", response_model=ListingResponse, response_model_exclude_none=True)
async def list_album(
    album_id: str,
    page: str = "0",
    token: Optional[str] = Header(None),
    all_owners: Optional[str] = Header(None, alias="all"),
    filters: Optional[str] = Header(None),
    minoffset: Optional[str] = Header(None),
    services: Services = Depends(get_services)
):
    """
    List one page of uploads in an album owned by the caller.
    """
    user = await services.authorizer.authorize(token)
    listing = await services.listing.list_uploads(
        user,
        page=page,
        all_owners=bool(all_owners),
        filters=filters,
        minoffset=minoffset,
        album_id=parse_album_id(album_id),
    )
    return ListingResponse(success=True, **asdict(listing))
