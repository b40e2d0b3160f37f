"""Upload API routes."""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.datastructures import FormData, UploadFile

from uploadserver.exceptions import PolicyViolationError
from uploadserver.schemas.uploads import FinishChunksRequest, UploadedFile, UploadResponse
from uploadserver.service_locator import Services, get_services
from uploadserver.types import ChunkInfo, FinalizeRequest, IncomingFile, UploadContext, UploadResult

router = APIRouter(prefix="/api", tags=["Uploads"])

FILES_FIELD = "files[]"


def remap_dropzone_fields(form: FormData) -> Dict[str, str]:
    """
    Collect the text fields of a multipart form. Dropzone prefixes its fields
    with 'dz' (dzuuid, dzchunkindex, ...); the prefix is dropped so the API
    can be used without it.
    """
    fields: Dict[str, str] = {}
    for key, value in form.multi_items():
        if not isinstance(value, str):
            continue
        if key.startswith("dz"):
            key = key[2:]
        fields[key] = value
    return fields


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _response(results: Optional[List[UploadResult]]) -> UploadResponse:
    if results is None:
        return UploadResponse(success=True)
    return UploadResponse(
        success=True,
        files=[UploadedFile(name=r.name, url=r.url, expirydate=r.expirydate) for r in results],
    )


@router.post("/upload/finishchunks", response_model=UploadResponse, response_model_exclude_none=True)
async def finish_chunks(
    body: FinishChunksRequest,
    request: Request,
    token: Optional[str] = Header(None),
    striptags: Optional[str] = Header(None),
    services: Services = Depends(get_services)
):
    """
    Combine the fragments of finished chunked uploads.

    Parameters:
        - files: Sessions to finalize ({uuid, original, type, albumid, age, filelength, size})
        - token header: Account token (required on private deployments)
        - striptags header: Strip metadata tags when allowed

    Returns:
        - files: name, url and expirydate of each stored file

    Raises:
        - 400: Invalid session, policy violation or size mismatch
        - 401: Missing or invalid token on a private deployment
    """
    user = await services.authorizer.resolve_uploader(token)
    ctx = UploadContext(
        user=user,
        ip=_client_ip(request),
        album_id=request.headers.get("albumid"),
        strip_tags=striptags,
    )

    finalize = [
        FinalizeRequest(
            session_id=f.uuid,
            original=f.original or "",
            mimetype=f.type or "",
            album_id=f.albumid,
            age=f.age,
            identifier_length=f.filelength,
            size=f.size,
        )
        for f in body.files
    ]
    results = await services.uploads.finish_chunks(ctx, finalize)
    return _response(results)


@router.post("/upload", response_model=UploadResponse, response_model_exclude_none=True)
@router.post("/upload/{albumid}", response_model=UploadResponse, response_model_exclude_none=True)
async def upload(
    request: Request,
    albumid: Optional[str] = None,
    token: Optional[str] = Header(None),
    age: Optional[str] = Header(None),
    filelength: Optional[str] = Header(None),
    striptags: Optional[str] = Header(None),
    services: Services = Depends(get_services)
):
    """
    Upload files (multipart/form-data) or remote URLs (JSON).

    Parameters:
        - files[]: Files to upload; a chunked upload sends one fragment per
          request along with uuid, chunkindex and totalchunkcount
        - urls: JSON array of URLs to fetch server-side
        - albumid header or path: Target album
        - age header: Retention age in hours
        - filelength header: Identifier length
        - token header: Account token (required on private deployments)

    Returns:
        - files: name, url and expirydate of each stored file; omitted when a
          fragment was accepted

    Raises:
        - 400: Policy violation, failed fetch or threat found
        - 401: Missing or invalid token on a private deployment
        - 503: No unique name could be allocated
    """
    user = await services.authorizer.resolve_uploader(token)
    ctx = UploadContext(
        user=user,
        ip=_client_ip(request),
        album_id=request.headers.get("albumid") or albumid,
        age=age,
        identifier_length=filelength,
        strip_tags=striptags,
    )

    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise PolicyViolationError("Invalid JSON body.")
        urls = body.get("urls") if isinstance(body, dict) else None
        results = await services.uploads.ingest_urls(ctx, urls)
        return _response(results)

    form = await request.form()
    fields = remap_dropzone_fields(form)
    files = [
        IncomingFile(original=part.filename or "", mimetype=part.content_type or "", stream=part)
        for part in form.getlist(FILES_FIELD)
        if isinstance(part, UploadFile)
    ]
    chunk = ChunkInfo(
        session_id=fields.get("uuid"),
        index=_int_or_none(fields.get("chunkindex")),
        total_count=_int_or_none(fields.get("totalchunkcount")),
    )

    results = await services.uploads.ingest_files(ctx, files, chunk)
    return _response(results)
