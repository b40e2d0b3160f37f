"""Entry point for the upload server."""

import os
import time
import uuid

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from common.logging_config import request_id_var, setup_logging
from uploadserver.config import CHUNKS_PATH, SERVER_HOST, SERVER_PORT, UPLOADS_PATH, UploadSettings
from uploadserver.database import init_database
from uploadserver.exceptions import ErrorKind, StoreFailureError, UploadError
from uploadserver.hooks import AiohttpFetcher
from uploadserver.routes.listing_routes import router as listing_router
from uploadserver.routes.upload_routes import router as upload_router
from uploadserver.service_locator import build_services, get_services, set_services

logger = setup_logging('uploadserver')

app = FastAPI(
    title="Upload Server",
    description="File upload ingestion and listing service",
    version="1.0.0"
)

ERROR_STATUS = {
    ErrorKind.POLICY_VIOLATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INTEGRITY_FAILURE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.SECURITY_FINDING: status.HTTP_400_BAD_REQUEST,
    ErrorKind.UPSTREAM_FAILURE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.USER_NOT_FOUND: status.HTTP_400_BAD_REQUEST,
    ErrorKind.TRANSIENT_ALLOCATION: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.STORE_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.NOT_AUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    # Reported as success: false on a normal response
    ErrorKind.ACCOUNT_DISABLED: status.HTTP_200_OK,
}


def error_response(status_code: int, description: str, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "description": description, "code": code}
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Middleware to log all HTTP requests and responses.
    """
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    reset_token = request_id_var.set(request_id)

    start_time = time.time()

    logger.info(f"Request started: {request.method} {request.url.path}")

    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(reset_token)

    duration = time.time() - start_time

    logger.info(
        f"Request completed: {request.method} {request.url.path} "
        f"status={response.status_code} duration={duration:.3f}s [request_id={request_id}]"
    )

    response.headers["X-Request-ID"] = request_id

    return response


@app.on_event("startup")
async def startup_event():
    """
    Initialize storage and services on application startup.
    """
    logger.info("Upload server starting up...")

    os.makedirs(UPLOADS_PATH, exist_ok=True)
    os.makedirs(CHUNKS_PATH, exist_ok=True)

    init_database()
    logger.info("Database initialized")

    settings = UploadSettings.from_env()
    services = build_services(settings)

    if settings.cache_file_identifiers:
        services.allocator.preload()

    await services.task_queue.start()
    set_services(services)
    logger.info("Background task queue started")


@app.on_event("shutdown")
async def shutdown_event():
    """
    Cleanup resources on application shutdown.
    """
    logger.info("Upload server shutting down...")

    try:
        services = get_services()
    except RuntimeError:
        return

    await services.task_queue.stop()
    logger.info("Background task queue stopped")

    if isinstance(services.fetcher, AiohttpFetcher):
        await services.fetcher.close()

    set_services(None)


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    status_code = ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)

    if isinstance(exc, StoreFailureError):
        logger.error(
            f"Store failure: {exc.diagnostic} [request_id={request_id}] path={request.url.path}"
        )
    else:
        logger.warning(
            f"{exc.kind.value}: {exc.message} [request_id={request_id}] path={request.url.path}"
        )

    return error_response(status_code, exc.message, exc.kind.value)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.warning(
        f"Invalid request: {exc.errors()} [request_id={request_id}] path={request.url.path}"
    )
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        "Invalid request.",
        ErrorKind.POLICY_VIOLATION.value
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.error(
        f"Unexpected error: {exc} [request_id={request_id}] path={request.url.path}",
        exc_info=exc
    )
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Try again?",
        "INTERNAL_ERROR"
    )


app.include_router(upload_router)
app.include_router(listing_router)


@app.get("/")
async def root():
    """
    Root endpoint for health check.
    """
    return {"message": "Upload Server API", "status": "running"}


@app.get("/health")
async def health_check():
    """
    Health check endpoint for Docker healthcheck.
    Returns 200 if service is alive.
    """
    return {"status": "healthy", "service": "uploadserver"}


def main() -> None:
    """
    Start the FastAPI server with uvicorn.
    """
    uvicorn.run(
        "uploadserver.main:app",
        host=SERVER_HOST,
        port=SERVER_PORT
    )


if __name__ == "__main__":
    main()
