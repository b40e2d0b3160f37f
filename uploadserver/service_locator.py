"""Service locator wiring the upload server components together."""

from dataclasses import dataclass
from typing import Optional

from uploadserver.auth import Authorizer
from uploadserver.chunks import ChunkSessionStore
from uploadserver.config import CHUNKS_PATH, UPLOADS_PATH, UploadSettings
from uploadserver.hooks import (
    AiohttpFetcher,
    CacheInvalidator,
    RemoteFetcher,
    TagStripper,
    ThumbnailGenerator,
    VirusScanner,
)
from uploadserver.identifiers import IdentifierAllocator
from uploadserver.services.listing_service import ListingService
from uploadserver.services.persistence_service import PersistenceService
from uploadserver.services.upload_service import UploadService
from uploadserver.tasks import BackgroundTaskQueue


@dataclass
class Services:
    settings: UploadSettings
    authorizer: Authorizer
    allocator: IdentifierAllocator
    chunk_store: ChunkSessionStore
    task_queue: BackgroundTaskQueue
    fetcher: RemoteFetcher
    uploads: UploadService
    listing: ListingService


_services: Optional[Services] = None


def build_services(
    settings: UploadSettings,
    uploads_dir: str = UPLOADS_PATH,
    chunks_dir: str = CHUNKS_PATH,
    fetcher: Optional[RemoteFetcher] = None,
    scanner: Optional[VirusScanner] = None,
    stripper: Optional[TagStripper] = None,
    thumbnailer: Optional[ThumbnailGenerator] = None,
    cache: Optional[CacheInvalidator] = None,
) -> Services:
    """
    Build every component for one process. The task queue still has to be
    started by the caller.
    """
    allocator = IdentifierAllocator(uploads_dir, use_cache=settings.cache_file_identifiers)
    chunk_store = ChunkSessionStore(chunks_dir)
    task_queue = BackgroundTaskQueue(name="thumbnails")
    fetcher = fetcher or AiohttpFetcher()

    persistence = PersistenceService(settings, task_queue, thumbnailer=thumbnailer, cache=cache)
    uploads = UploadService(
        settings,
        allocator,
        chunk_store,
        persistence,
        uploads_dir=uploads_dir,
        fetcher=fetcher,
        scanner=scanner,
        stripper=stripper,
    )

    return Services(
        settings=settings,
        authorizer=Authorizer(settings),
        allocator=allocator,
        chunk_store=chunk_store,
        task_queue=task_queue,
        fetcher=fetcher,
        uploads=uploads,
        listing=ListingService(settings),
    )


def set_services(services: Optional[Services]):
    """Set global services instance"""
    global _services
    _services = services


def get_services() -> Services:
    """Get global services instance"""
    if _services is None:
        raise RuntimeError("Upload server services are not initialized")
    return _services
