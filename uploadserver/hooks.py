"""
Boundaries to external collaborators: virus scanner, tag stripper, thumbnail
generator, derived caches and the remote fetch transport.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

import aiohttp

from common.constants import BYTES_PER_MB, STREAM_PIECE_SIZE_BYTES
from common.logging_config import get_logger
from uploadserver.exceptions import FileTooLargeError, UpstreamFailureError

logger = get_logger(__name__)


class VirusScanner(Protocol):
    async def scan_file(self, path: str) -> Optional[str]:
        """
        Scan one file.

        Returns:
            Name of the threat found, or None if the file is clean

        Raises:
            Exception: If the scan engine itself fails
        """
        ...


class TagStripper(Protocol):
    async def strip(self, path: str, extname: str) -> None:
        """Remove metadata tags in place. Files it can't handle are left untouched."""
        ...


class ThumbnailGenerator(Protocol):
    async def generate(self, name: str, extname: str) -> None:
        ...


class CacheInvalidator(Protocol):
    def invalidate_stats(self, category: str) -> None:
        ...

    def invalidate_albums(self, album_ids: Iterable[int]) -> None:
        ...


class NullCacheInvalidator:
    """Used when no derived caches are deployed."""

    def invalidate_stats(self, category: str) -> None:
        logger.debug(f"Stats cache invalidated [category={category}]")

    def invalidate_albums(self, album_ids: Iterable[int]) -> None:
        logger.debug(f"Album caches invalidated [album_ids={list(album_ids)}]")


@dataclass(frozen=True)
class FetchResult:
    status: int
    reason: str
    content_type: str
    body: bytes


class RemoteFetcher(Protocol):
    async def fetch(self, url: str, max_size: int) -> FetchResult:
        ...


class AiohttpFetcher:
    """
    Fetch transport over aiohttp. The body is read in pieces and the fetch is
    aborted once it grows past max_size.
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session
        self._owns_session = session is None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def fetch(self, url: str, max_size: int) -> FetchResult:
        session = await self._ensure_session()
        try:
            return await self._fetch(session, url, max_size)
        except aiohttp.ClientError as e:
            logger.warning(f"Fetch of {url} failed: {e}")
            raise UpstreamFailureError(f"Could not fetch the URL: {e.__class__.__name__}.") from e

    async def _fetch(self, session: aiohttp.ClientSession, url: str, max_size: int) -> FetchResult:
        async with session.get(url) as response:
            if response.status != 200:
                return FetchResult(response.status, response.reason or "", "", b"")

            if max_size and response.content_length is not None and response.content_length > max_size:
                raise FileTooLargeError(f"File too large. Maximum size is {max_size // BYTES_PER_MB} MB.")

            pieces = []
            received = 0
            async for piece in response.content.iter_chunked(STREAM_PIECE_SIZE_BYTES):
                received += len(piece)
                if max_size and received > max_size:
                    raise FileTooLargeError(f"File too large. Maximum size is {max_size // BYTES_PER_MB} MB.")
                pieces.append(piece)

            return FetchResult(
                status=response.status,
                reason=response.reason or "",
                content_type=response.headers.get("Content-Type", ""),
                body=b"".join(pieces),
            )
