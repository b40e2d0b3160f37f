"""Ingestion of multipart uploads, chunked uploads and URL uploads."""

import asyncio
import os
import posixpath
import re
from typing import Any, Awaitable, Iterable, List, Optional
from urllib.parse import quote

import aiofiles
import aiofiles.os

from common.constants import MAX_FILES_PER_UPLOAD, SQLITE_INTEGER_MAX, SQLITE_INTEGER_MIN
from common.logging_config import get_logger
from uploadserver.chunks import SESSION_ID_RE, ChunkSessionStore, combine_fragments, write_stream
from uploadserver.config import UPLOADS_PATH, UploadSettings
from uploadserver.exceptions import (
    FileTooLargeError,
    PolicyViolationError,
    SecurityFindingError,
    SizeMismatchError,
    TooManyFragmentsError,
    UploadError,
    UpstreamFailureError,
)
from uploadserver.hooks import AiohttpFetcher, RemoteFetcher, TagStripper, VirusScanner
from uploadserver.identifiers import IdentifierAllocator
from uploadserver.permissions import is_member
from uploadserver.policies import (
    ExtensionPolicy,
    parse_identifier_length,
    parse_strip_tags,
    resolve_upload_age,
)
from uploadserver.repositories.file_repository import UploadRecord
from uploadserver.repositories.user_repository import User
from uploadserver.services.persistence_service import PersistenceService
from uploadserver.types import (
    ChunkInfo,
    FinalizeRequest,
    IncomingFile,
    PreparedFile,
    UploadContext,
    UploadResult,
)
from uploadserver.utils import extname, unlink_files

logger = get_logger(__name__)

SCANNER_ERROR_MESSAGE = "An unexpected error occurred with the virus scanner, please contact the site owner."
STRIP_ERROR_MESSAGE = "Could not strip tags from the uploaded files."
INVALID_FINALIZE_MESSAGE = "An unexpected error occurred."

_URL_SUFFIX_RE = re.compile(r"[?#]")
_URL_PROTOCOL_RE = re.compile(r"^https?://")


def parse_album_id(value: Any) -> Optional[int]:
    """Parse an album id, None when absent or not an integer the store can hold."""
    if value is None or isinstance(value, bool):
        return None
    try:
        album_id = int(str(value).strip())
    except ValueError:
        return None
    if not SQLITE_INTEGER_MIN <= album_id <= SQLITE_INTEGER_MAX:
        return None
    return album_id


def url_original_name(url: str) -> str:
    """Basename of a URL with its query and fragment removed."""
    return _URL_SUFFIX_RE.split(posixpath.basename(url))[0]


def apply_url_proxy(template: Optional[str], url: str) -> str:
    """
    Rewrite a URL through a proxy template. ``{url}`` is replaced with the
    encoded URL, ``{url-noprot}`` with the encoded URL minus its protocol.
    """
    if not template:
        return url
    return (
        template
        .replace("{url}", quote(url, safe="!~*'()"))
        .replace("{url-noprot}", quote(_URL_PROTOCOL_RE.sub("", url), safe="!~*'()"))
    )


async def _gather_all(coros: Iterable[Awaitable[Any]]) -> List[Any]:
    """
    Run coroutines concurrently and wait for all of them, then raise the first
    failure. Nothing is left running when this returns or raises.
    """
    results = await asyncio.gather(*coros, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)


class UploadService:
    """
    Drives one upload request through extension checks, storage, the scan and
    strip hooks and persistence.

    Every file written during a request is removed again when the request
    fails.
    """

    def __init__(
        self,
        settings: UploadSettings,
        allocator: IdentifierAllocator,
        chunk_store: ChunkSessionStore,
        persistence: PersistenceService,
        uploads_dir: str = UPLOADS_PATH,
        fetcher: Optional[RemoteFetcher] = None,
        scanner: Optional[VirusScanner] = None,
        stripper: Optional[TagStripper] = None,
    ):
        self.settings = settings
        self.allocator = allocator
        self.chunk_store = chunk_store
        self.persistence = persistence
        self.uploads_dir = uploads_dir
        self.fetcher = fetcher or AiohttpFetcher()
        self.scanner = scanner
        self.stripper = stripper
        self.policy = ExtensionPolicy(settings)

    async def ingest_files(
        self,
        ctx: UploadContext,
        files: List[IncomingFile],
        chunk: Optional[ChunkInfo] = None,
    ) -> Optional[List[UploadResult]]:
        """
        Ingest a multipart upload.

        Args:
            ctx: Request context
            files: Received file parts
            chunk: Fragment fields, when the request carries one fragment of a
                chunked upload

        Returns:
            Upload results, or None when a fragment was accepted into its
            chunk session

        Raises:
            UploadError: On the first failed check
        """
        album_id = parse_album_id(ctx.album_id)
        age = resolve_upload_age(self.settings, ctx.age)

        if chunk is not None and chunk.index is not None and not self.settings.chunked_uploads:
            raise PolicyViolationError("Chunked uploads are disabled at the moment.")
        is_fragment = chunk is not None and chunk.is_chunk and self.settings.chunked_uploads

        if not files:
            raise PolicyViolationError("No files.")

        if len(files) > MAX_FILES_PER_UPLOAD:
            raise PolicyViolationError(f"Maximum {MAX_FILES_PER_UPLOAD} files at a time.")

        for incoming in files:
            self.policy.check(extname(incoming.original))

        if is_fragment:
            await self._accept_fragment(files, chunk)
            return None

        prepared = await self._write_files(ctx, files, album_id, age)
        logger.info(f"Received {len(prepared)} file(s) [user_id={ctx.user.id if ctx.user else 'anonymous'}]")

        if self.settings.filter_empty_file and any(p.size == 0 for p in prepared):
            await self._discard_files(prepared)
            raise PolicyViolationError("Empty files are not allowed.")

        records = await self._finish(ctx, prepared, strip=True)
        return self.format_results(records)

    async def ingest_urls(self, ctx: UploadContext, urls: Any) -> List[UploadResult]:
        """
        Fetch remote URLs server-side and ingest them.

        A failed URL aborts the whole batch and removes everything already
        downloaded for it.
        """
        album_id = parse_album_id(ctx.album_id)
        age = resolve_upload_age(self.settings, ctx.age)

        if not self.settings.url_max_size_bytes:
            raise PolicyViolationError("Upload by URLs is disabled at the moment.")

        if not isinstance(urls, list) or not urls or not all(isinstance(url, str) for url in urls):
            raise PolicyViolationError('Missing "urls" property (array).')

        if len(urls) > MAX_FILES_PER_UPLOAD:
            raise PolicyViolationError(f"Maximum {MAX_FILES_PER_UPLOAD} URLs at a time.")

        length = parse_identifier_length(self.settings, ctx.identifier_length)

        downloaded: List[PreparedFile] = []

        async def download(url: str) -> PreparedFile:
            original = url_original_name(url)
            ext = extname(original)
            self.policy.check_url(ext)

            result = await self.fetcher.fetch(
                apply_url_proxy(self.settings.url_proxy, url),
                self.settings.url_max_size_bytes,
            )
            if result.status != 200:
                raise UpstreamFailureError(f"{result.status} {result.reason}".strip())

            name = await self.allocator.allocate(length, ext)
            prepared = PreparedFile(
                path=os.path.join(self.uploads_dir, name),
                name=name,
                original=original,
                extname=ext,
                mimetype=result.content_type.split(";")[0].strip(),
                size=len(result.body),
                album_id=album_id,
                age=age,
            )
            downloaded.append(prepared)
            async with aiofiles.open(prepared.path, "wb") as f:
                await f.write(result.body)
            logger.debug(f"Downloaded {url} to {name} ({prepared.size} bytes)")
            return prepared

        try:
            prepared = await _gather_all(download(url) for url in urls)
        except BaseException:
            await self._discard_files(downloaded)
            raise

        records = await self._finish(ctx, prepared, strip=False)
        return self.format_results(records)

    async def finish_chunks(self, ctx: UploadContext, requests: Any) -> List[UploadResult]:
        """
        Combine the fragments of one or more chunk sessions and ingest the
        results.

        Every named session is discarded once this returns or fails.

        Raises:
            TooManyFragmentsError: If a session holds more fragments than allowed
            SizeMismatchError: If a combined file differs from the tracked or
                declared size
        """
        if not self.settings.chunked_uploads:
            raise PolicyViolationError("Chunked upload is disabled at the moment.")

        if (
            not isinstance(requests, list)
            or not requests
            or any(not self._is_finalizable(request) for request in requests)
        ):
            await self._discard_named_sessions(requests)
            raise PolicyViolationError(INVALID_FINALIZE_MESSAGE)

        prepared: List[PreparedFile] = []
        try:
            await _gather_all(self._combine(ctx, request, prepared) for request in requests)
            records = await self._finish(ctx, prepared, strip=True)
        except BaseException:
            await self._discard_files(prepared)
            await self._discard_named_sessions(requests)
            raise

        return self.format_results(records)

    async def _discard_named_sessions(self, requests: Any) -> None:
        if not isinstance(requests, list):
            return
        session_ids = {
            request.session_id
            for request in requests
            if isinstance(request, FinalizeRequest)
            and isinstance(request.session_id, str)
            and SESSION_ID_RE.match(request.session_id)
        }
        await asyncio.gather(*(self.chunk_store.discard(session_id) for session_id in session_ids))

    def _is_finalizable(self, request: Any) -> bool:
        if not isinstance(request, FinalizeRequest) or not isinstance(request.session_id, str):
            return False
        session = self.chunk_store.get(request.session_id)
        return session is not None and session.fragment_count >= 2

    async def _combine(self, ctx: UploadContext, request: FinalizeRequest, prepared: List[PreparedFile]) -> None:
        async with self.chunk_store.locked(request.session_id, create=False) as session:
            if session is None:
                raise PolicyViolationError(INVALID_FINALIZE_MESSAGE)

            if session.fragment_count > self.settings.max_chunks_count:
                raise TooManyFragmentsError()

            ext = extname(request.original or "")
            self.policy.check(ext)

            age = resolve_upload_age(self.settings, request.age)

            size = session.accumulated_size
            if self.settings.filter_empty_file and size == 0:
                raise PolicyViolationError("Empty files are not allowed.")
            if size > self.settings.max_size_bytes:
                raise FileTooLargeError(f"File too large. Chunks are bigger than {self.settings.max_size_mb} MB.")

            length = parse_identifier_length(self.settings, request.identifier_length)
            name = await self.allocator.allocate(length, ext)

            album_id = parse_album_id(request.album_id)
            if album_id is None:
                album_id = parse_album_id(ctx.album_id)

            target = PreparedFile(
                path=os.path.join(self.uploads_dir, name),
                name=name,
                original=request.original or "",
                extname=ext,
                mimetype=request.mimetype or "",
                size=size,
                album_id=album_id,
                age=age,
            )
            prepared.append(target)
            written = await combine_fragments(session, target.path)
            logger.info(
                f"Combined {session.fragment_count} fragments into {name} ({written} bytes) "
                f"[session_id={request.session_id}]"
            )

        await self.chunk_store.discard(request.session_id)

        stat = await aiofiles.os.stat(target.path)
        if stat.st_size != size:
            logger.error(f"{name} is {stat.st_size} bytes, fragments tracked {size} [session_id={request.session_id}]")
            raise SizeMismatchError()
        if request.size is not None and request.size != size:
            logger.error(f"{name} is {size} bytes, client declared {request.size} [session_id={request.session_id}]")
            raise SizeMismatchError()

    async def _accept_fragment(self, files: List[IncomingFile], chunk: ChunkInfo) -> None:
        if len(files) != 1:
            raise PolicyViolationError("Chunked uploads accept one file per request.")

        await self.chunk_store.write_fragment(
            session_id=chunk.session_id,
            index=chunk.index,
            total_count=chunk.total_count,
            source=files[0].stream,
            max_size=self.settings.max_size_bytes,
        )

    async def _write_files(
        self,
        ctx: UploadContext,
        files: List[IncomingFile],
        album_id: Optional[int],
        age: Optional[float],
    ) -> List[PreparedFile]:
        length = parse_identifier_length(self.settings, ctx.identifier_length)
        written: List[PreparedFile] = []

        async def write(incoming: IncomingFile) -> PreparedFile:
            ext = extname(incoming.original)
            name = await self.allocator.allocate(length, ext)
            prepared = PreparedFile(
                path=os.path.join(self.uploads_dir, name),
                name=name,
                original=incoming.original,
                extname=ext,
                mimetype=incoming.mimetype or "",
                size=0,
                album_id=album_id,
                age=age,
            )
            written.append(prepared)
            prepared.size = await write_stream(prepared.path, incoming.stream, self.settings.max_size_bytes)
            return prepared

        try:
            return await _gather_all(write(incoming) for incoming in files)
        except BaseException:
            await self._discard_files(written)
            raise

    async def _discard_files(self, prepared: List[PreparedFile]) -> None:
        """Unlink written files and hand their identifiers back to the allocator."""
        await unlink_files(p.path for p in prepared)
        for p in prepared:
            self.allocator.release(p.name[: len(p.name) - len(p.extname)])

    async def _finish(self, ctx: UploadContext, prepared: List[PreparedFile], strip: bool) -> List[UploadRecord]:
        try:
            await self.scan_files(ctx.user, prepared)
            if strip:
                await self.strip_tags(prepared, ctx.strip_tags)
            return await self.persistence.store_files(ctx.user, prepared, ctx.ip)
        except BaseException:
            await self._discard_files(prepared)
            raise

    async def scan_files(self, user: Optional[User], prepared: List[PreparedFile]) -> None:
        """
        Run the virus scanner over prepared files.

        Raises:
            SecurityFindingError: If a threat was found
            UpstreamFailureError: If the scan engine failed
        """
        if self.scanner is None:
            return

        group = self.settings.scan_bypass_group
        if group and is_member(user, group):
            logger.info(f"Skipping scan of {len(prepared)} file(s), {group} group bypass [user_id={user.id}]")
            return

        targets = []
        for p in prepared:
            if p.extname in self.settings.scan_whitelist_extensions:
                logger.debug(f"Skipping scan of {p.name}, extension whitelisted")
                continue
            if self.settings.scan_max_size and p.size > self.settings.scan_max_size:
                logger.debug(f"Skipping scan of {p.name}, size {p.size} > {self.settings.scan_max_size}")
                continue
            targets.append(p)

        if not targets:
            return

        scanner = self.scanner
        results = await asyncio.gather(*(scanner.scan_file(p.path) for p in targets), return_exceptions=True)

        threats = []
        for p, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error(f"Virus scanner failed on {p.name}: {result}", exc_info=result)
                raise UpstreamFailureError(SCANNER_ERROR_MESSAGE) from result
            if result:
                logger.warning(f"{p.name}: {result} FOUND")
                threats.append(result)

        if threats:
            more = ", and more" if len(threats) > 1 else ""
            raise SecurityFindingError(f"Threat found: {threats[0]}{more}.")

    async def strip_tags(self, prepared: List[PreparedFile], value: Optional[str]) -> None:
        if self.stripper is None or not parse_strip_tags(self.settings, value):
            return

        try:
            await _gather_all(self.stripper.strip(p.path, p.extname) for p in prepared)
        except UploadError:
            raise
        except Exception as e:
            logger.error(f"Failed to strip tags: {e}", exc_info=True)
            raise UpstreamFailureError(STRIP_ERROR_MESSAGE) from e

        for p in prepared:
            p.size = (await aiofiles.os.stat(p.path)).st_size

    def format_results(self, records: List[UploadRecord]) -> List[UploadResult]:
        domain = self.settings.domain.rstrip("/")
        return [
            UploadResult(
                name=record.name,
                url=f"{domain}/{record.name}",
                expirydate=record.expirydate if self.settings.temporary_uploads else None,
            )
            for record in records
        ]
