"""Chunk session store and fragment reassembly for chunked uploads."""

import asyncio
import os
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

import aiofiles
import aiofiles.os

from common.constants import STREAM_PIECE_SIZE_BYTES
from common.logging_config import get_logger
from uploadserver.exceptions import FileTooLargeError, PolicyViolationError

logger = get_logger(__name__)

SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def fragment_name(index: int, total_count: Optional[int]) -> str:
    """
    Name a fragment by its zero-padded index so that lexicographic order
    equals numeric order.

    Padding width is the digit count of total_count - 1, minimum 1.
    """
    digits = len(str(total_count - 1)) if total_count is not None and total_count > 1 else 1
    return str(index).zfill(digits)


def validate_session_id(session_id) -> str:
    if not isinstance(session_id, str) or not SESSION_ID_RE.match(session_id):
        raise PolicyViolationError("Invalid chunked upload session.")
    return session_id


@dataclass
class ChunkSession:
    """
    State of one in-progress chunked upload.

    fragments maps fragment name to its size on disk, in arrival order. A
    re-sent fragment replaces the previous size for that name.
    """
    session_id: str
    root: str
    fragments: Dict[str, int] = field(default_factory=dict)

    @property
    def accumulated_size(self) -> int:
        return sum(self.fragments.values())

    @property
    def fragment_count(self) -> int:
        return len(self.fragments)

    def sorted_fragments(self) -> List[str]:
        return sorted(self.fragments)

    def fragment_path(self, name: str) -> str:
        return os.path.join(self.root, name)


class ChunkSessionStore:
    """
    Keyed store of chunk sessions with one lock per session id.

    Sessions are created on first use (insert-if-absent), mutated while
    holding their own lock, and removed on finalize or abort.
    """

    def __init__(self, chunks_dir: str):
        self.chunks_dir = chunks_dir
        self._sessions: Dict[str, ChunkSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, session_id: str) -> Optional[ChunkSession]:
        return self._sessions.get(session_id)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        # discard() drops the lock entry, so re-check after acquiring
        while True:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[session_id] = lock
            await lock.acquire()
            if self._locks.get(session_id) is lock:
                break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    async def open(self, session_id: str) -> ChunkSession:
        """
        Return the session for session_id, creating it and its directory if absent.
        """
        session_id = validate_session_id(session_id)
        async with self._session_lock(session_id):
            return await self._open_unlocked(session_id)

    async def _open_unlocked(self, session_id: str) -> ChunkSession:
        session = self._sessions.get(session_id)
        if session is not None:
            return session

        root = os.path.join(self.chunks_dir, session_id)
        await aiofiles.os.makedirs(root, exist_ok=True)
        session = ChunkSession(session_id=session_id, root=root)
        self._sessions[session_id] = session
        logger.debug(f"Opened chunk session [session_id={session_id}]")
        return session

    @asynccontextmanager
    async def locked(self, session_id: str, create: bool = True) -> AsyncIterator[Optional[ChunkSession]]:
        """
        Hold the session's lock for the duration of the block.

        Yields None when the session doesn't exist and create is False.
        """
        session_id = validate_session_id(session_id)
        async with self._session_lock(session_id):
            if create:
                session = await self._open_unlocked(session_id)
            else:
                session = self._sessions.get(session_id)
            yield session

    async def write_fragment(
        self,
        session_id: str,
        index: int,
        total_count: Optional[int],
        source,
        max_size: int,
    ) -> ChunkSession:
        """
        Stream one fragment into the session directory and record its size.

        Args:
            session_id: Client-supplied session token
            index: Fragment index
            total_count: Total number of fragments the client will send
            source: Object with an async read(size) method
            max_size: Maximum fragment size in bytes

        Raises:
            PolicyViolationError: If the index is invalid or the fragment is too large
        """
        if index is None or index < 0:
            raise PolicyViolationError("Invalid chunk index.")

        name = fragment_name(index, total_count)
        async with self.locked(session_id) as session:
            path = session.fragment_path(name)
            try:
                size = await write_stream(path, source, max_size)
            except BaseException:
                session.fragments.pop(name, None)
                await _remove_quietly(path)
                if not session.fragments:
                    await self._discard_unlocked(session_id)
                raise
            session.fragments[name] = size
            logger.debug(
                f"Stored fragment {name} ({size} bytes) [session_id={session_id}] "
                f"[fragments={session.fragment_count}]"
            )
            return session

    async def discard(self, session_id: str) -> None:
        """
        Unlink every fragment, remove the session directory and evict the
        session. Failures are logged, never raised.
        """
        async with self._session_lock(session_id):
            await self._discard_unlocked(session_id)

    async def _discard_unlocked(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)
        if session is None:
            return

        results = await asyncio.gather(
            *(aiofiles.os.remove(session.fragment_path(name)) for name in session.fragments),
            return_exceptions=True,
        )
        for name, result in zip(session.fragments, results):
            if isinstance(result, BaseException) and not isinstance(result, FileNotFoundError):
                logger.error(f"Failed to unlink fragment {name} [session_id={session_id}]: {result}")

        try:
            await aiofiles.os.rmdir(session.root)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove chunk directory {session.root}: {e}")

        logger.debug(f"Discarded chunk session [session_id={session_id}]")


async def _remove_quietly(path: str) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error(f"Failed to unlink {path}: {e}")


async def write_stream(path: str, source, max_size: int) -> int:
    """
    Stream an async readable into path, aborting once max_size is exceeded.

    Returns:
        Number of bytes written
    """
    written = 0
    async with aiofiles.open(path, "wb") as out:
        while True:
            piece = await source.read(STREAM_PIECE_SIZE_BYTES)
            if not piece:
                break
            written += len(piece)
            if max_size and written > max_size:
                raise FileTooLargeError()
            await out.write(piece)
    return written


async def combine_fragments(session: ChunkSession, destination: str) -> int:
    """
    Append the session's fragments, in index order, into destination.

    Any read or write error aborts the combine and is raised to the caller.

    Returns:
        Number of bytes written
    """
    written = 0
    async with aiofiles.open(destination, "ab") as out:
        for name in session.sorted_fragments():
            async with aiofiles.open(session.fragment_path(name), "rb") as fragment:
                while True:
                    piece = await fragment.read(STREAM_PIECE_SIZE_BYTES)
                    if not piece:
                        break
                    await out.write(piece)
                    written += len(piece)
    return written
