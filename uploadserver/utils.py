"""Utility helper functions for the upload server."""

import asyncio
import functools
import hashlib
import re
import sqlite3
from typing import Any, Callable, Iterable, TypeVar

import aiofiles
import aiofiles.os

from common.constants import STREAM_PIECE_SIZE_BYTES
from common.logging_config import get_logger
from uploadserver.exceptions import StoreFailureError

logger = get_logger(__name__)

T = TypeVar("T")

_MULTI_ARCHIVE_RE = re.compile(r"\.\d{3}$")
_PRESERVED_EXT_RE = re.compile(r"\.tar\.\w+$")


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run a blocking callable (repository queries) in the default executor.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


async def run_query(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run a repository call off the event loop.

    Raises:
        StoreFailureError: If the store raised; the sqlite message is kept as
            the diagnostic
    """
    try:
        return await run_blocking(func, *args, **kwargs)
    except sqlite3.Error as e:
        logger.error(f"Store call {getattr(func, '__qualname__', func)} failed: {e}", exc_info=True)
        raise StoreFailureError(str(e)) from e


def extname(filename: str) -> str:
    """
    Get the lowercased extension of a filename, including the leading dot.

    Compound archive suffixes such as .tar.gz and split-archive suffixes such
    as .zip.001 are kept whole.

    Args:
        filename: Client-supplied file name

    Returns:
        Extension string, or an empty string if the name has none
    """
    if not filename:
        return ""

    lower = filename.lower()
    multi = ""

    match = _MULTI_ARCHIVE_RE.search(lower)
    if match:
        multi = match.group(0)
        lower = lower[:match.start()]

    match = _PRESERVED_EXT_RE.search(lower)
    if match:
        return match.group(0) + multi

    basename = lower.rsplit("/", 1)[-1]
    dot = basename.rfind(".")
    if dot <= 0:
        return multi
    return basename[dot:] + multi


async def hash_file(path: str) -> str:
    """
    Stream a file through SHA-256.

    Args:
        path: Path of the file to hash

    Returns:
        Hex digest
    """
    digest = hashlib.sha256()
    async with aiofiles.open(path, "rb") as f:
        while True:
            piece = await f.read(STREAM_PIECE_SIZE_BYTES)
            if not piece:
                break
            digest.update(piece)
    return digest.hexdigest()


async def unlink_file(path: str) -> bool:
    """
    Delete a file, tolerating one that is already gone.

    Returns:
        True if the file was deleted, False if it didn't exist
    """
    try:
        await aiofiles.os.remove(path)
        return True
    except FileNotFoundError:
        return False


async def unlink_files(paths: Iterable[str]) -> None:
    """
    Best-effort deletion of several files. A failure on one file is logged and
    does not stop the others.
    """
    paths = list(paths)
    results = await asyncio.gather(
        *(unlink_file(path) for path in paths),
        return_exceptions=True,
    )
    for path, result in zip(paths, results):
        if isinstance(result, BaseException):
            logger.error(f"Failed to unlink {path}: {result}")
