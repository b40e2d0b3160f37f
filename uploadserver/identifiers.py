"""Collision-free random storage names for uploaded files."""

import os
import secrets
import string
import threading
from typing import Optional, Set

import aiofiles.os

from common.constants import ID_MAX_TRIES
from common.logging_config import get_logger
from uploadserver.exceptions import AllocationExhaustedError

logger = get_logger(__name__)

ALPHABET = string.ascii_letters + string.digits


def random_identifier(length: int) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


class IdentifierAllocator:
    """
    Hands out random alphanumeric names that are unique within the uploads
    directory.

    In cache mode uniqueness is checked against the identifiers handed out
    during this process lifetime (optionally preloaded from disk) and the
    identifier is reserved before it is returned. Otherwise the uploads
    directory is checked for an existing file of the same name.
    """

    def __init__(
        self,
        uploads_dir: str,
        use_cache: bool = True,
        max_tries: int = ID_MAX_TRIES,
    ):
        self.uploads_dir = uploads_dir
        self.use_cache = use_cache
        self.max_tries = max_tries
        self._identifiers: Set[str] = set()
        self._lock = threading.Lock()

    def preload(self, directory: Optional[str] = None) -> int:
        """
        Seed the identifier cache with the names already stored on disk.

        Returns:
            Number of identifiers loaded
        """
        directory = directory or self.uploads_dir
        if not os.path.isdir(directory):
            return 0

        loaded = 0
        with self._lock:
            for entry in os.scandir(directory):
                if entry.is_file():
                    self._identifiers.add(entry.name.split(".", 1)[0])
                    loaded += 1
        logger.info(f"Loaded {loaded} file identifiers into cache")
        return loaded

    def _reserve(self, identifier: str) -> bool:
        with self._lock:
            if identifier in self._identifiers:
                return False
            self._identifiers.add(identifier)
            return True

    def release(self, identifier: str) -> None:
        with self._lock:
            self._identifiers.discard(identifier)

    def __contains__(self, identifier: str) -> bool:
        with self._lock:
            return identifier in self._identifiers

    async def allocate(self, length: int, extension: str) -> str:
        """
        Allocate a unique storage name.

        Args:
            length: Number of random characters
            extension: Extension to append, including the leading dot

        Returns:
            Allocated name (identifier + extension)

        Raises:
            AllocationExhaustedError: If every attempt collided
        """
        for attempt in range(self.max_tries):
            identifier = random_identifier(length)
            name = identifier + extension

            if self.use_cache:
                if not self._reserve(identifier):
                    logger.info(f"Identifier {identifier} is already in use ({attempt + 1}/{self.max_tries})")
                    continue
            elif await aiofiles.os.path.exists(os.path.join(self.uploads_dir, name)):
                logger.info(f"{name} is already in use ({attempt + 1}/{self.max_tries})")
                continue

            return name

        logger.error(f"Could not allocate a unique name after {self.max_tries} attempts [length={length}]")
        raise AllocationExhaustedError()
