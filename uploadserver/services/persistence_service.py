"""Dedup and persistence of prepared uploads."""

import asyncio
import time
from typing import List, Optional

from common.logging_config import get_logger
from uploadserver.config import UploadSettings
from uploadserver.exceptions import StoreFailureError
from uploadserver.hooks import CacheInvalidator, NullCacheInvalidator, ThumbnailGenerator
from uploadserver.policies import may_generate_thumb
from uploadserver.repositories.album_repository import AlbumRepository
from uploadserver.repositories.file_repository import FileRepository, UploadRecord
from uploadserver.repositories.user_repository import User
from uploadserver.tasks import BackgroundTaskQueue
from uploadserver.types import PreparedFile
from uploadserver.utils import hash_file, run_query, unlink_file

logger = get_logger(__name__)

STATS_CATEGORY = "uploads"


class PersistenceService:
    """
    Hashes prepared files, reuses records with the same content in the same
    owner scope and inserts the rest.
    """

    def __init__(
        self,
        settings: UploadSettings,
        task_queue: BackgroundTaskQueue,
        thumbnailer: Optional[ThumbnailGenerator] = None,
        cache: Optional[CacheInvalidator] = None,
    ):
        self.settings = settings
        self.task_queue = task_queue
        self.thumbnailer = thumbnailer
        self.cache = cache or NullCacheInvalidator()
        self.file_repo = FileRepository()
        self.album_repo = AlbumRepository()

    async def store_files(
        self,
        user: Optional[User],
        files: List[PreparedFile],
        ip: Optional[str] = None,
    ) -> List[UploadRecord]:
        """
        Persist a batch of prepared files.

        A file whose content already exists in the owner's scope is deleted
        from storage and the existing record is returned in its place.

        Args:
            user: Owner of the batch, None for anonymous uploads
            files: Files already written under their allocated names
            ip: Uploader address, stored only when IP logging is on

        Returns:
            One record per input file, in input order

        Raises:
            StoreFailureError: If a store query fails
        """
        userid = user.id if user is not None else None
        hashes = await asyncio.gather(*(hash_file(f.path) for f in files))
        existing = await asyncio.gather(*(
            run_query(self.file_repo.find_duplicate, digest, f.size, userid)
            for f, digest in zip(files, hashes)
        ))

        results: List[Optional[UploadRecord]] = [None] * len(files)
        pending = []
        timestamp = int(time.time())

        for index, (prepared, digest, duplicate) in enumerate(zip(files, hashes, existing)):
            if duplicate is not None:
                await self._drop_duplicate(prepared, duplicate)
                results[index] = duplicate
                continue

            record = UploadRecord(
                name=prepared.name,
                original=prepared.original,
                type=prepared.mimetype,
                size=prepared.size,
                hash=digest,
                timestamp=timestamp,
                ip=ip if self.settings.store_ip else None,
            )
            if user is not None:
                record.userid = user.id
                record.albumid = prepared.album_id
            if prepared.age:
                record.expirydate = timestamp + int(prepared.age * 3600)
            pending.append((index, prepared, record))

        if not pending:
            return results

        if user is not None:
            await self._verify_albums(user, [record for _, _, record in pending])

        inserted = await run_query(self.file_repo.insert_files, [record for _, _, record in pending])

        stored = []
        for (index, prepared, record), ok in zip(pending, inserted):
            if ok:
                results[index] = record
                stored.append((prepared, record))
                continue

            # A concurrent upload of the same content won the insert
            duplicate = await run_query(self.file_repo.find_duplicate, record.hash, record.size, userid)
            if duplicate is None:
                raise StoreFailureError(f"Record for {record.name} was rejected but no duplicate was found")
            await self._drop_duplicate(prepared, duplicate)
            results[index] = duplicate

        if stored:
            await self._after_insert(timestamp, [record for _, record in stored])
            for prepared, record in stored:
                self._request_thumbnail(prepared)

        return results

    async def _drop_duplicate(self, prepared: PreparedFile, duplicate: UploadRecord) -> None:
        logger.info(
            f"{prepared.name} duplicates {duplicate.name}, keeping the existing record "
            f"[user_id={duplicate.userid}]"
        )
        await unlink_file(prepared.path)

    async def _verify_albums(self, user: User, records: List[UploadRecord]) -> None:
        album_ids = {record.albumid for record in records if record.albumid is not None}
        if not album_ids:
            return

        owned = set(await run_query(self.album_repo.filter_owned, user.id, album_ids))
        for record in records:
            if record.albumid is not None and record.albumid not in owned:
                logger.warning(
                    f"Dropping album {record.albumid} from {record.name}, not owned "
                    f"[user_id={user.id}]"
                )
                record.albumid = None

    async def _after_insert(self, timestamp: int, records: List[UploadRecord]) -> None:
        self.cache.invalidate_stats(STATS_CATEGORY)

        album_ids = sorted({record.albumid for record in records if record.albumid is not None})
        if not album_ids:
            return

        try:
            await run_query(self.album_repo.touch, album_ids, timestamp)
        except StoreFailureError as e:
            # Records are already committed
            logger.error(f"Failed to update editedAt of albums {album_ids}: {e.diagnostic}")
        self.cache.invalidate_albums(album_ids)

    def _request_thumbnail(self, prepared: PreparedFile) -> None:
        if self.thumbnailer is None or not may_generate_thumb(self.settings, prepared.extname):
            return

        thumbnailer = self.thumbnailer

        async def generate() -> None:
            await thumbnailer.generate(prepared.name, prepared.extname)

        self.task_queue.submit(generate, description=f"thumbnail for {prepared.name}")
