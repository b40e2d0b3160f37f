"""Paginated listing of uploads with the filter language."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from common.constants import LISTING_PAGE_SIZE, SQLITE_INTEGER_MAX
from common.logging_config import get_logger
from uploadserver.config import UploadSettings
from uploadserver.exceptions import ForbiddenError, StoreFailureError
from uploadserver.filters import FilterTranslator, parse_minute_offset
from uploadserver.permissions import is_moderator
from uploadserver.policies import may_generate_thumb
from uploadserver.repositories.album_repository import AlbumRepository
from uploadserver.repositories.file_repository import FileRepository, ListingScope
from uploadserver.repositories.user_repository import User, UserRepository
from uploadserver.types import FilterPredicate
from uploadserver.utils import extname, run_query

logger = get_logger(__name__)


@dataclass
class ListingPage:
    files: List[Dict[str, Any]]
    count: int
    basedomain: str
    albums: Optional[Dict[int, str]] = None
    users: Optional[Dict[int, str]] = None


def parse_page(value: Any) -> int:
    try:
        page = int(value)
    except (TypeError, ValueError):
        return 0
    return min(max(page, 0), SQLITE_INTEGER_MAX // LISTING_PAGE_SIZE)


class ListingService:
    def __init__(self, settings: UploadSettings):
        self.settings = settings
        self.file_repo = FileRepository()
        self.album_repo = AlbumRepository()
        self.user_repo = UserRepository()
        self.translator = FilterTranslator(self._resolve_users)

    async def _resolve_users(self, usernames: List[str]) -> Dict[str, int]:
        users = await run_query(self.user_repo.get_by_usernames, usernames)
        return {user.username: user.id for user in users}

    def columns(self, all_owners: bool) -> List[str]:
        columns = ["id", "name", "userid", "size", "timestamp"]
        if self.settings.temporary_uploads:
            columns.append("expirydate")
        columns.append("ip" if all_owners else "albumid")
        return columns

    async def list_uploads(
        self,
        user: User,
        page: Any = 0,
        all_owners: bool = False,
        filters: Optional[str] = None,
        minoffset: Any = None,
        album_id: Optional[int] = None,
    ) -> ListingPage:
        """
        List one page of uploads visible to user.

        Args:
            user: Acting user
            page: Zero-based page index
            all_owners: List uploads of every owner
            filters: Filter text
            minoffset: Client timezone offset in minutes
            album_id: Restrict the listing to one album

        Returns:
            The page, with album names when scoped to one owner or usernames
            when listing every owner

        Raises:
            ForbiddenError: If all_owners or filters is used without moderator rights
            UserNotFoundError: If the filter names unknown users
            StoreFailureError: If the store fails; moderators get the store's
                own message
        """
        moderator = is_moderator(user)
        if (all_owners or filters) and not moderator:
            logger.warning(f"Listing with all/filters refused [user_id={user.id}]")
            raise ForbiddenError()

        predicate: Optional[FilterPredicate] = None
        if filters:
            predicate = await self.translator.translate(filters, parse_minute_offset(minoffset))

        scope = ListingScope(owner_id=user.id, album_id=album_id, all_owners=all_owners)
        try:
            return await self._list(scope, predicate, parse_page(page))
        except StoreFailureError as e:
            if moderator:
                raise StoreFailureError(e.diagnostic, message=e.diagnostic) from e
            raise

    async def _list(self, scope: ListingScope, predicate: Optional[FilterPredicate], page: int) -> ListingPage:
        basedomain = self.settings.domain
        count = await run_query(self.file_repo.count_files, scope, predicate)
        if not count:
            return ListingPage(files=[], count=0, basedomain=basedomain)

        files = await run_query(
            self.file_repo.list_files,
            scope,
            predicate,
            self.columns(scope.all_owners),
            LISTING_PAGE_SIZE,
            LISTING_PAGE_SIZE * page,
        )
        if not files:
            return ListingPage(files=files, count=count, basedomain=basedomain)

        for file in files:
            file["extname"] = extname(file["name"])
            if may_generate_thumb(self.settings, file["extname"]):
                file["thumb"] = f"thumbs/{file['name'][:-len(file['extname'])]}.png"

        if not scope.all_owners:
            album_ids = _unique(file.get("albumid") for file in files)
            albums = await run_query(self.album_repo.get_names, scope.owner_id, album_ids)
            return ListingPage(files=files, count=count, basedomain=basedomain, albums=albums)

        user_ids = _unique(file.get("userid") for file in files)
        if not user_ids:
            return ListingPage(files=files, count=count, basedomain=basedomain)

        users = await run_query(self.user_repo.get_usernames, user_ids)
        return ListingPage(files=files, count=count, basedomain=basedomain, users=users)


def _unique(values) -> List[Any]:
    seen = []
    for value in values:
        if value is not None and value not in seen:
            seen.append(value)
    return seen
