"""Upload server data type definitions."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Protocol, Tuple

if TYPE_CHECKING:
    from uploadserver.repositories.user_repository import User


class AsyncReadable(Protocol):
    """Anything with an async read(size) such as starlette's UploadFile."""

    async def read(self, size: int = -1) -> bytes:
        ...


@dataclass
class IncomingFile:
    """
    One file part of a multipart upload, not yet written to storage.
    """
    original: str
    mimetype: str
    stream: AsyncReadable


@dataclass(frozen=True)
class ChunkInfo:
    """
    Fragment fields sent alongside a chunked upload part.
    """
    session_id: Optional[str]
    index: Optional[int]
    total_count: Optional[int]

    @property
    def is_chunk(self) -> bool:
        return self.session_id is not None or self.index is not None


@dataclass(frozen=True)
class FinalizeRequest:
    """
    One entry of a finish-chunks request.
    """
    session_id: str
    original: str = ""
    mimetype: str = ""
    album_id: Optional[str] = None
    age: Optional[str] = None
    identifier_length: Optional[str] = None
    size: Optional[int] = None


@dataclass
class PreparedFile:
    """
    A file written under its allocated name and waiting for scan, strip and
    persistence.
    """
    path: str
    name: str
    original: str
    extname: str
    mimetype: str
    size: int
    album_id: Optional[int] = None
    age: Optional[float] = None


@dataclass(frozen=True)
class UploadResult:
    """
    Entry of a successful upload response. Duplicates carry the existing
    record's name and expiry.
    """
    name: str
    url: str
    expirydate: Optional[int] = None


@dataclass(frozen=True)
class DateRange:
    """
    Inclusive epoch-second range; None means unbounded on that side.
    """
    start: Optional[int] = None
    end: Optional[int] = None


@dataclass(frozen=True)
class SortKey:
    column: str
    descending: bool = False
    nulls_last: bool = False
    cast: Optional[str] = None


@dataclass(frozen=True)
class FilterPredicate:
    """
    Structured form of a listing filter, built once by the translator.
    """
    owner_ids: Tuple[int, ...] = ()
    exclude_owner_ids: Tuple[int, ...] = ()
    match_null_owner: bool = False
    ips: Tuple[str, ...] = ()
    exclude_ips: Tuple[str, ...] = ()
    match_null_ip: bool = False
    date_range: Optional[DateRange] = None
    expiry_range: Optional[DateRange] = None
    texts: Tuple[str, ...] = ()
    exclude_texts: Tuple[str, ...] = ()
    order_by: Tuple[SortKey, ...] = field(default_factory=tuple)

    @property
    def has_owner_filter(self) -> bool:
        return bool(self.owner_ids or self.exclude_owner_ids or self.match_null_owner)

    @property
    def has_ip_filter(self) -> bool:
        return bool(self.ips or self.exclude_ips or self.match_null_ip)


@dataclass
class UploadContext:
    """
    Per-request values shared by every file of one ingestion.

    Header values are kept raw; the orchestrator parses them against the
    deployment's settings.
    """
    user: Optional["User"] = None
    ip: Optional[str] = None
    album_id: Optional[str] = None
    age: Optional[str] = None
    identifier_length: Optional[str] = None
    strip_tags: Optional[str] = None
