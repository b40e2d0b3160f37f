"""File repository for upload records."""

import sqlite3
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from common.logging_config import get_logger
from uploadserver.database import get_db_connection, row_to_dict
from uploadserver.exceptions import StoreFailureError
from uploadserver.types import FilterPredicate, SortKey

logger = get_logger(__name__)

SORTABLE_COLUMNS = {
    "id", "name", "original", "type", "size", "hash", "ip",
    "userid", "albumid", "timestamp", "expirydate",
}

DEFAULT_ORDER = "id DESC"


@dataclass
class UploadRecord:
    name: str
    original: str
    type: str
    size: int
    hash: str
    timestamp: int
    ip: Optional[str] = None
    userid: Optional[int] = None
    albumid: Optional[int] = None
    expirydate: Optional[int] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class ListingScope:
    """
    Which rows a listing may see before any filter is applied.
    """
    owner_id: Optional[int] = None
    album_id: Optional[int] = None
    all_owners: bool = False


def _row_to_record(row) -> UploadRecord:
    return UploadRecord(**row_to_dict(row))


def glob_pattern(text: str) -> str:
    """
    Turn a filter term into a case-sensitive GLOB pattern. A term without
    '*' matches anywhere in the name.
    """
    escaped = text.replace("[", "[[]").replace("?", "[?]")
    if "*" not in escaped:
        escaped = f"*{escaped}*"
    return escaped


def _placeholders(values: Sequence[Any]) -> str:
    return ','.join('?' for _ in values)


def build_where(scope: ListingScope, predicate: Optional[FilterPredicate]) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []

    if scope.album_id is not None:
        clauses.append("albumid = ?")
        params.append(scope.album_id)
        if not scope.all_owners:
            clauses.append("userid = ?")
            params.append(scope.owner_id)
    elif not scope.all_owners:
        clauses.append("userid = ?")
        params.append(scope.owner_id)

    if predicate is not None:
        groups: List[str] = []

        owner_parts: List[str] = []
        if predicate.owner_ids:
            owner_parts.append(f"userid IN ({_placeholders(predicate.owner_ids)})")
            params.extend(predicate.owner_ids)
        if predicate.exclude_owner_ids:
            owner_parts.append(f"userid NOT IN ({_placeholders(predicate.exclude_owner_ids)})")
            params.extend(predicate.exclude_owner_ids)
        if predicate.match_null_owner:
            owner_parts.append("userid IS NULL")
        if owner_parts:
            groups.append(" OR ".join(owner_parts))

        ip_parts: List[str] = []
        if predicate.ips:
            ip_parts.append(f"ip IN ({_placeholders(predicate.ips)})")
            params.extend(predicate.ips)
        if predicate.exclude_ips:
            ip_parts.append(f"ip NOT IN ({_placeholders(predicate.exclude_ips)})")
            params.extend(predicate.exclude_ips)
        if predicate.match_null_ip:
            ip_parts.append("ip IS NULL")
        if ip_parts:
            groups.append(" OR ".join(ip_parts))

        if groups:
            clauses.append("(" + " OR ".join(f"({group})" for group in groups) + ")")

        for column, date_range in (("timestamp", predicate.date_range), ("expirydate", predicate.expiry_range)):
            if date_range is None:
                continue
            if date_range.start is not None:
                clauses.append(f"{column} >= ?")
                params.append(date_range.start)
            if date_range.end is not None:
                clauses.append(f"{column} <= ?")
                params.append(date_range.end)

        if predicate.texts:
            clauses.append("(" + " OR ".join("name GLOB ?" for _ in predicate.texts) + ")")
            params.extend(glob_pattern(text) for text in predicate.texts)

        for text in predicate.exclude_texts:
            clauses.append("name NOT GLOB ?")
            params.append(glob_pattern(text))

    if not clauses:
        return "", params
    return "WHERE " + " AND ".join(clauses), params


def build_order_by(order_by: Sequence[SortKey]) -> str:
    if not order_by:
        return DEFAULT_ORDER

    parts = []
    for key in order_by:
        if key.column not in SORTABLE_COLUMNS:
            raise StoreFailureError(f"no such column: {key.column}")
        column = f"CAST({key.column} AS {key.cast.upper()})" if key.cast else key.column
        direction = "DESC" if key.descending else "ASC"
        suffix = " NULLS LAST" if key.nulls_last else ""
        parts.append(f"{column} {direction}{suffix}")
    return ", ".join(parts)


class FileRepository:
    @staticmethod
    def find_duplicate(hash: str, size: int, userid: Optional[int]) -> Optional[UploadRecord]:
        """
        Find a record with the same content in the same owner scope.
        Anonymous uploads (userid None) form their own scope.
        """
        with get_db_connection() as conn:
            cursor = conn.cursor()
            if userid is None:
                cursor.execute(
                    "SELECT * FROM files WHERE hash = ? AND size = ? AND userid IS NULL LIMIT 1",
                    (hash, size)
                )
            else:
                cursor.execute(
                    "SELECT * FROM files WHERE hash = ? AND size = ? AND userid = ? LIMIT 1",
                    (hash, size, userid)
                )
            row = cursor.fetchone()

        if row is None:
            return None
        return _row_to_record(row)

    @staticmethod
    def insert_files(records: List[UploadRecord]) -> List[bool]:
        """
        Insert records in one transaction.

        A record that violates the dedup-scope unique index is skipped and
        reported as False, the rest are committed.

        Returns:
            One flag per record, True if it was inserted
        """
        inserted: List[bool] = []
        with get_db_connection() as conn:
            cursor = conn.cursor()
            try:
                for record in records:
                    data = asdict(record)
                    data.pop("id")
                    columns = ", ".join(data)
                    try:
                        cursor.execute(
                            f"INSERT INTO files ({columns}) VALUES ({_placeholders(data)})",
                            list(data.values())
                        )
                    except sqlite3.IntegrityError as e:
                        logger.info(f"Duplicate content for {record.name} detected on insert: {e}")
                        inserted.append(False)
                        continue
                    record.id = cursor.lastrowid
                    inserted.append(True)
                conn.commit()
            except Exception as e:
                conn.rollback()
                logger.error(f"Failed to insert {len(records)} upload records: {e}", exc_info=True)
                raise

        logger.info(f"Inserted {sum(inserted)} of {len(records)} upload records")
        return inserted

    @staticmethod
    def get_by_name(name: str) -> Optional[UploadRecord]:
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM files WHERE name = ?", (name,))
            row = cursor.fetchone()

        if row is None:
            return None
        return _row_to_record(row)

    @staticmethod
    def count_files(scope: ListingScope, predicate: Optional[FilterPredicate] = None) -> int:
        where, params = build_where(scope, predicate)
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(f"SELECT COUNT(id) AS count FROM files {where}", params)
            return cursor.fetchone()["count"]

    @staticmethod
    def list_files(
        scope: ListingScope,
        predicate: Optional[FilterPredicate],
        columns: Sequence[str],
        limit: int,
        offset: int,
    ) -> List[Dict[str, Any]]:
        where, params = build_where(scope, predicate)
        order_by = build_order_by(predicate.order_by if predicate else ())
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {", ".join(columns)} FROM files
                {where}
                ORDER BY {order_by}
                LIMIT ? OFFSET ?
                """,
                params + [limit, offset]
            )
            return [row_to_dict(row) for row in cursor.fetchall()]
