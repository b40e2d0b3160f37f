"""Album repository for database operations."""

from typing import Dict, Iterable, List

from common.logging_config import get_logger
from uploadserver.database import get_db_connection

logger = get_logger(__name__)


class AlbumRepository:
    @staticmethod
    def filter_owned(userid: int, album_ids: Iterable[int]) -> List[int]:
        """
        Return the subset of album_ids owned by userid.
        """
        album_ids = list(album_ids)
        if not album_ids:
            return []

        placeholders = ','.join('?' for _ in album_ids)
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT id FROM albums WHERE userid = ? AND id IN ({placeholders})",
                [userid] + album_ids
            )
            return [row["id"] for row in cursor.fetchall()]

    @staticmethod
    def touch(album_ids: Iterable[int], edited_at: int) -> None:
        album_ids = list(album_ids)
        if not album_ids:
            return

        placeholders = ','.join('?' for _ in album_ids)
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE albums SET editedAt = ? WHERE id IN ({placeholders})",
                [edited_at] + album_ids
            )
            conn.commit()
        logger.debug(f"Updated editedAt of albums {album_ids}")

    @staticmethod
    def get_names(userid: int, album_ids: Iterable[int]) -> Dict[int, str]:
        """
        Names of the enabled albums among album_ids that userid owns.
        """
        album_ids = list(album_ids)
        if not album_ids:
            return {}

        placeholders = ','.join('?' for _ in album_ids)
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT id, name FROM albums
                WHERE id IN ({placeholders}) AND enabled = 1 AND userid = ?
                """,
                album_ids + [userid]
            )
            return {row["id"]: row["name"] for row in cursor.fetchall()}
