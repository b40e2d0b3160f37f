"""User repository for database operations."""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from common.logging_config import get_logger
from uploadserver.database import get_db_connection

logger = get_logger(__name__)


@dataclass
class User:
    id: int
    username: str
    token: Optional[str]
    enabled: bool
    permission: int
    timestamp: int


def _row_to_user(row) -> User:
    return User(
        id=row["id"],
        username=row["username"],
        token=row["token"],
        enabled=bool(row["enabled"]),
        permission=row["permission"],
        timestamp=row["timestamp"],
    )


class UserRepository:
    @staticmethod
    def get_by_token(token: str) -> Optional[User]:
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT id, username, token, enabled, permission, timestamp FROM users WHERE token = ?",
                (token,)
            )
            row = cursor.fetchone()

        if row is None:
            return None
        return _row_to_user(row)

    @staticmethod
    def get_by_usernames(usernames: Iterable[str]) -> List[User]:
        usernames = list(usernames)
        if not usernames:
            return []

        placeholders = ','.join('?' for _ in usernames)
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT id, username, token, enabled, permission, timestamp
                FROM users WHERE username IN ({placeholders})
                """,
                usernames
            )
            rows = cursor.fetchall()

        return [_row_to_user(row) for row in rows]

    @staticmethod
    def get_usernames(user_ids: Iterable[int]) -> Dict[int, str]:
        user_ids = list(user_ids)
        if not user_ids:
            return {}

        placeholders = ','.join('?' for _ in user_ids)
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT id, username FROM users WHERE id IN ({placeholders})",
                user_ids
            )
            rows = cursor.fetchall()

        return {row["id"]: row["username"] for row in rows}
