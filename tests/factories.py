"""Rows the service only reads, inserted directly for tests."""

import time
from dataclasses import dataclass
from typing import Optional

from uploadserver.database import get_db_connection
from uploadserver.repositories.user_repository import User


@dataclass
class Album:
    id: int
    userid: int
    name: str
    enabled: bool
    timestamp: int
    edited_at: Optional[int]


def create_user(
    username: str,
    token: Optional[str] = None,
    permission: int = 0,
    enabled: bool = True,
    timestamp: Optional[int] = None,
) -> User:
    if timestamp is None:
        timestamp = int(time.time())

    with get_db_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(
            """
            INSERT INTO users (username, token, enabled, permission, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (username, token, 1 if enabled else 0, permission, timestamp)
        )
        conn.commit()
        user_id = cursor.lastrowid

    return User(
        id=user_id,
        username=username,
        token=token,
        enabled=enabled,
        permission=permission,
        timestamp=timestamp,
    )


def create_album(userid: int, name: str, enabled: bool = True, timestamp: Optional[int] = None) -> Album:
    if timestamp is None:
        timestamp = int(time.time())

    with get_db_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(
            """
            INSERT INTO albums (userid, name, enabled, timestamp, editedAt)
            VALUES (?, ?, ?, ?, ?)
            """,
            (userid, name, 1 if enabled else 0, timestamp, timestamp)
        )
        conn.commit()
        album_id = cursor.lastrowid

    return Album(
        id=album_id,
        userid=userid,
        name=name,
        enabled=enabled,
        timestamp=timestamp,
        edited_at=timestamp,
    )


def album_edited_at(album_id: int) -> Optional[int]:
    with get_db_connection() as conn:
        row = conn.execute("SELECT editedAt FROM albums WHERE id = ?", (album_id,)).fetchone()
    return None if row is None else row["editedAt"]
