"""Database schema and connection management for SQLite."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Optional

from uploadserver.config import DATABASE_PATH


def init_database() -> None:
    """
    Initialize database and create tables if they don't exist.
    """
    db_path = Path(DATABASE_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    with get_db_connection() as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT UNIQUE NOT NULL,
                token TEXT UNIQUE,
                enabled INTEGER NOT NULL DEFAULT 1,
                permission INTEGER NOT NULL DEFAULT 0,
                timestamp INTEGER NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS albums (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                userid INTEGER NOT NULL,
                name TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                timestamp INTEGER NOT NULL,
                editedAt INTEGER,
                FOREIGN KEY(userid) REFERENCES users(id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS files (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                original TEXT NOT NULL,
                type TEXT NOT NULL,
                size INTEGER NOT NULL,
                hash TEXT NOT NULL,
                ip TEXT,
                userid INTEGER,
                albumid INTEGER,
                timestamp INTEGER NOT NULL,
                expirydate INTEGER,
                FOREIGN KEY(userid) REFERENCES users(id),
                FOREIGN KEY(albumid) REFERENCES albums(id)
            )
        """)

        # Anonymous uploads share one dedup scope, hence IFNULL over userid
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_files_dedup_scope
            ON files(hash, size, IFNULL(userid, 0))
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_files_userid ON files(userid)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_files_albumid ON files(albumid)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_files_timestamp ON files(timestamp)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_albums_userid ON albums(userid)
        """)

        conn.commit()


@contextmanager
def get_db_connection() -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager for database connections.
    """
    conn = sqlite3.connect(DATABASE_PATH)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    """
    Convert a sqlite3.Row to a plain dict, passing None through.
    """
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}
