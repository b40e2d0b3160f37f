"""Repository layer for data access."""

from uploadserver.repositories.user_repository import UserRepository
from uploadserver.repositories.album_repository import AlbumRepository
from uploadserver.repositories.file_repository import FileRepository

__all__ = [
    "UserRepository",
    "AlbumRepository",
    "FileRepository",
]
