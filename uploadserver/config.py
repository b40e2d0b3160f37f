"""Configuration settings for the upload server."""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from common.constants import BYTES_PER_MB, MIN_CHUNK_SIZE_BYTES


DATABASE_PATH = os.environ.get("UPLOADS_DATABASE_PATH", "./data/uploads.db")

UPLOADS_PATH = os.environ.get("UPLOADS_STORAGE_PATH", "./data/uploads")

CHUNKS_PATH = os.environ.get("UPLOADS_CHUNKS_PATH", "./data/chunks")

SERVER_HOST = os.environ.get("UPLOADS_HOST", "0.0.0.0")

SERVER_PORT = int(os.environ.get("UPLOADS_PORT", "9999"))


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    value = os.environ.get(name)
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _env_floats(name: str) -> Tuple[float, ...]:
    return tuple(float(item) for item in _env_list(name))


@dataclass(frozen=True)
class UploadSettings:
    """
    Upload and listing policy.

    Sizes are expressed in megabytes (10^6 bytes). A zero url_max_size_mb
    disables URL uploads and a zero chunk_size_mb disables chunked uploads.
    Retention ages are hours; the first entry is the default age.
    """
    private: bool = False
    domain: str = "http://localhost:9999"
    max_size_mb: int = 512
    url_max_size_mb: int = 32
    url_proxy: Optional[str] = None
    url_extensions_filter: Tuple[str, ...] = ()
    url_extensions_filter_mode: Optional[str] = None
    chunk_size_mb: int = 10
    extensions_filter: Tuple[str, ...] = (".exe", ".bat", ".cmd", ".msi", ".sh", ".dll")
    extensions_filter_mode: str = "blacklist"
    filter_no_extension: bool = True
    filter_empty_file: bool = True
    temporary_upload_ages: Tuple[float, ...] = ()
    identifier_length_min: int = 4
    identifier_length_max: int = 32
    identifier_length_default: int = 8
    identifier_length_force: bool = False
    cache_file_identifiers: bool = True
    store_ip: bool = True
    strip_tags_enabled: bool = False
    strip_tags_default: bool = False
    strip_tags_force: bool = False
    scan_bypass_group: Optional[str] = None
    scan_whitelist_extensions: Tuple[str, ...] = ()
    scan_max_size: int = 0
    thumbnail_extensions: Tuple[str, ...] = field(
        default=(".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".webm", ".mp4")
    )

    @property
    def max_size_bytes(self) -> int:
        return self.max_size_mb * BYTES_PER_MB

    @property
    def url_max_size_bytes(self) -> int:
        return self.url_max_size_mb * BYTES_PER_MB

    @property
    def max_chunks_count(self) -> int:
        return max(1, self.max_size_bytes // MIN_CHUNK_SIZE_BYTES)

    @property
    def chunked_uploads(self) -> bool:
        return self.chunk_size_mb > 0

    @property
    def temporary_uploads(self) -> bool:
        return len(self.temporary_upload_ages) > 0

    @property
    def identifier_length_changeable(self) -> bool:
        return not self.identifier_length_force

    @classmethod
    def from_env(cls) -> "UploadSettings":
        """
        Build settings from UPLOADS_* environment variables, falling back to
        the dataclass defaults for anything unset.
        """
        defaults = cls()
        return cls(
            private=_env_bool("UPLOADS_PRIVATE", defaults.private),
            domain=os.environ.get("UPLOADS_DOMAIN", defaults.domain),
            max_size_mb=int(os.environ.get("UPLOADS_MAX_SIZE_MB", defaults.max_size_mb)),
            url_max_size_mb=int(os.environ.get("UPLOADS_URL_MAX_SIZE_MB", defaults.url_max_size_mb)),
            url_proxy=os.environ.get("UPLOADS_URL_PROXY") or None,
            url_extensions_filter=_env_list("UPLOADS_URL_EXTENSIONS_FILTER"),
            url_extensions_filter_mode=os.environ.get("UPLOADS_URL_EXTENSIONS_FILTER_MODE") or None,
            chunk_size_mb=int(os.environ.get("UPLOADS_CHUNK_SIZE_MB", defaults.chunk_size_mb)),
            extensions_filter=_env_list("UPLOADS_EXTENSIONS_FILTER", defaults.extensions_filter),
            extensions_filter_mode=os.environ.get(
                "UPLOADS_EXTENSIONS_FILTER_MODE", defaults.extensions_filter_mode
            ),
            filter_no_extension=_env_bool("UPLOADS_FILTER_NO_EXTENSION", defaults.filter_no_extension),
            filter_empty_file=_env_bool("UPLOADS_FILTER_EMPTY_FILE", defaults.filter_empty_file),
            temporary_upload_ages=_env_floats("UPLOADS_TEMPORARY_AGES"),
            identifier_length_min=int(os.environ.get("UPLOADS_ID_LENGTH_MIN", defaults.identifier_length_min)),
            identifier_length_max=int(os.environ.get("UPLOADS_ID_LENGTH_MAX", defaults.identifier_length_max)),
            identifier_length_default=int(
                os.environ.get("UPLOADS_ID_LENGTH_DEFAULT", defaults.identifier_length_default)
            ),
            identifier_length_force=_env_bool("UPLOADS_ID_LENGTH_FORCE", defaults.identifier_length_force),
            cache_file_identifiers=_env_bool("UPLOADS_CACHE_IDENTIFIERS", defaults.cache_file_identifiers),
            store_ip=_env_bool("UPLOADS_STORE_IP", defaults.store_ip),
            strip_tags_enabled=_env_bool("UPLOADS_STRIP_TAGS", defaults.strip_tags_enabled),
            strip_tags_default=_env_bool("UPLOADS_STRIP_TAGS_DEFAULT", defaults.strip_tags_default),
            strip_tags_force=_env_bool("UPLOADS_STRIP_TAGS_FORCE", defaults.strip_tags_force),
            scan_bypass_group=os.environ.get("UPLOADS_SCAN_BYPASS_GROUP") or None,
            scan_whitelist_extensions=_env_list("UPLOADS_SCAN_WHITELIST_EXTENSIONS"),
            scan_max_size=int(os.environ.get("UPLOADS_SCAN_MAX_SIZE", defaults.scan_max_size)),
            thumbnail_extensions=_env_list("UPLOADS_THUMBNAIL_EXTENSIONS", defaults.thumbnail_extensions),
        )
