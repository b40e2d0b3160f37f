"""Project-wide constants shared by the upload server components."""

MAX_FILES_PER_UPLOAD: int = 20  # also caps URLs per request

ID_MAX_TRIES: int = 100

FILE_IDENTIFIER_LENGTH_FALLBACK: int = 32

# Fragments are at least 1 MB, so a 50 MB limit allows at most 50 fragments
MIN_CHUNK_SIZE_BYTES: int = 1_000_000

BYTES_PER_MB: int = 1_000_000

STREAM_PIECE_SIZE_BYTES: int = 64 * 1024

LISTING_PAGE_SIZE: int = 25

THUMBNAIL_WORKERS: int = 2

# SQLite INTEGER range
SQLITE_INTEGER_MIN: int = -(2**63)
SQLITE_INTEGER_MAX: int = 2**63 - 1
