"""Upload policy checks: extensions, identifier length, retention age, tag stripping."""

from typing import Iterable, Optional

from common.constants import FILE_IDENTIFIER_LENGTH_FALLBACK
from uploadserver.config import UploadSettings
from uploadserver.exceptions import PermanentNotAllowedError, PolicyViolationError

FILTER_MODES = ("blacklist", "whitelist")


def _matches(extension: str, extensions: Iterable[str]) -> bool:
    return any(extension == candidate.lower() for candidate in extensions)


def rejection_message(extension: str) -> str:
    if extension:
        return f"{extension[1:].upper()} files are not permitted."
    return "Files with no extension are not permitted."


class ExtensionPolicy:
    """
    Decides whether an extension is permitted.

    Extensions are compared lowercased. Blacklist mode filters listed
    extensions, whitelist mode filters everything not listed. URL uploads may
    carry their own list and mode; without a valid URL mode they fall back to
    the general rules.
    """

    def __init__(self, settings: UploadSettings):
        self.settings = settings

    def is_filtered(self, extension: str) -> bool:
        extension = (extension or "").lower()

        if not extension:
            return self.settings.filter_no_extension

        if self.settings.extensions_filter:
            match = _matches(extension, self.settings.extensions_filter)
            whitelist = self.settings.extensions_filter_mode == "whitelist"
            return match != whitelist

        return False

    def is_url_filtered(self, extension: str) -> bool:
        mode = self.settings.url_extensions_filter_mode
        if mode not in FILTER_MODES:
            return self.is_filtered(extension)

        if not self.settings.url_extensions_filter:
            raise PolicyViolationError("Invalid extensions filter, please contact the site owner.")

        match = _matches((extension or "").lower(), self.settings.url_extensions_filter)
        return match != (mode == "whitelist")

    def check(self, extension: str) -> None:
        if self.is_filtered(extension):
            raise PolicyViolationError(rejection_message(extension))

    def check_url(self, extension: str) -> None:
        if self.is_url_filtered(extension):
            raise PolicyViolationError(rejection_message(extension))


def parse_identifier_length(settings: UploadSettings, value) -> int:
    """
    Pick the identifier length for a request.

    The client value is honored only when lengths are changeable and it lies
    within the configured range; otherwise the configured default is used.
    """
    default = settings.identifier_length_default or FILE_IDENTIFIER_LENGTH_FALLBACK
    if not settings.identifier_length_changeable or value is None:
        return default

    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default

    if parsed < settings.identifier_length_min or parsed > settings.identifier_length_max:
        return default
    return parsed


def parse_upload_age(settings: UploadSettings, age) -> Optional[float]:
    """
    Resolve a requested retention age (hours) against the allowed set.

    A missing age resolves to the first allowed age. A value outside the set,
    or one that isn't numeric, resolves to None.
    """
    ages = settings.temporary_upload_ages
    if not ages:
        return None

    if age is None or age == "":
        return ages[0]

    try:
        parsed = float(age)
    except (TypeError, ValueError):
        return None

    if parsed in ages:
        return parsed
    return None


def resolve_upload_age(settings: UploadSettings, age) -> Optional[float]:
    """
    Resolve a retention age, enforcing that permanent uploads are allowed when
    nothing resolved.

    Returns:
        The age in hours, or None for a permanent upload

    Raises:
        PermanentNotAllowedError: If no age resolved and 0 is not allowed
    """
    if not settings.temporary_uploads:
        return None

    parsed = parse_upload_age(settings, age)
    if not parsed:
        if 0 not in settings.temporary_upload_ages:
            raise PermanentNotAllowedError()
        return None
    return parsed


def parse_strip_tags(settings: UploadSettings, value) -> bool:
    if not settings.strip_tags_enabled:
        return False

    if settings.strip_tags_force or value is None:
        return settings.strip_tags_default

    try:
        return bool(int(value))
    except (TypeError, ValueError):
        return False


def may_generate_thumb(settings: UploadSettings, extension: str) -> bool:
    return (extension or "").lower() in settings.thumbnail_extensions
