"""Custom exception classes for the upload server."""

from enum import Enum
from typing import Iterable, Optional


class ErrorKind(str, Enum):
    """
    Tag carried by every UploadError. Handlers switch on the tag to choose
    the response status and whether the caller may retry.
    """
    POLICY_VIOLATION = "POLICY_VIOLATION"
    TRANSIENT_ALLOCATION = "TRANSIENT_ALLOCATION"
    INTEGRITY_FAILURE = "INTEGRITY_FAILURE"
    SECURITY_FINDING = "SECURITY_FINDING"
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
    STORE_FAILURE = "STORE_FAILURE"
    ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    USER_NOT_FOUND = "USER_NOT_FOUND"


class UploadError(Exception):
    """
    Base exception class for all upload server errors.

    The message is always safe to show to the caller.
    """
    kind: ErrorKind = ErrorKind.POLICY_VIOLATION

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PolicyViolationError(UploadError):
    """
    Raised when a request breaks a configured upload policy (extension,
    size, empty file, URL count, fragment count, retention age).
    """
    kind = ErrorKind.POLICY_VIOLATION


class PermanentNotAllowedError(PolicyViolationError):
    """
    Raised when no retention age could be resolved and permanent uploads
    are not in the allowed set.
    """

    def __init__(self, message: str = "Permanent uploads are not permitted."):
        super().__init__(message)


class FileTooLargeError(PolicyViolationError):
    """
    Raised when an upload, fragment or fetched URL grows past its size limit.
    """

    def __init__(self, message: str = "File too large."):
        super().__init__(message)


class TooManyFragmentsError(PolicyViolationError):
    """
    Raised when a chunk session holds more fragments than the size limit allows.
    """

    def __init__(self, message: str = "Too many chunks."):
        super().__init__(message)


class AllocationExhaustedError(UploadError):
    """
    Raised when no unique random name could be allocated within the retry budget.
    """
    kind = ErrorKind.TRANSIENT_ALLOCATION

    def __init__(self, message: str = "Sorry, we could not allocate a unique random name. Try again?"):
        super().__init__(message)


class IntegrityFailureError(UploadError):
    """
    Raised when reassembled data does not match what the session recorded.
    """
    kind = ErrorKind.INTEGRITY_FAILURE


class SizeMismatchError(IntegrityFailureError):
    """
    Raised when a combined file's size differs from the tracked or declared size.
    """

    def __init__(self, message: str = "Chunks size mismatched."):
        super().__init__(message)


class SecurityFindingError(UploadError):
    """
    Raised when the virus scanner reports a threat in an uploaded file.
    """
    kind = ErrorKind.SECURITY_FINDING


class UpstreamFailureError(UploadError):
    """
    Raised when a remote fetch or the scan engine fails.
    """
    kind = ErrorKind.UPSTREAM_FAILURE


class StoreFailureError(UploadError):
    """
    Raised when the metadata store fails. The native diagnostic is kept
    apart from the public message.
    """
    kind = ErrorKind.STORE_FAILURE

    def __init__(
        self,
        diagnostic: str,
        message: str = "An unexpected error occurred. Try again?",
    ):
        super().__init__(message)
        self.diagnostic = diagnostic


class AccountDisabledError(UploadError):
    """
    Raised when the acting account has been disabled.
    """
    kind = ErrorKind.ACCOUNT_DISABLED

    def __init__(self, message: str = "This account has been disabled."):
        super().__init__(message)


class NotAuthorizedError(UploadError):
    """
    Raised when a token is missing or does not match any account.
    """
    kind = ErrorKind.NOT_AUTHORIZED

    def __init__(self, message: str = "Invalid token."):
        super().__init__(message)


class ForbiddenError(UploadError):
    """
    Raised when the acting account lacks the permission an operation needs.
    """
    kind = ErrorKind.FORBIDDEN

    def __init__(self, message: str = "Insufficient permissions."):
        super().__init__(message)


class UserNotFoundError(UploadError):
    """
    Raised when a listing filter names usernames that match no account.
    """
    kind = ErrorKind.USER_NOT_FOUND

    def __init__(self, usernames: Iterable[str], message: Optional[str] = None):
        self.usernames = list(usernames)
        if message is None:
            plural = "" if len(self.usernames) == 1 else "s"
            message = f"User{plural} not found: {', '.join(self.usernames)}."
        super().__init__(message)
