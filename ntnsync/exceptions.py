"""Application-level exception types.

Convention:
- ``NotionAPIError``: raised by the Notion client for every non-2xx response.
  ``is_permanent`` separates errors that will never succeed on retry
  (not found, forbidden, unauthenticated, malformed request) from transient
  ones.  The queue processor drops items that fail permanently and keeps the
  rest for the next run.
- ``NtnsyncError`` subclasses: domain errors raised by the sync engine and
  reported to the operator by the CLI.
- ``OSError`` and ``subprocess.CalledProcessError`` are never wrapped: local
  I/O and git failures propagate as-is.
"""

from __future__ import annotations

_PERMANENT_STATUS_CODES = frozenset({401, 403, 404})


class NtnsyncError(Exception):
    """Base class for sync engine errors."""


class NotionAPIError(NtnsyncError):
    """Error response returned by the Notion API."""

    def __init__(self, status_code: int, code: str = "", message: str = "") -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(f"notion API error {status_code} ({code}): {message}")

    @property
    def is_permanent(self) -> bool:
        """Return True when retrying the request cannot succeed."""
        if self.status_code in _PERMANENT_STATUS_CODES:
            return True
        return self.status_code == 400 and self.code == "validation_error"


class RateLimitedError(NotionAPIError):
    """Raised when HTTP 429 responses persist after all retries."""

    def __init__(self, attempts: int) -> None:
        super().__init__(429, "rate_limited", f"still rate limited after {attempts} attempts")


class DatabaseObjectError(NtnsyncError):
    """Raised when a page lookup hits an id that belongs to a database."""

    def __init__(self, object_id: str) -> None:
        self.object_id = object_id
        super().__init__(f"{object_id} is a database, not a page")


class InvalidPageIdError(NtnsyncError, ValueError):
    """Raised when a page id or URL cannot be parsed."""


class InvalidFolderNameError(NtnsyncError, ValueError):
    """Raised when a folder name contains characters other than [a-z0-9-]."""


class NoPreviousPullError(NtnsyncError):
    def __init__(self) -> None:
        super().__init__("no previous pull time found, use --since to specify a duration")


class RemoteNotConfiguredError(NtnsyncError):
    def __init__(self) -> None:
        super().__init__("remote not configured (set NTN_GIT_URL)")


class StoreError(NtnsyncError):
    """Raised for store-level misuse (closed transaction, exhausted queue numbering)."""


class TransactionClosedError(StoreError):
    """Raised when a committed or rolled-back transaction is used again."""


class FileTooLargeError(NtnsyncError):
    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"file size {size} exceeds limit {limit}")


class CycleError(NtnsyncError):
    """Raised when a parent chain loops back on itself."""


def is_permanent_error(exc: BaseException | None) -> bool:
    """Return True if *exc* or any exception in its cause chain is a permanent API error."""
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, NotionAPIError):
            return exc.is_permanent
        exc = exc.__cause__ or exc.__context__
    return False
