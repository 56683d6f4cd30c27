from __future__ import annotations

import asyncio

CONFLICT_MARKERS = ("expected-version", "expected_version", "version mismatch")


class WritingError(Exception):
    pass


class ValidationError(WritingError):
    pass


class ServerError(WritingError):
    def __init__(self, detail: str, status: int | None = None):
        super().__init__(detail)
        self.detail = detail
        self.status = status


class VersionConflictError(ServerError):
    def __init__(
        self,
        detail: str = "Version mismatch",
        status: int | None = 409,
        current_version: int | None = None,
    ):
        super().__init__(detail, status=status)
        self.current_version = current_version


class StreamAbortedError(WritingError):
    pass


def is_version_conflict(error: BaseException | None) -> bool:
    if error is None:
        return False
    if isinstance(error, VersionConflictError):
        return True
    if getattr(error, "status", None) == 409:
        return True
    lower = str(error).lower()
    return any(marker in lower for marker in CONFLICT_MARKERS)


def _looks_aborted(error: BaseException) -> bool:
    if isinstance(error, (StreamAbortedError, asyncio.CancelledError)):
        return True
    if type(error).__name__ == "AbortError":
        return True
    return "aborted" in str(error).lower()


def is_abort_error(error: BaseException | None) -> bool:
    if error is None:
        return False
    if _looks_aborted(error):
        return True
    cause = error.__cause__
    return cause is not None and _looks_aborted(cause)
