"""Transaction result errors and the result strings they stand for."""

from __future__ import annotations

from typing import Optional

RESULT_SUCCESS = "SUCCESS"
RESULT_FAILURE = "FAILURE"
RESULT_ONGOING = "ONGOING"


class DtmError(Exception):
    """Base class for errors that carry a transaction result."""

    result: Optional[str] = None

    def __init__(self, message: Optional[str] = None) -> None:
        if message is None:
            message = self.result or ""
        super().__init__(message)


class FailureError(DtmError):
    """The branch failed for good; it must not be retried."""

    result = RESULT_FAILURE


class OngoingError(DtmError):
    """The branch is still in progress; it should be retried later."""

    result = RESULT_ONGOING


_RESULT_ERRORS = {
    RESULT_FAILURE: FailureError,
    RESULT_ONGOING: OngoingError,
}


def error_from_result(result: str) -> Optional[DtmError]:
    """Return the error that a result string stands for, or None for success."""
    error_type = _RESULT_ERRORS.get(result)
    return error_type() if error_type is not None else None