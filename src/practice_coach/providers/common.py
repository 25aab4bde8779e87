from __future__ import annotations

from practice_coach.provider import ErrorEvent


def status_error_event(status: int | None, message: str, retryable_statuses: frozenset[int]) -> ErrorEvent:
    """Map an HTTP-status failure from a vendor SDK to an ErrorEvent."""
    if status is None:
        return ErrorEvent(code="UNKNOWN", message=message or "Unknown error", retryable=False)
    return ErrorEvent(
        code=f"HTTP_{status}",
        message=message or f"HTTP {status}",
        retryable=status in retryable_statuses,
    )


def connection_error_event(ex: Exception) -> ErrorEvent:
    return ErrorEvent(
        code="CONNECTION_ERROR",
        message=str(ex) or type(ex).__name__,
        retryable=True,
    )
