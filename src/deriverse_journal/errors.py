from __future__ import annotations


class JournalError(Exception):
    pass


class DecodeError(JournalError, ValueError):
    """A single log record could not be decoded; the rest of the batch continues."""


class RateLimited(JournalError):
    def __init__(self, retry_after_seconds: int, reset_time_ms: int | None = None) -> None:
        super().__init__(f"Rate limit exceeded; retry after {retry_after_seconds}s")
        self.retry_after_seconds = retry_after_seconds
        self.reset_time_ms = reset_time_ms


class UpstreamUnavailable(JournalError, RuntimeError):
    """Ledger reader or fill store could not be reached."""
