from __future__ import annotations

from typing import Optional


class AnalysisError(Exception):
    """Base for errors that end a run as ``failed``.

    ``reason`` is a stable machine-readable code reported to progress sinks;
    ``str(exc)`` is the human-readable message.
    """

    reason = "analysis_failed"

    def __init__(self, message: str = "", reason: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        if reason is not None:
            self.reason = reason


class ConfigurationError(AnalysisError):
    reason = "configuration"


class InvalidAccountError(AnalysisError):
    reason = "invalid_account"


class NoActivityError(AnalysisError):
    reason = "no_activity"


class TooManyTransactionsError(AnalysisError):
    reason = "too_many_transactions"

    def __init__(self, found: int, limit: int) -> None:
        super().__init__(
            f"Account has more than {limit} transactions in the lookback window "
            f"(found {found}); refusing to analyze automated accounts"
        )
        self.found = found
        self.limit = limit


class UpstreamError(AnalysisError):
    reason = "upstream_unavailable"

    def __init__(self, message: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamTimeoutError(UpstreamError):
    pass


class RateLimitedError(UpstreamError):
    def __init__(self, message: str = "", retry_after: Optional[float] = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class RunAlreadyActiveError(AnalysisError):
    reason = "already_running"


class AnalysisCancelled(Exception):
    """Raised at a checkpoint once cancellation was requested. Not a failure."""

    reason = "cancelled"
