"""Error taxonomy for the ingestion pipeline.

Adapter failures are classified so the orchestrator can decide between
retrying (connectivity), giving up immediately (auth) and carrying on with
zero items (parse). Per-item failures never escape the normalize/dedup stage.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .rate_limiter import RateDecision


class MonitorError(Exception):
    """Base class for all regulatory monitor errors."""

    kind = "error"

    def describe(self, source_name: Optional[str] = None) -> str:
        """Return a display string carrying the classification and source."""
        prefix = f"{source_name} " if source_name else ""
        return f"{prefix}{self.kind}: {self}"


class ConfigurationError(MonitorError):
    kind = "configuration_error"


class AdapterError(MonitorError):
    """A failure raised by a source adapter while fetching."""

    kind = "adapter_error"
    retryable = False

    def __init__(self, message: str, *, status_code: Optional[int] = None, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class AuthError(AdapterError):
    """Credentials rejected (401/403). Never retried automatically."""

    kind = "auth_error"


class ConnectivityError(AdapterError):
    """Network failure, timeout or server-side error."""

    kind = "connectivity_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        retry_after: Optional[float] = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message, status_code=status_code, url=url)
        self.retry_after = retry_after
        self.retryable = retryable


class ParseError(AdapterError):
    """The source answered but its payload could not be read."""

    kind = "parse_error"


class NormalizationError(MonitorError):
    """A single raw item could not be mapped to a canonical alert."""

    kind = "normalization_error"


class RateLimitExceeded(MonitorError):
    """Local request budget exhausted; the attempt is deferred, not failed."""

    kind = "skipped_rate_limited"

    def __init__(self, decision: "RateDecision") -> None:
        super().__init__(
            f"{decision.scope} budget exhausted for {decision.source_name}, "
            f"resets at {decision.reset_at.isoformat()}"
        )
        self.decision = decision


class PersistenceError(MonitorError):
    """Writing a batch to the store failed."""

    kind = "persistence_error"
