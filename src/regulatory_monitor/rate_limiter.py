"""Sliding-window request budgets per source plus a global ceiling.

``acquire`` never sleeps: callers that are refused defer the work and report
the decision instead of waiting for the window to free up.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .logging_config import get_logger
from .parser_utils import isoformat_utc

logger = get_logger("rate_limiter")

MINUTE = 60.0
HOUR = 3600.0


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    source_name: str
    remaining: int
    reset_at: datetime
    scope: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_at": isoformat_utc(self.reset_at),
            "scope": self.scope,
        }


class _Window:
    """Timestamps of granted requests within the last ``span`` seconds."""

    def __init__(self, limit: int, span: float) -> None:
        self.limit = limit
        self.span = span
        self.calls: Deque[float] = deque()

    def prune(self, now: float) -> None:
        while self.calls and now - self.calls[0] >= self.span:
            self.calls.popleft()

    def remaining(self) -> int:
        return max(0, self.limit - len(self.calls))

    def reset_at(self, now: float) -> float:
        return self.calls[0] + self.span if self.calls else now


class RateLimiter:
    """Per-source minute/hour budgets and one global per-minute budget."""

    def __init__(
        self,
        *,
        global_per_minute: int = 120,
        default_per_minute: int = 30,
        default_per_hour: int = 500,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._defaults = (default_per_minute, default_per_hour)
        self._global = _Window(global_per_minute, MINUTE)
        self._sources: Dict[str, Dict[str, _Window]] = {}

    def configure(self, source_name: str, *, per_minute: int, per_hour: int) -> None:
        with self._lock:
            self._sources[source_name] = {
                "minute": _Window(per_minute, MINUTE),
                "hour": _Window(per_hour, HOUR),
            }

    def _windows_for(self, source_name: str) -> List[Tuple[str, _Window]]:
        windows = self._sources.get(source_name)
        if windows is None:
            per_minute, per_hour = self._defaults
            windows = {"minute": _Window(per_minute, MINUTE), "hour": _Window(per_hour, HOUR)}
            self._sources[source_name] = windows
        return [("global", self._global), ("minute", windows["minute"]), ("hour", windows["hour"])]

    def acquire(self, source_name: str) -> RateDecision:
        """Consume one request from every window, or refuse without consuming."""
        with self._lock:
            now = self._clock()
            windows = self._windows_for(source_name)
            for _, window in windows:
                window.prune(now)

            exhausted = [(scope, window) for scope, window in windows if window.remaining() == 0]
            if exhausted:
                scope, window = max(exhausted, key=lambda item: item[1].reset_at(now))
                decision = RateDecision(
                    allowed=False,
                    source_name=source_name,
                    remaining=0,
                    reset_at=_to_datetime(window.reset_at(now)),
                    scope=scope,
                )
                logger.info("Rate limit reached for %s (%s window)", source_name, scope)
                return decision

            for _, window in windows:
                window.calls.append(now)
            scope, window = min(windows, key=lambda item: item[1].remaining())
            return RateDecision(
                allowed=True,
                source_name=source_name,
                remaining=window.remaining(),
                reset_at=_to_datetime(window.reset_at(now)),
                scope=scope,
            )

    def remaining(self, source_name: str) -> Dict[str, int]:
        with self._lock:
            now = self._clock()
            result = {}
            for scope, window in self._windows_for(source_name):
                window.prune(now)
                result[scope] = window.remaining()
            return result


def _to_datetime(timestamp: Optional[float]) -> datetime:
    return datetime.fromtimestamp(timestamp or 0.0, tz=timezone.utc)
