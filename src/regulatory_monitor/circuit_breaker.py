"""Per-source circuit breaker.

After ``failure_threshold`` consecutive failed invocations a source is left
alone for ``reset_timeout_seconds``; then a single trial call decides whether
the circuit closes again or re-opens.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from .logging_config import get_logger

logger = get_logger("circuit_breaker")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class _Circuit:
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    opened_at: Optional[float] = None


@dataclass(frozen=True)
class CircuitCheck:
    allowed: bool
    state: CircuitState
    retry_in_seconds: float = 0.0

    def message(self) -> str:
        return f"circuit open (retry in {int(round(self.retry_in_seconds))}s)"


class CircuitBreaker:
    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        reset_timeout_seconds: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._circuits: Dict[str, _Circuit] = {}

    def _circuit(self, source_name: str) -> _Circuit:
        return self._circuits.setdefault(source_name, _Circuit())

    def state(self, source_name: str) -> CircuitState:
        with self._lock:
            return self._circuit(source_name).state

    def check(self, source_name: str) -> CircuitCheck:
        """Decide whether ``source_name`` may be invoked now."""
        with self._lock:
            circuit = self._circuit(source_name)
            if circuit.state is CircuitState.CLOSED:
                return CircuitCheck(True, circuit.state)

            elapsed = self._clock() - (circuit.opened_at or 0.0)
            if circuit.state is CircuitState.OPEN and elapsed >= self.reset_timeout_seconds:
                circuit.state = CircuitState.HALF_OPEN
                logger.info("Circuit for %s half-open, allowing a trial call", source_name)
                return CircuitCheck(True, circuit.state)

            # half-open already has its trial call in flight
            return CircuitCheck(
                False,
                circuit.state,
                retry_in_seconds=max(0.0, self.reset_timeout_seconds - elapsed),
            )

    def record_success(self, source_name: str) -> None:
        with self._lock:
            circuit = self._circuit(source_name)
            if circuit.state is not CircuitState.CLOSED:
                logger.info("Circuit for %s closed", source_name)
            circuit.state = CircuitState.CLOSED
            circuit.failures = 0
            circuit.opened_at = None

    def record_failure(self, source_name: str) -> None:
        with self._lock:
            circuit = self._circuit(source_name)
            circuit.failures += 1
            if circuit.state is CircuitState.HALF_OPEN or circuit.failures >= self.failure_threshold:
                if circuit.state is not CircuitState.OPEN:
                    logger.warning(
                        "Circuit for %s opened after %s consecutive failures",
                        source_name,
                        circuit.failures,
                    )
                circuit.state = CircuitState.OPEN
                circuit.opened_at = self._clock()
