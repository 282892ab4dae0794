"""Short-lived circuit breaker for courier adapters."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from shiprate.config import settings

logger = logging.getLogger(__name__)


class CircuitState:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Opens after ``failure_threshold`` consecutive failures and rejects
    calls until ``cooldown_seconds`` have passed. The first call after the
    cooldown is a trial: success closes the circuit, failure re-opens it.
    """

    def __init__(
        self,
        failure_threshold: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        name: str = "",
    ):
        self.failure_threshold = failure_threshold or settings.CIRCUIT_FAILURE_THRESHOLD
        self.cooldown = timedelta(seconds=cooldown_seconds or settings.CIRCUIT_COOLDOWN_SECONDS)
        self._clock = clock
        self.name = name
        self._failures = 0
        self._opened_at: Optional[datetime] = None
        self._state = CircuitState.CLOSED

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.cooldown:
            return CircuitState.HALF_OPEN
        return self._state

    def allow(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(f"Circuit {self.name} closed")
        self._failures = 0
        self._opened_at = None
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self._open()
            return
        self._failures += 1
        if self._failures >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        logger.warning(
            f"Circuit {self.name} opened after {self._failures} failures, "
            f"cooling down {self.cooldown.total_seconds()}s"
        )
