"""
Circuit breaker guarding the AFIP data source.

closed -> open    after `threshold` consecutive failures
open   -> closed  on the first attempt made once `cooldown` has elapsed
                  since the last recorded failure

While open, callers skip the operation entirely; skipped attempts are not
failures.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Any

from afip_monitor.models.base import utcnow

logger = logging.getLogger(__name__)


class CircuitBreaker:

    def __init__(
        self,
        threshold: int = 5,
        cooldown: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._last_failure: Optional[datetime] = None
        self._open = False

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def last_failure(self) -> Optional[datetime]:
        return self._last_failure

    def is_open(self) -> bool:
        """True while calls must be skipped. Closes itself after the cool-down."""
        with self._lock:
            if not self._open:
                return False
            if self._clock() - self._last_failure >= self.cooldown:
                logger.info("Circuit breaker cool-down elapsed, closing and retrying")
                self._open = False
                self._failures = 0
                return False
            return True

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure = self._clock()
            if not self._open and self._failures >= self.threshold:
                self._open = True
                logger.warning(f"Circuit breaker opened after {self._failures} consecutive failures")

    def record_success(self) -> None:
        with self._lock:
            if self._failures > 0 or self._open:
                logger.debug("Circuit breaker reset")
            self._failures = 0
            self._open = False

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "is_open": self._open,
                "failures": self._failures,
                "threshold": self.threshold,
                "cooldown_seconds": int(self.cooldown.total_seconds()),
                "last_failure": self._last_failure.isoformat() if self._last_failure else None,
            }
