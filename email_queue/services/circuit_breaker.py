import time
from typing import Callable, Optional

from email_queue.utils.logger import get_logger

logger = get_logger("circuit_breaker")


class CircuitBreaker:
    """Stops hammering a provider that keeps timing out or erroring.

    Only transient failures are recorded here; a provider rejecting one
    message (bad address) says nothing about the next one.
    """

    def __init__(self, failure_threshold=5, recovery_time=30.0, clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_time = recovery_time
        self.clock = clock
        self.failures = 0
        self.last_failure_time: Optional[float] = None
        self.state = "CLOSED"  # CLOSED, OPEN, HALF-OPEN

    def record_success(self):
        if self.state != "CLOSED":
            logger.info("circuit_closed", extra={"failures": self.failures})
        self.failures = 0
        self.state = "CLOSED"

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = self.clock()
        if self.state == "HALF-OPEN" or self.failures >= self.failure_threshold:
            self.state = "OPEN"
            logger.warning("circuit_open", extra={"failures": self.failures})

    def allow_request(self) -> bool:
        if self.state == "OPEN":
            if (self.clock() - self.last_failure_time) > self.recovery_time:  # type: ignore
                self.state = "HALF-OPEN"
                logger.info("circuit_half_open")
                return True
            return False
        return True
