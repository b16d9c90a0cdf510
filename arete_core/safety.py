import logging
import time
from collections import deque


class CircuitBreaker:
    """
    Fails closed after `threshold` failures inside `window_seconds`, then stays
    open for `cooldown_seconds` before letting calls through again.
    """

    def __init__(
        self,
        name: str,
        threshold: int = 3,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 120.0,
    ):
        self.name = name
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self.failures: deque[float] = deque()
        self.tripped_until: float = 0.0
        self.reason: str = ""
        self.logger = logging.getLogger(f"arete.safety.{name}")

    @property
    def tripped(self) -> bool:
        return time.time() < self.tripped_until

    def allow(self) -> bool:
        now = time.time()
        self._prune(now)
        return now >= self.tripped_until

    def record_failure(self, reason: str) -> None:
        now = time.time()
        self.failures.append(now)
        self.reason = reason
        self._prune(now)
        if len(self.failures) >= self.threshold and now >= self.tripped_until:
            self.tripped_until = now + self.cooldown_seconds
            self.logger.warning(
                "[CIRCUIT] %s open for %.0fs after %d failures: %s",
                self.name,
                self.cooldown_seconds,
                len(self.failures),
                reason,
            )

    def record_success(self) -> None:
        self._prune(time.time())
        if not self.failures:
            self.reason = ""

    def status(self) -> tuple[bool, str]:
        return self.tripped, self.reason

    def _prune(self, now: float) -> None:
        while self.failures and now - self.failures[0] > self.window_seconds:
            self.failures.popleft()
        if self.tripped_until and now >= self.tripped_until:
            self.tripped_until = 0.0
            self.failures.clear()
            self.reason = ""
