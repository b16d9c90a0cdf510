import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import RuntimeConfig
from .messages import IncomingMessage


RATE_LIMIT_SCOPES = ("user", "channel", "guild")

RATE_LIMIT_MESSAGES = {
    "user": "You are sending messages too quickly. Please slow down.",
    "channel": "Hit the rate limit for this channel. Please try again later.",
    "guild": "Hit the rate limit for this server/guild. Please try again later.",
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int = 0
    scope: Optional[str] = None
    error: str = ""


class RateLimiter:
    """
    Sliding-window request counter keyed by scope id.
    """

    def __init__(self, limit: int, window_seconds: float):
        self.limit = limit
        self.window = window_seconds
        self.requests: Dict[str, List[float]] = {}

    def _valid(self, scope_id: str, now: float) -> List[float]:
        valid = [t for t in self.requests.get(scope_id, []) if now - t < self.window]
        if valid:
            self.requests[scope_id] = valid
        else:
            self.requests.pop(scope_id, None)
        return valid

    def peek(self, scope_id: str) -> RateLimitResult:
        """Report whether a request would be allowed without recording it."""
        now = time.time()
        valid = self._valid(scope_id, now)
        if len(valid) >= self.limit:
            retry_after = max(1, math.ceil(min(valid) + self.window - now))
            return RateLimitResult(allowed=False, retry_after_seconds=retry_after)
        return RateLimitResult(allowed=True, retry_after_seconds=0)

    def record(self, scope_id: str) -> None:
        self.requests.setdefault(scope_id, []).append(time.time())

    def check(self, scope_id: str) -> RateLimitResult:
        result = self.peek(scope_id)
        if result.allowed:
            self.record(scope_id)
        return result

    def cleanup(self) -> int:
        """Drop scopes without in-window timestamps; returns how many were removed."""
        now = time.time()
        removed = 0
        for scope_id, stamps in list(self.requests.items()):
            valid = [t for t in stamps if now - t < self.window]
            if valid:
                self.requests[scope_id] = valid
            else:
                self.requests.pop(scope_id, None)
                removed += 1
        return removed


class ScopedRateLimiter:
    def __init__(self, limiters: Dict[str, RateLimiter]):
        self.limiters = {scope: limiter for scope, limiter in limiters.items() if scope in RATE_LIMIT_SCOPES}

    @classmethod
    def from_config(cls, config: RuntimeConfig) -> "ScopedRateLimiter":
        limiters: Dict[str, RateLimiter] = {}
        if config.rate_limit_user:
            limiters["user"] = RateLimiter(config.user_rate_limit, config.user_rate_window_seconds)
        if config.rate_limit_channel:
            limiters["channel"] = RateLimiter(config.channel_rate_limit, config.channel_rate_window_seconds)
        if config.rate_limit_guild:
            limiters["guild"] = RateLimiter(config.guild_rate_limit, config.guild_rate_window_seconds)
        return cls(limiters)

    def check(self, message: IncomingMessage) -> RateLimitResult:
        """Allow only if every scope has room; a rejection records nothing in any scope."""
        scope_ids = {
            "user": message.author_id,
            "channel": message.channel_key,
            "guild": message.guild_id,
        }
        active = [
            (scope, self.limiters[scope], scope_ids[scope])
            for scope in RATE_LIMIT_SCOPES
            if scope in self.limiters and scope_ids[scope] is not None
        ]
        for scope, limiter, scope_id in active:
            result = limiter.peek(scope_id)
            if not result.allowed:
                return RateLimitResult(
                    allowed=False,
                    retry_after_seconds=result.retry_after_seconds,
                    scope=scope,
                    error=RATE_LIMIT_MESSAGES[scope],
                )
        for _, limiter, scope_id in active:
            limiter.record(scope_id)
        return RateLimitResult(allowed=True)

    def cleanup(self) -> int:
        return sum(limiter.cleanup() for limiter in self.limiters.values())


@dataclass
class ActionResult:
    action: str
    success: bool
    detail: str = ""
    executed_at: float = field(default_factory=lambda: time.time())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "success": self.success,
            "detail": self.detail,
            "executed_at": self.executed_at,
        }
