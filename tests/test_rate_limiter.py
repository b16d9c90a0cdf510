from arete_core.actions import RATE_LIMIT_MESSAGES, RateLimiter, ScopedRateLimiter
from arete_core.config import RuntimeConfig
from arete_core.messages import IncomingMessage


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now


def _patch_clock(monkeypatch, clock):
    monkeypatch.setattr("arete_core.actions.time.time", lambda: clock.now)


def test_limit_requests_pass_then_next_is_rejected(monkeypatch):
    clock = Clock()
    _patch_clock(monkeypatch, clock)
    limiter = RateLimiter(limit=3, window_seconds=60.0)

    for _ in range(3):
        assert limiter.check("user:1").allowed
        clock.now += 1

    rejected = limiter.check("user:1")
    assert not rejected.allowed
    # Oldest request at 1000, window 60s, now 1003.
    assert rejected.retry_after_seconds == 57


def test_window_reopens_after_oldest_request_ages_out(monkeypatch):
    clock = Clock()
    _patch_clock(monkeypatch, clock)
    limiter = RateLimiter(limit=2, window_seconds=10.0)

    assert limiter.check("scope").allowed
    assert limiter.check("scope").allowed
    assert not limiter.check("scope").allowed

    clock.now += 10.0
    assert limiter.check("scope").allowed


def test_scopes_are_counted_independently(monkeypatch):
    clock = Clock()
    _patch_clock(monkeypatch, clock)
    limiter = RateLimiter(limit=1, window_seconds=60.0)

    assert limiter.check("a").allowed
    assert limiter.check("b").allowed
    assert not limiter.check("a").allowed


def test_retry_after_is_at_least_one_second(monkeypatch):
    clock = Clock()
    _patch_clock(monkeypatch, clock)
    limiter = RateLimiter(limit=1, window_seconds=1.0)

    assert limiter.check("scope").allowed
    clock.now += 0.999
    result = limiter.check("scope")
    assert not result.allowed
    assert result.retry_after_seconds >= 1


def test_cleanup_drops_only_expired_scopes(monkeypatch):
    clock = Clock()
    _patch_clock(monkeypatch, clock)
    limiter = RateLimiter(limit=5, window_seconds=30.0)

    limiter.check("old")
    clock.now += 20
    limiter.check("fresh")
    clock.now += 15

    assert limiter.cleanup() == 1
    assert "old" not in limiter.requests
    assert "fresh" in limiter.requests


def test_scoped_limiter_reports_first_rejecting_scope(monkeypatch):
    clock = Clock()
    _patch_clock(monkeypatch, clock)
    config = RuntimeConfig(user_rate_limit=10, channel_rate_limit=2, guild_rate_limit=10)
    limiter = ScopedRateLimiter.from_config(config)

    def msg(author: str) -> IncomingMessage:
        return IncomingMessage(message_id="m", channel_id="c", guild_id="g", author_id=author, created_at=clock.now)

    assert limiter.check(msg("u1")).allowed
    assert limiter.check(msg("u2")).allowed
    result = limiter.check(msg("u3"))
    assert not result.allowed
    assert result.scope == "channel"
    assert result.error == RATE_LIMIT_MESSAGES["channel"]


def test_scoped_limiter_skips_guild_scope_for_dms(monkeypatch):
    clock = Clock()
    _patch_clock(monkeypatch, clock)
    config = RuntimeConfig(guild_rate_limit=1, rate_limit_user=False, rate_limit_channel=False)
    limiter = ScopedRateLimiter.from_config(config)
    dm = IncomingMessage(message_id="m", channel_id="c", guild_id=None, author_id="u")

    for _ in range(5):
        assert limiter.check(dm).allowed


def test_rejection_in_a_later_scope_does_not_spend_user_quota(monkeypatch):
    clock = Clock()
    _patch_clock(monkeypatch, clock)
    config = RuntimeConfig(user_rate_limit=3, channel_rate_limit=1, rate_limit_guild=False)
    limiter = ScopedRateLimiter.from_config(config)
    msg = IncomingMessage(message_id="m", channel_id="c", guild_id="g", author_id="u1")

    scopes = [limiter.check(msg).scope for _ in range(4)]

    assert scopes == [None, "channel", "channel", "channel"]
    assert len(limiter.limiters["user"].requests["u1"]) == 1


def test_peek_does_not_record(monkeypatch):
    clock = Clock()
    _patch_clock(monkeypatch, clock)
    limiter = RateLimiter(limit=1, window_seconds=60.0)

    assert limiter.peek("scope").allowed
    assert limiter.peek("scope").allowed
    assert "scope" not in limiter.requests
    assert limiter.check("scope").allowed
    assert not limiter.peek("scope").allowed
