from arete_core.safety import CircuitBreaker


def test_circuit_breaker_trips_and_cools_down(monkeypatch):
    base_time = 1000.0
    monkeypatch.setattr("arete_core.safety.time.time", lambda: base_time)
    breaker = CircuitBreaker("test", threshold=2, window_seconds=10.0, cooldown_seconds=5.0)

    assert breaker.allow()
    breaker.record_failure("first")
    assert breaker.allow()
    breaker.record_failure("second")
    assert not breaker.allow()
    assert breaker.status() == (True, "second")

    # Past the cooldown the breaker closes and forgets old failures
    monkeypatch.setattr("arete_core.safety.time.time", lambda: base_time + 6.0)
    assert breaker.allow()
    assert not breaker.failures
    assert breaker.status() == (False, "")


def test_failures_outside_window_do_not_trip(monkeypatch):
    now = {"t": 1000.0}
    monkeypatch.setattr("arete_core.safety.time.time", lambda: now["t"])
    breaker = CircuitBreaker("window", threshold=2, window_seconds=10.0, cooldown_seconds=30.0)

    breaker.record_failure("first")
    now["t"] += 11.0
    breaker.record_failure("second")
    assert breaker.allow()
