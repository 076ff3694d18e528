"""Tests for the circuit breaker, cooldowns and trading context."""

import logging

from vaultbot.engine.risk_controls import CircuitBreaker, CooldownTracker, TradingContext
from tests.conftest import FakeClock


class TestCircuitBreaker:
    def test_opens_at_threshold(self, caplog):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=2, reset_seconds=300, clock=clock)

        breaker.record_failure("first")
        assert not breaker.is_open()
        with caplog.at_level(logging.WARNING):
            breaker.record_failure("second")
        assert breaker.is_open()
        assert "Open after 2 failures" in caplog.text

    def test_closes_after_quiet_period(self):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=2, reset_seconds=300, clock=clock)
        breaker.record_failure()
        breaker.record_failure()

        clock.advance(300)
        assert breaker.is_open()
        assert breaker.seconds_until_reset() == 0.0

        clock.advance(1)
        assert not breaker.is_open()
        assert breaker.failures == 0

    def test_failures_spread_out_never_open(self):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=2, reset_seconds=300, clock=clock)
        breaker.record_failure()
        clock.advance(400)
        breaker.record_failure()
        assert not breaker.is_open()
        assert breaker.failures == 1

    def test_manual_reset(self):
        breaker = CircuitBreaker(threshold=1, reset_seconds=300, clock=FakeClock())
        breaker.record_failure()
        assert breaker.snapshot()["open"] is True
        breaker.reset()
        assert breaker.snapshot() == {"open": False, "failures": 0, "threshold": 1, "seconds_until_reset": 0.0}


class TestCooldownTracker:
    def test_keys_are_case_insensitive(self):
        clock = FakeClock()
        cooldowns = CooldownTracker(seconds=300, clock=clock)
        cooldowns.arm("0xABC", 1, "0xTOKEN")
        assert cooldowns.is_cooling("0xabc", 1, "0xtoken")
        assert not cooldowns.is_cooling("0xabc", 2, "0xtoken")

    def test_expires(self):
        clock = FakeClock()
        cooldowns = CooldownTracker(seconds=300, clock=clock)
        cooldowns.arm("0xabc", 1, "0xt")
        clock.advance(120)
        assert cooldowns.remaining("0xabc", 1, "0xt") == 180
        clock.advance(180)
        assert not cooldowns.is_cooling("0xabc", 1, "0xt")


def test_context_pause_resume():
    context = TradingContext.create(clock=FakeClock(), max_failures=3)
    assert context.breaker.threshold == 3
    context.pause("operator")
    assert context.paused and context.pause_reason == "operator"
    context.resume()
    assert not context.paused and context.pause_reason is None
