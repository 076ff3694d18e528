"""Process-wide risk controls for new entries.

The circuit breaker and the per-token cooldowns live in a `TradingContext`
that is handed to the orchestrator, so tests can drive them with a fake clock.
All times are seconds from the context's clock (monotonic by default).
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from vaultbot.config import settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CircuitBreaker:
    """Stops new entries after repeated open failures.

    Opens once `threshold` failures have been recorded and closes again when
    no failure has been recorded for `reset_seconds`.
    """

    def __init__(self, threshold: int, reset_seconds: float, clock: Clock):
        self.threshold = threshold
        self.reset_seconds = reset_seconds
        self.clock = clock
        self.failures = 0
        self.last_failure_at: float | None = None

    def _expire(self):
        if self.failures and self.last_failure_at is not None:
            if self.clock() - self.last_failure_at > self.reset_seconds:
                logger.info(f"[breaker] Quiet for {self.reset_seconds:.0f}s, clearing {self.failures} failures")
                self.failures = 0

    def is_open(self) -> bool:
        self._expire()
        return self.failures >= self.threshold

    def record_failure(self, reason: str = ""):
        self._expire()
        self.failures += 1
        self.last_failure_at = self.clock()
        if self.failures >= self.threshold:
            logger.warning(f"[breaker] Open after {self.failures} failures: {reason}")
        else:
            logger.info(f"[breaker] Failure {self.failures}/{self.threshold}: {reason}")

    def reset(self):
        self.failures = 0
        self.last_failure_at = None

    def seconds_until_reset(self) -> float:
        if not self.failures or self.last_failure_at is None:
            return 0.0
        return max(0.0, self.reset_seconds - (self.clock() - self.last_failure_at))

    def snapshot(self) -> dict:
        return {
            "open": self.is_open(),
            "failures": self.failures,
            "threshold": self.threshold,
            "seconds_until_reset": round(self.seconds_until_reset(), 1),
        }


class CooldownTracker:
    """Minimum spacing between entries on the same (wallet, chain, token)."""

    def __init__(self, seconds: float, clock: Clock):
        self.seconds = seconds
        self.clock = clock
        self._last: dict[tuple[str, int, str], float] = {}

    @staticmethod
    def key(wallet: str, chain_id: int, token_address: str) -> tuple[str, int, str]:
        return wallet.lower(), chain_id, token_address.lower()

    def arm(self, wallet: str, chain_id: int, token_address: str):
        self._last[self.key(wallet, chain_id, token_address)] = self.clock()

    def remaining(self, wallet: str, chain_id: int, token_address: str) -> float:
        last = self._last.get(self.key(wallet, chain_id, token_address))
        if last is None:
            return 0.0
        return max(0.0, self.seconds - (self.clock() - last))

    def is_cooling(self, wallet: str, chain_id: int, token_address: str) -> bool:
        return self.remaining(wallet, chain_id, token_address) > 0


@dataclass
class TradingContext:
    clock: Clock
    breaker: CircuitBreaker
    cooldowns: CooldownTracker
    paused: bool = False
    pause_reason: str | None = None

    @classmethod
    def create(
        cls,
        clock: Clock = time.monotonic,
        max_failures: int | None = None,
        failure_reset_seconds: float | None = None,
        cooldown_seconds: float | None = None,
    ) -> "TradingContext":
        return cls(
            clock=clock,
            breaker=CircuitBreaker(
                threshold=max_failures if max_failures is not None else settings.max_failures_before_pause,
                reset_seconds=(
                    failure_reset_seconds if failure_reset_seconds is not None else settings.failure_reset_seconds
                ),
                clock=clock,
            ),
            cooldowns=CooldownTracker(
                seconds=cooldown_seconds if cooldown_seconds is not None else settings.trade_cooldown_seconds,
                clock=clock,
            ),
        )

    def pause(self, reason: str):
        self.paused = True
        self.pause_reason = reason
        logger.warning(f"[trading] New entries paused: {reason}")

    def resume(self):
        self.paused = False
        self.pause_reason = None
        logger.info("[trading] New entries resumed")
