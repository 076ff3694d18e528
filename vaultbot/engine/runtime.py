"""Process runtime: wires the engines together and runs guarded job cycles.

Every scheduled job goes through `Runtime.run_job`, which drops a fire that
overlaps a still-running cycle of the same job, records a JobLog row and keeps
the last-cycle timestamps reported by the liveness probe.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable

from sqlalchemy.engine import Engine

from vaultbot.config import settings
from vaultbot.engine.events import log_job, notify
from vaultbot.engine.lifecycle import PositionLifecycle
from vaultbot.engine.orchestrator import TradingOrchestrator
from vaultbot.engine.reconciliation import Reconciler
from vaultbot.engine.risk_controls import TradingContext
from vaultbot.services.entitlement import EntitlementService
from vaultbot.services.ledger import PositionLedger
from vaultbot.services.market_data import PriceProvider
from vaultbot.services.signal_engine import SignalProvider
from vaultbot.services.vault_adapter import VaultAdapter, get_vault_adapter
from vaultbot.utils.constants import JOB_NAMES

logger = logging.getLogger(__name__)

_runtime: "Runtime | None" = None


class Runtime:
    def __init__(
        self,
        engine: Engine,
        context: TradingContext | None = None,
        signals: SignalProvider | None = None,
        prices: PriceProvider | None = None,
        vault_for: Callable[[int], VaultAdapter] = get_vault_adapter,
    ):
        self.engine = engine
        self.context = context or TradingContext.create()
        self.prices = prices or PriceProvider()
        self.vault_for = vault_for
        self.ledger = PositionLedger(engine)
        self.lifecycle = PositionLifecycle(self.ledger, self.prices, vault_for, context=self.context)
        self.orchestrator = TradingOrchestrator(
            engine, self.ledger, self.context, signals or SignalProvider(), self.prices,
            EntitlementService(engine), vault_for,
        )
        self.reconciler = Reconciler(engine, self.ledger, self.prices, vault_for)

        self.started_at = datetime.now(timezone.utc)
        self.last_cycles: dict[str, datetime] = {}
        self.loop: asyncio.AbstractEventLoop | None = None
        self._locks = {name: asyncio.Lock() for name in JOB_NAMES}
        self._jobs: dict[str, Callable[[], Awaitable[dict]]] = {
            "trading": self.orchestrator.run_cycle,
            "monitoring": self.lifecycle.run_monitoring_cycle,
            "reconciliation": self.reconciler.run,
            "fee_sweep": self.sweep_fees,
        }

    def is_running(self, job: str) -> bool:
        return self._locks[job].locked()

    async def run_job(self, job: str) -> dict | None:
        """Run one cycle of `job` unless one is already in flight."""
        if job not in self._jobs:
            raise ValueError(f"Unknown job '{job}'")
        if self.loop is None:
            self.loop = asyncio.get_running_loop()

        lock = self._locks[job]
        if lock.locked():
            logger.warning(f"[{job}] Skipping overlapping cycle")
            log_job(self.engine, job, "skipped", "Previous run still in progress")
            return None

        async with lock:
            started = time.monotonic()
            try:
                counters = await self._jobs[job]()
            except Exception as e:
                logger.error(f"[{job}] Cycle error: {e}", exc_info=True)
                notify(f"[{job}] ERROR: {e}")
                log_job(self.engine, job, "error", str(e))
                return None
            self.last_cycles[job] = datetime.now(timezone.utc)

        elapsed = time.monotonic() - started
        details = {**counters, "elapsed_ms": int(elapsed * 1000)}
        # Monitoring ticks every few seconds; only log the interesting ones
        if job != "monitoring" or any(counters.get(k) for k in ("updated", "closed", "close_failed", "retried", "suppressed", "errors")):
            log_job(self.engine, job, "success", details=details)
        return counters

    async def sweep_fees(self) -> dict:
        counters = {"chains": 0, "swept": 0.0, "errors": 0}
        for chain_id, chain in settings.chains.items():
            counters["chains"] += 1
            try:
                amount = await asyncio.wait_for(
                    self.vault_for(chain_id).sweep_fees(), timeout=settings.tx_timeout_seconds
                )
            except Exception as e:
                counters["errors"] += 1
                logger.warning(f"[fee_sweep] {chain.name}: {e or 'timeout'}")
                continue
            if amount > 0:
                counters["swept"] += amount
                logger.info(f"[fee_sweep] {chain.name}: swept {amount:.2f} USDC")
        return counters

    def health(self) -> dict:
        now = datetime.now(timezone.utc)
        return {
            "status": "ok",
            "uptime_seconds": int((now - self.started_at).total_seconds()),
            "paused": self.context.paused,
            "pause_reason": self.context.pause_reason,
            "last_cycles": {job: ts.isoformat() for job, ts in self.last_cycles.items()},
            "running": [job for job in self._jobs if self.is_running(job)],
            "circuit_breaker": self.context.breaker.snapshot(),
        }


def init_runtime(engine: Engine | None = None, **kwargs) -> Runtime:
    global _runtime
    if engine is None:
        from vaultbot.database import engine as default_engine
        engine = default_engine
    _runtime = Runtime(engine, **kwargs)
    return _runtime


def get_runtime() -> Runtime:
    """Return the process runtime, creating it on first use."""
    if _runtime is None:
        return init_runtime()
    return _runtime
