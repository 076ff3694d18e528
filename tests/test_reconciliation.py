"""Tests for ledger / vault reconciliation."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from vaultbot.engine.orchestrator import TradingOrchestrator
from vaultbot.engine.reconciliation import Reconciler
from vaultbot.models.position import PositionStatus
from vaultbot.services.entitlement import EntitlementService
from vaultbot.services.signal_engine import TradeSignal
from vaultbot.services.vault_adapter import PositionSnapshot
from tests.conftest import ARB, CHAIN_ID, WALLET, WETH, opened


def _reconciler(engine, ledger, prices, vault, chains, **kwargs):
    return Reconciler(engine, ledger, prices, vault_for=lambda chain_id: vault, chains=chains, **kwargs)


def _live(entry_price=2000.0, collateral=100.0, is_long=True) -> PositionSnapshot:
    return PositionSnapshot(
        is_active=True, is_long=is_long, collateral=collateral, entry_price=entry_price,
        token_amount=collateral / entry_price if entry_price else 1.0, leverage=1.0,
    )


def _later(seconds: float):
    return lambda: datetime.now(timezone.utc) + timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# 1. Orphans
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_orphan_marked_failed_and_unblocks_orchestrator(
    engine, ledger, prices, vault, chains, context, wallet
):
    pos = ledger.record_open(opened())
    assert ledger.has_blocking_position(WALLET, CHAIN_ID, WETH.address)

    counters = await _reconciler(engine, ledger, prices, vault, chains).run(adopt=False)

    assert counters["orphaned"] == 1
    row = ledger.get(pos.id)
    assert row.status == PositionStatus.FAILED.value
    assert row.close_reason == "sync-failure"
    assert row.reconciled_at is not None
    assert not ledger.has_blocking_position(WALLET, CHAIN_ID, WETH.address)

    signals = AsyncMock()
    signals.get_signal.return_value = TradeSignal("LONG", 90.0, 4, 100.0, 5.0, 1.0)
    orchestrator = TradingOrchestrator(
        engine, ledger, context, signals, prices,
        EntitlementService(engine, require_subscription=False),
        vault_for=lambda chain_id: vault, chains=chains,
    )
    counters = await orchestrator.run_cycle()
    assert counters["opened"] == 1
    assert vault.open_calls[0]["token"] == "WETH"


@pytest.mark.asyncio
async def test_orphan_closed_at_estimate_when_enabled(engine, ledger, prices, vault, chains):
    pos = ledger.record_open(opened(entry_price=2000.0))
    vault.set_price(WETH, 2100.0)

    counters = await _reconciler(engine, ledger, prices, vault, chains, estimate_exit=True).run(adopt=False)

    assert counters["closed_estimated"] == 1
    row = ledger.get(pos.id)
    assert row.status == PositionStatus.CLOSED.value
    assert row.close_reason == "sync-failure"
    assert row.exit_price == pytest.approx(2100.0)
    assert row.profit_loss == pytest.approx(5.0)
    assert row.reconciled_at is not None


@pytest.mark.asyncio
async def test_in_sync_position_untouched(engine, ledger, prices, vault, chains):
    pos = ledger.record_open(opened())
    vault.place_external_position(WALLET, WETH, _live())

    counters = await _reconciler(engine, ledger, prices, vault, chains).run(adopt=False)

    assert counters["in_sync"] == 1
    assert ledger.get(pos.id).status == PositionStatus.OPEN.value


@pytest.mark.asyncio
async def test_read_failure_skips_until_next_run(engine, ledger, prices, vault, chains):
    pos = ledger.record_open(opened())
    vault.fail_reads = "rpc timeout"

    counters = await _reconciler(engine, ledger, prices, vault, chains).run(adopt=False)

    assert counters["skipped"] == 1
    assert ledger.get(pos.id).status == PositionStatus.OPEN.value


# ---------------------------------------------------------------------------
# 2. Closing rows
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_closing_within_grace_left_alone(engine, ledger, prices, vault, chains):
    pos = ledger.record_open(opened())
    ledger.mark_closing(pos.id, "take_profit")

    await _reconciler(engine, ledger, prices, vault, chains, closing_grace_seconds=600).run(adopt=False)
    assert ledger.get(pos.id).status == PositionStatus.CLOSING.value


@pytest.mark.asyncio
async def test_stale_closing_still_on_chain_reopened(engine, ledger, prices, vault, chains):
    pos = ledger.record_open(opened())
    ledger.mark_closing(pos.id, "take_profit")
    vault.place_external_position(WALLET, WETH, _live())

    counters = await _reconciler(
        engine, ledger, prices, vault, chains, closing_grace_seconds=600, now=_later(700)
    ).run(adopt=False)

    assert counters["reopened"] == 1
    assert ledger.get(pos.id).status == PositionStatus.OPEN.value


@pytest.mark.asyncio
async def test_stale_closing_gone_on_chain_is_orphan(engine, ledger, prices, vault, chains):
    pos = ledger.record_open(opened())
    ledger.mark_closing(pos.id, "take_profit")

    counters = await _reconciler(
        engine, ledger, prices, vault, chains, closing_grace_seconds=600, now=_later(700)
    ).run(adopt=False)

    assert counters["orphaned"] == 1
    assert ledger.get(pos.id).status == PositionStatus.FAILED.value


# ---------------------------------------------------------------------------
# 3. Failed rows and repairs
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_failed_row_cleared_once_chain_flat(engine, ledger, prices, vault, chains):
    pos = ledger.record_open(opened())
    ledger.mark_closing(pos.id, "emergency_close")
    ledger.mark_failed(pos.id, "emergency_close", expected=(PositionStatus.CLOSING.value,))
    vault.place_external_position(WALLET, WETH, _live())

    reconciler = _reconciler(engine, ledger, prices, vault, chains)
    await reconciler.run(adopt=False)
    assert ledger.has_blocking_position(WALLET, CHAIN_ID, WETH.address)

    vault.drop_position(WALLET, WETH)
    counters = await reconciler.run(adopt=False)
    assert counters["cleared"] == 1
    assert not ledger.has_blocking_position(WALLET, CHAIN_ID, WETH.address)


@pytest.mark.asyncio
async def test_zero_entry_price_repaired_from_chain(engine, ledger, prices, vault, chains):
    pos = ledger.record_open(opened(entry_price=0.0))
    vault.place_external_position(WALLET, WETH, _live(entry_price=1950.0))

    counters = await _reconciler(engine, ledger, prices, vault, chains).run(adopt=False)

    assert counters["repaired"] == 1
    row = ledger.get(pos.id)
    assert row.entry_price == pytest.approx(1950.0)
    assert row.take_profit_price == pytest.approx(1950.0 * 1.05)


# ---------------------------------------------------------------------------
# 4. Adoption
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_untracked_position_adopted_once(engine, ledger, prices, vault, chains, wallet):
    vault.place_external_position(WALLET, ARB, _live(entry_price=1.25, collateral=40.0, is_long=False))
    reconciler = _reconciler(engine, ledger, prices, vault, chains)

    counters = await reconciler.run()
    assert counters["adopted"] == 1

    rows = ledger.list_by_status(PositionStatus.OPEN.value)
    assert len(rows) == 1
    pos = rows[0]
    assert pos.token_symbol == "ARB"
    assert pos.direction == "SHORT"
    assert pos.entry_price == pytest.approx(1.25)
    assert pos.entry_tx_hash.startswith(f"adopted:{CHAIN_ID}:{WALLET}:")
    assert [e.event for e in ledger.list_events(pos.id)] == ["adopted"]

    counters = await reconciler.run()
    assert counters["adopted"] == 0
    assert counters["in_sync"] == 1
    assert len(ledger.list_by_status(PositionStatus.OPEN.value)) == 1


@pytest.mark.asyncio
async def test_disabled_wallet_not_adopted(engine, ledger, prices, vault, chains):
    # no TradingWallet row for WALLET
    vault.place_external_position(WALLET, ARB, _live(entry_price=1.25))
    counters = await _reconciler(engine, ledger, prices, vault, chains).run()
    assert counters["adopted"] == 0
