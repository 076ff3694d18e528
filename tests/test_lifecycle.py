"""Tests for the monitoring cycle and close execution."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import update

from vaultbot.engine.lifecycle import PositionLifecycle
from vaultbot.models.position import Position, PositionStatus
from vaultbot.services.vault_adapter import CloseResult, PositionSnapshot
from tests.conftest import WALLET, WETH, opened


def _lifecycle(ledger, prices, vault, close_timeout=5.0, **kwargs):
    return PositionLifecycle(ledger, prices, vault_for=lambda chain_id: vault, close_timeout=close_timeout, **kwargs)


def _open_on_vault(vault, entry_price, is_long=True, collateral=100.0):
    vault.place_external_position(WALLET, WETH, PositionSnapshot(
        is_active=True, is_long=is_long, collateral=collateral, entry_price=entry_price,
        token_amount=collateral / entry_price, leverage=1.0,
    ))


# ---------------------------------------------------------------------------
# 1. Trailing stop and take profit through the monitoring cycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_trailing_scenario_closes_at_stop_level(ledger, prices, vault):
    pos = ledger.record_open(opened(entry_price=100.0))
    # vault reports no fill price, so the stop level is booked
    mock_vault = MagicMock()
    mock_vault.close_position = AsyncMock(return_value=CloseResult(tx_hash="0xclose"))
    lifecycle = _lifecycle(ledger, prices, mock_vault)

    vault.set_price(WETH, 100.6)
    counters = await lifecycle.run_monitoring_cycle()
    assert counters["updated"] == 1
    assert ledger.get(pos.id).trailing_stop_price == pytest.approx(100.0)

    vault.set_price(WETH, 102.0)
    await lifecycle.run_monitoring_cycle()
    row = ledger.get(pos.id)
    assert row.trailing_stop_price == pytest.approx(100.98)
    assert row.highest_price == pytest.approx(102.0)

    vault.set_price(WETH, 100.9)
    counters = await lifecycle.run_monitoring_cycle()
    assert counters["closed"] == 1

    closed = ledger.get(pos.id)
    assert closed.status == PositionStatus.CLOSED.value
    assert closed.close_reason == "trailing_stop"
    assert closed.exit_price == pytest.approx(100.98)
    assert closed.profit_loss_percent == pytest.approx(0.98)
    mock_vault.close_position.assert_awaited_once_with(WALLET, WETH, True, "trailing_stop")


@pytest.mark.asyncio
async def test_take_profit_uses_vault_fill(ledger, prices, vault):
    pos = ledger.record_open(opened(entry_price=100.0))
    _open_on_vault(vault, 100.0)
    lifecycle = _lifecycle(ledger, prices, vault)

    vault.set_price(WETH, 106.0)
    counters = await lifecycle.run_monitoring_cycle()

    assert counters["closed"] == 1
    closed = ledger.get(pos.id)
    assert closed.close_reason == "take_profit"
    assert closed.exit_price == pytest.approx(106.0)
    assert closed.profit_loss == pytest.approx(6.0)
    assert closed.exit_amount == pytest.approx(106.0)
    assert vault.close_calls == [{"user": WALLET, "token": "WETH", "reason": "take_profit"}]


@pytest.mark.asyncio
async def test_unarmed_position_held_through_drawdown(ledger, prices, vault):
    pos = ledger.record_open(opened(entry_price=100.0))
    _open_on_vault(vault, 100.0)
    lifecycle = _lifecycle(ledger, prices, vault)

    for price in (99.0, 95.0, 90.0):
        vault.set_price(WETH, price)
        await lifecycle.run_monitoring_cycle()

    assert ledger.get(pos.id).status == PositionStatus.OPEN.value
    assert vault.close_calls == []


@pytest.mark.asyncio
async def test_missing_price_skips_position(ledger, prices, vault):
    ledger.record_open(opened(entry_price=100.0))
    prices.missing.add("WETH")
    counters = await _lifecycle(ledger, prices, vault).run_monitoring_cycle()
    assert counters == {"checked": 1, "updated": 0, "closed": 0, "close_failed": 0, "retried": 0,
                        "suppressed": 0, "no_price": 1, "errors": 0}


# ---------------------------------------------------------------------------
# 2. Failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_close_failure_leaves_row_closing(ledger, prices, vault, caplog):
    pos = ledger.record_open(opened(entry_price=100.0))
    _open_on_vault(vault, 100.0)
    vault.fail_close = "execution reverted"
    lifecycle = _lifecycle(ledger, prices, vault)

    vault.set_price(WETH, 106.0)
    with caplog.at_level(logging.ERROR):
        counters = await lifecycle.run_monitoring_cycle()

    assert counters["close_failed"] == 1
    assert ledger.get(pos.id).status == PositionStatus.CLOSING.value
    assert "execution reverted" in caplog.text
    assert "close_failed" in [e.event for e in ledger.list_events(pos.id)]


@pytest.mark.asyncio
async def test_failed_closes_trip_circuit_breaker(ledger, prices, vault, context):
    ledger.record_open(opened(entry_price=100.0))
    _open_on_vault(vault, 100.0)
    vault.fail_close = "execution reverted"
    lifecycle = _lifecycle(ledger, prices, vault, context=context, retry_after=0.0)

    vault.set_price(WETH, 106.0)
    await lifecycle.run_monitoring_cycle()
    assert context.breaker.failures == 1
    assert not context.breaker.is_open()

    counters = await lifecycle.run_monitoring_cycle()
    assert counters["retried"] == 1
    assert counters["close_failed"] == 1
    assert context.breaker.is_open()


@pytest.mark.asyncio
async def test_closing_row_retried_on_next_tick(ledger, prices, vault, context):
    pos = ledger.record_open(opened(entry_price=100.0))
    _open_on_vault(vault, 100.0)
    vault.fail_close = "execution reverted"
    lifecycle = _lifecycle(ledger, prices, vault, context=context, retry_after=0.0)

    vault.set_price(WETH, 106.0)
    await lifecycle.run_monitoring_cycle()
    assert ledger.get(pos.id).status == PositionStatus.CLOSING.value

    vault.fail_close = None
    counters = await lifecycle.run_monitoring_cycle()

    assert counters["retried"] == 1
    assert counters["closed"] == 1
    closed = ledger.get(pos.id)
    assert closed.status == PositionStatus.CLOSED.value
    assert closed.close_reason == "take_profit"
    assert closed.exit_price == pytest.approx(106.0)
    assert [c["reason"] for c in vault.close_calls] == ["take_profit", "take_profit"]


@pytest.mark.asyncio
async def test_close_retry_waits_for_backoff(ledger, prices, vault, context, clock):
    pos = ledger.record_open(opened(entry_price=100.0))
    _open_on_vault(vault, 100.0)
    vault.fail_close = "execution reverted"
    lifecycle = _lifecycle(ledger, prices, vault, context=context, retry_after=30.0)

    vault.set_price(WETH, 106.0)
    await lifecycle.run_monitoring_cycle()
    vault.fail_close = None

    clock.advance(10)
    counters = await lifecycle.run_monitoring_cycle()
    assert counters["retried"] == 0
    assert len(vault.close_calls) == 1

    clock.advance(25)
    counters = await lifecycle.run_monitoring_cycle()
    assert counters["retried"] == 1
    assert ledger.get(pos.id).status == PositionStatus.CLOSED.value


@pytest.mark.asyncio
async def test_closing_row_flat_on_chain_left_for_reconciliation(ledger, prices, vault):
    pos = ledger.record_open(opened(entry_price=100.0))
    _open_on_vault(vault, 100.0)
    assert await vault.get_onchain_balance(WALLET, WETH) == pytest.approx(1.0)
    vault.fail_close = "execution reverted"
    lifecycle = _lifecycle(ledger, prices, vault, retry_after=0.0)

    vault.set_price(WETH, 106.0)
    await lifecycle.run_monitoring_cycle()
    vault.drop_position(WALLET, WETH)
    vault.fail_close = None
    assert await vault.get_onchain_balance(WALLET, WETH) == 0.0

    counters = await lifecycle.run_monitoring_cycle()

    assert counters["retried"] == 0
    assert len(vault.close_calls) == 1
    assert ledger.get(pos.id).status == PositionStatus.CLOSING.value


@pytest.mark.asyncio
async def test_close_failure_with_fail_on_error_marks_failed(ledger, prices, vault):
    pos = ledger.record_open(opened(entry_price=100.0))
    vault.fail_close = "rpc down"
    lifecycle = _lifecycle(ledger, prices, vault)

    result = await lifecycle.execute_close(pos, "emergency_close", 100.0, fail_on_error=True)

    assert result is None
    row = ledger.get(pos.id)
    assert row.status == PositionStatus.FAILED.value
    assert row.reconciled_at is None


@pytest.mark.asyncio
async def test_close_timeout_counts_as_failure(ledger, prices):
    pos = ledger.record_open(opened(entry_price=100.0))

    async def slow_close(*args):
        await asyncio.sleep(1)

    mock_vault = MagicMock()
    mock_vault.close_position = slow_close
    lifecycle = _lifecycle(ledger, prices, mock_vault, close_timeout=0.01)

    assert await lifecycle.execute_close(pos, "manual", 100.0) is None
    assert ledger.get(pos.id).status == PositionStatus.CLOSING.value


@pytest.mark.asyncio
async def test_close_skipped_when_already_closing(ledger, prices, vault):
    pos = ledger.record_open(opened(entry_price=100.0))
    ledger.mark_closing(pos.id, "manual")
    result = await _lifecycle(ledger, prices, vault).execute_close(pos, "take_profit", 106.0)
    assert result is None
    assert vault.close_calls == []


@pytest.mark.asyncio
async def test_losing_stop_never_closes(ledger, prices, vault, engine):
    pos = ledger.record_open(opened(entry_price=100.0))
    _open_on_vault(vault, 100.0)
    # corrupt row: armed stop below entry
    with engine.begin() as conn:
        conn.execute(
            update(Position).where(Position.id == pos.id)
            .values(stop_activated=True, trailing_stop_price=99.0, highest_price=101.0)
        )
    lifecycle = _lifecycle(ledger, prices, vault)

    vault.set_price(WETH, 98.5)
    counters = await lifecycle.run_monitoring_cycle()

    assert counters["suppressed"] == 1
    assert vault.close_calls == []
    assert ledger.get(pos.id).status == PositionStatus.OPEN.value
    assert "close_suppressed" in [e.event for e in ledger.list_events(pos.id)]


@pytest.mark.asyncio
async def test_one_bad_position_does_not_stop_cycle(ledger, prices, vault):
    ledger.record_open(opened(entry_price=100.0))

    class BrokenPrices:
        async def get_price(self, chain_id, token):
            raise RuntimeError("boom")

    counters = await _lifecycle(ledger, BrokenPrices(), vault).run_monitoring_cycle()
    assert counters["errors"] == 1
