"""Tests for indicator math and signal scoring."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import numpy as np
import pandas as pd
import pytest

from vaultbot.exceptions import SignalUnavailable
from vaultbot.services.signal_engine import (
    MarketAnalysis,
    SignalProvider,
    TradeSignal,
    analyze_candles,
    compute_ema,
    compute_rsi,
    meets_strategy,
    suggest_levels,
    volume_ratio,
)
from tests.conftest import CHAIN_ID, WETH


def _candles(closes, volumes=None) -> pd.DataFrame:
    closes = np.asarray(closes, dtype=float)
    opens = np.concatenate([[closes[0]], closes[:-1]])
    return pd.DataFrame({
        "open": opens,
        "high": np.maximum(opens, closes) * 1.001,
        "low": np.minimum(opens, closes) * 0.999,
        "close": closes,
        "volume": volumes if volumes is not None else np.full(len(closes), 100.0),
    })


# ---------------------------------------------------------------------------
# 1. Indicators
# ---------------------------------------------------------------------------

def test_rsi_extremes():
    assert compute_rsi(np.arange(1, 40, dtype=float)) == 100.0
    assert compute_rsi(np.arange(40, 1, -1, dtype=float)) == pytest.approx(0.0)
    assert np.isnan(compute_rsi(np.arange(5, dtype=float)))


def test_ema_seeded_with_mean():
    ema = compute_ema(np.array([1.0, 2.0, 3.0, 4.0]), 3)
    assert ema[0] == pytest.approx(2.0)
    assert ema[1] == pytest.approx(3.0)
    assert len(compute_ema(np.array([1.0]), 3)) == 0


def test_volume_ratio():
    volumes = np.array([100.0] * 20 + [300.0])
    assert volume_ratio(volumes) == pytest.approx(3.0)
    assert volume_ratio(np.array([1.0, 2.0])) == 0.0


# ---------------------------------------------------------------------------
# 2. Scoring
# ---------------------------------------------------------------------------

def test_accelerating_decline_scores_short():
    closes = 200 - 0.005 * np.arange(100, dtype=float) ** 2
    analysis = analyze_candles(_candles(closes))
    assert analysis.direction == "SHORT"
    assert analysis.trend == "DOWN"
    assert analysis.conditions["trend"]
    assert analysis.confidence == pytest.approx(min(100.0, 30.0 + 15.0 * analysis.conditions_met))


@pytest.mark.parametrize("strategy,confidence,conditions,expected", [
    ("conservative", 80, 4, True),
    ("conservative", 79, 4, False),
    ("normal", 70, 3, True),
    ("normal", 70, 2, False),
    ("risky", 40, 2, True),
    ("unknown", 70, 3, True),
])
def test_strategy_thresholds(strategy, confidence, conditions, expected):
    signal = TradeSignal("LONG", confidence, conditions, 10.0, 5.0, 1.0)
    assert meets_strategy(signal, strategy) is expected


def test_suggested_levels():
    analysis = MarketAnalysis(
        direction="LONG", confidence=75, conditions_met=3, rsi=45, volume_ratio=1.0,
        macd_histogram=0.1, trend="UP", conditions={"rsi": False},
    )
    # Wednesday: base 7.5 / 1.0, trend aligned +2
    assert suggest_levels(analysis, datetime(2026, 3, 4, tzinfo=timezone.utc)) == (9.5, 1.0)
    # Monday: base 5.0 / 0.8
    assert suggest_levels(analysis, datetime(2026, 3, 2, tzinfo=timezone.utc)) == (7.0, 0.8)


# ---------------------------------------------------------------------------
# 3. Provider
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_provider_sizes_from_risk_level():
    df = _candles(200 - 0.005 * np.arange(100, dtype=float) ** 2)
    with patch("vaultbot.services.market_data.fetch_candles", AsyncMock(return_value=df)) as fetch:
        signal = await SignalProvider().get_signal(CHAIN_ID, WETH, 1000.0, 500, "normal")

    fetch.assert_awaited_once_with("ETH", "5m", 100)
    assert signal.direction == "SHORT"
    assert signal.suggested_amount == pytest.approx(50.0)


@pytest.mark.asyncio
async def test_provider_needs_enough_candles():
    df = _candles(np.linspace(200, 150, 30))
    with patch("vaultbot.services.market_data.fetch_candles", AsyncMock(return_value=df)):
        assert await SignalProvider().get_signal(CHAIN_ID, WETH, 1000.0, 500, "normal") is None


@pytest.mark.asyncio
async def test_provider_raises_when_candle_feed_fails():
    with patch("vaultbot.services.market_data.fetch_candles", AsyncMock(side_effect=ConnectionError("info api down"))):
        with pytest.raises(SignalUnavailable, match="info api down"):
            await SignalProvider().get_signal(CHAIN_ID, WETH, 1000.0, 500, "normal")
