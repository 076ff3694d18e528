"""Directional entry signals.

Indicator math is pure computation on numpy arrays. `SignalProvider` fetches
Hyperliquid candles and turns the indicators into a `TradeSignal`.

An entry direction is scored on five conditions:

    rsi       oversold (< 30) for LONG, overbought (> 70) for SHORT
    volume    last candle volume at least 2x the recent average
    pattern   reversal candle (engulfing, hammer / shooting star)
    macd      histogram and line on the same side as the direction
    trend     EMA(20) above EMA(50) for LONG, below for SHORT
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import numpy as np
import pandas as pd

from vaultbot.config import TokenSettings
from vaultbot.exceptions import SignalUnavailable
from vaultbot.utils.constants import STRATEGY_THRESHOLDS

logger = logging.getLogger(__name__)

CANDLE_RESOLUTION = "5m"
CANDLES_NEEDED = 100
MIN_CANDLES = 60
VOLUME_SPIKE_RATIO = 2.0


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------

def compute_rsi(values: np.ndarray, period: int = 14) -> float:
    """Wilder RSI of the last value. Returns NaN if insufficient data."""
    n = len(values)
    if n < period + 2:
        return float("nan")

    deltas = np.diff(values)
    gains = np.maximum(deltas, 0.0)
    losses = np.maximum(-deltas, 0.0)

    avg_gain = float(np.mean(gains[:period]))
    avg_loss = float(np.mean(losses[:period]))

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def compute_ema(values: np.ndarray, period: int) -> np.ndarray:
    """EMA series seeded with the simple mean of the first `period` values."""
    values = np.asarray(values, dtype=float)
    if len(values) < period:
        return np.array([], dtype=float)
    k = 2.0 / (period + 1)
    out = np.empty(len(values) - period + 1)
    out[0] = values[:period].mean()
    for i, v in enumerate(values[period:], start=1):
        out[i] = (v - out[i - 1]) * k + out[i - 1]
    return out


def compute_macd(values: np.ndarray) -> tuple[float, float, float]:
    """Returns (macd, signal, histogram) for the last value."""
    fast = compute_ema(values, 12)
    slow = compute_ema(values, 26)
    if len(slow) == 0:
        return 0.0, 0.0, 0.0
    line = fast[-len(slow):] - slow
    signal_series = compute_ema(line, 9)
    signal = float(signal_series[-1]) if len(signal_series) else float(line[-1])
    macd = float(line[-1])
    return macd, signal, macd - signal


def volume_ratio(volumes: np.ndarray, lookback: int = 20) -> float:
    """Last volume relative to the mean of the preceding `lookback` candles."""
    if len(volumes) < lookback + 1:
        return 0.0
    avg = float(np.mean(volumes[-lookback - 1:-1]))
    if avg <= 0:
        return 0.0
    return float(volumes[-1]) / avg


def detect_reversal(candles: pd.DataFrame) -> tuple[bool, bool]:
    """(bullish, bearish) reversal on the last two candles."""
    if len(candles) < 2:
        return False, False
    prev, last = candles.iloc[-2], candles.iloc[-1]
    body = abs(last["close"] - last["open"])
    rng = last["high"] - last["low"]
    if rng <= 0:
        return False, False
    lower_wick = min(last["open"], last["close"]) - last["low"]
    upper_wick = last["high"] - max(last["open"], last["close"])

    bullish_engulfing = (
        prev["close"] < prev["open"] and last["close"] > last["open"]
        and last["close"] >= prev["open"] and last["open"] <= prev["close"]
    )
    bearish_engulfing = (
        prev["close"] > prev["open"] and last["close"] < last["open"]
        and last["close"] <= prev["open"] and last["open"] >= prev["close"]
    )
    hammer = lower_wick >= 2 * body and upper_wick <= body and body / rng < 0.4
    shooting_star = upper_wick >= 2 * body and lower_wick <= body and body / rng < 0.4
    return bool(bullish_engulfing or hammer), bool(bearish_engulfing or shooting_star)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class MarketAnalysis:
    direction: str | None  # "LONG", "SHORT" or None
    confidence: float
    conditions_met: int
    rsi: float
    volume_ratio: float
    macd_histogram: float
    trend: str  # "UP", "DOWN", "SIDEWAYS"
    conditions: dict[str, bool] = field(default_factory=dict)


@dataclass
class TradeSignal:
    direction: str  # "LONG" or "SHORT"
    confidence: float  # 0-100
    conditions_met: int
    suggested_amount: float  # USDC
    take_profit_percent: float
    trailing_stop_percent: float
    reason: str = ""


def meets_strategy(signal: TradeSignal, strategy: str) -> bool:
    thresholds = STRATEGY_THRESHOLDS.get(strategy, STRATEGY_THRESHOLDS["normal"])
    return (
        signal.confidence >= thresholds["min_confidence"]
        and signal.conditions_met >= thresholds["min_conditions"]
    )


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def analyze_candles(candles: pd.DataFrame) -> MarketAnalysis:
    """Score both directions on the latest candle and pick the stronger one."""
    closes = candles["close"].to_numpy(dtype=float)
    volumes = candles["volume"].fillna(0).to_numpy(dtype=float) if "volume" in candles else np.zeros(len(closes))

    rsi = compute_rsi(closes)
    macd, signal, hist = compute_macd(closes)
    vol = volume_ratio(volumes)
    bullish_pattern, bearish_pattern = detect_reversal(candles)

    ema_fast, ema_slow = compute_ema(closes, 20), compute_ema(closes, 50)
    if len(ema_slow) and ema_fast[-1] > ema_slow[-1] * 1.001:
        trend = "UP"
    elif len(ema_slow) and ema_fast[-1] < ema_slow[-1] * 0.999:
        trend = "DOWN"
    else:
        trend = "SIDEWAYS"

    long_conditions = {
        "rsi": not np.isnan(rsi) and rsi < 30,
        "volume": vol >= VOLUME_SPIKE_RATIO,
        "pattern": bullish_pattern,
        "macd": hist > 0 and macd > signal,
        "trend": trend == "UP",
    }
    short_conditions = {
        "rsi": not np.isnan(rsi) and rsi > 70,
        "volume": vol >= VOLUME_SPIKE_RATIO,
        "pattern": bearish_pattern,
        "macd": hist < 0 and macd < signal,
        "trend": trend == "DOWN",
    }
    long_met = sum(long_conditions.values())
    short_met = sum(short_conditions.values())

    # Volume alone says nothing about direction
    long_directional = long_met - int(long_conditions["volume"])
    short_directional = short_met - int(short_conditions["volume"])

    if long_directional > short_directional and long_directional > 0:
        direction, met, conditions = "LONG", long_met, long_conditions
    elif short_directional > long_directional and short_directional > 0:
        direction, met, conditions = "SHORT", short_met, short_conditions
    else:
        direction, met, conditions = None, 0, {}

    confidence = 0.0
    if direction is not None:
        confidence = min(100.0, 30.0 + 15.0 * met)
        against_trend = (direction == "LONG" and trend == "DOWN") or (direction == "SHORT" and trend == "UP")
        if against_trend:
            confidence = max(0.0, confidence - 15.0)

    return MarketAnalysis(
        direction=direction,
        confidence=confidence,
        conditions_met=met,
        rsi=float(rsi),
        volume_ratio=vol,
        macd_histogram=float(hist),
        trend=trend,
        conditions=conditions,
    )


def suggest_levels(analysis: MarketAnalysis, now: datetime | None = None) -> tuple[float, float]:
    """Take-profit and trailing-stop percentages for a fresh entry."""
    now = now or datetime.now(timezone.utc)
    weekday = now.weekday()  # Monday = 0

    take_profit, trailing = 7.5, 1.0
    if weekday == 0:
        take_profit, trailing = 5.0, 0.8
    elif weekday >= 5:
        take_profit, trailing = 5.0, 1.0

    aligned = (analysis.direction == "LONG" and analysis.trend == "UP") or (
        analysis.direction == "SHORT" and analysis.trend == "DOWN"
    )
    if aligned:
        take_profit = min(take_profit + 2, 10)
    if analysis.volume_ratio > VOLUME_SPIKE_RATIO:
        trailing = min(trailing + 0.5, 2.0)
        take_profit = min(take_profit + 1, 10)
    if analysis.confidence >= 85:
        take_profit = min(take_profit + 1, 10)
    elif analysis.confidence < 60:
        take_profit = max(take_profit - 1, 5)
    if analysis.conditions.get("rsi"):
        # reversals tend to run short
        take_profit = max(take_profit - 1, 5)

    return round(take_profit, 1), round(trailing, 1)


class SignalProvider:
    """Default signal feed backed by Hyperliquid candles."""

    def __init__(self, resolution: str = CANDLE_RESOLUTION, candles: int = CANDLES_NEEDED):
        self.resolution = resolution
        self.candles = candles

    async def get_signal(
        self,
        chain_id: int,
        token: TokenSettings,
        available_balance: float,
        risk_bps: int,
        strategy: str,
    ) -> TradeSignal | None:
        from vaultbot.services.market_data import fetch_candles

        try:
            df = await fetch_candles(token.ticker, self.resolution, self.candles)
        except Exception as e:
            raise SignalUnavailable(f"{token.symbol} candles: {e}") from e
        if df.empty or len(df) < MIN_CANDLES:
            logger.debug(f"[signal] {token.symbol}: not enough candles ({len(df)})")
            return None

        analysis = analyze_candles(df)
        if analysis.direction is None:
            logger.debug(f"[signal] {token.symbol}: no direction (rsi={analysis.rsi:.1f} vol={analysis.volume_ratio:.2f})")
            return None

        amount = available_balance * risk_bps / 10_000
        if amount <= 0:
            return None

        take_profit, trailing = suggest_levels(analysis)
        met = [name for name, ok in analysis.conditions.items() if ok]
        signal = TradeSignal(
            direction=analysis.direction,
            confidence=analysis.confidence,
            conditions_met=analysis.conditions_met,
            suggested_amount=amount,
            take_profit_percent=take_profit,
            trailing_stop_percent=trailing,
            reason=f"{'+'.join(met)} rsi={analysis.rsi:.0f} vol={analysis.volume_ratio:.1f}x",
        )
        logger.info(
            f"[signal] {token.symbol} {signal.direction} conf={signal.confidence:.0f} "
            f"conditions={signal.conditions_met} ({strategy})"
        )
        return signal
