"""Market data fetching.

Candles and mid prices come from Hyperliquid public endpoints. The vault's own
oracle can be used as the price source instead (`price_source = "vault"`).
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pandas as pd
from hyperliquid.info import Info

from vaultbot.config import TokenSettings, settings

logger = logging.getLogger(__name__)

# Info() hits the network in its constructor, so build it on first use
_hl_info: Info | None = None


def _get_info() -> Info:
    global _hl_info
    if _hl_info is None:
        _hl_info = Info(skip_ws=True)
    return _hl_info


def _to_hl_ticker(asset: str) -> str:
    """Hyperliquid uses 'kX' instead of '1000X' (e.g. kBONK, kPEPE)."""
    if asset.startswith("1000"):
        return "k" + asset[4:]
    return asset


async def fetch_candles(
    ticker: str,
    resolution: str,
    candles_needed: int,
) -> pd.DataFrame:
    """Fetch OHLCV candles from Hyperliquid.

    Args:
        ticker: Asset ticker (e.g. "ETH", "1000BONK").
        resolution: Candle interval (e.g. "5m", "1h").
        candles_needed: Number of candles to fetch.

    Returns:
        DataFrame with open/high/low/close/volume columns and a UTC datetime
        index. Empty on error.
    """
    hl_ticker = _to_hl_ticker(ticker)
    interval_seconds = _resolution_to_seconds(resolution)
    now = datetime.now(timezone.utc)
    buffer_candles = int(candles_needed * 1.2)  # 20% buffer
    start_time = now - timedelta(seconds=buffer_candles * interval_seconds)

    start_ms = int(start_time.timestamp() * 1000)
    end_ms = int(now.timestamp() * 1000)

    try:
        # candles_snapshot is synchronous, so run it in the executor to avoid blocking
        candles = await asyncio.get_running_loop().run_in_executor(
            None, _get_info().candles_snapshot, hl_ticker, resolution, start_ms, end_ms
        )
        return _parse_candles(candles)
    except Exception as e:
        logger.error(f"Error fetching candles for {ticker} ({hl_ticker}): {e}")
        return pd.DataFrame()


async def fetch_mid_price(ticker: str) -> float | None:
    """Current mid price for a ticker, or None when Hyperliquid has none."""
    hl_ticker = _to_hl_ticker(ticker)
    try:
        mids = await asyncio.get_running_loop().run_in_executor(None, _get_info().all_mids)
    except Exception as e:
        logger.error(f"Error fetching mid price for {ticker}: {e}")
        return None
    raw = mids.get(hl_ticker)
    if raw is None:
        return None
    try:
        price = float(raw)
    except (TypeError, ValueError):
        return None
    return price if price > 0 else None


class PriceProvider:
    """One authoritative price per token per check."""

    def __init__(self, source: str | None = None, timeout: float | None = None):
        self.source = source or settings.price_source
        self.timeout = timeout if timeout is not None else settings.price_timeout_seconds

    async def get_price(self, chain_id: int, token: TokenSettings) -> float | None:
        """Returns None when no valid (positive) price could be read in time."""
        try:
            if self.source == "vault":
                from vaultbot.services.vault_adapter import get_vault_adapter
                coro = get_vault_adapter(chain_id).get_price(token)
            else:
                coro = fetch_mid_price(token.ticker)
            price = await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Price read for {token.symbol} on chain {chain_id} timed out")
            return None
        except Exception as e:
            logger.warning(f"Price read for {token.symbol} on chain {chain_id} failed: {e}")
            return None
        if price is None or price <= 0:
            return None
        return float(price)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _resolution_to_seconds(resolution: str) -> int:
    mapping = {
        "1m": 60,
        "5m": 300,
        "15m": 900,
        "30m": 1800,
        "1h": 3600,
        "2h": 7200,
        "4h": 14400,
        "8h": 28800,
        "1d": 86400,
    }
    return mapping.get(resolution, 3600)


def _parse_candles(candles: list[dict]) -> pd.DataFrame:
    """Parse a Hyperliquid candles_snapshot response.

    Each candle dict: {"t": 1772092800000, "s": "ETH", "i": "1h",
                       "o": "3120.2", "c": "3131.5", "h": "3140.0", "l": "3110.4", "v": "812.3", ...}
    """
    try:
        if not candles:
            return pd.DataFrame()

        df = pd.DataFrame([
            {"t": c["t"], "open": c.get("o"), "high": c.get("h"), "low": c.get("l"),
             "close": c.get("c"), "volume": c.get("v")}
            for c in candles if c.get("c") is not None
        ])
        if df.empty:
            return df

        df["t"] = pd.to_datetime(df["t"], unit="ms", utc=True)
        for col in ("open", "high", "low", "close", "volume"):
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df = df.set_index("t").sort_index()
        return df.dropna(subset=["close"])
    except Exception as e:
        logger.error(f"Failed to parse candles: {e}")
        return pd.DataFrame()
