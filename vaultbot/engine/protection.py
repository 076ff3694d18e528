"""Protection state machine for open positions.

All functions are pure computation with no I/O and no database access. The
lifecycle engine feeds one price sample per position per tick through
`update_protection` and `evaluate_close` and persists whatever comes back.

A position's protection is a tagged variant:

    Unarmed                      trailing stop not armed yet; the position is
                                 held through adverse excursions
    Armed(stop_price, watermark) stop armed; watermark is the best price seen
                                 since arming (high for LONG, low for SHORT)

Once armed the stop only moves toward profit and never sits on the losing
side of the entry price.
"""

import logging
import math
from dataclasses import dataclass
from typing import Protocol, Union

logger = logging.getLogger(__name__)

TAKE_PROFIT = "take_profit"
TRAILING_STOP = "trailing_stop"


# ---------------------------------------------------------------------------
# Protection variant
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Unarmed:
    """No trailing stop yet."""


@dataclass(frozen=True)
class Armed:
    stop_price: float
    watermark: float


Protection = Union[Unarmed, Armed]


@dataclass(frozen=True)
class ProtectionState:
    """The slice of a position the state machine reads."""
    is_long: bool
    entry_price: float
    profit_lock_percent: float
    take_profit_price: float | None
    protection: Protection


@dataclass(frozen=True)
class CloseDecision:
    """Close signal for one position at one price sample."""
    reason: str  # TAKE_PROFIT or TRAILING_STOP
    reference_price: float  # expected fill: stop level for stops, sample for take profit
    suppressed: bool = False  # True when the no-loss re-check refused the close
    detail: str | None = None


# ---------------------------------------------------------------------------
# Arithmetic helpers
# ---------------------------------------------------------------------------

def profit_percent(is_long: bool, entry_price: float, price: float) -> float:
    """Direction-aware price change in percent. Positive means in profit."""
    if entry_price <= 0:
        return 0.0
    change = (price - entry_price) / entry_price * 100
    return change if is_long else -change


def clamp_to_entry(is_long: bool, entry_price: float, candidate: float) -> float:
    """Keep a stop candidate on the profitable side of entry (breakeven at worst)."""
    return max(entry_price, candidate) if is_long else min(entry_price, candidate)


def stop_is_protective(is_long: bool, entry_price: float, stop_price: float) -> bool:
    """True when filling at `stop_price` realizes a profit or breaks even."""
    return stop_price >= entry_price if is_long else stop_price <= entry_price


def take_profit_level(is_long: bool, entry_price: float, take_profit_percent: float) -> float | None:
    """Fixed take-profit price set at entry. None disables the target."""
    if take_profit_percent <= 0 or entry_price <= 0:
        return None
    factor = take_profit_percent / 100
    return entry_price * (1 + factor) if is_long else entry_price * (1 - factor)


def realized_pnl(
    is_long: bool,
    entry_price: float,
    exit_price: float,
    entry_amount: float,
    collateral_amount: float,
) -> tuple[float, float]:
    """Return (pnl, pnl_pct) for a close at `exit_price`.

    pnl is `entry_amount * price_change_pct / 100`; pnl_pct is relative to the
    collateral put up, so it already includes leverage.
    """
    change = profit_percent(is_long, entry_price, exit_price)
    pnl = entry_amount * change / 100
    pnl_pct = pnl / collateral_amount * 100 if collateral_amount > 0 else change
    return pnl, pnl_pct


# ---------------------------------------------------------------------------
# Step functions
# ---------------------------------------------------------------------------

class StepFunction(Protocol):
    def candidate_stop(self, is_long: bool, entry_price: float, price: float) -> float:
        """Unclamped stop level for the given price."""


@dataclass(frozen=True)
class ContinuousTrail:
    """Stop trails the best price by a fixed percentage."""
    trailing_percent: float

    def candidate_stop(self, is_long: bool, entry_price: float, price: float) -> float:
        factor = self.trailing_percent / 100
        return price * (1 - factor) if is_long else price * (1 + factor)


@dataclass(frozen=True)
class IncrementTrail:
    """Stop locks profit in whole steps of `step_percent`.

    At profit P the locked profit is floor((P - trailing_percent) / step) * step,
    never below zero, so the stop jumps between discrete levels above entry.
    """
    trailing_percent: float
    step_percent: float

    def candidate_stop(self, is_long: bool, entry_price: float, price: float) -> float:
        profit = profit_percent(is_long, entry_price, price)
        steps = math.floor((profit - self.trailing_percent) / self.step_percent + 1e-9)
        locked = max(steps * self.step_percent, 0.0)
        return entry_price * (1 + locked / 100) if is_long else entry_price * (1 - locked / 100)


def step_function_for(trailing_percent: float, step_percent: float | None) -> StepFunction:
    if step_percent is not None and step_percent > 0:
        return IncrementTrail(trailing_percent=trailing_percent, step_percent=step_percent)
    return ContinuousTrail(trailing_percent=trailing_percent)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

def update_protection(state: ProtectionState, price: float, step: StepFunction) -> Protection:
    """Advance a position's protection for one price sample.

    Returns the (possibly unchanged) protection variant. Never moves an armed
    stop away from profit and never lets the watermark regress.
    """
    current = state.protection
    if price <= 0 or state.entry_price <= 0:
        return current

    if isinstance(current, Unarmed):
        if profit_percent(state.is_long, state.entry_price, price) < state.profit_lock_percent:
            return current
        stop = clamp_to_entry(
            state.is_long, state.entry_price,
            step.candidate_stop(state.is_long, state.entry_price, price),
        )
        return Armed(stop_price=stop, watermark=price)

    new_extreme = price > current.watermark if state.is_long else price < current.watermark
    if not new_extreme:
        return current

    stop = clamp_to_entry(
        state.is_long, state.entry_price,
        step.candidate_stop(state.is_long, state.entry_price, price),
    )
    stop = max(current.stop_price, stop) if state.is_long else min(current.stop_price, stop)
    return Armed(stop_price=stop, watermark=price)


def evaluate_close(state: ProtectionState, price: float) -> CloseDecision | None:
    """Decide whether the position should close at this price sample."""
    if price <= 0:
        return None

    tp = state.take_profit_price
    if tp is not None and tp > 0:
        hit = price >= tp if state.is_long else price <= tp
        if hit:
            return CloseDecision(reason=TAKE_PROFIT, reference_price=price)

    current = state.protection
    if not isinstance(current, Armed):
        return None

    crossed = price <= current.stop_price if state.is_long else price >= current.stop_price
    if not crossed:
        return None

    if not stop_is_protective(state.is_long, state.entry_price, current.stop_price):
        detail = (
            f"stop {current.stop_price:.6f} would realize a loss against "
            f"entry {state.entry_price:.6f}"
        )
        logger.warning(f"Trailing stop close refused: {detail}")
        return CloseDecision(
            reason=TRAILING_STOP,
            reference_price=current.stop_price,
            suppressed=True,
            detail=detail,
        )

    return CloseDecision(reason=TRAILING_STOP, reference_price=current.stop_price)
