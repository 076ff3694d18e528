"""Tests for the protection state machine (pure computation)."""

import pytest

from vaultbot.engine.protection import (
    TAKE_PROFIT,
    TRAILING_STOP,
    Armed,
    ContinuousTrail,
    IncrementTrail,
    ProtectionState,
    Unarmed,
    evaluate_close,
    realized_pnl,
    step_function_for,
    take_profit_level,
    update_protection,
)


def _state(is_long=True, entry=100.0, lock=0.5, tp_percent=5.0, protection=None) -> ProtectionState:
    return ProtectionState(
        is_long=is_long,
        entry_price=entry,
        profit_lock_percent=lock,
        take_profit_price=take_profit_level(is_long, entry, tp_percent),
        protection=protection or Unarmed(),
    )


def _feed(state: ProtectionState, prices, step):
    """Run prices through the state machine, returning the final state and first close decision."""
    for price in prices:
        protection = update_protection(state, price, step)
        state = ProtectionState(
            state.is_long, state.entry_price, state.profit_lock_percent, state.take_profit_price, protection
        )
        decision = evaluate_close(state, price)
        if decision is not None:
            return state, decision
    return state, None


# ---------------------------------------------------------------------------
# 1. Long trailing scenario
# ---------------------------------------------------------------------------

class TestLongTrailing:
    step = ContinuousTrail(trailing_percent=1.0)

    def test_arms_at_breakeven_once_profit_lock_reached(self):
        protection = update_protection(_state(), 100.6, self.step)
        assert isinstance(protection, Armed)
        # 100.6 * 0.99 = 99.594 is below entry, clamped to breakeven
        assert protection.stop_price == pytest.approx(100.0)
        assert protection.watermark == pytest.approx(100.6)

    def test_stays_unarmed_below_profit_lock(self):
        assert update_protection(_state(), 100.4, self.step) == Unarmed()

    def test_stop_follows_new_high(self):
        state = _state(protection=Armed(stop_price=100.0, watermark=100.6))
        protection = update_protection(state, 102.0, self.step)
        assert protection.stop_price == pytest.approx(100.98)
        assert protection.watermark == pytest.approx(102.0)

    def test_full_scenario_closes_on_trailing_stop_with_profit(self):
        state, decision = _feed(_state(), [100.6, 102.0, 100.9], self.step)

        assert decision is not None
        assert decision.reason == TRAILING_STOP
        assert not decision.suppressed
        assert decision.reference_price == pytest.approx(100.98)

        pnl, pnl_pct = realized_pnl(True, 100.0, decision.reference_price, 100.0, 100.0)
        assert pnl == pytest.approx(0.98)
        assert pnl_pct == pytest.approx(0.98)

    def test_jump_to_take_profit(self):
        state, decision = _feed(_state(), [106.0], self.step)
        assert decision.reason == TAKE_PROFIT
        assert decision.reference_price == 106.0

    def test_take_profit_active_before_stop_arms(self):
        # TP at 105 is checked even though the stop never armed
        state = _state()
        decision = evaluate_close(state, 105.5)
        assert decision is not None
        assert decision.reason == TAKE_PROFIT

    def test_adverse_excursion_unarmed_holds(self):
        state, decision = _feed(_state(), [99.0, 95.0, 90.0], self.step)
        assert decision is None
        assert state.protection == Unarmed()


# ---------------------------------------------------------------------------
# 2. Monotonicity and no-loss
# ---------------------------------------------------------------------------

class TestInvariants:
    @pytest.mark.parametrize("is_long", [True, False])
    def test_stop_never_moves_against_profit(self, is_long):
        step = ContinuousTrail(trailing_percent=1.0)
        path = [100.8, 102.0, 101.5, 103.0, 102.2, 104.0] if is_long else [99.2, 98.0, 98.5, 97.0, 97.8, 96.0]
        state = _state(is_long=is_long, tp_percent=0)
        stops = []
        for price in path:
            protection = update_protection(state, price, step)
            state = ProtectionState(is_long, 100.0, 0.5, None, protection)
            if isinstance(protection, Armed):
                stops.append(protection.stop_price)
        assert stops == (sorted(stops) if is_long else sorted(stops, reverse=True))

    @pytest.mark.parametrize("is_long", [True, False])
    def test_armed_stop_never_on_losing_side(self, is_long):
        step = ContinuousTrail(trailing_percent=5.0)
        price = 100.6 if is_long else 99.4
        protection = update_protection(_state(is_long=is_long), price, step)
        assert isinstance(protection, Armed)
        assert protection.stop_price == pytest.approx(100.0)

    def test_lower_price_keeps_watermark(self):
        armed = Armed(stop_price=100.98, watermark=102.0)
        state = _state(protection=armed)
        assert update_protection(state, 101.5, ContinuousTrail(1.0)) is armed

    def test_non_positive_price_ignored(self):
        state = _state()
        assert update_protection(state, 0.0, ContinuousTrail(1.0)) == Unarmed()
        assert evaluate_close(state, -1.0) is None

    def test_losing_stop_close_is_suppressed(self):
        state = _state(protection=Armed(stop_price=99.0, watermark=101.0))
        decision = evaluate_close(state, 98.5)
        assert decision.suppressed
        assert decision.reason == TRAILING_STOP
        assert "would realize a loss" in decision.detail


# ---------------------------------------------------------------------------
# 3. Short side
# ---------------------------------------------------------------------------

class TestShort:
    step = ContinuousTrail(trailing_percent=1.0)

    def test_mirror_scenario(self):
        state, decision = _feed(_state(is_long=False), [99.4, 98.0, 99.1], self.step)
        assert decision.reason == TRAILING_STOP
        # 98.0 * 1.01 = 98.98
        assert decision.reference_price == pytest.approx(98.98)

        pnl, pnl_pct = realized_pnl(False, 100.0, decision.reference_price, 100.0, 100.0)
        assert pnl == pytest.approx(1.02)

    def test_take_profit_below_entry(self):
        assert take_profit_level(False, 100.0, 5.0) == pytest.approx(95.0)
        state, decision = _feed(_state(is_long=False), [94.0], self.step)
        assert decision.reason == TAKE_PROFIT


# ---------------------------------------------------------------------------
# 4. Increment trailing
# ---------------------------------------------------------------------------

class TestIncrementTrail:
    def test_locks_whole_steps(self):
        step = IncrementTrail(trailing_percent=1.0, step_percent=0.5)
        # profit 2.3% -> (2.3 - 1.0) / 0.5 = 2.6 -> 2 steps -> 1.0% locked
        assert step.candidate_stop(True, 100.0, 102.3) == pytest.approx(101.0)
        # short: profit 2.0% -> 2 steps -> 1.0% locked
        assert step.candidate_stop(False, 100.0, 98.0) == pytest.approx(99.0)

    def test_never_below_entry(self):
        step = IncrementTrail(trailing_percent=1.0, step_percent=0.5)
        assert step.candidate_stop(True, 100.0, 100.6) == pytest.approx(100.0)

    def test_step_function_selection(self):
        assert isinstance(step_function_for(1.0, None), ContinuousTrail)
        assert isinstance(step_function_for(1.0, 0), ContinuousTrail)
        assert isinstance(step_function_for(1.0, 0.25), IncrementTrail)


# ---------------------------------------------------------------------------
# 5. P/L arithmetic
# ---------------------------------------------------------------------------

def test_realized_pnl_includes_leverage_in_percent():
    # 100 collateral x5 = 500 notional, +2% move
    pnl, pnl_pct = realized_pnl(True, 100.0, 102.0, 500.0, 100.0)
    assert pnl == pytest.approx(10.0)
    assert pnl_pct == pytest.approx(10.0)


def test_take_profit_disabled_when_zero():
    assert take_profit_level(True, 100.0, 0) is None
