"""Shared constants and defaults."""

VALID_STRATEGIES = ["conservative", "normal", "risky"]

# Minimum signal quality per strategy before an entry is attempted
STRATEGY_THRESHOLDS: dict[str, dict[str, int]] = {
    "conservative": {"min_confidence": 80, "min_conditions": 4},
    "normal": {"min_confidence": 70, "min_conditions": 3},
    "risky": {"min_confidence": 40, "min_conditions": 2},
}

# Daily trade limits per plan tier (-1 = unlimited)
PLAN_DAILY_TRADES: dict[str, int] = {
    "free": 5,
    "starter": 25,
    "pro": 100,
    "elite": -1,
    "desktop": -1,
}

# Plan tiers restricted to the paper vault
PAPER_ONLY_TIERS = {"free"}

MAX_LEVERAGE = 20.0

JOB_NAMES = ["trading", "monitoring", "reconciliation", "fee_sweep"]
