"""Tests for wallet settings validation."""

import pytest
from pydantic import ValidationError

from vaultbot.schemas.wallet import TradingWalletCreate, TradingWalletUpdate

ADDRESS = "0x" + "Ab" * 20


class TestCreateSchema:
    def test_defaults_and_lowercasing(self):
        schema = TradingWalletCreate(wallet_address=ADDRESS)
        assert schema.wallet_address == ADDRESS.lower()
        assert schema.strategy == "normal"
        assert schema.trailing_step_percent is None

    def test_invalid_address_rejected(self):
        with pytest.raises(ValidationError):
            TradingWalletCreate(wallet_address="0x1234")

    @pytest.mark.parametrize("leverage", [0.5, 21])
    def test_leverage_bounds(self, leverage):
        with pytest.raises(ValidationError):
            TradingWalletCreate(wallet_address=ADDRESS, leverage=leverage)

    def test_profit_lock_must_be_positive(self):
        with pytest.raises(ValidationError):
            TradingWalletCreate(wallet_address=ADDRESS, profit_lock_percent=0)

    def test_profit_lock_below_take_profit(self):
        with pytest.raises(ValidationError, match="profit_lock_percent"):
            TradingWalletCreate(wallet_address=ADDRESS, take_profit_percent=1.0, profit_lock_percent=2.0)

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValidationError, match="must be one of"):
            TradingWalletCreate(wallet_address=ADDRESS, strategy="yolo")


class TestUpdateSchema:
    def test_empty_update(self):
        assert TradingWalletUpdate().model_dump(exclude_unset=True) == {}

    def test_strategy_checked(self):
        assert TradingWalletUpdate(strategy="risky").strategy == "risky"
        with pytest.raises(ValidationError):
            TradingWalletUpdate(strategy="yolo")
