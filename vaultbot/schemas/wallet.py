"""Pydantic schemas for TradingWallet API."""

import re
from datetime import datetime
from pydantic import BaseModel, Field, field_validator, model_validator

from vaultbot.utils.constants import MAX_LEVERAGE, VALID_STRATEGIES

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _check_address(value: str) -> str:
    text = value.strip()
    if not _ADDRESS_RE.match(text):
        raise ValueError("must be a 0x-prefixed 20-byte hex address")
    return text.lower()


def _check_strategy(value: str) -> str:
    if value not in VALID_STRATEGIES:
        allowed = ", ".join(VALID_STRATEGIES)
        raise ValueError(f"must be one of: {allowed}")
    return value


class TradingWalletCreate(BaseModel):
    wallet_address: str
    chain_id: int = Field(default=42161, gt=0)
    label: str = Field(default="", max_length=120)
    leverage: float = Field(default=1.0, ge=1, le=MAX_LEVERAGE)
    take_profit_percent: float = Field(default=5.0, gt=0, le=1000)
    trailing_stop_percent: float = Field(default=1.0, gt=0, le=50)
    profit_lock_percent: float = Field(default=0.5, gt=0, le=100)
    trailing_step_percent: float | None = Field(default=None, gt=0, le=50)
    use_signal_levels: bool = True
    strategy: str = "normal"
    is_enabled: bool = True

    @field_validator("wallet_address")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        return _check_address(value)

    @field_validator("strategy")
    @classmethod
    def _validate_strategy(cls, value: str) -> str:
        return _check_strategy(value)

    @model_validator(mode="after")
    def _validate_relationships(self):
        if self.profit_lock_percent >= self.take_profit_percent:
            raise ValueError("profit_lock_percent must be less than take_profit_percent")
        return self


class TradingWalletUpdate(BaseModel):
    label: str | None = Field(default=None, max_length=120)
    leverage: float | None = Field(default=None, ge=1, le=MAX_LEVERAGE)
    take_profit_percent: float | None = Field(default=None, gt=0, le=1000)
    trailing_stop_percent: float | None = Field(default=None, gt=0, le=50)
    profit_lock_percent: float | None = Field(default=None, gt=0, le=100)
    trailing_step_percent: float | None = Field(default=None, gt=0, le=50)
    use_signal_levels: bool | None = None
    strategy: str | None = None
    is_enabled: bool | None = None

    @field_validator("strategy")
    @classmethod
    def _validate_optional_strategy(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _check_strategy(value)


class TradingWalletRead(BaseModel):
    id: int
    wallet_address: str
    chain_id: int
    label: str
    leverage: float
    take_profit_percent: float
    trailing_stop_percent: float
    profit_lock_percent: float
    trailing_step_percent: float | None
    use_signal_levels: bool
    strategy: str
    is_enabled: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
