"""Shared fixtures: in-memory ledger, paper vault, fake clock and price feed."""

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from vaultbot.config import ARBITRUM_TOKENS, ChainSettings
from vaultbot.database import create_db_and_tables
from vaultbot.engine.risk_controls import TradingContext
from vaultbot.models.trading_wallet import TradingWallet
from vaultbot.services.ledger import OpenedPosition, PositionLedger
from vaultbot.services.paper_vault import PaperVaultAdapter

CHAIN_ID = 42161
WALLET = "0x" + "ab" * 20
WETH, ARB = ARBITRUM_TOKENS[0], ARBITRUM_TOKENS[1]


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class VaultPrices:
    """Price provider reading the paper vault's marks; `missing` symbols return None."""

    def __init__(self, vault: PaperVaultAdapter):
        self.vault = vault
        self.missing: set[str] = set()

    async def get_price(self, chain_id, token):
        if token.symbol in self.missing:
            return None
        return self.vault.prices.get(token.symbol)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger(engine):
    return PositionLedger(engine)


@pytest.fixture
def chain():
    return ChainSettings(name="Arbitrum", vault_version="paper", max_positions=2, tokens=[WETH, ARB])


@pytest.fixture
def chains(chain):
    return {CHAIN_ID: chain}


@pytest.fixture
def vault(chain):
    vault = PaperVaultAdapter(CHAIN_ID, chain, starting_balance=1000.0)
    vault.set_price(WETH, 2000.0)
    vault.set_price(ARB, 1.0)
    return vault


@pytest.fixture
def prices(vault):
    return VaultPrices(vault)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def context(clock):
    return TradingContext.create(clock=clock, max_failures=2, failure_reset_seconds=300, cooldown_seconds=300)


@pytest.fixture
def wallet(engine):
    wallet = TradingWallet(wallet_address=WALLET, chain_id=CHAIN_ID, leverage=2.0)
    with Session(engine) as session:
        session.add(wallet)
        session.commit()
        session.refresh(wallet)
    return wallet


def opened(token=WETH, entry_price=2000.0, direction="LONG", tx_hash="0xopen1", **overrides) -> OpenedPosition:
    """An OpenedPosition for WALLET with sensible defaults."""
    values = dict(
        wallet_address=WALLET,
        chain_id=CHAIN_ID,
        token_address=token.address,
        token_symbol=token.symbol,
        direction=direction,
        entry_price=entry_price,
        collateral_amount=100.0,
        leverage=1.0,
        entry_tx_hash=tx_hash,
        take_profit_percent=5.0,
        trailing_stop_percent=1.0,
        profit_lock_percent=0.5,
    )
    values.update(overrides)
    return OpenedPosition(**values)
