"""Vault adapter interface.

One capability interface over the vault contract generations. The engine only
talks to `VaultAdapter`; which concrete variant backs a chain is decided by
`ChainSettings.vault_version` ("paper", "v6" or "v8").

Every method is a single logical attempt. Reads raise VaultReadError, writes
raise VaultWriteError; nothing here retries.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from vaultbot.config import ChainSettings, TokenSettings, settings

logger = logging.getLogger(__name__)


@dataclass
class VaultStatus:
    balance: float  # free USDC held for the user
    auto_trade_enabled: bool
    can_trade_now: bool
    risk_level_bps: int = 500


@dataclass
class OpenResult:
    tx_hash: str
    entry_price: float | None = None
    token_amount: float = 0.0
    borrowed_amount: float = 0.0
    health_factor: float | None = None


@dataclass
class CloseResult:
    tx_hash: str
    realized_amount: float | None = None  # USDC returned to the user
    exit_price: float | None = None  # fill price, when the vault reports one


@dataclass
class PositionSnapshot:
    """On-chain view of one (user, token) position."""
    is_active: bool
    is_long: bool = True
    collateral: float = 0.0
    entry_price: float = 0.0
    token_amount: float = 0.0
    leverage: float = 1.0
    borrowed_amount: float = 0.0


class VaultAdapter(ABC):
    """Capability interface every vault generation implements."""

    def __init__(self, chain_id: int, chain: ChainSettings):
        self.chain_id = chain_id
        self.chain = chain

    @abstractmethod
    async def get_status(self, user: str) -> VaultStatus:
        ...

    @abstractmethod
    async def open_position(
        self,
        user: str,
        token: TokenSettings,
        collateral: float,
        leverage: float,
        is_long: bool,
        stop_percent: float,
        take_profit_percent: float,
    ) -> OpenResult:
        ...

    @abstractmethod
    async def close_position(self, user: str, token: TokenSettings, is_long: bool, reason: str) -> CloseResult:
        ...

    @abstractmethod
    async def get_onchain_balance(self, user: str, token: TokenSettings) -> float:
        """Size of the user's position in `token` as the contract sees it. 0 when flat."""

    @abstractmethod
    async def get_position(self, user: str, token: TokenSettings) -> PositionSnapshot | None:
        ...

    @abstractmethod
    async def get_price(self, token: TokenSettings) -> float | None:
        """Oracle price used by the contract itself."""

    @abstractmethod
    async def sweep_fees(self) -> float:
        """Withdraw accumulated platform fees. Returns the amount swept."""

    def token_by_address(self, address: str) -> TokenSettings | None:
        for token in self.chain.tokens:
            if token.address.lower() == address.lower():
                return token
        return None

    async def close(self):
        """Release any connections held by the adapter."""


_adapters: dict[int, VaultAdapter] = {}


def create_vault_adapter(chain_id: int, chain: ChainSettings) -> VaultAdapter:
    """Build the adapter variant configured for a chain."""
    version = chain.vault_version.lower()
    if version == "paper":
        from vaultbot.services.market_data import fetch_mid_price
        from vaultbot.services.paper_vault import PaperVaultAdapter
        return PaperVaultAdapter(chain_id, chain, price_feed=lambda token: fetch_mid_price(token.ticker))
    if version in ("v6", "v8"):
        from vaultbot.services.evm_vault import EvmVaultAdapter
        return EvmVaultAdapter(chain_id, chain, generation=version)
    raise ValueError(f"Unknown vault version '{chain.vault_version}' for chain {chain_id}")


def get_vault_adapter(chain_id: int) -> VaultAdapter:
    """Return the process-wide adapter for a configured chain."""
    adapter = _adapters.get(chain_id)
    if adapter is None:
        chain = settings.chains.get(chain_id)
        if chain is None:
            raise ValueError(f"Chain {chain_id} is not configured")
        adapter = create_vault_adapter(chain_id, chain)
        _adapters[chain_id] = adapter
        logger.info(f"Vault adapter for {chain.name} ({chain_id}): {chain.vault_version}")
    return adapter


async def close_adapters():
    """Close and forget every cached adapter. Called on shutdown."""
    while _adapters:
        chain_id, adapter = _adapters.popitem()
        try:
            await adapter.close()
        except Exception as e:
            logger.warning(f"Closing vault adapter for chain {chain_id} failed: {e}")
