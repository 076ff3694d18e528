"""In-memory vault simulation.

Keeps user balances and positions in process memory and fills at the current
market price. Used for paper trading and as the vault in tests, where prices
and failures are set directly.
"""

import logging
import uuid
from dataclasses import replace

from vaultbot.config import ChainSettings, TokenSettings, settings
from vaultbot.exceptions import VaultReadError, VaultWriteError
from vaultbot.services.vault_adapter import CloseResult, OpenResult, PositionSnapshot, VaultAdapter, VaultStatus

logger = logging.getLogger(__name__)


class PaperVaultAdapter(VaultAdapter):
    def __init__(
        self,
        chain_id: int,
        chain: ChainSettings,
        starting_balance: float | None = None,
        price_feed=None,
    ):
        super().__init__(chain_id, chain)
        self.starting_balance = settings.paper_starting_balance if starting_balance is None else starting_balance
        self._price_feed = price_feed  # async callable(TokenSettings) -> float | None
        self.balances: dict[str, float] = {}
        self.auto_trade: dict[str, bool] = {}
        self.positions: dict[tuple[str, str], PositionSnapshot] = {}
        self.prices: dict[str, float] = {}
        self.fees: float = 0.0

        # Failure injection
        self.fail_open: str | None = None
        self.fail_close: str | None = None
        self.fail_reads: str | None = None

        self.open_calls: list[dict] = []
        self.close_calls: list[dict] = []

    # ------------------------------------------------------------------
    # Simulation controls
    # ------------------------------------------------------------------

    def deposit(self, user: str, amount: float):
        user = user.lower()
        self.balances[user] = self._balance(user) + amount

    def set_price(self, token: TokenSettings | str, price: float):
        symbol = token.symbol if isinstance(token, TokenSettings) else token
        self.prices[symbol] = price

    def set_auto_trade(self, user: str, enabled: bool):
        self.auto_trade[user.lower()] = enabled

    def place_external_position(self, user: str, token: TokenSettings, snapshot: PositionSnapshot):
        """Put a position on the simulated chain without going through the bot."""
        self.positions[(user.lower(), token.address.lower())] = snapshot

    def drop_position(self, user: str, token: TokenSettings):
        """Remove a position as if it had been closed outside the bot."""
        self.positions.pop((user.lower(), token.address.lower()), None)

    def _balance(self, user: str) -> float:
        return self.balances.setdefault(user, self.starting_balance)

    async def _mark_price(self, token: TokenSettings) -> float | None:
        price = self.prices.get(token.symbol)
        if price is None and self._price_feed is not None:
            price = await self._price_feed(token)
        return price

    # ------------------------------------------------------------------
    # VaultAdapter
    # ------------------------------------------------------------------

    async def get_status(self, user: str) -> VaultStatus:
        if self.fail_reads:
            raise VaultReadError(self.fail_reads)
        user = user.lower()
        return VaultStatus(
            balance=self._balance(user),
            auto_trade_enabled=self.auto_trade.get(user, True),
            can_trade_now=True,
        )

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
        user = user.lower()
        self.open_calls.append({
            "user": user, "token": token.symbol, "collateral": collateral,
            "leverage": leverage, "is_long": is_long,
        })
        if self.fail_open:
            raise VaultWriteError(self.fail_open)

        key = (user, token.address.lower())
        existing = self.positions.get(key)
        if existing is not None and existing.is_active:
            raise VaultWriteError(f"Position already open for {token.symbol}")
        if collateral <= 0 or collateral > self._balance(user) + 1e-9:
            raise VaultWriteError(f"Insufficient balance for {collateral:.2f} USDC collateral")

        price = await self._mark_price(token)
        if price is None or price <= 0:
            raise VaultWriteError(f"No price for {token.symbol}")

        notional = collateral * leverage
        token_amount = notional / price
        borrowed = notional - collateral
        self.balances[user] = self._balance(user) - collateral
        self.positions[key] = PositionSnapshot(
            is_active=True,
            is_long=is_long,
            collateral=collateral,
            entry_price=price,
            token_amount=token_amount,
            leverage=leverage,
            borrowed_amount=borrowed,
        )
        tx_hash = f"paper-{uuid.uuid4().hex}"
        logger.info(
            f"[paper] Opened {'LONG' if is_long else 'SHORT'} {token.symbol} for {user[:10]}: "
            f"{collateral:.2f} USDC x{leverage:g} @ {price:.4f}"
        )
        return OpenResult(
            tx_hash=tx_hash,
            entry_price=price,
            token_amount=token_amount,
            borrowed_amount=borrowed,
            health_factor=None if borrowed == 0 else notional / borrowed,
        )

    async def close_position(self, user: str, token: TokenSettings, is_long: bool, reason: str) -> CloseResult:
        user = user.lower()
        self.close_calls.append({"user": user, "token": token.symbol, "reason": reason})
        if self.fail_close:
            raise VaultWriteError(self.fail_close)

        key = (user, token.address.lower())
        snapshot = self.positions.get(key)
        if snapshot is None or not snapshot.is_active:
            raise VaultWriteError(f"No open {token.symbol} position for {user[:10]}")

        price = await self._mark_price(token)
        if price is None or price <= 0:
            raise VaultWriteError(f"No price for {token.symbol}")

        change = (price - snapshot.entry_price) / snapshot.entry_price
        if not snapshot.is_long:
            change = -change
        realized = max(snapshot.collateral + snapshot.collateral * snapshot.leverage * change, 0.0)
        self.balances[user] = self._balance(user) + realized
        del self.positions[key]

        logger.info(f"[paper] Closed {token.symbol} for {user[:10]} ({reason}) @ {price:.4f}: {realized:.2f} USDC")
        return CloseResult(tx_hash=f"paper-{uuid.uuid4().hex}", realized_amount=realized, exit_price=price)

    async def get_onchain_balance(self, user: str, token: TokenSettings) -> float:
        if self.fail_reads:
            raise VaultReadError(self.fail_reads)
        snapshot = self.positions.get((user.lower(), token.address.lower()))
        if snapshot is None or not snapshot.is_active:
            return 0.0
        return snapshot.token_amount

    async def get_position(self, user: str, token: TokenSettings) -> PositionSnapshot | None:
        if self.fail_reads:
            raise VaultReadError(self.fail_reads)
        snapshot = self.positions.get((user.lower(), token.address.lower()))
        return replace(snapshot) if snapshot is not None else None

    async def get_price(self, token: TokenSettings) -> float | None:
        if self.fail_reads:
            raise VaultReadError(self.fail_reads)
        return await self._mark_price(token)

    async def sweep_fees(self) -> float:
        swept, self.fees = self.fees, 0.0
        return swept
