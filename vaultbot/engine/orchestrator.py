"""Trading cycle orchestrator.

Runs once per trading interval. A pause or an open circuit breaker skips
the whole cycle before any vault is read. Otherwise wallets are processed
strictly one after the other so two opens never race for the same vault
balance. Per wallet:

1. entitlement check
2. vault status (auto-trade flag, rate limit, balance)
3. capacity, then per token: overlap guard (ledger and on-chain)
4. per-token cooldown
5. signal (bounded by a timeout) and strategy thresholds
6. collateral from the free balance split across the remaining slots
7. open; at most one new position per wallet per cycle
"""

import asyncio
import logging
from typing import Callable

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from vaultbot.config import ChainSettings, TokenSettings, settings
from vaultbot.engine.events import notify
from vaultbot.engine.risk_controls import TradingContext
from vaultbot.exceptions import LedgerWriteError, SignalUnavailable, VaultError
from vaultbot.models.position import Direction
from vaultbot.models.trading_wallet import TradingWallet
from vaultbot.services.entitlement import EntitlementService
from vaultbot.services.ledger import OpenedPosition, PositionLedger
from vaultbot.services.market_data import PriceProvider
from vaultbot.services.signal_engine import SignalProvider, TradeSignal, meets_strategy
from vaultbot.services.vault_adapter import VaultAdapter, get_vault_adapter

logger = logging.getLogger(__name__)


class TradingOrchestrator:
    def __init__(
        self,
        engine: Engine,
        ledger: PositionLedger,
        context: TradingContext,
        signals: SignalProvider,
        prices: PriceProvider,
        entitlement: EntitlementService,
        vault_for: Callable[[int], VaultAdapter] = get_vault_adapter,
        chains: dict[int, ChainSettings] | None = None,
    ):
        self.engine = engine
        self.ledger = ledger
        self.context = context
        self.signals = signals
        self.prices = prices
        self.entitlement = entitlement
        self.vault_for = vault_for
        self.chains = chains if chains is not None else settings.chains

    def eligible_wallets(self) -> list[TradingWallet]:
        with Session(self.engine) as session:
            wallets = session.exec(
                select(TradingWallet).where(TradingWallet.is_enabled == True).order_by(TradingWallet.id)
            ).all()
        return [w for w in wallets if w.chain_id in self.chains]

    async def run_cycle(self) -> dict[str, int]:
        counters = {"wallets": 0, "opened": 0, "open_failed": 0, "errors": 0}
        if self.context.paused:
            logger.info(f"[trading] Paused ({self.context.pause_reason}), no new entries")
            counters["paused"] = 1
            return counters
        if self.context.breaker.is_open():
            logger.info(
                f"[trading] Circuit breaker open, {self.context.breaker.seconds_until_reset():.0f}s until reset"
            )
            counters["breaker_open"] = 1
            return counters

        for wallet in self.eligible_wallets():
            counters["wallets"] += 1
            try:
                outcome = await self.process_wallet(wallet)
            except Exception as e:
                counters["errors"] += 1
                logger.error(f"[trading] {wallet.wallet_address[:10]} error: {e}", exc_info=True)
                continue
            if outcome in ("opened", "open_failed"):
                counters[outcome] += 1
            else:
                counters[outcome] = counters.get(outcome, 0) + 1
        return counters

    async def process_wallet(self, wallet: TradingWallet) -> str:
        """Run the entry pipeline for one wallet. Returns a short outcome tag."""
        address = wallet.wallet_address.lower()
        tag = address[:10]
        chain = self.chains[wallet.chain_id]
        vault = self.vault_for(wallet.chain_id)

        permission = self.entitlement.can_trade(address, paper=chain.vault_version == "paper")
        if not permission.allowed:
            logger.debug(f"[trading] {tag} not entitled: {permission.reason}")
            return "not_entitled"

        try:
            status = await asyncio.wait_for(vault.get_status(address), timeout=settings.rpc_timeout_seconds)
        except (VaultError, asyncio.TimeoutError) as e:
            logger.warning(f"[trading] {tag} vault status unavailable: {e or 'timeout'}")
            return "status_unavailable"
        if not status.auto_trade_enabled:
            return "auto_trade_disabled"
        if not status.can_trade_now:
            return "rate_limited"
        if status.balance <= 0:
            return "no_balance"

        active = self.ledger.count_active(address, wallet.chain_id)
        free_slots = chain.max_positions - active
        if free_slots <= 0:
            logger.debug(f"[trading] {tag} at capacity ({active}/{chain.max_positions})")
            return "at_capacity"
        allocatable = status.balance / free_slots

        for token in chain.tokens:
            if not await self._token_available(address, wallet.chain_id, token, vault):
                continue

            signal = await self._fetch_signal(wallet, token, allocatable, status.risk_level_bps)
            if signal is None:
                continue
            if not meets_strategy(signal, wallet.strategy):
                logger.debug(
                    f"[trading] {tag} {token.symbol} signal below {wallet.strategy} thresholds "
                    f"(conf={signal.confidence:.0f}, conditions={signal.conditions_met})"
                )
                continue

            collateral = min(signal.suggested_amount, allocatable) if signal.suggested_amount > 0 else allocatable
            if collateral < settings.min_collateral:
                logger.debug(f"[trading] {tag} {token.symbol} collateral {collateral:.2f} below minimum")
                continue

            return await self._open(wallet, token, signal, collateral, vault)

        return "no_entry"

    async def _token_available(self, address: str, chain_id: int, token: TokenSettings, vault: VaultAdapter) -> bool:
        tag = address[:10]
        if self.ledger.has_blocking_position(address, chain_id, token.address):
            logger.debug(f"[trading] {tag} {token.symbol} has an active ledger position")
            return False

        try:
            onchain = await asyncio.wait_for(vault.get_position(address, token), timeout=settings.rpc_timeout_seconds)
        except (VaultError, asyncio.TimeoutError) as e:
            logger.warning(f"[trading] {tag} {token.symbol} on-chain check failed, skipping: {e or 'timeout'}")
            return False
        if onchain is not None and onchain.is_active:
            logger.debug(f"[trading] {tag} {token.symbol} already has an on-chain position")
            return False

        remaining = self.context.cooldowns.remaining(address, chain_id, token.address)
        if remaining > 0:
            logger.debug(f"[trading] {tag} {token.symbol} cooling down ({remaining:.0f}s)")
            return False
        return True

    async def _fetch_signal(
        self, wallet: TradingWallet, token: TokenSettings, allocatable: float, risk_bps: int
    ) -> TradeSignal | None:
        try:
            return await asyncio.wait_for(
                self.signals.get_signal(wallet.chain_id, token, allocatable, risk_bps, wallet.strategy),
                timeout=settings.signal_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.debug(f"[trading] Signal for {token.symbol} timed out")
        except SignalUnavailable as e:
            logger.debug(f"[trading] Signal for {token.symbol} unavailable: {e}")
        except Exception as e:
            logger.debug(f"[trading] Signal for {token.symbol} failed: {e}")
        return None

    async def _open(
        self,
        wallet: TradingWallet,
        token: TokenSettings,
        signal: TradeSignal,
        collateral: float,
        vault: VaultAdapter,
    ) -> str:
        address = wallet.wallet_address.lower()
        tag = address[:10]
        take_profit = wallet.take_profit_percent
        trailing = wallet.trailing_stop_percent
        if wallet.use_signal_levels:
            take_profit = signal.take_profit_percent or take_profit
            trailing = signal.trailing_stop_percent or trailing
        is_long = signal.direction == Direction.LONG.value

        logger.info(
            f"[trading] {tag} opening {signal.direction} {token.symbol}: {collateral:.2f} USDC "
            f"x{wallet.leverage:g} conf={signal.confidence:.0f} ({signal.reason})"
        )
        try:
            result = await asyncio.wait_for(
                vault.open_position(address, token, collateral, wallet.leverage, is_long, trailing, take_profit),
                timeout=settings.tx_timeout_seconds,
            )
        except (VaultError, asyncio.TimeoutError) as e:
            detail = str(e) or type(e).__name__
            self.context.breaker.record_failure(f"{tag} {token.symbol}: {detail}")
            logger.warning(f"[trading] {tag} open {token.symbol} failed: {detail}")
            notify(f"[{token.symbol}] Open FAILED for {tag}: {detail}")
            return "open_failed"

        self.context.cooldowns.arm(address, wallet.chain_id, token.address)

        entry_price = result.entry_price
        if entry_price is None or entry_price <= 0:
            entry_price = await self.prices.get_price(wallet.chain_id, token) or 0.0

        try:
            position = self.ledger.record_open(OpenedPosition(
                wallet_address=address,
                chain_id=wallet.chain_id,
                token_address=token.address,
                token_symbol=token.symbol,
                direction=signal.direction,
                entry_price=entry_price,
                collateral_amount=collateral,
                leverage=wallet.leverage,
                entry_tx_hash=result.tx_hash,
                token_amount=result.token_amount,
                take_profit_percent=take_profit,
                trailing_stop_percent=trailing,
                profit_lock_percent=wallet.profit_lock_percent,
                trailing_step_percent=wallet.trailing_step_percent,
                borrowed_amount=result.borrowed_amount,
                health_factor=result.health_factor,
            ), message=signal.reason)
        except LedgerWriteError as e:
            # The on-chain position exists; reconciliation adopts it
            logger.critical(f"[trading] {tag} opened {token.symbol} ({result.tx_hash}) but ledger write failed: {e}")
            notify(f"[{token.symbol}] Opened for {tag} but NOT recorded: {e}")
            return "opened"

        self.entitlement.record_trade(address)
        notify(
            f"[{token.symbol}] {signal.direction} x{wallet.leverage:g} opened for {tag} | "
            f"{collateral:.2f} USDC @ {entry_price:.4f} | TP {take_profit}% trail {trailing}%"
        )
        logger.info(f"[trading] {tag} position {position.id} open")
        return "opened"
