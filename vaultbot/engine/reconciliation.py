"""Reconciliation: repair drift between the ledger and the vault.

The vault is ground truth. On every run:

1. Open rows whose on-chain position is gone are orphans: they become
   `failed` with reason `sync-failure` (or `closed` at a market estimate when
   `reconcile_estimate_exit` is on) and are marked reconciled, which frees
   the token for new entries.
2. Open rows with a missing entry price are repaired from the on-chain
   snapshot or the market.
3. Closing rows older than `closing_grace_seconds` are resolved: back to
   `open` if the position still exists, orphan handling otherwise.
4. Failed rows not yet reconciled are cleared once the chain shows no
   position for them.
5. On-chain positions of enabled wallets that the ledger does not know about
   are adopted.

A read error or timeout skips the row until the next run. Every write is
conditioned on the status observed here, so a position the lifecycle engine
moved in the meantime is left alone.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from vaultbot.config import ChainSettings, TokenSettings, settings
from vaultbot.engine.events import notify
from vaultbot.engine.lifecycle import token_for
from vaultbot.exceptions import LedgerWriteError, VaultError
from vaultbot.models.position import CloseReason, Direction, Position, PositionStatus
from vaultbot.models.trading_wallet import TradingWallet
from vaultbot.services.ledger import OpenedPosition, PositionLedger
from vaultbot.services.market_data import PriceProvider
from vaultbot.services.vault_adapter import PositionSnapshot, VaultAdapter, get_vault_adapter

logger = logging.getLogger(__name__)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _is_live(snapshot: PositionSnapshot | None) -> bool:
    return (
        snapshot is not None
        and snapshot.is_active
        and (snapshot.token_amount > 0 or snapshot.collateral > 0)
    )


class Reconciler:
    def __init__(
        self,
        engine: Engine,
        ledger: PositionLedger,
        prices: PriceProvider,
        vault_for: Callable[[int], VaultAdapter] = get_vault_adapter,
        chains: dict[int, ChainSettings] | None = None,
        estimate_exit: bool | None = None,
        closing_grace_seconds: float | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.engine = engine
        self.ledger = ledger
        self.prices = prices
        self.vault_for = vault_for
        self.chains = chains if chains is not None else settings.chains
        self.estimate_exit = settings.reconcile_estimate_exit if estimate_exit is None else estimate_exit
        self.closing_grace_seconds = (
            settings.closing_grace_seconds if closing_grace_seconds is None else closing_grace_seconds
        )
        self.now = now or (lambda: datetime.now(timezone.utc))

    async def run(self, adopt: bool = True) -> dict[str, int]:
        counters = {"checked": 0, "in_sync": 0, "orphaned": 0, "closed_estimated": 0, "reopened": 0,
                    "cleared": 0, "repaired": 0, "adopted": 0, "skipped": 0, "errors": 0}
        for position in self.ledger.list_needing_reconciliation():
            counters["checked"] += 1
            try:
                await self.reconcile_position(position, counters)
            except Exception as e:
                counters["errors"] += 1
                logger.error(f"[reconcile] Position {position.id} failed: {e}", exc_info=True)

        if adopt:
            try:
                await self.adopt_untracked(counters)
            except Exception as e:
                counters["errors"] += 1
                logger.error(f"[reconcile] Adoption pass failed: {e}", exc_info=True)

        changed = sum(counters[k] for k in ("orphaned", "closed_estimated", "reopened", "cleared", "repaired", "adopted"))
        if changed:
            logger.info(f"[reconcile] {counters}")
        return counters

    async def _read_position(self, position: Position, token: TokenSettings) -> tuple[bool, PositionSnapshot | None]:
        """(ok, snapshot). ok is False when the chain could not be read."""
        vault = self.vault_for(position.chain_id)
        try:
            snapshot = await asyncio.wait_for(
                vault.get_position(position.wallet_address, token),
                timeout=settings.rpc_timeout_seconds,
            )
        except (VaultError, asyncio.TimeoutError) as e:
            logger.warning(f"[reconcile] Position {position.id}: on-chain read failed, retry next run: {e or 'timeout'}")
            return False, None
        return True, snapshot

    async def reconcile_position(self, position: Position, counters: dict[str, int]):
        token = token_for(position)
        ok, snapshot = await self._read_position(position, token)
        if not ok:
            counters["skipped"] += 1
            return
        live = _is_live(snapshot)

        if position.status == PositionStatus.FAILED.value:
            if live:
                logger.warning(
                    f"[reconcile] Failed position {position.id} ({token.symbol}) still exists on-chain; "
                    f"keeping the token blocked"
                )
                counters["in_sync"] += 1
            elif self.ledger.mark_reconciled(position.id, "no on-chain position"):
                counters["cleared"] += 1
                logger.info(f"[reconcile] Cleared failed position {position.id} ({token.symbol})")
            return

        if position.status == PositionStatus.CLOSING.value:
            age = (self.now() - _aware(position.updated_at)).total_seconds()
            if age < self.closing_grace_seconds:
                counters["in_sync"] += 1
                return
            if live:
                if self.ledger.reopen(position.id, f"still on-chain after {age:.0f}s in closing"):
                    counters["reopened"] += 1
                    logger.warning(f"[reconcile] Position {position.id} stuck closing, reopened for retry")
                return
            await self._resolve_orphan(position, token, counters)
            return

        # open
        if live:
            counters["in_sync"] += 1
            if position.entry_price <= 0:
                await self._repair_entry_price(position, token, snapshot, counters)
            return
        await self._resolve_orphan(position, token, counters)

    async def _resolve_orphan(self, position: Position, token: TokenSettings, counters: dict[str, int]):
        expected = (position.status,)
        tag = f"{position.wallet_address[:10]} {token.symbol}"

        if self.estimate_exit:
            price = await self.prices.get_price(position.chain_id, token)
            if price is not None and position.entry_price > 0:
                closed = self.ledger.mark_closed(
                    position.id,
                    exit_price=price,
                    reason=CloseReason.SYNC_FAILURE.value,
                    expected=expected,
                    event="reconciled",
                    reconciled=True,
                )
                if closed is not None:
                    counters["closed_estimated"] += 1
                    logger.warning(
                        f"[reconcile] Orphan {position.id} ({tag}) closed at estimated {price:.6f}: "
                        f"PnL={closed.profit_loss:.4f}"
                    )
                    notify(f"[reconcile] {tag}: position {position.id} gone on-chain, closed at ~{price:.4f}")
                return

        if self.ledger.mark_failed(
            position.id,
            CloseReason.SYNC_FAILURE.value,
            expected=expected,
            message="position not found on-chain",
            reconciled=True,
        ):
            counters["orphaned"] += 1
            logger.warning(f"[reconcile] Orphan {position.id} ({tag}) marked failed")
            notify(f"[reconcile] {tag}: position {position.id} gone on-chain, marked failed")

    async def _repair_entry_price(
        self, position: Position, token: TokenSettings, snapshot: PositionSnapshot, counters: dict[str, int]
    ):
        price = snapshot.entry_price if snapshot.entry_price > 0 else None
        if price is None:
            price = await self.prices.get_price(position.chain_id, token)
        if price is None:
            logger.warning(f"[reconcile] Position {position.id} has no entry price and none is available")
            return
        if self.ledger.repair_entry_price(position.id, price):
            counters["repaired"] += 1
            logger.info(f"[reconcile] Position {position.id} entry price set to {price:.6f}")

    async def adopt_untracked(self, counters: dict[str, int]):
        """Record on-chain positions of enabled wallets that have no ledger row."""
        with Session(self.engine) as session:
            wallets = session.exec(select(TradingWallet).where(TradingWallet.is_enabled == True)).all()

        for wallet in wallets:
            chain = self.chains.get(wallet.chain_id)
            if chain is None:
                continue
            vault = self.vault_for(wallet.chain_id)
            address = wallet.wallet_address.lower()
            for token in chain.tokens:
                if self.ledger.has_blocking_position(address, wallet.chain_id, token.address):
                    continue
                try:
                    snapshot = await asyncio.wait_for(
                        vault.get_position(address, token), timeout=settings.rpc_timeout_seconds
                    )
                except (VaultError, asyncio.TimeoutError):
                    continue
                if not _is_live(snapshot):
                    continue
                await self._adopt(wallet, token, snapshot, counters)

    async def _adopt(self, wallet: TradingWallet, token: TokenSettings, snapshot: PositionSnapshot, counters: dict[str, int]):
        address = wallet.wallet_address.lower()
        entry_price = snapshot.entry_price
        if entry_price <= 0:
            entry_price = await self.prices.get_price(wallet.chain_id, token) or 0.0
        reference = (
            f"adopted:{wallet.chain_id}:{address}:{token.address.lower()}:"
            f"{snapshot.entry_price:.8f}:{snapshot.collateral:.6f}"
        )
        try:
            position = self.ledger.record_open(OpenedPosition(
                wallet_address=address,
                chain_id=wallet.chain_id,
                token_address=token.address,
                token_symbol=token.symbol,
                direction=Direction.LONG.value if snapshot.is_long else Direction.SHORT.value,
                entry_price=entry_price,
                collateral_amount=snapshot.collateral,
                leverage=snapshot.leverage or 1.0,
                entry_tx_hash=reference,
                token_amount=snapshot.token_amount,
                take_profit_percent=wallet.take_profit_percent,
                trailing_stop_percent=wallet.trailing_stop_percent,
                profit_lock_percent=wallet.profit_lock_percent,
                trailing_step_percent=wallet.trailing_step_percent,
                borrowed_amount=snapshot.borrowed_amount,
            ), event="adopted", message="untracked on-chain position")
        except LedgerWriteError as e:
            logger.error(f"[reconcile] Could not adopt {token.symbol} for {address[:10]}: {e}")
            return
        if position.status == PositionStatus.OPEN.value:
            counters["adopted"] += 1
            logger.warning(
                f"[reconcile] Adopted untracked {position.direction} {token.symbol} for {address[:10]} "
                f"as position {position.id}"
            )
