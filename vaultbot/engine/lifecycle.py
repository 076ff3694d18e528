"""Position lifecycle engine: the monitoring cycle and close execution.

Each monitoring tick reads one price per open position, feeds it through the
protection state machine (`engine/protection.py`), persists any change and
closes positions whose take profit or armed trailing stop was hit.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable

from vaultbot.config import TokenSettings, settings
from vaultbot.engine.events import notify
from vaultbot.engine.protection import evaluate_close, step_function_for, update_protection
from vaultbot.engine.risk_controls import TradingContext
from vaultbot.exceptions import InvariantViolation, LedgerWriteError, VaultError
from vaultbot.models.position import CloseReason, Position, PositionStatus
from vaultbot.services.ledger import PositionLedger
from vaultbot.services.market_data import PriceProvider
from vaultbot.services.vault_adapter import VaultAdapter, get_vault_adapter

logger = logging.getLogger(__name__)


def token_for(position: Position) -> TokenSettings:
    """Configured token settings for a position, or a minimal stand-in."""
    chain = settings.chains.get(position.chain_id)
    if chain is not None:
        for token in chain.tokens:
            if token.address.lower() == position.token_address.lower():
                return token
    return TokenSettings(address=position.token_address, symbol=position.token_symbol)


class PositionLifecycle:
    def __init__(
        self,
        ledger: PositionLedger,
        prices: PriceProvider,
        vault_for: Callable[[int], VaultAdapter] = get_vault_adapter,
        close_timeout: float | None = None,
        context: TradingContext | None = None,
        retry_after: float | None = None,
    ):
        self.ledger = ledger
        self.prices = prices
        self.vault_for = vault_for
        self.close_timeout = close_timeout if close_timeout is not None else settings.tx_timeout_seconds
        self.context = context
        self.retry_after = retry_after if retry_after is not None else settings.close_retry_seconds
        self.clock = context.clock if context is not None else time.monotonic
        # position id -> clock reading of the last vault close attempt
        self._close_attempts: dict[int, float] = {}

    async def run_monitoring_cycle(self) -> dict[str, int]:
        """Check every open position once and retry closes left pending.

        Per-position failures never stop the cycle.
        """
        counters = {"checked": 0, "updated": 0, "closed": 0, "close_failed": 0,
                    "retried": 0, "suppressed": 0, "no_price": 0, "errors": 0}
        positions = self.ledger.list_by_status(PositionStatus.OPEN.value, PositionStatus.CLOSING.value)
        for position in positions:
            counters["checked"] += 1
            try:
                if position.status == PositionStatus.CLOSING.value:
                    await self.retry_close(position, counters)
                else:
                    await self.check_position(position, counters)
            except Exception as e:
                counters["errors"] += 1
                logger.error(f"[pos {position.id}] Monitoring error: {e}", exc_info=True)
        if positions:
            logger.debug(f"[monitor] {counters}")
        return counters

    async def check_position(self, position: Position, counters: dict[str, int]):
        token = token_for(position)
        price = await self.prices.get_price(position.chain_id, token)
        if price is None:
            counters["no_price"] += 1
            logger.debug(f"[pos {position.id}] No price for {token.symbol}, skipping")
            return
        if position.entry_price <= 0:
            # reconciliation repairs the entry price
            logger.warning(f"[pos {position.id}] Entry price is {position.entry_price}, skipping")
            return

        state = position.protection_state()
        step = step_function_for(position.trailing_stop_percent, position.trailing_step_percent)
        protection = update_protection(state, price, step)

        if protection != state.protection:
            try:
                saved = self.ledger.save_protection(position, protection, price)
            except InvariantViolation as e:
                logger.error(f"[pos {position.id}] {e}")
                return
            if not saved:
                logger.debug(f"[pos {position.id}] No longer open, dropping protection update")
                return
            counters["updated"] += 1
            logger.info(
                f"[pos {position.id}] {token.symbol} stop -> {protection.stop_price:.6f} "
                f"(price {price:.6f}, entry {position.entry_price:.6f})"
            )

        decision = evaluate_close(replace(state, protection=protection), price)
        if decision is None:
            return
        if decision.suppressed:
            counters["suppressed"] += 1
            self.ledger.record_event(position.id, "close_suppressed", price=price, message=decision.detail)
            return

        closed = await self.execute_close(position, decision.reason, decision.reference_price)
        counters["closed" if closed is not None else "close_failed"] += 1

    async def execute_close(
        self,
        position: Position,
        reason: str,
        reference_price: float | None = None,
        fail_on_error: bool = False,
    ) -> Position | None:
        """Close an open position on the vault and record the result.

        Returns the closed row, or None if the position was not ours to close
        or the vault call failed. A failed vault call leaves the row
        `closing` for the next monitoring tick to retry, or `failed` when
        `fail_on_error` is set.
        """
        if not self.ledger.mark_closing(position.id, reason, reference_price):
            logger.info(f"[pos {position.id}] Not open any more, close ({reason}) skipped")
            return None
        return await self._submit_close(position, reason, reference_price, fail_on_error)

    async def retry_close(self, position: Position, counters: dict[str, int]):
        """Resubmit the close of a `closing` row while the vault still holds the position.

        A row whose position is already gone on-chain is left for
        reconciliation, which books it once the grace period has passed.
        """
        last = self._close_attempts.get(position.id)
        if last is not None and self.clock() - last < self.retry_after:
            return

        token = token_for(position)
        vault = self.vault_for(position.chain_id)
        try:
            held = await asyncio.wait_for(
                vault.get_onchain_balance(position.wallet_address, token),
                timeout=settings.rpc_timeout_seconds,
            )
        except (VaultError, asyncio.TimeoutError) as e:
            logger.warning(f"[pos {position.id}] Balance read failed, close retry deferred: {e or 'timeout'}")
            return
        if held <= 0:
            logger.debug(f"[pos {position.id}] Closing with nothing on-chain, left for reconciliation")
            return

        reason = position.close_reason or CloseReason.MANUAL.value
        price = await self.prices.get_price(position.chain_id, token)
        reference_price = price
        if reason == CloseReason.TRAILING_STOP.value and position.trailing_stop_price:
            reference_price = position.trailing_stop_price

        counters["retried"] += 1
        logger.info(f"[pos {position.id}] Retrying close ({reason})")
        closed = await self._submit_close(position, reason, reference_price)
        counters["closed" if closed is not None else "close_failed"] += 1

    async def _submit_close(
        self,
        position: Position,
        reason: str,
        reference_price: float | None,
        fail_on_error: bool = False,
    ) -> Position | None:
        token = token_for(position)
        vault = self.vault_for(position.chain_id)
        self._close_attempts[position.id] = self.clock()
        try:
            result = await asyncio.wait_for(
                vault.close_position(position.wallet_address, token, position.is_long, reason),
                timeout=self.close_timeout,
            )
        except (VaultError, asyncio.TimeoutError) as e:
            detail = str(e) or type(e).__name__
            logger.error(f"[pos {position.id}] Close ({reason}) failed: {detail}")
            if self.context is not None:
                self.context.breaker.record_failure(f"close {token.symbol} #{position.id}: {detail}")
            self.ledger.record_event(position.id, "close_failed", price=reference_price, message=detail)
            if fail_on_error:
                self.ledger.mark_failed(
                    position.id, reason, expected=(PositionStatus.CLOSING.value,),
                    message=f"close failed: {detail}",
                )
            notify(f"[{token.symbol}] Close ({reason}) FAILED for {position.wallet_address[:10]}: {detail}")
            return None

        self._close_attempts.pop(position.id, None)
        exit_price = result.exit_price or reference_price
        if exit_price is None or exit_price <= 0:
            logger.warning(f"[pos {position.id}] No exit price available, booking at entry")
            exit_price = position.entry_price

        try:
            closed = self.ledger.mark_closed(
                position.id,
                exit_price=exit_price,
                reason=reason,
                exit_amount=result.realized_amount,
                exit_tx_hash=result.tx_hash,
            )
        except LedgerWriteError as e:
            logger.critical(f"[pos {position.id}] Closed on-chain ({result.tx_hash}) but ledger write failed: {e}")
            return None

        if closed is None:
            logger.warning(f"[pos {position.id}] Closed on-chain ({result.tx_hash}) but row left closing")
            return None

        logger.info(
            f"[pos {position.id}] Closed {closed.direction} {closed.token_symbol} ({reason}) "
            f"@ {exit_price:.6f}: PnL={closed.profit_loss:.4f} ({closed.profit_loss_percent:.2f}%)"
        )
        notify(
            f"[{closed.token_symbol}] {reason} | {closed.direction} x{closed.leverage:g} | "
            f"PnL: {closed.profit_loss:.2f} USDC ({closed.profit_loss_percent:.2f}%)"
        )
        return closed
