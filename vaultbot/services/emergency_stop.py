"""Emergency stop: pause entries, close all open positions and optionally disable all wallets."""

import logging
from datetime import datetime, timezone

from sqlmodel import Session, select

from vaultbot.models.position import CloseReason, PositionStatus
from vaultbot.models.trading_wallet import TradingWallet

logger = logging.getLogger(__name__)


async def run_emergency_stop(
    runtime,
    close_positions: bool = True,
    disable_wallets: bool = False,
) -> dict:
    """Execute emergency stop across all wallets.

    Returns dict with positions_closed, errors, wallets_disabled counts. A
    position whose close fails is left `failed` so it keeps its token blocked
    until reconciliation confirms the chain is flat.
    """
    from vaultbot.engine.lifecycle import token_for

    result = {"positions_closed": 0, "errors": [], "wallets_disabled": 0}
    runtime.context.pause("emergency stop")

    if close_positions:
        for pos in runtime.ledger.list_by_status(PositionStatus.OPEN.value):
            price = await runtime.prices.get_price(pos.chain_id, token_for(pos))
            try:
                closed = await runtime.lifecycle.execute_close(
                    pos, CloseReason.EMERGENCY_CLOSE.value, price, fail_on_error=True
                )
            except Exception as e:
                closed = None
                logger.error(f"[emergency_stop] Position {pos.id} close raised: {e}", exc_info=True)
            if closed is not None:
                result["positions_closed"] += 1
            else:
                error_msg = f"Failed to close position {pos.id} ({pos.token_symbol} for {pos.wallet_address[:10]})"
                logger.error(f"[emergency_stop] {error_msg}")
                result["errors"].append(error_msg)

    if disable_wallets:
        with Session(runtime.engine) as session:
            wallets = session.exec(select(TradingWallet).where(TradingWallet.is_enabled == True)).all()
            for wallet in wallets:
                wallet.is_enabled = False
                wallet.updated_at = datetime.now(timezone.utc)
                session.add(wallet)
                result["wallets_disabled"] += 1
            session.commit()

    logger.warning(
        f"[emergency_stop] closed={result['positions_closed']} errors={len(result['errors'])} "
        f"wallets_disabled={result['wallets_disabled']}"
    )
    return result
