"""Positions API: ledger listing, audit trail, live P&L and manual close."""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from vaultbot.database import get_session
from vaultbot.engine.lifecycle import token_for
from vaultbot.engine.runtime import get_runtime
from vaultbot.models.position import CloseReason, Position, PositionStatus
from vaultbot.api.deps import get_current_operator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/positions", tags=["positions"], dependencies=[Depends(get_current_operator)])


@router.get("")
def list_positions(
    status: str | None = None,
    wallet: str | None = None,
    chain_id: int | None = None,
    token: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(Position).order_by(Position.created_at.desc())
    if status is not None:
        stmt = stmt.where(Position.status == status)
    if wallet is not None:
        stmt = stmt.where(Position.wallet_address == wallet.lower())
    if chain_id is not None:
        stmt = stmt.where(Position.chain_id == chain_id)
    if token is not None:
        stmt = stmt.where(Position.token_symbol == token.upper())
    return session.exec(stmt.offset(offset).limit(limit)).all()


@router.get("/enriched")
async def enriched_positions():
    """Open positions with the current price and unrealized P&L."""
    runtime = get_runtime()
    positions = runtime.ledger.list_by_status(PositionStatus.OPEN.value, PositionStatus.CLOSING.value)
    if not positions:
        return []

    prices = await asyncio.gather(
        *(runtime.prices.get_price(pos.chain_id, token_for(pos)) for pos in positions)
    )

    result = []
    for pos, price in zip(positions, prices):
        pnl = pnl_pct = None
        if price is not None and pos.entry_price > 0:
            change = (price - pos.entry_price) / pos.entry_price
            if not pos.is_long:
                change = -change
            pnl_pct = change * 100 * pos.leverage
            pnl = pos.collateral_amount * pnl_pct / 100

        result.append({
            "id": pos.id,
            "wallet_address": pos.wallet_address,
            "chain_id": pos.chain_id,
            "token_symbol": pos.token_symbol,
            "direction": pos.direction,
            "status": pos.status,
            "leverage": pos.leverage,
            "entry_price": pos.entry_price,
            "current_price": price,
            "trailing_stop_price": pos.trailing_stop_price,
            "take_profit_price": pos.take_profit_price,
            "stop_activated": pos.stop_activated,
            "collateral_amount": pos.collateral_amount,
            "unrealized_pnl": round(pnl, 4) if pnl is not None else None,
            "unrealized_pnl_pct": round(pnl_pct, 2) if pnl_pct is not None else None,
        })

    return result


@router.get("/{position_id}")
def get_position(position_id: int, session: Session = Depends(get_session)):
    pos = session.get(Position, position_id)
    if not pos:
        raise HTTPException(status_code=404, detail="Position not found")
    return pos


@router.get("/{position_id}/events")
def position_events(position_id: int):
    runtime = get_runtime()
    if runtime.ledger.get(position_id) is None:
        raise HTTPException(status_code=404, detail="Position not found")
    return runtime.ledger.list_events(position_id)


@router.post("/{position_id}/close")
async def close_position(position_id: int):
    """Manually close an open position on the vault."""
    runtime = get_runtime()
    pos = runtime.ledger.get(position_id)
    if not pos:
        raise HTTPException(status_code=404, detail="Position not found")
    if pos.status != PositionStatus.OPEN.value:
        raise HTTPException(status_code=409, detail=f"Position is {pos.status}")

    price = await runtime.prices.get_price(pos.chain_id, token_for(pos))
    closed = await runtime.lifecycle.execute_close(pos, CloseReason.MANUAL.value, price)
    if closed is None:
        current = runtime.ledger.get(position_id)
        raise HTTPException(
            status_code=502,
            detail=f"Close did not complete, position is {current.status if current else 'unknown'}",
        )
    logger.info(f"[pos {position_id}] Closed manually by operator")
    return closed
