"""Position ledger: the only code that writes Position rows.

Every mutation targets a single position id and is conditioned on the status
the caller observed (`UPDATE ... WHERE id = ? AND status IN (...)`). A write
whose condition no longer holds affects zero rows and returns False, which
lets the monitoring, trading and reconciliation jobs interleave without a lock.
Each successful transition appends a PositionEvent row in the same
transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select, func

from vaultbot.engine.protection import Armed, Protection, stop_is_protective, take_profit_level, realized_pnl
from vaultbot.exceptions import InvariantViolation, LedgerWriteError
from vaultbot.models.position import ACTIVE_STATUSES, Direction, Position, PositionStatus
from vaultbot.models.position_event import PositionEvent

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OpenedPosition:
    """Everything known about a position right after the vault confirmed it."""
    wallet_address: str
    chain_id: int
    token_address: str
    token_symbol: str
    direction: str
    entry_price: float
    collateral_amount: float
    leverage: float
    entry_tx_hash: str
    token_amount: float = 0.0
    take_profit_percent: float = 0.0
    trailing_stop_percent: float = 1.0
    profit_lock_percent: float = 0.5
    trailing_step_percent: float | None = None
    borrowed_amount: float = 0.0
    health_factor: float | None = None


class PositionLedger:
    """Read/write access to the position table."""

    def __init__(self, engine: Engine):
        self.engine = engine

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, position_id: int) -> Position | None:
        with Session(self.engine) as session:
            return session.get(Position, position_id)

    def get_by_tx_hash(self, tx_hash: str) -> Position | None:
        with Session(self.engine) as session:
            return session.exec(
                select(Position).where(Position.entry_tx_hash == tx_hash)
            ).first()

    def list_by_status(self, *statuses: str, chain_id: int | None = None) -> list[Position]:
        stmt = select(Position).where(Position.status.in_(statuses)).order_by(Position.id)
        if chain_id is not None:
            stmt = stmt.where(Position.chain_id == chain_id)
        with Session(self.engine) as session:
            return list(session.exec(stmt).all())

    def list_for_wallet(self, wallet_address: str, chain_id: int | None = None) -> list[Position]:
        stmt = select(Position).where(Position.wallet_address == wallet_address.lower())
        if chain_id is not None:
            stmt = stmt.where(Position.chain_id == chain_id)
        with Session(self.engine) as session:
            return list(session.exec(stmt.order_by(Position.id.desc())).all())

    def list_needing_reconciliation(self) -> list[Position]:
        """Open and closing rows plus failed rows nobody has cleared yet."""
        stmt = select(Position).where(
            or_(
                Position.status.in_(ACTIVE_STATUSES),
                (Position.status == PositionStatus.FAILED.value) & (Position.reconciled_at.is_(None)),
            )
        ).order_by(Position.id)
        with Session(self.engine) as session:
            return list(session.exec(stmt).all())

    def has_blocking_position(self, wallet_address: str, chain_id: int, token_address: str) -> bool:
        """True while any open, closing or uncleared failed row exists for the token."""
        stmt = select(Position.id).where(
            Position.wallet_address == wallet_address.lower(),
            Position.chain_id == chain_id,
            Position.token_address == token_address,
            or_(
                Position.status.in_(ACTIVE_STATUSES),
                (Position.status == PositionStatus.FAILED.value) & (Position.reconciled_at.is_(None)),
            ),
        ).limit(1)
        with Session(self.engine) as session:
            return session.exec(stmt).first() is not None

    def count_active(self, wallet_address: str, chain_id: int) -> int:
        stmt = select(func.count(Position.id)).where(
            Position.wallet_address == wallet_address.lower(),
            Position.chain_id == chain_id,
            Position.status.in_(ACTIVE_STATUSES),
        )
        with Session(self.engine) as session:
            return int(session.exec(stmt).one())

    def list_events(self, position_id: int) -> list[PositionEvent]:
        with Session(self.engine) as session:
            return list(session.exec(
                select(PositionEvent)
                .where(PositionEvent.position_id == position_id)
                .order_by(PositionEvent.id)
            ).all())

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def record_open(self, opened: OpenedPosition, event: str = "opened", message: str | None = None) -> Position:
        """Insert the ledger row for a confirmed on-chain open.

        Idempotent on `entry_tx_hash`: recording the same transaction twice
        returns the existing row. Raises LedgerWriteError when the row cannot
        be written (including a second active row for the same token).
        """
        existing = self.get_by_tx_hash(opened.entry_tx_hash)
        if existing is not None:
            logger.info(f"[ledger] tx {opened.entry_tx_hash} already recorded as position {existing.id}")
            return existing

        is_long = opened.direction == Direction.LONG.value
        position = Position(
            wallet_address=opened.wallet_address.lower(),
            chain_id=opened.chain_id,
            token_address=opened.token_address,
            token_symbol=opened.token_symbol,
            direction=opened.direction,
            entry_price=opened.entry_price,
            entry_amount=opened.collateral_amount * opened.leverage,
            token_amount=opened.token_amount,
            entry_tx_hash=opened.entry_tx_hash,
            highest_price=opened.entry_price,
            lowest_price=opened.entry_price,
            trailing_stop_percent=opened.trailing_stop_percent,
            trailing_step_percent=opened.trailing_step_percent,
            take_profit_percent=opened.take_profit_percent,
            take_profit_price=take_profit_level(is_long, opened.entry_price, opened.take_profit_percent),
            profit_lock_percent=opened.profit_lock_percent,
            leverage=opened.leverage,
            collateral_amount=opened.collateral_amount,
            borrowed_amount=opened.borrowed_amount,
            health_factor=opened.health_factor,
            status=PositionStatus.OPEN.value,
        )

        with Session(self.engine) as session:
            try:
                session.add(position)
                session.flush()
                session.add(PositionEvent(
                    position_id=position.id,
                    event=event,
                    price=opened.entry_price,
                    message=message or f"{opened.direction} {opened.token_symbol} x{opened.leverage:g}",
                    data={"tx_hash": opened.entry_tx_hash, "collateral": opened.collateral_amount},
                ))
                session.commit()
                session.refresh(position)
            except IntegrityError as e:
                session.rollback()
                again = self.get_by_tx_hash(opened.entry_tx_hash)
                if again is not None:
                    return again
                raise LedgerWriteError(
                    f"Could not record {opened.token_symbol} position for {opened.wallet_address}: {e.orig}"
                ) from e
            except SQLAlchemyError as e:
                session.rollback()
                raise LedgerWriteError(f"Could not record position: {e}") from e

        logger.info(
            f"[ledger] Recorded position {position.id}: {position.direction} {position.token_symbol} "
            f"@ {position.entry_price:.6f} for {position.wallet_address[:10]}"
        )
        return position

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        position_id: int,
        expected: tuple[str, ...],
        values: dict[str, Any],
        event: str,
        price: float | None = None,
        message: str | None = None,
        data: dict[str, Any] | None = None,
        extra_conditions: tuple = (),
    ) -> bool:
        """Apply `values` only if the row is still in one of `expected` statuses."""
        now = _now()
        stmt = (
            update(Position)
            .where(Position.id == position_id, Position.status.in_(expected), *extra_conditions)
            .values(**values, updated_at=now)
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
                if result.rowcount != 1:
                    return False
                conn.execute(PositionEvent.__table__.insert().values(
                    position_id=position_id,
                    timestamp=now,
                    event=event,
                    price=price,
                    message=message,
                    data=data,
                ))
        except SQLAlchemyError as e:
            raise LedgerWriteError(f"Position {position_id} {event} failed: {e}") from e
        return True

    def record_event(
        self,
        position_id: int,
        event: str,
        price: float | None = None,
        message: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Append an audit row without touching the position."""
        try:
            with Session(self.engine) as session:
                session.add(PositionEvent(
                    position_id=position_id, event=event, price=price, message=message, data=data,
                ))
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"[ledger] Could not write {event} event for position {position_id}: {e}")

    def save_protection(self, position: Position, protection: Protection, price: float) -> bool:
        """Persist a protection change for an open position."""
        if not isinstance(protection, Armed):
            return False
        if not stop_is_protective(position.is_long, position.entry_price, protection.stop_price):
            raise InvariantViolation(
                f"Position {position.id}: stop {protection.stop_price} is on the losing side of "
                f"entry {position.entry_price}"
            )

        was_armed = position.stop_activated
        position.apply_protection(protection)
        values = {
            "stop_activated": True,
            "trailing_stop_price": protection.stop_price,
            "highest_price": position.highest_price,
            "lowest_price": position.lowest_price,
        }
        event = "stop_advanced" if was_armed else "stop_armed"
        return self._transition(
            position.id, (PositionStatus.OPEN.value,), values, event,
            price=price,
            message=f"stop={protection.stop_price:.6f} watermark={protection.watermark:.6f}",
        )

    def mark_closing(self, position_id: int, reason: str, price: float | None = None) -> bool:
        return self._transition(
            position_id, (PositionStatus.OPEN.value,),
            {"status": PositionStatus.CLOSING.value, "close_reason": reason},
            "closing", price=price, message=f"close requested: {reason}",
        )

    def reopen(self, position_id: int, message: str) -> bool:
        """Return a stuck closing row to open so the close can be retried."""
        return self._transition(
            position_id, (PositionStatus.CLOSING.value,),
            {"status": PositionStatus.OPEN.value, "close_reason": None},
            "reopened", message=message,
        )

    def mark_closed(
        self,
        position_id: int,
        exit_price: float,
        reason: str,
        exit_amount: float | None = None,
        exit_tx_hash: str | None = None,
        expected: tuple[str, ...] = (PositionStatus.CLOSING.value,),
        event: str = "closed",
        reconciled: bool = False,
    ) -> Position | None:
        """Transition to closed, computing realized P/L from the exit price."""
        position = self.get(position_id)
        if position is None or position.status not in expected:
            return None

        pnl, pnl_pct = realized_pnl(
            position.is_long, position.entry_price, exit_price,
            position.entry_amount, position.collateral_amount,
        )
        if exit_amount is None:
            exit_amount = position.collateral_amount + pnl

        now = _now()
        values = {
            "status": PositionStatus.CLOSED.value,
            "close_reason": reason,
            "exit_price": exit_price,
            "exit_amount": exit_amount,
            "exit_tx_hash": exit_tx_hash,
            "profit_loss": pnl,
            "profit_loss_percent": pnl_pct,
            "closed_at": now,
        }
        if reconciled:
            values["reconciled_at"] = now
        ok = self._transition(
            position_id, expected, values, event,
            price=exit_price,
            message=f"{reason}: pnl={pnl:.4f} ({pnl_pct:.2f}%)",
            data={"tx_hash": exit_tx_hash, "exit_amount": exit_amount},
        )
        return self.get(position_id) if ok else None

    def mark_failed(
        self,
        position_id: int,
        reason: str,
        expected: tuple[str, ...],
        message: str | None = None,
        reconciled: bool = False,
    ) -> bool:
        now = _now()
        values: dict[str, Any] = {
            "status": PositionStatus.FAILED.value,
            "close_reason": reason,
            "closed_at": now,
        }
        if reconciled:
            values["reconciled_at"] = now
        return self._transition(position_id, expected, values, "failed", message=message or reason)

    def mark_reconciled(self, position_id: int, message: str) -> bool:
        """Clear a failed row so it stops blocking new entries for its token."""
        return self._transition(
            position_id, (PositionStatus.FAILED.value,),
            {"reconciled_at": _now()},
            "reconciled", message=message,
            extra_conditions=(Position.reconciled_at.is_(None),),
        )

    def repair_entry_price(self, position_id: int, entry_price: float) -> bool:
        """Fill in a missing entry price and the levels derived from it."""
        position = self.get(position_id)
        if position is None or entry_price <= 0:
            return False
        values = {
            "entry_price": entry_price,
            "highest_price": entry_price,
            "lowest_price": entry_price,
            "take_profit_price": take_profit_level(position.is_long, entry_price, position.take_profit_percent),
        }
        return self._transition(
            position_id, (PositionStatus.OPEN.value,), values, "entry_price_repaired",
            price=entry_price,
            extra_conditions=(Position.entry_price <= 0,),
        )
