"""CRUD API for trading wallets."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError
from sqlmodel import Session, select

from vaultbot.config import settings
from vaultbot.database import get_session
from vaultbot.models.trading_wallet import TradingWallet
from vaultbot.models.position import ACTIVE_STATUSES, Position
from vaultbot.schemas.wallet import TradingWalletCreate, TradingWalletUpdate, TradingWalletRead
from vaultbot.api.deps import get_current_operator

router = APIRouter(prefix="/api/wallets", tags=["wallets"], dependencies=[Depends(get_current_operator)])


@router.get("", response_model=list[TradingWalletRead])
def list_wallets(
    enabled: bool | None = None,
    chain_id: int | None = None,
    session: Session = Depends(get_session),
):
    stmt = select(TradingWallet)
    if enabled is not None:
        stmt = stmt.where(TradingWallet.is_enabled == enabled)
    if chain_id is not None:
        stmt = stmt.where(TradingWallet.chain_id == chain_id)
    return session.exec(stmt).all()


@router.post("", response_model=TradingWalletRead, status_code=201)
def create_wallet(
    data: TradingWalletCreate,
    session: Session = Depends(get_session),
):
    if data.chain_id not in settings.chains:
        raise HTTPException(status_code=422, detail=f"Chain {data.chain_id} is not configured")

    existing = session.exec(
        select(TradingWallet).where(
            TradingWallet.wallet_address == data.wallet_address,
            TradingWallet.chain_id == data.chain_id,
        )
    ).first()
    if existing:
        raise HTTPException(status_code=409, detail="Wallet already registered on this chain")

    wallet = TradingWallet(**data.model_dump())
    session.add(wallet)
    session.commit()
    session.refresh(wallet)
    return wallet


@router.get("/{wallet_id}", response_model=TradingWalletRead)
def get_wallet(wallet_id: int, session: Session = Depends(get_session)):
    wallet = session.get(TradingWallet, wallet_id)
    if not wallet:
        raise HTTPException(status_code=404, detail="Wallet not found")
    return wallet


@router.put("/{wallet_id}", response_model=TradingWalletRead)
def update_wallet(
    wallet_id: int,
    data: TradingWalletUpdate,
    session: Session = Depends(get_session),
):
    wallet = session.get(TradingWallet, wallet_id)
    if not wallet:
        raise HTTPException(status_code=404, detail="Wallet not found")

    update_data = data.model_dump(exclude_unset=True)

    # Validate full merged config so partial updates cannot bypass cross-field rules.
    merged = {**wallet.model_dump(), **update_data}
    try:
        TradingWalletCreate.model_validate(merged)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors())

    for key, value in update_data.items():
        setattr(wallet, key, value)
    wallet.updated_at = datetime.now(timezone.utc)

    session.add(wallet)
    session.commit()
    session.refresh(wallet)
    return wallet


@router.delete("/{wallet_id}", status_code=204)
def delete_wallet(wallet_id: int, session: Session = Depends(get_session)):
    wallet = session.get(TradingWallet, wallet_id)
    if not wallet:
        raise HTTPException(status_code=404, detail="Wallet not found")

    pos = session.exec(
        select(Position).where(
            Position.wallet_address == wallet.wallet_address,
            Position.chain_id == wallet.chain_id,
            Position.status.in_(ACTIVE_STATUSES),  # type: ignore[attr-defined]
        )
    ).first()
    if pos:
        raise HTTPException(
            status_code=409,
            detail="Cannot delete wallet with an active position. Close it first.",
        )

    session.delete(wallet)
    session.commit()


@router.post("/{wallet_id}/toggle", response_model=TradingWalletRead)
def toggle_wallet(wallet_id: int, session: Session = Depends(get_session)):
    wallet = session.get(TradingWallet, wallet_id)
    if not wallet:
        raise HTTPException(status_code=404, detail="Wallet not found")

    wallet.is_enabled = not wallet.is_enabled
    wallet.updated_at = datetime.now(timezone.utc)
    session.add(wallet)
    session.commit()
    session.refresh(wallet)
    return wallet
