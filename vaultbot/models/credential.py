"""Credential model: encrypted signer key used to submit vault transactions."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Credential(SQLModel, table=True):
    __tablename__ = "credential"

    id: int | None = Field(default=None, primary_key=True)
    chain_id: int = Field(index=True)
    name: str = "bot"
    private_key_encrypted: str = ""  # Fernet-encrypted hex private key
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
