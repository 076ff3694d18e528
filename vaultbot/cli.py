"""CLI tool for admin operations.

Usage:
    python -m vaultbot.cli create-operator
    python -m vaultbot.cli set-signer <chain_id>
    python -m vaultbot.cli run-cycle <trading|monitoring|reconciliation>
"""

import asyncio
import getpass
import json
import sys
from datetime import datetime, timezone

from sqlmodel import Session, select

from vaultbot.database import engine, create_db_and_tables
from vaultbot.models.credential import Credential
from vaultbot.models.operator import Operator
from vaultbot.services.auth import hash_password, generate_totp_secret, get_totp_uri

CYCLES = ("trading", "monitoring", "reconciliation")


def create_operator():
    """Create an operator account with TOTP setup."""
    create_db_and_tables()

    username = input("Username: ").strip()
    if not username:
        print("Username cannot be empty.")
        sys.exit(1)

    with Session(engine) as session:
        existing = session.exec(select(Operator).where(Operator.username == username)).first()
        if existing:
            print(f"Operator '{username}' already exists.")
            sys.exit(1)

    password = getpass.getpass("Password: ")
    password_confirm = getpass.getpass("Confirm password: ")
    if password != password_confirm:
        print("Passwords do not match.")
        sys.exit(1)

    totp_secret = generate_totp_secret()
    operator = Operator(
        username=username,
        hashed_password=hash_password(password),
        totp_secret=totp_secret,
    )

    with Session(engine) as session:
        session.add(operator)
        session.commit()

    print(f"\nOperator '{username}' created successfully.")
    print(f"\nTOTP Secret: {totp_secret}")
    print(f"TOTP URI: {get_totp_uri(totp_secret, username)}")
    print("Add the URI to your authenticator app.")


def set_signer(chain_id: int):
    """Store the encrypted signer key for a chain, replacing the active one."""
    from vaultbot.services.encryption import encrypt

    create_db_and_tables()
    private_key = getpass.getpass("Signer private key (hex): ").strip()
    if not private_key:
        print("Private key cannot be empty.")
        sys.exit(1)

    with Session(engine) as session:
        for cred in session.exec(
            select(Credential).where(Credential.chain_id == chain_id, Credential.is_active == True)
        ).all():
            cred.is_active = False
            session.add(cred)
        session.add(Credential(
            chain_id=chain_id,
            name=f"signer-{datetime.now(timezone.utc):%Y%m%d%H%M%S}",
            private_key_encrypted=encrypt(private_key),
        ))
        session.commit()

    print(f"Signer key stored for chain {chain_id}.")


def run_cycle(job: str):
    """Run one cycle of a job in the foreground and print its counters."""
    from vaultbot.engine.runtime import init_runtime
    from vaultbot.services.vault_adapter import close_adapters
    from vaultbot.utils.logging import setup_logging

    setup_logging()
    create_db_and_tables()

    async def _run():
        runtime = init_runtime()
        try:
            return await runtime.run_job(job)
        finally:
            await close_adapters()

    counters = asyncio.run(_run())
    if counters is None:
        print(f"{job} cycle failed, see logs.")
        sys.exit(1)
    print(json.dumps(counters, indent=2, default=str))


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m vaultbot.cli <command>")
        print("Commands: create-operator, set-signer <chain_id>, run-cycle <job>")
        sys.exit(1)

    command = sys.argv[1]
    if command == "create-operator":
        create_operator()
    elif command == "set-signer":
        if len(sys.argv) < 3 or not sys.argv[2].isdigit():
            print("Usage: python -m vaultbot.cli set-signer <chain_id>")
            sys.exit(1)
        set_signer(int(sys.argv[2]))
    elif command == "run-cycle":
        if len(sys.argv) < 3 or sys.argv[2] not in CYCLES:
            print(f"Usage: python -m vaultbot.cli run-cycle <{'|'.join(CYCLES)}>")
            sys.exit(1)
        run_cycle(sys.argv[2])
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
