"""FastAPI application entry point."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vaultbot.config import settings
from vaultbot.database import create_db_and_tables
from vaultbot.utils.logging import setup_logging
from vaultbot.api import auth, positions, system, wallets


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()

    from vaultbot.engine.runtime import init_runtime
    runtime = init_runtime()
    runtime.loop = asyncio.get_running_loop()

    # Repair ledger drift against the vaults before any job can open or close
    await runtime.run_job("reconciliation")

    from vaultbot.engine.scheduler import start_scheduler, stop_scheduler
    start_scheduler()

    # Start Telegram bot if configured
    telegram_bot = None
    if settings.telegram_bot_token:
        from vaultbot.services.telegram_bot import init_bot
        telegram_bot = init_bot()
        telegram_bot.start()

    yield

    if telegram_bot:
        telegram_bot.stop()
    stop_scheduler()

    from vaultbot.services.vault_adapter import close_adapters
    await close_adapters()


app = FastAPI(
    title="vaultbot",
    description="Automated leveraged trading engine for on-chain vaults",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(auth.router)
app.include_router(wallets.router)
app.include_router(positions.router)
app.include_router(system.router)
