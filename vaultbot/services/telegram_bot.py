"""Operator Telegram bot.

Runs on its own thread and event loop. Read-only commands query the ledger
directly; anything that moves funds is confirmed with an inline button and
then dispatched onto the engine loop, where the vault adapters live.
"""

import asyncio
import functools
import logging
import threading
from typing import Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes

from vaultbot.config import settings

logger = logging.getLogger(__name__)

_bot_instance: Optional["TelegramBot"] = None

# callback data -> disable wallets too
_EMERGENCY_ACTIONS = {"confirm_close_all": False, "confirm_stop_all": True}


async def _on_main_loop(coro, timeout: float = 300):
    """Run `coro` on the engine loop and await its result from the bot loop."""
    from vaultbot.engine.runtime import get_runtime

    loop = get_runtime().loop
    if loop is None or loop.is_closed():
        coro.close()
        raise RuntimeError("engine loop not running")
    future = asyncio.run_coroutine_threadsafe(coro, loop)
    return await asyncio.wait_for(asyncio.wrap_future(future), timeout=timeout)


def _operator_only(handler):
    @functools.wraps(handler)
    async def wrapper(self: "TelegramBot", update: Update, context: ContextTypes.DEFAULT_TYPE):
        user = update.effective_user
        if user is None or user.id not in self.chat_ids:
            if update.effective_message:
                await update.effective_message.reply_text("Unauthorized.")
            return
        await handler(self, update, context)
    return wrapper


def _describe(pos) -> str:
    stop = f"{pos.trailing_stop_price:.4f}" if pos.stop_activated else "unarmed"
    tp = f"{pos.take_profit_price:.4f}" if pos.take_profit_price else "off"
    return (
        f"#{pos.id} {pos.token_symbol} {pos.direction} x{pos.leverage:g} "
        f"entry {pos.entry_price:.4f} stop {stop} tp {tp} [{pos.status}]"
    )


class TelegramBot:
    def __init__(self, token: str, chat_ids: list[int]):
        self.token = token
        self.chat_ids = set(chat_ids)
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # --- commands ---------------------------------------------------------

    @_operator_only
    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        from vaultbot.engine.runtime import get_runtime
        from vaultbot.engine.scheduler import get_scheduler_status
        from vaultbot.models.position import ACTIVE_STATUSES

        runtime = get_runtime()
        health = runtime.health()
        breaker = health["circuit_breaker"]
        active = runtime.ledger.list_by_status(*ACTIVE_STATUSES)
        lines = [
            f"Scheduler: {'running' if get_scheduler_status()['running'] else 'stopped'}",
            f"Entries: {'PAUSED (' + str(health['pause_reason']) + ')' if health['paused'] else 'active'}",
            f"Breaker: {'OPEN, resets in %.0fs' % breaker['seconds_until_reset'] if breaker['open'] else 'closed'}",
            f"Active positions: {len(active)}",
        ]
        for job, finished in sorted(health["last_cycles"].items()):
            lines.append(f"Last {job}: {finished}")
        await update.effective_message.reply_text("\n".join(lines))

    @_operator_only
    async def _cmd_positions(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        from vaultbot.engine.runtime import get_runtime
        from vaultbot.models.position import ACTIVE_STATUSES

        positions = get_runtime().ledger.list_by_status(*ACTIVE_STATUSES)
        text = "\n".join(_describe(p) for p in positions) or "No active positions."
        await update.effective_message.reply_text(text)

    @_operator_only
    async def _cmd_pause(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        from vaultbot.engine.runtime import get_runtime

        reason = " ".join(context.args) if context.args else "paused via Telegram"
        get_runtime().context.pause(reason)
        await update.effective_message.reply_text(f"Entries paused ({reason}). Open positions stay protected.")

    @_operator_only
    async def _cmd_resume(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        from vaultbot.engine.runtime import get_runtime

        get_runtime().context.resume()
        await update.effective_message.reply_text("Entries resumed.")

    @_operator_only
    async def _cmd_close_all(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._ask("confirm_close_all", "Pause entries and close every open position?", update)

    @_operator_only
    async def _cmd_stop_all(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._ask("confirm_stop_all", "Close every open position AND disable all wallets?", update)

    async def _ask(self, action: str, question: str, update: Update):
        buttons = InlineKeyboardMarkup([[
            InlineKeyboardButton("Confirm", callback_data=action),
            InlineKeyboardButton("Cancel", callback_data="cancel"),
        ]])
        await update.effective_message.reply_text(question, reply_markup=buttons)

    @_operator_only
    async def _on_button(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        await query.answer()
        if query.data not in _EMERGENCY_ACTIONS:
            await query.edit_message_text("Cancelled.")
            return

        from vaultbot.engine.runtime import get_runtime
        from vaultbot.services.emergency_stop import run_emergency_stop

        disable_wallets = _EMERGENCY_ACTIONS[query.data]
        await query.edit_message_text("Emergency stop running...")
        result = await _on_main_loop(
            run_emergency_stop(get_runtime(), close_positions=True, disable_wallets=disable_wallets)
        )
        summary = f"Closed {result['positions_closed']} positions"
        if disable_wallets:
            summary += f", disabled {result['wallets_disabled']} wallets"
        if result["errors"]:
            summary += f"\n{len(result['errors'])} close(s) failed, rows left for reconciliation"
        await query.edit_message_text(summary)

    # --- lifecycle --------------------------------------------------------

    def post(self, message: str):
        """Queue `message` for every operator chat. Safe to call from any thread."""
        if self._loop is None or self._app is None:
            return
        asyncio.run_coroutine_threadsafe(self._broadcast(message), self._loop)

    async def _broadcast(self, message: str):
        for chat_id in self.chat_ids:
            try:
                await self._app.bot.send_message(chat_id=chat_id, text=message)
            except Exception as e:
                logger.warning(f"Telegram send to {chat_id} failed: {e}")

    def _build(self) -> Application:
        app = Application.builder().token(self.token).build()
        for name, handler in (
            ("status", self._cmd_status),
            ("positions", self._cmd_positions),
            ("pause", self._cmd_pause),
            ("resume", self._cmd_resume),
            ("close_all", self._cmd_close_all),
            ("stop_all", self._cmd_stop_all),
        ):
            app.add_handler(CommandHandler(name, handler))
        app.add_handler(CallbackQueryHandler(self._on_button))
        return app

    def _serve(self):
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._app = self._build()
        self._loop.run_until_complete(self._app.initialize())
        self._loop.run_until_complete(self._app.start())
        self._loop.run_until_complete(self._app.updater.start_polling())
        logger.info(f"Telegram bot polling for {len(self.chat_ids)} operator chat(s)")
        self._loop.run_forever()

    async def _teardown(self):
        await self._app.updater.stop()
        await self._app.stop()
        await self._app.shutdown()

    def start(self):
        self._thread = threading.Thread(target=self._serve, name="telegram-bot", daemon=True)
        self._thread.start()

    def stop(self):
        if self._loop is None or self._app is None:
            return
        asyncio.run_coroutine_threadsafe(self._teardown(), self._loop).result(timeout=10)
        self._loop.call_soon_threadsafe(self._loop.stop)


def init_bot() -> TelegramBot:
    global _bot_instance
    _bot_instance = TelegramBot(settings.telegram_bot_token, settings.telegram_chat_ids)
    return _bot_instance


def get_bot() -> Optional[TelegramBot]:
    return _bot_instance
