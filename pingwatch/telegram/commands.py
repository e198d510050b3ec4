from __future__ import annotations

import logging
from datetime import datetime, timezone

from telegram import Update
from telegram.error import Forbidden
from telegram.ext import ContextTypes

from pingwatch.events import ProbeEvent
from pingwatch.session import SessionOutcome
from pingwatch.session_manager import SessionError
from pingwatch.telegram.formatter import format_outcome, format_summary
from pingwatch.telegram.live_message import LiveMessage

logger = logging.getLogger(__name__)

BOT_COMMANDS = [
    ("ping", "Start streaming ping results"),
    ("stop", "Stop the running ping session"),
    ("status", "Show the running session"),
    ("help", "Show usage"),
]

HELP_TEXT = (
    "I ping {host} and post the results live.\n\n"
    "/ping - start streaming results\n"
    "/stop - stop the session\n"
    "/status - show the running session"
)


async def handle_help(
    update: Update, context: ContextTypes.DEFAULT_TYPE
) -> None:
    """Handle /start and /help by describing the available commands."""
    config = context.bot_data["config"]
    await update.message.reply_text(HELP_TEXT.format(host=config.probe.host))


async def handle_ping(
    update: Update, context: ContextTypes.DEFAULT_TYPE
) -> None:
    """Handle the /ping command by starting a session for this chat.

    Events go to a LiveMessage for the chat. If Telegram refuses
    delivery because the user blocked the bot, the session is cancelled
    as if the user had sent /stop. When the session closes for any
    reason, the outcome is posted once.

    Args:
        update: Incoming Telegram update containing the /ping command.
        context: Bot context providing access to bot_data (config,
            session_manager, live_messages).
    """
    chat_id = update.effective_chat.id
    logger.debug("handle_ping chat_id=%d", chat_id)
    config = context.bot_data["config"]
    session_manager = context.bot_data["session_manager"]
    live_messages = context.bot_data.setdefault("live_messages", {})

    if session_manager.is_running(chat_id):
        await update.message.reply_text(
            "A ping session is already running. Use /stop first."
        )
        return

    live = LiveMessage(
        bot=context.bot,
        chat_id=chat_id,
        host=config.probe.host,
        window_size=config.telegram.window_size,
        edit_rate_limit=config.telegram.edit_rate_limit,
    )

    async def on_event(event: ProbeEvent) -> None:
        try:
            await live.push(event)
        except Forbidden:
            logger.info("Chat %d blocked the bot, cancelling its session", chat_id)
            managed = session_manager.get(chat_id)
            if managed is not None:
                managed.cancel()

    async def on_closed(subscriber_id: int, outcome: SessionOutcome) -> None:
        if live_messages.get(subscriber_id) is live:
            del live_messages[subscriber_id]
        try:
            await live.finalize()
            await context.bot.send_message(
                chat_id=subscriber_id,
                text=format_outcome(outcome),
                parse_mode="HTML",
            )
        except Forbidden:
            logger.debug("Chat %d unreachable, outcome not posted", subscriber_id)

    try:
        session_manager.start(chat_id, on_event, on_closed)
    except SessionError as exc:
        await update.message.reply_text(str(exc))
        return
    live_messages[chat_id] = live
    await update.message.reply_text(f"Pinging {config.probe.host}...")


async def handle_stop(
    update: Update, context: ContextTypes.DEFAULT_TYPE
) -> None:
    """Handle the /stop command by cancelling this chat's session.

    Waits for the probe to be terminated; the outcome message itself is
    posted by the session's close callback.
    """
    chat_id = update.effective_chat.id
    logger.debug("handle_stop chat_id=%d", chat_id)
    session_manager = context.bot_data["session_manager"]
    try:
        await session_manager.stop(chat_id)
    except SessionError as exc:
        await update.message.reply_text(str(exc))


async def handle_status(
    update: Update, context: ContextTypes.DEFAULT_TYPE
) -> None:
    """Handle the /status command by summarizing this chat's session."""
    chat_id = update.effective_chat.id
    session_manager = context.bot_data["session_manager"]
    managed = session_manager.get(chat_id)
    if managed is None:
        await update.message.reply_text("No ping session is running.")
        return

    elapsed = datetime.now(timezone.utc) - managed.started_at
    lines = [
        f"Session phase: {managed.session.phase.value}",
        f"Running for {int(elapsed.total_seconds())}s",
        f"Lines read: {managed.session.lines_read}",
        f"Events delivered: {managed.session.events_delivered}",
    ]
    live = context.bot_data.get("live_messages", {}).get(chat_id)
    if live is not None:
        lines.append(format_summary(live.window))
    await update.message.reply_text("\n".join(lines))


async def handle_unknown_command(
    update: Update, context: ContextTypes.DEFAULT_TYPE
) -> None:
    """Reply to unrecognized /commands instead of ignoring them."""
    await update.message.reply_text("Unknown command. Try /help.")
