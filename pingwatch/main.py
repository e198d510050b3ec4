"""Command-line entry point: run the Telegram bot or stream JSON to stdout."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from telegram import BotCommand
from telegram.ext import Application, CommandHandler, MessageHandler, filters

from pingwatch.config import AppConfig, ConfigError, load_config
from pingwatch.events import ProbeEvent, to_json
from pingwatch.log_setup import attach_trace_file, setup_logging
from pingwatch.session import EndReason, ProbeSession, SessionOutcome
from pingwatch.session_manager import SessionManager
from pingwatch.telegram.commands import (
    BOT_COMMANDS,
    handle_help,
    handle_ping,
    handle_status,
    handle_stop,
    handle_unknown_command,
)

logger = logging.getLogger(__name__)


def build_session_manager(config: AppConfig) -> SessionManager:
    return SessionManager(
        argv=config.probe.argv(),
        grace_period_s=config.sessions.grace_period_s,
        read_poll_s=config.sessions.read_poll_s,
        max_duration_s=config.sessions.max_duration_s,
    )


def build_app(config: AppConfig) -> Application:
    """Build and configure the Telegram bot application."""
    app = Application.builder().token(config.telegram.bot_token).build()

    app.bot_data["config"] = config
    app.bot_data["session_manager"] = build_session_manager(config)
    app.bot_data["live_messages"] = {}

    app.add_handler(CommandHandler(["start", "help"], handle_help))
    app.add_handler(CommandHandler("ping", handle_ping))
    app.add_handler(CommandHandler("stop", handle_stop))
    app.add_handler(CommandHandler("status", handle_status))

    # Catch-all for unknown /commands so the bot never silently ignores
    app.add_handler(MessageHandler(filters.COMMAND, handle_unknown_command))

    logger.debug("App built with %d handler groups", len(app.handlers))

    return app


def _install_stop_signals(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)


def _remove_stop_signals() -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.remove_signal_handler(sig)


async def run_stdout(config: AppConfig, out=None) -> SessionOutcome:
    """Run one session writing a JSON record per event to ``out``.

    Runs until ping exits or SIGINT/SIGTERM is received.
    """
    out = out or sys.stdout

    def on_event(event: ProbeEvent) -> None:
        out.write(to_json(event) + "\n")
        out.flush()

    cancel_event = asyncio.Event()
    _install_stop_signals(cancel_event)
    try:
        session = ProbeSession(
            config.probe.argv(),
            grace_period_s=config.sessions.grace_period_s,
            read_poll_s=config.sessions.read_poll_s,
        )
        return await session.run(on_event, cancel_event)
    finally:
        _remove_stop_signals()


async def run_bot(config: AppConfig) -> None:
    app = build_app(config)

    logger.info("Starting pingwatch bot for %s...", config.probe.host)
    await app.initialize()
    await app.bot.set_my_commands(
        [BotCommand(cmd, desc) for cmd, desc in BOT_COMMANDS]
    )
    await app.start()
    await app.updater.start_polling()

    stop_event = asyncio.Event()
    _install_stop_signals(stop_event)

    logger.info("Bot is running. Press Ctrl+C to stop.")
    await stop_event.wait()

    # Second Ctrl+C during shutdown falls through to the default handler
    _remove_stop_signals()

    logger.info("Shutting down...")
    await app.updater.stop()
    session_manager = app.bot_data["session_manager"]
    await session_manager.shutdown()
    await app.stop()
    await app.shutdown()
    logger.info("Bye.")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="Live ping monitor")
    parser.add_argument("config", nargs="?", default="config.yaml",
                        help="Path to YAML config file (default: config.yaml)")
    parser.add_argument("--debug", action="store_true",
                        help="Enable debug mode (verbose logging)")
    parser.add_argument("--trace", action="store_true",
                        help="Enable trace mode (writes trace file to debug/)")
    parser.add_argument("--verbose", action="store_true",
                        help="With --trace, also send trace output to terminal")
    parser.add_argument("--stdout", action="store_true",
                        help="Print JSON events to stdout instead of running the bot")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    """Entry point. Returns the process exit status."""
    args = _parse_args(argv)
    logger = setup_logging(
        debug=args.debug, trace=args.trace, verbose=args.verbose
    )

    try:
        config = load_config(args.config, require_token=not args.stdout)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 2

    if args.debug:
        config.debug.enabled = True
    if args.trace:
        config.debug.trace = True
        trace_path = attach_trace_file(config.probe.host, config.probe.argv())
        logger.info("Trace file: %s", trace_path)
    if args.verbose:
        config.debug.verbose = True

    if args.stdout:
        outcome = await run_stdout(config)
        return 1 if outcome.reason is EndReason.SPAWN_ERROR else 0

    await run_bot(config)
    return 0
