"""Tests for the Telegram command handlers."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import Forbidden

from pingwatch.session import EndReason
from pingwatch.session_manager import SessionManager
from pingwatch.telegram.commands import (
    handle_help,
    handle_ping,
    handle_status,
    handle_stop,
    handle_unknown_command,
)
from pingwatch.telegram.live_message import LiveMessage
from tests.conftest import TIMEOUT, printf_lines, sh, wait_until

LOOPING_PROBE = sh(f"while true; do echo '{TIMEOUT}'; sleep 0.05; done")


def _with_manager(context, argv):
    manager = SessionManager(argv=argv, grace_period_s=1.0, read_poll_s=0.1)
    context.bot_data["session_manager"] = manager
    return manager


class TestHandleHelp:
    @pytest.mark.asyncio
    async def test_mentions_host_and_commands(self, mock_update, mock_context):
        await handle_help(mock_update, mock_context)
        text = mock_update.message.reply_text.call_args.args[0]
        assert "chatwork.com" in text
        assert "/ping" in text
        assert "/stop" in text


class TestHandlePing:
    @pytest.mark.asyncio
    async def test_starts_session_and_streams(self, mock_update, mock_context):
        manager = _with_manager(mock_context, LOOPING_PROBE)
        await handle_ping(mock_update, mock_context)

        assert manager.is_running(111)
        assert isinstance(mock_context.bot_data["live_messages"][111], LiveMessage)
        mock_update.message.reply_text.assert_called_once_with("Pinging chatwork.com...")

        await wait_until(lambda: mock_context.bot.send_message.call_count >= 1)
        first = mock_context.bot.send_message.call_args_list[0].kwargs
        assert first["chat_id"] == 111
        assert "Timed out #912" in first["text"]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_rejects_second_session(self, mock_update, mock_context):
        manager = _with_manager(mock_context, LOOPING_PROBE)
        await handle_ping(mock_update, mock_context)
        await handle_ping(mock_update, mock_context)
        last = mock_update.message.reply_text.call_args.args[0]
        assert "already running" in last
        assert manager.active_count() == 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_outcome_posted_on_end(self, mock_update, mock_context):
        manager = _with_manager(mock_context, printf_lines(TIMEOUT))
        await handle_ping(mock_update, mock_context)
        managed = manager.get(111)
        outcome = await managed.task

        assert outcome.reason is EndReason.END_OF_STREAM
        final = mock_context.bot.send_message.call_args.kwargs
        assert "ping exited" in final["text"]
        assert 111 not in mock_context.bot_data["live_messages"]

    @pytest.mark.asyncio
    async def test_blocked_bot_cancels_session(self, mock_update, mock_context):
        manager = _with_manager(mock_context, LOOPING_PROBE)
        mock_context.bot.send_message.side_effect = Forbidden("bot was blocked by the user")
        await handle_ping(mock_update, mock_context)
        managed = manager.get(111)
        outcome = await asyncio.wait_for(managed.task, timeout=5.0)
        assert outcome.reason is EndReason.CANCELLED
        assert not manager.is_running(111)


class TestHandleStop:
    @pytest.mark.asyncio
    async def test_stops_running_session(self, mock_update, mock_context):
        manager = _with_manager(mock_context, LOOPING_PROBE)
        await handle_ping(mock_update, mock_context)
        managed = manager.get(111)

        await handle_stop(mock_update, mock_context)

        assert not manager.is_running(111)
        assert managed.outcome.reason is EndReason.CANCELLED
        assert not managed.session.process.is_alive()
        final = mock_context.bot.send_message.call_args.kwargs
        assert "stopped" in final["text"]

    @pytest.mark.asyncio
    async def test_no_session(self, mock_update, mock_context):
        _with_manager(mock_context, LOOPING_PROBE)
        await handle_stop(mock_update, mock_context)
        mock_update.message.reply_text.assert_called_once_with(
            "No ping session is running."
        )


class TestHandleStatus:
    @pytest.mark.asyncio
    async def test_no_session(self, mock_update, mock_context):
        _with_manager(mock_context, LOOPING_PROBE)
        await handle_status(mock_update, mock_context)
        mock_update.message.reply_text.assert_called_once_with(
            "No ping session is running."
        )

    @pytest.mark.asyncio
    async def test_running_session(self, mock_update, mock_context):
        manager = _with_manager(mock_context, LOOPING_PROBE)
        await handle_ping(mock_update, mock_context)
        managed = manager.get(111)
        await wait_until(lambda: managed.session.events_delivered >= 1)

        await handle_status(mock_update, mock_context)
        text = mock_update.message.reply_text.call_args.args[0]
        assert "Session phase: streaming" in text
        assert "Events delivered:" in text
        assert "sent " in text
        await manager.shutdown()


class TestHandleUnknownCommand:
    @pytest.mark.asyncio
    async def test_replies(self):
        update = MagicMock()
        update.message.reply_text = AsyncMock()
        await handle_unknown_command(update, MagicMock())
        update.message.reply_text.assert_called_once()
