import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

FIXED_NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

BANNER = "PING chatwork.com (143.204.82.104): 56 data bytes"
REPLY = "14:36:04.394181 64 bytes from 172.217.27.78: icmp_seq=53 ttl=119 time=12.082 ms"
TIMEOUT = "Request timeout for icmp_seq 912"
NO_ROUTE = "ping: sendto: No route to host"


def sh(script: str) -> list[str]:
    """argv running ``script`` under /bin/sh, used as a fake probe."""
    return ["/bin/sh", "-c", script]


def printf_lines(*lines: str) -> list[str]:
    """argv for a fake probe that prints ``lines`` and exits."""
    body = "".join(line.replace("'", "") + "\\n" for line in lines)
    return sh(f"printf '{body}'")


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_event_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def mock_update():
    """Create a mock Telegram Update for chat 111."""
    update = MagicMock()
    update.effective_chat.id = 111
    update.effective_user.id = 111
    update.message.reply_text = AsyncMock()
    return update


@pytest.fixture
def mock_context():
    """Create a mock context with a config and a mocked bot."""
    context = MagicMock()
    config = MagicMock()
    config.probe.host = "chatwork.com"
    config.telegram.window_size = 5
    config.telegram.edit_rate_limit = 1
    context.bot_data = {"config": config, "live_messages": {}}
    context.bot = AsyncMock()
    context.bot.send_message.return_value = MagicMock(message_id=42)
    return context
