"""LiveMessage: edit-in-place ping results for one Telegram chat."""

from __future__ import annotations

import logging
import time

from telegram import Bot
from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter

from pingwatch.events import ProbeEvent
from pingwatch.telegram.formatter import EventWindow, format_live

logger = logging.getLogger(__name__)


class LiveMessage:
    """Keeps one Telegram message showing the latest probe events.

    The first event sends the message; later events edit it in place at
    most ``edit_rate_limit`` times per second. Events that arrive between
    edits are folded into the next one, and finalize() flushes whatever
    is still pending.
    """

    def __init__(
        self,
        bot: Bot,
        chat_id: int,
        host: str,
        window_size: int = 15,
        edit_rate_limit: int = 1,
    ) -> None:
        """Initialize the live message without sending anything.

        Args:
            bot: Telegram Bot instance for API calls.
            chat_id: Telegram chat ID to send messages to.
            host: Probe target, shown in the header.
            window_size: Number of recent events kept in the message.
            edit_rate_limit: Maximum edit_message calls per second.
        """
        self.bot = bot
        self.chat_id = chat_id
        self.host = host
        self.edit_rate_limit = edit_rate_limit
        self.window = EventWindow(window_size)
        self.message_id: int | None = None
        self.last_edit_time: float = 0
        self.dirty = False

    async def push(self, event: ProbeEvent) -> None:
        """Add an event and update the message if the throttle allows.

        Raises:
            Forbidden: The user blocked the bot. The caller treats this
                as the subscriber going away.
        """
        self.window.add(event)
        self.dirty = True

        now = time.monotonic()
        if self.message_id is None:
            # A failed first send is retried on the next push
            if now < self.last_edit_time:
                return
            await self._send()
            return

        min_interval = 1.0 / self.edit_rate_limit
        if now - self.last_edit_time < min_interval:
            return

        await self._edit()

    async def finalize(self) -> None:
        """Flush any events not yet shown."""
        if not self.dirty:
            return
        if self.message_id is None:
            await self._send()
        else:
            await self._edit()

    async def _send(self) -> None:
        """Send the message that later events edit in place."""
        try:
            msg = await self.bot.send_message(
                chat_id=self.chat_id,
                text=format_live(self.host, self.window),
                parse_mode="HTML",
            )
            self.message_id = msg.message_id
            self.last_edit_time = time.monotonic()
            self.dirty = False
        except RetryAfter as exc:
            logger.warning(
                "Rate limited by Telegram, backing off %ss", exc.retry_after
            )
            self._back_off(exc.retry_after)
        except Forbidden:
            raise
        except (BadRequest, NetworkError) as exc:
            logger.warning("send_message failed: %s", exc)

    async def _edit(self) -> None:
        """Edit the message with the current window."""
        if self.message_id is None:
            return
        try:
            await self.bot.edit_message_text(
                chat_id=self.chat_id,
                message_id=self.message_id,
                text=format_live(self.host, self.window),
                parse_mode="HTML",
            )
            self.last_edit_time = time.monotonic()
            self.dirty = False
        except BadRequest as exc:
            if "message is not modified" in str(exc).lower():
                self.dirty = False
            else:
                logger.warning("edit_message BadRequest: %s", exc)
        except RetryAfter as exc:
            logger.warning(
                "Rate limited by Telegram, backing off %ss", exc.retry_after
            )
            self._back_off(exc.retry_after)
        except Forbidden:
            raise
        except NetworkError as exc:
            logger.warning("edit_message network error: %s", exc)

    def _back_off(self, retry_after) -> None:
        # Push last_edit_time forward so the throttle covers the backoff
        if not isinstance(retry_after, (int, float)):
            retry_after = retry_after.total_seconds()
        self.last_edit_time = time.monotonic() + retry_after
