from __future__ import annotations

"""Telegram delivery for alerts and reminders, plus the inbound command listener."""

import asyncio
import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Sequence, Tuple

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import NetworkError, RetryAfter, TimedOut
from telegram.request import HTTPXRequest

logger = logging.getLogger(__name__)

CAPTION_LIMIT = 1024
MESSAGE_LIMIT = 4096


@dataclass(frozen=True)
class InteractiveControl:
    """One inline button; `token` is an opaque key into a ControlRegistry."""

    label: str
    token: str


class NotificationDispatcher(Protocol):
    def send(
        self,
        recipient: str,
        text: str,
        image: Optional[bytes] = None,
        controls: Optional[Sequence[InteractiveControl]] = None,
    ) -> bool:
        ...


class ControlRegistry:
    """Bounded lookup table from generated button tokens to actions.

    Button payloads carry only the token; the action and its arguments stay
    server-side.
    """

    def __init__(self, max_entries: int = 512) -> None:
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, Tuple[str, Dict[str, Any]]]" = OrderedDict()
        self._lock = threading.Lock()

    def register(self, action: str, **args: Any) -> str:
        token = uuid.uuid4().hex[:16]
        with self._lock:
            self._entries[token] = (action, dict(args))
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return token

    def resolve(self, token: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            entry = self._entries.get(token)
        if entry is None:
            return None
        action, args = entry
        return action, dict(args)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def build_keyboard(controls: Optional[Sequence[InteractiveControl]]) -> Optional[InlineKeyboardMarkup]:
    """One button per row, matching the alert layout of the bot."""
    if not controls:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(control.label, callback_data=control.token)] for control in controls]
    )


@dataclass
class TelegramEvent:
    """Normalized inbound Telegram event for commands and button presses."""

    text: str
    chat_id: str
    message_id: Optional[int] = None
    callback_token: Optional[str] = None
    callback_query_id: Optional[str] = None


class TelegramNotifier:
    """NotificationDispatcher backed by python-telegram-bot.

    Worker threads call `send` synchronously; the coroutines run on a private
    asyncio loop thread.
    """

    def __init__(
        self,
        bot_token: str,
        chat_id: str = "",
        authorized_chats: Iterable[str] = (),
        bot: Any = None,
        retry_base_delay: float = 1.5,
    ) -> None:
        """A bot is created from `bot_token` unless one is injected; either enables sending."""
        self.enabled = bool(bot_token) or bot is not None
        self.chat_id = chat_id
        self.authorized_chats = {str(chat).strip() for chat in authorized_chats if str(chat).strip()}
        if chat_id:
            self.authorized_chats.add(str(chat_id).strip())
        self.retry_base_delay = retry_base_delay
        self.bot = bot
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: threading.Thread | None = None
        self._listener_thread: threading.Thread | None = None
        self._listener_stop = threading.Event()
        self._update_offset = 0
        self._send_lock = threading.Lock()

        if self.enabled:
            if self.bot is None:
                request = HTTPXRequest(
                    connection_pool_size=20,
                    pool_timeout=30.0,
                    connect_timeout=10.0,
                    read_timeout=30.0,
                    write_timeout=30.0,
                )
                self.bot = Bot(token=bot_token, request=request)
            self._loop = asyncio.new_event_loop()
            self._loop_thread = threading.Thread(target=self._run_loop, name="telegram-loop", daemon=True)
            self._loop_thread.start()

    def _run_loop(self) -> None:
        """Body of the thread that owns the bot's event loop."""
        if self._loop is None:
            return
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def is_authorized(self, chat_id: str) -> bool:
        return not self.authorized_chats or str(chat_id).strip() in self.authorized_chats

    async def _send_async(
        self,
        recipient: str,
        text: str,
        image: Optional[bytes],
        reply_markup: Optional[InlineKeyboardMarkup],
    ) -> None:
        """Send a photo with caption, or a plain text message."""
        if image:
            await self.bot.send_photo(
                chat_id=recipient,
                photo=image,
                caption=_clip(text, CAPTION_LIMIT),
                reply_markup=reply_markup,
                pool_timeout=30.0,
                connect_timeout=10.0,
                read_timeout=30.0,
                write_timeout=30.0,
            )
            return
        await self.bot.send_message(
            chat_id=recipient,
            text=_clip(text, MESSAGE_LIMIT),
            reply_markup=reply_markup,
            pool_timeout=30.0,
            connect_timeout=10.0,
            read_timeout=30.0,
            write_timeout=30.0,
        )

    async def _get_updates_async(self, offset: int):
        """Long-poll messages and button presses."""
        return await self.bot.get_updates(
            offset=offset,
            timeout=25,
            allowed_updates=["message", "callback_query"],
        )

    async def _answer_callback_async(self, callback_query_id: str, text: Optional[str]) -> None:
        await self.bot.answer_callback_query(callback_query_id=callback_query_id, text=text)

    def send(
        self,
        recipient: str,
        text: str,
        image: Optional[bytes] = None,
        controls: Optional[Sequence[InteractiveControl]] = None,
    ) -> bool:
        """Synchronously deliver one message with retry/backoff; never raises."""
        if not self.enabled or self._loop is None:
            logger.info("Telegram not configured; skipping message to %s.", recipient)
            return False

        reply_markup = build_keyboard(controls)
        with self._send_lock:
            attempts = 3
            for attempt in range(1, attempts + 1):
                try:
                    future = asyncio.run_coroutine_threadsafe(
                        self._send_async(recipient, text, image, reply_markup),
                        self._loop,
                    )
                    future.result(timeout=90)
                    return True
                except RetryAfter as exc:
                    delay = float(getattr(exc, "retry_after", 2))
                    logger.warning("Telegram rate-limited; retrying in %.1fs (attempt %d/%d)", delay, attempt, attempts)
                    time.sleep(delay)
                except (TimedOut, NetworkError) as exc:
                    delay = self.retry_base_delay * attempt
                    logger.warning(
                        "Telegram send failed (%s); retrying in %.1fs (attempt %d/%d)",
                        exc,
                        delay,
                        attempt,
                        attempts,
                    )
                    time.sleep(delay)
                except Exception as exc:
                    logger.exception("Unexpected Telegram error: %s", exc)
                    return False

        logger.error("Telegram send to %s failed after %d attempts", recipient, attempts)
        return False

    def answer_callback(self, callback_query_id: str, text: Optional[str] = None) -> None:
        """Acknowledge a button press so the client stops its spinner."""
        if not self.enabled or self._loop is None:
            return
        try:
            future = asyncio.run_coroutine_threadsafe(
                self._answer_callback_async(callback_query_id, text),
                self._loop,
            )
            future.result(timeout=30)
        except Exception:
            logger.warning("Failed answering Telegram callback %s", callback_query_id, exc_info=True)

    def _event_from_update(self, update: Any) -> Optional[TelegramEvent]:
        """Normalize a message or callback query update; None when not handled."""
        message = getattr(update, "message", None)
        if message is not None:
            text = (getattr(message, "text", None) or "").strip()
            incoming_chat = str(getattr(message, "chat_id", "")).strip()
            if not text:
                return None
            return TelegramEvent(
                text=text,
                chat_id=incoming_chat,
                message_id=int(getattr(message, "message_id", 0) or 0) or None,
            )

        callback = getattr(update, "callback_query", None)
        if callback is None:
            return None
        callback_message = getattr(callback, "message", None)
        chat = getattr(callback_message, "chat", None)
        incoming_chat = str(getattr(chat, "id", "")).strip()
        return TelegramEvent(
            text="",
            chat_id=incoming_chat,
            message_id=int(getattr(callback_message, "message_id", 0) or 0) or None,
            callback_token=(getattr(callback, "data", None) or "").strip() or None,
            callback_query_id=str(getattr(callback, "id", "") or "") or None,
        )

    def dispatch_update(self, update: Any, command_handler: Callable[[TelegramEvent], Optional[str]]) -> None:
        """Route one update to the handler and send its reply back to the chat."""
        event = self._event_from_update(update)
        if event is None:
            return
        # Restrict command handling to the configured chats for safety.
        if not self.is_authorized(event.chat_id):
            logger.warning("Ignoring Telegram update from unauthorized chat %s", event.chat_id)
            if event.callback_query_id:
                self.answer_callback(event.callback_query_id, "Not authorized")
            return

        try:
            reply = command_handler(event)
        except Exception:
            logger.exception("Telegram command handler failed")
            reply = "Something went wrong while handling that request."

        if event.callback_query_id:
            self.answer_callback(event.callback_query_id, reply[:190] if reply else None)
        if reply:
            self.send(event.chat_id, reply)

    def start_command_listener(self, command_handler: Callable[[TelegramEvent], Optional[str]]) -> None:
        """Feed inbound commands and button presses to `command_handler` on a daemon thread."""
        if not self.enabled or self._loop is None:
            return
        if self._listener_thread is not None:
            return

        def _loop() -> None:
            while not self._listener_stop.is_set():
                try:
                    future = asyncio.run_coroutine_threadsafe(
                        self._get_updates_async(offset=self._update_offset),
                        self._loop,
                    )
                    updates = future.result(timeout=40)
                except Exception:
                    logger.exception("Telegram command poll failed")
                    self._listener_stop.wait(timeout=2.0)
                    continue

                for update in updates:
                    self._update_offset = int(update.update_id) + 1
                    self.dispatch_update(update, command_handler)

        self._listener_thread = threading.Thread(target=_loop, name="telegram-command-listener", daemon=True)
        self._listener_thread.start()

    def close(self) -> None:
        """Stop the listener and the event loop thread."""
        self._listener_stop.set()
        if self._listener_thread is not None:
            self._listener_thread.join(timeout=2)
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=2)
