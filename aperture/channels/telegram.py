"""Telegram channel over the Bot API with long polling.

No public endpoint is needed: the channel polls ``getUpdates`` and
hands each text message to the registry. Aperture user ids are
Telegram user ids; a private chat's id equals its user's id.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from aperture.channels.base import MessageHandler
from aperture.core.schemas import InboundMessage, Session, now_ms
from aperture.errors import ChannelError

logger = logging.getLogger(__name__)

# Telegram Bot API base
TG_API = "https://api.telegram.org/bot{token}/{method}"

# Max Telegram message length
TG_MAX_LEN = 4096


def split_message(text: str, limit: int = TG_MAX_LEN) -> list[str]:
    """Split on newlines so every chunk fits in one Telegram message.

    Lines longer than ``limit`` are hard-split.
    """
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) + 1 > limit:
            if current:
                chunks.append(current)
            current = line
        else:
            current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return chunks


def _user_name(sender: dict[str, Any], fallback: str) -> str:
    if sender.get("username"):
        return sender["username"]
    full = f"{sender.get('first_name', '')} {sender.get('last_name', '')}".strip()
    return full or fallback


class TelegramChannel:
    type = "telegram"

    def __init__(
        self,
        bot_token: str,
        allowed_users: set[str] | None = None,
        poll_timeout: int = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.bot_token = bot_token
        self.allowed_users = allowed_users or set()
        self._poll_timeout = poll_timeout
        self._transport = transport
        self._offset = 0
        self._handlers: list[MessageHandler] = []
        self._http: httpx.AsyncClient | None = None
        self._poll_task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    def on_message(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    async def connect(self) -> None:
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=self._poll_timeout + 10, write=10, pool=10),
            transport=self._transport,
        )
        me = await self._tg("getMe")
        logger.info("Telegram bot connected: @%s (%s)", me.get("username"), me.get("id"))
        self._poll_task = asyncio.create_task(self._poll_loop(), name="telegram-poll")

    async def disconnect(self) -> None:
        tasks = [t for t in (self._poll_task, *self._inflight) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = None
        if self._http:
            await self._http.aclose()
            self._http = None
        logger.info("Telegram bot stopped")

    async def send_thread_reply(self, session: Session, text: str) -> str:
        """Send ``text`` (split as needed). Returns the first message id."""
        first_id = ""
        for chunk in split_message(text):
            params: dict[str, Any] = {"chat_id": session.channel_id, "text": chunk}
            if session.thread_id:
                params["message_thread_id"] = int(session.thread_id)
            result = await self._tg("sendMessage", params)
            if not first_id:
                first_id = str(result.get("message_id", ""))
        return first_id

    async def create_dm_session(self, user_id: str) -> Session:
        """DM session; the user must have sent /start to the bot first."""
        return Session(
            session_id=f"telegram:dm:{user_id}",
            channel_type=self.type,
            channel_id=user_id,
            user_id=user_id,
        )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        while True:
            try:
                updates = await self._tg(
                    "getUpdates",
                    {"offset": self._offset, "timeout": self._poll_timeout},
                )
                for update in updates:
                    self._offset = update["update_id"] + 1
                    await self._handle_update(update)
            except asyncio.CancelledError:
                break
            except httpx.ReadTimeout:
                continue  # Normal for long polling
            except Exception:
                logger.exception("Telegram polling error")
                await asyncio.sleep(5)

    async def _handle_update(self, update: dict[str, Any]) -> None:
        msg = update.get("message")
        if not msg:
            return
        text = (msg.get("text") or "").strip()
        if not text:
            return

        chat = msg["chat"]
        chat_id = str(chat["id"])
        sender = msg.get("from", {})
        user_id = str(sender.get("id", chat_id))

        if self.allowed_users and user_id not in self.allowed_users:
            logger.info("Rejected message from unauthorized Telegram user %s", user_id)
            await self._tg("sendMessage", {"chat_id": chat_id, "text": "Not authorized."})
            return

        if text == "/start":
            await self._tg("sendMessage", {"chat_id": chat_id, "text": f"Connected. Your chat ID: {chat_id}"})
            return

        # In groups, strip bot mentions from the text
        if chat.get("type") in ("group", "supergroup"):
            for entity in msg.get("entities") or []:
                if entity.get("type") == "mention":
                    mention = msg["text"][entity["offset"]: entity["offset"] + entity["length"]]
                    text = text.replace(mention, "").strip()
            if not text:
                return

        thread = msg.get("message_thread_id")
        thread_id = str(thread) if thread else None
        session = Session.for_conversation(self.type, chat_id, user_id, thread_id)
        message = InboundMessage(
            id=str(msg["message_id"]),
            channel_id=chat_id,
            thread_id=thread_id,
            user_id=user_id,
            user_name=_user_name(sender, user_id),
            text=text,
            timestamp=int(msg["date"]) * 1000 if msg.get("date") else now_ms(),
        )
        logger.debug("Incoming Telegram message from %s in %s", user_id, session.session_id)

        # Handlers run the whole turn; don't stall polling behind them
        for handler in self._handlers:
            task = asyncio.create_task(handler(message, session), name=f"tg-{message.id}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _tg(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Call a Bot API method. Raises ChannelError if Telegram says not ok."""
        if not self._http:
            raise ChannelError("Telegram channel not connected")
        url = TG_API.format(token=self.bot_token, method=method)
        response = await self._http.post(url, json=params or {})
        try:
            data = response.json()
        except ValueError as e:
            raise ChannelError(f"Telegram {method}: HTTP {response.status_code}", e) from e
        if not data.get("ok"):
            raise ChannelError(f"Telegram {method} failed: {data.get('description', data)}")
        return data.get("result", {})
