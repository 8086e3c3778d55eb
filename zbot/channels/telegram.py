"""Telegram channel for the response engine.

TelegramChannel implements the messaging channel contract on the Bot API.
TelegramBot long-polls getUpdates and hands each incoming message to
ResponseEngine.handle_turn().

Usage:
    TELEGRAM_BOT_TOKEN=... GEMINI_API_KEY=k1,k2 python -m zbot.main

Environment:
    TELEGRAM_BOT_TOKEN  - Bot token from @BotFather
    ZBOT_ALLOWED_USERS  - Comma-separated Telegram user IDs (optional, empty = allow all)
"""

from __future__ import annotations

import asyncio
import html
import json
import logging
import time
from typing import Any

import httpx

from zbot.engine.message_store import MessageHandle, MessageStore
from zbot.engine.orchestrator import ResponseEngine
from zbot.engine.schemas import Emotion, MediaKind, MediaPart
from zbot.engine.tools import ToolContext

logger = logging.getLogger(__name__)

# Telegram Bot API base
TG_API = "https://api.telegram.org/bot{token}/{method}"
TG_FILE = "https://api.telegram.org/file/bot{token}/{path}"

# Max Telegram message length
TG_MAX_LEN = 4096

# Only emoji from Telegram's allowed reaction set
REACTION_EMOJI: dict[Emotion, str] = {
    Emotion.HEART: "❤",
    Emotion.HAHA: "\U0001f601",
    Emotion.WOW: "\U0001f631",
    Emotion.SAD: "\U0001f622",
    Emotion.ANGRY: "\U0001f621",
    Emotion.LIKE: "\U0001f44d",
}


class TelegramError(RuntimeError):
    """Bot API answered with ok=false."""


def split_message(text: str, limit: int = TG_MAX_LEN) -> list[str]:
    """Split on newlines, respecting max length. Overlong lines are cut hard."""
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


class TelegramChannel:
    """Bot API implementation of MessagingChannel."""

    def __init__(self, bot_token: str, http: httpx.AsyncClient) -> None:
        self.bot_token = bot_token
        self._http = http
        self._username: str | None = None

    async def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Call Telegram Bot API. Raises TelegramError on ok=false."""
        url = TG_API.format(token=self.bot_token, method=method)
        response = await self._http.get(url, params=params)
        data = response.json()
        if not data.get("ok"):
            logger.warning("Telegram API error on %s: %s", method, data.get("description", data))
            raise TelegramError(f"{method} failed: {data.get('description', 'unknown error')}")
        return data.get("result", {})

    def file_url(self, file_path: str) -> str:
        return TG_FILE.format(token=self.bot_token, path=file_path)

    async def username(self) -> str:
        if self._username is None:
            me = await self.call("getMe")
            self._username = me.get("username", "")
        return self._username

    def _handle(self, result: dict[str, Any], thread_id: str, text: str = "") -> MessageHandle:
        return MessageHandle(
            message_id=str(result.get("message_id", "")),
            thread_id=thread_id,
            text=text,
            sender_id=str(result.get("from", {}).get("id", "")),
            raw=result,
        )

    # ------------------------------------------------------------------
    # MessagingChannel
    # ------------------------------------------------------------------

    async def send_message(
        self,
        content: str,
        thread_id: str,
        quote: MessageHandle | None = None,
    ) -> MessageHandle | None:
        handle = None
        for i, chunk in enumerate(split_message(content)):
            params: dict[str, Any] = {"chat_id": thread_id, "text": chunk}
            if quote is not None and i == 0:
                params["reply_parameters"] = json.dumps(
                    {"message_id": int(quote.message_id), "allow_sending_without_reply": True}
                )
            result = await self.call("sendMessage", params)
            handle = self._handle(result, thread_id, chunk)
        return handle

    async def add_reaction(self, emotion: Emotion, target: MessageHandle) -> None:
        await self.call(
            "setMessageReaction",
            {
                "chat_id": target.thread_id,
                "message_id": target.message_id,
                "reaction": json.dumps([{"type": "emoji", "emoji": REACTION_EMOJI[emotion]}]),
            },
        )

    async def send_sticker(self, sticker_id: str, thread_id: str) -> MessageHandle | None:
        result = await self.call("sendSticker", {"chat_id": thread_id, "sticker": sticker_id})
        return self._handle(result, thread_id)

    async def share_contact(self, user_id: str | None, thread_id: str) -> MessageHandle | None:
        # Bot API has no contact card for arbitrary users, so send a mention link
        if user_id:
            text = f'<a href="tg://user?id={html.escape(user_id)}">Contact</a>'
            params = {"chat_id": thread_id, "text": text, "parse_mode": "HTML"}
        else:
            params = {"chat_id": thread_id, "text": f"https://t.me/{await self.username()}"}
        result = await self.call("sendMessage", params)
        return self._handle(result, thread_id, params["text"])

    async def retract(self, handle: MessageHandle) -> None:
        await self.call("deleteMessage", {"chat_id": handle.thread_id, "message_id": handle.message_id})

    async def notify_tool_use(self, thread_id: str, tool_names: list[str]) -> None:
        logger.debug("Tools running in %s: %s", thread_id, ", ".join(tool_names))
        await self.call("sendChatAction", {"chat_id": thread_id, "action": "typing"})


def build_prompt(batch: list[MessageHandle], sender_name: str, reply_to: str | None = None) -> str:
    """Render the incoming batch as indexed lines the model can refer to."""
    lines = []
    for i, handle in enumerate(batch):
        lines.append(f"[{i}] {sender_name}: {handle.text or '(media)'}")
    if reply_to:
        lines.append(f"(replying to: {reply_to})")
    return "\n".join(lines)


class TelegramBot:
    """Long-polling loop that feeds Telegram messages into the engine."""

    def __init__(
        self,
        channel: TelegramChannel,
        engine: ResponseEngine,
        store: MessageStore,
        allowed_users: set[int] | None = None,
        poll_timeout: int = 30,
    ) -> None:
        self.channel = channel
        self.engine = engine
        self.store = store
        self.allowed_users = allowed_users
        self.poll_timeout = poll_timeout
        self._offset = 0
        self._tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Start polling loop."""
        me = await self.channel.call("getMe")
        logger.info("Bot started: @%s (%s)", me.get("username"), me.get("id"))

        while True:
            try:
                updates = await self.channel.call(
                    "getUpdates",
                    {"offset": self._offset, "timeout": self.poll_timeout},
                )
                for update in updates:
                    self._offset = update["update_id"] + 1
                    # Conversations run concurrently; the engine serializes each thread
                    task = asyncio.create_task(self.handle_update(update))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except httpx.ReadTimeout:
                continue  # Normal for long polling
            except Exception as e:
                logger.error("Polling error: %s", e)
                await asyncio.sleep(5)

    async def handle_update(self, update: dict[str, Any]) -> None:
        """Handle a single Telegram update."""
        message = update.get("message")
        if not message:
            return

        chat_id = str(message["chat"]["id"])
        sender = message.get("from", {})
        user_id = sender.get("id")
        text = (message.get("text") or message.get("caption") or "").strip()

        if not text and not message.get("photo") and not message.get("voice"):
            return

        try:
            # Access control
            if self.allowed_users and user_id not in self.allowed_users:
                await self.channel.send_message("Not authorized.", chat_id)
                return

            if text == "/start":
                await self.channel.send_message("Hi! Send me a message.", chat_id)
                return

            if text == "/new":
                await self.engine.reset_thread(chat_id)
                self.store.clear(chat_id)
                await self.channel.send_message("New conversation started.", chat_id)
                return
        except Exception as e:
            logger.error("Command handling failed for %s: %s", chat_id, e)
            return

        handle = MessageHandle(
            message_id=str(message["message_id"]),
            thread_id=chat_id,
            text=text,
            sender_id=str(user_id or ""),
            timestamp=float(message.get("date") or time.time()),
            raw=message,
        )
        self.store.record_received(handle)
        batch = [handle]

        sender_name = sender.get("first_name") or sender.get("username") or "User"
        reply = message.get("reply_to_message") or {}
        prompt = build_prompt(batch, sender_name, reply.get("text") or reply.get("caption"))
        media = await self._collect_media(message)

        context = ToolContext(
            channel=self.channel,
            thread_id=chat_id,
            sender_id=str(user_id or ""),
            sender_name=sender_name,
        )
        try:
            await self.channel.call("sendChatAction", {"chat_id": chat_id, "action": "typing"})
        except Exception as e:
            logger.debug("Typing indicator failed: %s", e)

        await self.engine.handle_turn(chat_id, prompt, media, context, batch)

    async def _collect_media(self, message: dict[str, Any]) -> list[MediaPart]:
        wanted: list[tuple[MediaKind, str, str | None]] = []
        photos = message.get("photo") or []
        if photos:
            # Sizes are ascending; the last one is the original
            wanted.append((MediaKind.IMAGE, photos[-1]["file_id"], "image/jpeg"))
        voice = message.get("voice")
        if voice:
            wanted.append((MediaKind.AUDIO, voice["file_id"], voice.get("mime_type", "audio/ogg")))

        media: list[MediaPart] = []
        for kind, file_id, mime in wanted:
            try:
                info = await self.channel.call("getFile", {"file_id": file_id})
            except Exception as e:
                logger.warning("getFile failed for %s: %s", file_id, e)
                continue
            path = info.get("file_path")
            if path:
                media.append(MediaPart(kind=kind, url=self.channel.file_url(path), mime_type=mime))
        return media

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
