"""Telegram channel adapter."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, ClassVar

from loguru import logger
from telegram import Message, Update
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters
from telegramify_markdown import markdownify as md

from parley.channels.base import BaseChannel
from parley.channels.bus import MessageBus
from parley.channels.events import InboundMessage, OutboundMessage

MAX_MESSAGE_BYTES = 4000
SESSION_COMMANDS = ("reset", "clear", "status", "model", "help")
TYPING_INTERVAL_SECONDS = 4


class ParleyMessageFilter(filters.MessageFilter):
    GROUP_CHAT_TYPES: ClassVar[set[str]] = {"group", "supergroup"}

    def filter(self, message: Message) -> bool | dict[str, list[Any]] | None:
        text = message.text
        if not text:
            return False

        # Commands are handled by their own handlers.
        if message.chat.type == "private":
            return not filters.COMMAND.filter(message)

        # Groups: only mentions and replies to the bot.
        if message.chat.type in self.GROUP_CHAT_TYPES:
            bot = message.get_bot()
            if self._mentions_bot(message, text, bot.id, (bot.username or "").lower()):
                return True
            reply_to = message.reply_to_message
            return reply_to is not None and reply_to.from_user is not None and reply_to.from_user.id == bot.id

        return False

    @staticmethod
    def _mentions_bot(message: Message, text: str, bot_id: int, bot_username: str) -> bool:
        for entity in message.entities or ():
            if entity.type == "mention" and bot_username:
                if text[entity.offset : entity.offset + entity.length].lower() == f"@{bot_username}":
                    return True
                continue
            if entity.type == "text_mention" and entity.user and entity.user.id == bot_id:
                return True
        return False


@dataclass(frozen=True)
class TelegramConfig:
    """Telegram adapter config."""

    token: str
    allow_from: set[str] = field(default_factory=set)


class TelegramChannel(BaseChannel):
    """Telegram adapter using long polling; each sender gets its own session."""

    name = "telegram"

    def __init__(self, bus: MessageBus, config: TelegramConfig) -> None:
        super().__init__(bus)
        self._config = config
        self._app: Application | None = None
        self._stopped = asyncio.Event()
        self._typing_tasks: dict[str, asyncio.Task[None]] = {}

    def is_allowed(self, user_id: int | str, username: str | None) -> bool:
        if not self._config.allow_from:
            return True
        tokens = {str(user_id)}
        if username:
            tokens.add(username)
        return not tokens.isdisjoint(self._config.allow_from)

    async def start(self) -> None:
        if not self._config.token:
            raise RuntimeError("telegram token is empty")
        logger.info("telegram.channel.start allow_from_count={}", len(self._config.allow_from))
        self._stopped.clear()
        self._app = Application.builder().token(self._config.token).build()
        self._app.add_handler(CommandHandler("start", self._on_start))
        self._app.add_handler(CommandHandler(list(SESSION_COMMANDS), self._on_text, block=False))
        self._app.add_handler(MessageHandler(ParleyMessageFilter(), self._on_text, block=False))
        await self._app.initialize()
        await self._app.start()
        updater = self._app.updater
        if updater is None:
            return
        await updater.start_polling(drop_pending_updates=True, allowed_updates=["message"])
        logger.info("telegram.channel.polling")
        await self._stopped.wait()

    async def stop(self) -> None:
        self._stopped.set()
        for task in self._typing_tasks.values():
            task.cancel()
        self._typing_tasks.clear()
        if self._app is None:
            return
        updater = self._app.updater
        if updater is not None and updater.running:
            await updater.stop()
        await self._app.stop()
        await self._app.shutdown()
        self._app = None
        logger.info("telegram.channel.stopped")

    async def send(self, message: OutboundMessage) -> None:
        if self._app is None:
            return
        self._stop_typing(message.chat_id)

        text = md(message.content)
        if len(text.encode("utf-8")) > MAX_MESSAGE_BYTES:
            text = f"<blockquote expandable>{text}</blockquote>"
            parse_mode = "HTML"
        else:
            parse_mode = "MarkdownV2"

        await self._app.bot.send_message(
            chat_id=int(message.chat_id),
            text=text,
            parse_mode=parse_mode,
            reply_to_message_id=message.reply_to_message_id,
        )

    async def finished(self, message: InboundMessage) -> None:
        self._stop_typing(message.chat_id)

    async def _on_start(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.message is None:
            return
        await update.message.reply_text("Parley is online. Send text to start, or /help for commands.")

    async def _on_text(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.message is None or update.effective_user is None:
            return
        user = update.effective_user
        if not self.is_allowed(user.id, user.username):
            await update.message.reply_text("Access denied.")
            return

        chat_id = str(update.message.chat_id)
        text = (update.message.text or "").strip()
        if not text:
            return

        logger.info(
            "telegram.channel.inbound chat_id={} sender_id={} username={} content={}",
            chat_id,
            user.id,
            user.username or "",
            text[:100],
        )

        self._start_typing(chat_id)
        await self.publish_inbound(
            InboundMessage(
                channel=self.name,
                sender_id=str(user.id),
                chat_id=chat_id,
                content=text,
                metadata={
                    "username": user.username or "",
                    "message_id": update.message.message_id,
                },
            )
        )

    def _start_typing(self, chat_id: str) -> None:
        self._stop_typing(chat_id)
        self._typing_tasks[chat_id] = asyncio.create_task(self._typing_loop(chat_id))

    def _stop_typing(self, chat_id: str) -> None:
        task = self._typing_tasks.pop(chat_id, None)
        if task is not None:
            task.cancel()

    async def _typing_loop(self, chat_id: str) -> None:
        try:
            while self._app is not None:
                await self._app.bot.send_chat_action(chat_id=int(chat_id), action="typing")
                await asyncio.sleep(TYPING_INTERVAL_SECONDS)
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("telegram.channel.typing_loop.error chat_id={}", chat_id)
