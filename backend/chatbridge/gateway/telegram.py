"""
Telegram adapter: wraps python-telegram-bot long polling and forwards text
(or media captions) from private chats to the bridge.
"""
from __future__ import annotations

import logging

from telegram import Update
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from chatbridge.config.settings import ConfigurationError
from chatbridge.gateway.base import ChannelAdapter, MessageHandler as InboundHandler

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 4096
GROUP_CHAT_TYPES = frozenset({"group", "supergroup", "channel"})


async def _error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("PTB unhandled exception: %s", context.error, exc_info=context.error)


class TelegramAdapter(ChannelAdapter):
    name = "telegram"
    max_text_length = MAX_TEXT_LENGTH

    def __init__(
        self,
        token: str | None,
        on_message: InboundHandler,
        *,
        groups_enabled: bool = False,
        application: Application | None = None,
    ) -> None:
        if not token:
            raise ConfigurationError("TELEGRAM_BOT_TOKEN is required for Telegram adapter")
        super().__init__(on_message, groups_enabled=groups_enabled)
        self._app = application or Application.builder().token(token).build()
        self._app.add_handler(
            MessageHandler(
                (filters.TEXT | filters.CAPTION) & ~filters.UpdateType.EDITED,
                self._handle_update,
            )
        )
        self._app.add_error_handler(_error_handler)

    async def _handle_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        msg = update.effective_message
        chat = update.effective_chat
        if msg is None or chat is None:
            return
        text = msg.text or msg.caption or ""
        await self.dispatch(str(chat.id), text, is_group=chat.type in GROUP_CHAT_TYPES, raw=msg)

    async def start(self) -> None:  # pragma: no cover
        await self._app.initialize()
        await self._app.start()
        await self._app.updater.start_polling()
        self._running = True
        logger.info("Telegram adapter started")

    async def stop(self) -> None:  # pragma: no cover
        if not self._running:
            return
        self._running = False
        await self._app.updater.stop()
        await self._app.stop()
        await self._app.shutdown()
        logger.info("Telegram adapter stopped")

    async def send_text(self, peer_id: str, text: str) -> None:
        await self._app.bot.send_message(chat_id=int(peer_id), text=text)
