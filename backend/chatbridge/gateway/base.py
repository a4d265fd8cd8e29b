"""
Base channel adapter: abstract class with the inbound gating shared by all channels.

Subclasses: TelegramAdapter, WhatsAppAdapter
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class InboundMessage:
    channel: str
    peer_id: str
    text: str
    raw: Any = field(default=None, repr=False)


MessageHandler = Callable[[InboundMessage], Awaitable[None]]


class ChannelAdapter(ABC):
    name: str
    max_text_length: int

    def __init__(self, on_message: MessageHandler, *, groups_enabled: bool = False) -> None:
        self.on_message = on_message
        self.groups_enabled = groups_enabled
        self._running = False

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def send_text(self, peer_id: str, text: str) -> None: ...

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Common helpers ─────────────────────────────────────────────────────

    def accepts(self, *, is_group: bool, text: str | None) -> bool:
        """Group and empty-text gating applied before a message is forwarded."""
        if is_group and not self.groups_enabled:
            return False
        return bool(text and text.strip())

    async def dispatch(self, peer_id: str, text: str | None, *, is_group: bool, raw: Any = None) -> bool:
        """Forward one inbound message if it passes gating. Returns True if forwarded."""
        if not self.accepts(is_group=is_group, text=text):
            logger.debug("Dropped inbound message", extra={"channel": self.name, "peer_id": peer_id})
            return False
        await self.on_message(InboundMessage(channel=self.name, peer_id=peer_id, text=text, raw=raw))
        return True
