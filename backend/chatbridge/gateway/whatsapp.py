"""
WhatsApp adapter: multi-device encrypted channel on top of SecureSessionManager.

The wire protocol is provided by a transport factory configured as
``module:attribute`` in WHATSAPP_TRANSPORT; see whatsapp_session for the hooks
a transport must call.
"""
from __future__ import annotations

import asyncio
import importlib
import logging
from pathlib import Path

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, wait_exponential

from chatbridge.config.settings import ConfigurationError, Settings
from chatbridge.gateway.base import ChannelAdapter, MessageHandler
from chatbridge.gateway.whatsapp_session import (
    LOGGED_OUT_STATUS,
    ConnectionClosedError,
    ConnectionState,
    SecureSessionError,
    SecureSessionManager,
    TransportFactory,
    WireMessage,
    disconnect_status_code,
)

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 4000
USER_SERVER = "s.whatsapp.net"


def load_transport_factory(path: str | None) -> TransportFactory:
    if not path:
        raise ConfigurationError("WHATSAPP_TRANSPORT is required for WhatsApp adapter")
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"WHATSAPP_TRANSPORT must look like 'module:factory', got {path!r}")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigurationError(f"Cannot load WhatsApp transport {path!r}: {exc}") from exc


def is_group_jid(jid: str) -> bool:
    return jid.endswith("@g.us") or jid.endswith("@broadcast")


def jid_to_peer(jid: str) -> str:
    """'15551234567:3@s.whatsapp.net' -> '+15551234567'; other JIDs are kept as-is."""
    user, _, server = jid.partition("@")
    user = user.split(":", 1)[0]
    if server == USER_SERVER and user.isdigit():
        return f"+{user}"
    return jid


def peer_to_jid(peer_id: str) -> str:
    if "@" in peer_id:
        return peer_id
    return f"{peer_id.lstrip('+')}@{USER_SERVER}"


class WhatsAppAdapter(ChannelAdapter):
    name = "whatsapp"
    max_text_length = MAX_TEXT_LENGTH

    def __init__(
        self,
        auth_dir: str | Path,
        on_message: MessageHandler,
        *,
        transport_factory: TransportFactory | None,
        groups_enabled: bool = False,
        print_qr: bool = False,
        reconnect_delay_seconds: float = 2.0,
    ) -> None:
        if transport_factory is None:
            raise ConfigurationError("WHATSAPP_TRANSPORT is required for WhatsApp adapter")
        super().__init__(on_message, groups_enabled=groups_enabled)
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self.session = SecureSessionManager(
            auth_dir,
            transport_factory,
            print_qr=print_qr,
            on_message=self._handle_wire_message,
        )
        self._task: asyncio.Task | None = None
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self.session.state == ConnectionState.open

    async def _handle_wire_message(self, message: WireMessage) -> None:
        if message.from_me:
            return
        await self.dispatch(
            jid_to_peer(message.chat_id),
            message.text,
            is_group=is_group_jid(message.chat_id),
            raw=message,
        )

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def start(self) -> None:
        self._stopping = False
        await self.session.connect()
        self._task = asyncio.create_task(self._supervise(), name="whatsapp-supervisor")
        logger.info("WhatsApp adapter started (auth_dir=%s)", self.session.auth_dir)

    async def _wait_until_closed(self):
        try:
            if self.session.state != ConnectionState.closed:
                await self.session.wait_for_connection(timeout_ms=0)
            return await self.session.wait_closed()
        except ConnectionClosedError as exc:
            return exc.cause if exc.cause is not None else exc
        except Exception as exc:
            return exc

    async def _supervise(self) -> None:
        """Keep the session connected until stop() or a logout."""
        while not self._stopping:
            cause = await self._wait_until_closed()
            if self._stopping:
                return
            if disconnect_status_code(cause) == LOGGED_OUT_STATUS:
                logger.error("WhatsApp logged out; link the device again with `chatbridge whatsapp-login`")
                return

            logger.warning("WhatsApp connection closed (%s); reconnecting", cause)
            await asyncio.sleep(self.reconnect_delay_seconds)
            await self._reconnect()

    async def _reconnect(self) -> None:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(Exception),
            wait=wait_exponential(multiplier=self.reconnect_delay_seconds, max=60),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                if self._stopping:
                    return
                self.session.close()
                await self.session.connect()

    async def stop(self) -> None:
        self._stopping = True
        self.session.close()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.session.drain()
        logger.info("WhatsApp adapter stopped")

    async def send_text(self, peer_id: str, text: str) -> None:
        transport = self.session.transport
        if transport is None or self.session.state != ConnectionState.open:
            raise SecureSessionError("WhatsApp is not connected")
        await transport.send_text(peer_to_jid(peer_id), text)


def build_whatsapp_adapter(
    settings: Settings,
    on_message: MessageHandler,
    *,
    print_qr: bool = True,
) -> WhatsAppAdapter:
    return WhatsAppAdapter(
        settings.whatsapp_auth_dir,
        on_message,
        transport_factory=load_transport_factory(settings.whatsapp_transport),
        groups_enabled=settings.groups_enabled,
        print_qr=print_qr,
    )
