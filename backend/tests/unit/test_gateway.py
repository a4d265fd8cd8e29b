"""Tests for channel adapters: inbound gating, Telegram and WhatsApp wiring."""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatbridge.config.settings import ConfigurationError
from chatbridge.gateway.base import ChannelAdapter
from chatbridge.gateway.telegram import MAX_TEXT_LENGTH as TELEGRAM_MAX, TelegramAdapter
from chatbridge.gateway.whatsapp import (
    MAX_TEXT_LENGTH as WHATSAPP_MAX,
    WhatsAppAdapter,
    is_group_jid,
    jid_to_peer,
    load_transport_factory,
    peer_to_jid,
)
from chatbridge.gateway.whatsapp_session import (
    ConnectionUpdate,
    SecureSessionError,
    WireMessage,
)


class RecordingAdapter(ChannelAdapter):
    name = "test"
    max_text_length = 10

    async def start(self):
        self._running = True

    async def stop(self):
        self._running = False

    async def send_text(self, peer_id, text):
        pass


@pytest.fixture()
def inbox():
    return []


@pytest.fixture()
def on_message(inbox):
    async def handler(message):
        inbox.append(message)
    return handler


# ── Base gating ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dispatch_forwards_direct_text(on_message, inbox):
    adapter = RecordingAdapter(on_message)
    assert await adapter.dispatch("42", "hello", is_group=False)
    assert [(m.channel, m.peer_id, m.text) for m in inbox] == [("test", "42", "hello")]


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   ", "\n\t", None])
async def test_dispatch_drops_empty_text(on_message, inbox, text):
    adapter = RecordingAdapter(on_message)
    assert not await adapter.dispatch("42", text, is_group=False)
    assert inbox == []


@pytest.mark.asyncio
async def test_dispatch_drops_groups_unless_enabled(on_message, inbox):
    assert not await RecordingAdapter(on_message).dispatch("g1", "hi", is_group=True)
    assert inbox == []
    assert await RecordingAdapter(on_message, groups_enabled=True).dispatch("g1", "hi", is_group=True)
    assert len(inbox) == 1


# ── Telegram ───────────────────────────────────────────────────────────────────

def test_telegram_requires_token(on_message):
    with pytest.raises(ConfigurationError):
        TelegramAdapter(None, on_message)
    with pytest.raises(ConfigurationError):
        TelegramAdapter("", on_message)


def _tg_update(text=None, caption=None, chat_type="private", chat_id=42):
    return SimpleNamespace(
        effective_message=SimpleNamespace(text=text, caption=caption),
        effective_chat=SimpleNamespace(id=chat_id, type=chat_type),
    )


@pytest.mark.asyncio
async def test_telegram_forwards_text_and_captions(on_message, inbox):
    adapter = TelegramAdapter("123:abc", on_message, application=MagicMock())
    await adapter._handle_update(_tg_update(text="hello"), None)
    await adapter._handle_update(_tg_update(caption="look at this"), None)
    assert [(m.channel, m.peer_id, m.text) for m in inbox] == [
        ("telegram", "42", "hello"),
        ("telegram", "42", "look at this"),
    ]


@pytest.mark.asyncio
async def test_telegram_drops_group_chats_by_default(on_message, inbox):
    adapter = TelegramAdapter("123:abc", on_message, application=MagicMock())
    await adapter._handle_update(_tg_update(text="hi", chat_type="supergroup", chat_id=-100), None)
    assert inbox == []


@pytest.mark.asyncio
async def test_telegram_send_text_uses_bot(on_message):
    app = MagicMock()
    app.bot.send_message = AsyncMock()
    adapter = TelegramAdapter("123:abc", on_message, application=app)
    await adapter.send_text("42", "reply")
    app.bot.send_message.assert_awaited_once_with(chat_id=42, text="reply")
    assert adapter.max_text_length == TELEGRAM_MAX == 4096


# ── WhatsApp helpers ───────────────────────────────────────────────────────────

def test_jid_helpers():
    assert jid_to_peer("15551234567@s.whatsapp.net") == "+15551234567"
    assert jid_to_peer("15551234567:12@s.whatsapp.net") == "+15551234567"
    assert jid_to_peer("1203630@g.us") == "1203630@g.us"
    assert peer_to_jid("+15551234567") == "15551234567@s.whatsapp.net"
    assert peer_to_jid("1203630@g.us") == "1203630@g.us"
    assert is_group_jid("1203630@g.us")
    assert is_group_jid("status@broadcast")
    assert not is_group_jid("15551234567@s.whatsapp.net")


def test_load_transport_factory():
    import json

    assert load_transport_factory("json:loads") is json.loads


@pytest.mark.parametrize(
    "path",
    [None, "", "json", "json:", "chatbridge.no_such_module:factory", "json:no_such_attr"],
)
def test_load_transport_factory_errors(path):
    with pytest.raises(ConfigurationError):
        load_transport_factory(path)


def test_whatsapp_requires_transport(on_message, auth_dir):
    with pytest.raises(ConfigurationError):
        WhatsAppAdapter(auth_dir, on_message, transport_factory=None)


# ── WhatsApp adapter ───────────────────────────────────────────────────────────

class FakeTransport:
    def __init__(self):
        self.sent = []
        self.closed = 0

    async def send_text(self, jid, text):
        self.sent.append((jid, text))

    def close(self):
        self.closed += 1

    def end(self, error):
        pass


@pytest.fixture()
def transports():
    return []


@pytest.fixture()
def whatsapp(auth_dir, on_message, transports):
    async def factory(auth_state, manager):
        transport = FakeTransport()
        transports.append(transport)
        return transport

    return WhatsAppAdapter(
        auth_dir,
        on_message,
        transport_factory=factory,
        reconnect_delay_seconds=0,
    )


async def _settle(predicate, rounds=100):
    for _ in range(rounds):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()


@pytest.mark.asyncio
async def test_whatsapp_inbound_gating(whatsapp, inbox):
    await whatsapp.start()
    try:
        await whatsapp.session.handle_incoming(
            WireMessage(chat_id="15551234567@s.whatsapp.net", text="hello")
        )
        await whatsapp.session.handle_incoming(
            WireMessage(chat_id="15551234567@s.whatsapp.net", text="mine", from_me=True)
        )
        await whatsapp.session.handle_incoming(WireMessage(chat_id="1203630@g.us", text="group"))
    finally:
        await whatsapp.stop()
    assert [(m.channel, m.peer_id, m.text) for m in inbox] == [("whatsapp", "+15551234567", "hello")]


@pytest.mark.asyncio
async def test_whatsapp_send_text_requires_open_connection(whatsapp, transports):
    await whatsapp.start()
    try:
        with pytest.raises(SecureSessionError):
            await whatsapp.send_text("+15551234567", "early")
        whatsapp.session.handle_connection_update(ConnectionUpdate(connection="open"))
        assert whatsapp.is_running
        await whatsapp.send_text("+15551234567", "hi")
    finally:
        await whatsapp.stop()
    assert transports[0].sent == [("15551234567@s.whatsapp.net", "hi")]
    assert whatsapp.max_text_length == WHATSAPP_MAX
    assert not whatsapp.is_running


@pytest.mark.asyncio
async def test_whatsapp_reconnects_after_close(whatsapp, transports):
    await whatsapp.start()
    try:
        whatsapp.session.handle_connection_update(ConnectionUpdate(connection="open"))
        await asyncio.sleep(0)
        whatsapp.session.handle_connection_update(
            ConnectionUpdate(connection="close", last_disconnect={"output": {"status_code": 515}})
        )
        assert await _settle(lambda: len(transports) == 2)
        assert transports[0].closed == 1
    finally:
        await whatsapp.stop()


@pytest.mark.asyncio
async def test_whatsapp_stops_supervising_after_logout(whatsapp, transports):
    await whatsapp.start()
    try:
        whatsapp.session.handle_connection_update(
            ConnectionUpdate(
                connection="close",
                last_disconnect={"error": {"output": {"status_code": 401}}},
            )
        )
        assert await _settle(lambda: whatsapp._task.done())
        assert len(transports) == 1
    finally:
        await whatsapp.stop()


@pytest.mark.asyncio
async def test_whatsapp_stop_waits_for_pending_inbound(auth_dir, transports):
    handled = []
    release = asyncio.Event()

    async def slow_handler(message):
        await release.wait()
        handled.append(message.text)

    async def factory(auth_state, manager):
        transport = FakeTransport()
        transports.append(transport)
        return transport

    adapter = WhatsAppAdapter(auth_dir, slow_handler, transport_factory=factory)
    await adapter.start()
    adapter.session.handle_incoming(WireMessage(chat_id="15551234567@s.whatsapp.net", text="hello"))
    assert adapter.session.pending_inbound == 1

    stopping = asyncio.create_task(adapter.stop())
    await asyncio.sleep(0)
    assert not stopping.done()
    release.set()
    await stopping

    assert handled == ["hello"]
    assert adapter.session.pending_inbound == 0
