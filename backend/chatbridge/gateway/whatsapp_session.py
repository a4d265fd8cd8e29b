"""
WhatsApp secure session: credential storage and connection lifecycle.

The wire protocol itself lives in a transport object produced by a pluggable
factory. The transport reports back through three hooks on the manager:

  - handle_connection_update(ConnectionUpdate)  connection state and QR codes
  - handle_credentials_update()                 credentials changed, persist them
  - handle_incoming(WireMessage)                an inbound chat message

and offers send_text(jid, text), close() and end(error) in return.

Credentials live in an auth directory as creds.json plus per-key files. The
last valid creds.json is copied to creds.json.bak before every save and
restored from there at startup when the live file is missing or corrupt.
"""
from __future__ import annotations

import asyncio
import enum
import inspect
import json
import logging
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import qrcode

from chatbridge.services.serial_queue import SerialQueue

logger = logging.getLogger(__name__)

CREDS_FILE = "creds.json"
CREDS_BACKUP = "creds.json.bak"
DEFAULT_TIMEOUT_MS = 120_000
LOGGED_OUT_STATUS = 401


class SecureSessionError(RuntimeError):
    pass


class ConnectionClosedError(SecureSessionError):
    """The connection closed while someone was waiting for it to open."""

    def __init__(self, message: str = "Connection closed", cause: Any = None) -> None:
        super().__init__(message)
        self.cause = cause


class ConnectionTimeoutError(SecureSessionError):
    """Gave up waiting for the connection to open."""


class ConnectionState(str, enum.Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    open = "open"
    closed = "closed"


@dataclass
class ConnectionUpdate:
    connection: str | None = None  # "connecting" | "open" | "close"
    qr: str | None = None
    last_disconnect: Any = None


@dataclass
class WireMessage:
    chat_id: str
    text: str
    from_me: bool = False
    message_id: str = ""
    raw: Any = field(default=None, repr=False)


class SecureTransport(Protocol):
    async def send_text(self, jid: str, text: str) -> None: ...

    def close(self) -> None: ...

    def end(self, error: BaseException | None) -> None: ...


TransportFactory = Callable[["MultiFileAuthState", "SecureSessionManager"], Awaitable[SecureTransport]]


# ── Credential files ───────────────────────────────────────────────────────────

def read_creds_raw(path: Path) -> str | None:
    """File contents, or None when missing, not a regular file or (nearly) empty."""
    try:
        if not path.is_file() or path.stat().st_size <= 1:
            return None
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def is_valid_json(raw: str) -> bool:
    try:
        json.loads(raw)
    except ValueError:
        return False
    return True


def has_credentials(auth_dir: str | Path) -> bool:
    raw = read_creds_raw(Path(auth_dir).expanduser() / CREDS_FILE)
    return raw is not None and is_valid_json(raw)


def backup_creds(auth_dir: Path) -> None:
    """Copy the live creds file to the backup slot, but only when it is valid."""
    try:
        creds_path = auth_dir / CREDS_FILE
        raw = read_creds_raw(creds_path)
        if not raw or not is_valid_json(raw):
            return
        shutil.copyfile(creds_path, auth_dir / CREDS_BACKUP)
    except OSError as exc:
        logger.warning("WhatsApp creds backup failed: %s", exc)


def maybe_restore_creds(auth_dir: Path) -> bool:
    """Restore the backup over a missing or corrupt live file. Returns True if restored."""
    try:
        creds_path = auth_dir / CREDS_FILE
        raw = read_creds_raw(creds_path)
        if raw and is_valid_json(raw):
            return False
        backup_raw = read_creds_raw(auth_dir / CREDS_BACKUP)
        if not backup_raw or not is_valid_json(backup_raw):
            if raw is not None:
                logger.warning("WhatsApp creds are corrupt and no valid backup exists; re-pairing required")
            return False
        shutil.copyfile(auth_dir / CREDS_BACKUP, creds_path)
        logger.warning("Restored WhatsApp creds from backup: %s", creds_path)
        return True
    except OSError as exc:
        logger.warning("WhatsApp creds restore failed: %s", exc)
        return False


def _key_file_name(category: str, key_id: str) -> str:
    return f"{category}-{key_id}.json".replace("/", "__").replace(":", "-")


class MultiFileAuthState:
    """creds.json plus one JSON file per signal key, all under ``auth_dir``."""

    def __init__(self, auth_dir: Path, creds: dict[str, Any]) -> None:
        self.auth_dir = auth_dir
        self.creds = creds

    @classmethod
    def load(cls, auth_dir: Path) -> MultiFileAuthState:
        raw = read_creds_raw(auth_dir / CREDS_FILE)
        creds: dict[str, Any] = {}
        if raw and is_valid_json(raw):
            loaded = json.loads(raw)
            if isinstance(loaded, dict):
                creds = loaded
        return cls(auth_dir, creds)

    def save_creds(self) -> None:
        (self.auth_dir / CREDS_FILE).write_text(json.dumps(self.creds), encoding="utf-8")

    def read_key(self, category: str, key_id: str) -> Any | None:
        raw = read_creds_raw(self.auth_dir / _key_file_name(category, key_id))
        if raw is None or not is_valid_json(raw):
            return None
        return json.loads(raw)

    def write_key(self, category: str, key_id: str, value: Any | None) -> None:
        path = self.auth_dir / _key_file_name(category, key_id)
        if value is None:
            path.unlink(missing_ok=True)
            return
        path.write_text(json.dumps(value), encoding="utf-8")


# ── Helpers ────────────────────────────────────────────────────────────────────

def disconnect_status_code(error: Any) -> int | None:
    """Status code carried by a disconnect cause, if any."""
    for chain in (("output", "status_code"), ("error", "output", "status_code"), ("status",)):
        value = error
        for attr in chain:
            value = value.get(attr) if isinstance(value, dict) else getattr(value, attr, None)
            if value is None:
                break
        if isinstance(value, int):
            return value
    return None


def render_qr(data: str) -> None:
    qr = qrcode.QRCode(border=1)
    qr.add_data(data)
    qr.make(fit=True)
    qr.print_ascii(invert=True)


def _close_error(cause: Any) -> BaseException:
    if isinstance(cause, BaseException):
        return cause
    return ConnectionClosedError("Connection closed", cause=cause)


# ── Manager ────────────────────────────────────────────────────────────────────

class SecureSessionManager:
    def __init__(
        self,
        auth_dir: str | Path,
        transport_factory: TransportFactory,
        *,
        print_qr: bool = False,
        on_qr: Callable[[str], None] | None = None,
        on_status: Callable[[str], None] | None = None,
        on_message: Callable[[WireMessage], Any] | None = None,
    ) -> None:
        self.auth_dir = Path(auth_dir).expanduser()
        self.print_qr = print_qr
        self.on_qr = on_qr
        self.on_status = on_status
        self.on_message = on_message
        self.state = ConnectionState.disconnected
        self.transport: SecureTransport | None = None
        self.auth_state: MultiFileAuthState | None = None
        self.last_disconnect: Any = None
        self._transport_factory = transport_factory
        self._save_queue = SerialQueue("whatsapp-creds")
        self._waiters: list[asyncio.Future] = []
        self._close_waiters: list[asyncio.Future] = []
        self._inbound_tasks: set[asyncio.Task] = set()

    async def connect(self) -> SecureTransport:
        self.auth_dir.mkdir(parents=True, exist_ok=True)
        maybe_restore_creds(self.auth_dir)
        self.auth_state = MultiFileAuthState.load(self.auth_dir)
        self.last_disconnect = None
        self.state = ConnectionState.connecting
        self.transport = await self._transport_factory(self.auth_state, self)
        return self.transport

    # ── Transport hooks ────────────────────────────────────────────────────────

    def handle_connection_update(self, update: ConnectionUpdate) -> None:
        if update.qr:
            if self.on_qr:
                self.on_qr(update.qr)
            if self.print_qr:
                render_qr(update.qr)
                self._status("Scan the QR code to connect WhatsApp.")

        if update.connection == "connecting":
            self.state = ConnectionState.connecting
        elif update.connection == "open":
            self.state = ConnectionState.open
            self._status("WhatsApp connected.")
            self._resolve_waiters()
        elif update.connection == "close":
            self.state = ConnectionState.closed
            self.last_disconnect = update.last_disconnect
            self._reject_waiters(_close_error(update.last_disconnect))
            self._release_close_waiters()

    def handle_credentials_update(self) -> asyncio.Task:
        return self._save_queue.enqueue(self._backup_and_save)

    def handle_incoming(self, message: WireMessage) -> Any:
        if self.on_message is None:
            return None
        result = self.on_message(message)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._inbound_tasks.add(task)
            task.add_done_callback(self._inbound_done)
            return task
        return result

    def _inbound_done(self, task: asyncio.Future) -> None:
        self._inbound_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("WhatsApp inbound handler failed: %s", exc, exc_info=exc)

    def _backup_and_save(self) -> None:
        if self.auth_state is None:
            raise SecureSessionError("Credentials changed before connect()")
        backup_creds(self.auth_dir)
        self.auth_state.save_creds()

    def _status(self, message: str) -> None:
        logger.info(message)
        if self.on_status:
            self.on_status(message)

    # ── Waiting ────────────────────────────────────────────────────────────────

    async def wait_for_connection(self, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        """Wait until the connection opens.

        Raises the disconnect cause if it closes first and ConnectionTimeoutError
        once ``timeout_ms`` elapses; ``timeout_ms <= 0`` waits indefinitely.
        """
        if self.state == ConnectionState.open:
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            timeout = timeout_ms / 1000 if timeout_ms > 0 else None
            done, _ = await asyncio.wait({waiter}, timeout=timeout)
            if not done:
                raise ConnectionTimeoutError("Timed out waiting for WhatsApp connection")
            waiter.result()
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            if not waiter.done():
                waiter.cancel()

    async def wait_closed(self) -> Any:
        """Wait for the next close; returns the disconnect cause."""
        if self.state == ConnectionState.closed:
            return self.last_disconnect
        waiter = asyncio.get_running_loop().create_future()
        self._close_waiters.append(waiter)
        try:
            await waiter
        finally:
            if waiter in self._close_waiters:
                self._close_waiters.remove(waiter)
        return self.last_disconnect

    def _release_close_waiters(self) -> None:
        waiters, self._close_waiters = self._close_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def _resolve_waiters(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def _reject_waiters(self, error: BaseException) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(error)

    @property
    def waiter_count(self) -> int:
        return len(self._waiters)

    # ── Teardown ───────────────────────────────────────────────────────────────

    def close(self) -> None:
        transport = self.transport
        if transport is not None:
            try:
                transport.close()
            except Exception as exc:
                logger.debug("WhatsApp transport close failed: %s", exc)
            try:
                transport.end(None)
            except Exception as exc:
                logger.debug("WhatsApp session end failed: %s", exc)
        self.transport = None
        self.state = ConnectionState.closed
        self._reject_waiters(ConnectionClosedError("Connection closed"))
        self._release_close_waiters()

    async def drain(self) -> None:
        """Wait for pending inbound handlers and queued credential saves to settle."""
        while self._inbound_tasks:
            await asyncio.gather(*list(self._inbound_tasks), return_exceptions=True)
        await self._save_queue.drain()

    @property
    def pending_inbound(self) -> int:
        return len(self._inbound_tasks)

    @property
    def saves_completed(self) -> int:
        return self._save_queue.completed
