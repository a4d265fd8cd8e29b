"""
Bridge: routes inbound channel messages to per-peer agent sessions.

For every inbound message:
  allowlist check -> pairing gate (unknown peers) -> session lookup/creation
  -> prompt (serialized per agent session) -> reply through the adapter.

Alongside, the agent's event stream is followed so tool permission prompts get
answered from the configured mode and, optionally, tool progress reaches the
peer whose prompt is running.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, wait_exponential

from chatbridge.api.health import HealthServer
from chatbridge.config.settings import ConfigurationError, Settings
from chatbridge.gateway.base import ChannelAdapter, InboundMessage
from chatbridge.monitoring.metrics import (
    INBOUND_MESSAGES,
    PAIRING_EVENTS,
    PERMISSION_REPLIES,
    PROMPTS,
)
from chatbridge.persistence.models import now_ms
from chatbridge.persistence.store import BridgeStore
from chatbridge.services.agent_client import AgentClient, AgentError
from chatbridge.services.health import HealthMonitor
from chatbridge.services.pairing_service import (
    PairingAttemptLimiter,
    PairingLimitError,
    PairingService,
    match_standing_code,
)
from chatbridge.services.permissions import PermissionReply, compile_rules, permission_reply
from chatbridge.services.serial_queue import SerialQueue

logger = logging.getLogger(__name__)

CHANNELS = ("telegram", "whatsapp")

PAIRING_REQUIRED = "Pairing required. Reply with your pairing code."
PAIRED_CONTINUE = "Paired. Processing your message."
PAIRED_RESEND = "Paired. Send your message again."
NO_RESPONSE = "No response generated. Try again."
AGENT_UNREACHABLE = "Error: failed to reach the agent."
PERMISSION_DENIED = "Permission denied. Update configuration to allow tools."

TOOL_LABELS = {
    "bash": "bash",
    "read": "read",
    "write": "write",
    "edit": "edit",
    "patch": "patch",
    "multiedit": "edit",
    "grep": "grep",
    "glob": "glob",
    "task": "agent",
    "webfetch": "webfetch",
}
TOOL_TITLE_LIMIT = 120
_INPUT_SUMMARY_KEYS = ("command", "filePath", "path", "pattern", "url", "description", "query")


def chunk_text(text: str, limit: int) -> list[str]:
    """Split ``text`` into pieces of at most ``limit`` chars, preferring newlines."""
    chunks: list[str] = []
    remaining = text
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit)
        if cut > 0:
            chunks.append(remaining[:cut])
            remaining = remaining[cut + 1:]
        else:
            chunks.append(remaining[:limit])
            remaining = remaining[limit:]
    chunks.append(remaining)
    return [chunk for chunk in chunks if chunk.strip()]


def truncate_text(text: str, limit: int) -> str:
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3].rstrip() + "..."


def summarize_tool_input(tool_input: dict[str, Any]) -> str:
    """One-line description of a tool call's arguments."""
    for key in _INPUT_SUMMARY_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ", ".join(
        f"{key}={value}"
        for key, value in tool_input.items()
        if isinstance(value, (str, int, float, bool))
    )


@dataclass
class _RunState:
    """A prompt in flight; agent events for its session are routed back to this peer."""

    channel: str
    peer_id: str
    tool_states: dict[str, str] = field(default_factory=dict)


@dataclass
class _PeerLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class Bridge:
    def __init__(
        self,
        settings: Settings,
        store: BridgeStore,
        *,
        agent: AgentClient | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.settings = settings
        self.store = store
        self.agent = agent or AgentClient.from_settings(settings)
        self.pairing = PairingService(store, clock=clock)
        self.limiter = PairingAttemptLimiter()
        self.monitor = HealthMonitor(settings.opencode_url)
        self.adapters: dict[str, ChannelAdapter] = {}
        self._clock = clock
        self._session_queues: dict[str, SerialQueue] = {}
        self._peer_locks: dict[str, _PeerLock] = {}
        self._active_runs: dict[str, _RunState] = {}
        self._health_task: asyncio.Task | None = None
        self._events_task: asyncio.Task | None = None
        self._health_server: HealthServer | None = None

    # ── Setup ──────────────────────────────────────────────────────────────────

    def add_adapter(self, adapter: ChannelAdapter) -> None:
        self.adapters[adapter.name] = adapter
        self.monitor.register_channel(adapter.name, lambda: adapter.is_running)

    def build_adapters(self) -> None:
        """Construct the adapters enabled in settings; a misconfigured one is skipped."""
        settings = self.settings
        if settings.telegram_enabled:
            try:
                from chatbridge.gateway.telegram import TelegramAdapter

                self.add_adapter(
                    TelegramAdapter(
                        settings.telegram_token,
                        self.handle_inbound,
                        groups_enabled=settings.groups_enabled,
                    )
                )
            except ConfigurationError as exc:
                logger.error("Telegram adapter not started: %s", exc)
                self.monitor.register_channel("telegram", lambda: False)
        else:
            logger.info("Telegram adapter disabled")

        if settings.whatsapp_enabled:
            try:
                from chatbridge.gateway.whatsapp import build_whatsapp_adapter

                self.add_adapter(build_whatsapp_adapter(settings, self.handle_inbound))
            except ConfigurationError as exc:
                logger.error("WhatsApp adapter not started: %s", exc)
                self.monitor.register_channel("whatsapp", lambda: False)
        else:
            logger.info("WhatsApp adapter disabled")

        for name in CHANNELS:
            if name not in self.adapters and name not in self.monitor.snapshot().channels:
                self.monitor.register_channel(name, None)

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def start(self) -> None:
        for channel in CHANNELS:
            self.store.seed_allowlist(channel, self.settings.allowlist.get(channel, []))

        code = self.pairing.resolve_standing_code(self.settings.pairing_code)
        logger.info("Pairing code ready: %s", code)

        if not self.adapters:
            self.build_adapters()

        await self.refresh_health()
        self._health_task = asyncio.create_task(self._health_loop(), name="agent-health")
        self._events_task = asyncio.create_task(self._event_loop(), name="agent-events")

        if self.settings.health_port:
            self._health_server = HealthServer(self.monitor, self.settings.health_port)
            await self._health_server.start()

        for adapter in self.adapters.values():
            await adapter.start()
        logger.info("Bridge started with channels: %s", ", ".join(self.adapters) or "none")

    async def stop(self) -> None:
        for task in (self._health_task, self._events_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self._health_server is not None:
            try:
                await self._health_server.stop()
            except Exception as exc:  # pragma: no cover
                logger.warning("Health server stop error: %s", exc)

        for adapter in self.adapters.values():
            try:
                await adapter.stop()
            except Exception as exc:  # pragma: no cover
                logger.warning("%s adapter stop error: %s", adapter.name, exc)

        for queue in list(self._session_queues.values()):
            await queue.drain()
        await self.agent.aclose()
        logger.info("Bridge stopped")

    # ── Health ─────────────────────────────────────────────────────────────────

    async def refresh_health(self) -> None:
        try:
            health = await self.agent.health()
        except AgentError as exc:
            logger.warning("Failed to reach agent health: %s", exc)
            self.monitor.set_agent_status(False)
            return
        self.monitor.set_agent_status(health.healthy, health.version)

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_interval_seconds)
            await self.refresh_health()

    # ── Agent events ───────────────────────────────────────────────────────────

    async def _event_loop(self) -> None:
        """Follow the agent's event stream, resubscribing whenever it drops."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(AgentError),
            wait=wait_exponential(multiplier=1, max=60),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        ):
            with attempt:
                async for event in self.agent.subscribe_events():
                    await self.handle_agent_event(event)
                raise AgentError("Agent event stream ended")

    async def handle_agent_event(self, event: dict[str, Any]) -> None:
        kind = event.get("type")
        properties = event.get("properties") or {}
        try:
            if kind in ("permission.asked", "permission.updated"):
                await self._answer_permission(properties)
            elif kind == "message.part.updated":
                await self._relay_tool_update(properties.get("part") or {})
        except AgentError as exc:
            logger.error("Failed to handle agent event %s: %s", kind, exc)
        except Exception as exc:
            logger.error("Agent event %s handler failed: %s", kind, exc, exc_info=exc)

    async def _answer_permission(self, permission: dict[str, Any]) -> None:
        permission_id = permission.get("id")
        session_id = permission.get("sessionID")
        if not permission_id or not session_id:
            return

        reply = permission_reply(self.settings.permission_mode)
        await self.agent.respond_permission(session_id, permission_id, reply.value)
        PERMISSION_REPLIES.labels(reply=reply.value).inc()
        logger.info("Permission %s answered %s", permission_id, reply.value, extra={"session_id": session_id})

        if reply == PermissionReply.reject:
            run = self._active_runs.get(session_id)
            if run is not None:
                await self.send_text(run.channel, run.peer_id, PERMISSION_DENIED)

    async def _relay_tool_update(self, part: dict[str, Any]) -> None:
        if not self.settings.tool_updates_enabled or part.get("type") != "tool":
            return
        run = self._active_runs.get(part.get("sessionID") or "")
        call_id = part.get("callID")
        if run is None or not call_id:
            return

        state = part.get("state") or {}
        status = state.get("status") or "unknown"
        if run.tool_states.get(call_id) == status:
            return
        run.tool_states[call_id] = status

        tool = part.get("tool") or "tool"
        title = (
            state.get("title")
            or truncate_text(summarize_tool_input(state.get("input") or {}), TOOL_TITLE_LIMIT)
            or "running"
        )
        message = f"[tool] {TOOL_LABELS.get(tool, tool)} {status}: {title}"
        output = state.get("output")
        if status == "completed" and isinstance(output, str):
            output = truncate_text(output.strip(), self.settings.tool_output_limit)
            if output:
                message += f"\n{output}"
        await self.send_text(run.channel, run.peer_id, message)

    # ── Outbound ───────────────────────────────────────────────────────────────

    async def send_text(self, channel: str, peer_id: str, text: str) -> None:
        adapter = self.adapters.get(channel)
        if adapter is None:
            return
        for chunk in chunk_text(text, adapter.max_text_length):
            logger.info("Sending message", extra={"channel": channel, "peer_id": peer_id})
            await adapter.send_text(peer_id, chunk)

    # ── Inbound ────────────────────────────────────────────────────────────────

    async def handle_inbound(self, message: InboundMessage) -> None:
        if message.channel not in self.adapters:
            return
        logger.info("Received message", extra={"channel": message.channel, "peer_id": message.peer_id})
        INBOUND_MESSAGES.labels(channel=message.channel).inc()

        text: str | None = message.text
        if not self.store.is_allowed(message.channel, message.peer_id):
            text = await self._pair(message)
            if text is None:
                return

        try:
            session_id = await self._resolve_session(message.channel, message.peer_id)
        except AgentError as exc:
            logger.error("Session creation failed: %s", exc)
            await self.send_text(message.channel, message.peer_id, AGENT_UNREACHABLE)
            return

        self._enqueue(
            session_id,
            functools.partial(self._run_prompt, session_id, message.channel, message.peer_id, text),
        )

    async def _pair(self, message: InboundMessage) -> str | None:
        """Pairing gate for a peer not on the allowlist.

        Returns the text to forward once paired, or None when the message stops here.
        """
        channel, peer_id = message.channel, message.peer_id
        key = f"{channel}:{peer_id}"
        blocked_seconds = self.limiter.hit(key, self._clock())
        if blocked_seconds:
            PAIRING_EVENTS.labels(channel=channel, outcome="blocked").inc()
            await self.send_text(
                channel, peer_id, f"Too many pairing attempts. Try again in {blocked_seconds} seconds."
            )
            return None

        remaining = match_standing_code(message.text, self.pairing.resolve_standing_code())
        if remaining is None:
            pending = any(r.peer_id == peer_id for r in self.pairing.list_requests(channel))
            if not pending:
                try:
                    self.pairing.request_pairing(channel, peer_id)
                except PairingLimitError as exc:
                    logger.warning("Pairing request not created: %s", exc)
            PAIRING_EVENTS.labels(channel=channel, outcome="required").inc()
            await self.send_text(channel, peer_id, PAIRING_REQUIRED)
            return None

        self.store.allow_peer(channel, peer_id)
        self.limiter.reset(key)
        PAIRING_EVENTS.labels(channel=channel, outcome="paired").inc()
        logger.info("Peer paired with standing code", extra={"channel": channel, "peer_id": peer_id})
        if not remaining:
            await self.send_text(channel, peer_id, PAIRED_RESEND)
            return None
        await self.send_text(channel, peer_id, PAIRED_CONTINUE)
        return remaining

    async def _resolve_session(self, channel: str, peer_id: str) -> str:
        key = f"{channel}:{peer_id}"
        entry = self._peer_locks.get(key)
        if entry is None:
            entry = self._peer_locks[key] = _PeerLock()
        entry.users += 1
        try:
            async with entry.lock:
                return await self._lookup_or_create_session(channel, peer_id)
        finally:
            entry.users -= 1
            if not entry.users:
                del self._peer_locks[key]

    async def _lookup_or_create_session(self, channel: str, peer_id: str) -> str:
        existing = self.store.get_session(channel, peer_id)
        if existing is not None:
            return existing.session_id

        session_id = await self.agent.create_session(
            f"chatbridge {channel} {peer_id}",
            compile_rules(self.settings.permission_mode),
        )
        self.store.upsert_session(channel, peer_id, session_id)
        logger.info(
            "Session created",
            extra={"channel": channel, "peer_id": peer_id, "session_id": session_id},
        )
        return session_id

    def _enqueue(self, session_id: str, job) -> None:
        queue = self._session_queues.get(session_id)
        if queue is None:
            queue = self._session_queues[session_id] = SerialQueue(f"session {session_id}")
        task = queue.enqueue(job)
        task.add_done_callback(lambda _: self._forget_idle_queue(session_id, queue))

    def _forget_idle_queue(self, session_id: str, queue: SerialQueue) -> None:
        if queue.idle and self._session_queues.get(session_id) is queue:
            del self._session_queues[session_id]

    async def _run_prompt(self, session_id: str, channel: str, peer_id: str, text: str) -> None:
        self._active_runs[session_id] = _RunState(channel, peer_id)
        try:
            reply = await self.agent.prompt(session_id, text)
        except AgentError as exc:
            logger.error("Prompt failed: %s", exc, extra={"session_id": session_id})
            PROMPTS.labels(channel=channel, status="error").inc()
            await self.send_text(channel, peer_id, AGENT_UNREACHABLE)
            return
        finally:
            self._active_runs.pop(session_id, None)
        PROMPTS.labels(channel=channel, status="ok" if reply else "empty").inc()
        await self.send_text(channel, peer_id, reply or NO_RESPONSE)

    async def drain(self) -> None:
        """Wait for every queued prompt to finish."""
        while self._session_queues:
            for queue in list(self._session_queues.values()):
                await queue.drain()
            await asyncio.sleep(0)
