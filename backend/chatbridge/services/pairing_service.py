from __future__ import annotations

import logging
import math
import secrets
from collections.abc import Callable
from dataclasses import dataclass

from chatbridge.persistence.models import PairingRequest, now_ms
from chatbridge.persistence.store import BridgeStore, PairingCodeConflictError

logger = logging.getLogger(__name__)

SETTING_KEY = "pairing_code"
SETTING_CREATED_KEY = "pairing_code_created_at"
STANDING_CODE_TTL_MS = 24 * 60 * 60 * 1000
REQUEST_TTL_MS = 30 * 60 * 1000


class PairingLimitError(RuntimeError):
    pass


def generate_code() -> str:
    """Uniformly random six-digit code, 100000-999999."""
    return str(100000 + secrets.randbelow(900000))


def match_standing_code(text: str, code: str) -> str | None:
    """Return ``text`` with the code removed when it contains it, else None."""
    trimmed = text.strip()
    if not code or code not in trimmed:
        return None
    return trimmed.replace(code, "", 1).strip()


class PairingService:
    def __init__(self, store: BridgeStore, *, clock: Callable[[], int] = now_ms) -> None:
        self.store = store
        self._clock = clock

    def resolve_standing_code(self, override: str | None = None) -> str:
        """Current standing code, minting a new one when absent or older than 24h.

        An override is stored as-is and restarts the rotation window.
        """
        now = self._clock()
        if override:
            self._store_standing_code(override, now)
            return override

        existing = self.store.get_setting(SETTING_KEY)
        created_raw = self.store.get_setting(SETTING_CREATED_KEY)
        if existing and created_raw:
            try:
                created_at = int(created_raw)
            except ValueError:
                created_at = None
            if created_at is not None and now - created_at < STANDING_CODE_TTL_MS:
                return existing

        code = generate_code()
        # A stale code could repeat by chance; rotation must change it.
        while code == existing:
            code = generate_code()
        self._store_standing_code(code, now)
        logger.info("Standing pairing code rotated")
        return code

    def _store_standing_code(self, code: str, now: int) -> None:
        self.store.set_setting(SETTING_KEY, code)
        self.store.set_setting(SETTING_CREATED_KEY, str(now))

    def request_pairing(
        self,
        channel: str,
        peer_id: str,
        *,
        code: str | None = None,
        ttl_ms: int | None = REQUEST_TTL_MS,
    ) -> PairingRequest:
        """Create (or replace) the pending pairing request for a peer."""
        if code is not None:
            return self.store.create_pairing_request(channel, peer_id, code, ttl_ms)

        for _ in range(8):
            try:
                request = self.store.create_pairing_request(
                    channel, peer_id, generate_code(), ttl_ms
                )
            except PairingCodeConflictError:
                continue
            logger.info(
                "Pairing request created",
                extra={"channel": channel, "peer_id": peer_id, "code": request.code},
            )
            return request
        raise PairingLimitError("Could not allocate pairing code")

    def approve(self, channel: str, code: str) -> str | None:
        peer_id = self.store.approve_pairing_request(channel, code.strip())
        if peer_id is None:
            logger.info("Pairing code not found", extra={"channel": channel})
            return None
        logger.info("Pairing approved", extra={"channel": channel, "peer_id": peer_id})
        return peer_id

    def list_requests(self, channel: str) -> list[PairingRequest]:
        return self.store.list_pairing_requests(channel)


@dataclass
class _AttemptWindow:
    window_start: int
    count: int
    blocked_until: int | None = None


class PairingAttemptLimiter:
    """Per-peer limit on unpaired contact attempts."""

    def __init__(
        self,
        *,
        window_ms: int = 60_000,
        max_attempts: int = 20,
        block_ms: int = 5 * 60_000,
    ) -> None:
        self.window_ms = window_ms
        self.max_attempts = max_attempts
        self.block_ms = block_ms
        self._attempts: dict[str, _AttemptWindow] = {}
        self._next_sweep = 0

    def hit(self, key: str, now: int | None = None) -> int:
        """Record an attempt; returns seconds left in a block, 0 when allowed."""
        now = now_ms() if now is None else now
        if now >= self._next_sweep:
            self._evict_stale(now)
            self._next_sweep = now + self.window_ms
        current = self._attempts.get(key)

        if current and current.blocked_until and now < current.blocked_until:
            return math.ceil((current.blocked_until - now) / 1000)

        within_window = current is not None and now - current.window_start < self.window_ms
        updated = _AttemptWindow(
            window_start=current.window_start if within_window else now,
            count=current.count + 1 if within_window else 1,
        )
        if updated.count > self.max_attempts:
            updated.blocked_until = now + self.block_ms
        self._attempts[key] = updated

        if updated.blocked_until:
            return math.ceil((updated.blocked_until - now) / 1000)
        return 0

    def reset(self, key: str) -> None:
        self._attempts.pop(key, None)

    def _evict_stale(self, now: int) -> None:
        """Forget peers whose window has lapsed and who are not blocked."""
        stale = [
            key
            for key, entry in self._attempts.items()
            if now - entry.window_start >= self.window_ms
            and not (entry.blocked_until and now < entry.blocked_until)
        ]
        for key in stale:
            del self._attempts[key]

    def __len__(self) -> int:
        return len(self._attempts)
