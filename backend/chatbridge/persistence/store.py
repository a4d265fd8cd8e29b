"""
Bridge store: sessions, allowlist, pairing requests and settings.

One instance is opened at process start and passed to every component that
needs it. Each public method runs in its own short IMMEDIATE transaction and
commits (durably, see ``create_sqlite_engine``) before returning.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from sqlalchemy import delete, func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from chatbridge.persistence.database import Base, create_sqlite_engine, make_sessionmaker
from chatbridge.persistence.models import (
    AllowlistEntry,
    PairingRequest,
    SessionBinding,
    Setting,
    now_ms,
)

logger = logging.getLogger(__name__)


class PairingCodeConflictError(ValueError):
    """Raised when a live pairing request of another peer already holds the code."""


class BridgeStore:
    def __init__(self, db_path: str, *, clock: Callable[[], int] = now_ms) -> None:
        self.db_path = db_path
        self._clock = clock
        self._engine = create_sqlite_engine(db_path)
        Base.metadata.create_all(bind=self._engine)
        self._sessionmaker = make_sessionmaker(self._engine)

    def _begin(self):
        return self._sessionmaker.begin()

    # ── Sessions ───────────────────────────────────────────────────────────────

    def get_session(self, channel: str, peer_id: str) -> SessionBinding | None:
        with self._begin() as db:
            return db.get(SessionBinding, (channel, peer_id))

    def upsert_session(self, channel: str, peer_id: str, session_id: str) -> None:
        now = self._clock()
        stmt = sqlite_insert(SessionBinding).values(
            channel=channel,
            peer_id=peer_id,
            session_id=session_id,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["channel", "peer_id"],
            set_={
                "session_id": stmt.excluded.session_id,
                # strictly later than the previous stamp, even within one clock tick
                "updated_at": func.max(SessionBinding.updated_at + 1, stmt.excluded.updated_at),
            },
        )
        with self._begin() as db:
            db.execute(stmt)

    # ── Allowlist ──────────────────────────────────────────────────────────────

    def is_allowed(self, channel: str, peer_id: str) -> bool:
        with self._begin() as db:
            return db.get(AllowlistEntry, (channel, peer_id)) is not None

    def allow_peer(self, channel: str, peer_id: str) -> None:
        with self._begin() as db:
            self._allow(db, channel, peer_id, self._clock())

    def seed_allowlist(self, channel: str, peer_ids: Iterable[str]) -> None:
        """Insert every peer in one transaction; existing entries are left as they are."""
        now = self._clock()
        rows = [
            {"channel": channel, "peer_id": peer_id, "created_at": now}
            for peer_id in dict.fromkeys(peer_ids)
        ]
        if not rows:
            return
        stmt = sqlite_insert(AllowlistEntry).values(rows).on_conflict_do_nothing(
            index_elements=["channel", "peer_id"]
        )
        with self._begin() as db:
            db.execute(stmt)
        logger.info("Allowlist seeded", extra={"channel": channel})

    def list_allowlist(self, channel: str) -> list[AllowlistEntry]:
        with self._begin() as db:
            return (
                db.query(AllowlistEntry)
                .filter(AllowlistEntry.channel == channel)
                .order_by(AllowlistEntry.created_at, AllowlistEntry.peer_id)
                .all()
            )

    @staticmethod
    def _allow(db: Session, channel: str, peer_id: str, now: int) -> None:
        stmt = sqlite_insert(AllowlistEntry).values(
            channel=channel, peer_id=peer_id, created_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["channel", "peer_id"],
            set_={"created_at": stmt.excluded.created_at},
        )
        db.execute(stmt)

    # ── Pairing requests ───────────────────────────────────────────────────────

    def create_pairing_request(
        self,
        channel: str,
        peer_id: str,
        code: str,
        ttl_ms: int | None = None,
    ) -> PairingRequest:
        """Store a pairing request, replacing any earlier one from the same peer."""
        now = self._clock()
        expires_at = now + ttl_ms if ttl_ms and ttl_ms > 0 else None
        with self._begin() as db:
            self._purge_expired(db, channel, now)
            holder = (
                db.query(PairingRequest.peer_id)
                .filter(PairingRequest.channel == channel, PairingRequest.code == code)
                .scalar()
            )
            if holder is not None and holder != peer_id:
                raise PairingCodeConflictError(f"Pairing code already in use on {channel}")
            db.execute(
                delete(PairingRequest).where(
                    PairingRequest.channel == channel,
                    PairingRequest.peer_id == peer_id,
                )
            )
            request = PairingRequest(
                channel=channel,
                peer_id=peer_id,
                code=code,
                created_at=now,
                expires_at=expires_at,
            )
            db.add(request)
        return request

    def list_pairing_requests(self, channel: str) -> list[PairingRequest]:
        with self._begin() as db:
            self._purge_expired(db, channel, self._clock())
            return (
                db.query(PairingRequest)
                .filter(PairingRequest.channel == channel)
                .order_by(PairingRequest.created_at, PairingRequest.code)
                .all()
            )

    def approve_pairing_request(self, channel: str, code: str) -> str | None:
        """Consume the request holding ``code`` and allow its peer.

        Returns the approved peer id, or None when the code is unknown, already
        consumed or expired.
        """
        now = self._clock()
        with self._begin() as db:
            request = db.get(PairingRequest, (channel, code))
            if request is None:
                return None
            db.delete(request)
            if request.is_expired(now):
                return None
            self._allow(db, channel, request.peer_id, now)
            return request.peer_id

    @staticmethod
    def _purge_expired(db: Session, channel: str, now: int) -> None:
        db.execute(
            delete(PairingRequest).where(
                PairingRequest.channel == channel,
                PairingRequest.expires_at.is_not(None),
                PairingRequest.expires_at <= now,
            )
        )

    # ── Settings ───────────────────────────────────────────────────────────────

    def get_setting(self, key: str) -> str | None:
        with self._begin() as db:
            row = db.get(Setting, key)
            return row.value if row is not None else None

    def set_setting(self, key: str, value: str) -> None:
        stmt = sqlite_insert(Setting).values(key=key, value=value)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"], set_={"value": stmt.excluded.value}
        )
        with self._begin() as db:
            db.execute(stmt)

    def close(self) -> None:
        self._engine.dispose()
