import time

from sqlalchemy import BigInteger, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chatbridge.persistence.database import Base


def now_ms() -> int:
    return int(time.time() * 1000)


class SessionBinding(Base):
    """The agent session bound to one peer on one channel."""

    __tablename__ = "sessions"

    channel: Mapped[str] = mapped_column(String(32), primary_key=True)
    peer_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[int] = mapped_column(BigInteger)


class AllowlistEntry(Base):
    __tablename__ = "allowlist"

    channel: Mapped[str] = mapped_column(String(32), primary_key=True)
    peer_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    created_at: Mapped[int] = mapped_column(BigInteger)


class PairingRequest(Base):
    __tablename__ = "pairing_requests"
    __table_args__ = (
        UniqueConstraint("channel", "peer_id", name="ux_pairing_requests_channel_peer"),
    )

    channel: Mapped[str] = mapped_column(String(32), primary_key=True)
    code: Mapped[str] = mapped_column(String(32), primary_key=True)
    peer_id: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[int] = mapped_column(BigInteger)
    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    def is_expired(self, at_ms: int) -> bool:
        return self.expires_at is not None and self.expires_at <= at_ms


class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text)


Index("ix_pairing_requests_expires_at", PairingRequest.expires_at)
