"""
Playback session model — one row per playback attempt.

A row is OPEN while `ended_at` is NULL and becomes terminal once closed:
CLOSED(natural | preempted | abandoned).  A closed id is never reopened;
starting again always mints a new row.

Invariant: at most one open row per user.  The coordinator enforces it
(per-user lock + close-then-open in one transaction); the partial unique
index `uq_playback_sessions_one_open` backs it up when several
coordinator processes share the database.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import Enum, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, UTCDateTime, UUIDPrimaryKeyMixin


class DeviceClass(str, enum.Enum):
    DESKTOP = "desktop"
    WEB = "web"


class ClosedReason(str, enum.Enum):
    NATURAL = "natural"
    PREEMPTED = "preempted"
    ABANDONED = "abandoned"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class PlaybackSession(Base, UUIDPrimaryKeyMixin):
    __tablename__ = "playback_sessions"

    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    device_class: Mapped[DeviceClass] = mapped_column(
        Enum(DeviceClass, name="device_class", values_callable=_enum_values),
        nullable=False,
    )
    # Desktop sessions remember which liveness token backs them.
    device_token: Mapped[str | None] = mapped_column(String(256), nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    # Last activity signal (start, or a heartbeat from the bound device).
    last_seen_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    closed_reason: Mapped[ClosedReason | None] = mapped_column(
        Enum(ClosedReason, name="closed_reason", values_callable=_enum_values),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_playback_sessions_user_open", "user_id", "ended_at"),
        Index(
            "uq_playback_sessions_one_open",
            "user_id",
            unique=True,
            postgresql_where=text("ended_at IS NULL"),
            sqlite_where=text("ended_at IS NULL"),
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    def duration_seconds(self, until: datetime | None = None) -> int:
        end = self.ended_at or until or datetime.now(timezone.utc)
        return max(0, int((end - self.started_at).total_seconds()))

    def __repr__(self) -> str:
        state = "open" if self.is_open else f"closed:{self.closed_reason.value}"
        return f"<PlaybackSession user={self.user_id} class={self.device_class.value} {state}>"
