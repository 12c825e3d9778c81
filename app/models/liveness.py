"""
Liveness record model — "this desktop process is alive".

Keyed by the opaque, client-generated device token (stable across
restarts).  No business logic lives here: a record is live while
`now - last_beat < LIVENESS_TTL_SECONDS`, and stale rows are deleted
before any liveness read.
"""

from datetime import datetime, timezone

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, UTCDateTime


class LivenessRecord(Base):
    __tablename__ = "liveness_records"

    device_token: Mapped[str] = mapped_column(String(256), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    last_beat: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<LivenessRecord token={self.device_token} user={self.user_id}>"
