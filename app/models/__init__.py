"""
Models package — import every model so SQLAlchemy's Base.metadata
knows about all tables (critical for `create_all` / Alembic).
"""

from app.models.base import Base, UTCDateTime, UUIDPrimaryKeyMixin
from app.models.liveness import LivenessRecord
from app.models.session import ClosedReason, DeviceClass, PlaybackSession

__all__ = [
    "Base",
    "UTCDateTime",
    "UUIDPrimaryKeyMixin",
    "LivenessRecord",
    "ClosedReason",
    "DeviceClass",
    "PlaybackSession",
]
