"""
Pydantic schemas for request / response serialization.

The wire format is camelCase (`deviceClass`, `hasConflict`, ...) while
the Python side stays snake_case; every schema accepts either form on
input.  Schemas are deliberately decoupled from SQLAlchemy models so the
API surface can evolve independently of the DB layer.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.session import ClosedReason, DeviceClass


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Sessions ─────────────────────────────────────────────────────────
class StartSessionRequest(CamelModel):
    device_class: DeviceClass
    device_token: str | None = Field(default=None, min_length=1, max_length=256)


class StartSessionResponse(CamelModel):
    session_id: uuid.UUID
    reused: bool = False


class ConflictResponse(CamelModel):
    detail: str
    owner_class: DeviceClass


class EndSessionRequest(CamelModel):
    reason: ClosedReason = ClosedReason.NATURAL


class SessionOut(CamelModel):
    id: uuid.UUID
    device_class: DeviceClass
    device_token: str | None = None
    started_at: datetime
    last_seen_at: datetime
    ended_at: datetime | None = None
    closed_reason: ClosedReason | None = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ── Liveness ─────────────────────────────────────────────────────────
class HeartbeatRequest(CamelModel):
    device_token: str = Field(min_length=1, max_length=256)


# ── Status ───────────────────────────────────────────────────────────
class StatusCheckResponse(CamelModel):
    has_conflict: bool
    owner_class: DeviceClass | None = None


# ── Cleanup ──────────────────────────────────────────────────────────
class CleanupResponse(CamelModel):
    closed_sessions: int
    expired_devices: int


class SweepResponse(CamelModel):
    expired_devices: int
    abandoned_sessions: int


# ── Generic ──────────────────────────────────────────────────────────
class MessageResponse(BaseModel):
    detail: str
