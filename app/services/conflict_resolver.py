"""
Conflict resolver — pure decision functions, no storage access.

The coordinator snapshots the registry + heartbeat state for one user
into a `ConflictSnapshot` and asks:

- `resolve`          may this device class start playback?
- `evaluate_status`  is an already-playing context in conflict?
- `is_duplicate_start` is this start a double-submit of the last one?

Precedence rules for `resolve`:

1. Nothing open                           → ADMIT
2. Open session of the same class         → PREEMPT (reconnect / reload)
3. Open desktop, web asks, desktop live   → REJECT
   Open desktop, web asks, desktop dead   → PREEMPT
4. Open web, desktop asks                 → PREEMPT (desktop always wins)

Desktop precedence is gated on its heartbeat: without that gate a
crashed desktop app would lock the user out of the web player forever.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime

from app.models.session import DeviceClass, PlaybackSession


class Verdict(str, enum.Enum):
    ADMIT = "admit"
    PREEMPT = "preempt"
    REJECT = "reject"


@dataclass(frozen=True)
class SessionView:
    """Immutable copy of the fields the resolver needs from a session row."""

    session_id: uuid.UUID
    device_class: DeviceClass
    device_token: str | None
    started_at: datetime

    @classmethod
    def from_model(cls, sess: PlaybackSession) -> "SessionView":
        return cls(
            session_id=sess.id,
            device_class=sess.device_class,
            device_token=sess.device_token,
            started_at=sess.started_at,
        )


@dataclass(frozen=True)
class ConflictSnapshot:
    open_session: SessionView | None
    # Liveness of the open session's backing device.  Only meaningful
    # for desktop sessions; web sessions have no heartbeat.
    owner_live: bool = False


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    owner_class: DeviceClass | None = None
    preempt_session_id: uuid.UUID | None = None

    @property
    def admitted(self) -> bool:
        return self.verdict is not Verdict.REJECT


@dataclass(frozen=True)
class StatusView:
    has_conflict: bool
    owner_class: DeviceClass | None


def resolve(snapshot: ConflictSnapshot, requesting_class: DeviceClass) -> Decision:
    current = snapshot.open_session
    if current is None:
        return Decision(Verdict.ADMIT)

    preempt = Decision(
        Verdict.PREEMPT,
        owner_class=current.device_class,
        preempt_session_id=current.session_id,
    )

    if current.device_class is requesting_class:
        return preempt

    if current.device_class is DeviceClass.DESKTOP:
        # Web asking while a desktop session is open.
        if snapshot.owner_live:
            return Decision(Verdict.REJECT, owner_class=DeviceClass.DESKTOP)
        return preempt

    # Desktop asking while a web session is open.
    return preempt


def evaluate_status(
    snapshot: ConflictSnapshot,
    requesting_class: DeviceClass,
    session_id: uuid.UUID | None = None,
) -> StatusView:
    """
    Conflict check for a context that is (or is about to be) playing.

    With *session_id*: any open session other than the caller's is a
    conflict — the caller has been preempted.  Without it: an open
    session of the *other* class conflicts, except a desktop session
    whose device has stopped beating.
    """
    current = snapshot.open_session
    if current is None:
        return StatusView(has_conflict=False, owner_class=None)

    if session_id is not None:
        return StatusView(
            has_conflict=current.session_id != session_id,
            owner_class=current.device_class,
        )

    if current.device_class is requesting_class:
        return StatusView(has_conflict=False, owner_class=current.device_class)

    if current.device_class is DeviceClass.DESKTOP and not snapshot.owner_live:
        return StatusView(has_conflict=False, owner_class=current.device_class)

    return StatusView(has_conflict=True, owner_class=current.device_class)


def is_duplicate_start(
    snapshot: ConflictSnapshot,
    requesting_class: DeviceClass,
    device_token: str | None,
    now: datetime,
    window_seconds: float,
) -> bool:
    """
    True when a same-device start arrives within *window_seconds* of the
    open session's start (double click, retried request).  Such requests
    get the existing session id back instead of preempting it.

    Only a start carrying a device token can be recognised as the same
    device; two tokenless web starts are two tabs and must preempt.
    """
    current = snapshot.open_session
    if current is None or window_seconds <= 0 or device_token is None:
        return False
    if current.device_class is not requesting_class:
        return False
    if current.device_token != device_token:
        return False
    age = (now - current.started_at).total_seconds()
    return 0 <= age < window_seconds
