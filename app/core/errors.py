"""
Coordinator error taxonomy.

Four classes of failure, each with a fixed HTTP mapping (registered as
exception handlers in `app.main`):

- BusinessConflict  → 409  another device legitimately owns playback.
                            Expected outcome, logged at INFO, never ERROR.
- TransientInfra    → 503  storage / network hiccup.  Retry with backoff.
- HardInfra         → 500  storage unusable.  Generic "try again"; the
                            transaction is rolled back, nothing partial
                            is committed.
- ClientMisuse      → 400  malformed input.  Never retried.  Subclasses
                            narrow the status: unknown session 404,
                            another user's live device token 403.

Callers can therefore always tell "someone else is watching" apart from
"the service is unhealthy".
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from app.models.session import DeviceClass

logger = logging.getLogger(__name__)


class CoordinatorError(Exception):
    status_code: int = 500
    retryable: bool = False

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class BusinessConflict(CoordinatorError):
    status_code = 409

    def __init__(self, owner_class: DeviceClass, detail: str | None = None) -> None:
        super().__init__(
            detail
            or f"Playback is active on your {owner_class.value} client. "
            "Close it there to watch here."
        )
        self.owner_class = owner_class


class TransientInfra(CoordinatorError):
    status_code = 503
    retryable = True
    retry_after_seconds = 1


class HardInfra(CoordinatorError):
    status_code = 500


class ClientMisuse(CoordinatorError):
    status_code = 400


class SessionNotFound(ClientMisuse):
    status_code = 404


class DeviceTokenInUse(ClientMisuse):
    status_code = 403


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """
    Translate SQLAlchemy failures raised inside *operation* into the
    taxonomy above.

    Integrity violations land in the transient bucket: the only unique
    constraint a coordinator write can trip is the one-open-session
    index, which means a concurrent writer in another process won the
    race and a retry will see its result.
    """
    try:
        yield
    except CoordinatorError:
        raise
    except (OperationalError, PoolTimeoutError, IntegrityError) as exc:
        logger.warning("Transient storage failure during %s: %s", operation, exc)
        raise TransientInfra("Storage temporarily unavailable. Retry shortly.") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            logger.warning("Storage connection lost during %s: %s", operation, exc)
            raise TransientInfra("Storage temporarily unavailable. Retry shortly.") from exc
        logger.error("Storage failure during %s: %s", operation, exc)
        raise HardInfra("Service temporarily unavailable. Try again.") from exc
    except SQLAlchemyError as exc:
        logger.error("Storage failure during %s: %s", operation, exc)
        raise HardInfra("Service temporarily unavailable. Try again.") from exc
