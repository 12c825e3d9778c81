"""
Accounting webhook — forwards session events to the watch-time / ad
accounting service.

Disabled when `ACCOUNTING_WEBHOOK_URL` is empty.  Delivery is
best-effort: transient failures are retried with jittered exponential
backoff, then dropped with a warning.  The coordinator never waits on
accounting to decide who may play.
"""

import logging
from typing import Any

import httpx

from app.core.outbound_http import RetryPolicy, classify_exc, request_with_retry
from app.services.session_events import SessionClosed, SessionEventBus, SessionOpened

logger = logging.getLogger(__name__)


class AccountingWebhook:
    def __init__(
        self,
        *,
        url: str,
        client: httpx.AsyncClient,
        timeout_s: float = 3.0,
        retry: RetryPolicy | None = None,
    ) -> None:
        if not url:
            raise ValueError("Accounting webhook url is required")
        self.url = url
        self._client = client
        self.timeout_s = max(0.5, float(timeout_s))
        self._retry = retry or RetryPolicy()

    def attach(self, bus: SessionEventBus) -> None:
        bus.subscribe_opened(self.on_session_opened)
        bus.subscribe_closed(self.on_session_closed)

    async def on_session_opened(self, event: SessionOpened) -> None:
        await self._deliver(event.as_dict())

    async def on_session_closed(self, event: SessionClosed) -> None:
        await self._deliver(event.as_dict())

    async def _deliver(self, payload: dict[str, Any]) -> bool:
        try:
            resp = await request_with_retry(
                client=self._client,
                method="POST",
                url=self.url,
                timeout_s=self.timeout_s,
                retry=self._retry,
                json_body=payload,
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            logger.warning(
                "Accounting webhook unreachable (%s), dropping %s",
                classify_exc(exc),
                payload["event"],
            )
            return False

        if resp.status_code >= 400:
            logger.warning(
                "Accounting webhook rejected %s with HTTP %s",
                payload["event"],
                resp.status_code,
            )
            return False
        return True
