"""
Outbound HTTP with retries — shared by the accounting webhook and the
playback client.

- Per-attempt timeout (`timeout_s`).
- Retries timeouts, network errors and common transient HTTP statuses
  with capped exponential backoff and full jitter.
- Anything else (including 409 conflicts) is returned to the caller on
  the first attempt.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    backoff_base_s: float = 0.2
    backoff_max_s: float = 2.0
    retry_status_codes: tuple[int, ...] = (408, 425, 429, 500, 502, 503, 504)

    def backoff(self, attempt: int) -> float:
        ceiling = min(self.backoff_max_s, self.backoff_base_s * (2.0 ** (attempt - 1)))
        # Full jitter.
        return random.random() * max(0.0, ceiling)


NO_RETRY = RetryPolicy(attempts=1)


def classify_exc(exc: Exception) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.TransportError):
        return "network"
    return "error"


async def request_with_retry(
    *,
    client: httpx.AsyncClient,
    method: str,
    url: str,
    timeout_s: float,
    retry: RetryPolicy | None = None,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
    json_body: Any = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> httpx.Response:
    """
    Send one request, retrying transient failures.

    Returns the last response (even a failing one) once retries are
    exhausted; re-raises the last timeout / transport exception if no
    response was ever received.
    """
    pol = retry or RetryPolicy()
    attempts = max(1, int(pol.attempts))
    m = str(method).upper()

    for attempt in range(1, attempts + 1):
        try:
            resp = await client.request(
                method=m,
                url=str(url),
                params=params,
                json=json_body,
                headers=headers,
                timeout=float(timeout_s),
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            if attempt < attempts:
                logger.debug("%s %s failed (%s), retrying", m, url, classify_exc(exc))
                await sleep(pol.backoff(attempt))
                continue
            raise

        if resp.status_code in pol.retry_status_codes and attempt < attempts:
            logger.debug("%s %s returned HTTP %s, retrying", m, url, resp.status_code)
            await resp.aclose()
            await sleep(pol.backoff(attempt))
            continue
        return resp

    raise RuntimeError("unreachable")  # pragma: no cover
