"""
Async HTTP client for the playback coordinator, based on httpx.AsyncClient.

Every call carries a per-request timeout.  Failures are classified so
callers can apply the right policy:

- SessionRejected          409 — another device owns playback (business outcome)
- CoordinatorUnavailable   timeouts, 5xx, 429 — recoverable, fail-open while polling
- ConnectivityLost         connect / network failures — hard, fail-closed
- CoordinatorRequestError  any other 4xx — a bug or an expired token, never retried

StartSession and EndSession are retried with jittered backoff; the
coordinator de-duplicates a repeated start carrying the same device
token, so a retry after a lost response does not preempt the caller's
own session.  Tokenless starts are never de-duplicated.
StatusCheck and Heartbeat are not retried: the next tick is the retry.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from app.client.config import ClientSettings
from app.core.outbound_http import NO_RETRY, RetryPolicy, request_with_retry
from app.models.session import DeviceClass

logger = logging.getLogger(__name__)


class CoordinatorClientError(RuntimeError):
    pass


class SessionRejected(CoordinatorClientError):
    def __init__(self, owner_class: DeviceClass, detail: str = "") -> None:
        super().__init__(detail or f"Playback is active on the {owner_class.value} client")
        self.owner_class = owner_class


class CoordinatorUnavailable(CoordinatorClientError):
    pass


class ConnectivityLost(CoordinatorClientError):
    pass


class CoordinatorRequestError(CoordinatorClientError):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code


@dataclass(frozen=True)
class StartedSession:
    session_id: uuid.UUID
    reused: bool = False


@dataclass(frozen=True)
class StatusResult:
    has_conflict: bool
    owner_class: DeviceClass | None = None


def _clean_base_url(base_url: str) -> str:
    url = (base_url or "").strip()
    if not url:
        return ""
    if not (url.startswith("http://") or url.startswith("https://")):
        url = "http://" + url
    return url.rstrip("/")


def _detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "").strip()[:300]
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return str(body)[:300]


class CoordinatorClient:
    def __init__(
        self,
        *,
        base_url: str,
        client: httpx.AsyncClient,
        access_token: str,
        timeout_s: float = 4.0,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.base_url = _clean_base_url(base_url)
        if not self.base_url:
            raise ValueError("Coordinator base_url is required")
        self._client = client
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self.timeout_s = max(0.5, float(timeout_s))
        self._retry = retry or RetryPolicy()

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        client: httpx.AsyncClient,
        access_token: str,
    ) -> "CoordinatorClient":
        return cls(
            base_url=settings.BASE_URL,
            client=client,
            access_token=access_token,
            timeout_s=settings.REQUEST_TIMEOUT_SECONDS,
            retry=RetryPolicy(attempts=max(1, settings.START_RETRY_ATTEMPTS)),
        )

    def _url(self, path: str) -> str:
        p = (path or "").strip()
        if not p.startswith("/"):
            p = "/" + p
        return self.base_url + "/api/playback" + p

    async def _request(
        self,
        method: str,
        path: str,
        *,
        retry: RetryPolicy,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> httpx.Response:
        try:
            resp = await request_with_retry(
                client=self._client,
                method=method,
                url=self._url(path),
                timeout_s=self.timeout_s,
                retry=retry,
                headers=self._headers,
                params=params,
                json_body=json_body,
            )
        except httpx.TimeoutException as exc:
            raise CoordinatorUnavailable(f"Coordinator timed out: {exc!r}") from exc
        except httpx.TransportError as exc:
            raise ConnectivityLost(f"Coordinator unreachable: {exc!r}") from exc

        if resp.status_code == 409:
            body = resp.json()
            raise SessionRejected(DeviceClass(body["ownerClass"]), str(body.get("detail", "")))
        if resp.status_code == 429 or resp.status_code >= 500:
            raise CoordinatorUnavailable(f"HTTP {resp.status_code}: {_detail(resp)}")
        if resp.status_code >= 400:
            raise CoordinatorRequestError(resp.status_code, _detail(resp))
        return resp

    # ── Sessions ─────────────────────────────────────────────────────

    async def start_session(
        self,
        device_class: DeviceClass,
        device_token: str | None = None,
    ) -> StartedSession:
        body: dict[str, Any] = {"deviceClass": device_class.value}
        if device_token:
            body["deviceToken"] = device_token
        resp = await self._request("POST", "/sessions", retry=self._retry, json_body=body)
        data = resp.json()
        return StartedSession(
            session_id=uuid.UUID(data["sessionId"]),
            reused=bool(data.get("reused", False)),
        )

    async def end_session(self, session_id: uuid.UUID, reason: str = "natural") -> bool:
        resp = await self._request(
            "POST",
            f"/sessions/{session_id}/end",
            retry=self._retry,
            json_body={"reason": reason},
        )
        return _detail(resp) == "Session ended"

    # ── Polling ──────────────────────────────────────────────────────

    async def status(
        self,
        device_class: DeviceClass,
        session_id: uuid.UUID | None = None,
    ) -> StatusResult:
        params: dict[str, Any] = {"deviceClass": device_class.value}
        if session_id is not None:
            params["sessionId"] = str(session_id)
        resp = await self._request("GET", "/status", retry=NO_RETRY, params=params)
        data = resp.json()
        owner = data.get("ownerClass")
        return StatusResult(
            has_conflict=bool(data.get("hasConflict")),
            owner_class=DeviceClass(owner) if owner else None,
        )

    # ── Desktop liveness ─────────────────────────────────────────────

    async def heartbeat(self, device_token: str) -> None:
        await self._request(
            "POST", "/heartbeat", retry=NO_RETRY, json_body={"deviceToken": device_token},
        )

    async def release_device(self, device_token: str) -> None:
        await self._request("DELETE", f"/devices/{quote(device_token, safe='')}", retry=NO_RETRY)

    async def cleanup(self) -> dict[str, int]:
        resp = await self._request("POST", "/cleanup", retry=self._retry)
        return resp.json()
