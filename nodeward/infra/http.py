from __future__ import annotations

import asyncio
import hashlib
import json as jsonlib
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable
from urllib.parse import urlencode

import aiohttp
from loguru import logger

# ─── Errors ──────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class HttpError(Exception):
    """Non-2xx response, or ``status == 0`` when no response arrived."""

    status: int
    body: str

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.body}"


# ─── Auth ────────────────────────────────────────────────────────────


@runtime_checkable
class Auth(Protocol):
    async def headers(self, method: str, url: str, body: str) -> dict[str, str]: ...
    async def on_401(self) -> None: ...


class BearerAuth:
    def __init__(self, token: str) -> None:
        self._token = token

    async def headers(self, method: str, url: str, body: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
        }

    async def on_401(self) -> None:
        pass


class OvhAuth:
    """OVH API request signing.

    Every request carries ``X-Ovh-Signature``, a SHA1 over the application
    secret, consumer key, method, full URL, body and timestamp. The timestamp
    is corrected by the server clock delta, fetched once from ``/auth/time``.
    """

    def __init__(
        self,
        endpoint: str,
        application_key: str,
        application_secret: str,
        consumer_key: str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._application_key = application_key
        self._application_secret = application_secret
        self._consumer_key = consumer_key
        self._clock = clock
        self._delta: int | None = None
        self._lock = asyncio.Lock()

    async def _fetch_delta(self) -> int:
        logger.bind(component="http").debug("Fetching OVH server time")
        timeout = aiohttp.ClientTimeout(total=30)
        async with aiohttp.ClientSession(timeout=timeout) as session, session.get(
            f"{self._endpoint}/auth/time",
        ) as resp:
            if resp.status >= 400:
                raise HttpError(status=resp.status, body=await resp.text())
            server_time = int(await resp.text())
        return server_time - int(self._clock())

    async def timestamp(self) -> str:
        async with self._lock:
            if self._delta is None:
                self._delta = await self._fetch_delta()
        return str(int(self._clock()) + self._delta)

    def signature(self, method: str, url: str, body: str, timestamp: str) -> str:
        payload = "+".join([
            self._application_secret, self._consumer_key, method.upper(), url, body, timestamp,
        ])
        return "$1$" + hashlib.sha1(payload.encode()).hexdigest()

    async def headers(self, method: str, url: str, body: str) -> dict[str, str]:
        ts = await self.timestamp()
        return {
            "X-Ovh-Application": self._application_key,
            "X-Ovh-Consumer": self._consumer_key,
            "X-Ovh-Timestamp": ts,
            "X-Ovh-Signature": self.signature(method, url, body, ts),
            "Accept": "application/json",
        }

    async def on_401(self) -> None:
        async with self._lock:
            self._delta = None


# ─── Client ──────────────────────────────────────────────────────────


class HttpClient:
    def __init__(
        self,
        base_url: str,
        auth: Auth | None = None,
        *,
        timeout: float = 30,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None
        self._log = logger.bind(component="http")

    def _url(self, path: str, params: dict[str, Any] | None = None) -> str:
        url = f"{self._base_url}{path}"
        if params:
            url = f"{url}?{urlencode(params)}"
        return url

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _build_headers(self, method: str, url: str, body: str) -> dict[str, str]:
        headers: dict[str, str] = {}
        if body:
            headers["Content-Type"] = "application/json"
        if self._auth:
            headers.update(await self._auth.headers(method, url, body))
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        format: Literal["json", "text"] = "json",
    ) -> Any:
        session = await self._ensure_session()
        url = self._url(path, params)
        body = jsonlib.dumps(json, separators=(",", ":")) if json is not None else ""
        self._log.debug("{method} {path}", method=method, path=path)

        try:
            headers = await self._build_headers(method, url, body)
            async with session.request(
                method, url, headers=headers, data=body or None,
            ) as resp:
                if resp.status == 401 and self._auth:
                    self._log.debug("401 received, refreshing auth and retrying")
                    await self._auth.on_401()
                    retry_headers = await self._build_headers(method, url, body)
                    async with session.request(
                        method, url, headers=retry_headers, data=body or None,
                    ) as retry_resp:
                        return await self._parse(retry_resp, format)

                return await self._parse(resp, format)
        except aiohttp.ClientResponseError as e:
            raise HttpError(status=e.status, body=e.message) from e
        except (aiohttp.ServerTimeoutError, TimeoutError) as e:
            raise HttpError(status=0, body=f"request timeout: {e}") from e
        except aiohttp.ClientError as e:
            raise HttpError(status=0, body=str(e)) from e

    async def _parse(
        self, resp: aiohttp.ClientResponse, format: Literal["json", "text"]
    ) -> Any:
        if resp.status >= 400:
            body = await resp.text()
            self._log.warning(
                "HTTP {status} from {url}: {body}",
                status=resp.status, url=str(resp.url), body=body[:500],
            )
            raise HttpError(status=resp.status, body=body)
        match format:
            case "json":
                raw = await resp.read()
                return jsonlib.loads(raw) if raw else None
            case "text":
                return await resp.text()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        format: Literal["json", "text"] = "json",
    ) -> Any:
        return await self._send(method, path, json=json, params=params, format=format)

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def close(self) -> None:
        if self._session and not self._session.closed:
            self._log.debug("Closing HTTP session")
            await self._session.close()

    async def __aenter__(self) -> HttpClient:
        await self._ensure_session()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()
