from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import httpx
import structlog

from .config import OPENROUTER_API_BASE
from .errors import UpstreamHTTPError, UpstreamTimeoutError, UpstreamTransportError
from .metrics import upstream_latency_seconds, upstream_requests_total

log = structlog.get_logger()


class UpstreamAttempt:
    """
    One upstream call whose response body has not been consumed yet.

    The attempt owns its deadline: every read against ``response`` must fit in
    ``remaining()``. ``aclose`` is idempotent so the translator and the gateway
    can both release it without double-closing.
    """

    def __init__(
        self,
        response: httpx.Response,
        *,
        model: str,
        deadline: float,
        timeout_seconds: float,
        clock: Callable[[], float],
    ):
        self.response = response
        self.model = model
        self.deadline = deadline
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._closed = False

    @property
    def status(self) -> int:
        return self.response.status_code

    @property
    def ok(self) -> bool:
        return self.response.is_success

    @property
    def closed(self) -> bool:
        return self._closed

    def remaining(self) -> float:
        return self.deadline - self._clock()

    async def read_text(self) -> str:
        """Best-effort body read for error reporting. Closes the attempt."""
        try:
            timeout = max(0.0, self.remaining())
            await asyncio.wait_for(self.response.aread(), timeout=timeout)
            return self.response.text
        except (httpx.HTTPError, asyncio.TimeoutError, UnicodeDecodeError):
            return ""
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.response.aclose()


class OpenRouterSession:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str = OPENROUTER_API_BASE,
        timeout_seconds: float = 60,
        default_referer: str = "http://localhost",
        default_title: str = "Open Source Fiesta",
        clock: Callable[[], float] | None = None,
    ):
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._default_referer = default_referer
        self._default_title = default_title
        self._clock: Callable[[], float] = clock or time.monotonic

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self, api_key: str, referer: str | None, title: str | None) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "HTTP-Referer": referer or self._default_referer,
            "X-Title": title or self._default_title,
            "Content-Type": "application/json",
        }

    def _build_request(
        self, payload: dict[str, Any], api_key: str, referer: str | None, title: str | None
    ) -> httpx.Request:
        url = f"{self._base_url}/chat/completions"
        try:
            return self._client.build_request(
                "POST", url, json=payload, headers=self._headers(api_key, referer, title)
            )
        except (httpx.InvalidURL, ValueError) as e:
            upstream_requests_total.labels(status="invalid_request").inc()
            raise UpstreamTransportError("Upstream request could not be built.") from e

    async def open_stream(
        self,
        payload: dict[str, Any],
        *,
        api_key: str,
        referer: str | None = None,
        title: str | None = None,
    ) -> UpstreamAttempt:
        """Send the request and return once headers arrive; the body stays unread."""
        request = self._build_request(payload, api_key, referer, title)
        started = self._clock()
        deadline = started + self._timeout_seconds
        log.debug("upstream_request", model=payload.get("model"), stream=payload.get("stream"))
        try:
            resp = await asyncio.wait_for(self._client.send(request, stream=True), timeout=self._timeout_seconds)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            upstream_requests_total.labels(status="timeout").inc()
            raise UpstreamTimeoutError(self._timeout_seconds) from e
        except httpx.HTTPError as e:
            upstream_requests_total.labels(status="transport_error").inc()
            raise UpstreamTransportError("Upstream request failed.") from e

        upstream_latency_seconds.observe(max(0.0, self._clock() - started))
        upstream_requests_total.labels(status=str(resp.status_code)).inc()
        return UpstreamAttempt(
            resp,
            model=str(payload.get("model", "")),
            deadline=deadline,
            timeout_seconds=self._timeout_seconds,
            clock=self._clock,
        )

    async def complete(
        self,
        payload: dict[str, Any],
        *,
        api_key: str,
        referer: str | None = None,
        title: str | None = None,
    ) -> dict[str, Any]:
        request = self._build_request(payload, api_key, referer, title)
        started = self._clock()
        log.debug("upstream_request", model=payload.get("model"), stream=payload.get("stream"))
        try:
            resp = await asyncio.wait_for(self._client.send(request), timeout=self._timeout_seconds)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            upstream_requests_total.labels(status="timeout").inc()
            raise UpstreamTimeoutError(self._timeout_seconds) from e
        except httpx.HTTPError as e:
            upstream_requests_total.labels(status="transport_error").inc()
            raise UpstreamTransportError("Upstream request failed.") from e

        upstream_latency_seconds.observe(max(0.0, self._clock() - started))
        upstream_requests_total.labels(status=str(resp.status_code)).inc()

        if resp.status_code >= 400:
            log.warning("upstream_http_error", status_code=resp.status_code, body=resp.text[:500])
            raise UpstreamHTTPError(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamHTTPError(502, "Upstream returned a non-JSON body.") from e
        if not isinstance(data, dict):
            raise UpstreamHTTPError(502, "Upstream returned an unexpected body.")
        return data
