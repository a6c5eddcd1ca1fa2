"""
Async HTTP client for upstream catalog APIs.

Every request waits for a pacing slot on its host, is retried on 429, 5xx,
timeouts and transport errors, and is counted and timed in Prometheus.
Other 4xx responses raise immediately.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import httpx

from shared.config import get_settings
from shared.utils.logging import get_logger
from shared.utils.metrics import SOURCE_LATENCY, SOURCE_REQUESTS
from shared.utils.rate_limiter import HostRateLimiter

logger = get_logger(__name__)

MAX_RETRY_AFTER_S = 10.0
DEFAULT_RETRY_AFTER_S = 2.0


def _parse_retry_after(value: str | None) -> float:
    """Seconds from a Retry-After header, capped; HTTP-date values fall back to the default."""
    if not value:
        return DEFAULT_RETRY_AFTER_S
    try:
        return min(float(value), MAX_RETRY_AFTER_S)
    except ValueError:
        return DEFAULT_RETRY_AFTER_S


class CatalogHTTPClient:
    """Paced, retrying JSON client bound to one catalog base URL."""

    def __init__(
        self,
        source_name: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_s: float | None = None,
        max_retries: int | None = None,
        rate_limiter: HostRateLimiter | None = None,
    ) -> None:
        settings = get_settings()
        self._source = source_name
        self._base_url = base_url.rstrip("/")
        self._headers = headers or {}
        self._timeout = timeout_s or settings.src_request_timeout_s
        self._max_retries = max_retries or settings.src_max_retries
        self._limiter = rate_limiter or HostRateLimiter(rpm=settings.src_rpm_limit)
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def headers(self) -> dict[str, str]:
        return dict(self._headers)

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "CatalogHTTPClient":
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def get_json(self, path: str, params: dict[str, Any] | None = None, endpoint: str = "unknown") -> Any:
        """
        GET a path relative to the base URL and decode the JSON body.

        Raises:
            httpx.DecodingError: When a successful response is not JSON
                (e.g. an HTML maintenance page).
        """
        resp = await self.get(path, params=params, endpoint=endpoint)
        try:
            return resp.json()
        except ValueError as exc:
            logger.error(
                "source_invalid_json",
                source=self._source,
                path=path,
                content_type=resp.headers.get("Content-Type"),
                error=str(exc),
            )
            raise httpx.DecodingError(f"non-JSON response from {path}", request=resp.request) from exc

    async def get(self, path: str, params: dict[str, Any] | None = None, endpoint: str = "unknown") -> httpx.Response:
        """
        GET with pacing and retries.

        Raises:
            httpx.HTTPStatusError: On a 4xx other than 429, or when retries run out on an error status.
            httpx.TimeoutException / httpx.TransportError: When retries run out on a network failure.
        """
        if self._client is None:
            raise RuntimeError("CatalogHTTPClient not started. Call start() first.")

        for attempt in range(1, self._max_retries + 1):
            last_attempt = attempt == self._max_retries
            await self._limiter.wait_for_slot(self._base_url)
            started = time.perf_counter()
            status = "error"
            try:
                resp = await self._client.get(path, params=params)
                status = str(resp.status_code)
                delay = self._retry_delay(resp, path, attempt)
                if delay is None or last_attempt:
                    resp.raise_for_status()
                    return resp
            except httpx.TimeoutException:
                status = "timeout"
                logger.warning("source_timeout", source=self._source, path=path, attempt=attempt)
                if last_attempt:
                    raise
                delay = float(attempt)
            except httpx.HTTPStatusError as exc:
                logger.error("source_http_error", source=self._source, path=path, status=exc.response.status_code)
                raise
            except httpx.TransportError as exc:
                logger.warning("source_transport_error", source=self._source, path=path, attempt=attempt, error=str(exc))
                if last_attempt:
                    raise
                delay = float(attempt)
            finally:
                SOURCE_LATENCY.labels(source=self._source).observe(time.perf_counter() - started)
                SOURCE_REQUESTS.labels(source=self._source, endpoint=endpoint, status=status).inc()

            if delay:
                await asyncio.sleep(delay)

        raise RuntimeError(f"catalog request to {path} failed after {self._max_retries} attempts")

    def _retry_delay(self, resp: httpx.Response, path: str, attempt: int) -> Optional[float]:
        """Seconds to wait before retrying this response, or None if it should not be retried."""
        if resp.status_code == 429:
            retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
            # The limiter holds the host for retry_after; no extra sleep needed.
            self._limiter.record_429(self._base_url, retry_after)
            logger.warning("source_rate_limited", source=self._source, path=path, attempt=attempt, retry_after_s=retry_after)
            return 0.0
        if resp.status_code >= 500:
            logger.warning("source_server_error", source=self._source, path=path, status=resp.status_code, attempt=attempt)
            return float(attempt)
        return None
