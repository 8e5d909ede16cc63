"""HTTP client with timeout handling and failure classification for adapters.

The client performs exactly one request per call. Retrying is the caller's
decision (see :mod:`regulatory_monitor.retry`); this module only turns
transport failures and status codes into the adapter error taxonomy.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from .errors import AuthError, ConnectivityError, ParseError
from .logging_config import get_logger

logger = get_logger("http_client")

DEFAULT_USER_AGENT = "RegulatoryMonitor/1.0 (+https://github.com/regulatory-monitor/regulatory-monitor)"
RETRYABLE_STATUS_CODES = frozenset({408, 429})
SENSITIVE_KEYS = frozenset({"api_key", "apikey", "x-api-key", "authorization", "token"})


def redact(params: Any) -> List[Tuple[str, Any]]:
    """Copy query params (mapping or pair list) with credential values masked."""
    if not params:
        return []
    pairs = params.items() if isinstance(params, Mapping) else params
    return [
        (key, "***" if str(key).lower() in SENSITIVE_KEYS else value)
        for key, value in pairs
    ]


def parse_retry_after(value: Optional[str], *, now: Optional[datetime] = None) -> Optional[float]:
    """Read a ``Retry-After`` header given either as seconds or as an HTTP date."""
    if not value:
        return None
    text = value.strip()
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (when - current).total_seconds())


def classify_response(response: httpx.Response) -> None:
    """Raise the adapter error matching a non-2xx response."""
    status_code = response.status_code
    if 200 <= status_code < 300:
        return
    try:
        url: Optional[str] = str(response.request.url)
    except RuntimeError:
        url = None
    reason = response.reason_phrase or "error"
    message = f"HTTP {status_code} {reason}"

    if status_code in (401, 403):
        raise AuthError(message, status_code=status_code, url=url)
    if status_code >= 500 or status_code in RETRYABLE_STATUS_CODES:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        raise ConnectivityError(message, status_code=status_code, url=url, retry_after=retry_after)
    raise ConnectivityError(message, status_code=status_code, url=url, retryable=False)


class HTTPClient:
    """Thin httpx wrapper shared by every adapter.

    ``transport`` is forwarded to :class:`httpx.AsyncClient`, which lets tests
    substitute an :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 15.0,
        user_agent: str = DEFAULT_USER_AGENT,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = httpx.Timeout(
            connect=min(10.0, timeout_seconds),
            read=timeout_seconds,
            write=10.0,
            pool=5.0,
        )
        self.headers = {"User-Agent": user_agent, **(headers or {})}
        self.transport = transport

    async def get_async(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Any] = None,
        follow_redirects: bool = True,
    ) -> httpx.Response:
        return await self.request_async(
            "GET",
            url,
            headers=headers,
            params=params,
            follow_redirects=follow_redirects,
        )

    async def request_async(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Any] = None,
        follow_redirects: bool = True,
    ) -> httpx.Response:
        merged_headers = {**self.headers, **(headers or {})}
        logger.debug("%s %s params=%s", method, url, redact(params))

        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=follow_redirects,
            transport=self.transport,
        ) as client:
            try:
                response = await client.request(method, url, headers=merged_headers, params=params)
            except httpx.TimeoutException as exc:
                logger.warning("Request %s %s timed out: %s", method, url, exc)
                raise ConnectivityError(f"timeout: {exc}", url=url) from exc
            except httpx.RequestError as exc:
                logger.warning("Request %s %s failed: %s", method, url, exc)
                raise ConnectivityError(f"network error: {exc}", url=url) from exc

        if not response.is_success:
            logger.warning("Request %s %s returned status %s", method, url, response.status_code)
        classify_response(response)
        return response

    async def get_json(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Any] = None,
    ) -> Any:
        """GET ``url`` and decode its JSON body, raising ParseError on bad JSON."""
        response = await self.get_async(url, headers=headers, params=params)
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ParseError(f"invalid JSON from {url}: {exc}", url=url) from exc

    async def get_text(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Any] = None,
    ) -> str:
        response = await self.get_async(url, headers=headers, params=params)
        return response.text
