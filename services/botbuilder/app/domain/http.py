"""Shared plumbing for the JSON-over-HTTP collaborators."""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, TypeVar

import httpx
import structlog

from .errors import AdapterError, AuthenticationError, RateLimitedError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await with an explicit deadline; expiry becomes an AdapterError for ``operation``."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise AdapterError(operation, f"timed out after {timeout:.0f}s") from exc


async def post_json(
    client: httpx.AsyncClient | None,
    url: str,
    payload: dict[str, Any],
    *,
    operation: str,
    headers: dict[str, str] | None = None,
    timeout: float = 30.0,
    accept_error_body: bool = False,
) -> dict[str, Any]:
    """POST ``payload`` and return the decoded JSON object.

    Non-2xx responses raise ``AdapterError`` unless ``accept_error_body`` is set
    and the body still decodes to a JSON object (the compiler reports rejections
    with a 4xx status and a structured body).
    """
    start = time.perf_counter()
    try:
        if client is None:
            async with httpx.AsyncClient() as owned:
                response = await owned.post(url, json=payload, headers=headers, timeout=timeout)
        else:
            response = await client.post(url, json=payload, headers=headers, timeout=timeout)
    except httpx.TimeoutException as exc:
        raise AdapterError(operation, f"timed out after {timeout:.0f}s") from exc
    except httpx.HTTPError as exc:
        raise AdapterError(operation, f"transport error: {exc}") from exc
    except httpx.InvalidURL as exc:
        raise AdapterError(operation, f"invalid URL {url!r}: {exc}") from exc

    latency_ms = int((time.perf_counter() - start) * 1000)
    logger.info("http.call", operation=operation, latency_ms=latency_ms, status_code=response.status_code)

    if response.status_code in (401, 403):
        raise AuthenticationError(operation, "credentials rejected", status_code=response.status_code)
    if response.status_code == 429:
        retry_after = response.headers.get("retry-after")
        raise RateLimitedError(
            operation,
            "rate limited",
            retry_after_s=float(retry_after) if retry_after and retry_after.isdigit() else None,
        )

    try:
        data = response.json()
    except ValueError as exc:
        raise AdapterError(operation, "malformed JSON response", status_code=response.status_code) from exc
    if not isinstance(data, dict):
        raise AdapterError(operation, "response is not a JSON object", status_code=response.status_code)

    if response.is_error and not accept_error_body:
        message = data.get("error") or data.get("message") or f"HTTP {response.status_code}"
        raise AdapterError(operation, str(message), status_code=response.status_code)
    if data.get("authError"):
        raise AuthenticationError(operation, str(data.get("error") or "credentials rejected"), status_code=response.status_code)
    return data


__all__ = ["bounded", "post_json"]
