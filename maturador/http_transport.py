"""Shared outbound HTTP transport with backoff and concurrency limiting.

Used by both the completion service client and the messaging channel client.
Failures are returned as attempt dicts rather than raised; callers map them
onto their own error types.
"""

from __future__ import annotations

import asyncio
import os
import random
import weakref
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

import httpx

HTTP_MAX_CONCURRENCY = max(
    1,
    int((os.environ.get("MATURADOR_HTTP_MAX_CONCURRENCY") or "8").strip() or "8"),
)
HTTP_MAX_ATTEMPTS = max(
    1,
    int((os.environ.get("MATURADOR_HTTP_MAX_ATTEMPTS") or "3").strip() or "3"),
)
HTTP_BASE_BACKOFF_SECONDS = float(
    (os.environ.get("MATURADOR_HTTP_BACKOFF_BASE_SECONDS") or "0.8").strip() or "0.8"
)
HTTP_MAX_BACKOFF_SECONDS = float(
    (os.environ.get("MATURADOR_HTTP_BACKOFF_MAX_SECONDS") or "12").strip() or "12"
)

# One semaphore per event loop; a semaphore bound to a closed loop is unusable.
_SEMAPHORES: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Semaphore]" = (
    weakref.WeakKeyDictionary()
)


def _semaphore() -> asyncio.Semaphore:
    loop = asyncio.get_running_loop()
    sem = _SEMAPHORES.get(loop)
    if sem is None:
        sem = asyncio.Semaphore(HTTP_MAX_CONCURRENCY)
        _SEMAPHORES[loop] = sem
    return sem


def _extract_request_id(headers: httpx.Headers) -> Optional[str]:
    if not headers:
        return None
    for key in ("x-request-id", "request-id", "openai-request-id"):
        value = (headers.get(key) or "").strip()
        if value:
            return value
    return None


def _parse_retry_after_seconds(value: Optional[str]) -> Optional[float]:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        stamp = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return max(0.0, (stamp - datetime.now(timezone.utc)).total_seconds())


def _backoff_delay_seconds(attempt_index: int, retry_after: Optional[float]) -> float:
    if retry_after is not None and retry_after > 0:
        return min(HTTP_MAX_BACKOFF_SECONDS, retry_after)
    base = HTTP_BASE_BACKOFF_SECONDS * (2 ** max(0, attempt_index))
    jitter = random.uniform(0.0, max(0.08, base * 0.25))
    return min(HTTP_MAX_BACKOFF_SECONDS, base + jitter)


async def request_json_with_backoff(
    *,
    method: str,
    url: str,
    headers: dict,
    body: Optional[dict] = None,
    params: Optional[dict] = None,
    timeout_seconds: float,
    max_attempts: Optional[int] = None,
) -> dict:
    """Issue a JSON request, retrying only on HTTP 429.

    Returns ``{"ok", "status_code", "payload", "text", "request_id",
    "attempts", "error"}``. Timeouts report ``status_code`` 408; connection
    failures report ``status_code`` None with ``error`` set.
    """
    attempts_limit = max(1, int(max_attempts or HTTP_MAX_ATTEMPTS))
    last_attempt = {
        "ok": False,
        "status_code": None,
        "payload": None,
        "text": "",
        "request_id": None,
        "attempts": 0,
        "error": None,
    }

    for attempt in range(attempts_limit):
        try:
            async with _semaphore():
                async with httpx.AsyncClient(timeout=timeout_seconds) as client:
                    if method.upper() == "GET":
                        response = await client.get(url, headers=headers, params=params)
                    else:
                        response = await client.post(url, headers=headers, json=body, params=params)
        except httpx.TimeoutException:
            return {
                **last_attempt,
                "ok": False,
                "status_code": 408,
                "attempts": attempt + 1,
                "error": "timeout",
            }
        except httpx.HTTPError as exc:
            return {
                **last_attempt,
                "ok": False,
                "status_code": None,
                "attempts": attempt + 1,
                "error": str(exc) or exc.__class__.__name__,
            }

        payload = None
        text = ""
        try:
            payload = response.json()
        except ValueError:
            text = str(response.text or "")

        last_attempt = {
            "ok": 200 <= response.status_code < 300,
            "status_code": response.status_code,
            "payload": payload,
            "text": text,
            "request_id": _extract_request_id(response.headers),
            "attempts": attempt + 1,
            "error": None,
        }

        if response.status_code == 429 and attempt + 1 < attempts_limit:
            retry_after = _parse_retry_after_seconds(response.headers.get("retry-after"))
            await asyncio.sleep(_backoff_delay_seconds(attempt, retry_after))
            continue

        return last_attempt

    return last_attempt


async def post_json_with_backoff(
    *,
    url: str,
    headers: dict,
    body: dict,
    timeout_seconds: float,
    max_attempts: Optional[int] = None,
) -> dict:
    return await request_json_with_backoff(
        method="POST",
        url=url,
        headers=headers,
        body=body,
        timeout_seconds=timeout_seconds,
        max_attempts=max_attempts,
    )
