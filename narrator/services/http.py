from __future__ import annotations

import json
from typing import Any
from urllib import request
from urllib.error import HTTPError, URLError

from narrator.errors import DependencyError, ServiceRequestError

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def request_json(
    url: str,
    *,
    service: str,
    payload: dict[str, Any] | None = None,
    method: str = "POST",
    timeout_seconds: float = 30.0,
) -> dict[str, Any]:
    raw = request_bytes(
        url,
        service=service,
        payload=payload,
        method=method,
        timeout_seconds=timeout_seconds,
    )
    try:
        decoded = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DependencyError(f"{service} returned invalid JSON output.", service=service) from exc
    if not isinstance(decoded, dict):
        raise DependencyError(f"{service} returned a non-object JSON payload.", service=service)
    return decoded


def request_bytes(
    url: str,
    *,
    service: str,
    payload: dict[str, Any] | None = None,
    method: str = "POST",
    timeout_seconds: float = 30.0,
) -> bytes:
    """Perform one HTTP call and map transport failures onto dependency errors."""

    body = json.dumps(payload).encode("utf-8") if payload is not None else None
    headers = {"Content-Type": "application/json"} if body is not None else {}
    req = request.Request(url, data=body, method=method, headers=headers)

    try:
        with request.urlopen(req, timeout=timeout_seconds) as response:
            return response.read()
    except HTTPError as exc:
        detail = _error_body(exc)
        message = f"{service} returned HTTP {exc.code} for {method} {url}.{detail}"
        if exc.code in RETRYABLE_STATUS_CODES:
            raise DependencyError(message, service=service, status_code=exc.code) from exc
        raise ServiceRequestError(message, service=service, status_code=exc.code) from exc
    except URLError as exc:
        raise DependencyError(f"{service} is unreachable at {url}: {exc.reason}", service=service) from exc
    except TimeoutError as exc:
        raise DependencyError(f"{service} timed out after {timeout_seconds:g}s", service=service) from exc


def _error_body(exc: HTTPError) -> str:
    try:
        text = exc.read().decode("utf-8", errors="replace").strip()
    except OSError:
        return ""
    return f" Response: {text[:300]}" if text else ""
