"""Minimal JSON-over-HTTP helper shared by the live platform adapters.

Maps urllib failures onto the adapter error taxonomy:
  404                  → NotFoundError
  408, 425, 429, 5xx   → TransientAdapterError
  other 4xx            → PermanentAdapterError
  URLError / timeout   → TransientAdapterError
"""

from __future__ import annotations

import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from posse_sync.errors import (
    AdapterError,
    NotFoundError,
    PermanentAdapterError,
    TransientAdapterError,
)

TRANSIENT_STATUS = {408, 425, 429}
USER_AGENT = "posse-sync/0.1"


def request_json(
    platform: str,
    method: str,
    url: str,
    *,
    body: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
    timeout: float = 30.0,
) -> dict[str, Any]:
    """Send a JSON request and decode the JSON response.

    Returns an empty dict for empty response bodies (e.g. 204 on delete).
    Response headers are exposed under the "_headers" key.
    """
    if params:
        url = f"{url}?{urllib.parse.urlencode(params)}"
    data = json.dumps(body).encode("utf-8") if body is not None else None
    req_headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
    if data is not None:
        req_headers["Content-Type"] = "application/json"
    req_headers.update(headers or {})

    req = urllib.request.Request(url, data=data, headers=req_headers, method=method)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
            result: Any = json.loads(raw) if raw.strip() else {}
            if not isinstance(result, dict):
                result = {"items": result}
            result["_headers"] = dict(resp.headers.items()) if resp.headers else {}
            return result
    except urllib.error.HTTPError as exc:
        body_text = exc.read().decode("utf-8", errors="replace")
        raise classify_status(platform, exc.code, body_text) from exc
    except urllib.error.URLError as exc:
        raise TransientAdapterError(platform, f"connection error: {exc.reason}") from exc
    except (socket.timeout, TimeoutError) as exc:
        raise TransientAdapterError(platform, f"request timed out after {timeout}s") from exc
    except json.JSONDecodeError as exc:
        raise PermanentAdapterError(platform, f"invalid JSON response: {exc}") from exc


def classify_status(platform: str, status: int, body_text: str = "") -> AdapterError:
    message = f"HTTP {status}: {body_text[:500]}"
    if status == 404:
        return NotFoundError(platform, message, status)
    if status in TRANSIENT_STATUS or status >= 500:
        return TransientAdapterError(platform, message, status)
    return PermanentAdapterError(platform, message, status)
