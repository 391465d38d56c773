from __future__ import annotations

import time

import httpx

from .settings import settings


def report_uptime(url: str, timeout_s: float | None = None, client: httpx.Client | None = None) -> tuple[bool, str, float | None]:
    """Ping an external uptime monitor. Never raises.

    Returns (reported, message, latency_ms).
    """
    timeout_s = settings.heartbeat_timeout_s if timeout_s is None else timeout_s
    start = time.time()
    try:
        if client is not None:
            resp = client.get(url, timeout=timeout_s)
        else:
            with httpx.Client(timeout=timeout_s, follow_redirects=True) as c:
                resp = c.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if 200 <= resp.status_code < 300:
            return True, f"HTTP {resp.status_code}", latency_ms
        return False, f"HTTP {resp.status_code}", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except Exception as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms
