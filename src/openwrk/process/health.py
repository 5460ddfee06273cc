from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

import httpx

from openwrk.errors import HealthTimeout

logger = logging.getLogger("openwrk.health")


class Unhealthy(Exception):
    """Raised by a check to report a reachable but not-ready service."""


def wait_healthy(
    check: Callable[[], Any],
    timeout: float = 10.0,
    poll_interval: float = 0.25,
    *,
    label: str = "service",
) -> Any:
    """Call *check* every *poll_interval* seconds until it returns something truthy.

    Exceptions and falsy results count as failed attempts; the last one is
    kept and reported in the ``HealthTimeout`` raised once *timeout* seconds
    have passed.
    """
    deadline = time.monotonic() + timeout
    last_error: Optional[str] = None
    while True:
        try:
            result = check()
        except Exception as exc:  # noqa: BLE001
            last_error = str(exc) or exc.__class__.__name__
        else:
            if result:
                return result
            last_error = "unhealthy"
        if time.monotonic() + poll_interval > deadline:
            break
        time.sleep(poll_interval)
    logger.warning("Timed out waiting for %s after %.1fs (%s)", label, timeout, last_error)
    raise HealthTimeout(f"Timed out waiting for {label}", last_error)


def http_health_check(
    base_url: str,
    path: str = "/health",
    *,
    headers: Optional[dict[str, str]] = None,
    auth: Optional[tuple[str, str]] = None,
    timeout: float = 3.0,
) -> Callable[[], dict[str, Any]]:
    """Build a check that GETs ``base_url + path`` and returns the JSON body on 2xx."""
    url = base_url.rstrip("/") + path

    def _check() -> dict[str, Any]:
        response = httpx.get(url, headers=headers, auth=auth, timeout=timeout)
        if not response.is_success:
            raise Unhealthy(f"HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError:
            return {"ok": True}
        return payload if isinstance(payload, dict) and payload else {"ok": True}

    return _check


def engine_health_check(client: Any) -> Callable[[], dict[str, Any]]:
    """Build a check around an engine client's ``/global/health`` call."""

    def _check() -> dict[str, Any]:
        payload = client.health()
        if not payload.get("healthy"):
            raise Unhealthy("engine reported unhealthy")
        return payload

    return _check
