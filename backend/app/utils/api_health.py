"""Helpers for probing the service health endpoint."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

HEALTH_PATH = "/api/v1/healthz"
HEALTHY_STATES = frozenset({"ok", "disabled"})


@dataclass(frozen=True)
class APIHealthResult:
    """Structured information about a health check result."""

    ok: bool
    status_code: Optional[int]
    detail: str
    latency_ms: Optional[float]
    version: Optional[str] = None
    components: Dict[str, str] = field(default_factory=dict)

    @property
    def unhealthy_components(self) -> list[str]:
        return sorted(name for name, state in self.components.items() if state not in HEALTHY_STATES)


def _parse_envelope(payload: Any) -> tuple[Optional[str], Dict[str, str]]:
    """Extract the version and ``{component: status}`` from a health envelope."""

    if not isinstance(payload, dict):
        return None, {}
    components: Dict[str, str] = {}
    for entry in payload.get("status") or []:
        if isinstance(entry, dict) and "component" in entry:
            components[str(entry["component"])] = str(entry.get("status", "unknown"))
    version = payload.get("version")
    return (str(version) if version is not None else None), components


def check_api_health(
    base_url: str,
    *,
    timeout: float = 5.0,
    client: Optional[httpx.Client] = None,
) -> APIHealthResult:
    """Ping the health endpoint and return a structured result.

    Args:
        base_url: Base URL where the API is hosted (e.g. ``"http://localhost:8000"``).
        timeout: Request timeout in seconds when creating an internal client.
        client: Optional pre-configured ``httpx.Client`` (useful for testing).

    Returns:
        APIHealthResult: Whether every component reported ``ok``, with the
            per-component states when the service answered with an envelope.
    """

    url = f"{base_url.rstrip('/')}{HEALTH_PATH}"
    should_close = client is None
    session = client or httpx.Client(timeout=timeout)
    start_time = time.monotonic()

    try:
        response = session.get(url)
        latency_ms = (time.monotonic() - start_time) * 1000
        try:
            payload = response.json()
        except ValueError:
            payload = None
            logger.warning("Health endpoint returned non-JSON payload", extra={"url": url})
        version, components = _parse_envelope(payload)

        if response.status_code == httpx.codes.OK:
            logger.info(
                "API health check succeeded",
                extra={"url": url, "status_code": response.status_code, "latency_ms": latency_ms},
            )
            return APIHealthResult(
                ok=True,
                status_code=response.status_code,
                detail="API health check succeeded",
                latency_ms=latency_ms,
                version=version,
                components=components,
            )

        logger.warning(
            "API health check failed with status",
            extra={
                "url": url,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
                "components": components,
            },
        )
        detail = f"Health endpoint returned {response.status_code}"
        failing = sorted(name for name, state in components.items() if state not in HEALTHY_STATES)
        if failing:
            detail = f"{detail} (unhealthy: {', '.join(failing)})"
        return APIHealthResult(
            ok=False,
            status_code=response.status_code,
            detail=detail,
            latency_ms=latency_ms,
            version=version,
            components=components,
        )
    except httpx.HTTPError as exc:  # pragma: no cover - network failures are environment dependent
        latency_ms = (time.monotonic() - start_time) * 1000
        logger.error(
            "API health check request raised an error",
            extra={"url": url, "latency_ms": latency_ms, "error": str(exc)},
        )
        return APIHealthResult(
            ok=False,
            status_code=None,
            detail=f"Request to {url} failed: {exc}",
            latency_ms=latency_ms,
        )
    finally:
        if should_close:
            session.close()


__all__ = ["APIHealthResult", "HEALTH_PATH", "check_api_health"]
