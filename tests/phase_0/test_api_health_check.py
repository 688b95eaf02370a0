"""Tests for the API health check helper."""
from __future__ import annotations

import httpx

from backend.app.utils.api_health import APIHealthResult, check_api_health


def _envelope(graph: str, auth: str) -> dict:
    return {
        "status": [
            {"component": "graph", "status": graph},
            {"component": "auth", "status": auth},
        ],
        "version": "0.3.0",
    }


def test_check_api_health_success() -> None:
    """A 200 response should yield a successful result with component states."""

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/healthz"
        return httpx.Response(200, json=_envelope("ok", "ok"))

    transport = httpx.MockTransport(handler)
    client = httpx.Client(transport=transport)

    result = check_api_health("http://example.com", client=client)

    client.close()

    assert result == APIHealthResult(
        ok=True,
        status_code=200,
        detail="API health check succeeded",
        latency_ms=result.latency_ms,
        version="0.3.0",
        components={"graph": "ok", "auth": "ok"},
    )
    assert result.latency_ms is not None
    assert result.unhealthy_components == []


def test_check_api_health_reports_unhealthy_components() -> None:
    """A 503 envelope should name the failing components."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json=_envelope("unavailable", "ok"))

    transport = httpx.MockTransport(handler)
    client = httpx.Client(transport=transport)

    result = check_api_health("http://example.com", client=client)

    client.close()

    assert not result.ok
    assert result.status_code == 503
    assert "Health endpoint returned 503" in result.detail
    assert "graph" in result.detail
    assert result.unhealthy_components == ["graph"]


def test_check_api_health_failure_without_envelope() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    transport = httpx.MockTransport(handler)
    client = httpx.Client(transport=transport)

    result = check_api_health("http://example.com", client=client)

    client.close()

    assert not result.ok
    assert result.components == {}
    assert result.detail == "Health endpoint returned 502"


def test_check_api_health_network_error() -> None:
    """Network errors should yield a failure with explanatory detail."""

    class ErrorTransport(httpx.BaseTransport):
        def handle_request(self, request: httpx.Request) -> httpx.Response:  # type: ignore[override]
            raise httpx.ConnectError("connection refused", request=request)

    client = httpx.Client(transport=ErrorTransport())

    result = check_api_health("http://example.com", client=client)

    client.close()

    assert not result.ok
    assert result.status_code is None
    assert "connection refused" in result.detail
