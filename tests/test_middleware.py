"""Middleware tests: request ID, rate limiting, CORS, error handling."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient


def _fake_redis(count: int) -> MagicMock:
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[count, True])
    redis = MagicMock()
    redis.pipeline.return_value = pipe
    return redis


@pytest.mark.asyncio
async def test_request_id_generated(client: AsyncClient) -> None:
    """Request ID is auto-generated when not provided."""
    response = await client.get("/health")
    assert "x-request-id" in response.headers
    assert len(response.headers["x-request-id"]) == 36  # UUID format


@pytest.mark.asyncio
async def test_request_id_preserved(client: AsyncClient) -> None:
    """Custom request ID is echoed back in response."""
    response = await client.get("/health", headers={"X-Request-Id": "test-abc-123"})
    assert response.headers["x-request-id"] == "test-abc-123"


@pytest.mark.asyncio
async def test_rate_limit_headers(client: AsyncClient, monkeypatch) -> None:
    """Rate limit headers are present on non-exempt endpoints."""
    monkeypatch.setattr("irac.middleware.rate_limit.get_redis", lambda: _fake_redis(1))
    response = await client.get("/api/v1/scoring/levels")
    assert response.status_code == 200
    assert response.headers["x-ratelimit-remaining"] == "99"
    assert response.headers["x-ratelimit-limit"] == "100"


@pytest.mark.asyncio
async def test_rate_limit_blocks_excess(client: AsyncClient, monkeypatch) -> None:
    """The 101st request in a window returns 429 with Retry-After."""
    monkeypatch.setattr("irac.middleware.rate_limit.get_redis", lambda: _fake_redis(101))
    response = await client.get("/api/v1/scoring/levels")
    assert response.status_code == 429
    assert response.headers["retry-after"] == "60"
    assert response.json()["code"] == "rate_limited"


@pytest.mark.asyncio
async def test_health_exempt_from_rate_limit(client: AsyncClient, monkeypatch) -> None:
    monkeypatch.setattr("irac.middleware.rate_limit.get_redis", lambda: _fake_redis(10_000))
    response = await client.get("/health")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_no_redis_means_no_limit(client: AsyncClient) -> None:
    response = await client.get("/api/v1/scoring/levels")
    assert response.status_code == 200
    assert "x-ratelimit-limit" not in response.headers


@pytest.mark.asyncio
async def test_cors_preflight(client: AsyncClient) -> None:
    """CORS preflight returns access-control-allow-origin for configured origin."""
    response = await client.options(
        "/health",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


@pytest.mark.asyncio
async def test_404_returns_json(client: AsyncClient) -> None:
    """Unknown paths return 404 with the standard error body."""
    response = await client.get("/nonexistent-path")
    assert response.status_code == 404
    assert response.json() == {"detail": "Not Found", "code": "http_error", "details": {}}


@pytest.mark.asyncio
async def test_validation_error_shape(client: AsyncClient) -> None:
    response = await client.get("/api/v1/scoring/levels", params={"up_to": 0})
    assert response.status_code == 422
    data = response.json()
    assert data["code"] == "validation_error"
    assert data["details"]["errors"]


@pytest.mark.asyncio
async def test_completed_request_logged_with_status(client: AsyncClient, monkeypatch) -> None:
    """API calls are logged once on completion; probes are not."""
    logger = MagicMock()
    monkeypatch.setattr("irac.middleware.request_id.logger", logger)

    await client.get("/health")
    logger.info.assert_not_called()

    await client.get("/api/v1/scoring/levels")
    logger.info.assert_called_once()
    event, fields = logger.info.call_args.args[0], logger.info.call_args.kwargs
    assert event == "request_completed"
    assert fields["status_code"] == 200
    assert fields["duration_ms"] >= 0


def test_log_events_carry_service_context() -> None:
    from irac.config import Settings
    from irac.middleware.logging import _service_context

    add_service = _service_context(Settings(environment="staging"))
    event = add_service(None, "info", {"event": "scoring_awarded", "environment": "override"})
    assert event["service"] == "irac-scoring"
    assert event["version"] == "0.1.0"
    assert event["environment"] == "override"
