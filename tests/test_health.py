"""Health endpoint tests."""

import logging

import pytest


@pytest.mark.asyncio
async def test_health(test_client):
    resp = await test_client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy"}


def test_health_check_filter_drops_health_access_logs():
    from intelhub.main import HealthCheckFilter

    health_record = logging.LogRecord("uvicorn.access", logging.INFO, "", 0, "GET /health 200", None, None)
    call = logging.LogRecord(
        "uvicorn.access", logging.INFO, "", 0, "GET /api/v1/intelligence 200", None, None
    )
    assert HealthCheckFilter().filter(health_record) is False
    assert HealthCheckFilter().filter(call) is True
