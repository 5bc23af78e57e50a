# ruff: noqa: INP001
"""Application wiring: health probes and OpenAPI documentation."""

from __future__ import annotations

from httpx import ASGITransport, AsyncClient

from portal.main import app


async def test_health_probes() -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        for path in ("/health", "/healthz", "/readyz"):
            resp = await client.get(path)
            assert resp.status_code == 200
            assert resp.json() == {"ok": True}
            assert resp.headers.get("X-Request-Id")


def test_openapi_lists_workflow_routes_with_specific_descriptions() -> None:
    schema = app.openapi()
    paths = schema["paths"]
    for path in (
        "/api/v1/requests",
        "/api/v1/requests/{request_id}/approve",
        "/api/v1/email-approval",
        "/api/v1/routing-rules/resolve",
        "/api/v1/teams/{team_id}/members",
        "/api/v1/notifications/events/{event_id}/resend",
        "/api/v1/audit",
    ):
        assert path in paths
    approve = paths["/api/v1/requests/{request_id}/approve"]["post"]["responses"]
    assert approve["200"]["description"] == "Request completed successfully."
    assert {tag["name"] for tag in schema["tags"]} >= {"requests", "email-approval", "audit"}
