"""FastAPI application entrypoint and router wiring for the request portal."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi_pagination import add_pagination

from portal.api.audit import router as audit_router
from portal.api.email_approval import router as email_approval_router
from portal.api.notifications import router as notifications_router
from portal.api.requests import router as requests_router
from portal.api.routing_rules import router as routing_rules_router
from portal.api.teams import router as teams_router
from portal.core.config import settings
from portal.core.error_handling import install_error_handling
from portal.core.logging import configure_logging, get_logger
from portal.db.session import dispose_engine, init_db
from portal.schemas.health import HealthStatusResponse

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

configure_logging()
logger = get_logger(__name__)
OPENAPI_TAGS = [
    {
        "name": "health",
        "description": "Service liveness/readiness probes used by infrastructure checks.",
    },
    {
        "name": "requests",
        "description": "Request submission, listing, and the approve/decline/cancel workflow.",
    },
    {
        "name": "email-approval",
        "description": (
            "Token-gated approve/decline pages reached from links in approval emails. "
            "GET renders a confirmation; only POST changes state."
        ),
    },
    {
        "name": "routing-rules",
        "description": "Admin management and preview of request routing rules.",
    },
    {
        "name": "teams",
        "description": "Teams and team membership used as routing targets.",
    },
    {
        "name": "notifications",
        "description": "Notification outbox inspection, email logs, and manual resend.",
    },
    {
        "name": "audit",
        "description": "Append-only audit trail of workflow and administration actions.",
    },
]

_GENERIC_RESPONSE_DESCRIPTIONS = {"Successful Response", "Validation Error"}
_HTTP_RESPONSE_DESCRIPTIONS = {
    "200": "Request completed successfully.",
    "201": "Resource created successfully.",
    "400": "Request validation failed.",
    "401": "Authentication is required or token is invalid.",
    "403": "Caller is authenticated but not authorized for this operation.",
    "404": "Requested resource was not found.",
    "409": "Request conflicts with the current resource state.",
    "422": "Request payload failed schema or field validation.",
    "500": "Internal server error.",
}


def _normalize_response_descriptions(openapi_schema: dict[str, Any]) -> None:
    """Replace FastAPI's generic response descriptions with status-specific text."""
    paths = openapi_schema.get("paths")
    if not isinstance(paths, dict):
        return
    for path_item in paths.values():
        if not isinstance(path_item, dict):
            continue
        for operation in path_item.values():
            responses = operation.get("responses") if isinstance(operation, dict) else None
            if not isinstance(responses, dict):
                continue
            for status_code, response in responses.items():
                if not isinstance(response, dict):
                    continue
                existing = str(response.get("description", "")).strip()
                if not existing or existing in _GENERIC_RESPONSE_DESCRIPTIONS:
                    response["description"] = _HTTP_RESPONSE_DESCRIPTIONS.get(
                        str(status_code),
                        "Request processed.",
                    )


class PortalFastAPI(FastAPI):
    """FastAPI application with normalized OpenAPI response docs."""

    def openapi(self) -> dict[str, Any]:
        if self.openapi_schema:
            return self.openapi_schema
        openapi_schema = get_openapi(
            title=self.title,
            version=self.version,
            openapi_version=self.openapi_version,
            description=self.description,
            routes=self.routes,
            tags=self.openapi_tags,
        )
        _normalize_response_descriptions(openapi_schema)
        self.openapi_schema = openapi_schema
        return self.openapi_schema


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Initialize application resources before serving requests."""
    logger.info(
        "app.lifecycle.starting environment=%s db_auto_migrate=%s",
        settings.environment,
        settings.db_auto_migrate,
    )
    await init_db()
    logger.info("app.lifecycle.started")
    try:
        yield
    finally:
        await dispose_engine()
        logger.info("app.lifecycle.stopped")


app = PortalFastAPI(
    title="Ops Request Portal API",
    version="0.1.0",
    lifespan=lifespan,
    openapi_tags=OPENAPI_TAGS,
)

origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
    )
    logger.info("app.cors.enabled origins_count=%s", len(origins))
else:
    logger.info("app.cors.disabled")

install_error_handling(app)

_HEALTH_RESPONSES: dict[int | str, dict[str, Any]] = {
    status.HTTP_200_OK: {
        "description": "Service is alive.",
        "content": {"application/json": {"example": {"ok": True}}},
    },
}


@app.get("/health", tags=["health"], response_model=HealthStatusResponse, responses=_HEALTH_RESPONSES)
def health() -> HealthStatusResponse:
    """Lightweight liveness probe endpoint."""
    return HealthStatusResponse(ok=True)


@app.get("/healthz", tags=["health"], response_model=HealthStatusResponse, responses=_HEALTH_RESPONSES)
def healthz() -> HealthStatusResponse:
    """Alias liveness probe endpoint for platform compatibility."""
    return HealthStatusResponse(ok=True)


@app.get("/readyz", tags=["health"], response_model=HealthStatusResponse, responses=_HEALTH_RESPONSES)
def readyz() -> HealthStatusResponse:
    """Readiness probe endpoint for service orchestration checks."""
    return HealthStatusResponse(ok=True)


api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(requests_router)
api_v1.include_router(email_approval_router)
api_v1.include_router(routing_rules_router)
api_v1.include_router(teams_router)
api_v1.include_router(notifications_router)
api_v1.include_router(audit_router)
app.include_router(api_v1)

add_pagination(app)
logger.debug("app.routes.registered count=%s", len(app.routes))
