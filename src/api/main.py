"""
FILE: src/api/main.py
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.api.observability import setup_observability
from src.api.persistence_profile import (
    app_persistence_profile_name,
    validate_persistence_profile_guardrails,
)
from src.api.routers import briefs_routes, milestones_routes, proposals_routes  # noqa: F401
from src.api.routers.automation import router as automation_router
from src.api.routers.engagement import close_engagement_service
from src.api.routers.engagement import router as engagement_router
from src.api.routers.engagement_config import engagement_store_backend_name
from src.api.routers.matching_settings import router as matching_settings_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _app_lifespan(_app: FastAPI):
    validate_persistence_profile_guardrails()
    logger.info(
        "service.started",
        extra={
            "extra_fields": {
                "persistence_profile": app_persistence_profile_name(),
                "engagement_store_backend": engagement_store_backend_name(),
            }
        },
    )
    yield
    close_engagement_service()


app = FastAPI(
    title="Expert Engagement API",
    version="0.1.0",
    description=(
        "Expert matching and engagement lifecycle service.\n\n"
        "Briefs are ranked against the expert pool, invitations are sent idempotently, and "
        "proposals, projects and milestones advance through explicit state machines. "
        "Scheduled automation jobs nudge, expire and re-match stalled engagements."
    ),
    openapi_tags=[
        {
            "name": "Engagement Lifecycle",
            "description": "Brief, invitation, proposal, project and milestone endpoints.",
        },
        {
            "name": "Engagement Automation",
            "description": "Corrective job runs and the event ledger.",
        },
        {
            "name": "Matching Administration",
            "description": "Matching weights, thresholds and the local expert pool.",
        },
    ],
    lifespan=_app_lifespan,
)

setup_observability(app)

app.include_router(engagement_router)
app.include_router(automation_router)
app.include_router(matching_settings_router)


@app.exception_handler(Exception)
async def unhandled_exception_to_problem_details(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception while serving request", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": "Internal Server Error",
            "status": 500,
            "detail": "An unexpected error occurred.",
            "instance": str(request.url.path),
        },
    )


@app.get("/health", tags=["Engagement Lifecycle"], summary="Liveness Probe")
def health() -> dict[str, str]:
    return {"status": "ok"}
