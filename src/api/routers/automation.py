from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Path, Query, status

from src.api.routers import engagement as shared
from src.api.routers.engagement_http_errors import raise_engagement_http_exception
from src.api.routers.runtime_utils import AUTOMATION_APIS
from src.core.automation import AutomationScheduler
from src.core.engagement import EngagementService
from src.core.engagement.models import (
    AutomationRunListResponse,
    AutomationRunRecord,
    EngagementEventRecord,
)
from src.core.errors import EngagementError

router = APIRouter(tags=["Engagement Automation"])


@router.post(
    "/automation/jobs/{job_name}/run",
    response_model=AutomationRunRecord,
    status_code=status.HTTP_200_OK,
    summary="Run Automation Job",
    description=(
        "Runs one corrective job now. Safe to call on an overlapping schedule: entities "
        "already corrected inside the job's lookback window are skipped."
    ),
)
def run_automation_job(
    job_name: Annotated[
        str,
        Path(description="Automation job name.", examples=["expert-propose-nudge"]),
    ],
    scheduler: AutomationScheduler = Depends(shared.get_automation_scheduler),
) -> AutomationRunRecord:
    AUTOMATION_APIS.require()
    try:
        return scheduler.run_job(job_name)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@router.get(
    "/automation/runs",
    response_model=AutomationRunListResponse,
    status_code=status.HTTP_200_OK,
    summary="List Automation Runs",
    description="Most recent automation runs first.",
)
def list_automation_runs(
    job_name: Annotated[
        Optional[str],
        Query(description="Filter by job name.", examples=["qa-retry"]),
    ] = None,
    limit: Annotated[int, Query(ge=1, le=200, examples=[50])] = 50,
    scheduler: AutomationScheduler = Depends(shared.get_automation_scheduler),
) -> AutomationRunListResponse:
    AUTOMATION_APIS.require()
    return AutomationRunListResponse(items=scheduler.list_runs(job_name=job_name, limit=limit))


@router.get(
    "/events",
    response_model=list[EngagementEventRecord],
    status_code=status.HTTP_200_OK,
    summary="List Recorded Events",
    description="Event ledger in recording order, optionally for one entity.",
)
def list_events(
    entity_id: Annotated[
        Optional[str],
        Query(description="Entity identifier.", examples=["br_3f9a2c1d7e4b"]),
    ] = None,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> list[EngagementEventRecord]:
    AUTOMATION_APIS.require()
    return service.repository.list_events(entity_id=entity_id)
