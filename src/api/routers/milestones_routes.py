from typing import Annotated, Optional

from fastapi import Body, Depends, Path, status

from src.api.routers import engagement as shared
from src.api.routers.engagement_http_errors import raise_engagement_http_exception
from src.core.engagement import EngagementService
from src.core.engagement.models import (
    DeliverableSubmitRequest,
    MilestoneTransitionResponse,
    ProjectDetailResponse,
    QaOverrideRequest,
    QaResultRequest,
)
from src.core.errors import EngagementError

MilestoneId = Annotated[
    str,
    Path(description="Milestone identifier.", examples=["ms_7c4e1a2b9d0f"]),
]
ProjectId = Annotated[
    str,
    Path(description="Project identifier.", examples=["prj_2b8d4f6a1c3e"]),
]


@shared.router.get(
    "/projects/{project_id}",
    response_model=ProjectDetailResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Project",
)
def get_project(
    project_id: ProjectId,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> ProjectDetailResponse:
    try:
        return service.get_project_detail(project_id)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@shared.router.post(
    "/projects/{project_id}/cancel",
    response_model=ProjectDetailResponse,
    status_code=status.HTTP_200_OK,
    summary="Cancel Project",
)
def cancel_project(
    project_id: ProjectId,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> ProjectDetailResponse:
    try:
        return service.cancel_project(project_id)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@shared.router.post(
    "/milestones/{milestone_id}/payment-succeeded",
    response_model=MilestoneTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Record Milestone Payment",
    description=(
        "Payment provider callback. Replaying it for an already paid milestone is a no-op "
        "reported with `replayed=true`."
    ),
)
def record_payment_succeeded(
    milestone_id: MilestoneId,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> MilestoneTransitionResponse:
    try:
        return service.record_payment_succeeded(milestone_id)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@shared.router.post(
    "/milestones/{milestone_id}/deliverable",
    response_model=MilestoneTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Submit Milestone Deliverable",
)
def submit_deliverable(
    milestone_id: MilestoneId,
    payload: Annotated[Optional[DeliverableSubmitRequest], Body()] = None,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> MilestoneTransitionResponse:
    notes = payload.notes if payload is not None else None
    try:
        return service.submit_deliverable(milestone_id, notes)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@shared.router.post(
    "/milestones/{milestone_id}/qa-result",
    response_model=MilestoneTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Record QA Result",
    description=(
        "Records a QA verdict. A pass releases the milestone funds exactly once and unlocks "
        "the next milestone for payment."
    ),
)
def record_qa_result(
    milestone_id: MilestoneId,
    payload: QaResultRequest,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> MilestoneTransitionResponse:
    try:
        return service.record_qa_result(milestone_id, passed=payload.passed, notes=payload.notes)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@shared.router.post(
    "/milestones/{milestone_id}/qa-override",
    response_model=MilestoneTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Override QA",
    description="Admin override for a milestone stuck in review; releases the funds.",
)
def override_qa(
    milestone_id: MilestoneId,
    payload: QaOverrideRequest,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> MilestoneTransitionResponse:
    try:
        return service.override_qa(milestone_id, actor_id=payload.actor_id, notes=payload.notes)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)
