from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Path, status

from src.api.routers import engagement as shared
from src.api.routers.engagement_http_errors import raise_engagement_http_exception
from src.api.routers.runtime_utils import MATCHING_ADMIN_APIS
from src.core.engagement import EngagementService
from src.core.errors import ConfigurationError, EngagementError
from src.core.matching.models import ExpertCandidate
from src.core.matching.repository import ExpertProfileStore

router = APIRouter(tags=["Matching Administration"])


@router.get(
    "/admin/matching-settings",
    status_code=status.HTTP_200_OK,
    summary="Get Matching Settings",
    description="Validated matching configuration that the next run will snapshot.",
)
def get_matching_settings(
    service: EngagementService = Depends(shared.get_engagement_service),
) -> dict[str, Any]:
    MATCHING_ADMIN_APIS.require()
    try:
        return service.get_matching_settings()
    except ConfigurationError as exc:
        raise_engagement_http_exception(exc)


@router.put(
    "/admin/matching-settings",
    status_code=status.HTTP_200_OK,
    summary="Replace Matching Settings",
    description=(
        "Validates and stores a new settings document. Weights must sum to 1.0; an invalid "
        "document is rejected and the stored settings are left unchanged."
    ),
)
def replace_matching_settings(
    payload: Annotated[dict[str, Any], Body()],
    service: EngagementService = Depends(shared.get_engagement_service),
) -> dict[str, Any]:
    MATCHING_ADMIN_APIS.require()
    try:
        return service.update_matching_settings(payload).model_dump(mode="json")
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@router.put(
    "/admin/experts/{expert_id}",
    response_model=ExpertCandidate,
    status_code=status.HTTP_200_OK,
    summary="Upsert Expert Profile Projection",
    description="Seeds the local expert pool used for matching.",
)
def upsert_expert(
    expert_id: Annotated[
        str,
        Path(description="Expert identifier.", examples=["exp_001"]),
    ],
    payload: ExpertCandidate,
    store: ExpertProfileStore = Depends(shared.get_expert_store),
) -> ExpertCandidate:
    MATCHING_ADMIN_APIS.require()
    candidate = payload.model_copy(update={"expert_id": expert_id})
    store.upsert_candidate(candidate)
    return candidate
