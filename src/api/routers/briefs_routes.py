from typing import Annotated, Optional

from fastapi import Body, Depends, Path, Query, status

from src.api.routers import engagement as shared
from src.api.routers.engagement_http_errors import raise_engagement_http_exception
from src.core.engagement import EngagementService
from src.core.engagement.models import (
    BriefDetailResponse,
    BriefRecord,
    BriefSubmitRequest,
    BriefSubmitResponse,
    InvitationRecord,
    InvitationResponseRequest,
    InvitationResponseResult,
    MatchingRunRequest,
    MatchingRunResult,
)
from src.core.errors import EngagementError
from src.core.matching.models import RankingResult

BriefId = Annotated[
    str,
    Path(description="Brief identifier.", examples=["br_3f9a2c1d7e4b"]),
]


@shared.router.post(
    "/briefs",
    response_model=BriefSubmitResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit Brief",
    description=(
        "Persists the brief as `submitted` and, when auto-matching is enabled, runs the "
        "first matching pass with a fresh configuration snapshot."
    ),
)
def submit_brief(
    payload: BriefSubmitRequest,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> BriefSubmitResponse:
    try:
        return service.submit_brief(payload)
    except (EngagementError, ValueError) as exc:
        raise_engagement_http_exception(exc)


@shared.router.get(
    "/briefs/{brief_id}",
    response_model=BriefDetailResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Brief",
    description="Returns the brief with its invitations and proposals.",
)
def get_brief(
    brief_id: BriefId,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> BriefDetailResponse:
    try:
        return service.get_brief_detail(brief_id)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@shared.router.post(
    "/briefs/{brief_id}/archive",
    response_model=BriefRecord,
    status_code=status.HTTP_200_OK,
    summary="Archive Brief",
    description="Marks the brief archived. Archived briefs are never matched again.",
)
def archive_brief(
    brief_id: BriefId,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> BriefRecord:
    try:
        return service.archive_brief(brief_id)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@shared.router.get(
    "/briefs/{brief_id}/candidates",
    response_model=RankingResult,
    status_code=status.HTTP_200_OK,
    summary="Preview Ranked Candidates",
    description="Ranks the expert pool against the brief without sending invitations.",
)
def preview_candidates(
    brief_id: BriefId,
    min_score: Annotated[
        Optional[float],
        Query(ge=0, le=1, description="Score threshold override.", examples=[0.65]),
    ] = None,
    max_results: Annotated[
        Optional[int],
        Query(ge=1, le=50, description="Shortlist size override.", examples=[5]),
    ] = None,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> RankingResult:
    try:
        return service.rank_candidates(brief_id, min_score=min_score, max_results=max_results)
    except (EngagementError, ValueError) as exc:
        raise_engagement_http_exception(exc)


@shared.router.post(
    "/briefs/{brief_id}/matching",
    response_model=MatchingRunResult,
    status_code=status.HTTP_200_OK,
    summary="Run Matching",
    description=(
        "Manual matching run. From `submitted`, `needs_more_experts` or `no_matches_found` "
        "the brief is re-ranked; from `invitations_sent` the run only widens the invitation set."
    ),
)
def run_matching(
    brief_id: BriefId,
    payload: Annotated[Optional[MatchingRunRequest], Body()] = None,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> MatchingRunResult:
    try:
        return service.run_matching(brief_id, payload, allow_widen=True)
    except (EngagementError, ValueError) as exc:
        raise_engagement_http_exception(exc)


@shared.router.get(
    "/briefs/{brief_id}/invitations",
    response_model=list[InvitationRecord],
    status_code=status.HTTP_200_OK,
    summary="List Brief Invitations",
)
def list_brief_invitations(
    brief_id: BriefId,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> list[InvitationRecord]:
    try:
        return service.get_brief_detail(brief_id).invitations
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@shared.router.post(
    "/invitations/{invitation_id}/response",
    response_model=InvitationResponseResult,
    status_code=status.HTTP_200_OK,
    summary="Respond to Invitation",
    description=(
        "Records an expert's accept or decline. The brief latches to "
        "`expert_responses_received` on any acceptance, or to `needs_more_experts` once every "
        "invitation is declined or expired."
    ),
)
def respond_to_invitation(
    invitation_id: Annotated[
        str,
        Path(description="Invitation identifier.", examples=["inv_8d2e5f1a9b3c"]),
    ],
    payload: InvitationResponseRequest,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> InvitationResponseResult:
    try:
        return service.respond_to_invitation(invitation_id, payload.action)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)
