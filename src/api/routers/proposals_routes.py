from typing import Annotated

from fastapi import Depends, Path, status

from src.api.routers import engagement as shared
from src.api.routers.engagement_http_errors import raise_engagement_http_exception
from src.core.engagement import EngagementService
from src.core.engagement.models import (
    ProposalAcceptResponse,
    ProposalCreateRequest,
    ProposalRecord,
    ProposalTransitionResponse,
)
from src.core.errors import EngagementError

ProposalId = Annotated[
    str,
    Path(description="Proposal identifier.", examples=["prp_5a1c9e3b7d2f"]),
]


@shared.router.post(
    "/briefs/{brief_id}/proposals",
    response_model=ProposalTransitionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Proposal",
    description=(
        "Creates a proposal for an expert holding an accepted invitation. Milestone payment "
        "percentages must be positive and total at most 100."
    ),
)
def create_proposal(
    brief_id: Annotated[
        str,
        Path(description="Brief identifier.", examples=["br_3f9a2c1d7e4b"]),
    ],
    payload: ProposalCreateRequest,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> ProposalTransitionResponse:
    try:
        return service.create_proposal(brief_id, payload)
    except (EngagementError, ValueError) as exc:
        raise_engagement_http_exception(exc)


@shared.router.get(
    "/proposals/{proposal_id}",
    response_model=ProposalRecord,
    status_code=status.HTTP_200_OK,
    summary="Get Proposal",
)
def get_proposal(
    proposal_id: ProposalId,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> ProposalRecord:
    try:
        return service.get_proposal(proposal_id)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@shared.router.post(
    "/proposals/{proposal_id}/send",
    response_model=ProposalTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Send Draft Proposal",
)
def send_proposal(
    proposal_id: ProposalId,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> ProposalTransitionResponse:
    try:
        return service.send_proposal(proposal_id)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@shared.router.post(
    "/proposals/{proposal_id}/view",
    response_model=ProposalTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Mark Proposal Viewed",
)
def view_proposal(
    proposal_id: ProposalId,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> ProposalTransitionResponse:
    try:
        return service.view_proposal(proposal_id)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@shared.router.post(
    "/proposals/{proposal_id}/accept",
    response_model=ProposalAcceptResponse,
    status_code=status.HTTP_200_OK,
    summary="Accept Proposal",
    description=(
        "Accepts the proposal, rejects competing live proposals on the brief and opens the "
        "project with milestone 1 awaiting payment."
    ),
)
def accept_proposal(
    proposal_id: ProposalId,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> ProposalAcceptResponse:
    try:
        return service.accept_proposal(proposal_id)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@shared.router.post(
    "/proposals/{proposal_id}/reject",
    response_model=ProposalTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Reject Proposal",
)
def reject_proposal(
    proposal_id: ProposalId,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> ProposalTransitionResponse:
    try:
        return service.reject_proposal(proposal_id)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)


@shared.router.post(
    "/proposals/{proposal_id}/withdraw",
    response_model=ProposalTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Withdraw Proposal",
)
def withdraw_proposal(
    proposal_id: ProposalId,
    service: EngagementService = Depends(shared.get_engagement_service),
) -> ProposalTransitionResponse:
    try:
        return service.withdraw_proposal(proposal_id)
    except EngagementError as exc:
        raise_engagement_http_exception(exc)
