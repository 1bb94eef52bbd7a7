from datetime import timedelta

import pytest

from src.core.engagement import InvitationManager
from src.core.errors import (
    EngagementNotFoundError,
    EngagementStateConflictError,
    IllegalTransitionError,
    StaleStateRaceError,
)
from src.core.matching.ranker import rank
from tests.factories import (
    expert_pool,
    invitation_for,
    matching_config,
    requirements,
    submitted_brief_id,
)


def test_second_invitation_for_same_expert_is_skipped_not_raised(
    service, repository, t0
) -> None:
    brief_id = submitted_brief_id(service)
    brief = repository.get_brief(brief_id=brief_id)
    shortlist = rank(requirements(), expert_pool(), matching_config()).candidates
    manager = InvitationManager(repository=repository)

    batch = manager.send_invitations(brief=brief, candidates=shortlist, expiry_days=5, now=t0)

    assert batch.sent == []
    assert batch.skipped == ["exp_alpha", "exp_bravo", "exp_charlie"]
    assert batch.events == []
    assert len(repository.list_invitations_for_brief(brief_id=brief_id)) == 3


def test_accepting_an_invitation_latches_the_brief(service, recorder) -> None:
    brief_id = submitted_brief_id(service)
    invitation = invitation_for(service, brief_id, "exp_bravo")

    result = service.respond_to_invitation(invitation.invitation_id, "accept")

    assert result.invitation.status == "accepted"
    assert result.brief_status == "expert_responses_received"
    assert recorder.of_type("invite.accepted")[0].entity_id == invitation.invitation_id
    assert len(recorder.of_type("brief.expert_responses_received")) == 1


def test_all_declines_move_brief_to_needs_more_experts(service, recorder) -> None:
    brief_id = submitted_brief_id(service)
    statuses = [
        service.respond_to_invitation(item.invitation_id, "decline").brief_status
        for item in service.get_brief_detail(brief_id).invitations
    ]

    assert statuses == ["invitations_sent", "invitations_sent", "needs_more_experts"]
    event = recorder.of_type("brief.needs_more_experts")[0]
    assert event.payload == {"invitations": {"declined": 3}}


def test_acceptance_before_declines_never_latches_needs_more_experts(service) -> None:
    brief_id = submitted_brief_id(service)
    first, second, third = service.get_brief_detail(brief_id).invitations

    service.respond_to_invitation(first.invitation_id, "accept")
    service.respond_to_invitation(second.invitation_id, "decline")
    last = service.respond_to_invitation(third.invitation_id, "decline")

    assert last.brief_status == "expert_responses_received"
    assert service.get_brief_detail(brief_id).brief.status == "expert_responses_received"


def test_invitation_can_only_be_answered_once(service) -> None:
    brief_id = submitted_brief_id(service)
    invitation = invitation_for(service, brief_id, "exp_alpha")
    service.respond_to_invitation(invitation.invitation_id, "decline")

    with pytest.raises(IllegalTransitionError):
        service.respond_to_invitation(invitation.invitation_id, "accept")


def test_answer_after_expiry_is_rejected(service, clock, t0) -> None:
    brief_id = submitted_brief_id(service)
    invitation = invitation_for(service, brief_id, "exp_alpha")
    clock.set(t0 + timedelta(days=5))

    with pytest.raises(EngagementStateConflictError, match="INVITATION_EXPIRED"):
        service.respond_to_invitation(invitation.invitation_id, "accept")
    assert invitation_for(service, brief_id, "exp_alpha").status == "sent"


def test_expiry_requires_the_deadline_to_have_passed(service, t0) -> None:
    brief_id = submitted_brief_id(service)
    invitation = invitation_for(service, brief_id, "exp_alpha")

    with pytest.raises(StaleStateRaceError, match="INVITATION_NOT_EXPIRABLE"):
        service.expire_invitation(invitation.invitation_id, now=t0 + timedelta(days=4))


def test_expiring_every_invitation_reopens_the_brief(service, recorder, t0) -> None:
    brief_id = submitted_brief_id(service)
    deadline = t0 + timedelta(days=5)
    results = [
        service.expire_invitation(item.invitation_id, now=deadline)
        for item in service.get_brief_detail(brief_id).invitations
    ]

    assert [item.invitation.status for item in results] == ["expired"] * 3
    assert results[-1].brief_status == "needs_more_experts"
    assert len(recorder.of_type("invite.expired")) == 3


def test_unknown_invitation_is_not_found(service) -> None:
    with pytest.raises(EngagementNotFoundError, match="INVITATION_NOT_FOUND"):
        service.respond_to_invitation("inv_missing", "accept")
