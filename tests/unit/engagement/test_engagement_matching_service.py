from datetime import timedelta

import pytest

from src.core.engagement import EngagementService, EventDispatcher
from src.core.engagement.models import MatchingRunRequest
from src.core.errors import (
    ConfigurationError,
    EngagementNotFoundError,
    EngagementStateConflictError,
    StaleStateRaceError,
)
from src.core.matching.config import DEFAULT_MATCHING_SETTINGS
from src.infrastructure.experts import InMemoryExpertProfileStore
from src.infrastructure.matching_settings import EnvJsonMatchingSettingsStore
from tests.factories import (
    brief_request,
    candidate,
    expert_pool,
    invitation_for,
    matching_config,
)


def _disable_auto_matching(settings_store) -> None:
    settings_store.replace(dict(DEFAULT_MATCHING_SETTINGS, auto_matching_enabled=False))


def test_submit_brief_runs_first_matching_pass(service, recorder) -> None:
    response = service.submit_brief(brief_request())

    assert response.brief.status == "invitations_sent"
    assert response.matching is not None
    assert response.matching.invited == ["exp_alpha", "exp_bravo", "exp_charlie"]
    assert response.brief.matched_at is not None
    assert [item["expert_id"] for item in response.brief.matching_results] == [
        "exp_alpha",
        "exp_bravo",
        "exp_charlie",
    ]
    assert [event.event_type for event in recorder.events] == [
        "brief.submitted",
        "invite.sent",
        "invite.sent",
        "invite.sent",
        "brief.invitations_sent",
    ]


def test_invitations_carry_score_rationale_and_expiry(service, t0) -> None:
    brief_id = service.submit_brief(brief_request()).brief.brief_id
    invitation = invitation_for(service, brief_id, "exp_alpha")

    assert invitation.status == "sent"
    assert invitation.score_at_invite == 1.0
    assert "verified_certs" in invitation.rationale
    assert invitation.expires_at == t0 + timedelta(days=5)


def test_submit_brief_without_auto_matching_stays_submitted(service, settings_store) -> None:
    _disable_auto_matching(settings_store)
    response = service.submit_brief(brief_request())

    assert response.brief.status == "submitted"
    assert response.matching is None


def test_submit_brief_with_empty_pool_records_no_matches(
    repository, settings_store, recorder, clock
) -> None:
    service = EngagementService(
        repository=repository,
        expert_store=InMemoryExpertProfileStore(),
        settings_store=settings_store,
        dispatcher=EventDispatcher([recorder]),
        clock=clock,
    )
    response = service.submit_brief(brief_request())

    assert response.brief.status == "no_matches_found"
    assert response.matching.invited == []
    event = recorder.of_type("brief.no_matches_found")[0]
    assert event.payload == {"reason": "NO_ELIGIBLE_CANDIDATES"}


def test_invalid_settings_fail_matching_but_keep_the_brief(
    repository, expert_store, clock
) -> None:
    service = EngagementService(
        repository=repository,
        expert_store=expert_store,
        settings_store=EnvJsonMatchingSettingsStore(settings_json="[1, 2]"),
        clock=clock,
    )
    with pytest.raises(ConfigurationError) as exc_info:
        service.submit_brief(brief_request())

    brief_id = exc_info.value.brief_id
    assert brief_id is not None
    assert repository.get_brief(brief_id=brief_id).status == "submitted"
    assert repository.list_invitations_for_brief(brief_id=brief_id) == []


def test_matching_uses_the_snapshot_it_was_given(service, settings_store) -> None:
    _disable_auto_matching(settings_store)
    brief_id = service.submit_brief(brief_request()).brief.brief_id

    result = service.run_matching(brief_id, config=matching_config(min_score_default=0.99))

    assert result.invited == ["exp_alpha"]
    assert result.status == "invitations_sent"


def test_matching_request_overrides_threshold_and_size(service, settings_store) -> None:
    _disable_auto_matching(settings_store)
    brief_id = service.submit_brief(brief_request()).brief.brief_id

    result = service.run_matching(brief_id, MatchingRunRequest(min_score=0.7, max_results=2))

    assert result.invited == ["exp_alpha", "exp_bravo"]


def test_rank_candidates_previews_without_inviting(service, settings_store, repository) -> None:
    _disable_auto_matching(settings_store)
    brief_id = service.submit_brief(brief_request()).brief.brief_id

    preview = service.rank_candidates(brief_id)

    assert [item.expert_id for item in preview.candidates] == [
        "exp_alpha",
        "exp_bravo",
        "exp_charlie",
    ]
    assert repository.list_invitations_for_brief(brief_id=brief_id) == []


def test_brief_exclusion_list_is_honoured(service) -> None:
    response = service.submit_brief(brief_request(exclusion_list=["exp_alpha"]))
    assert response.matching.invited == ["exp_bravo", "exp_charlie"]


def test_archived_brief_is_never_matched(service, settings_store) -> None:
    _disable_auto_matching(settings_store)
    brief_id = service.submit_brief(brief_request()).brief.brief_id
    assert service.archive_brief(brief_id).archived is True

    with pytest.raises(EngagementStateConflictError, match="BRIEF_ARCHIVED"):
        service.run_matching(brief_id)


def test_matching_from_a_non_rollback_status_is_a_conflict(service) -> None:
    brief_id = service.submit_brief(brief_request()).brief.brief_id
    with pytest.raises(EngagementStateConflictError, match="BRIEF_NOT_MATCHABLE"):
        service.run_matching(brief_id)


def test_unknown_brief_is_not_found(service) -> None:
    with pytest.raises(EngagementNotFoundError, match="BRIEF_NOT_FOUND"):
        service.run_matching("br_missing")


def test_widening_run_only_adds_new_experts(service, expert_store) -> None:
    brief_id = service.submit_brief(brief_request()).brief.brief_id
    expert_store.upsert_candidate(candidate("exp_foxtrot", skills=["react", "node"], hours=25))

    result = service.run_matching(brief_id, allow_widen=True)

    assert result.invited == ["exp_foxtrot"]
    assert result.status == "invitations_sent"
    assert len(service.get_brief_detail(brief_id).invitations) == 4


def test_widening_run_without_new_experts_keeps_status(service) -> None:
    brief_id = service.submit_brief(brief_request()).brief.brief_id

    result = service.run_matching(brief_id, allow_widen=True)

    assert result.invited == []
    assert result.status == "invitations_sent"


class _InterleavingExpertStore(InMemoryExpertProfileStore):
    """Lets a competing matching run commit between ranking and invitation writes."""

    def __init__(self, candidates) -> None:
        super().__init__(candidates)
        self.competing_run = None

    def list_candidates(self):
        competing_run, self.competing_run = self.competing_run, None
        if competing_run is not None:
            competing_run()
        return super().list_candidates()


def test_overlapping_matching_runs_create_one_invitation_per_expert(
    repository, settings_store, clock
) -> None:
    store = _InterleavingExpertStore(expert_pool())
    service = EngagementService(
        repository=repository,
        expert_store=store,
        settings_store=settings_store,
        clock=clock,
    )
    _disable_auto_matching(settings_store)
    brief_id = service.submit_brief(brief_request()).brief.brief_id
    store.competing_run = lambda: service.run_matching(brief_id, allow_widen=True)

    result = service.run_matching(brief_id, allow_widen=True)

    invitations = repository.list_invitations_for_brief(brief_id=brief_id)
    assert sorted(item.expert_id for item in invitations) == [
        "exp_alpha",
        "exp_bravo",
        "exp_charlie",
    ]
    assert result.invited == []
    assert result.skipped == ["exp_alpha", "exp_bravo", "exp_charlie"]


def test_stale_matching_run_aborts_when_brief_moved_on(repository, settings_store, clock) -> None:
    store = _InterleavingExpertStore(expert_pool())
    service = EngagementService(
        repository=repository,
        expert_store=store,
        settings_store=settings_store,
        clock=clock,
    )
    _disable_auto_matching(settings_store)
    brief_id = service.submit_brief(brief_request()).brief.brief_id
    store.competing_run = lambda: service.run_matching(brief_id)

    with pytest.raises(StaleStateRaceError, match="BRIEF_STATUS_CHANGED"):
        service.run_matching(brief_id)
    assert len(repository.list_invitations_for_brief(brief_id=brief_id)) == 3


def test_rematch_after_all_declines_invites_fresh_experts(service, expert_store) -> None:
    brief_id = service.submit_brief(brief_request()).brief.brief_id
    for invitation in service.get_brief_detail(brief_id).invitations:
        service.respond_to_invitation(invitation.invitation_id, "decline")
    expert_store.upsert_candidate(candidate("exp_golf", skills=["react", "node"], hours=20))

    result = service.run_matching(brief_id)

    assert result.invited == ["exp_golf"]
    assert result.status == "invitations_sent"


def test_settings_update_is_validated_before_it_is_stored(service) -> None:
    with pytest.raises(ConfigurationError):
        service.update_matching_settings(dict(DEFAULT_MATCHING_SETTINGS, tools_weight=0.9))
    assert service.get_matching_settings()["tools_weight"] == 0.30

    updated = service.update_matching_settings(
        dict(DEFAULT_MATCHING_SETTINGS, outcome_weight=0.30, tools_weight=0.40)
    )
    assert updated.tools_weight == 0.40
    assert service.load_config().tools_weight == 0.40