from datetime import datetime, timedelta, timezone

import pytest

from src.core.engagement.models import (
    AutomationRunRecord,
    BriefRecord,
    CorrectiveActionRecord,
    EngagementEventRecord,
    InvitationRecord,
    MilestoneRecord,
    ProjectRecord,
    ProposalRecord,
)
from src.core.errors import DuplicateInvitationError
from src.infrastructure.engagement import (
    InMemoryEngagementRepository,
    SqliteEngagementRepository,
)
from tests.factories import requirements

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["in_memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SqliteEngagementRepository(database_path=str(tmp_path / "engagement.db"))
    return InMemoryEngagementRepository()


def _brief(brief_id: str = "br_001", status: str = "submitted") -> BriefRecord:
    return BriefRecord(
        brief_id=brief_id,
        client_id="client_001",
        status=status,
        requirements=requirements(),
        created_at=NOW,
        updated_at=NOW,
    )


def _invitation(invitation_id: str, expert_id: str, status: str = "sent") -> InvitationRecord:
    return InvitationRecord(
        invitation_id=invitation_id,
        brief_id="br_001",
        expert_id=expert_id,
        status=status,
        sent_at=NOW,
        expires_at=NOW + timedelta(days=5),
        score_at_invite=0.8,
        rationale=["tools_fit"],
    )


def _event(event_id: str, dedupe_key=None) -> EngagementEventRecord:
    return EngagementEventRecord(
        event_id=event_id,
        event_type="payment.released",
        entity_id="ms_001",
        occurred_at=NOW,
        dedupe_key=dedupe_key,
    )


def test_brief_round_trip_and_status_listing(repo) -> None:
    repo.save_brief(_brief())
    repo.save_brief(_brief("br_002", status="needs_more_experts"))

    stored = repo.get_brief(brief_id="br_001")
    assert stored == _brief()
    assert stored.requirements.budget_band == "6k-10k"
    assert [item.brief_id for item in repo.list_briefs(statuses={"needs_more_experts"})] == [
        "br_002"
    ]
    assert repo.get_brief(brief_id="br_missing") is None


def test_saving_a_brief_again_updates_it(repo) -> None:
    repo.save_brief(_brief())
    updated = _brief(status="matching")
    updated.archived = True
    repo.save_brief(updated)

    stored = repo.lock_brief(brief_id="br_001")
    assert stored.status == "matching"
    assert stored.archived is True


def test_one_invitation_per_brief_and_expert(repo) -> None:
    repo.save_brief(_brief())
    repo.insert_invitation(_invitation("inv_001", "exp_a"))

    with pytest.raises(DuplicateInvitationError):
        repo.insert_invitation(_invitation("inv_002", "exp_a"))
    assert [item.invitation_id for item in repo.list_invitations_for_brief(brief_id="br_001")] == [
        "inv_001"
    ]


def test_invitation_updates_are_visible_by_status(repo) -> None:
    repo.save_brief(_brief())
    repo.insert_invitation(_invitation("inv_001", "exp_a"))
    repo.insert_invitation(_invitation("inv_002", "exp_b"))
    accepted = repo.get_invitation(invitation_id="inv_001")
    accepted.status = "accepted"
    repo.save_invitation(accepted)

    assert [item.invitation_id for item in repo.list_invitations(statuses={"sent"})] == [
        "inv_002"
    ]
    assert repo.get_invitation(invitation_id="inv_001").status == "accepted"


def test_transaction_rolls_back_every_write(repo) -> None:
    repo.save_brief(_brief())

    with pytest.raises(RuntimeError):
        with repo.transaction():
            brief = repo.lock_brief(brief_id="br_001")
            brief.status = "matching"
            repo.save_brief(brief)
            repo.insert_invitation(_invitation("inv_001", "exp_a"))
            raise RuntimeError("abort")

    assert repo.get_brief(brief_id="br_001").status == "submitted"
    assert repo.list_invitations_for_brief(brief_id="br_001") == []


def test_nested_transactions_join_the_outer_one(repo) -> None:
    repo.save_brief(_brief())

    with pytest.raises(RuntimeError):
        with repo.transaction():
            with repo.transaction():
                repo.insert_invitation(_invitation("inv_001", "exp_a"))
            raise RuntimeError("abort outer")

    assert repo.list_invitations_for_brief(brief_id="br_001") == []


def test_proposal_project_and_milestone_round_trip(repo) -> None:
    repo.save_brief(_brief())
    proposal = ProposalRecord(
        proposal_id="prp_001",
        brief_id="br_001",
        expert_id="exp_a",
        invitation_id="inv_001",
        status="sent",
        price_total=800_000,
        created_at=NOW,
        updated_at=NOW,
        sent_at=NOW,
    )
    project = ProjectRecord(
        project_id="prj_001",
        brief_id="br_001",
        proposal_id="prp_001",
        client_id="client_001",
        expert_id="exp_a",
        status="pending_payment",
        total_price=800_000,
        created_at=NOW,
        updated_at=NOW,
        last_activity_at=NOW,
    )
    milestones = [
        MilestoneRecord(
            milestone_id=f"ms_00{number}",
            project_id="prj_001",
            milestone_number=number,
            title=f"Milestone {number}",
            amount=400_000,
            status="requires_payment" if number == 1 else "planned",
            updated_at=NOW,
        )
        for number in (2, 1)
    ]
    repo.save_proposal(proposal)
    repo.save_project(project)
    for milestone in milestones:
        repo.save_milestone(milestone)

    assert repo.get_proposal(proposal_id="prp_001") == proposal
    assert repo.list_proposals_for_brief(brief_id="br_001") == [proposal]
    assert repo.get_project(project_id="prj_001") == project
    assert [item.status for item in repo.list_projects(statuses={"pending_payment"})] == [
        "pending_payment"
    ]
    assert [
        item.milestone_number for item in repo.list_milestones_for_project(project_id="prj_001")
    ] == [1, 2]
    assert [item.milestone_id for item in repo.list_milestones(statuses={"planned"})] == ["ms_002"]



def test_locking_reads_return_the_stored_records(repo) -> None:
    repo.save_brief(_brief())
    invitation = _invitation("inv_001", "exp_a")
    repo.insert_invitation(invitation)
    project = ProjectRecord(
        project_id="prj_001",
        brief_id="br_001",
        proposal_id="prp_001",
        client_id="client_001",
        expert_id="exp_a",
        status="active",
        total_price=800_000,
        created_at=NOW,
        updated_at=NOW,
        last_activity_at=NOW,
    )
    milestone = MilestoneRecord(
        milestone_id="ms_001",
        project_id="prj_001",
        milestone_number=1,
        title="Discovery",
        amount=400_000,
        status="in_progress",
        updated_at=NOW,
    )
    repo.save_project(project)
    repo.save_milestone(milestone)

    with repo.transaction():
        assert repo.lock_brief(brief_id="br_001") == _brief()
        assert repo.lock_invitation(invitation_id="inv_001") == invitation
        assert repo.lock_project(project_id="prj_001") == project
        assert repo.lock_milestone(milestone_id="ms_001") == milestone
        assert repo.lock_invitation(invitation_id="inv_missing") is None
        assert repo.lock_project(project_id="prj_missing") is None
        assert repo.lock_milestone(milestone_id="ms_missing") is None


def test_corrective_action_key_can_be_claimed_once(repo) -> None:
    record = CorrectiveActionRecord(
        idempotency_key="sha256:abc",
        job_name="expert-propose-nudge",
        entity_id="inv_001",
        bucket=42,
        run_id="run_001",
        created_at=NOW,
    )
    assert repo.claim_corrective_action(record) is True
    assert repo.claim_corrective_action(record.model_copy(update={"run_id": "run_002"})) is False


def test_event_ledger_deduplicates_and_keeps_order(repo) -> None:
    assert repo.append_event(_event("evt_001", dedupe_key="release:ms_001")) is True
    assert repo.append_event(_event("evt_002", dedupe_key="release:ms_001")) is False
    assert repo.append_event(_event("evt_001")) is False
    assert repo.append_event(_event("evt_003")) is True

    assert [item.event_id for item in repo.list_events()] == ["evt_001", "evt_003"]
    assert [item.event_id for item in repo.list_events(entity_id="ms_001")] == [
        "evt_001",
        "evt_003",
    ]
    assert repo.list_events(entity_id="ms_other") == []


def test_automation_runs_are_listed_newest_first(repo) -> None:
    first = AutomationRunRecord(run_id="run_001", job_name="qa-retry", started_at=NOW)
    second = AutomationRunRecord(
        run_id="run_002", job_name="retainer-offer", started_at=NOW + timedelta(hours=1)
    )
    repo.create_automation_run(first)
    repo.create_automation_run(second)
    first.status = "succeeded"
    first.finished_at = NOW + timedelta(minutes=1)
    repo.update_automation_run(first)

    assert [run.run_id for run in repo.list_automation_runs(job_name=None, limit=10)] == [
        "run_002",
        "run_001",
    ]
    assert repo.list_automation_runs(job_name="qa-retry", limit=10) == [first]
    assert repo.get_automation_run(run_id="run_001").status == "succeeded"
    assert len(repo.list_automation_runs(job_name=None, limit=1)) == 1
