"""Scheduled corrective jobs.

Each job scans for entities stuck past a deadline and applies one corrective
action per entity. A job never assumes it runs alone: selection excludes
entities whose marker is still inside the lookback window, and the scheduler
additionally claims a corrective-action key before ``apply`` runs.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from src.core.engagement.events import build_event
from src.core.engagement.models import (
    BriefRecord,
    EngagementEventRecord,
    InvitationRecord,
    MilestoneRecord,
    ProjectRecord,
)
from src.core.engagement.repository import EngagementRepository
from src.core.engagement.service import EngagementService
from src.core.engagement.state_machine import next_milestone_status
from src.core.matching.config import MatchingConfig

QaVerdict = tuple[bool, Optional[str]]
QaChecker = Callable[[MilestoneRecord], Optional[QaVerdict]]

EXPERT_PROPOSE_NUDGE = "expert-propose-nudge"
CLIENT_CHOOSE_NUDGE = "client-choose-nudge"
PAY_MILESTONE_1_NUDGE = "pay-milestone-1-nudge"
QA_RETRY = "qa-retry"
STALE_PROJECT_POKE = "stale-project-poke"
RETAINER_OFFER = "retainer-offer"
INVITATION_EXPIRY_SWEEP = "invitation-expiry-sweep"
REMATCH_PENDING_BRIEFS = "rematch-pending-briefs"


@dataclass(frozen=True)
class JobContext:
    repository: EngagementRepository
    service: EngagementService
    config: MatchingConfig
    qa_checker: Optional[QaChecker] = None


class AutomationJob:
    """Template for one corrective job.

    ``select`` runs outside any transaction. For each selected entity the
    scheduler opens a transaction, claims the corrective-action key, calls
    ``reload`` and ``is_due`` to re-check the precondition against committed
    state, then ``apply``. ``follow_up`` runs after commit for work that owns
    its own transaction.
    """

    name: str = ""
    window: timedelta = timedelta(hours=24)

    def select(self, context: JobContext, now: datetime) -> list[Any]:
        raise NotImplementedError

    def entity_id(self, entity: Any) -> str:
        raise NotImplementedError

    def reload(self, context: JobContext, entity: Any) -> Optional[Any]:
        raise NotImplementedError

    def is_due(self, context: JobContext, entity: Any, now: datetime) -> bool:
        raise NotImplementedError

    def apply(
        self, context: JobContext, entity: Any, now: datetime
    ) -> list[EngagementEventRecord]:
        return []

    def follow_up(self, context: JobContext, entity: Any, now: datetime) -> None:
        return None

    def due_entities(self, context: JobContext, candidates: list[Any], now: datetime) -> list[Any]:
        return [entity for entity in candidates if self.is_due(context, entity, now)]


def _outside_window(marker: Optional[datetime], *, now: datetime, window: timedelta) -> bool:
    return marker is None or marker <= now - window


class ExpertProposeNudgeJob(AutomationJob):
    name = EXPERT_PROPOSE_NUDGE
    window = timedelta(hours=48)

    def select(self, context: JobContext, now: datetime) -> list[InvitationRecord]:
        return self.due_entities(
            context, context.repository.list_invitations(statuses={"sent"}), now
        )

    def entity_id(self, entity: InvitationRecord) -> str:
        return entity.invitation_id

    def reload(self, context: JobContext, entity: InvitationRecord) -> Optional[InvitationRecord]:
        return context.repository.lock_invitation(invitation_id=entity.invitation_id)

    def is_due(self, context: JobContext, entity: InvitationRecord, now: datetime) -> bool:
        if entity.status != "sent" or entity.expires_at <= now:
            return False
        if entity.sent_at > now - self.window:
            return False
        if not _outside_window(entity.nudged_at, now=now, window=self.window):
            return False
        proposals = context.repository.list_proposals_for_brief(brief_id=entity.brief_id)
        return not any(proposal.expert_id == entity.expert_id for proposal in proposals)

    def apply(
        self, context: JobContext, entity: InvitationRecord, now: datetime
    ) -> list[EngagementEventRecord]:
        entity.nudged_at = now
        context.repository.save_invitation(entity)
        return [
            build_event(
                event_type="expert.nudge.propose",
                entity_id=entity.invitation_id,
                occurred_at=now,
                payload={
                    "brief_id": entity.brief_id,
                    "expert_id": entity.expert_id,
                    "expires_at": entity.expires_at.isoformat(),
                },
            )
        ]


class ClientChooseNudgeJob(AutomationJob):
    name = CLIENT_CHOOSE_NUDGE
    window = timedelta(hours=72)

    def select(self, context: JobContext, now: datetime) -> list[BriefRecord]:
        return self.due_entities(
            context, context.repository.list_briefs(statuses={"proposal_ready"}), now
        )

    def entity_id(self, entity: BriefRecord) -> str:
        return entity.brief_id

    def reload(self, context: JobContext, entity: BriefRecord) -> Optional[BriefRecord]:
        return context.repository.lock_brief(brief_id=entity.brief_id)

    def is_due(self, context: JobContext, entity: BriefRecord, now: datetime) -> bool:
        if entity.status != "proposal_ready" or entity.archived:
            return False
        if not _outside_window(entity.client_nudged_at, now=now, window=self.window):
            return False
        proposals = context.repository.list_proposals_for_brief(brief_id=entity.brief_id)
        if any(proposal.status == "accepted" for proposal in proposals):
            return False
        sent = [
            proposal.sent_at
            for proposal in proposals
            if proposal.status in {"sent", "viewed"} and proposal.sent_at is not None
        ]
        return bool(sent) and min(sent) <= now - self.window

    def apply(
        self, context: JobContext, entity: BriefRecord, now: datetime
    ) -> list[EngagementEventRecord]:
        entity.client_nudged_at = now
        context.repository.save_brief(entity)
        return [
            build_event(
                event_type="client.nudge.choose",
                entity_id=entity.brief_id,
                occurred_at=now,
                payload={"client_id": entity.client_id},
            )
        ]


class PayMilestoneOneNudgeJob(AutomationJob):
    name = PAY_MILESTONE_1_NUDGE
    window = timedelta(hours=72)

    def select(self, context: JobContext, now: datetime) -> list[ProjectRecord]:
        return self.due_entities(
            context, context.repository.list_projects(statuses={"pending_payment"}), now
        )

    def entity_id(self, entity: ProjectRecord) -> str:
        return entity.project_id

    def reload(self, context: JobContext, entity: ProjectRecord) -> Optional[ProjectRecord]:
        return context.repository.lock_project(project_id=entity.project_id)

    def is_due(self, context: JobContext, entity: ProjectRecord, now: datetime) -> bool:
        if entity.status != "pending_payment" or entity.created_at > now - self.window:
            return False
        if not _outside_window(entity.payment_nudged_at, now=now, window=self.window):
            return False
        milestones = context.repository.list_milestones_for_project(project_id=entity.project_id)
        first = next((item for item in milestones if item.milestone_number == 1), None)
        return first is not None and first.payment_status == "pending"

    def apply(
        self, context: JobContext, entity: ProjectRecord, now: datetime
    ) -> list[EngagementEventRecord]:
        entity.payment_nudged_at = now
        context.repository.save_project(entity)
        return [
            build_event(
                event_type="client.nudge.pay_m1",
                entity_id=entity.project_id,
                occurred_at=now,
                payload={"client_id": entity.client_id, "brief_id": entity.brief_id},
            )
        ]


class QaRetryJob(AutomationJob):
    """Re-run QA for milestones stuck in review.

    Bounded by ``max_qa_retries`` from the run's configuration snapshot; the
    attempt after the cap flags the milestone for a manual override instead.
    """

    name = QA_RETRY
    window = timedelta(hours=24)

    def select(self, context: JobContext, now: datetime) -> list[MilestoneRecord]:
        return self.due_entities(
            context,
            context.repository.list_milestones(statuses={"qa_pending", "qa_failed"}),
            now,
        )

    def entity_id(self, entity: MilestoneRecord) -> str:
        return entity.milestone_id

    def reload(self, context: JobContext, entity: MilestoneRecord) -> Optional[MilestoneRecord]:
        return context.repository.lock_milestone(milestone_id=entity.milestone_id)

    def is_due(self, context: JobContext, entity: MilestoneRecord, now: datetime) -> bool:
        if entity.status not in {"qa_pending", "qa_failed"} or entity.manual_override_required:
            return False
        reference = entity.qa_last_run_at or entity.submitted_at or entity.updated_at
        return reference <= now - self.window

    def apply(
        self, context: JobContext, entity: MilestoneRecord, now: datetime
    ) -> list[EngagementEventRecord]:
        entity.updated_at = now
        if entity.qa_retry_count >= context.config.max_qa_retries:
            entity.manual_override_required = True
            context.repository.save_milestone(entity)
            return [
                build_event(
                    event_type="qa.manual_override.required",
                    entity_id=entity.milestone_id,
                    occurred_at=now,
                    payload={
                        "project_id": entity.project_id,
                        "retry_count": entity.qa_retry_count,
                    },
                )
            ]

        entity.qa_retry_count += 1
        entity.qa_last_run_at = now
        if entity.status == "qa_failed":
            entity.status = next_milestone_status(entity.status, "QA_RETRY")
            entity.qa_status = "pending"
        context.repository.save_milestone(entity)
        return [
            build_event(
                event_type="qa.retry.requested",
                entity_id=entity.milestone_id,
                occurred_at=now,
                payload={
                    "project_id": entity.project_id,
                    "retry_count": entity.qa_retry_count,
                },
            )
        ]

    def follow_up(self, context: JobContext, entity: MilestoneRecord, now: datetime) -> None:
        if context.qa_checker is None:
            return
        current = context.repository.get_milestone(milestone_id=entity.milestone_id)
        if current is None or current.manual_override_required or current.status != "qa_pending":
            return
        verdict = context.qa_checker(current)
        if verdict is None:
            return
        passed, notes = verdict
        context.service.record_qa_result(current.milestone_id, passed=passed, notes=notes)


class StaleProjectPokeJob(AutomationJob):
    name = STALE_PROJECT_POKE
    window = timedelta(days=7)

    def select(self, context: JobContext, now: datetime) -> list[ProjectRecord]:
        return self.due_entities(
            context, context.repository.list_projects(statuses={"active"}), now
        )

    def entity_id(self, entity: ProjectRecord) -> str:
        return entity.project_id

    def reload(self, context: JobContext, entity: ProjectRecord) -> Optional[ProjectRecord]:
        return context.repository.lock_project(project_id=entity.project_id)

    def is_due(self, context: JobContext, entity: ProjectRecord, now: datetime) -> bool:
        if entity.status != "active" or entity.last_activity_at > now - self.window:
            return False
        return _outside_window(entity.poked_at, now=now, window=self.window)

    def apply(
        self, context: JobContext, entity: ProjectRecord, now: datetime
    ) -> list[EngagementEventRecord]:
        entity.poked_at = now
        context.repository.save_project(entity)
        return [
            build_event(
                event_type="project.poke.stale",
                entity_id=entity.project_id,
                occurred_at=now,
                payload={
                    "client_id": entity.client_id,
                    "expert_id": entity.expert_id,
                    "last_activity_at": entity.last_activity_at.isoformat(),
                },
            )
        ]


class RetainerOfferJob(AutomationJob):
    name = RETAINER_OFFER
    window = timedelta(hours=24)

    def select(self, context: JobContext, now: datetime) -> list[ProjectRecord]:
        return self.due_entities(
            context, context.repository.list_projects(statuses={"completed"}), now
        )

    def entity_id(self, entity: ProjectRecord) -> str:
        return entity.project_id

    def reload(self, context: JobContext, entity: ProjectRecord) -> Optional[ProjectRecord]:
        return context.repository.lock_project(project_id=entity.project_id)

    def is_due(self, context: JobContext, entity: ProjectRecord, now: datetime) -> bool:
        if entity.status != "completed" or entity.completed_at is None:
            return False
        if entity.assurance_active or entity.retainer_offered_at is not None:
            return False
        return now - self.window <= entity.completed_at <= now

    def apply(
        self, context: JobContext, entity: ProjectRecord, now: datetime
    ) -> list[EngagementEventRecord]:
        entity.retainer_offered_at = now
        context.repository.save_project(entity)
        return [
            build_event(
                event_type="retainer.offer.post_completion",
                entity_id=entity.project_id,
                occurred_at=now,
                payload={"client_id": entity.client_id, "expert_id": entity.expert_id},
            )
        ]


class InvitationExpirySweepJob(AutomationJob):
    """Expire invitations lazily; the service re-evaluates the brief latch."""

    name = INVITATION_EXPIRY_SWEEP
    window = timedelta(hours=1)

    def select(self, context: JobContext, now: datetime) -> list[InvitationRecord]:
        return self.due_entities(
            context, context.repository.list_invitations(statuses={"sent"}), now
        )

    def entity_id(self, entity: InvitationRecord) -> str:
        return entity.invitation_id

    def reload(self, context: JobContext, entity: InvitationRecord) -> Optional[InvitationRecord]:
        return context.repository.lock_invitation(invitation_id=entity.invitation_id)

    def is_due(self, context: JobContext, entity: InvitationRecord, now: datetime) -> bool:
        return entity.status == "sent" and entity.expires_at <= now

    def follow_up(self, context: JobContext, entity: InvitationRecord, now: datetime) -> None:
        context.service.expire_invitation(entity.invitation_id, now=now)


class RematchPendingBriefsJob(AutomationJob):
    """Match briefs that reopened for more experts or never got a first run.

    A ``submitted`` brief is only picked up once it is older than ``grace`` and
    still has no ``matched_at``; younger ones belong to the submit call that
    created them.
    """

    name = REMATCH_PENDING_BRIEFS
    window = timedelta(hours=1)
    grace = timedelta(minutes=5)

    def select(self, context: JobContext, now: datetime) -> list[BriefRecord]:
        if not context.config.auto_matching_enabled:
            return []
        return self.due_entities(
            context,
            context.repository.list_briefs(statuses={"needs_more_experts", "submitted"}),
            now,
        )

    def entity_id(self, entity: BriefRecord) -> str:
        return entity.brief_id

    def reload(self, context: JobContext, entity: BriefRecord) -> Optional[BriefRecord]:
        return context.repository.lock_brief(brief_id=entity.brief_id)

    def is_due(self, context: JobContext, entity: BriefRecord, now: datetime) -> bool:
        if entity.archived:
            return False
        if entity.status == "needs_more_experts":
            return True
        return (
            entity.status == "submitted"
            and entity.matched_at is None
            and entity.created_at <= now - self.grace
        )

    def follow_up(self, context: JobContext, entity: BriefRecord, now: datetime) -> None:
        context.service.run_matching(entity.brief_id, config=context.config)


def default_jobs() -> list[AutomationJob]:
    return [
        ExpertProposeNudgeJob(),
        ClientChooseNudgeJob(),
        PayMilestoneOneNudgeJob(),
        QaRetryJob(),
        StaleProjectPokeJob(),
        RetainerOfferJob(),
        InvitationExpirySweepJob(),
        RematchPendingBriefsJob(),
    ]
