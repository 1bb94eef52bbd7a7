import threading
from contextlib import contextmanager
from copy import deepcopy
from typing import Iterator, Optional

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
from src.core.engagement.repository import EngagementRepository
from src.core.errors import DuplicateInvitationError


class InMemoryEngagementRepository(EngagementRepository):
    """Process-local backend.

    A transaction holds the re-entrant lock for its whole duration and
    restores a snapshot of every table when the block raises.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._local = threading.local()
        self._briefs: dict[str, BriefRecord] = {}
        self._invitations: dict[str, InvitationRecord] = {}
        self._invitation_pairs: dict[tuple[str, str], str] = {}
        self._proposals: dict[str, ProposalRecord] = {}
        self._projects: dict[str, ProjectRecord] = {}
        self._milestones: dict[str, MilestoneRecord] = {}
        self._runs: dict[str, AutomationRunRecord] = {}
        self._corrective_actions: dict[str, CorrectiveActionRecord] = {}
        self._events: list[EngagementEventRecord] = []
        self._event_ids: set[str] = set()
        self._dedupe_keys: set[str] = set()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            depth = getattr(self._local, "depth", 0)
            snapshot = self._snapshot() if depth == 0 else None
            self._local.depth = depth + 1
            try:
                yield
            except BaseException:
                if snapshot is not None:
                    self._restore(snapshot)
                raise
            finally:
                self._local.depth = depth

    def lock_brief(self, *, brief_id: str) -> Optional[BriefRecord]:
        return self.get_brief(brief_id=brief_id)

    def lock_invitation(self, *, invitation_id: str) -> Optional[InvitationRecord]:
        return self.get_invitation(invitation_id=invitation_id)

    def lock_project(self, *, project_id: str) -> Optional[ProjectRecord]:
        return self.get_project(project_id=project_id)

    def lock_milestone(self, *, milestone_id: str) -> Optional[MilestoneRecord]:
        return self.get_milestone(milestone_id=milestone_id)

    def save_brief(self, brief: BriefRecord) -> None:
        with self._lock:
            self._briefs[brief.brief_id] = deepcopy(brief)

    def get_brief(self, *, brief_id: str) -> Optional[BriefRecord]:
        with self._lock:
            brief = self._briefs.get(brief_id)
            return deepcopy(brief) if brief is not None else None

    def list_briefs(self, *, statuses: set[str]) -> list[BriefRecord]:
        with self._lock:
            rows = [brief for brief in self._briefs.values() if brief.status in statuses]
            rows.sort(key=lambda item: (item.created_at, item.brief_id))
            return deepcopy(rows)

    def insert_invitation(self, invitation: InvitationRecord) -> None:
        pair = (invitation.brief_id, invitation.expert_id)
        with self._lock:
            if pair in self._invitation_pairs or invitation.invitation_id in self._invitations:
                raise DuplicateInvitationError(
                    f"INVITATION_ALREADY_EXISTS: {invitation.brief_id}/{invitation.expert_id}"
                )
            self._invitations[invitation.invitation_id] = deepcopy(invitation)
            self._invitation_pairs[pair] = invitation.invitation_id

    def save_invitation(self, invitation: InvitationRecord) -> None:
        with self._lock:
            self._invitations[invitation.invitation_id] = deepcopy(invitation)
            self._invitation_pairs[(invitation.brief_id, invitation.expert_id)] = (
                invitation.invitation_id
            )

    def get_invitation(self, *, invitation_id: str) -> Optional[InvitationRecord]:
        with self._lock:
            invitation = self._invitations.get(invitation_id)
            return deepcopy(invitation) if invitation is not None else None

    def list_invitations_for_brief(self, *, brief_id: str) -> list[InvitationRecord]:
        with self._lock:
            rows = [item for item in self._invitations.values() if item.brief_id == brief_id]
            rows.sort(key=lambda item: (item.sent_at, item.invitation_id))
            return deepcopy(rows)

    def list_invitations(self, *, statuses: set[str]) -> list[InvitationRecord]:
        with self._lock:
            rows = [item for item in self._invitations.values() if item.status in statuses]
            rows.sort(key=lambda item: (item.sent_at, item.invitation_id))
            return deepcopy(rows)

    def save_proposal(self, proposal: ProposalRecord) -> None:
        with self._lock:
            self._proposals[proposal.proposal_id] = deepcopy(proposal)

    def get_proposal(self, *, proposal_id: str) -> Optional[ProposalRecord]:
        with self._lock:
            proposal = self._proposals.get(proposal_id)
            return deepcopy(proposal) if proposal is not None else None

    def list_proposals_for_brief(self, *, brief_id: str) -> list[ProposalRecord]:
        with self._lock:
            rows = [item for item in self._proposals.values() if item.brief_id == brief_id]
            rows.sort(key=lambda item: (item.created_at, item.proposal_id))
            return deepcopy(rows)

    def save_project(self, project: ProjectRecord) -> None:
        with self._lock:
            self._projects[project.project_id] = deepcopy(project)

    def get_project(self, *, project_id: str) -> Optional[ProjectRecord]:
        with self._lock:
            project = self._projects.get(project_id)
            return deepcopy(project) if project is not None else None

    def list_projects(self, *, statuses: set[str]) -> list[ProjectRecord]:
        with self._lock:
            rows = [item for item in self._projects.values() if item.status in statuses]
            rows.sort(key=lambda item: (item.created_at, item.project_id))
            return deepcopy(rows)

    def save_milestone(self, milestone: MilestoneRecord) -> None:
        with self._lock:
            self._milestones[milestone.milestone_id] = deepcopy(milestone)

    def get_milestone(self, *, milestone_id: str) -> Optional[MilestoneRecord]:
        with self._lock:
            milestone = self._milestones.get(milestone_id)
            return deepcopy(milestone) if milestone is not None else None

    def list_milestones_for_project(self, *, project_id: str) -> list[MilestoneRecord]:
        with self._lock:
            rows = [item for item in self._milestones.values() if item.project_id == project_id]
            rows.sort(key=lambda item: item.milestone_number)
            return deepcopy(rows)

    def list_milestones(self, *, statuses: set[str]) -> list[MilestoneRecord]:
        with self._lock:
            rows = [item for item in self._milestones.values() if item.status in statuses]
            rows.sort(key=lambda item: (item.project_id, item.milestone_number))
            return deepcopy(rows)

    def create_automation_run(self, run: AutomationRunRecord) -> None:
        with self._lock:
            self._runs[run.run_id] = deepcopy(run)

    def update_automation_run(self, run: AutomationRunRecord) -> None:
        with self._lock:
            self._runs[run.run_id] = deepcopy(run)

    def get_automation_run(self, *, run_id: str) -> Optional[AutomationRunRecord]:
        with self._lock:
            run = self._runs.get(run_id)
            return deepcopy(run) if run is not None else None

    def list_automation_runs(
        self, *, job_name: Optional[str], limit: int
    ) -> list[AutomationRunRecord]:
        with self._lock:
            rows = list(self._runs.values())
            if job_name is not None:
                rows = [row for row in rows if row.job_name == job_name]
            rows.sort(key=lambda item: (item.started_at, item.run_id), reverse=True)
            return deepcopy(rows[:limit])

    def claim_corrective_action(self, record: CorrectiveActionRecord) -> bool:
        with self._lock:
            if record.idempotency_key in self._corrective_actions:
                return False
            self._corrective_actions[record.idempotency_key] = deepcopy(record)
            return True

    def append_event(self, event: EngagementEventRecord) -> bool:
        with self._lock:
            if event.event_id in self._event_ids:
                return False
            if event.dedupe_key is not None and event.dedupe_key in self._dedupe_keys:
                return False
            self._events.append(deepcopy(event))
            self._event_ids.add(event.event_id)
            if event.dedupe_key is not None:
                self._dedupe_keys.add(event.dedupe_key)
            return True

    def list_events(self, *, entity_id: Optional[str] = None) -> list[EngagementEventRecord]:
        with self._lock:
            rows = [
                event for event in self._events if entity_id is None or event.entity_id == entity_id
            ]
            return deepcopy(rows)

    def _snapshot(self) -> dict[str, object]:
        return deepcopy(
            {
                "_briefs": self._briefs,
                "_invitations": self._invitations,
                "_invitation_pairs": self._invitation_pairs,
                "_proposals": self._proposals,
                "_projects": self._projects,
                "_milestones": self._milestones,
                "_runs": self._runs,
                "_corrective_actions": self._corrective_actions,
                "_events": self._events,
                "_event_ids": self._event_ids,
                "_dedupe_keys": self._dedupe_keys,
            }
        )

    def _restore(self, snapshot: dict[str, object]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)
