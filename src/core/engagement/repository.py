from contextlib import AbstractContextManager
from typing import Optional, Protocol

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


class EngagementRepository(Protocol):
    """Persistence port for briefs, invitations, proposals, projects and automation.

    Writes issued inside ``transaction()`` commit together or not at all.
    Nested ``transaction()`` blocks join the outer one. The ``lock_*`` reads
    hold the row until the enclosing transaction ends; a read-modify-write of
    a record must start from one. When a project and one of its milestones are
    both locked, the project is locked first.
    """

    def transaction(self) -> AbstractContextManager[None]: ...

    def lock_brief(self, *, brief_id: str) -> Optional[BriefRecord]: ...

    def lock_invitation(self, *, invitation_id: str) -> Optional[InvitationRecord]: ...

    def lock_project(self, *, project_id: str) -> Optional[ProjectRecord]: ...

    def lock_milestone(self, *, milestone_id: str) -> Optional[MilestoneRecord]: ...

    def save_brief(self, brief: BriefRecord) -> None: ...

    def get_brief(self, *, brief_id: str) -> Optional[BriefRecord]: ...

    def list_briefs(self, *, statuses: set[str]) -> list[BriefRecord]: ...

    def insert_invitation(self, invitation: InvitationRecord) -> None: ...

    def save_invitation(self, invitation: InvitationRecord) -> None: ...

    def get_invitation(self, *, invitation_id: str) -> Optional[InvitationRecord]: ...

    def list_invitations_for_brief(self, *, brief_id: str) -> list[InvitationRecord]: ...

    def list_invitations(self, *, statuses: set[str]) -> list[InvitationRecord]: ...

    def save_proposal(self, proposal: ProposalRecord) -> None: ...

    def get_proposal(self, *, proposal_id: str) -> Optional[ProposalRecord]: ...

    def list_proposals_for_brief(self, *, brief_id: str) -> list[ProposalRecord]: ...

    def save_project(self, project: ProjectRecord) -> None: ...

    def get_project(self, *, project_id: str) -> Optional[ProjectRecord]: ...

    def list_projects(self, *, statuses: set[str]) -> list[ProjectRecord]: ...

    def save_milestone(self, milestone: MilestoneRecord) -> None: ...

    def get_milestone(self, *, milestone_id: str) -> Optional[MilestoneRecord]: ...

    def list_milestones_for_project(self, *, project_id: str) -> list[MilestoneRecord]: ...

    def list_milestones(self, *, statuses: set[str]) -> list[MilestoneRecord]: ...

    def create_automation_run(self, run: AutomationRunRecord) -> None: ...

    def update_automation_run(self, run: AutomationRunRecord) -> None: ...

    def get_automation_run(self, *, run_id: str) -> Optional[AutomationRunRecord]: ...

    def list_automation_runs(
        self, *, job_name: Optional[str], limit: int
    ) -> list[AutomationRunRecord]: ...

    def claim_corrective_action(self, record: CorrectiveActionRecord) -> bool: ...

    def append_event(self, event: EngagementEventRecord) -> bool: ...

    def list_events(self, *, entity_id: Optional[str] = None) -> list[EngagementEventRecord]: ...
