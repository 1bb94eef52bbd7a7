import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Sequence, TypeVar

from pydantic import BaseModel

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

_Model = TypeVar("_Model", bound=BaseModel)


class SqlEngagementRepository(EngagementRepository):
    """Shared statements for the SQL backends.

    Each table keeps the columns used for lookups and constraints next to a
    ``payload_json`` copy of the full record. Statements are written with
    ``?`` placeholders and rewritten by ``_sql`` for drivers that use ``%s``.
    A connection is bound to the calling thread for the duration of the
    outermost ``transaction()``; calls made outside a transaction get their
    own short transaction.
    """

    placeholder = "?"
    lock_suffix = ""

    def __init__(self) -> None:
        self._local = threading.local()

    def _connect(self) -> Any:
        raise NotImplementedError

    def _begin(self, connection: Any) -> None:
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._connection():
            yield

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        current = getattr(self._local, "connection", None)
        if current is not None:
            yield current
            return
        connection = self._connect()
        self._local.connection = connection
        try:
            self._begin(connection)
            yield connection
        except BaseException:
            connection.rollback()
            raise
        else:
            connection.commit()
        finally:
            self._local.connection = None
            connection.close()

    def _sql(self, query: str) -> str:
        if self.placeholder == "?":
            return query
        return query.replace("?", self.placeholder)

    def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        with self._connection() as connection:
            return connection.execute(self._sql(query), tuple(params)).rowcount

    def _fetch_one(self, model: type[_Model], query: str, params: Sequence[Any]) -> Optional[_Model]:
        with self._connection() as connection:
            row = connection.execute(self._sql(query), tuple(params)).fetchone()
        if row is None:
            return None
        return model.model_validate_json(row["payload_json"])

    def _fetch_all(self, model: type[_Model], query: str, params: Sequence[Any]) -> list[_Model]:
        with self._connection() as connection:
            rows = connection.execute(self._sql(query), tuple(params)).fetchall()
        return [model.model_validate_json(row["payload_json"]) for row in rows]

    def _status_filter(self, statuses: set[str]) -> tuple[str, list[str]]:
        ordered = sorted(statuses)
        return ", ".join("?" for _ in ordered), ordered

    def lock_brief(self, *, brief_id: str) -> Optional[BriefRecord]:
        query = "SELECT payload_json FROM engagement_briefs WHERE brief_id = ?" + self.lock_suffix
        return self._fetch_one(BriefRecord, query, (brief_id,))

    def lock_invitation(self, *, invitation_id: str) -> Optional[InvitationRecord]:
        query = (
            "SELECT payload_json FROM engagement_invitations WHERE invitation_id = ?"
            + self.lock_suffix
        )
        return self._fetch_one(InvitationRecord, query, (invitation_id,))

    def lock_project(self, *, project_id: str) -> Optional[ProjectRecord]:
        query = (
            "SELECT payload_json FROM engagement_projects WHERE project_id = ?" + self.lock_suffix
        )
        return self._fetch_one(ProjectRecord, query, (project_id,))

    def lock_milestone(self, *, milestone_id: str) -> Optional[MilestoneRecord]:
        query = (
            "SELECT payload_json FROM engagement_milestones WHERE milestone_id = ?"
            + self.lock_suffix
        )
        return self._fetch_one(MilestoneRecord, query, (milestone_id,))

    def save_brief(self, brief: BriefRecord) -> None:
        query = """
            INSERT INTO engagement_briefs (
                brief_id,
                client_id,
                status,
                created_at,
                updated_at,
                payload_json
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (brief_id) DO UPDATE SET
                status=excluded.status,
                updated_at=excluded.updated_at,
                payload_json=excluded.payload_json
        """
        self._execute(
            query,
            (
                brief.brief_id,
                brief.client_id,
                brief.status,
                brief.created_at.isoformat(),
                brief.updated_at.isoformat(),
                brief.model_dump_json(),
            ),
        )

    def get_brief(self, *, brief_id: str) -> Optional[BriefRecord]:
        query = "SELECT payload_json FROM engagement_briefs WHERE brief_id = ?"
        return self._fetch_one(BriefRecord, query, (brief_id,))

    def list_briefs(self, *, statuses: set[str]) -> list[BriefRecord]:
        if not statuses:
            return []
        marks, params = self._status_filter(statuses)
        query = f"""
            SELECT payload_json
            FROM engagement_briefs
            WHERE status IN ({marks})
            ORDER BY created_at ASC, brief_id ASC
        """
        return self._fetch_all(BriefRecord, query, params)

    def insert_invitation(self, invitation: InvitationRecord) -> None:
        query = """
            INSERT INTO engagement_invitations (
                invitation_id,
                brief_id,
                expert_id,
                status,
                sent_at,
                expires_at,
                payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
        """
        affected = self._execute(query, _invitation_params(invitation))
        if affected == 0:
            raise DuplicateInvitationError(
                f"INVITATION_ALREADY_EXISTS: {invitation.brief_id}/{invitation.expert_id}"
            )

    def save_invitation(self, invitation: InvitationRecord) -> None:
        query = """
            INSERT INTO engagement_invitations (
                invitation_id,
                brief_id,
                expert_id,
                status,
                sent_at,
                expires_at,
                payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (invitation_id) DO UPDATE SET
                status=excluded.status,
                expires_at=excluded.expires_at,
                payload_json=excluded.payload_json
        """
        self._execute(query, _invitation_params(invitation))

    def get_invitation(self, *, invitation_id: str) -> Optional[InvitationRecord]:
        query = "SELECT payload_json FROM engagement_invitations WHERE invitation_id = ?"
        return self._fetch_one(InvitationRecord, query, (invitation_id,))

    def list_invitations_for_brief(self, *, brief_id: str) -> list[InvitationRecord]:
        query = """
            SELECT payload_json
            FROM engagement_invitations
            WHERE brief_id = ?
            ORDER BY sent_at ASC, invitation_id ASC
        """
        return self._fetch_all(InvitationRecord, query, (brief_id,))

    def list_invitations(self, *, statuses: set[str]) -> list[InvitationRecord]:
        if not statuses:
            return []
        marks, params = self._status_filter(statuses)
        query = f"""
            SELECT payload_json
            FROM engagement_invitations
            WHERE status IN ({marks})
            ORDER BY sent_at ASC, invitation_id ASC
        """
        return self._fetch_all(InvitationRecord, query, params)

    def save_proposal(self, proposal: ProposalRecord) -> None:
        query = """
            INSERT INTO engagement_proposals (
                proposal_id,
                brief_id,
                expert_id,
                status,
                created_at,
                payload_json
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (proposal_id) DO UPDATE SET
                status=excluded.status,
                payload_json=excluded.payload_json
        """
        self._execute(
            query,
            (
                proposal.proposal_id,
                proposal.brief_id,
                proposal.expert_id,
                proposal.status,
                proposal.created_at.isoformat(),
                proposal.model_dump_json(),
            ),
        )

    def get_proposal(self, *, proposal_id: str) -> Optional[ProposalRecord]:
        query = "SELECT payload_json FROM engagement_proposals WHERE proposal_id = ?"
        return self._fetch_one(ProposalRecord, query, (proposal_id,))

    def list_proposals_for_brief(self, *, brief_id: str) -> list[ProposalRecord]:
        query = """
            SELECT payload_json
            FROM engagement_proposals
            WHERE brief_id = ?
            ORDER BY created_at ASC, proposal_id ASC
        """
        return self._fetch_all(ProposalRecord, query, (brief_id,))

    def save_project(self, project: ProjectRecord) -> None:
        query = """
            INSERT INTO engagement_projects (
                project_id,
                brief_id,
                status,
                created_at,
                payload_json
            ) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (project_id) DO UPDATE SET
                status=excluded.status,
                payload_json=excluded.payload_json
        """
        self._execute(
            query,
            (
                project.project_id,
                project.brief_id,
                project.status,
                project.created_at.isoformat(),
                project.model_dump_json(),
            ),
        )

    def get_project(self, *, project_id: str) -> Optional[ProjectRecord]:
        query = "SELECT payload_json FROM engagement_projects WHERE project_id = ?"
        return self._fetch_one(ProjectRecord, query, (project_id,))

    def list_projects(self, *, statuses: set[str]) -> list[ProjectRecord]:
        if not statuses:
            return []
        marks, params = self._status_filter(statuses)
        query = f"""
            SELECT payload_json
            FROM engagement_projects
            WHERE status IN ({marks})
            ORDER BY created_at ASC, project_id ASC
        """
        return self._fetch_all(ProjectRecord, query, params)

    def save_milestone(self, milestone: MilestoneRecord) -> None:
        query = """
            INSERT INTO engagement_milestones (
                milestone_id,
                project_id,
                milestone_number,
                status,
                payload_json
            ) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (milestone_id) DO UPDATE SET
                status=excluded.status,
                payload_json=excluded.payload_json
        """
        self._execute(
            query,
            (
                milestone.milestone_id,
                milestone.project_id,
                milestone.milestone_number,
                milestone.status,
                milestone.model_dump_json(),
            ),
        )

    def get_milestone(self, *, milestone_id: str) -> Optional[MilestoneRecord]:
        query = "SELECT payload_json FROM engagement_milestones WHERE milestone_id = ?"
        return self._fetch_one(MilestoneRecord, query, (milestone_id,))

    def list_milestones_for_project(self, *, project_id: str) -> list[MilestoneRecord]:
        query = """
            SELECT payload_json
            FROM engagement_milestones
            WHERE project_id = ?
            ORDER BY milestone_number ASC
        """
        return self._fetch_all(MilestoneRecord, query, (project_id,))

    def list_milestones(self, *, statuses: set[str]) -> list[MilestoneRecord]:
        if not statuses:
            return []
        marks, params = self._status_filter(statuses)
        query = f"""
            SELECT payload_json
            FROM engagement_milestones
            WHERE status IN ({marks})
            ORDER BY project_id ASC, milestone_number ASC
        """
        return self._fetch_all(MilestoneRecord, query, params)

    def create_automation_run(self, run: AutomationRunRecord) -> None:
        self._upsert_automation_run(run)

    def update_automation_run(self, run: AutomationRunRecord) -> None:
        self._upsert_automation_run(run)

    def get_automation_run(self, *, run_id: str) -> Optional[AutomationRunRecord]:
        query = "SELECT payload_json FROM engagement_automation_runs WHERE run_id = ?"
        return self._fetch_one(AutomationRunRecord, query, (run_id,))

    def list_automation_runs(
        self, *, job_name: Optional[str], limit: int
    ) -> list[AutomationRunRecord]:
        if job_name is None:
            query = """
                SELECT payload_json
                FROM engagement_automation_runs
                ORDER BY started_at DESC, run_id DESC
                LIMIT ?
            """
            return self._fetch_all(AutomationRunRecord, query, (limit,))
        query = """
            SELECT payload_json
            FROM engagement_automation_runs
            WHERE job_name = ?
            ORDER BY started_at DESC, run_id DESC
            LIMIT ?
        """
        return self._fetch_all(AutomationRunRecord, query, (job_name, limit))

    def claim_corrective_action(self, record: CorrectiveActionRecord) -> bool:
        query = """
            INSERT INTO engagement_corrective_actions (
                idempotency_key,
                job_name,
                entity_id,
                bucket,
                run_id,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
        """
        affected = self._execute(
            query,
            (
                record.idempotency_key,
                record.job_name,
                record.entity_id,
                record.bucket,
                record.run_id,
                record.created_at.isoformat(),
            ),
        )
        return affected == 1

    def append_event(self, event: EngagementEventRecord) -> bool:
        query = """
            INSERT INTO engagement_events (
                event_id,
                event_type,
                entity_id,
                dedupe_key,
                occurred_at,
                payload_json
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
        """
        affected = self._execute(
            query,
            (
                event.event_id,
                event.event_type,
                event.entity_id,
                event.dedupe_key,
                event.occurred_at.isoformat(),
                event.model_dump_json(),
            ),
        )
        return affected == 1

    def list_events(self, *, entity_id: Optional[str] = None) -> list[EngagementEventRecord]:
        if entity_id is None:
            query = """
                SELECT payload_json
                FROM engagement_events
                ORDER BY seq ASC
            """
            return self._fetch_all(EngagementEventRecord, query, ())
        query = """
            SELECT payload_json
            FROM engagement_events
            WHERE entity_id = ?
            ORDER BY seq ASC
        """
        return self._fetch_all(EngagementEventRecord, query, (entity_id,))

    def _upsert_automation_run(self, run: AutomationRunRecord) -> None:
        query = """
            INSERT INTO engagement_automation_runs (
                run_id,
                job_name,
                status,
                started_at,
                payload_json
            ) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (run_id) DO UPDATE SET
                status=excluded.status,
                payload_json=excluded.payload_json
        """
        self._execute(
            query,
            (
                run.run_id,
                run.job_name,
                run.status,
                run.started_at.isoformat(),
                run.model_dump_json(),
            ),
        )


def _invitation_params(invitation: InvitationRecord) -> tuple[Any, ...]:
    return (
        invitation.invitation_id,
        invitation.brief_id,
        invitation.expert_id,
        invitation.status,
        invitation.sent_at.isoformat(),
        invitation.expires_at.isoformat(),
        invitation.model_dump_json(),
    )
