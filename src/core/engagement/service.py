import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from src.core.engagement.events import DispatchResult, EventDispatcher, build_event
from src.core.engagement.invitations import InvitationBatch, InvitationManager
from src.core.engagement.models import (
    BriefDetailResponse,
    BriefRecord,
    BriefSubmitRequest,
    BriefSubmitResponse,
    EngagementEventRecord,
    InvitationAction,
    InvitationRecord,
    InvitationResponseResult,
    MatchingRunRequest,
    MatchingRunResult,
    MilestoneRecord,
    MilestoneTransitionResponse,
    ProjectDetailResponse,
    ProjectRecord,
    ProposalAcceptResponse,
    ProposalCreateRequest,
    ProposalMilestone,
    ProposalRecord,
    ProposalTransitionResponse,
)
from src.core.engagement.repository import EngagementRepository
from src.core.engagement.state_machine import (
    LIVE_PROPOSAL_STATUSES,
    REMATCHABLE_BRIEF_STATUSES,
    WIDENABLE_BRIEF_STATUSES,
    can_unlock_next_milestone,
    next_brief_status,
    next_milestone_status,
    next_project_status,
    next_proposal_status,
    resolve_invitation_latch,
)
from src.core.errors import (
    ConfigurationError,
    EngagementNotFoundError,
    EngagementStateConflictError,
    NoEligibleCandidatesError,
    ProposalValidationError,
    StaleStateRaceError,
)
from src.core.matching.config import MatchingConfig, load_matching_config
from src.core.matching.models import RankingResult
from src.core.matching.ranker import rank
from src.core.matching.repository import ExpertProfileStore, MatchingSettingsStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

MAX_PAYMENT_PERCENT_TOTAL = 100
COMPETING_PROPOSAL_ACCEPTED = "competing_proposal_accepted"


class EngagementService:
    """Inbound operations of the engagement lifecycle.

    Every mutation runs inside one repository transaction. Events are staged
    into the event ledger inside that transaction and handed to the
    dispatcher only after it commits, so a listener failure can never undo a
    transition.
    """

    def __init__(
        self,
        *,
        repository: EngagementRepository,
        expert_store: ExpertProfileStore,
        settings_store: MatchingSettingsStore,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._repository = repository
        self._expert_store = expert_store
        self._settings_store = settings_store
        self._dispatcher = dispatcher or EventDispatcher()
        self._clock = clock or _utc_now
        self._invitations = InvitationManager(repository=repository)

    @property
    def repository(self) -> EngagementRepository:
        return self._repository

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    def now(self) -> datetime:
        return self._clock()

    def load_config(self) -> MatchingConfig:
        return load_matching_config(self._settings_store.get_raw())

    def get_matching_settings(self) -> dict[str, Any]:
        return self.load_config().model_dump(mode="json")

    def update_matching_settings(self, settings: dict[str, Any]) -> MatchingConfig:
        config = load_matching_config(settings)
        self._settings_store.replace(config.model_dump(mode="json"))
        logger.info(
            "matching_settings.updated",
            extra={"extra_fields": {"weights": config.weights()}},
        )
        return config

    def submit_brief(self, payload: BriefSubmitRequest) -> BriefSubmitResponse:
        now = self._clock()
        brief = BriefRecord(
            brief_id=f"br_{uuid.uuid4().hex[:12]}",
            client_id=payload.client_id,
            title=payload.title,
            status="draft",
            requirements=payload.requirements,
            exclusion_list=list(payload.exclusion_list),
            created_at=now,
            updated_at=now,
        )
        brief.status = next_brief_status(brief.status, "SUBMIT")
        event = build_event(
            event_type="brief.submitted",
            entity_id=brief.brief_id,
            occurred_at=now,
            payload={"client_id": brief.client_id},
        )
        with self._repository.transaction():
            self._repository.save_brief(brief)
            recorded = self._record_events([event])
        self._publish(recorded)
        logger.info("brief.submitted", extra={"extra_fields": {"brief_id": brief.brief_id}})

        try:
            config = self.load_config()
        except ConfigurationError as exc:
            raise ConfigurationError(str(exc), brief_id=brief.brief_id) from exc
        if not config.auto_matching_enabled:
            return BriefSubmitResponse(brief=brief)
        try:
            matching = self.run_matching(brief.brief_id, config=config)
        except (StaleStateRaceError, EngagementStateConflictError):
            # A concurrent rematch or archive already moved the brief on.
            logger.info(
                "brief.matched_concurrently",
                extra={"extra_fields": {"brief_id": brief.brief_id}},
            )
            matching = None
        return BriefSubmitResponse(brief=self._require_brief(brief.brief_id), matching=matching)

    def get_brief_detail(self, brief_id: str) -> BriefDetailResponse:
        brief = self._require_brief(brief_id)
        return BriefDetailResponse(
            brief=brief,
            invitations=self._repository.list_invitations_for_brief(brief_id=brief_id),
            proposals=self._repository.list_proposals_for_brief(brief_id=brief_id),
        )

    def archive_brief(self, brief_id: str) -> BriefRecord:
        with self._repository.transaction():
            brief = self._repository.lock_brief(brief_id=brief_id)
            if brief is None:
                raise EngagementNotFoundError("BRIEF_NOT_FOUND")
            if not brief.archived:
                brief.archived = True
                brief.updated_at = self._clock()
                self._repository.save_brief(brief)
        return brief

    def rank_candidates(
        self,
        brief_id: str,
        *,
        config: Optional[MatchingConfig] = None,
        min_score: Optional[float] = None,
        max_results: Optional[int] = None,
    ) -> RankingResult:
        brief = self._require_brief(brief_id)
        snapshot = config or self.load_config()
        invited = {
            invitation.expert_id
            for invitation in self._repository.list_invitations_for_brief(brief_id=brief_id)
        }
        return rank(
            brief.requirements,
            self._expert_store.list_candidates(),
            snapshot,
            already_invited=invited,
            exclusions=set(brief.exclusion_list),
            min_score=min_score,
            max_results=max_results,
        )

    def run_matching(
        self,
        brief_id: str,
        request: Optional[MatchingRunRequest] = None,
        *,
        config: Optional[MatchingConfig] = None,
        allow_widen: bool = False,
    ) -> MatchingRunResult:
        """Rank the pool and invite the shortlist.

        From a rollback status the brief goes through ``matching`` and lands in
        ``invitations_sent`` or ``no_matches_found``. With ``allow_widen`` a
        brief already in ``invitations_sent`` only gains new invitations. The
        configuration snapshot is loaded before any write, so a
        ``ConfigurationError`` leaves the brief untouched.
        """
        request = request or MatchingRunRequest()
        brief = self._require_brief(brief_id)
        self._assert_matchable(brief, allow_widen=allow_widen)
        snapshot = config or self.load_config()
        ranking = self.rank_candidates(
            brief_id,
            config=snapshot,
            min_score=request.min_score,
            max_results=request.max_results,
        )

        now = self._clock()
        events: list[EngagementEventRecord] = []
        with self._repository.transaction():
            current = self._repository.lock_brief(brief_id=brief_id)
            if current is None:
                raise EngagementNotFoundError("BRIEF_NOT_FOUND")
            if current.status in REMATCHABLE_BRIEF_STATUSES:
                widen = False
                current.status = next_brief_status(current.status, "START_MATCHING")
            elif allow_widen and current.status in WIDENABLE_BRIEF_STATUSES:
                widen = True
            else:
                raise StaleStateRaceError(f"BRIEF_STATUS_CHANGED: {current.status}")

            current.matching_results = [
                candidate.model_dump(mode="json") for candidate in ranking.candidates
            ]
            current.matched_at = now
            batch = self._invitations.send_invitations(
                brief=current,
                candidates=ranking.candidates,
                expiry_days=snapshot.invitation_expiry_days,
                now=now,
            )
            events.extend(batch.events)
            try:
                _require_new_invitations(ranking, batch)
            except NoEligibleCandidatesError as exc:
                if not widen:
                    current.status = next_brief_status(current.status, "NO_MATCHES")
                    events.append(
                        build_event(
                            event_type="brief.no_matches_found",
                            entity_id=current.brief_id,
                            occurred_at=now,
                            payload={"reason": str(exc)},
                        )
                    )
            else:
                current.status = next_brief_status(current.status, "INVITATIONS_PERSISTED")
                events.append(
                    build_event(
                        event_type="brief.invitations_sent",
                        entity_id=current.brief_id,
                        occurred_at=now,
                        payload={"invited": [item.expert_id for item in batch.sent]},
                    )
                )
            current.updated_at = now
            self._repository.save_brief(current)
            recorded = self._record_events(events)
        self._publish(recorded)

        logger.info(
            "matching.completed",
            extra={
                "extra_fields": {
                    "brief_id": brief_id,
                    "status": current.status,
                    "total_evaluated": ranking.total_evaluated,
                    "shortlisted": len(ranking.candidates),
                    "invited": len(batch.sent),
                    "skipped": len(batch.skipped),
                }
            },
        )
        return MatchingRunResult(
            brief_id=brief_id,
            status=current.status,
            candidates=ranking.candidates,
            invited=[item.expert_id for item in batch.sent],
            skipped=batch.skipped,
            total_evaluated=ranking.total_evaluated,
        )

    def respond_to_invitation(
        self, invitation_id: str, action: InvitationAction
    ) -> InvitationResponseResult:
        now = self._clock()
        with self._repository.transaction():
            invitation = self._require_invitation(invitation_id)
            brief = self._repository.lock_brief(brief_id=invitation.brief_id)
            if brief is None:
                raise EngagementNotFoundError("BRIEF_NOT_FOUND")
            invitation = self._lock_invitation(invitation_id)
            invitation, event = self._invitations.respond(
                invitation=invitation, action=action, now=now
            )
            events = [event]
            events.extend(self._apply_invitation_latch(brief, now=now))
            recorded = self._record_events(events)
        self._publish(recorded)
        return InvitationResponseResult(invitation=invitation, brief_status=brief.status)

    def expire_invitation(
        self, invitation_id: str, *, now: Optional[datetime] = None
    ) -> InvitationResponseResult:
        moment = now or self._clock()
        with self._repository.transaction():
            invitation = self._require_invitation(invitation_id)
            brief = self._repository.lock_brief(brief_id=invitation.brief_id)
            if brief is None:
                raise EngagementNotFoundError("BRIEF_NOT_FOUND")
            invitation = self._lock_invitation(invitation_id)
            if invitation.status != "sent" or invitation.expires_at > moment:
                raise StaleStateRaceError(f"INVITATION_NOT_EXPIRABLE: {invitation.status}")
            invitation, event = self._invitations.expire(invitation=invitation, now=moment)
            events = [event]
            events.extend(self._apply_invitation_latch(brief, now=moment))
            recorded = self._record_events(events)
        self._publish(recorded)
        return InvitationResponseResult(invitation=invitation, brief_status=brief.status)

    def create_proposal(
        self, brief_id: str, payload: ProposalCreateRequest
    ) -> ProposalTransitionResponse:
        milestones = _validated_milestones(payload)
        now = self._clock()
        events: list[EngagementEventRecord] = []
        with self._repository.transaction():
            brief = self._repository.lock_brief(brief_id=brief_id)
            if brief is None:
                raise EngagementNotFoundError("BRIEF_NOT_FOUND")
            invitation = next(
                (
                    item
                    for item in self._repository.list_invitations_for_brief(brief_id=brief_id)
                    if item.expert_id == payload.expert_id and item.status == "accepted"
                ),
                None,
            )
            if invitation is None:
                raise ProposalValidationError("EXPERT_HAS_NO_ACCEPTED_INVITATION")
            if brief.status not in {"expert_responses_received", "proposal_ready"}:
                raise EngagementStateConflictError(f"BRIEF_NOT_ACCEPTING_PROPOSALS: {brief.status}")
            for existing in self._repository.list_proposals_for_brief(brief_id=brief_id):
                if (
                    existing.expert_id == payload.expert_id
                    and existing.status in LIVE_PROPOSAL_STATUSES
                ):
                    raise EngagementStateConflictError("PROPOSAL_ALREADY_EXISTS")

            proposal = ProposalRecord(
                proposal_id=f"prp_{uuid.uuid4().hex[:12]}",
                brief_id=brief_id,
                expert_id=payload.expert_id,
                invitation_id=invitation.invitation_id,
                status="draft",
                price_total=payload.price_total,
                timeline_weeks=payload.timeline_weeks,
                milestones=milestones,
                created_at=now,
                updated_at=now,
            )
            events.append(
                build_event(
                    event_type="proposal.created",
                    entity_id=proposal.proposal_id,
                    occurred_at=now,
                    payload={"brief_id": brief_id, "expert_id": proposal.expert_id},
                )
            )
            if payload.send:
                events.extend(self._send_proposal(brief, proposal, now=now))
            self._repository.save_proposal(proposal)
            recorded = self._record_events(events)
        self._publish(recorded)
        return ProposalTransitionResponse(proposal=proposal, brief_status=brief.status)

    def get_proposal(self, proposal_id: str) -> ProposalRecord:
        return self._require_proposal(proposal_id)

    def send_proposal(self, proposal_id: str) -> ProposalTransitionResponse:
        now = self._clock()
        with self._repository.transaction():
            proposal, brief = self._lock_proposal(proposal_id)
            events = self._send_proposal(brief, proposal, now=now)
            self._repository.save_proposal(proposal)
            recorded = self._record_events(events)
        self._publish(recorded)
        return ProposalTransitionResponse(proposal=proposal, brief_status=brief.status)

    def view_proposal(self, proposal_id: str) -> ProposalTransitionResponse:
        now = self._clock()
        with self._repository.transaction():
            proposal, brief = self._lock_proposal(proposal_id)
            recorded: list[EngagementEventRecord] = []
            if proposal.status != "viewed":
                proposal.status = next_proposal_status(proposal.status, "VIEW")
                proposal.updated_at = now
                self._repository.save_proposal(proposal)
                recorded = self._record_events(
                    [
                        build_event(
                            event_type="proposal.viewed",
                            entity_id=proposal.proposal_id,
                            occurred_at=now,
                            payload={"brief_id": brief.brief_id},
                        )
                    ]
                )
        self._publish(recorded)
        return ProposalTransitionResponse(proposal=proposal, brief_status=brief.status)

    def reject_proposal(self, proposal_id: str) -> ProposalTransitionResponse:
        return self._close_proposal(proposal_id, event="REJECT", event_type="proposal.rejected")

    def withdraw_proposal(self, proposal_id: str) -> ProposalTransitionResponse:
        return self._close_proposal(proposal_id, event="WITHDRAW", event_type="proposal.withdrawn")

    def accept_proposal(self, proposal_id: str) -> ProposalAcceptResponse:
        """Accept one proposal and open its project.

        Competing live proposals on the brief are moved to ``rejected`` with an
        ``invalidated_reason``; they are never deleted.
        """
        now = self._clock()
        events: list[EngagementEventRecord] = []
        invalidated: list[str] = []
        with self._repository.transaction():
            proposal, brief = self._lock_proposal(proposal_id)
            siblings = [
                item
                for item in self._repository.list_proposals_for_brief(brief_id=brief.brief_id)
                if item.proposal_id != proposal.proposal_id
            ]
            if any(item.status == "accepted" for item in siblings):
                raise EngagementStateConflictError("BRIEF_ALREADY_HAS_ACCEPTED_PROPOSAL")
            proposal.status = next_proposal_status(proposal.status, "ACCEPT")
            proposal.updated_at = now
            brief.status = next_brief_status(brief.status, "PROPOSAL_ACCEPTED")
            brief.updated_at = now
            self._repository.save_proposal(proposal)
            self._repository.save_brief(brief)
            events.append(
                build_event(
                    event_type="proposal.accepted",
                    entity_id=proposal.proposal_id,
                    occurred_at=now,
                    payload={"brief_id": brief.brief_id, "expert_id": proposal.expert_id},
                )
            )

            for sibling in siblings:
                if sibling.status not in LIVE_PROPOSAL_STATUSES:
                    continue
                sibling.status = next_proposal_status(sibling.status, "REJECT")
                sibling.invalidated_reason = COMPETING_PROPOSAL_ACCEPTED
                sibling.updated_at = now
                self._repository.save_proposal(sibling)
                invalidated.append(sibling.proposal_id)
                events.append(
                    build_event(
                        event_type="proposal.invalidated",
                        entity_id=sibling.proposal_id,
                        occurred_at=now,
                        payload={
                            "brief_id": brief.brief_id,
                            "reason": COMPETING_PROPOSAL_ACCEPTED,
                        },
                    )
                )

            project, milestones = self._open_project(brief, proposal, now=now)
            events.append(
                build_event(
                    event_type="project.created",
                    entity_id=project.project_id,
                    occurred_at=now,
                    payload={
                        "brief_id": brief.brief_id,
                        "proposal_id": proposal.proposal_id,
                        "milestones": len(milestones),
                    },
                )
            )
            recorded = self._record_events(events)
        self._publish(recorded)
        return ProposalAcceptResponse(
            proposal=proposal,
            project=project,
            milestones=milestones,
            invalidated_proposal_ids=invalidated,
        )

    def get_project_detail(self, project_id: str) -> ProjectDetailResponse:
        project = self._require_project(project_id)
        return ProjectDetailResponse(
            project=project,
            milestones=self._repository.list_milestones_for_project(project_id=project_id),
        )

    def cancel_project(self, project_id: str) -> ProjectDetailResponse:
        now = self._clock()
        with self._repository.transaction():
            project = self._repository.lock_project(project_id=project_id)
            if project is None:
                raise EngagementNotFoundError("PROJECT_NOT_FOUND")
            project.status = next_project_status(project.status, "CANCEL")
            project.updated_at = now
            self._repository.save_project(project)
            recorded = self._record_events(
                [
                    build_event(
                        event_type="project.cancelled",
                        entity_id=project_id,
                        occurred_at=now,
                    )
                ]
            )
        self._publish(recorded)
        return self.get_project_detail(project_id)

    def record_payment_succeeded(self, milestone_id: str) -> MilestoneTransitionResponse:
        now = self._clock()
        with self._repository.transaction():
            project, milestone = self._lock_milestone(milestone_id)
            if milestone.payment_status == "paid":
                return MilestoneTransitionResponse(
                    milestone=milestone, project_status=project.status, replayed=True
                )
            milestone.status = next_milestone_status(milestone.status, "PAYMENT_SUCCEEDED")
            milestone.payment_status = "paid"
            milestone.paid_at = now
            milestone.updated_at = now
            self._repository.save_milestone(milestone)

            event_type = "payment.succeeded"
            if milestone.milestone_number == 1:
                project.status = next_project_status(project.status, "FIRST_MILESTONE_PAID")
                event_type = "payment.succeeded.m1"
            project.last_activity_at = now
            project.updated_at = now
            self._repository.save_project(project)
            recorded = self._record_events(
                [
                    build_event(
                        event_type=event_type,
                        entity_id=milestone_id,
                        occurred_at=now,
                        payload={
                            "project_id": project.project_id,
                            "milestone_number": milestone.milestone_number,
                            "amount": milestone.amount,
                        },
                    )
                ]
            )
        self._publish(recorded)
        return MilestoneTransitionResponse(milestone=milestone, project_status=project.status)

    def submit_deliverable(
        self, milestone_id: str, notes: Optional[str] = None
    ) -> MilestoneTransitionResponse:
        now = self._clock()
        with self._repository.transaction():
            project, milestone = self._lock_milestone(milestone_id)
            milestone.status = next_milestone_status(milestone.status, "DELIVERABLE_SUBMITTED")
            milestone.qa_status = "pending"
            milestone.submitted_at = now
            milestone.updated_at = now
            self._repository.save_milestone(milestone)
            project.last_activity_at = now
            project.updated_at = now
            self._repository.save_project(project)
            recorded = self._record_events(
                [
                    build_event(
                        event_type="deliverable.submitted",
                        entity_id=milestone_id,
                        occurred_at=now,
                        payload={"project_id": project.project_id, "notes": notes},
                    )
                ]
            )
        self._publish(recorded)
        return MilestoneTransitionResponse(milestone=milestone, project_status=project.status)

    def record_qa_result(
        self,
        milestone_id: str,
        *,
        passed: bool,
        notes: Optional[str] = None,
    ) -> MilestoneTransitionResponse:
        """Record a QA verdict.

        A pass on an already passed or released milestone is a replay and a
        no-op; the release event is emitted at most once per milestone.
        """
        now = self._clock()
        events: list[EngagementEventRecord] = []
        with self._repository.transaction():
            project, milestone = self._lock_milestone(milestone_id)
            if milestone.status in {"qa_passed", "released"}:
                if passed:
                    return MilestoneTransitionResponse(
                        milestone=milestone, project_status=project.status, replayed=True
                    )
                raise EngagementStateConflictError("QA_ALREADY_PASSED")
            if milestone.status == "qa_failed" and not passed:
                return MilestoneTransitionResponse(
                    milestone=milestone, project_status=project.status, replayed=True
                )

            milestone.status = next_milestone_status(
                milestone.status, "QA_PASSED" if passed else "QA_FAILED"
            )
            milestone.qa_status = "passed" if passed else "failed"
            milestone.qa_notes = notes
            milestone.qa_last_run_at = now
            milestone.updated_at = now
            project.last_activity_at = now
            project.updated_at = now
            events.append(
                build_event(
                    event_type="qa.passed" if passed else "qa.failed",
                    entity_id=milestone_id,
                    occurred_at=now,
                    payload={
                        "project_id": project.project_id,
                        "notes": notes,
                        "retry_count": milestone.qa_retry_count,
                    },
                )
            )
            if passed:
                events.extend(self._release(project, milestone, now=now))
            self._repository.save_milestone(milestone)
            self._repository.save_project(project)
            recorded = self._record_events(events)
        self._publish(recorded)
        return MilestoneTransitionResponse(milestone=milestone, project_status=project.status)

    def override_qa(
        self, milestone_id: str, *, actor_id: str, notes: Optional[str] = None
    ) -> MilestoneTransitionResponse:
        now = self._clock()
        events: list[EngagementEventRecord] = []
        with self._repository.transaction():
            project, milestone = self._lock_milestone(milestone_id)
            milestone.status = next_milestone_status(milestone.status, "MANUAL_OVERRIDE")
            milestone.qa_status = "passed"
            milestone.qa_notes = notes
            milestone.manual_override_required = False
            milestone.updated_at = now
            project.last_activity_at = now
            project.updated_at = now
            events.append(
                build_event(
                    event_type="qa.overridden",
                    entity_id=milestone_id,
                    occurred_at=now,
                    payload={"project_id": project.project_id, "actor_id": actor_id},
                )
            )
            events.extend(self._release(project, milestone, now=now))
            self._repository.save_milestone(milestone)
            self._repository.save_project(project)
            recorded = self._record_events(events)
        self._publish(recorded)
        return MilestoneTransitionResponse(milestone=milestone, project_status=project.status)

    def record_events(self, events: Iterable[EngagementEventRecord]) -> list[EngagementEventRecord]:
        """Stage events in the ledger; call inside an open transaction."""
        return self._record_events(events)

    def publish(self, events: Iterable[EngagementEventRecord]) -> DispatchResult:
        return self._publish(events)

    def _assert_matchable(self, brief: BriefRecord, *, allow_widen: bool) -> None:
        if brief.archived:
            raise EngagementStateConflictError("BRIEF_ARCHIVED")
        allowed = set(REMATCHABLE_BRIEF_STATUSES)
        if allow_widen:
            allowed |= WIDENABLE_BRIEF_STATUSES
        if brief.status not in allowed:
            raise EngagementStateConflictError(f"BRIEF_NOT_MATCHABLE: {brief.status}")

    def _apply_invitation_latch(
        self, brief: BriefRecord, *, now: datetime
    ) -> list[EngagementEventRecord]:
        invitations = self._repository.list_invitations_for_brief(brief_id=brief.brief_id)
        latch = resolve_invitation_latch(brief.status, invitations)
        if latch is None:
            return []
        brief.status = next_brief_status(brief.status, latch)
        brief.updated_at = now
        self._repository.save_brief(brief)
        logger.info(
            "brief.latched",
            extra={"extra_fields": {"brief_id": brief.brief_id, "status": brief.status}},
        )
        return [
            build_event(
                event_type=f"brief.{brief.status}",
                entity_id=brief.brief_id,
                occurred_at=now,
                payload={"invitations": _status_counts(invitations)},
            )
        ]

    def _send_proposal(
        self, brief: BriefRecord, proposal: ProposalRecord, *, now: datetime
    ) -> list[EngagementEventRecord]:
        proposal.status = next_proposal_status(proposal.status, "SEND")
        proposal.sent_at = now
        proposal.updated_at = now
        brief.status = next_brief_status(brief.status, "PROPOSAL_SUBMITTED")
        brief.updated_at = now
        self._repository.save_brief(brief)
        return [
            build_event(
                event_type="proposal.submitted",
                entity_id=proposal.proposal_id,
                occurred_at=now,
                payload={
                    "brief_id": brief.brief_id,
                    "expert_id": proposal.expert_id,
                    "price_total": proposal.price_total,
                },
            )
        ]

    def _close_proposal(
        self, proposal_id: str, *, event: str, event_type: str
    ) -> ProposalTransitionResponse:
        now = self._clock()
        with self._repository.transaction():
            proposal, brief = self._lock_proposal(proposal_id)
            proposal.status = next_proposal_status(proposal.status, event)  # type: ignore[arg-type]
            proposal.updated_at = now
            self._repository.save_proposal(proposal)
            recorded = self._record_events(
                [
                    build_event(
                        event_type=event_type,
                        entity_id=proposal_id,
                        occurred_at=now,
                        payload={"brief_id": brief.brief_id},
                    )
                ]
            )
        self._publish(recorded)
        return ProposalTransitionResponse(proposal=proposal, brief_status=brief.status)

    def _open_project(
        self, brief: BriefRecord, proposal: ProposalRecord, *, now: datetime
    ) -> tuple[ProjectRecord, list[MilestoneRecord]]:
        project = ProjectRecord(
            project_id=f"prj_{uuid.uuid4().hex[:12]}",
            brief_id=brief.brief_id,
            proposal_id=proposal.proposal_id,
            client_id=brief.client_id,
            expert_id=proposal.expert_id,
            status="pending_payment",
            total_price=proposal.price_total,
            created_at=now,
            updated_at=now,
            last_activity_at=now,
        )
        self._repository.save_project(project)
        milestones: list[MilestoneRecord] = []
        for index, item in enumerate(proposal.milestones):
            milestone = MilestoneRecord(
                milestone_id=f"ms_{uuid.uuid4().hex[:12]}",
                project_id=project.project_id,
                milestone_number=index + 1,
                title=item.title,
                amount=item.amount if item.amount is not None else 0,
                status="requires_payment" if index == 0 else "planned",
                payment_status="pending",
                qa_status="pending",
                updated_at=now,
            )
            self._repository.save_milestone(milestone)
            milestones.append(milestone)
        return project, milestones

    def _release(
        self, project: ProjectRecord, milestone: MilestoneRecord, *, now: datetime
    ) -> list[EngagementEventRecord]:
        milestone.status = next_milestone_status(milestone.status, "RELEASE")
        milestone.released_at = now
        events = [
            build_event(
                event_type="payment.released",
                entity_id=milestone.milestone_id,
                occurred_at=now,
                payload={"project_id": project.project_id, "amount": milestone.amount},
                dedupe_key=f"release:{milestone.milestone_id}",
            )
        ]
        following = [
            item
            for item in self._repository.list_milestones_for_project(project_id=project.project_id)
            if item.milestone_number > milestone.milestone_number
        ]
        if following:
            next_id = min(following, key=lambda item: item.milestone_number).milestone_id
            upcoming = self._repository.lock_milestone(milestone_id=next_id)
            if (
                upcoming is not None
                and upcoming.status == "planned"
                and can_unlock_next_milestone(milestone)
            ):
                upcoming.status = next_milestone_status(upcoming.status, "REQUEST_PAYMENT")
                upcoming.updated_at = now
                self._repository.save_milestone(upcoming)
                events.append(
                    build_event(
                        event_type="milestone.payment_requested",
                        entity_id=upcoming.milestone_id,
                        occurred_at=now,
                        payload={
                            "project_id": project.project_id,
                            "milestone_number": upcoming.milestone_number,
                        },
                    )
                )
        else:
            project.status = next_project_status(project.status, "LAST_MILESTONE_RELEASED")
            project.completed_at = now
            events.append(
                build_event(
                    event_type="project.completed",
                    entity_id=project.project_id,
                    occurred_at=now,
                    payload={"brief_id": project.brief_id},
                )
            )
        return events

    def _lock_proposal(self, proposal_id: str) -> tuple[ProposalRecord, BriefRecord]:
        proposal = self._require_proposal(proposal_id)
        brief = self._repository.lock_brief(brief_id=proposal.brief_id)
        if brief is None:
            raise EngagementNotFoundError("BRIEF_NOT_FOUND")
        return self._require_proposal(proposal_id), brief

    def _lock_invitation(self, invitation_id: str) -> InvitationRecord:
        invitation = self._repository.lock_invitation(invitation_id=invitation_id)
        if invitation is None:
            raise EngagementNotFoundError("INVITATION_NOT_FOUND")
        return invitation

    def _lock_milestone(self, milestone_id: str) -> tuple[ProjectRecord, MilestoneRecord]:
        """Lock the owning project, then the milestone, and return both."""
        project_id = self._require_milestone(milestone_id).project_id
        project = self._repository.lock_project(project_id=project_id)
        if project is None:
            raise EngagementNotFoundError("PROJECT_NOT_FOUND")
        milestone = self._repository.lock_milestone(milestone_id=milestone_id)
        if milestone is None:
            raise EngagementNotFoundError("MILESTONE_NOT_FOUND")
        return project, milestone

    def _record_events(
        self, events: Iterable[EngagementEventRecord]
    ) -> list[EngagementEventRecord]:
        return [event for event in events if self._repository.append_event(event)]

    def _publish(self, events: Iterable[EngagementEventRecord]) -> DispatchResult:
        result = self._dispatcher.publish(events)
        if result.failed:
            logger.warning(
                "event.dispatch_partial",
                extra={"extra_fields": result.model_dump()},
            )
        return result

    def _require_brief(self, brief_id: str) -> BriefRecord:
        brief = self._repository.get_brief(brief_id=brief_id)
        if brief is None:
            raise EngagementNotFoundError("BRIEF_NOT_FOUND")
        return brief

    def _require_invitation(self, invitation_id: str) -> InvitationRecord:
        invitation = self._repository.get_invitation(invitation_id=invitation_id)
        if invitation is None:
            raise EngagementNotFoundError("INVITATION_NOT_FOUND")
        return invitation

    def _require_proposal(self, proposal_id: str) -> ProposalRecord:
        proposal = self._repository.get_proposal(proposal_id=proposal_id)
        if proposal is None:
            raise EngagementNotFoundError("PROPOSAL_NOT_FOUND")
        return proposal

    def _require_project(self, project_id: str) -> ProjectRecord:
        project = self._repository.get_project(project_id=project_id)
        if project is None:
            raise EngagementNotFoundError("PROJECT_NOT_FOUND")
        return project

    def _require_milestone(self, milestone_id: str) -> MilestoneRecord:
        milestone = self._repository.get_milestone(milestone_id=milestone_id)
        if milestone is None:
            raise EngagementNotFoundError("MILESTONE_NOT_FOUND")
        return milestone


def _require_new_invitations(ranking: RankingResult, batch: InvitationBatch) -> None:
    if not ranking.candidates:
        raise NoEligibleCandidatesError("NO_ELIGIBLE_CANDIDATES")
    if not batch.sent:
        raise NoEligibleCandidatesError("NO_NEW_INVITATIONS")


def _validated_milestones(payload: ProposalCreateRequest) -> list[ProposalMilestone]:
    if not payload.milestones:
        raise ProposalValidationError("PROPOSAL_REQUIRES_MILESTONES")
    total_percent = 0
    milestones: list[ProposalMilestone] = []
    for item in payload.milestones:
        if item.payment_percent <= 0:
            raise ProposalValidationError(f"MILESTONE_PERCENT_MUST_BE_POSITIVE: {item.title}")
        total_percent += item.payment_percent
        amount = item.amount
        if amount is None:
            amount = payload.price_total * item.payment_percent // 100
        milestones.append(item.model_copy(update={"amount": amount}))
    if total_percent > MAX_PAYMENT_PERCENT_TOTAL:
        raise ProposalValidationError(f"MILESTONE_PERCENT_TOTAL_EXCEEDS_100: {total_percent}")
    return milestones


def _status_counts(invitations: Iterable[InvitationRecord]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for invitation in invitations:
        counts[invitation.status] = counts.get(invitation.status, 0) + 1
    return counts


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
