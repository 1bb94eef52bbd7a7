from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from src.core.matching.models import BriefRequirements, RankedCandidate

BriefStatus = Literal[
    "draft",
    "submitted",
    "matching",
    "invitations_sent",
    "expert_responses_received",
    "proposal_ready",
    "accepted",
    "needs_more_experts",
    "no_matches_found",
]
InvitationStatus = Literal["sent", "accepted", "declined", "expired"]
ProposalStatus = Literal["draft", "sent", "viewed", "accepted", "rejected", "withdrawn"]
ProjectStatus = Literal["pending_payment", "active", "completed", "cancelled"]
MilestoneStatus = Literal[
    "planned",
    "requires_payment",
    "in_progress",
    "qa_pending",
    "qa_passed",
    "qa_failed",
    "released",
]
PaymentStatus = Literal["pending", "paid"]
QaStatus = Literal["pending", "passed", "failed"]
AutomationRunStatus = Literal["running", "succeeded", "partial", "failed"]
InvitationAction = Literal["accept", "decline"]


class BriefRecord(BaseModel):
    brief_id: str = Field(description="Brief identifier.", examples=["br_001"])
    client_id: str = Field(description="Client user identifier.", examples=["client_001"])
    title: Optional[str] = Field(default=None, examples=["Lead-gen automation"])
    status: BriefStatus = Field(description="Current brief status.", examples=["submitted"])
    requirements: BriefRequirements
    exclusion_list: List[str] = Field(
        default_factory=list,
        description="Expert ids never to be invited for this brief.",
        examples=[["exp_009"]],
    )
    matching_results: Optional[List[Dict[str, Any]]] = Field(
        default=None,
        description="Last ranked shortlist persisted by a matching run.",
    )
    matched_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(examples=["2026-02-19T12:00:00+00:00"])
    updated_at: datetime = Field(examples=["2026-02-19T12:00:00+00:00"])
    archived: bool = Field(default=False)
    client_nudged_at: Optional[datetime] = Field(
        default=None, description="Last client-choose nudge marker."
    )


class InvitationRecord(BaseModel):
    invitation_id: str = Field(description="Invitation identifier.", examples=["inv_001"])
    brief_id: str = Field(description="Brief identifier.", examples=["br_001"])
    expert_id: str = Field(description="Invited expert identifier.", examples=["exp_001"])
    status: InvitationStatus = Field(examples=["sent"])
    sent_at: datetime = Field(examples=["2026-02-19T12:00:00+00:00"])
    expires_at: datetime = Field(examples=["2026-02-24T12:00:00+00:00"])
    responded_at: Optional[datetime] = Field(default=None)
    score_at_invite: float = Field(ge=0, le=1, examples=[0.82])
    rationale: List[str] = Field(default_factory=list, examples=[["tools_fit"]])
    nudged_at: Optional[datetime] = Field(
        default=None, description="Last expert-propose nudge marker."
    )


class ProposalMilestone(BaseModel):
    title: str = Field(min_length=1, examples=["Discovery and workflow map"])
    payment_percent: int = Field(
        description="Share of the proposal price paid for this milestone.",
        examples=[30],
    )
    amount: Optional[int] = Field(
        default=None,
        ge=0,
        description="Milestone amount in minor units; derived from the percent when omitted.",
        examples=[240000],
    )
    description: Optional[str] = Field(default=None)
    eta_days: Optional[int] = Field(default=None, ge=0, examples=[7])


class ProposalRecord(BaseModel):
    proposal_id: str = Field(description="Proposal identifier.", examples=["prp_001"])
    brief_id: str = Field(examples=["br_001"])
    expert_id: str = Field(examples=["exp_001"])
    invitation_id: str = Field(examples=["inv_001"])
    status: ProposalStatus = Field(examples=["sent"])
    price_total: int = Field(ge=0, description="Total price in minor units.", examples=[800000])
    timeline_weeks: Optional[int] = Field(default=None, ge=1, examples=[6])
    milestones: List[ProposalMilestone] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    sent_at: Optional[datetime] = Field(default=None)
    invalidated_reason: Optional[str] = Field(
        default=None, examples=["competing_proposal_accepted"]
    )


class ProjectRecord(BaseModel):
    project_id: str = Field(description="Project identifier.", examples=["prj_001"])
    brief_id: str = Field(examples=["br_001"])
    proposal_id: str = Field(examples=["prp_001"])
    client_id: str = Field(examples=["client_001"])
    expert_id: str = Field(examples=["exp_001"])
    status: ProjectStatus = Field(examples=["pending_payment"])
    total_price: int = Field(ge=0, examples=[800000])
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime
    completed_at: Optional[datetime] = Field(default=None)
    assurance_active: bool = Field(default=False)
    payment_nudged_at: Optional[datetime] = Field(default=None)
    poked_at: Optional[datetime] = Field(default=None)
    retainer_offered_at: Optional[datetime] = Field(default=None)


class MilestoneRecord(BaseModel):
    milestone_id: str = Field(description="Milestone identifier.", examples=["ms_001"])
    project_id: str = Field(examples=["prj_001"])
    milestone_number: int = Field(ge=1, examples=[1])
    title: str = Field(examples=["Discovery and workflow map"])
    amount: int = Field(ge=0, examples=[240000])
    status: MilestoneStatus = Field(examples=["requires_payment"])
    payment_status: PaymentStatus = Field(default="pending")
    qa_status: QaStatus = Field(default="pending")
    qa_retry_count: int = Field(default=0, ge=0)
    qa_notes: Optional[str] = Field(default=None)
    qa_last_run_at: Optional[datetime] = Field(default=None)
    submitted_at: Optional[datetime] = Field(default=None)
    paid_at: Optional[datetime] = Field(default=None)
    released_at: Optional[datetime] = Field(default=None)
    manual_override_required: bool = Field(default=False)
    updated_at: datetime


class AutomationRunSummary(BaseModel):
    processed: int = Field(default=0, ge=0, examples=[3])
    actions: int = Field(default=0, ge=0, examples=[2])
    skipped: int = Field(default=0, ge=0, examples=[1])
    failed: int = Field(default=0, ge=0, examples=[0])


class AutomationRunRecord(BaseModel):
    run_id: str = Field(description="Automation run identifier.", examples=["run_001"])
    job_name: str = Field(examples=["expert-propose-nudge"])
    started_at: datetime
    finished_at: Optional[datetime] = Field(default=None)
    status: AutomationRunStatus = Field(default="running")
    summary: AutomationRunSummary = Field(default_factory=AutomationRunSummary)
    error: Optional[str] = Field(default=None)


class CorrectiveActionRecord(BaseModel):
    idempotency_key: str = Field(examples=["sha256:abc"])
    job_name: str = Field(examples=["expert-propose-nudge"])
    entity_id: str = Field(examples=["inv_001"])
    bucket: int = Field(examples=[20514])
    run_id: str = Field(examples=["run_001"])
    created_at: datetime


class EngagementEventRecord(BaseModel):
    event_id: str = Field(description="Event identifier.", examples=["evt_001"])
    event_type: str = Field(examples=["invite.sent"])
    entity_id: str = Field(examples=["inv_001"])
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime
    dedupe_key: Optional[str] = Field(
        default=None,
        description="Unique when present; a second event with the same key is never recorded.",
        examples=["release:ms_001"],
    )


class BriefSubmitRequest(BaseModel):
    client_id: str = Field(min_length=1, examples=["client_001"])
    title: Optional[str] = Field(default=None, examples=["Lead-gen automation"])
    requirements: BriefRequirements
    exclusion_list: List[str] = Field(default_factory=list, examples=[[]])


class MatchingRunRequest(BaseModel):
    min_score: Optional[float] = Field(default=None, ge=0, le=1, examples=[0.65])
    max_results: Optional[int] = Field(default=None, ge=1, le=50, examples=[5])


class MatchingRunResult(BaseModel):
    brief_id: str = Field(examples=["br_001"])
    status: BriefStatus = Field(examples=["invitations_sent"])
    candidates: List[RankedCandidate] = Field(default_factory=list)
    invited: List[str] = Field(default_factory=list, examples=[["exp_001"]])
    skipped: List[str] = Field(default_factory=list, examples=[["exp_002"]])
    total_evaluated: int = Field(default=0, ge=0)


class BriefSubmitResponse(BaseModel):
    brief: BriefRecord
    matching: Optional[MatchingRunResult] = Field(default=None)


class BriefDetailResponse(BaseModel):
    brief: BriefRecord
    invitations: List[InvitationRecord] = Field(default_factory=list)
    proposals: List[ProposalRecord] = Field(default_factory=list)


class InvitationResponseRequest(BaseModel):
    action: InvitationAction = Field(examples=["accept"])


class InvitationResponseResult(BaseModel):
    invitation: InvitationRecord
    brief_status: BriefStatus = Field(examples=["expert_responses_received"])


class ProposalCreateRequest(BaseModel):
    expert_id: str = Field(min_length=1, examples=["exp_001"])
    price_total: int = Field(ge=0, examples=[800000])
    timeline_weeks: Optional[int] = Field(default=None, ge=1, examples=[6])
    milestones: List[ProposalMilestone] = Field(default_factory=list)
    send: bool = Field(default=True, description="Send to the client immediately.")


class ProposalTransitionResponse(BaseModel):
    proposal: ProposalRecord
    brief_status: BriefStatus = Field(examples=["proposal_ready"])


class ProposalAcceptResponse(BaseModel):
    proposal: ProposalRecord
    project: ProjectRecord
    milestones: List[MilestoneRecord] = Field(default_factory=list)
    invalidated_proposal_ids: List[str] = Field(default_factory=list)


class DeliverableSubmitRequest(BaseModel):
    notes: Optional[str] = Field(default=None, examples=["Workflow exported and documented."])


class QaResultRequest(BaseModel):
    passed: bool = Field(examples=[True])
    notes: Optional[str] = Field(default=None, examples=["All checklist items green."])


class QaOverrideRequest(BaseModel):
    actor_id: str = Field(min_length=1, examples=["admin_001"])
    notes: Optional[str] = Field(default=None)


class MilestoneTransitionResponse(BaseModel):
    milestone: MilestoneRecord
    project_status: ProjectStatus = Field(examples=["active"])
    replayed: bool = Field(
        default=False,
        description="True when the call was a replay and nothing changed.",
    )


class ProjectDetailResponse(BaseModel):
    project: ProjectRecord
    milestones: List[MilestoneRecord] = Field(default_factory=list)


class AutomationRunListResponse(BaseModel):
    items: List[AutomationRunRecord] = Field(default_factory=list)
