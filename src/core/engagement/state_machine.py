"""Transition tables for every engagement aggregate.

Each table maps ``(current_state, event) -> next_state``. A pair that is not
listed is illegal and raises ``IllegalTransitionError``; callers never write a
status column directly.
"""

from typing import Iterable, Literal, Mapping, Optional, TypeVar

from src.core.engagement.models import (
    BriefStatus,
    InvitationRecord,
    InvitationStatus,
    MilestoneRecord,
    MilestoneStatus,
    ProjectStatus,
    ProposalStatus,
)
from src.core.errors import IllegalTransitionError

BriefEvent = Literal[
    "SUBMIT",
    "START_MATCHING",
    "INVITATIONS_PERSISTED",
    "NO_MATCHES",
    "FIRST_ACCEPTANCE",
    "ALL_DECLINED",
    "PROPOSAL_SUBMITTED",
    "PROPOSAL_ACCEPTED",
]
InvitationEvent = Literal["ACCEPT", "DECLINE", "EXPIRE"]
ProposalEvent = Literal["SEND", "VIEW", "ACCEPT", "REJECT", "WITHDRAW"]
ProjectEvent = Literal["FIRST_MILESTONE_PAID", "LAST_MILESTONE_RELEASED", "CANCEL"]
MilestoneEvent = Literal[
    "REQUEST_PAYMENT",
    "PAYMENT_SUCCEEDED",
    "DELIVERABLE_SUBMITTED",
    "QA_PASSED",
    "QA_FAILED",
    "QA_RETRY",
    "RELEASE",
    "MANUAL_OVERRIDE",
]

BRIEF_TRANSITIONS: dict[tuple[BriefStatus, BriefEvent], BriefStatus] = {
    ("draft", "SUBMIT"): "submitted",
    ("submitted", "START_MATCHING"): "matching",
    ("needs_more_experts", "START_MATCHING"): "matching",
    ("no_matches_found", "START_MATCHING"): "matching",
    ("matching", "INVITATIONS_PERSISTED"): "invitations_sent",
    ("matching", "NO_MATCHES"): "no_matches_found",
    ("invitations_sent", "INVITATIONS_PERSISTED"): "invitations_sent",
    ("invitations_sent", "FIRST_ACCEPTANCE"): "expert_responses_received",
    ("invitations_sent", "ALL_DECLINED"): "needs_more_experts",
    ("expert_responses_received", "PROPOSAL_SUBMITTED"): "proposal_ready",
    ("proposal_ready", "PROPOSAL_SUBMITTED"): "proposal_ready",
    ("proposal_ready", "PROPOSAL_ACCEPTED"): "accepted",
}

# Statuses from which a matching run may start a full ranking pass.
REMATCHABLE_BRIEF_STATUSES: frozenset[str] = frozenset(
    {"submitted", "needs_more_experts", "no_matches_found"}
)
# A manual run from here only widens the invitation set.
WIDENABLE_BRIEF_STATUSES: frozenset[str] = frozenset({"invitations_sent"})

INVITATION_TRANSITIONS: dict[tuple[InvitationStatus, InvitationEvent], InvitationStatus] = {
    ("sent", "ACCEPT"): "accepted",
    ("sent", "DECLINE"): "declined",
    ("sent", "EXPIRE"): "expired",
}

PROPOSAL_TRANSITIONS: dict[tuple[ProposalStatus, ProposalEvent], ProposalStatus] = {
    ("draft", "SEND"): "sent",
    ("draft", "REJECT"): "rejected",
    ("draft", "WITHDRAW"): "withdrawn",
    ("sent", "VIEW"): "viewed",
    ("sent", "ACCEPT"): "accepted",
    ("sent", "REJECT"): "rejected",
    ("sent", "WITHDRAW"): "withdrawn",
    ("viewed", "ACCEPT"): "accepted",
    ("viewed", "REJECT"): "rejected",
    ("viewed", "WITHDRAW"): "withdrawn",
}

LIVE_PROPOSAL_STATUSES: frozenset[str] = frozenset({"draft", "sent", "viewed"})

PROJECT_TRANSITIONS: dict[tuple[ProjectStatus, ProjectEvent], ProjectStatus] = {
    ("pending_payment", "FIRST_MILESTONE_PAID"): "active",
    ("pending_payment", "CANCEL"): "cancelled",
    ("active", "LAST_MILESTONE_RELEASED"): "completed",
    ("active", "CANCEL"): "cancelled",
}

MILESTONE_TRANSITIONS: dict[tuple[MilestoneStatus, MilestoneEvent], MilestoneStatus] = {
    ("planned", "REQUEST_PAYMENT"): "requires_payment",
    ("requires_payment", "PAYMENT_SUCCEEDED"): "in_progress",
    ("in_progress", "DELIVERABLE_SUBMITTED"): "qa_pending",
    ("qa_failed", "DELIVERABLE_SUBMITTED"): "qa_pending",
    ("qa_failed", "QA_RETRY"): "qa_pending",
    ("qa_pending", "QA_PASSED"): "qa_passed",
    ("qa_pending", "QA_FAILED"): "qa_failed",
    ("qa_passed", "RELEASE"): "released",
    ("qa_pending", "MANUAL_OVERRIDE"): "qa_passed",
    ("qa_failed", "MANUAL_OVERRIDE"): "qa_passed",
}

_State = TypeVar("_State", bound=str)


def _resolve(
    table: Mapping[tuple[str, str], _State],
    *,
    aggregate: str,
    current: str,
    event: str,
) -> _State:
    next_state = table.get((current, event))
    if next_state is None:
        raise IllegalTransitionError(f"ILLEGAL_{aggregate}_TRANSITION: {current} --{event}-->")
    return next_state


def next_brief_status(current: BriefStatus, event: BriefEvent) -> BriefStatus:
    return _resolve(BRIEF_TRANSITIONS, aggregate="BRIEF", current=current, event=event)


def next_invitation_status(current: InvitationStatus, event: InvitationEvent) -> InvitationStatus:
    return _resolve(INVITATION_TRANSITIONS, aggregate="INVITATION", current=current, event=event)


def next_proposal_status(current: ProposalStatus, event: ProposalEvent) -> ProposalStatus:
    return _resolve(PROPOSAL_TRANSITIONS, aggregate="PROPOSAL", current=current, event=event)


def next_project_status(current: ProjectStatus, event: ProjectEvent) -> ProjectStatus:
    return _resolve(PROJECT_TRANSITIONS, aggregate="PROJECT", current=current, event=event)


def next_milestone_status(current: MilestoneStatus, event: MilestoneEvent) -> MilestoneStatus:
    return _resolve(MILESTONE_TRANSITIONS, aggregate="MILESTONE", current=current, event=event)


def resolve_invitation_latch(
    brief_status: BriefStatus, invitations: Iterable[InvitationRecord]
) -> Optional[BriefEvent]:
    """Decide the brief latch from the full invitation set.

    Must be given every invitation of the brief, read inside the transaction
    that will write the brief status. Any acceptance wins over declines, so a
    late acceptance can never be overwritten by ``needs_more_experts``.
    """
    if brief_status != "invitations_sent":
        return None
    statuses = [invitation.status for invitation in invitations]
    if not statuses:
        return None
    if "accepted" in statuses:
        return "FIRST_ACCEPTANCE"
    if all(status in {"declined", "expired"} for status in statuses):
        return "ALL_DECLINED"
    return None


def can_unlock_next_milestone(previous: Optional[MilestoneRecord]) -> bool:
    if previous is None:
        return True
    return previous.payment_status == "paid" and previous.qa_status != "failed"
