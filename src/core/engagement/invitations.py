import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

from src.core.engagement.events import build_event
from src.core.engagement.models import (
    BriefRecord,
    EngagementEventRecord,
    InvitationAction,
    InvitationRecord,
)
from src.core.engagement.repository import EngagementRepository
from src.core.engagement.state_machine import next_invitation_status
from src.core.errors import DuplicateInvitationError, EngagementStateConflictError
from src.core.matching.models import RankedCandidate

logger = logging.getLogger(__name__)


@dataclass
class InvitationBatch:
    sent: list[InvitationRecord] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    events: list[EngagementEventRecord] = field(default_factory=list)


class InvitationManager:
    """Creates and transitions invitations; callers own the enclosing transaction."""

    def __init__(self, *, repository: EngagementRepository) -> None:
        self._repository = repository

    def send_invitations(
        self,
        *,
        brief: BriefRecord,
        candidates: Iterable[RankedCandidate],
        expiry_days: int,
        now: datetime,
    ) -> InvitationBatch:
        batch = InvitationBatch()
        expires_at = now + timedelta(days=expiry_days)
        for candidate in candidates:
            invitation = InvitationRecord(
                invitation_id=f"inv_{uuid.uuid4().hex[:12]}",
                brief_id=brief.brief_id,
                expert_id=candidate.expert_id,
                status="sent",
                sent_at=now,
                expires_at=expires_at,
                score_at_invite=candidate.score,
                rationale=list(candidate.breakdown.rationale),
            )
            try:
                self._repository.insert_invitation(invitation)
            except DuplicateInvitationError:
                batch.skipped.append(candidate.expert_id)
                logger.info(
                    "invitation.duplicate_skipped",
                    extra={
                        "extra_fields": {
                            "brief_id": brief.brief_id,
                            "expert_id": candidate.expert_id,
                        }
                    },
                )
                continue
            batch.sent.append(invitation)
            batch.events.append(
                build_event(
                    event_type="invite.sent",
                    entity_id=invitation.invitation_id,
                    occurred_at=now,
                    payload={
                        "brief_id": brief.brief_id,
                        "expert_id": invitation.expert_id,
                        "score_at_invite": invitation.score_at_invite,
                        "expires_at": invitation.expires_at.isoformat(),
                    },
                )
            )
        return batch

    def respond(
        self,
        *,
        invitation: InvitationRecord,
        action: InvitationAction,
        now: datetime,
    ) -> tuple[InvitationRecord, EngagementEventRecord]:
        if invitation.status == "sent" and invitation.expires_at <= now:
            raise EngagementStateConflictError("INVITATION_EXPIRED")
        invitation.status = next_invitation_status(
            invitation.status, "ACCEPT" if action == "accept" else "DECLINE"
        )
        invitation.responded_at = now
        self._repository.save_invitation(invitation)
        event = build_event(
            event_type=f"invite.{invitation.status}",
            entity_id=invitation.invitation_id,
            occurred_at=now,
            payload={"brief_id": invitation.brief_id, "expert_id": invitation.expert_id},
        )
        return invitation, event

    def expire(
        self, *, invitation: InvitationRecord, now: datetime
    ) -> tuple[InvitationRecord, EngagementEventRecord]:
        invitation.status = next_invitation_status(invitation.status, "EXPIRE")
        invitation.responded_at = now
        self._repository.save_invitation(invitation)
        event = build_event(
            event_type="invite.expired",
            entity_id=invitation.invitation_id,
            occurred_at=now,
            payload={"brief_id": invitation.brief_id, "expert_id": invitation.expert_id},
        )
        return invitation, event
