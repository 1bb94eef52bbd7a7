from src.core.engagement.events import (
    DispatchResult,
    EventDispatcher,
    RecordingListener,
    WebhookEventListener,
    build_event,
)
from src.core.engagement.invitations import InvitationBatch, InvitationManager
from src.core.engagement.repository import EngagementRepository
from src.core.engagement.service import EngagementService

__all__ = [
    "DispatchResult",
    "EngagementRepository",
    "EngagementService",
    "EventDispatcher",
    "InvitationBatch",
    "InvitationManager",
    "RecordingListener",
    "WebhookEventListener",
    "build_event",
]
