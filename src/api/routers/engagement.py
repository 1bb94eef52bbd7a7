from typing import Optional

from fastapi import APIRouter, HTTPException, status

from src.api.routers.engagement_config import (
    build_event_listeners,
    build_expert_store,
    build_repository,
    build_settings_store,
)
from src.core.automation import AutomationScheduler
from src.core.engagement import EngagementService, EventDispatcher
from src.core.engagement.repository import EngagementRepository
from src.core.matching.repository import ExpertProfileStore, MatchingSettingsStore

router = APIRouter(tags=["Engagement Lifecycle"])

_REPOSITORY: Optional[EngagementRepository] = None
_EXPERT_STORE: Optional[ExpertProfileStore] = None
_SETTINGS_STORE: Optional[MatchingSettingsStore] = None
_SERVICE: Optional[EngagementService] = None
_SCHEDULER: Optional[AutomationScheduler] = None


def _get_repository() -> EngagementRepository:
    global _REPOSITORY
    if _REPOSITORY is None:
        try:
            _REPOSITORY = build_repository()
        except RuntimeError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=_backend_unavailable_detail(exc),
            ) from exc
    return _REPOSITORY


def get_expert_store() -> ExpertProfileStore:
    global _EXPERT_STORE
    if _EXPERT_STORE is None:
        _EXPERT_STORE = build_expert_store()
    return _EXPERT_STORE


def get_settings_store() -> MatchingSettingsStore:
    global _SETTINGS_STORE
    if _SETTINGS_STORE is None:
        try:
            _SETTINGS_STORE = build_settings_store()
        except RuntimeError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=_backend_unavailable_detail(exc),
            ) from exc
    return _SETTINGS_STORE


def get_engagement_service() -> EngagementService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = EngagementService(
            repository=_get_repository(),
            expert_store=get_expert_store(),
            settings_store=get_settings_store(),
            dispatcher=EventDispatcher(build_event_listeners()),
        )
    return _SERVICE


def get_automation_scheduler() -> AutomationScheduler:
    global _SCHEDULER
    if _SCHEDULER is None:
        _SCHEDULER = AutomationScheduler(service=get_engagement_service())
    return _SCHEDULER


def close_engagement_service() -> None:
    """Close the service singletons; the next request builds fresh ones."""
    global _REPOSITORY
    global _EXPERT_STORE
    global _SETTINGS_STORE
    global _SERVICE
    global _SCHEDULER
    if _SERVICE is not None:
        _SERVICE.dispatcher.close()
    _REPOSITORY = None
    _EXPERT_STORE = None
    _SETTINGS_STORE = None
    _SERVICE = None
    _SCHEDULER = None


def reset_engagement_service_for_tests() -> None:
    close_engagement_service()


def _backend_unavailable_detail(exc: RuntimeError) -> str:
    if str(exc) == "ENGAGEMENT_POSTGRES_DSN_REQUIRED":
        return "ENGAGEMENT_POSTGRES_DSN_REQUIRED"
    return "ENGAGEMENT_POSTGRES_CONNECTION_FAILED"
