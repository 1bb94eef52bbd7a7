from __future__ import annotations

import os

from src.api.routers.engagement_config import (
    engagement_postgres_dsn,
    engagement_store_backend_name,
)
from src.api.routers.runtime_utils import env_flag

_PRODUCTION_PROFILE = "PRODUCTION"
_LOCAL_PROFILE = "LOCAL"


def app_persistence_profile_name() -> str:
    profile = os.getenv("APP_PERSISTENCE_PROFILE", _LOCAL_PROFILE).strip().upper()
    return _PRODUCTION_PROFILE if profile == _PRODUCTION_PROFILE else _LOCAL_PROFILE


def event_webhook_required_in_profile() -> bool:
    return env_flag("EVENT_WEBHOOK_REQUIRED", False)


def validate_persistence_profile_guardrails() -> None:
    if app_persistence_profile_name() != _PRODUCTION_PROFILE:
        return
    if engagement_store_backend_name() != "POSTGRES":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_ENGAGEMENT_POSTGRES")
    if not engagement_postgres_dsn():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_ENGAGEMENT_POSTGRES_DSN")
    if event_webhook_required_in_profile() and not os.getenv("EVENT_WEBHOOK_URL", "").strip():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_EVENT_WEBHOOK_URL")
