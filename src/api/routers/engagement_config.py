import os
import warnings
from typing import cast

from src.api.routers.runtime_utils import env_positive_float
from src.core.engagement.events import EventListener, WebhookEventListener
from src.core.engagement.repository import EngagementRepository
from src.core.matching.repository import ExpertProfileStore, MatchingSettingsStore
from src.infrastructure.engagement import (
    InMemoryEngagementRepository,
    PostgresEngagementRepository,
    SqliteEngagementRepository,
)
from src.infrastructure.experts import InMemoryExpertProfileStore
from src.infrastructure.matching_settings import (
    EnvJsonMatchingSettingsStore,
    PostgresMatchingSettingsStore,
)


def _requested_backend() -> str:
    return os.getenv("ENGAGEMENT_STORE_BACKEND", "IN_MEMORY").strip().upper()


def engagement_store_backend_name() -> str:
    backend = _requested_backend()
    if backend == "POSTGRES":
        return "POSTGRES"
    warnings.warn(
        (
            "ENGAGEMENT_STORE_BACKEND local runtime backends "
            "(IN_MEMORY/SQLITE) are not durable across replicas; use POSTGRES."
        ),
        DeprecationWarning,
        stacklevel=2,
    )
    return "SQLITE" if backend in {"SQL", "SQLITE"} else "IN_MEMORY"


def engagement_sqlite_path() -> str:
    return os.getenv("ENGAGEMENT_SQLITE_PATH", ".data/engagement.db")


def engagement_postgres_dsn() -> str:
    return os.getenv("ENGAGEMENT_POSTGRES_DSN", "").strip()


def event_webhook_url() -> str:
    return os.getenv("EVENT_WEBHOOK_URL", "").strip()


def event_webhook_timeout_seconds() -> float:
    return env_positive_float("EVENT_WEBHOOK_TIMEOUT_SECONDS", 5.0)


def _postgres_connection_exception_types() -> tuple[type[BaseException], ...]:
    types: list[type[BaseException]] = [
        ConnectionError,
        OSError,
        TimeoutError,
        TypeError,
        ValueError,
    ]
    try:
        import psycopg
    except ImportError:
        pass
    else:
        types.append(psycopg.Error)
    return tuple(types)


def build_repository() -> EngagementRepository:
    backend = engagement_store_backend_name()
    if backend == "SQLITE":
        return cast(
            EngagementRepository,
            SqliteEngagementRepository(database_path=engagement_sqlite_path()),
        )
    if backend == "POSTGRES":
        dsn = engagement_postgres_dsn()
        if not dsn:
            raise RuntimeError("ENGAGEMENT_POSTGRES_DSN_REQUIRED")
        try:
            return cast(EngagementRepository, PostgresEngagementRepository(dsn=dsn))
        except RuntimeError:
            raise
        except _postgres_connection_exception_types() as exc:
            raise RuntimeError("ENGAGEMENT_POSTGRES_CONNECTION_FAILED") from exc
    return cast(EngagementRepository, InMemoryEngagementRepository())


def build_expert_store() -> ExpertProfileStore:
    return InMemoryExpertProfileStore()


def build_settings_store() -> MatchingSettingsStore:
    settings_json = os.getenv("MATCHING_SETTINGS_JSON")
    if _requested_backend() != "POSTGRES":
        return EnvJsonMatchingSettingsStore(settings_json=settings_json)
    dsn = engagement_postgres_dsn()
    if not dsn:
        raise RuntimeError("ENGAGEMENT_POSTGRES_DSN_REQUIRED")
    try:
        return PostgresMatchingSettingsStore(dsn=dsn, settings_json=settings_json)
    except RuntimeError:
        raise
    except _postgres_connection_exception_types() as exc:
        raise RuntimeError("ENGAGEMENT_POSTGRES_CONNECTION_FAILED") from exc


def build_event_listeners() -> list[EventListener]:
    listeners: list[EventListener] = []
    url = event_webhook_url()
    if url:
        listeners.append(
            WebhookEventListener(url=url, timeout_seconds=event_webhook_timeout_seconds())
        )
    return listeners
