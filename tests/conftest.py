"""
FILE: tests/conftest.py
Shared fixtures for engagement tests.
"""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from src.api.routers.engagement import reset_engagement_service_for_tests
from src.core.engagement import EngagementService, EventDispatcher, RecordingListener
from src.infrastructure.engagement import InMemoryEngagementRepository
from src.infrastructure.experts import InMemoryExpertProfileStore
from src.infrastructure.matching_settings import EnvJsonMatchingSettingsStore
from tests.factories import expert_pool


def _has_marker(item: pytest.Item, name: str) -> bool:
    return item.get_closest_marker(name) is not None


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        if _has_marker(item, "unit") or _has_marker(item, "integration"):
            continue

        path = Path(str(item.fspath)).as_posix().lower()
        if "/tests/integration/" in path or "_integration.py" in path:
            item.add_marker(pytest.mark.integration)
            continue
        item.add_marker(pytest.mark.unit)


class FixedClock:
    """Manually advanced clock shared by the service and the scheduler."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment


@pytest.fixture(autouse=True)
def _isolated_engagement_runtime(monkeypatch):
    for name in (
        "ENGAGEMENT_STORE_BACKEND",
        "ENGAGEMENT_POSTGRES_DSN",
        "APP_PERSISTENCE_PROFILE",
        "MATCHING_SETTINGS_JSON",
        "EVENT_WEBHOOK_URL",
        "EVENT_WEBHOOK_REQUIRED",
        "AUTOMATION_APIS_ENABLED",
        "MATCHING_ADMIN_APIS_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_engagement_service_for_tests()
    yield
    reset_engagement_service_for_tests()


@pytest.fixture
def t0() -> datetime:
    return datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(t0):
    return FixedClock(t0)


@pytest.fixture
def repository():
    return InMemoryEngagementRepository()


@pytest.fixture
def expert_store():
    return InMemoryExpertProfileStore(expert_pool())


@pytest.fixture
def settings_store():
    return EnvJsonMatchingSettingsStore(settings_json=None)


@pytest.fixture
def recorder():
    return RecordingListener()


@pytest.fixture
def service(repository, expert_store, settings_store, recorder, clock):
    return EngagementService(
        repository=repository,
        expert_store=expert_store,
        settings_store=settings_store,
        dispatcher=EventDispatcher([recorder]),
        clock=clock,
    )
