from typing import Any, Optional, Protocol

from src.core.matching.models import ExpertCandidate


class ExpertProfileStore(Protocol):
    def list_candidates(self) -> list[ExpertCandidate]: ...

    def get_candidate(self, *, expert_id: str) -> Optional[ExpertCandidate]: ...

    def upsert_candidate(self, candidate: ExpertCandidate) -> None: ...


class MatchingSettingsStore(Protocol):
    def get_raw(self) -> Optional[dict[str, Any]]: ...

    def replace(self, settings: dict[str, Any]) -> None: ...
