from threading import Lock
from typing import Iterable, Optional

from src.core.matching.models import ExpertCandidate


class InMemoryExpertProfileStore:
    def __init__(self, candidates: Iterable[ExpertCandidate] = ()) -> None:
        self._lock = Lock()
        self._candidates: dict[str, ExpertCandidate] = {
            candidate.expert_id: candidate for candidate in candidates
        }

    def list_candidates(self) -> list[ExpertCandidate]:
        # Candidates are frozen models, so the snapshot can share instances.
        with self._lock:
            return list(self._candidates.values())

    def get_candidate(self, *, expert_id: str) -> Optional[ExpertCandidate]:
        with self._lock:
            return self._candidates.get(expert_id)

    def upsert_candidate(self, candidate: ExpertCandidate) -> None:
        with self._lock:
            self._candidates[candidate.expert_id] = candidate
