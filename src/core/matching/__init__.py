from src.core.matching.config import (
    DEFAULT_MATCHING_SETTINGS,
    MatchingConfig,
    load_matching_config,
)
from src.core.matching.models import (
    BriefRequirements,
    Certification,
    ExpertCandidate,
    OutcomeHistory,
    RankedCandidate,
    RankingResult,
    ScoreBreakdown,
)
from src.core.matching.ranker import candidate_sort_key, is_eligible, rank
from src.core.matching.scoring import score

__all__ = [
    "BriefRequirements",
    "Certification",
    "DEFAULT_MATCHING_SETTINGS",
    "ExpertCandidate",
    "MatchingConfig",
    "OutcomeHistory",
    "RankedCandidate",
    "RankingResult",
    "ScoreBreakdown",
    "candidate_sort_key",
    "is_eligible",
    "load_matching_config",
    "rank",
    "score",
]
