from typing import AbstractSet, Iterable, Optional

from src.core.matching.config import MatchingConfig
from src.core.matching.models import (
    BriefRequirements,
    ExpertCandidate,
    RankedCandidate,
    RankingResult,
)
from src.core.matching.scoring import score


def is_eligible(
    candidate: ExpertCandidate,
    *,
    already_invited: AbstractSet[str],
    excluded: AbstractSet[str],
) -> bool:
    if not candidate.profile_complete:
        return False
    if candidate.expert_id in already_invited:
        return False
    return candidate.expert_id not in excluded


def candidate_sort_key(candidate: RankedCandidate) -> tuple[float, int, float, str]:
    # Total desc, verified certifications desc, history desc, expert id asc.
    return (
        -candidate.score,
        -candidate.verified_certifications,
        -candidate.breakdown.history,
        candidate.expert_id,
    )


def rank(
    requirements: BriefRequirements,
    candidates: Iterable[ExpertCandidate],
    config: MatchingConfig,
    *,
    already_invited: AbstractSet[str] = frozenset(),
    exclusions: AbstractSet[str] = frozenset(),
    min_score: Optional[float] = None,
    max_results: Optional[int] = None,
) -> RankingResult:
    """Score the eligible pool and return the ordered shortlist.

    ``min_score`` and ``max_results`` fall back to the snapshot defaults. The
    candidate iterable may be unordered; output order depends only on the
    tie-break key, never on input order.
    """
    threshold = config.min_score_default if min_score is None else min_score
    limit = config.max_invites_default if max_results is None else max_results
    if not 0 <= threshold <= 1:
        raise ValueError("MIN_SCORE_OUT_OF_RANGE")
    if limit < 1:
        raise ValueError("MAX_RESULTS_MUST_BE_POSITIVE")

    excluded = set(exclusions) | set(config.global_exclusions)
    evaluated = 0
    eligible = 0
    ranked: list[RankedCandidate] = []
    for candidate in candidates:
        evaluated += 1
        if not is_eligible(candidate, already_invited=already_invited, excluded=excluded):
            continue
        eligible += 1
        breakdown = score(requirements, candidate, config)
        if breakdown.total < threshold:
            continue
        ranked.append(
            RankedCandidate(
                expert_id=candidate.expert_id,
                score=breakdown.total,
                breakdown=breakdown,
                verified_certifications=candidate.verified_certification_count,
            )
        )

    ranked.sort(key=candidate_sort_key)
    return RankingResult(
        candidates=ranked[:limit],
        total_evaluated=evaluated,
        eligible=eligible,
        min_score=threshold,
        max_results=limit,
    )
