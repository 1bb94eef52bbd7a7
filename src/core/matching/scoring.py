"""Pure scoring of one expert candidate against one brief.

Every sub-score lies in [0, 1]. The weighted total plus the certification
boost is clamped to [0, 1] and rounded to six decimals so that equal inputs
always produce equal floats and ties are resolved by the ranker's explicit
tie-break rather than by float noise.
"""

import math
import re
from typing import Iterable, Mapping, Optional, Sequence

from src.core.matching.config import MatchingConfig
from src.core.matching.models import (
    BriefRequirements,
    ExpertCandidate,
    OutcomeHistory,
    ScoreBreakdown,
)

AVAILABILITY_DECAY_DAYS = 14.0
URGENT_MIN_WEEKLY_HOURS = 30
CERT_BOOST_PER_VERIFIED = 0.05
NO_HISTORY_SCORE = 0.5
STRONG_HISTORY_THRESHOLD = 0.8
FIT_THRESHOLD = 0.5
WEAK_MATCH_THRESHOLD = 0.3

_MISSING_PASS_AT_QA = 0.8
_MISSING_CSAT = 4.0
_MISSING_ON_TIME = 0.9


def normalize_term(term: str, synonyms: Mapping[str, Sequence[str]]) -> str:
    normalized = " ".join(term.lower().split())
    for canonical, aliases in synonyms.items():
        canonical_normalized = " ".join(canonical.lower().split())
        if normalized == canonical_normalized:
            return canonical_normalized
        if any(normalized == " ".join(alias.lower().split()) for alias in aliases):
            return canonical_normalized
    return normalized


def _normalized_set(terms: Iterable[str], synonyms: Mapping[str, Sequence[str]]) -> set[str]:
    return {normalize_term(term, synonyms) for term in terms if term and term.strip()}


def overlap_ratio(
    required: Iterable[str],
    offered: Iterable[str],
    *,
    synonyms: Mapping[str, Sequence[str]],
    when_nothing_required: float,
) -> float:
    required_set = _normalized_set(required, synonyms)
    if not required_set:
        return when_nothing_required
    offered_set = _normalized_set(offered, synonyms)
    if not offered_set:
        return 0.0
    return len(required_set & offered_set) / len(required_set)


def availability_score(requirements: BriefRequirements, candidate: ExpertCandidate) -> float:
    required_hours = requirements.required_weekly_hours
    if requirements.urgency == "urgent":
        required_hours = max(required_hours, URGENT_MIN_WEEKLY_HOURS)
    hours_fit = min(candidate.availability_weekly_hours / required_hours, 1.0)

    decay = 1.0
    if requirements.start_by is not None and candidate.available_from is not None:
        late_by = candidate.available_from - requirements.start_by
        days_late = late_by.total_seconds() / 86400
        if days_late > 0:
            decay = math.exp(-days_late / AVAILABILITY_DECAY_DAYS)
    return hours_fit * decay


def history_score(history: Optional[OutcomeHistory]) -> float:
    if history is None or (
        history.completed_projects == 0
        and history.pass_at_qa_rate is None
        and history.csat_score is None
        and history.on_time_rate is None
    ):
        return NO_HISTORY_SCORE
    pass_rate = _MISSING_PASS_AT_QA if history.pass_at_qa_rate is None else history.pass_at_qa_rate
    csat = _MISSING_CSAT if history.csat_score is None else history.csat_score
    on_time = _MISSING_ON_TIME if history.on_time_rate is None else history.on_time_rate
    success = 0.4 * pass_rate + 0.3 * (csat / 5) + 0.3 * on_time
    dispute_rate = history.dispute_rate or 0.0
    return _clamp(success * (1 - dispute_rate))


def certification_boost(candidate: ExpertCandidate, config: MatchingConfig) -> float:
    if not config.boost_verified_certs:
        return 0.0
    verified = candidate.verified_certification_count
    if verified == 0:
        return 0.0
    return min(CERT_BOOST_PER_VERIFIED * verified, config.cert_boost)


def parse_budget_band(budget_band: Optional[str]) -> Optional[tuple[int, int]]:
    """Parse bands such as ``"6k-10k"`` or ``"£6,000 - £10,000"`` into minor units."""
    if not budget_band:
        return None
    amounts = [
        _to_minor_units(number, suffix)
        for number, suffix in re.findall(r"(\d[\d,]*(?:\.\d+)?)\s*([kKmM]?)", budget_band)
    ]
    if not amounts:
        return None
    low = amounts[0]
    high = amounts[1] if len(amounts) > 1 else amounts[0]
    return (min(low, high), max(low, high))


def resolve_budget(requirements: BriefRequirements) -> Optional[tuple[int, int]]:
    parsed = parse_budget_band(requirements.budget_band)
    low = requirements.budget_min
    high = requirements.budget_max
    if parsed is not None:
        low = parsed[0] if low is None else low
        high = parsed[1] if high is None else high
    if high is None:
        return None
    return (low if low is not None else 0, high)


def _to_minor_units(number: str, suffix: str) -> int:
    value = float(number.replace(",", ""))
    multiplier = {"k": 1_000, "m": 1_000_000}.get(suffix.lower(), 1)
    return int(round(value * multiplier * 100))


def score(
    requirements: BriefRequirements,
    candidate: ExpertCandidate,
    config: MatchingConfig,
) -> ScoreBreakdown:
    tool_synonyms = config.tool_synonyms
    industry_synonyms = config.industry_synonyms

    required_outcomes = [*requirements.outcomes, *requirements.skills]
    outcome = overlap_ratio(
        required_outcomes,
        [*candidate.outcome_preferences, *candidate.skills],
        synonyms=tool_synonyms,
        when_nothing_required=NO_HISTORY_SCORE,
    )
    tools = overlap_ratio(
        requirements.tools,
        [*candidate.tools, *candidate.skills],
        synonyms=tool_synonyms,
        when_nothing_required=1.0,
    )
    industry = overlap_ratio(
        requirements.industries,
        candidate.industries,
        synonyms=industry_synonyms,
        when_nothing_required=1.0,
    )
    availability = availability_score(requirements, candidate)
    history = history_score(candidate.outcome_history)
    boost = certification_boost(candidate, config)

    weights = config.weights()
    weighted = math.fsum(
        [
            weights["outcome"] * outcome,
            weights["tools"] * tools,
            weights["industry"] * industry,
            weights["availability"] * availability,
            weights["history"] * history,
        ]
    )
    total = round(_clamp(weighted + boost), 6)

    rationale: list[str] = []
    if outcome > FIT_THRESHOLD and required_outcomes:
        rationale.append("outcome_fit")
    if tools > FIT_THRESHOLD and requirements.tools:
        rationale.append("tools_fit")
    if industry > FIT_THRESHOLD and requirements.industries:
        rationale.append("industry_fit")
    if availability > FIT_THRESHOLD:
        rationale.append("availability_ok")
    if history >= STRONG_HISTORY_THRESHOLD:
        rationale.append("strong_history")
    if boost > 0:
        rationale.append("verified_certs")

    flags: list[str] = []
    budget = resolve_budget(requirements)
    if budget is not None and candidate.rate_band_min is not None:
        if candidate.rate_band_min > budget[1]:
            flags.append("budget_misaligned")
    if required_outcomes and outcome < WEAK_MATCH_THRESHOLD:
        flags.append("limited_outcome_match")
    if requirements.tools and tools < WEAK_MATCH_THRESHOLD:
        flags.append("missing_tools")

    return ScoreBreakdown(
        outcome=_clamp(outcome),
        tools=_clamp(tools),
        industry=_clamp(industry),
        availability=_clamp(availability),
        history=history,
        cert_boost=boost,
        total=total,
        rationale=rationale,
        flags=flags,
    )


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
