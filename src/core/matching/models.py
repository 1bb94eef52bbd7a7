from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

Urgency = Literal["low", "standard", "urgent"]
ScoreFactor = Literal["outcome", "tools", "industry", "availability", "history"]

SCORE_FACTORS: tuple[ScoreFactor, ...] = (
    "outcome",
    "tools",
    "industry",
    "availability",
    "history",
)


class BriefRequirements(BaseModel):
    skills: List[str] = Field(
        default_factory=list,
        description="Skills the brief asks for.",
        examples=[["react", "node"]],
    )
    tools: List[str] = Field(
        default_factory=list,
        description="Tools the delivery is expected to use.",
        examples=[["supabase", "n8n"]],
    )
    industries: List[str] = Field(
        default_factory=list,
        description="Industry or domain tags of the client.",
        examples=[["fintech"]],
    )
    outcomes: List[str] = Field(
        default_factory=list,
        description="Business outcomes the client wants to reach.",
        examples=[["Lead Gen", "Support Automation"]],
    )
    budget_band: Optional[str] = Field(
        default=None,
        description="Free-text budget band in major currency units.",
        examples=["6k-10k"],
    )
    budget_min: Optional[int] = Field(
        default=None,
        ge=0,
        description="Optional lower budget bound in minor units; overrides the parsed band.",
        examples=[600000],
    )
    budget_max: Optional[int] = Field(
        default=None,
        ge=0,
        description="Optional upper budget bound in minor units; overrides the parsed band.",
        examples=[1000000],
    )
    timeline_weeks: Optional[int] = Field(
        default=None,
        ge=1,
        description="Expected delivery timeline in weeks.",
        examples=[6],
    )
    urgency: Urgency = Field(
        default="standard",
        description="Urgency level declared by the client.",
        examples=["urgent"],
    )
    required_weekly_hours: int = Field(
        default=20,
        ge=1,
        le=80,
        description="Weekly hours an expert must commit for a full availability score.",
        examples=[20],
    )
    start_by: Optional[datetime] = Field(
        default=None,
        description="Date by which work should start; naive values are read as UTC.",
        examples=["2026-03-01T00:00:00+00:00"],
    )

    @field_validator("start_by")
    @classmethod
    def normalize_start_by(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class OutcomeHistory(BaseModel):
    pass_at_qa_rate: Optional[float] = Field(default=None, ge=0, le=1)
    csat_score: Optional[float] = Field(default=None, ge=0, le=5)
    on_time_rate: Optional[float] = Field(default=None, ge=0, le=1)
    dispute_rate: Optional[float] = Field(default=None, ge=0, le=1)
    completed_projects: int = Field(default=0, ge=0)


class Certification(BaseModel):
    code: str = Field(description="Certification code.", examples=["aws-saa"])
    verified: bool = Field(
        default=False,
        description="True only when verified by an admin; self-declared otherwise.",
        examples=[True],
    )


class ExpertCandidate(BaseModel):
    """Read projection of an expert profile, frozen for one matching run."""

    model_config = {"frozen": True}

    expert_id: str = Field(description="Expert user identifier.", examples=["exp_001"])
    skills: List[str] = Field(default_factory=list, examples=[["react", "node"]])
    tools: List[str] = Field(default_factory=list, examples=[["supabase"]])
    industries: List[str] = Field(default_factory=list, examples=[["saas"]])
    outcome_preferences: List[str] = Field(default_factory=list, examples=[["Lead Gen"]])
    availability_weekly_hours: int = Field(default=0, ge=0, le=80, examples=[30])
    available_from: Optional[datetime] = Field(
        default=None,
        description="First day the expert can start; naive values are read as UTC.",
        examples=["2026-03-10T00:00:00+00:00"],
    )
    outcome_history: Optional[OutcomeHistory] = Field(default=None)
    rate_band_min: Optional[int] = Field(
        default=None, ge=0, description="Day rate lower bound in minor units."
    )
    rate_band_max: Optional[int] = Field(
        default=None, ge=0, description="Day rate upper bound in minor units."
    )
    certifications: List[Certification] = Field(default_factory=list)
    profile_complete: bool = Field(default=True)

    @field_validator("available_from")
    @classmethod
    def normalize_available_from(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @property
    def verified_certification_count(self) -> int:
        return sum(1 for certification in self.certifications if certification.verified)


class ScoreBreakdown(BaseModel):
    outcome: float = Field(ge=0, le=1, examples=[0.8])
    tools: float = Field(ge=0, le=1, examples=[1.0])
    industry: float = Field(ge=0, le=1, examples=[0.5])
    availability: float = Field(ge=0, le=1, examples=[1.0])
    history: float = Field(ge=0, le=1, examples=[0.86])
    cert_boost: float = Field(ge=0, le=1, examples=[0.05])
    total: float = Field(ge=0, le=1, examples=[0.81])
    rationale: List[str] = Field(default_factory=list, examples=[["tools_fit", "verified_certs"]])
    flags: List[str] = Field(default_factory=list, examples=[["budget_misaligned"]])

    def factors(self) -> Dict[str, float]:
        return {factor: getattr(self, factor) for factor in SCORE_FACTORS}


class RankedCandidate(BaseModel):
    expert_id: str = Field(examples=["exp_001"])
    score: float = Field(ge=0, le=1, examples=[0.81])
    breakdown: ScoreBreakdown
    verified_certifications: int = Field(default=0, ge=0, examples=[1])


class RankingResult(BaseModel):
    candidates: List[RankedCandidate] = Field(default_factory=list)
    total_evaluated: int = Field(default=0, ge=0, examples=[42])
    eligible: int = Field(default=0, ge=0, examples=[30])
    min_score: float = Field(ge=0, le=1, examples=[0.65])
    max_results: int = Field(ge=1, examples=[5])


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
