import math
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from src.core.errors import ConfigurationError

WEIGHT_SUM_TOLERANCE = 1e-6

DEFAULT_MATCHING_SETTINGS: Dict[str, Any] = {
    "outcome_weight": 0.40,
    "tools_weight": 0.30,
    "industry_weight": 0.15,
    "availability_weight": 0.10,
    "history_weight": 0.05,
    "min_score_default": 0.65,
    "max_invites_default": 5,
    "cert_boost": 0.10,
    "boost_verified_certs": True,
    "auto_matching_enabled": True,
    "invitation_expiry_days": 5,
    "max_qa_retries": 3,
    "tool_synonyms": {},
    "industry_synonyms": {},
    "global_exclusions": [],
}


class MatchingConfig(BaseModel):
    """Admin-tunable matching snapshot, validated once when a run starts."""

    model_config = {"frozen": True, "extra": "forbid"}

    outcome_weight: float = Field(ge=0, le=1, examples=[0.40])
    tools_weight: float = Field(ge=0, le=1, examples=[0.30])
    industry_weight: float = Field(ge=0, le=1, examples=[0.15])
    availability_weight: float = Field(ge=0, le=1, examples=[0.10])
    history_weight: float = Field(ge=0, le=1, examples=[0.05])
    min_score_default: float = Field(ge=0, le=1, examples=[0.65])
    max_invites_default: int = Field(ge=1, le=50, examples=[5])
    cert_boost: float = Field(default=0.10, ge=0, le=0.5, examples=[0.10])
    boost_verified_certs: bool = Field(default=False, examples=[True])
    auto_matching_enabled: bool = Field(default=True, examples=[True])
    invitation_expiry_days: int = Field(default=5, ge=5, le=7, examples=[5])
    max_qa_retries: int = Field(default=3, ge=0, le=10, examples=[3])
    tool_synonyms: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Canonical tool name mapped to accepted aliases.",
        examples=[{"n8n": ["n8n.io", "n8n automation"]}],
    )
    industry_synonyms: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Canonical industry tag mapped to accepted aliases.",
        examples=[{"fintech": ["banking", "payments"]}],
    )
    global_exclusions: List[str] = Field(
        default_factory=list,
        description="Expert ids never considered for any brief.",
        examples=[["exp_suspended_1"]],
    )

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "MatchingConfig":
        total = math.fsum(self.weights().values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"WEIGHTS_MUST_SUM_TO_ONE: got {total:.6f}")
        return self

    def weights(self) -> Dict[str, float]:
        return {
            "outcome": self.outcome_weight,
            "tools": self.tools_weight,
            "industry": self.industry_weight,
            "availability": self.availability_weight,
            "history": self.history_weight,
        }


def load_matching_config(raw: Optional[Mapping[str, Any]]) -> MatchingConfig:
    if raw is None:
        raise ConfigurationError("MATCHING_SETTINGS_MISSING")
    try:
        return MatchingConfig.model_validate(dict(raw))
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'settings'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ConfigurationError(f"INVALID_MATCHING_SETTINGS: {problems}") from exc
