import os
from dataclasses import dataclass

from fastapi import HTTPException, status

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


def env_positive_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


@dataclass(frozen=True)
class FeatureFlag:
    """Env-controlled switch for an optional group of endpoints.

    A disabled group answers 404 so it is indistinguishable from a route that
    does not exist.
    """

    env_name: str
    default: bool
    disabled_detail: str

    def enabled(self) -> bool:
        return env_flag(self.env_name, self.default)

    def require(self) -> None:
        if not self.enabled():
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=self.disabled_detail)


AUTOMATION_APIS = FeatureFlag(
    env_name="AUTOMATION_APIS_ENABLED",
    default=True,
    disabled_detail="AUTOMATION_APIS_DISABLED",
)
MATCHING_ADMIN_APIS = FeatureFlag(
    env_name="MATCHING_ADMIN_APIS_ENABLED",
    default=False,
    disabled_detail="MATCHING_ADMIN_APIS_DISABLED",
)
