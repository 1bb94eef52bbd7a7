from typing import NoReturn

from fastapi import HTTPException, status

from src.core.errors import (
    ConfigurationError,
    EngagementNotFoundError,
    EngagementStateConflictError,
    IllegalTransitionError,
    ProposalValidationError,
    StaleStateRaceError,
)

HTTP_422_UNPROCESSABLE = getattr(
    status,
    "HTTP_422_UNPROCESSABLE_CONTENT",
    status.HTTP_422_UNPROCESSABLE_ENTITY,
)


def raise_engagement_http_exception(exc: Exception) -> NoReturn:
    if isinstance(exc, EngagementNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(
        exc, (EngagementStateConflictError, IllegalTransitionError, StaleStateRaceError)
    ):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ConfigurationError):
        detail: dict[str, str] = {"code": "MATCHING_CONFIGURATION_INVALID", "message": str(exc)}
        if exc.brief_id is not None:
            detail["brief_id"] = exc.brief_id
        raise HTTPException(status_code=HTTP_422_UNPROCESSABLE, detail=detail) from exc
    if isinstance(exc, (ProposalValidationError, ValueError)):
        raise HTTPException(status_code=HTTP_422_UNPROCESSABLE, detail=str(exc)) from exc
    raise exc
