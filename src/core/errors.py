class EngagementError(Exception):
    pass


class ConfigurationError(EngagementError):
    """Invalid or missing matching configuration; fatal to the current run."""

    def __init__(self, message: str, *, brief_id: str | None = None) -> None:
        super().__init__(message)
        self.brief_id = brief_id


class NoEligibleCandidatesError(EngagementError):
    """Soft outcome of a matching run; routed to ``no_matches_found``."""


class DuplicateInvitationError(EngagementError):
    """An invitation already exists for the (brief, expert) pair."""


class DownstreamDispatchError(EngagementError):
    """A notification listener failed; never rolls back the triggering transition."""


class StaleStateRaceError(EngagementError):
    """A transactional re-read found that the precondition no longer holds."""


class EngagementNotFoundError(EngagementError):
    pass


class EngagementStateConflictError(EngagementError):
    pass


class IllegalTransitionError(EngagementError):
    pass


class ProposalValidationError(EngagementError):
    pass
