"""Error taxonomy for the dispatch engine."""


class DispatchError(Exception):
    """Base class for dispatch engine errors."""


class ValidationError(DispatchError):
    """Raised for malformed input or a request that breaks an invariant."""


class InvalidTransition(ValidationError):
    """Raised when a status change is not in the declared transition graph."""

    def __init__(self, assignment_id: str, old_status: str, new_status: str):
        self.assignment_id = assignment_id
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(
            f"Assignment {assignment_id}: cannot move from '{old_status}' to '{new_status}'"
        )


class ResourceExhausted(DispatchError):
    """Raised when a provider has no free instance slot."""


class SlotError(DispatchError):
    """Raised when a slot lease is released twice or does not match its owner."""


class MergeConflict(DispatchError):
    """Raised when a merge leaves conflicts that could not be resolved."""

    def __init__(self, message: str, files: list[str] | None = None):
        self.files = files or []
        super().__init__(message)


class ReviewRejected(DispatchError):
    """Raised when the persona review gate does not pass."""

    def __init__(self, review):
        self.review = review
        reasons = "; ".join(review.failure_reasons or []) or "review failed"
        super().__init__(reasons)


class ExternalServiceError(DispatchError):
    """Raised when an external service call fails."""


class TrackerError(ExternalServiceError):
    """Raised when an issue-tracker call fails."""


class ProcessError(DispatchError):
    """Raised when an agent process fails to launch or exits abnormally."""
