"""Exception taxonomy for the peer-review engine."""


class PeerReviewError(Exception):
    """Base class for every error surfaced to callers of the engine."""


class ValidationError(PeerReviewError):
    """Rejected input. Raised before any call or side effect."""


class FollowupLimitError(ValidationError):
    """The follow-up chain already holds the maximum number of turns."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Follow-up limit reached (max {limit} per query)")


class PipelineError(PeerReviewError):
    """A pipeline stage failed after retries. No partial result is kept."""

    def __init__(self, stage: str, message: str, provider: str | None = None) -> None:
        self.stage = stage
        self.provider = provider
        where = f"{stage}/{provider}" if provider else stage
        super().__init__(f"AI sequence error ({where}): {message}")


class PipelineTimeoutError(PipelineError):
    """The whole-pipeline deadline expired; in-flight calls were cancelled."""

    def __init__(self, stage: str, timeout_sec: float) -> None:
        self.timeout_sec = timeout_sec
        super().__init__(stage, f"pipeline deadline of {timeout_sec:g}s exceeded")


class LedgerError(PeerReviewError):
    """History persistence failed. Always propagated, never swallowed."""
