"""
Service error types.

Everything here is local to one request or one job. The HTTP layer maps
ValidationError to 400 and ResourceNotFound to 404; engine failures
(unifier.EngineError) never reach a client directly, they end up as the
error detail of a failed job.
"""


class UnifierError(Exception):
    """Base exception for orchestration failures."""


class ValidationError(UnifierError):
    """Bad upload or malformed job request. Nothing was created."""


class InsufficientInputs(ValidationError):
    """Fewer than 2 usable assets remain for a job."""


class ResourceNotFound(UnifierError):
    """Unknown or expired asset, job or output artifact."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class InvalidStateTransition(UnifierError):
    """Raised when a job is moved along an edge the state machine forbids."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Invalid job state transition for {job_id}: {current} -> {target}")
