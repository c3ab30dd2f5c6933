"""
Error Taxonomy

Request-path errors (ValidationError, NotFoundError, ConflictError,
ExhaustedRetryError) surface immediately to the caller and map to HTTP
status codes in ``autoapply.main``.

Pipeline errors (CapabilityError, StageTimeoutError) are raised inside a
pipeline stage and are converted by the orchestrator into a ``failed``
application with a readable reason; they never leave the background
execution context.
"""

from typing import Optional


class AutoApplyError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AutoApplyError):
    """Bad input. Rejected before any state mutation."""

    status_code = 422


class NotFoundError(AutoApplyError):
    """Referenced user, job or application does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(AutoApplyError):
    """Duplicate application, pipeline already running, or lost transition race."""

    status_code = 409


class ExhaustedRetryError(ConflictError):
    """Application has reached the maximum retry count."""

    def __init__(self, application_id: str, max_retries: int):
        super().__init__(
            f"Application {application_id} has exhausted its {max_retries} retries"
        )
        self.application_id = application_id
        self.max_retries = max_retries


class CapabilityError(AutoApplyError):
    """
    Failure reported by an external capability (embedding, text generation,
    browser automation).

    Attributes:
        capability: Capability name, e.g. "embedding"
        transient: True when the caller may retry (network, rate limit)
    """

    status_code = 502
    transient: bool = False

    def __init__(self, capability: str, message: str):
        super().__init__(f"{capability}: {message}")
        self.capability = capability
        self.reason = message


class TransientCapabilityError(CapabilityError):
    """Network or rate-limit failure; eligible for stage-level retry."""

    transient = True


class PermanentCapabilityError(CapabilityError):
    """Invalid input to the capability; never retried."""

    transient = False


class StageTimeoutError(AutoApplyError):
    """A pipeline stage exceeded its wall-clock budget."""

    def __init__(self, stage: str, timeout: Optional[float]):
        super().__init__(f"Stage '{stage}' exceeded {timeout}s")
        self.stage = stage
        self.timeout = timeout
