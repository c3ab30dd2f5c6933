"""
Capability Interfaces - Contracts for external collaborators

The core depends on three narrow capabilities and never on a concrete
provider. Each deployment binds one implementation per capability at
process start (see ``autoapply.container``) and injects it.

Key Protocols:
    - EmbeddingProvider: text → fixed-length vector
    - TextGenerator: resume tailoring, requirement extraction, question answering
    - AutomationClient: browser-driven application submission

Helpers:
    - translate_openai_error(): Map OpenAI SDK errors to Transient/Permanent
    - call_with_retries(): Retry transient capability errors with backoff
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar, runtime_checkable

import openai

from autoapply.errors import (
    CapabilityError,
    PermanentCapabilityError,
    TransientCapabilityError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Protocol defining the embedding provider interface.

    All embedding providers must implement:
    - embed(): Single text to embedding
    - embed_batch(): Multiple texts to embeddings
    - dimensions: Embedding vector size
    """

    @property
    def dimensions(self) -> int:
        """Return the embedding vector dimensions."""
        ...

    async def embed(self, text: str) -> List[float]:
        """Embed a single text string."""
        ...

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed multiple text strings efficiently."""
        ...


@runtime_checkable
class TextGenerator(Protocol):
    """Protocol for the text-generation capability."""

    async def tailor(
        self,
        master_resume: str,
        job_description: str,
        requirements: List[str],
    ) -> str:
        """Rewrite the master resume for one job."""
        ...

    async def extract_requirements(self, job_description: str) -> List[str]:
        """Extract a list of requirement keywords from a job description."""
        ...

    async def answer_questions(
        self,
        questions: List[str],
        profile: Dict[str, Any],
        resume: str,
    ) -> Dict[str, str]:
        """Answer application form questions on the user's behalf."""
        ...


@dataclass(frozen=True)
class AutomationOutcome:
    """
    Result of one browser automation run.

    Attributes:
        succeeded: True when the application form was submitted
        screenshot_ref: Optional reference to a confirmation screenshot
        error_reason: Human-readable failure reason when not succeeded
    """

    succeeded: bool
    screenshot_ref: Optional[str] = None
    error_reason: Optional[str] = None


@runtime_checkable
class AutomationClient(Protocol):
    """Protocol for the browser automation capability."""

    async def apply(
        self,
        job_url: str,
        credentials: Dict[str, str],
        profile: Dict[str, Any],
        resume_text: str,
    ) -> AutomationOutcome:
        """Submit an application through the job site's web form."""
        ...


# ==================== Error Mapping ====================

_TRANSIENT_OPENAI_ERRORS = (
    openai.APIConnectionError,  # Includes APITimeoutError
    openai.RateLimitError,
    openai.InternalServerError,
)


def translate_openai_error(capability: str, exc: Exception) -> CapabilityError:
    """
    Map an OpenAI SDK exception to the capability error taxonomy.

    Connection problems, timeouts, rate limits and 5xx responses are
    transient; everything else (bad request, auth, not found) is permanent.
    """
    if isinstance(exc, _TRANSIENT_OPENAI_ERRORS):
        return TransientCapabilityError(capability, str(exc))
    return PermanentCapabilityError(capability, str(exc))


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
) -> T:
    """
    Await ``operation()`` and retry it on TransientCapabilityError.

    Permanent errors and anything outside the capability taxonomy
    propagate on the first occurrence.

    Args:
        operation: Zero-argument coroutine factory
        name: Label used in log messages
        max_attempts: Total attempts including the first
        base_delay: Delay before the second attempt (seconds)
        max_delay: Upper bound for a single delay
        backoff_factor: Multiplier applied per attempt

    Returns:
        The operation's result
    """
    max_attempts = max(1, max_attempts)
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except TransientCapabilityError as exc:
            if attempt == max_attempts:
                logger.error(f"{name} failed after {max_attempts} attempts: {exc}")
                raise
            delay = min(base_delay * (backoff_factor ** (attempt - 1)), max_delay)
            if delay > 0:
                delay *= 0.5 + random.random()
            logger.warning(
                f"{name} attempt {attempt}/{max_attempts} failed ({exc}), "
                f"retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
    raise RuntimeError("unreachable")
