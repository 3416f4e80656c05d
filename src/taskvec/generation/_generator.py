"""EmbeddingGenerator — bounded, non-raising adapter around an EmbeddingProvider."""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from taskvec.exceptions import (
    ProviderRateLimitedError,
    ProviderTimeoutError,
    ValidationError,
)
from taskvec.types import DEFAULT_DIMENSION, DEFAULT_GENERATE_TIMEOUT

if TYPE_CHECKING:
    from taskvec.generation.protocols import EmbeddingProvider

logger = logging.getLogger(__name__)


class GenerationErrorKind(Enum):
    """Closed set of reasons a generation call can fail."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    INVALID_RESPONSE = "invalid_response"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class GenerationError:
    """Typed failure returned (never raised) by :meth:`EmbeddingGenerator.generate`.

    Attributes:
        kind: Which failure class occurred.
        message: Human-readable detail from the provider or the adapter.
    """

    kind: GenerationErrorKind
    message: str

    def describe(self) -> str:
        """Return the string persisted to ``EmbeddingRecord.error_message``."""
        return f"{self.kind.value}: {self.message}"


class EmbeddingGenerator:
    """Converts one text into one vector, or one :class:`GenerationError`.

    Every call is bounded by *timeout* seconds.  Provider failures are
    classified and returned as values so a batch caller can record them
    per item; nothing is retried here.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        dimension: int = DEFAULT_DIMENSION,
        timeout: float = DEFAULT_GENERATE_TIMEOUT,
    ) -> None:
        if timeout <= 0:
            msg = f"timeout must be positive, got {timeout!r}"
            raise ValueError(msg)
        self._provider = provider
        self._dimension = dimension
        self._timeout = timeout

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    @property
    def model_name(self) -> str:
        return getattr(self._provider, "model_name", "")

    async def generate(self, text: str) -> list[float] | GenerationError:
        """Embed *text* within the deadline.

        Raises:
            ValidationError: If *text* is empty or whitespace.  This is a
                caller bug, not a provider failure.
        """
        if not text or not text.strip():
            raise ValidationError("Text to embed cannot be empty")

        try:
            vector = await asyncio.wait_for(self._embed(text), timeout=self._timeout)
        except (TimeoutError, ProviderTimeoutError) as exc:
            return self._fail(
                GenerationErrorKind.TIMEOUT,
                str(exc) or f"Embedding generation exceeded {self._timeout}s",
                text,
            )
        except ProviderRateLimitedError as exc:
            return self._fail(GenerationErrorKind.RATE_LIMITED, str(exc) or "Rate limited", text)
        except Exception as exc:
            return self._fail(
                GenerationErrorKind.UNAVAILABLE,
                str(exc) or type(exc).__name__,
                text,
            )

        problem = self._check_vector(vector)
        if problem is not None:
            return self._fail(GenerationErrorKind.INVALID_RESPONSE, problem, text)

        logger.debug("Embedding generated (text_length=%d)", len(text))
        return [float(x) for x in vector]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _embed(self, text: str) -> list[float]:
        """Embed a single text, handling both sync and async providers."""
        embed = self._provider.embed
        if inspect.iscoroutinefunction(embed):
            return await embed(text)
        result = await asyncio.to_thread(embed, text)
        if inspect.isawaitable(result):
            return await result
        return result

    def _check_vector(self, vector: object) -> str | None:
        if not isinstance(vector, (list, tuple)):
            return f"Expected a list of floats, got {type(vector).__name__}"
        if len(vector) != self._dimension:
            return (
                f"Invalid embedding dimensions: expected {self._dimension}, got {len(vector)}"
            )
        try:
            values = [float(x) for x in vector]
        except (TypeError, ValueError):
            return "Embedding contains non-numeric values"
        if not all(math.isfinite(x) for x in values):
            return "Embedding contains non-finite values"
        if not any(values):
            return "Embedding is a zero vector"
        return None

    @staticmethod
    def _fail(kind: GenerationErrorKind, message: str, text: str) -> GenerationError:
        logger.warning(
            "Embedding generation failed (%s): %s [text=%r]",
            kind.value,
            message,
            text[:50],
        )
        return GenerationError(kind=kind, message=message)
