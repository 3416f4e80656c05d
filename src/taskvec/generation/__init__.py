"""Embedding generation — provider protocol, generator adapter, providers."""

from taskvec.generation._generator import (
    EmbeddingGenerator,
    GenerationError,
    GenerationErrorKind,
)
from taskvec.generation.protocols import EmbeddingProvider

__all__ = [
    "EmbeddingGenerator",
    "EmbeddingProvider",
    "GenerationError",
    "GenerationErrorKind",
]
