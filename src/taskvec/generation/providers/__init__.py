"""Embedding providers — protocol implementations."""

from taskvec.generation.protocols import EmbeddingProvider

__all__ = [
    "EmbeddingProvider",
]

# Optional providers, available only when their deps are installed.
try:
    from taskvec.generation.providers.openai import OpenAIEmbedding

    __all__.append("OpenAIEmbedding")
except ImportError:  # pragma: no cover
    pass

try:
    from taskvec.generation.providers.sentence_transformers import (
        SentenceTransformerEmbedding,
    )

    __all__.append("SentenceTransformerEmbedding")
except ImportError:  # pragma: no cover
    pass
