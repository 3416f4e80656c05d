"""SentenceTransformerEmbedding — local embedding provider."""

from __future__ import annotations

import asyncio
from typing import Any

try:
    from sentence_transformers import SentenceTransformer

    _HAS_SENTENCE_TRANSFORMERS = True
except ImportError:  # pragma: no cover
    _HAS_SENTENCE_TRANSFORMERS = False


class SentenceTransformerEmbedding:
    """Runs a ``sentence-transformers`` model in-process.

    The model is loaded when the provider is constructed, since the
    pipeline needs its dimension up front.  Inference is CPU/GPU bound, so
    :meth:`embed` hands it to a worker thread.  Output vectors are unit
    length.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", *, device: str | None = None) -> None:
        if not _HAS_SENTENCE_TRANSFORMERS:
            msg = (
                "sentence-transformers is required for SentenceTransformerEmbedding. "
                "Install it with: pip install taskvec[search]"
            )
            raise ImportError(msg)
        self._model_name = model_name
        self._model = SentenceTransformer(model_name, device=device)
        dim = self._model.get_sentence_embedding_dimension()
        if dim is None:
            msg = f"Model {model_name!r} did not report embedding dimensions"
            raise RuntimeError(msg)
        self._dimension: int = dim

    def _encode(self, text: str) -> list[float]:
        result: Any = self._model.encode([text], normalize_embeddings=True)
        return result[0].tolist()

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self._encode, text)

    @property
    def dimensions(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model_name
