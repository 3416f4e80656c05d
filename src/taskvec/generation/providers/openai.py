"""OpenAIEmbedding — async embedding provider backed by OpenAI's API."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

from taskvec.exceptions import ProviderError, ProviderRateLimitedError, ProviderTimeoutError

try:
    import openai
    from openai import AsyncOpenAI

    _HAS_OPENAI = True
except ImportError:  # pragma: no cover
    _HAS_OPENAI = False

if TYPE_CHECKING:
    from openai import AsyncOpenAI as AsyncOpenAIType

DEFAULT_MODEL = "text-embedding-3-small"

# Native vector length per model when ``dimensions`` is not given.
_MODEL_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


def _translate(exc: Exception) -> ProviderError:
    """Map an OpenAI SDK error onto the provider error hierarchy."""
    if isinstance(exc, openai.RateLimitError):
        return ProviderRateLimitedError(str(exc))
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTimeoutError(str(exc) or "OpenAI request timed out")
    return ProviderError(str(exc) or type(exc).__name__)


class OpenAIEmbedding:
    """Embedding provider for the OpenAI Embeddings API.

    The SDK's own retries are off by default (``max_retries=0``) so a
    failed task surfaces once and is recorded as ``failed``; retrying is an
    explicit reprocess.  SDK errors are raised as
    :class:`~taskvec.exceptions.ProviderError` subclasses.

    Requires the ``openai`` package::

        pip install taskvec[openai]
    """

    def __init__(
        self,
        *,
        model: str = DEFAULT_MODEL,
        dimensions: int | None = None,
        api_key: str | None = None,
        max_retries: int = 0,
        timeout: float = 10.0,
        client: AsyncOpenAIType | None = None,
    ) -> None:
        if not _HAS_OPENAI:
            msg = (
                "openai is required for OpenAIEmbedding. "
                "Install it with: pip install taskvec[openai]"
            )
            raise ImportError(msg)

        self._model = model
        self._dimensions = dimensions

        if client is None:
            key = api_key or os.environ.get("OPENAI_API_KEY")
            if not key:
                msg = (
                    "No OpenAI API key provided. Pass api_key= or set the "
                    "OPENAI_API_KEY environment variable."
                )
                raise ValueError(msg)
            client = AsyncOpenAI(api_key=key, max_retries=max_retries, timeout=timeout)
        self._client: AsyncOpenAIType = client

    async def embed(self, text: str) -> list[float]:
        [vector] = await self._request([text])
        return vector

    @property
    def dimensions(self) -> int:
        if self._dimensions is not None:
            return self._dimensions
        try:
            return _MODEL_DIMENSIONS[self._model]
        except KeyError:
            msg = f"Unknown default dimensions for model {self._model!r}. Pass dimensions= explicitly."
            raise ValueError(msg) from None

    @property
    def model_name(self) -> str:
        return self._model

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()

    async def _request(self, texts: list[str]) -> list[list[float]]:
        params: dict[str, Any] = {"input": texts, "model": self._model}
        if self._dimensions is not None:
            params["dimensions"] = self._dimensions

        try:
            response = await self._client.embeddings.create(**params)
        except openai.OpenAIError as exc:
            raise _translate(exc) from exc

        if len(response.data) != len(texts):
            msg = f"OpenAI returned {len(response.data)} embeddings for {len(texts)} inputs"
            raise ProviderError(msg)
        # the API may return items out of order
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]
