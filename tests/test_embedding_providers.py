"""Tests for the bundled embedding providers."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import numpy as np
import pytest

from taskvec.exceptions import ProviderError, ProviderRateLimitedError, ProviderTimeoutError
from taskvec.generation import EmbeddingProvider
from taskvec.generation.providers.sentence_transformers import SentenceTransformerEmbedding

# ==================================================================
# OpenAI provider
# ==================================================================


class TestOpenAIEmbedding:
    @pytest.fixture(autouse=True)
    def _require_openai(self):
        pytest.importorskip("openai")

    def _make_provider(self, **kwargs):
        from taskvec.generation.providers.openai import OpenAIEmbedding

        return OpenAIEmbedding(api_key="sk-test-key", **kwargs)

    def _mock_response(self, vectors: list[list[float]]):
        mock_resp = MagicMock()
        mock_data = []
        for i, vec in enumerate(vectors):
            item = MagicMock()
            item.embedding = vec
            item.index = i
            mock_data.append(item)
        mock_resp.data = mock_data
        return mock_resp

    @staticmethod
    def _request():
        import httpx

        return httpx.Request("POST", "https://api.openai.com/v1/embeddings")

    @pytest.mark.asyncio
    async def test_embed_single_text(self):
        provider = self._make_provider()
        provider._client.embeddings.create = AsyncMock(
            return_value=self._mock_response([[0.1, 0.2, 0.3]])
        )

        assert await provider.embed("Call vendor") == [0.1, 0.2, 0.3]
        call_kwargs = provider._client.embeddings.create.call_args[1]
        assert call_kwargs["input"] == ["Call vendor"]
        assert call_kwargs["model"] == "text-embedding-3-small"

    @pytest.mark.asyncio
    async def test_response_sorted_by_index(self):
        provider = self._make_provider()
        second = MagicMock(embedding=[0.0], index=1)
        first = MagicMock(embedding=[1.0], index=0)
        provider._client.embeddings.create = AsyncMock(return_value=MagicMock(data=[second, first]))

        assert await provider._request(["first", "second"]) == [[1.0], [0.0]]

    def test_dimensions(self):
        assert self._make_provider().dimensions == 1536
        assert self._make_provider(model="text-embedding-3-large").dimensions == 3072
        assert self._make_provider(dimensions=256).dimensions == 256

    def test_dimensions_unknown_model_raises(self):
        provider = self._make_provider(model="custom-model")
        with pytest.raises(ValueError, match="Unknown default dimensions"):
            _ = provider.dimensions

    def test_sdk_retries_disabled_by_default(self):
        assert self._make_provider()._client.max_retries == 0

    def test_api_key_required(self):
        from taskvec.generation.providers.openai import OpenAIEmbedding

        with patch.dict("os.environ", {}, clear=True), pytest.raises(
            ValueError, match="No OpenAI API key"
        ):
            OpenAIEmbedding()

    def test_api_key_from_env(self):
        from taskvec.generation.providers.openai import OpenAIEmbedding

        with patch.dict("os.environ", {"OPENAI_API_KEY": "sk-from-env"}):
            assert OpenAIEmbedding().model_name == "text-embedding-3-small"

    def test_isinstance_embedding_provider(self):
        assert isinstance(self._make_provider(), EmbeddingProvider)

    @pytest.mark.asyncio
    async def test_close(self):
        provider = self._make_provider()
        provider._client.close = AsyncMock()
        await provider.close()
        provider._client.close.assert_called_once()

    def test_injected_client_needs_no_key(self):
        from taskvec.generation.providers.openai import OpenAIEmbedding

        client = MagicMock()
        with patch.dict("os.environ", {}, clear=True):
            provider = OpenAIEmbedding(client=client)
        assert provider._client is client

    @pytest.mark.asyncio
    async def test_response_count_mismatch(self):
        provider = self._make_provider()
        provider._client.embeddings.create = AsyncMock(
            return_value=self._mock_response([[0.1], [0.2]])
        )
        with pytest.raises(ProviderError, match="2 embeddings for 1 inputs"):
            await provider.embed("x")

    @pytest.mark.asyncio
    async def test_rate_limit_translated(self):
        import httpx
        import openai

        provider = self._make_provider()
        response = httpx.Response(429, request=self._request())
        provider._client.embeddings.create = AsyncMock(
            side_effect=openai.RateLimitError("slow down", response=response, body=None)
        )
        with pytest.raises(ProviderRateLimitedError):
            await provider.embed("x")

    @pytest.mark.asyncio
    async def test_timeout_translated(self):
        import openai

        provider = self._make_provider()
        provider._client.embeddings.create = AsyncMock(
            side_effect=openai.APITimeoutError(request=self._request())
        )
        with pytest.raises(ProviderTimeoutError):
            await provider.embed("x")

    @pytest.mark.asyncio
    async def test_other_api_errors_translated(self):
        import openai

        provider = self._make_provider()
        provider._client.embeddings.create = AsyncMock(
            side_effect=openai.APIConnectionError(request=self._request())
        )
        with pytest.raises(ProviderError):
            await provider.embed("x")


# ==================================================================
# SentenceTransformer provider
# ==================================================================

_ST_MODULE = "taskvec.generation.providers.sentence_transformers"


def _sentence_transformer(model: MagicMock, model_name: str = "all-MiniLM-L6-v2"):
    with (
        patch(f"{_ST_MODULE}._HAS_SENTENCE_TRANSFORMERS", True),
        patch(f"{_ST_MODULE}.SentenceTransformer", create=True, return_value=model) as cls,
    ):
        provider = SentenceTransformerEmbedding(model_name, device="cpu")
    cls.assert_called_once_with(model_name, device="cpu")
    return provider


def _model(dimension: int = 384) -> MagicMock:
    model = MagicMock()
    model.get_sentence_embedding_dimension = MagicMock(return_value=dimension)
    return model


class TestSentenceTransformerEmbedding:
    def test_model_loaded_at_construction(self):
        model = _model(384)
        p = _sentence_transformer(model)
        assert p.model_name == "all-MiniLM-L6-v2"
        assert p.dimensions == 384
        model.get_sentence_embedding_dimension.assert_called_once()

    def test_isinstance_embedding_provider(self):
        model = _model()
        p = _sentence_transformer(model)
        assert isinstance(p, EmbeddingProvider)
        # Protocol checks read the property without touching the model again
        assert model.get_sentence_embedding_dimension.call_count == 1

    def test_missing_dimension_raises(self):
        with pytest.raises(RuntimeError, match="did not report"):
            _sentence_transformer(_model(None))  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_embed_normalised_in_thread(self):
        model = _model(2)
        model.encode = MagicMock(return_value=np.array([[0.6, 0.8]]))
        p = _sentence_transformer(model)

        vec = await p.embed("hello")
        assert vec == pytest.approx([0.6, 0.8])
        assert model.encode.call_args[0][0] == ["hello"]
        assert model.encode.call_args[1]["normalize_embeddings"] is True
