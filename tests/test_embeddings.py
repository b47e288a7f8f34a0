"""
Tests for EmbeddingService module.

Run with: pytest tests/test_embeddings.py -v
"""

import pytest
import numpy as np
from unittest.mock import Mock, patch

from chatbot_core.embeddings import (
    EmbeddingService,
    OpenAIEmbeddingProvider,
    cosine_similarity,
    cosine_similarities,
)
from chatbot_core.errors import ProviderError, ValidationError


class TestCosineSimiliarity:
    """Tests for cosine similarity functions."""

    def test_identical_vectors(self):
        """Identical vectors should have similarity 1."""
        vec = [1.0, 2.0, 3.0]
        assert abs(cosine_similarity(vec, vec) - 1.0) < 0.001

    def test_orthogonal_vectors(self):
        """Orthogonal vectors should have similarity 0."""
        assert abs(cosine_similarity([1.0, 0.0, 0.0], [0.0, 1.0, 0.0])) < 0.001

    def test_opposite_vectors(self):
        """Opposite vectors should have similarity -1."""
        assert abs(cosine_similarity([1.0, 2.0, 3.0], [-1.0, -2.0, -3.0]) + 1.0) < 0.001

    def test_zero_vector(self):
        """Zero vector should return 0 similarity."""
        assert cosine_similarity([1.0, 2.0, 3.0], [0.0, 0.0, 0.0]) == 0.0

    def test_similarities_against_matrix(self):
        """Each row is scored independently; zero rows score 0."""
        matrix = np.array([[1.0, 0.0], [0.0, 2.0], [0.0, 0.0], [1.0, 1.0]])
        scores = cosine_similarities([1.0, 0.0], matrix)

        assert scores.shape == (4,)
        assert scores[0] == pytest.approx(1.0)
        assert scores[1] == pytest.approx(0.0)
        assert scores[2] == 0.0
        assert scores[3] == pytest.approx(1 / np.sqrt(2))

    def test_similarities_zero_query(self):
        """A zero query scores every row 0."""
        scores = cosine_similarities([0.0, 0.0], np.array([[1.0, 0.0], [0.0, 1.0]]))
        assert list(scores) == [0.0, 0.0]


class TestOpenAIEmbeddingProvider:
    """Tests for the OpenAI embedding provider (client mocked)."""

    def _item(self, index, embedding):
        item = Mock()
        item.index = index
        item.embedding = embedding
        return item

    def test_dimension_from_model(self):
        """Known models report their native dimension."""
        assert OpenAIEmbeddingProvider("text-embedding-3-small").dimension == 1536
        assert OpenAIEmbeddingProvider("text-embedding-3-large").dimension == 3072

    def test_dimension_override(self):
        """Explicit dimensions win over the model default."""
        provider = OpenAIEmbeddingProvider("text-embedding-3-small", dimensions=256)
        assert provider.dimension == 256

    @patch('chatbot_core.embeddings.OpenAIEmbeddingProvider._get_client')
    def test_embed_text(self, mock_get_client):
        """Single text goes through embeddings.create."""
        mock_client = Mock()
        mock_client.embeddings.create.return_value = Mock(data=[self._item(0, [0.1, 0.2])])
        mock_get_client.return_value = mock_client

        provider = OpenAIEmbeddingProvider("text-embedding-3-small", dimensions=2)
        assert provider.embed_text("hello") == [0.1, 0.2]

        kwargs = mock_client.embeddings.create.call_args.kwargs
        assert kwargs["model"] == "text-embedding-3-small"
        assert kwargs["dimensions"] == 2

    @patch('chatbot_core.embeddings.OpenAIEmbeddingProvider._get_client')
    def test_embed_batch_keeps_input_order(self, mock_get_client):
        """Results are re-ordered by index."""
        mock_client = Mock()
        mock_client.embeddings.create.return_value = Mock(
            data=[self._item(1, [2.0]), self._item(0, [1.0])]
        )
        mock_get_client.return_value = mock_client

        provider = OpenAIEmbeddingProvider()
        assert provider.embed_batch(["a", "b"]) == [[1.0], [2.0]]

    @patch('chatbot_core.embeddings.get_settings')
    def test_missing_api_key(self, mock_settings):
        """Missing API key is a ProviderError."""
        mock_settings.return_value.embedding.openai_api_key = None
        provider = OpenAIEmbeddingProvider()

        with pytest.raises(ProviderError):
            provider.embed_text("hello")


class TestEmbeddingService:
    """Tests for the EmbeddingService wrapper."""

    @pytest.fixture
    def provider(self):
        provider = Mock()
        provider.dimension = 3
        provider.model_name = "mock-model"
        provider.embed_text.return_value = [1.0, 0.0, 0.0]
        provider.embed_batch.return_value = [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
        return provider

    def test_properties(self, provider):
        """Dimension and model name come from the provider."""
        service = EmbeddingService(provider=provider)
        assert service.dimension == 3
        assert service.model_name == "mock-model"

    def test_embed_text(self, provider):
        service = EmbeddingService(provider=provider)
        assert service.embed_text("hello") == [1.0, 0.0, 0.0]
        assert service.embed_query("hello") == [1.0, 0.0, 0.0]

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_empty_text_rejected(self, provider, text):
        """Empty input never reaches the provider."""
        service = EmbeddingService(provider=provider)
        with pytest.raises(ValidationError):
            service.embed_text(text)
        provider.embed_text.assert_not_called()

    def test_provider_failure_wrapped(self, provider):
        """Backend exceptions surface as ProviderError."""
        provider.embed_text.side_effect = RuntimeError("timeout")
        service = EmbeddingService(provider=provider)

        with pytest.raises(ProviderError) as exc_info:
            service.embed_text("hello")
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_embed_batch(self, provider):
        service = EmbeddingService(provider=provider)
        assert service.embed_batch(["a", "b"]) == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
        assert service.embed_batch([]) == []

    def test_embed_batch_rejects_empty_member(self, provider):
        service = EmbeddingService(provider=provider)
        with pytest.raises(ValidationError):
            service.embed_batch(["a", ""])

    def test_embed_batch_length_mismatch(self, provider):
        """A provider returning the wrong number of vectors is an error."""
        provider.embed_batch.return_value = [[1.0, 0.0, 0.0]]
        service = EmbeddingService(provider=provider)
        with pytest.raises(ProviderError):
            service.embed_batch(["a", "b"])
