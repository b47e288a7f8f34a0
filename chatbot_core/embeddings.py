"""
Embedding Service Module

Provides an abstraction layer for embedding generation. Production uses the
OpenAI embeddings API (text-embedding-3-small by default); tests inject any
object implementing BaseEmbeddingProvider.

Design Rationale:
- One configured model per index, so every stored vector has the same dimension
- Provider failures surface as ProviderError and are never retried here
- Empty input is rejected before the provider is called

Embedding Dimensions:
- text-embedding-3-small: 1536 dimensions
- text-embedding-3-large: 3072 dimensions
- text-embedding-ada-002: 1536 dimensions
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np
from openai import OpenAI

from config.settings import get_settings, EmbeddingConfig
from chatbot_core.errors import ProviderError, ValidationError

logger = logging.getLogger(__name__)


class BaseEmbeddingProvider(ABC):
    """
    Abstract base class for embedding providers.

    All embedding providers must implement:
    - embed_text: Embed a single text string
    - embed_batch: Embed multiple texts efficiently
    - dimension: Return the embedding dimension
    - model_name: Return the model identifier stored with each vector
    """

    @abstractmethod
    def embed_text(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Input text to embed

        Returns:
            List of floats representing the embedding vector
        """
        pass

    @abstractmethod
    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts, preserving input order.

        Args:
            texts: List of input texts

        Returns:
            List of embedding vectors
        """
        pass

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the dimension of embeddings produced."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the name of the embedding model."""
        pass


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):
    """
    OpenAI embedding provider using the embeddings API.

    Models:
    - text-embedding-3-small: 1536 dims (cheaper)
    - text-embedding-3-large: 3072 dims (better quality)
    - text-embedding-ada-002: 1536 dims (legacy)
    """

    MODEL_DIMENSIONS = EmbeddingConfig.MODEL_DIMENSIONS

    # OpenAI accepts up to 2048 inputs per request; stay well below
    BATCH_SIZE = 100

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        dimensions: Optional[int] = None,
    ):
        """
        Initialize the OpenAI embedding provider.

        Args:
            model_name: Name of the OpenAI embedding model
            api_key: OpenAI API key (or from settings)
            dimensions: Optional reduced output size (text-embedding-3 models)
        """
        self._model_name = model_name
        self._api_key = api_key
        self._dimensions = dimensions
        self._client = None

        if model_name not in self.MODEL_DIMENSIONS and not dimensions:
            logger.warning(
                f"Unknown model {model_name}, assuming 1536 dimensions. "
                f"Known models: {list(self.MODEL_DIMENSIONS.keys())}"
            )

        logger.info(f"Initializing OpenAIEmbeddingProvider with model: {model_name}")

    def _get_client(self) -> OpenAI:
        """Get or create the OpenAI client."""
        if self._client is None:
            api_key = self._api_key or get_settings().embedding.openai_api_key
            if not api_key:
                raise ProviderError(
                    "OpenAI API key not found. Set OPENAI_API_KEY environment "
                    "variable or pass api_key parameter.",
                    provider="openai",
                )
            self._client = OpenAI(api_key=api_key)
            logger.info("OpenAI embeddings client initialized")
        return self._client

    def _create(self, inputs):
        kwargs = {"input": inputs, "model": self._model_name}
        if self._dimensions:
            kwargs["dimensions"] = self._dimensions
        return self._get_client().embeddings.create(**kwargs)

    def embed_text(self, text: str) -> List[float]:
        response = self._create(text)
        return response.data[0].embedding

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        logger.debug(f"Embedding batch of {len(texts)} texts via OpenAI")

        all_embeddings = []
        for i in range(0, len(texts), self.BATCH_SIZE):
            response = self._create(texts[i:i + self.BATCH_SIZE])
            # Sort by index to maintain order
            sorted_data = sorted(response.data, key=lambda x: x.index)
            all_embeddings.extend(item.embedding for item in sorted_data)

        return all_embeddings

    @property
    def dimension(self) -> int:
        if self._dimensions:
            return self._dimensions
        return self.MODEL_DIMENSIONS.get(self._model_name, 1536)

    @property
    def model_name(self) -> str:
        return self._model_name


class EmbeddingService:
    """
    Main embedding service that other components use.

    Example:
        service = EmbeddingService()  # OpenAI model from config
        embedding = service.embed_text("Hello world")

        # Or inject a provider (tests, alternative backends)
        service = EmbeddingService(provider=my_provider)
    """

    def __init__(
        self,
        provider: Optional[BaseEmbeddingProvider] = None,
        config: Optional[EmbeddingConfig] = None,
    ):
        """
        Initialize the embedding service.

        Args:
            provider: Embedding provider instance (default: OpenAI from config)
            config: Optional EmbeddingConfig instance
        """
        self.config = config or get_settings().embedding

        if provider is None:
            provider = OpenAIEmbeddingProvider(
                model_name=self.config.openai_model,
                api_key=self.config.openai_api_key,
                dimensions=self.config.dimensions,
            )
        self._provider = provider

        logger.info(
            f"EmbeddingService initialized with model {self._provider.model_name}, "
            f"dimension={self._provider.dimension}"
        )

    def embed_text(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Input text to embed

        Returns:
            Embedding vector as list of floats

        Raises:
            ValidationError: If text is empty
            ProviderError: If the backend call fails
        """
        if not text or not text.strip():
            raise ValidationError("Cannot embed empty text")

        try:
            return list(self._provider.embed_text(text))
        except ProviderError:
            raise
        except Exception as e:
            logger.error(f"Embedding failed with {self.model_name}: {e}")
            raise ProviderError(f"Embedding failed: {e}", provider=self.model_name) from e

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts.

        Output is aligned with the input; an empty text anywhere in the batch
        is a ValidationError.
        """
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise ValidationError("Cannot embed empty text")

        try:
            embeddings = self._provider.embed_batch(texts)
        except ProviderError:
            raise
        except Exception as e:
            logger.error(f"Batch embedding of {len(texts)} texts failed: {e}")
            raise ProviderError(f"Embedding failed: {e}", provider=self.model_name) from e

        if len(embeddings) != len(texts):
            raise ProviderError(
                f"Provider returned {len(embeddings)} embeddings for {len(texts)} texts",
                provider=self.model_name,
            )
        return [list(e) for e in embeddings]

    def embed_query(self, query: str) -> List[float]:
        """Semantic alias for embed_text, used for retrieval queries."""
        return self.embed_text(query)

    @property
    def dimension(self) -> int:
        """Return the embedding dimension."""
        return self._provider.dimension

    @property
    def model_name(self) -> str:
        """Return the model name."""
        return self._provider.model_name


def cosine_similarity(vec1: List[float], vec2: List[float]) -> float:
    """
    Calculate cosine similarity between two vectors.

    Args:
        vec1: First embedding vector
        vec2: Second embedding vector

    Returns:
        Similarity score between -1 and 1 (1 = identical)
    """
    arr1 = np.array(vec1, dtype=float)
    arr2 = np.array(vec2, dtype=float)

    norm1 = np.linalg.norm(arr1)
    norm2 = np.linalg.norm(arr2)

    if norm1 == 0 or norm2 == 0:
        return 0.0

    return float(np.dot(arr1, arr2) / (norm1 * norm2))


def cosine_similarities(query: List[float], matrix: np.ndarray) -> np.ndarray:
    """
    Cosine similarity of one query vector against each row of a matrix.

    Zero-norm rows (and a zero-norm query) score 0.0.
    """
    q = np.asarray(query, dtype=float)
    m = np.asarray(matrix, dtype=float)
    if m.size == 0:
        return np.zeros(0)

    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(m, axis=1)
    if q_norm == 0:
        return np.zeros(m.shape[0])

    denom = row_norms * q_norm
    dots = m @ q
    return np.divide(dots, denom, out=np.zeros_like(dots), where=denom != 0)
