"""Embedding service for generating text embeddings via OpenAI-compatible APIs."""

import asyncio
import math
from collections.abc import Sequence
from typing import Any

import numpy as np
from openai import AsyncOpenAI
from transformers import AutoTokenizer

from src.utils.logging import get_logger

from .config import IngestionConfig
from .errors import (
    ConfigurationError,
    DimensionMismatchError,
    IngestionError,
    InvalidInputError,
    ProcessingFailureError,
)

logger = get_logger(__name__)

# Providers known to honour the ``dimensions`` request parameter
_DIMENSION_AWARE_PROVIDERS = {"openai", "openrouter"}


class EmbeddingService:
    """Service for generating fixed-dimension text embeddings.

    Supports OpenAI-compatible providers (OpenAI, Ollama, OpenRouter). Single
    calls raise on failure; batch calls never do and substitute the zero
    vector for each failed item so output positions always match input
    positions.
    """

    def __init__(self, config: IngestionConfig):
        """Initialize embedding service with configuration.

        Args:
            config: Configuration object with embedding provider settings.
        """
        self.config = config
        self.dimensions = config.embedding_dimensions
        self.client = self._get_client()
        self.tokenizer = self._get_tokenizer(config.embedding_model)
        logger.info(
            "embedding_service_initialized",
            provider=config.embedding_provider,
            model=config.embedding_model,
            dimensions=self.dimensions,
            base_url=config.embedding_base_url,
        )

    def _get_client(self) -> AsyncOpenAI:
        """Initialize OpenAI-compatible client based on provider.

        Returns:
            Configured AsyncOpenAI client instance.
        """
        if self.config.embedding_provider == "ollama":
            # Ollama doesn't require a real API key
            return AsyncOpenAI(
                base_url=self.config.embedding_base_url,
                api_key="ollama",
            )
        return AsyncOpenAI(
            base_url=self.config.embedding_base_url,
            api_key=self.config.embedding_api_key,
        )

    def _get_tokenizer(self, embedding_model: str) -> Any:
        """Get a tokenizer approximating the embedding model's token budget.

        Args:
            embedding_model: Name of the embedding model.

        Returns:
            AutoTokenizer instance (untyped due to transformers library).
        """
        tokenizer_map = {
            "text-embedding-3-small": "sentence-transformers/all-MiniLM-L6-v2",
            "text-embedding-3-large": "sentence-transformers/all-MiniLM-L6-v2",
            "nomic-embed-text": "bert-base-uncased",
            "all-MiniLM-L6-v2": "sentence-transformers/all-MiniLM-L6-v2",
        }

        tokenizer_name = tokenizer_map.get(
            embedding_model, "sentence-transformers/all-MiniLM-L6-v2"
        )
        logger.info("loading_tokenizer", tokenizer=tokenizer_name)
        try:
            return AutoTokenizer.from_pretrained(tokenizer_name)  # type: ignore
        except OSError as e:
            raise ConfigurationError(
                f"Cannot load tokenizer {tokenizer_name}: {e}"
            ) from e

    def truncate(self, text: str) -> str:
        """Cut text to the first ``embedding_max_tokens`` tokens.

        The cut is made on the original string using the tokenizer's
        character offsets, so the result is always a prefix of ``text``.
        Text within the budget is returned unchanged.
        """
        encoding = self.tokenizer(
            text, add_special_tokens=False, return_offsets_mapping=True
        )
        offsets = encoding["offset_mapping"]
        limit = self.config.embedding_max_tokens
        if len(offsets) <= limit:
            return text

        end = offsets[limit - 1][1]
        logger.debug(
            "embedding_input_truncated",
            original_tokens=len(offsets),
            max_tokens=limit,
        )
        return text[:end]

    def zero_vector(self) -> list[float]:
        """Fallback embedding used when generation fails."""
        return [0.0] * self.dimensions

    async def generate(self, text: str) -> list[float]:
        """Generate the embedding for a single text.

        Args:
            text: Text content to embed.

        Returns:
            Embedding vector with exactly ``dimensions`` finite components.

        Raises:
            InvalidInputError: If text is empty or whitespace-only.
            ProcessingFailureError: If the remote call fails or returns an
                unusable vector.
        """
        if not text or not text.strip():
            raise InvalidInputError("Cannot generate embeddings for empty text")

        prepared = self.truncate(text)

        try:
            response = await self.client.embeddings.create(**self._request(prepared))
            embedding = [float(x) for x in response.data[0].embedding]
        except Exception as e:
            logger.warning(
                "embedding_failed",
                text_length=len(text),
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ProcessingFailureError(
                f"Failed to generate embeddings: {e}", stage="embedding"
            ) from e

        if len(embedding) != self.dimensions:
            raise ProcessingFailureError(
                f"Embedding has {len(embedding)} dimensions, expected {self.dimensions}",
                stage="embedding",
            )
        if not all(math.isfinite(x) for x in embedding):
            raise ProcessingFailureError(
                "Embedding contains non-finite values", stage="embedding"
            )

        logger.debug(
            "embedding_generated",
            text_length=len(text),
            embedding_dim=len(embedding),
        )
        return embedding

    def _request(self, text: str) -> dict[str, Any]:
        request: dict[str, Any] = {"input": text, "model": self.config.embedding_model}
        if self.config.embedding_provider in _DIMENSION_AWARE_PROVIDERS:
            request["dimensions"] = self.dimensions
        return request

    async def generate_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate embeddings for many texts, one independent call per text.

        At most ``embedding_concurrency`` calls are outstanding at once. A
        failure on one item never affects the others: its position holds the
        zero vector instead.

        Args:
            texts: Texts to embed.

        Returns:
            One vector per input text, in input order.
        """
        if not texts:
            return []

        logger.info(
            "batch_embedding_started",
            count=len(texts),
            concurrency=self.config.embedding_concurrency,
        )

        semaphore = asyncio.Semaphore(self.config.embedding_concurrency)

        async def embed_one(index: int, text: str) -> list[float]:
            async with semaphore:
                try:
                    return await self.generate(text)
                except IngestionError as e:
                    logger.warning(
                        "embedding_fallback_used",
                        index=index,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    return self.zero_vector()

        embeddings = list(
            await asyncio.gather(*[embed_one(i, text) for i, text in enumerate(texts)])
        )

        logger.info(
            "batch_embedding_completed",
            total_embeddings=len(embeddings),
            fallbacks=sum(1 for e in embeddings if not self.validate(e)),
        )
        return embeddings

    def validate(self, vector: Sequence[float]) -> bool:
        """Check that a vector is a usable embedding.

        The zero fallback vector is reported as invalid so that degraded
        segments can be flagged and filtered downstream.

        Args:
            vector: Candidate embedding.

        Returns:
            True if the vector has the configured dimension, only finite
            components, and at least one non-zero component.
        """
        if len(vector) != self.dimensions:
            return False
        try:
            array = np.asarray(vector, dtype=np.float64)
        except (TypeError, ValueError):
            return False
        if not np.all(np.isfinite(array)):
            return False
        return bool(np.any(array != 0.0))

    @staticmethod
    def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
        """Normalized dot product of two embeddings.

        Returns 0.0 when either vector has zero magnitude.

        Raises:
            DimensionMismatchError: If the vectors differ in length.
        """
        if len(a) != len(b):
            raise DimensionMismatchError(len(a), len(b))

        left = np.asarray(a, dtype=np.float64)
        right = np.asarray(b, dtype=np.float64)
        magnitude = float(np.linalg.norm(left) * np.linalg.norm(right))
        if magnitude == 0.0:
            return 0.0
        similarity = float(np.dot(left, right) / magnitude)
        return max(-1.0, min(1.0, similarity))
