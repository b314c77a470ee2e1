"""Shared fixtures for the video ingestion test suite."""

import re
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from src.video_ingestion.config import IngestionConfig


@pytest.fixture
def config(tmp_path: Path) -> IngestionConfig:
    """Create a small-dimension configuration writing into tmp_path."""
    return IngestionConfig(
        supadata_api_key="test_supadata_key",
        source="UCtest123",
        max_videos=0,
        max_retries=1,
        batch_size=3,
        skip_existing=True,
        embedding_provider="openai",
        embedding_base_url="https://api.openai.com/v1",
        embedding_api_key="test_api_key",
        embedding_model="text-embedding-3-small",
        embedding_dimensions=4,
        embedding_max_tokens=50,
        embedding_concurrency=2,
        output_path=str(tmp_path / "data" / "videos.db"),
        verify_each_batch=True,
    )


@pytest.fixture
def fake_tokenizer() -> MagicMock:
    """Whitespace tokenizer standing in for a HuggingFace fast tokenizer."""

    def _encode(text: str, **kwargs: Any) -> dict[str, list]:
        words = list(re.finditer(r"\S+", text))
        return {
            "input_ids": [match.group() for match in words],
            "offset_mapping": [match.span() for match in words],
        }

    tokenizer = MagicMock(side_effect=_encode)
    return tokenizer
