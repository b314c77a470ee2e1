"""Configuration module for the video ingestion pipeline."""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .errors import ConfigurationError

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class IngestionConfig(BaseModel):
    """Configuration for the transcript-to-embedding ingestion pipeline.

    Covers discovery, batching, embedding generation and storage. Every
    setting can be overridden via environment variables or passed explicitly.
    """

    # Discovery (Supadata API)
    supadata_api_key: str = Field(
        default_factory=lambda: os.getenv("SUPADATA_API_KEY", "")
    )
    source: str = Field(default_factory=lambda: os.getenv("YOUTUBE_SOURCE", ""))
    max_videos: int = Field(
        default_factory=lambda: int(os.getenv("MAX_VIDEOS", "0")), ge=0
    )
    max_retries: int = Field(
        default_factory=lambda: int(os.getenv("YOUTUBE_MAX_RETRIES", "1")), ge=0
    )

    # Batching
    batch_size: int = Field(
        default_factory=lambda: int(os.getenv("INGEST_BATCH_SIZE", "5")), ge=1
    )
    skip_existing: bool = Field(
        default_factory=lambda: _env_bool("SKIP_EXISTING_VIDEOS", "true")
    )

    # Embedding settings
    embedding_provider: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_PROVIDER", "openai")
    )
    embedding_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "EMBEDDING_BASE_URL", "https://api.openai.com/v1"
        )
    )
    embedding_api_key: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_API_KEY", "")
    )
    embedding_model: str = Field(
        default_factory=lambda: os.getenv(
            "EMBEDDING_MODEL_CHOICE", "text-embedding-3-small"
        )
    )
    embedding_dimensions: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_DIMENSIONS", "1024")), gt=0
    )
    embedding_max_tokens: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_MAX_TOKENS", "8000")), gt=0
    )
    embedding_concurrency: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_CONCURRENCY", "5")), ge=1
    )

    # Storage settings
    output_path: str = Field(
        default_factory=lambda: os.getenv("OUTPUT_DB_PATH", "data/videos.db")
    )
    verify_each_batch: bool = Field(
        default_factory=lambda: _env_bool("VERIFY_EACH_BATCH", "true")
    )

    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))


def get_config() -> IngestionConfig:
    """Get validated configuration instance.

    Returns:
        IngestionConfig: Validated configuration object with all settings.

    Raises:
        ValidationError: If an environment variable holds an invalid value.
    """
    return IngestionConfig()


def validate_runtime_config(config: IngestionConfig) -> None:
    """Check everything a run needs before any video is touched.

    Creates the output directory when it does not exist yet.

    Args:
        config: Configuration for the upcoming run.

    Raises:
        ConfigurationError: If the source, credentials or output location
            are unusable.
    """
    if not config.source.strip():
        raise ConfigurationError("A channel or playlist source is required")

    if not config.supadata_api_key:
        raise ConfigurationError("SUPADATA_API_KEY is required for video discovery")

    if config.embedding_provider != "ollama" and not config.embedding_api_key:
        raise ConfigurationError(
            f"EMBEDDING_API_KEY is required for provider '{config.embedding_provider}'"
        )

    output_dir = Path(config.output_path).expanduser().resolve().parent
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(
            f"Cannot create output directory {output_dir}: {e}"
        ) from e

    if not os.access(output_dir, os.W_OK):
        raise ConfigurationError(f"Output directory {output_dir} is not writable")
