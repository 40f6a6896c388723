"""Configuration management for Repolens."""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SUPPORTED_LOCALES = ("fr", "en")


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="REPOLENS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json or text)")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")

    # GitHub
    github_api_url: str = Field(default="https://api.github.com", description="GitHub REST API base URL")
    github_token: Optional[str] = Field(default=None, description="GitHub access token")
    fetch_timeout_seconds: float = Field(default=30.0, description="Timeout for a single fetch request")
    fetch_max_attempts: int = Field(default=5, description="Attempts per fetch call before the job fails")
    fetch_backoff_base_seconds: float = Field(default=2.0, description="Base delay for fetch backoff")
    fetch_backoff_max_seconds: float = Field(default=60.0, description="Upper bound for a single fetch backoff")
    max_repository_files: int = Field(default=5000, description="Maximum files indexed per repository")

    # AWS Bedrock embeddings
    bedrock_region: str = Field(default="us-east-1", description="AWS Bedrock region")
    bedrock_embed_model_id: str = Field(
        default="amazon.titan-embed-text-v2:0",
        description="Bedrock model ID for embeddings"
    )
    embedding_dimensions: int = Field(default=1024, description="Embedding vector dimension")
    bedrock_timeout_seconds: int = Field(default=60, description="Bedrock read timeout in seconds")

    # Embedder
    embedding_batch_size: int = Field(default=128, description="Maximum texts per embedding batch")
    embedding_max_batch_tokens: int = Field(
        default=100_000, description="Maximum estimated tokens per embedding batch"
    )
    embedding_max_attempts: int = Field(default=5, description="Attempts per embedding batch")
    embedding_backoff_base_seconds: float = Field(default=2.0, description="Base delay for embedding backoff")
    embedding_max_concurrency: int = Field(default=1, description="Outstanding embedding batches")
    embedding_batch_delay_seconds: float = Field(default=0.1, description="Pause between embedding batches")

    # Chunking
    max_file_bytes: int = Field(default=1024 * 1024, description="Files larger than this are skipped")

    # Storage
    vector_index_path: Optional[Path] = Field(
        default=None, description="Directory for persisted vector indexes (memory only when unset)"
    )
    jobs_database_url: Optional[str] = Field(
        default=None, description="SQLAlchemy URL for the job store (memory only when unset)"
    )
    stale_job_minutes: int = Field(default=30, description="Age after which a running job is failed")

    # Retrieval and context
    retrieval_top_k: int = Field(default=15, description="Default number of chunks retrieved")
    retrieval_min_score: Optional[float] = Field(default=None, description="Default minimum similarity")
    retrieval_hybrid: bool = Field(default=False, description="Fuse vector and BM25 rankings")
    retrieval_rrf_k: int = Field(default=60, description="Reciprocal rank fusion constant")
    retrieval_candidate_pool: int = Field(
        default=50, description="Candidates per ranking considered before fusion or reranking"
    )
    rerank_enabled: bool = Field(default=False, description="Rerank retrieved chunks with Bedrock")
    bedrock_rerank_model_id: str = Field(default="amazon.rerank-v1:0", description="Bedrock reranking model ID")
    rerank_min_score: float = Field(default=0.0, description="Drop reranked chunks scoring below this")
    context_max_tokens: int = Field(default=30000, description="Default context token budget")
    context_language: str = Field(default="fr", description="Default locale for context text")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Ensure the level is one the logging module knows."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v not in {"json", "text"}:
            raise ValueError(f"Log format must be 'json' or 'text', got {v}")
        return v

    @field_validator("context_language")
    @classmethod
    def validate_language(cls, v):
        if v not in SUPPORTED_LOCALES:
            raise ValueError(f"Unsupported locale {v}; expected one of {SUPPORTED_LOCALES}")
        return v

    @field_validator(
        "fetch_max_attempts",
        "max_repository_files",
        "embedding_dimensions",
        "embedding_batch_size",
        "embedding_max_batch_tokens",
        "embedding_max_attempts",
        "embedding_max_concurrency",
        "max_file_bytes",
        "stale_job_minutes",
        "retrieval_top_k",
        "retrieval_rrf_k",
        "retrieval_candidate_pool",
        "context_max_tokens",
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("vector_index_path")
    @classmethod
    def ensure_absolute_path(cls, v):
        """Ensure paths are absolute."""
        return Path(v).resolve() if v is not None else None


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
