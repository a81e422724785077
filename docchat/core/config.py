"""Application configuration using Pydantic Settings.

All configuration is loaded from environment variables (or a local .env file).
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # ============================================
    # Application
    # ============================================
    app_name: str = "docchat"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = False

    # ============================================
    # Logging
    # ============================================
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"

    # ============================================
    # Local storage
    # ============================================
    data_dir: Path = Path("data")

    @property
    def cache_dir(self) -> Path:
        """Directory holding the embedding cache."""
        return self.data_dir / "cache"

    @property
    def version_dir(self) -> Path:
        """Directory holding the document version log."""
        return self.data_dir / "versions"

    @property
    def file_storage_dir(self) -> Path:
        """Directory holding uploaded source files."""
        return self.data_dir / "filesource"

    @property
    def qdrant_path(self) -> Path:
        """On-disk location of the embedded Qdrant database."""
        return self.data_dir / "qdrant"

    # ============================================
    # Vector store
    # ============================================
    vector_backend: Literal["qdrant", "pgvector"] = "qdrant"

    # Qdrant: leave qdrant_url unset to run embedded (local mode) under data_dir
    qdrant_url: str | None = None
    qdrant_api_key: str | None = None
    qdrant_collection: str = "documents"

    # PostgreSQL + pgvector
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_db: str = "docchat"

    # Explicit DATABASE_URL takes precedence if set
    database_url: str | None = None

    @property
    def get_database_url(self) -> str:
        """Get database URL - explicit or constructed from components."""
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    # ============================================
    # OpenAI / Azure OpenAI
    # ============================================
    openai_api_key: str = ""
    openai_base_url: str | None = None

    # Azure is used when an endpoint is configured
    azure_openai_endpoint: str = ""
    azure_openai_api_key: str = ""
    azure_openai_api_version: str = "2025-04-01-preview"

    # ============================================
    # Embeddings
    # ============================================
    embedding_model: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model name"
    )
    embedding_dimensions: int = Field(
        default=1536, description="Embedding vector dimensions (must match model)"
    )
    embedding_batch_size: int = 100

    # ============================================
    # Completion
    # ============================================
    completion_model: str = "gpt-4o-mini"
    completion_temperature: float = 0.0
    completion_max_tokens: int = 1024

    # ============================================
    # Chunking
    # ============================================
    chunk_size: int = 1000
    chunk_overlap: int = 200

    # ============================================
    # Retrieval
    # ============================================
    retrieval_top_k: int = 4
    relevance_threshold: float = Field(
        default=0.7, description="Minimum cosine similarity for a chunk to enter the context"
    )

    @field_validator("chunk_size")
    @classmethod
    def _chunk_size_positive(cls, v: int) -> int:
        if v < 50:
            raise ValueError(f"chunk_size must be >= 50, got {v}")
        return v

    @field_validator("relevance_threshold")
    @classmethod
    def _threshold_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"relevance_threshold must be within [0, 1], got {v}")
        return v

    @model_validator(mode="after")
    def _overlap_smaller_than_chunk(self) -> "Settings":
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be >= 0 and smaller than chunk_size ({self.chunk_size})"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
