"""
Application configuration using pydantic-settings.

Supports swappable embedding and LLM providers via environment variables.
Use nested delimiter __ for nested settings, e.g., EMBEDDING__PROVIDER=openai
"""

from functools import lru_cache
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TimeoutSettings(BaseSettings):
    """Timeout configuration for external services."""

    model_config = SettingsConfigDict(
        env_prefix="TIMEOUT__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    llm_seconds: float = 60.0          # Chat model API timeout
    embedding_seconds: float = 30.0    # Embedding API timeout
    translation_seconds: float = 10.0  # Query translation budget
    fetch_seconds: float = 30.0        # URL fetch (connect + read)


class EmbeddingProvider(str, Enum):
    """Supported embedding providers."""
    HUGGINGFACE = "huggingface"
    OPENAI = "openai"


class EmbeddingSettings(BaseSettings):
    """Swappable embedding provider configuration."""

    model_config = SettingsConfigDict(
        env_prefix="EMBEDDING__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider: EmbeddingProvider = EmbeddingProvider.HUGGINGFACE
    model: str = "all-MiniLM-L6-v2"
    dimension: int = 384
    endpoint: Optional[str] = None  # OpenAI-compatible base URL (e.g. a local server)
    api_key: str = ""
    max_retries: int = 3

    @field_validator('api_key')
    @classmethod
    def validate_api_key(cls, v, info):
        """Ensure API key is provided for the hosted OpenAI endpoint."""
        provider = info.data.get('provider')
        endpoint = info.data.get('endpoint')
        if provider == EmbeddingProvider.OPENAI and not endpoint and not v:
            raise ValueError(f"{provider.value} embedding provider requires a non-empty API key")
        return v


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    GEMINI = "gemini"


class LLMSettings(BaseSettings):
    """Chat model used for query translation."""

    model_config = SettingsConfigDict(
        env_prefix="LLM__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    enabled: bool = False  # Machine translation of queries (cross-language search)
    provider: LLMProvider = LLMProvider.OPENAI
    model: str = "gpt-4o-mini"
    base_url: Optional[str] = None
    api_key: str = ""

    @field_validator('api_key')
    @classmethod
    def validate_api_key(cls, v, info):
        """Ensure API key is provided for cloud LLM providers when translation is on."""
        provider = info.data.get('provider')
        enabled = info.data.get("enabled", False)
        base_url = info.data.get('base_url')
        if enabled and not base_url and provider in [LLMProvider.OPENAI, LLMProvider.GEMINI] and not v:
            raise ValueError(f"{provider.value} LLM provider requires a non-empty API key")
        return v


class StorageSettings(BaseSettings):
    """Where the vector table and the catalog live on disk."""

    model_config = SettingsConfigDict(
        env_prefix="STORAGE__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    data_dir: Path = Path("./data")
    vector_db_path: Path = Path("./data/vectors")
    table_name: str = "chunks"
    catalog_url: str = "sqlite+aiosqlite:///./data/catalog.db"


class SearchSettings(BaseSettings):
    """Fetch breadth and cross-language tuning."""

    model_config = SettingsConfigDict(
        env_prefix="SEARCH__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    default_k: int = 6
    max_k: int = 30
    min_fetch_k: int = 100
    max_fetch_k: int = 500
    global_multiplier: int = 50
    filtered_multiplier: int = 20
    global_ratio: float = 0.15
    fuzzy_source_limit: int = 50
    max_variants: int = 4
    retrieval_language: str = "en"
    max_query_length: int = 2000
    max_sources: int = 100


class IngestionSettings(BaseSettings):
    """Chunking, batching and fan-out for ingestion."""

    model_config = SettingsConfigDict(
        env_prefix="INGESTION__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    embedding_batch_size: int = 64
    chunk_size: int = 1000
    chunk_overlap: int = 200
    preview_chars: int = 160
    max_concurrent_sources: int = 3
    max_fetch_bytes: int = 5 * 1024 * 1024
    max_versions: int = 10
    extensions: List[str] = [".pdf", ".txt", ".md", ".markdown"]


class CacheSettings(BaseSettings):
    """In-memory cache sizing. Nothing here is persisted."""

    model_config = SettingsConfigDict(
        env_prefix="CACHE__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    row_count_ttl_seconds: float = 60.0
    query_embedding_size: int = 256
    query_embedding_ttl_seconds: float = 300.0
    translation_size: int = 1000
    translation_ttl_seconds: float = 7 * 24 * 3600.0


class LockSettings(BaseSettings):
    """Operation lock timing."""

    model_config = SettingsConfigDict(
        env_prefix="LOCK__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_wait_seconds: float = 60.0
    stale_after_seconds: float = 300.0


class RebuildSettings(BaseSettings):
    """Rebuild policy."""

    model_config = SettingsConfigDict(
        env_prefix="REBUILD__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Drop records whose URL is only temporarily unreachable (timeouts, 5xx)
    drop_on_transient_failure: bool = False


class OpikSettings(BaseSettings):
    """Opik observability configuration."""

    model_config = SettingsConfigDict(
        env_prefix="OPIK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: str = ""
    workspace: str = ""
    project_name: str = "kbengine"
    track_disable: bool = False


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App Settings
    log_level: str = "INFO"
    json_logs: bool = False  # Set to True for JSON output in production

    # Nested settings
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    lock: LockSettings = Field(default_factory=LockSettings)
    rebuild: RebuildSettings = Field(default_factory=RebuildSettings)
    opik: OpikSettings = Field(default_factory=OpikSettings)
    timeout: TimeoutSettings = Field(default_factory=TimeoutSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
