"""Application configuration and environment-driven settings.

Defines the Settings class based on pydantic-settings to centralize configuration for:
- API keys and model names for embedding and generation providers
- Data stores (PostgreSQL task/document store, optional Redis cache)
- Retrieval defaults (top-k, confidence threshold)
- Generation bounds (temperature default, token budget ceiling)
- Pipeline worker pools and stale-task recovery
- Publishing collaborator (blog platform) credentials
- Optional observability (Langfuse, OpenTelemetry)

A warning is logged if OPENAI_API_KEY is not set when not running in Docker.
"""
import logging
import os

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Default output dimension of the OpenAI embedding models we support
MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class Settings(BaseSettings):
    """Strongly-typed application settings loaded from environment variables.

    Uses pydantic-settings to populate fields from a .env file or process env.
    See individual field names for semantics and safe defaults.
    """
    # Required
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")

    # Models
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"  # 1536 dims
    # Explicit index dimension; 0 means "use the embedding model's default"
    EMBEDDING_DIMENSIONS: int = 0

    # Data stores
    DATABASE_URL: str = "postgresql+psycopg2://content_user:content_pass@db:5432/content_db"
    REDIS_URL: str = "redis://redis:6379/0"
    CACHE_TTL_SECONDS: int = 600
    EMBEDDING_CACHE_ENABLED: bool = False

    # Retrieval
    RAG_DEFAULT_TOP_K: int = 5
    RAG_DEFAULT_MIN_CONFIDENCE: float = 70.0

    # Generation
    GENERATION_DEFAULT_TEMPERATURE: float = 0.7
    GENERATION_DEFAULT_MAX_TOKENS: int = 8000
    GENERATION_MAX_TOKENS_CEILING: int = 16384

    # Pipeline
    PIPELINE_MAX_WORKERS: int = 4
    PIPELINE_BATCH_LIMIT: int = 2
    FANOUT_MAX_WORKERS: int = 8
    STALE_TASK_THRESHOLD_SECONDS: int = 1800
    CRON_SECRET: str = ""

    # Publishing (blog platform)
    SHOPIFY_SHOP_DOMAIN: str = ""
    SHOPIFY_ACCESS_TOKEN: str = ""
    SHOPIFY_API_VERSION: str = "2024-04"
    SHOPIFY_DEFAULT_AUTHOR: str = "Content Team"
    SHOPIFY_TIMEOUT_SECONDS: int = 30

    # Observability (optional)
    LANGFUSE_HOST: str = ""
    LANGFUSE_PUBLIC_KEY: str = ""
    LANGFUSE_SECRET_KEY: str = ""
    OTEL_CONSOLE_EXPORT: bool = False
    LOG_LEVEL: str = "INFO"

    # Derived
    @property
    def EMBEDDING_DIM(self) -> int:
        """Embedding dimension of the active vector index.

        Returns:
            int: EMBEDDING_DIMENSIONS when set, otherwise the default dimension
                of OPENAI_EMBEDDING_MODEL.
        """
        if self.EMBEDDING_DIMENSIONS > 0:
            return self.EMBEDDING_DIMENSIONS
        return default_dimension(self.OPENAI_EMBEDDING_MODEL)

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


def default_dimension(model: str) -> int:
    """Default output dimension for an embedding model name (1536 fallback)."""
    model = model.lower()
    for name, dim in MODEL_DIMENSIONS.items():
        if name in model:
            return dim
    return 1536


settings = Settings()

# Safety check for local dev (inside API container this must be set)
if os.environ.get("RUNNING_IN_DOCKER", "0") == "0":
    if not settings.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY not set. Set it in .env before running retrieval or generation.")
