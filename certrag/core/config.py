"""
FAA Certification RAG - Configuration Management
Centralized configuration using Pydantic Settings
"""

from pathlib import Path
from typing import List
from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache


DEVELOPMENT_STORAGE = "UseDevelopmentStorage=true"


class ConfigurationError(RuntimeError):
    """A capability was used without the credentials or endpoint it needs."""


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ==========================================================================
    # LLM Configuration
    # ==========================================================================
    llm_api_key: str = Field(default="", env="LLM_API_KEY")
    llm_endpoint: str = Field(
        default="https://models.github.ai/inference",
        env="LLM_ENDPOINT"
    )
    llm_model: str = Field(default="openai/gpt-4o", env="LLM_MODEL")
    llm_max_tokens: int = Field(default=2048, env="LLM_MAX_TOKENS")

    # ==========================================================================
    # Hybrid Search Index (Azure AI Search)
    # ==========================================================================
    azure_search_endpoint: str = Field(default="", env="AZURE_SEARCH_ENDPOINT")
    azure_search_key: str = Field(default="", env="AZURE_SEARCH_KEY")
    azure_search_index: str = Field(default="faa-documents", env="AZURE_SEARCH_INDEX")
    azure_search_api_version: str = Field(default="2024-07-01", env="AZURE_SEARCH_API_VERSION")

    # ==========================================================================
    # Embedding Configuration
    # ==========================================================================
    azure_ai_services_endpoint: str = Field(default="", env="AZURE_AI_SERVICES_ENDPOINT")
    azure_ai_services_key: str = Field(default="", env="AZURE_AI_SERVICES_KEY")
    embedding_model: str = Field(default="cohere-embed", env="EMBEDDING_MODEL")
    embedding_dimension: int = Field(default=1024, env="EMBEDDING_DIMENSION")

    # ==========================================================================
    # FAA Dynamic Regulatory System (DRS)
    # ==========================================================================
    drs_api_endpoint: str = Field(default="https://drs.faa.gov/api/drs", env="DRS_API_ENDPOINT")
    drs_api_key: str = Field(default="", env="DRS_API_KEY")
    drs_timeout_seconds: float = Field(default=15.0, env="DRS_TIMEOUT_SECONDS")
    drs_max_attempts: int = Field(default=2, env="DRS_MAX_ATTEMPTS")

    # ==========================================================================
    # Electronic Code of Federal Regulations (eCFR)
    # ==========================================================================
    ecfr_base_url: str = Field(default="https://www.ecfr.gov/api", env="ECFR_BASE_URL")

    # ==========================================================================
    # Blob / Queue Storage
    # ==========================================================================
    blob_storage_connection_string: str = Field(default="", env="BLOB_STORAGE_CONNECTION_STRING")
    azurewebjobsstorage: str = Field(default="", env="AzureWebJobsStorage")
    cache_container: str = Field(default="document-cache", env="CACHE_CONTAINER")
    conversation_container: str = Field(default="conversations", env="CONVERSATION_CONTAINER")

    # ==========================================================================
    # Document Cache TTLs (hours)
    # ==========================================================================
    cache_ttl_default_hours: float = Field(default=24, env="CACHE_TTL_DEFAULT_HOURS")
    cache_ttl_drs_hours: float = Field(default=24, env="CACHE_TTL_DRS_HOURS")
    cache_ttl_classifier_hours: float = Field(default=1, env="CACHE_TTL_CLASSIFIER_HOURS")

    # ==========================================================================
    # Conversation Store
    # ==========================================================================
    conversation_ttl_days: float = Field(default=7, env="CONVERSATION_TTL_DAYS")
    conversation_max_turns: int = Field(default=20, env="CONVERSATION_MAX_TURNS")
    conversation_context_turns: int = Field(default=10, env="CONVERSATION_CONTEXT_TURNS")
    conversation_max_assistant_chars: int = Field(default=10000, env="CONVERSATION_MAX_ASSISTANT_CHARS")

    # ==========================================================================
    # Chunking Configuration
    # ==========================================================================
    chunk_model: str = Field(default="", env="CHUNK_MODEL")
    chunk_target_size: int = Field(default=2000, env="CHUNK_TARGET_SIZE")
    chunk_min_size: int = Field(default=500, env="CHUNK_MIN_SIZE")
    chunk_max_per_doc: int = Field(default=50, env="CHUNK_MAX_PER_DOC")
    chunk_analysis_limit: int = Field(default=100000, env="CHUNK_ANALYSIS_LIMIT")

    # ==========================================================================
    # Background Index Queue
    # ==========================================================================
    index_queue_name: str = Field(default="index-queue", env="INDEX_QUEUE_NAME")
    queue_visibility_timeout: int = Field(default=300, env="QUEUE_VISIBILITY_TIMEOUT")
    queue_max_dequeue_count: int = Field(default=3, env="QUEUE_MAX_DEQUEUE_COUNT")
    queue_poll_interval_seconds: float = Field(default=5.0, env="QUEUE_POLL_INTERVAL_SECONDS")
    index_max_chars: int = Field(default=50000, env="INDEX_MAX_CHARS")

    # ==========================================================================
    # Orchestrator Routing
    # ==========================================================================
    drs_max_cfr_queries: int = Field(default=4, env="DRS_MAX_CFR_QUERIES")
    drs_max_doc_types: int = Field(default=2, env="DRS_MAX_DOC_TYPES")
    drs_max_results_per_search: int = Field(default=2, env="DRS_MAX_RESULTS_PER_SEARCH")
    drs_max_total_documents: int = Field(default=6, env="DRS_MAX_TOTAL_DOCUMENTS")
    drs_max_fresh_downloads: int = Field(default=4, env="DRS_MAX_FRESH_DOWNLOADS")
    drs_max_document_chars: int = Field(default=30000, env="DRS_MAX_DOCUMENT_CHARS")
    vector_search_enabled: bool = Field(default=True, env="VECTOR_SEARCH_ENABLED")
    vector_search_min_score: float = Field(default=0.01, env="VECTOR_SEARCH_MIN_SCORE")
    vector_search_max_results: int = Field(default=8, env="VECTOR_SEARCH_MAX_RESULTS")
    progressive_index_enabled: bool = Field(default=True, env="PROGRESSIVE_INDEX_ENABLED")
    progressive_max_indexed: int = Field(default=100, env="PROGRESSIVE_MAX_INDEXED")
    progressive_batch_size: int = Field(default=4, env="PROGRESSIVE_BATCH_SIZE")
    clarity_min_confidence: float = Field(default=0.6, env="CLARITY_MIN_CONFIDENCE")

    # ==========================================================================
    # API Configuration
    # ==========================================================================
    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=8000, env="API_PORT")
    debug_mode: bool = Field(default=False, env="DEBUG_MODE")
    cors_origins: List[str] = Field(default=["*"], env="CORS_ORIGINS")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def base_dir(self) -> Path:
        """Get the base directory of the project."""
        return Path(__file__).parent.parent.parent

    @property
    def storage_connection_string(self) -> str:
        """Blob/queue connection string, or empty when only the emulator placeholder is set."""
        value = self.blob_storage_connection_string or self.azurewebjobsstorage
        if value == DEVELOPMENT_STORAGE:
            return ""
        return value

    @property
    def has_storage(self) -> bool:
        return bool(self.storage_connection_string)

    @property
    def effective_chunk_model(self) -> str:
        return self.chunk_model or self.llm_model


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience function for accessing settings
settings = get_settings()
