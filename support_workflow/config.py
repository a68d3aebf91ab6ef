"""Configuration management for the support workflow engine."""
from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # LLM Provider Configuration (any OpenAI-compatible endpoint)
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None

    # Model Configuration
    chat_model: str = "gpt-4o-mini"
    summary_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-large"
    embedding_dimensions: Optional[int] = 3072
    embedding_max_chars: int = 8000

    # Temperature Configuration
    classification_temperature: float = 0.0  # Deterministic for decision nodes
    chat_temperature: float = 0.3

    # Timeouts (seconds)
    llm_timeout_seconds: float = 60.0
    llm_max_retries: int = 2
    search_timeout_seconds: float = 20.0

    # Application Configuration
    log_level: str = "INFO"
    environment: str = "development"

    # Retrieval Configuration
    rag_base_k: int = 6
    rag_top_n: int = 6
    rag_max_per_source: int = 2
    rag_max_results: int = 7
    rag_summary_bonus: float = 0.02

    # Vector Database Configuration
    vector_backend: str = "internal"  # "internal" (embedded Chroma) or "external" (HTTP)
    vector_db_path: str = "./data/vector_db"
    vector_collection: str = "knowledge_base"
    external_vector_base_url: Optional[str] = None
    chunk_max_chars: int = 1200

    # Runtime Configuration
    runtime_max_retries: int = 3
    runtime_retry_delay_seconds: float = 0.3
    workflow_recursion_limit: int = 25
    fallback_scope: str = "default_all"
    workflow_config_path: str = "./data/workflows.json"
    ticket_data_path: str = "./data/tickets.json"

    # Handoff Notification
    feishu_webhook_url: Optional[str] = None
    app_url: str = "http://localhost:8000"

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    class Config:
        env_file = ".env"
        case_sensitive = False

    def get_api_key(self) -> str:
        """Get the API key for the configured LLM endpoint."""
        if not self.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required to call the language model")
        return self.openai_api_key

    def get_base_url(self) -> Optional[str]:
        """Get the base URL for the configured LLM endpoint (None uses OpenAI's default)."""
        return self.openai_base_url or None


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
