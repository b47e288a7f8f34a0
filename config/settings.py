"""
Configuration settings for the bot chat core.

This module handles all configuration management using environment variables.
Every value has a default so tests and local runs work without a .env file.
"""

import os
from dataclasses import dataclass, field
from typing import Literal, Optional
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding model (OpenAI only)."""

    openai_model: str = "text-embedding-3-small"
    openai_api_key: Optional[str] = None
    dimensions: Optional[int] = None

    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    @property
    def dimension(self) -> int:
        """Return the configured dimension, or the model's native one."""
        if self.dimensions:
            return self.dimensions
        return self.MODEL_DIMENSIONS.get(self.openai_model, 1536)


@dataclass
class LLMConfig:
    """Configuration for LLM providers."""

    provider: Literal["ollama", "openai", "gemini", "mistral"] = "openai"

    # Ollama settings
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3"

    # OpenAI settings
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4-turbo-preview"

    # Gemini settings
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"

    # Mistral settings
    mistral_api_key: Optional[str] = None
    mistral_model: str = "mistral-small-latest"

    # Generation settings
    temperature: float = 0.7
    max_tokens: int = 1000  # Answer call budget, also reserved from the rate limiter
    rewrite_max_tokens: int = 200  # Standalone-question rewrite budget


@dataclass
class DatabaseConfig:
    """Configuration for the relational store."""

    url: str = "sqlite:///./data/chatbot.db"
    echo: bool = False


@dataclass
class RetrievalConfig:
    """Configuration for retrieval settings."""

    history_limit: int = 10  # Direct bot/user messages loaded per turn
    recall_window_days: int = 7  # Trailing window for cross-conversation recall
    recall_cap: int = 100  # Max recent user messages considered for recall
    recall_top_k: int = 5  # Recall results merged into history
    knowledge_top_k: int = 5  # Knowledge documents passed to the answer call
    context_top_k: int = 3  # Knowledge documents tracked in conversation state


@dataclass
class ContextConfig:
    """Configuration for per-conversation context state."""

    max_context_messages: int = 10
    command_history_size: int = 5


@dataclass
class RateLimitConfig:
    """Configuration for the per-bot token bucket."""

    tokens_per_interval: int = 10000
    interval_seconds: float = 60.0


@dataclass
class BackfillConfig:
    """Configuration for the embedding backfill job."""

    batch_size: int = 100
    concurrency: int = 5
    delay_seconds: float = 1.0


@dataclass
class Settings:
    """
    Main settings class that aggregates all configurations.

    Usage:
        settings = get_settings()
        print(settings.llm.provider)
        print(settings.context.max_context_messages)
    """

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    backfill: BackfillConfig = field(default_factory=BackfillConfig)

    # Paths
    project_root: Path = field(default_factory=lambda: Path(__file__).parent.parent)
    data_dir: Path = field(default_factory=lambda: Path(__file__).parent.parent / "data")

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Create Settings instance from environment variables.

        This is the primary way to instantiate Settings.
        """
        dimensions = os.getenv("EMBEDDING_DIMENSIONS")
        embedding = EmbeddingConfig(
            openai_model=os.getenv("EMBEDDING_MODEL_NAME", "text-embedding-3-small"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            dimensions=int(dimensions) if dimensions else None,
        )

        llm = LLMConfig(
            provider=os.getenv("LLM_PROVIDER", "openai"),  # type: ignore
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
            ollama_model=os.getenv("OLLAMA_MODEL", "llama3"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_LLM_MODEL", "gpt-4-turbo-preview"),
            gemini_api_key=os.getenv("GEMINI_API_KEY"),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
            mistral_api_key=os.getenv("MISTRAL_API_KEY"),
            mistral_model=os.getenv("MISTRAL_MODEL", "mistral-small-latest"),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.7")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "1000")),
            rewrite_max_tokens=int(os.getenv("LLM_REWRITE_MAX_TOKENS", "200")),
        )

        database = DatabaseConfig(
            url=os.getenv("DATABASE_URL", "sqlite:///./data/chatbot.db"),
            echo=os.getenv("DATABASE_ECHO", "false").lower() == "true",
        )

        retrieval = RetrievalConfig(
            history_limit=int(os.getenv("HISTORY_LIMIT", "10")),
            recall_window_days=int(os.getenv("RECALL_WINDOW_DAYS", "7")),
            recall_cap=int(os.getenv("RECALL_CAP", "100")),
            recall_top_k=int(os.getenv("RECALL_TOP_K", "5")),
            knowledge_top_k=int(os.getenv("KNOWLEDGE_TOP_K", "5")),
            context_top_k=int(os.getenv("CONTEXT_TOP_K", "3")),
        )

        context = ContextConfig(
            max_context_messages=int(os.getenv("MAX_CONTEXT_MESSAGES", "10")),
            command_history_size=int(os.getenv("COMMAND_HISTORY_SIZE", "5")),
        )

        rate_limit = RateLimitConfig(
            tokens_per_interval=int(os.getenv("RATE_LIMIT_TOKENS", "10000")),
            interval_seconds=float(os.getenv("RATE_LIMIT_INTERVAL_SECONDS", "60")),
        )

        backfill = BackfillConfig(
            batch_size=int(os.getenv("BACKFILL_BATCH_SIZE", "100")),
            concurrency=int(os.getenv("BACKFILL_CONCURRENCY", "5")),
            delay_seconds=float(os.getenv("BACKFILL_DELAY_SECONDS", "1.0")),
        )

        return cls(
            embedding=embedding,
            llm=llm,
            database=database,
            retrieval=retrieval,
            context=context,
            rate_limit=rate_limit,
            backfill=backfill,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


# Singleton pattern for settings
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the singleton Settings instance.

    Returns:
        Settings: The application settings loaded from environment.
    """
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reload_settings() -> Settings:
    """
    Reload settings from environment (useful for testing).

    Returns:
        Settings: Fresh settings instance.
    """
    global _settings
    load_dotenv(override=True)
    _settings = Settings.from_env()
    return _settings
