"""
Bot Chat Core - Core Source Module

This module contains the conversational core for AI bots:
- Database: Relational store (SQLAlchemy) for messages, context and metrics
- EmbeddingService: Embedding generation (OpenAI)
- VectorIndex: Similarity search over stored embeddings
- KnowledgeStore: Bot-scoped facts taught via /learn or the API
- CommandInterpreter: Slash commands (built-in and custom)
- ContextManager: Persisted per-conversation context
- RateLimiterRegistry: Per-bot token buckets
- FeedbackRecorder: Feedback, turn metrics and token usage
- LLMService: LLM provider abstraction (OpenAI/Ollama/Gemini/Mistral)
- ConversationOrchestrator: Retrieval-augmented turns
- ChatService: API interface for the chat endpoint
- EmbeddingBackfill: Batch job embedding historical messages
"""

from .database import Database, get_database
from .errors import (
    ChatbotError,
    PersistenceError,
    ProcessingFailed,
    ProviderError,
    RateLimitExceeded,
    ValidationError,
)
from .embeddings import EmbeddingService
from .vector_store import VectorIndex, SearchResult, EmbeddingMetadata
from .knowledge import KnowledgeStore, KnowledgeEntry
from .commands import CommandInterpreter, CommandResult
from .memory import ContextManager, Message
from .rate_limiter import RateLimiterRegistry, TokenBucket
from .feedback import FeedbackRecorder
from .llm_service import LLMService, LLMResponse
from .conversation_chain import ConversationOrchestrator, TurnResult
from .chat_service import ChatService
from .backfill import EmbeddingBackfill, BackfillStats

__all__ = [
    # Storage
    "Database",
    "get_database",
    "VectorIndex",
    "SearchResult",
    "EmbeddingMetadata",
    "KnowledgeStore",
    "KnowledgeEntry",
    # Providers
    "EmbeddingService",
    "LLMService",
    "LLMResponse",
    # Conversation
    "CommandInterpreter",
    "CommandResult",
    "ContextManager",
    "Message",
    "RateLimiterRegistry",
    "TokenBucket",
    "FeedbackRecorder",
    "ConversationOrchestrator",
    "TurnResult",
    "ChatService",
    # Jobs
    "EmbeddingBackfill",
    "BackfillStats",
    # Errors
    "ChatbotError",
    "ValidationError",
    "ProviderError",
    "RateLimitExceeded",
    "PersistenceError",
    "ProcessingFailed",
]
