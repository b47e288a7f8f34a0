"""
Chat Service Module

The chat-endpoint facade for the bot core. This is the main entry point that
encapsulates command handling, retrieval-augmented turns, knowledge
management and feedback.

API Contract:
    class ChatService:
        def handle_message(message, bot_id, user_id, conversation_id=None,
                           is_initializing=False) -> dict
        def submit_feedback(...) -> int
        def teach(bot_id, content, metadata=None) -> KnowledgeEntry

Design Rationale:
- The user's message is stored before any processing, so it is never lost
- A failed turn still produces a visible (error-flagged) bot reply
- A rate-limited turn writes nothing further and asks the user to retry
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select

from config.settings import Settings, get_settings
from chatbot_core.commands import CommandInterpreter, is_command
from chatbot_core.conversation_chain import ConversationOrchestrator
from chatbot_core.database import BotModel, Database, MessageModel, UserModel, get_database, utcnow
from chatbot_core.embeddings import EmbeddingService
from chatbot_core.errors import RateLimitExceeded, ValidationError
from chatbot_core.feedback import BotMetrics, FeedbackHistoryEntry, FeedbackRecorder
from chatbot_core.knowledge import KnowledgeEntry, KnowledgeStore
from chatbot_core.llm_service import LLMService
from chatbot_core.memory import ContextManager, find_latest_conversation
from chatbot_core.rate_limiter import RateLimiterRegistry
from chatbot_core.vector_store import VectorIndex

logger = logging.getLogger(__name__)

ERROR_REPLY = "Sorry, I encountered an error processing your message."
RATE_LIMIT_REPLY = "Rate limit exceeded. Please try again later."


class ChatService:
    """
    Main chat service - the public API of the bot core.

    Example:
        service = ChatService()
        service.upsert_bot("bot_1", "Helper", "You are a cheerful concierge.")

        service.handle_message("/learn We open at 9am", "bot_1", "user_1")
        result = service.handle_message("When do you open?", "bot_1", "user_1")
        print(result["answer"])
    """

    def __init__(
        self,
        database: Optional[Database] = None,
        embedding_service: Optional[EmbeddingService] = None,
        llm_service: Optional[LLMService] = None,
        rate_limiters: Optional[RateLimiterRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the chat service.

        Args:
            database: Relational store (default from config)
            embedding_service: Embedding service (default: OpenAI from config)
            llm_service: LLM service (default provider from config)
            rate_limiters: Per-bot token buckets (default from config)
            settings: Settings (default: get_settings())
        """
        self.settings = settings or get_settings()

        logger.info("Initializing ChatService...")

        self.database = database or get_database()
        self.embedding_service = embedding_service or EmbeddingService(
            config=self.settings.embedding
        )
        self.llm_service = llm_service or LLMService(config=self.settings.llm)
        self.rate_limiters = rate_limiters or RateLimiterRegistry(
            tokens_per_interval=self.settings.rate_limit.tokens_per_interval,
            interval_seconds=self.settings.rate_limit.interval_seconds,
        )

        self.vector_index = VectorIndex(self.database, self.embedding_service)
        self.knowledge_store = KnowledgeStore(self.database, self.vector_index)
        self.feedback_recorder = FeedbackRecorder(self.database)
        self.command_interpreter = CommandInterpreter(self.database, self.knowledge_store)
        self.orchestrator = ConversationOrchestrator(
            database=self.database,
            vector_index=self.vector_index,
            knowledge_store=self.knowledge_store,
            llm_service=self.llm_service,
            rate_limiters=self.rate_limiters,
            feedback_recorder=self.feedback_recorder,
            settings=self.settings,
        )

        logger.info(
            f"ChatService initialized: "
            f"embedding={self.embedding_service.model_name}, "
            f"llm={self.llm_service.provider_name}"
        )

    def _store_message(
        self,
        content: str,
        sender_id: str,
        receiver_id: str,
        sender_type: str,
        receiver_type: str,
        is_error: bool = False,
    ) -> str:
        with self.database.session_scope() as session:
            row = MessageModel(
                content=content,
                sender_id=sender_id,
                receiver_id=receiver_id,
                sender_type=sender_type,
                receiver_type=receiver_type,
                is_error=is_error,
                created_at=utcnow(),
            )
            session.add(row)
            session.flush()
            return row.id

    def _store_reply(self, content: str, bot_id: str, user_id: str, is_error: bool = False) -> str:
        return self._store_message(content, bot_id, user_id, "bot", "user", is_error=is_error)

    def _record_command(self, message: str, bot_id: str, user_id: str, conversation_id: Optional[str]) -> None:
        if conversation_id is None:
            conversation_id = find_latest_conversation(self.database, bot_id, user_id)
        context = ContextManager(
            self.database,
            self.knowledge_store,
            bot_id,
            user_id,
            max_context_messages=self.settings.context.max_context_messages,
            conversation_id=conversation_id,
            command_history_size=self.settings.context.command_history_size,
            context_top_k=self.settings.retrieval.context_top_k,
        ).initialize()
        context.add_message(message, "user")

    def handle_message(
        self,
        message: str,
        bot_id: str,
        user_id: str,
        conversation_id: Optional[str] = None,
        is_initializing: bool = False,
    ) -> Dict[str, Any]:
        """
        Handle a message addressed to a bot.

        Args:
            message: Message text (commands start with "/")
            bot_id: Bot being addressed
            user_id: Sender
            conversation_id: Conversation to continue (default: latest active)
            is_initializing: Store the message only, without replying

        Returns:
            Dictionary with:
            - success: bool
            - message_id: Stored id of the user's message
            - for commands: type, response
            - for turns: answer, source_documents, conversation_id
            - on failure: error (and retry_after when rate limited)
        """
        if not message or not message.strip():
            raise ValidationError("Message must not be empty")

        message_id = self._store_message(message, user_id, bot_id, "user", "bot")

        if is_initializing:
            return {"success": True, "message_id": message_id}

        try:
            if is_command(message):
                result = self.command_interpreter.execute(message, bot_id, user_id)
                self._record_command(message, bot_id, user_id, conversation_id)
                self._store_reply(result.response, bot_id, user_id)
                response = result.to_dict()
                response["message_id"] = message_id
                return response

            turn = self.orchestrator.process_message(
                message,
                bot_id,
                user_id,
                conversation_id=conversation_id,
                message_id=message_id,
            )
        except RateLimitExceeded as e:
            return {
                "success": False,
                "error": RATE_LIMIT_REPLY,
                "retry_after": e.retry_after,
                "message_id": message_id,
            }
        except Exception as e:
            logger.error(f"Error processing message for bot {bot_id}: {e}")
            self._store_reply(ERROR_REPLY, bot_id, user_id, is_error=True)
            return {"success": False, "error": ERROR_REPLY, "message_id": message_id}

        self._store_reply(turn.answer, bot_id, user_id)

        response = turn.to_dict()
        response["success"] = True
        response["message_id"] = message_id
        return response

    def get_latest_conversation(self, bot_id: str, user_id: str) -> Optional[str]:
        """Return the latest active conversation id for bot and user."""
        return find_latest_conversation(self.database, bot_id, user_id)

    def clear_conversation(self, bot_id: str, user_id: str, conversation_id: Optional[str] = None) -> bool:
        """
        Clear a conversation's context (default: the latest one).

        Returns:
            True if cleared, False if no conversation exists
        """
        conversation_id = conversation_id or self.get_latest_conversation(bot_id, user_id)
        if conversation_id is None:
            return False

        context = ContextManager(
            self.database, self.knowledge_store, bot_id, user_id, conversation_id=conversation_id
        ).initialize()
        if not context.is_persisted:
            return False
        context.clear_context()
        return True

    def get_context_summary(self, bot_id: str, user_id: str, conversation_id: Optional[str] = None) -> str:
        conversation_id = conversation_id or self.get_latest_conversation(bot_id, user_id)
        context = ContextManager(
            self.database, self.knowledge_store, bot_id, user_id, conversation_id=conversation_id
        ).initialize()
        return context.summarize_context()

    def submit_feedback(
        self,
        bot_id: str,
        user_id: str,
        conversation_id: Optional[str],
        message_index: int,
        rating: Optional[int] = None,
        feedback_text: Optional[str] = None,
        response_time_ms: Optional[int] = None,
        token_count: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Validate and record user feedback.

        Raises:
            ValidationError: Rating outside 1-5, negative index, latency or tokens
        """
        if not isinstance(message_index, int) or message_index < 0:
            raise ValidationError("message_index must be a non-negative integer")
        if rating is not None and (not isinstance(rating, int) or not 1 <= rating <= 5):
            raise ValidationError("rating must be an integer from 1 to 5")
        for name, value in (("response_time_ms", response_time_ms), ("token_count", token_count)):
            if value is not None and (not isinstance(value, int) or value < 0):
                raise ValidationError(f"{name} must be a non-negative integer")

        return self.feedback_recorder.log_feedback(
            bot_id=bot_id,
            user_id=user_id,
            conversation_id=conversation_id,
            message_index=message_index,
            rating=rating,
            feedback_text=feedback_text,
            response_time_ms=response_time_ms,
            token_count=token_count,
            metadata=metadata,
        )

    def get_bot_metrics(self, bot_id: str) -> Optional[BotMetrics]:
        return self.feedback_recorder.get_bot_metrics(bot_id)

    def get_feedback_history(self, bot_id: str, limit: int = 10, offset: int = 0) -> List[FeedbackHistoryEntry]:
        return self.feedback_recorder.get_feedback_history(bot_id, limit=limit, offset=offset)

    def teach(self, bot_id: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> KnowledgeEntry:
        """Add knowledge to a bot through the API."""
        return self.knowledge_store.add_knowledge(bot_id, content, metadata or {"source": "api"})

    def upsert_bot(self, bot_id: str, name: str, personality: Optional[str] = None) -> None:
        with self.database.session_scope() as session:
            bot = session.get(BotModel, bot_id)
            if bot is None:
                session.add(BotModel(id=bot_id, name=name, personality=personality))
            else:
                bot.name = name
                bot.personality = personality

    def upsert_user(self, user_id: str, name: Optional[str] = None) -> None:
        with self.database.session_scope() as session:
            user = session.get(UserModel, user_id)
            if user is None:
                session.add(UserModel(id=user_id, name=name))
            else:
                user.name = name

    def delete_bot(self, bot_id: str) -> Dict[str, int]:
        """
        Delete a bot with its knowledge, embeddings and custom commands.

        Returns:
            Counts of deleted knowledge entries and commands
        """
        knowledge = self.knowledge_store.delete_knowledge(bot_id)
        commands = self.command_interpreter.delete_custom_commands(bot_id)
        with self.database.session_scope() as session:
            bot = session.get(BotModel, bot_id)
            if bot is not None:
                session.delete(bot)

        logger.info(f"Deleted bot {bot_id}: {knowledge} knowledge entries, {commands} commands")
        return {"knowledge": knowledge, "commands": commands}

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the bot core.

        Returns:
            Dictionary with system statistics
        """
        with self.database.session_scope() as session:
            bots = session.scalar(select(func.count()).select_from(BotModel))

        return {
            "vector_index": {
                "total_records": self.vector_index.count(),
                "knowledge_records": self.vector_index.count({"kind": "knowledge"}),
                "dimension": self.vector_index.dimension,
            },
            "embedding": {
                "model": self.embedding_service.model_name,
                "dimension": self.embedding_service.dimension,
            },
            "llm": {
                "provider": self.llm_service.provider_name,
                "model": self.llm_service.model_name,
            },
            "bots": bots,
            "rate_limited_bots": len(self.rate_limiters),
        }
