"""
Conversation Chain Module

Orchestrates one retrieval-augmented turn for a bot:
1. Load direct bot/user history (last N messages)
2. Load the user's recent messages to other destinations (recall candidates)
3. Resolve and load the conversation context
4. Reserve rate-limit tokens for the generative calls
5. Index unembedded recall candidates, then search them for the query
6. Merge recall and direct history
7. Rewrite the question as a standalone question (only with history)
8. Retrieve the bot's knowledge for the standalone question
9. Generate the answer
10. Commit: context messages, token usage, feedback record

Design Rationale:
- Nothing is written before the rate-limit reservation, so a refused turn
  leaves no trace
- The commit step is one transaction: a failure there leaves no context,
  token usage or feedback behind
- Any failure other than rate limiting is reported as one ProcessingFailed
  with the cause chained; no partial answer is returned

Pipeline Flow:
    Query → History + Recall → Rate Limit → Standalone Question
    → Knowledge Search → Prompt [Personality + Knowledge + History + Commands]
    → LLM Generation → Commit → Answer with Sources
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select

from config.settings import Settings, get_settings
from chatbot_core.database import BotModel, Database, MessageModel, utcnow
from chatbot_core.errors import ProcessingFailed, RateLimitExceeded
from chatbot_core.feedback import FeedbackRecorder
from chatbot_core.knowledge import KnowledgeStore
from chatbot_core.llm_service import LLMService
from chatbot_core.memory import ContextManager, find_latest_conversation
from chatbot_core.rate_limiter import RateLimiterRegistry
from chatbot_core.vector_store import (
    EmbeddingMetadata,
    EmbeddingRecord,
    SearchResult,
    VectorIndex,
)

logger = logging.getLogger(__name__)

DEFAULT_PERSONALITY = "You are a helpful AI assistant."

SYSTEM_TEMPLATE = """{personality} Use the following pieces of context to answer the question at the end.
If you don't know the answer, just say that you don't know. Don't try to make up an answer.
Always maintain a professional and friendly tone.

Context:
{context}

Current conversation:
{chat_history}

Recent commands:
{command_history}

Question: {question}
Helpful Answer:"""

QUESTION_GENERATOR_TEMPLATE = """Given the following conversation and a follow up question, rephrase the follow up question to be a standalone question that captures all relevant context from the conversation history.
If the follow up question is not related to the conversation history, return it as is.

Chat History:
{chat_history}

Follow Up Question: {question}

Standalone question:"""


def message_source_id(message_id: str) -> str:
    return f"message:{message_id}"


def destination_type(message: MessageModel) -> str:
    """Classify where a message was sent."""
    if message.group_id:
        return "group_message"
    if message.receiver_type == "bot":
        return "bot_message"
    return "direct_message"


@dataclass
class HistoryEntry:
    """One line of merged chat history."""

    role: str
    content: str
    timestamp: Optional[Any] = None
    context_type: Optional[str] = None

    def format(self, with_timestamp: bool = False) -> str:
        label = self.role
        if self.context_type:
            label = f"{self.role} ({self.context_type})"
        line = f"{label}: {self.content}"
        if with_timestamp and self.timestamp is not None:
            line = f"[{self.timestamp.isoformat()}] {line}"
        return line


@dataclass
class TurnResult:
    """
    Result of one conversation turn.

    Attributes:
        answer: Generated answer text
        source_documents: Knowledge used to answer
        conversation_id: Conversation the turn was recorded in
        metadata: Latency, token usage, standalone question
    """

    answer: str
    source_documents: List[SearchResult]
    conversation_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (for API response)."""
        return {
            "answer": self.answer,
            "source_documents": [d.to_dict() for d in self.source_documents],
            "conversation_id": self.conversation_id,
            "metadata": self.metadata,
        }


class ConversationOrchestrator:
    """
    Runs retrieval-augmented turns for bots.

    Example:
        orchestrator = ConversationOrchestrator(
            database, vector_index, knowledge_store, llm_service,
            RateLimiterRegistry(), FeedbackRecorder(database),
        )
        result = orchestrator.process_message("When do you open?", "bot_1", "user_1")
        print(result.answer)
    """

    def __init__(
        self,
        database: Database,
        vector_index: VectorIndex,
        knowledge_store: KnowledgeStore,
        llm_service: LLMService,
        rate_limiters: RateLimiterRegistry,
        feedback_recorder: FeedbackRecorder,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.database = database
        self.vector_index = vector_index
        self.knowledge_store = knowledge_store
        self.llm_service = llm_service
        self.rate_limiters = rate_limiters
        self.feedback_recorder = feedback_recorder

        self.retrieval = settings.retrieval
        self.context_config = settings.context
        self.max_tokens = settings.llm.max_tokens
        self.rewrite_max_tokens = settings.llm.rewrite_max_tokens

    def _bot_personality(self, bot_id: str) -> str:
        with self.database.session_scope() as session:
            bot = session.get(BotModel, bot_id)
            if bot is not None and bot.personality:
                return bot.personality
        return DEFAULT_PERSONALITY

    def _load_direct_history(
        self, bot_id: str, user_id: str, exclude_message_id: Optional[str]
    ) -> List[HistoryEntry]:
        between = or_(
            and_(MessageModel.sender_id == user_id, MessageModel.receiver_id == bot_id),
            and_(MessageModel.sender_id == bot_id, MessageModel.receiver_id == user_id),
        )
        stmt = (
            select(MessageModel)
            .where(between, MessageModel.group_id.is_(None), MessageModel.is_error.is_(False))
            .order_by(MessageModel.created_at.desc())
            .limit(self.retrieval.history_limit)
        )
        if exclude_message_id:
            stmt = stmt.where(MessageModel.id != exclude_message_id)

        with self.database.session_scope() as session:
            rows = session.scalars(stmt).all()

        return [
            HistoryEntry(
                role="assistant" if row.sender_id == bot_id else "user",
                content=row.content,
                timestamp=row.created_at,
            )
            for row in reversed(rows)
        ]

    def _load_recall_candidates(self, bot_id: str, user_id: str) -> List[MessageModel]:
        """The user's recent messages anywhere except this direct conversation."""
        since = utcnow() - timedelta(days=self.retrieval.recall_window_days)
        this_conversation = and_(
            MessageModel.receiver_id == bot_id, MessageModel.group_id.is_(None)
        )
        stmt = (
            select(MessageModel)
            .where(
                MessageModel.sender_id == user_id,
                MessageModel.created_at >= since,
                ~this_conversation,
            )
            .order_by(MessageModel.created_at.desc())
            .limit(self.retrieval.recall_cap)
        )
        with self.database.session_scope() as session:
            return list(session.scalars(stmt).all())

    def _index_recall_candidates(self, user_id: str, candidates: List[MessageModel]) -> int:
        candidates = [m for m in candidates if m.content and m.content.strip()]
        if not candidates:
            return 0

        existing = self.vector_index.existing_ids(message_source_id(m.id) for m in candidates)
        missing = [m for m in candidates if message_source_id(m.id) not in existing]
        if not missing:
            return 0

        vectors = self.vector_index.embedding_service.embed_batch([m.content for m in missing])
        records = [
            EmbeddingRecord(
                vector=vector,
                metadata=EmbeddingMetadata(
                    kind="message",
                    user_id=user_id,
                    sender_id=m.sender_id,
                    receiver_id=m.receiver_id,
                    group_id=m.group_id,
                    context_type=destination_type(m),
                    is_user_message=True,
                    created_at=m.created_at,
                ),
                content=m.content,
                source_id=message_source_id(m.id),
            )
            for m, vector in zip(missing, vectors)
        ]
        self.vector_index.insert_many(records)
        logger.debug(f"Indexed {len(records)} recall messages for user {user_id}")
        return len(records)

    def _recall(self, query_vector: List[float], user_id: str) -> List[HistoryEntry]:
        results = self.vector_index.search(
            query_vector,
            k=self.retrieval.recall_top_k,
            filter={"is_user_message": True, "user_id": user_id},
        )
        return [
            HistoryEntry(
                role="user",
                content=r.content,
                timestamp=r.metadata.created_at,
                context_type=r.metadata.context_type,
            )
            for r in results
        ]

    def process_message(
        self,
        query: str,
        bot_id: str,
        user_id: str,
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> TurnResult:
        """
        Run one turn and return the answer.

        Args:
            query: User's message
            bot_id: Bot being addressed
            user_id: Sender
            conversation_id: Conversation to continue (default: latest active)
            message_id: Stored id of the inbound message, excluded from history

        Returns:
            TurnResult with answer, source documents and conversation id

        Raises:
            RateLimitExceeded: The bot's budget is exhausted (nothing written)
            ProcessingFailed: Any other failure (cause chained)
        """
        start_time = time.perf_counter()

        try:
            # Reads only until the rate-limit reservation
            direct_history = self._load_direct_history(bot_id, user_id, message_id)
            candidates = self._load_recall_candidates(bot_id, user_id)

            if conversation_id is None:
                conversation_id = find_latest_conversation(self.database, bot_id, user_id)
            context = ContextManager(
                self.database,
                self.knowledge_store,
                bot_id,
                user_id,
                max_context_messages=self.context_config.max_context_messages,
                conversation_id=conversation_id,
                command_history_size=self.context_config.command_history_size,
                context_top_k=self.retrieval.context_top_k,
            ).initialize()

            # Both generative calls are reserved up front in a single removal
            needs_rewrite = bool(
                direct_history
                or candidates
                or self.vector_index.count({"is_user_message": True, "user_id": user_id})
            )
            reserve = self.max_tokens + (self.rewrite_max_tokens if needs_rewrite else 0)
            self.rate_limiters.remove_tokens(bot_id, reserve)

            self._index_recall_candidates(user_id, candidates)
            query_vector = self.vector_index.embedding_service.embed_query(query)
            recall = self._recall(query_vector, user_id)

            # Recall first, then direct dialogue; no deduplication
            history = recall + direct_history
            logger.debug(
                f"Turn for bot {bot_id}: {len(recall)} recalled, "
                f"{len(direct_history)} direct messages"
            )

            responses = []
            standalone = query
            if history:
                rewrite = self.llm_service.generate(
                    prompt=QUESTION_GENERATOR_TEMPLATE.format(
                        chat_history="\n".join(h.format() for h in history),
                        question=query,
                    ),
                    max_tokens=self.rewrite_max_tokens,
                )
                responses.append(rewrite)
                standalone = rewrite.content.strip() or query
                logger.debug(f"Standalone question: {standalone}")

            snapshot = context.get_relevant_context(standalone, k=self.retrieval.knowledge_top_k)
            documents = snapshot.relevant_documents

            prompt = SYSTEM_TEMPLATE.format(
                personality=self._bot_personality(bot_id),
                context="\n".join(d.content for d in documents),
                chat_history="\n".join(h.format(with_timestamp=True) for h in history),
                command_history="\n".join(snapshot.command_history),
                question=standalone,
            )
            answer = self.llm_service.generate(prompt=prompt, max_tokens=self.max_tokens)
            responses.append(answer)

            token_count = sum(r.total_tokens for r in responses)
            response_time_ms = int((time.perf_counter() - start_time) * 1000)

            # Commit: every write of the turn in one transaction
            context.add_message(
                query,
                "user",
                relevant_documents=documents[: self.retrieval.context_top_k],
                save=False,
            )
            context.add_message(
                answer.content,
                "assistant",
                metadata={
                    "source_documents": [d.source_id for d in documents],
                    "token_usage": answer.usage,
                },
                save=False,
            )
            with self.database.session_scope() as session:
                for response in responses:
                    self.feedback_recorder.record_token_usage_in_session(
                        session, bot_id, response.usage
                    )
                context.save_in_session(session)
                self.feedback_recorder.log_feedback_in_session(
                    session,
                    bot_id=bot_id,
                    user_id=user_id,
                    conversation_id=context.conversation_id,
                    message_index=len(context) - 1,
                    response_time_ms=response_time_ms,
                    token_count=token_count,
                )

        except RateLimitExceeded:
            raise
        except Exception as e:
            logger.error(f"Turn failed for bot {bot_id}, user {user_id}: {e}")
            raise ProcessingFailed() from e

        logger.info(
            f"Turn completed for bot {bot_id} in {response_time_ms}ms "
            f"({token_count} tokens, {len(documents)} documents)"
        )

        return TurnResult(
            answer=answer.content,
            source_documents=documents,
            conversation_id=context.conversation_id,
            metadata={
                "standalone_question": standalone,
                "response_time_ms": response_time_ms,
                "token_count": token_count,
                "model": answer.model,
            },
        )
