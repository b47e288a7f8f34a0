"""
Feedback Module

Append-only feedback and per-turn metrics for bots, plus running token
usage totals.

Every RAG turn logs one FeedbackRecord carrying latency and token count;
users can later attach a rating or text through an explicit partial update.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from chatbot_core.database import (
    ConversationModel,
    Database,
    FeedbackModel,
    TokenUsageModel,
    UserModel,
    utcnow,
)
from chatbot_core.errors import ValidationError

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("rating", "feedback_text", "response_time_ms", "token_count", "metadata")


@dataclass
class FeedbackRecord:
    """One feedback row."""

    id: int
    bot_id: str
    user_id: str
    conversation_id: Optional[str]
    message_index: int
    rating: Optional[int] = None
    feedback_text: Optional[str] = None
    response_time_ms: Optional[int] = None
    token_count: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row: FeedbackModel) -> "FeedbackRecord":
        return cls(
            id=row.id,
            bot_id=row.bot_id,
            user_id=row.user_id,
            conversation_id=row.conversation_id,
            message_index=row.message_index,
            rating=row.rating,
            feedback_text=row.feedback_text,
            response_time_ms=row.response_time_ms,
            token_count=row.token_count,
            metadata=row.meta_data,
            created_at=row.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "message_index": self.message_index,
            "rating": self.rating,
            "feedback_text": self.feedback_text,
            "response_time_ms": self.response_time_ms,
            "token_count": self.token_count,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class FeedbackHistoryEntry:
    """A feedback record joined with display context."""

    feedback: FeedbackRecord
    user_name: Optional[str] = None
    conversation_message_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.feedback.to_dict()
        data["user_name"] = self.user_name
        data["conversation_message_count"] = self.conversation_message_count
        return data


@dataclass
class BotMetrics:
    """Aggregate feedback metrics for a bot."""

    bot_id: str
    total_feedback: int
    rated_count: int
    average_rating: Optional[float]
    average_response_time_ms: Optional[float]
    total_tokens: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bot_id": self.bot_id,
            "total_feedback": self.total_feedback,
            "rated_count": self.rated_count,
            "average_rating": self.average_rating,
            "average_response_time_ms": self.average_response_time_ms,
            "total_tokens": self.total_tokens,
        }


@dataclass
class TokenUsage:
    """Running token totals for a bot."""

    bot_id: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    calls: int = 0
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bot_id": self.bot_id,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "calls": self.calls,
        }


class FeedbackRecorder:
    """
    Records feedback and token usage for bots.

    Example:
        recorder = FeedbackRecorder(database)
        feedback_id = recorder.log_feedback("bot_1", "user_1", conv_id, 4,
                                            response_time_ms=850, token_count=312)
        recorder.update_feedback(feedback_id, rating=5)
    """

    def __init__(self, database: Database):
        self.database = database

    def log_feedback(
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
        Append a feedback record.

        Returns:
            The new record's id
        """
        with self.database.session_scope() as session:
            feedback_id = self.log_feedback_in_session(
                session,
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

        logger.debug(f"Logged feedback {feedback_id} for bot {bot_id}")
        return feedback_id

    def log_feedback_in_session(
        self,
        session: Session,
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
        """Append a feedback record within an open session; returns its id."""
        row = FeedbackModel(
            bot_id=bot_id,
            user_id=user_id,
            conversation_id=conversation_id,
            message_index=message_index,
            rating=rating,
            feedback_text=feedback_text,
            response_time_ms=response_time_ms,
            token_count=token_count,
            meta_data=metadata,
            created_at=utcnow(),
        )
        session.add(row)
        session.flush()
        return row.id

    def get_bot_metrics(self, bot_id: str) -> Optional[BotMetrics]:
        """Aggregate metrics for a bot, or None when it has no feedback."""
        stmt = select(
            func.count(FeedbackModel.id),
            func.count(FeedbackModel.rating),
            func.avg(FeedbackModel.rating),
            func.avg(FeedbackModel.response_time_ms),
            func.coalesce(func.sum(FeedbackModel.token_count), 0),
        ).where(FeedbackModel.bot_id == bot_id)

        with self.database.session_scope() as session:
            total, rated, avg_rating, avg_latency, tokens = session.execute(stmt).one()

        if not total:
            return None

        return BotMetrics(
            bot_id=bot_id,
            total_feedback=total,
            rated_count=rated,
            average_rating=float(avg_rating) if avg_rating is not None else None,
            average_response_time_ms=float(avg_latency) if avg_latency is not None else None,
            total_tokens=int(tokens),
        )

    def get_feedback_history(
        self, bot_id: str, limit: int = 10, offset: int = 0
    ) -> List[FeedbackHistoryEntry]:
        """
        Feedback for a bot, newest first, with user name and conversation size.
        """
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")

        stmt = (
            select(FeedbackModel, UserModel.name, ConversationModel.context)
            .outerjoin(UserModel, FeedbackModel.user_id == UserModel.id)
            .outerjoin(ConversationModel, FeedbackModel.conversation_id == ConversationModel.id)
            .where(FeedbackModel.bot_id == bot_id)
            .order_by(FeedbackModel.created_at.desc(), FeedbackModel.id.desc())
            .limit(limit)
            .offset(offset)
        )

        with self.database.session_scope() as session:
            rows = session.execute(stmt).all()

        history = []
        for feedback, user_name, context in rows:
            message_count = None
            if context is not None:
                message_count = len(context.get("messages", []))
            history.append(
                FeedbackHistoryEntry(
                    feedback=FeedbackRecord.from_model(feedback),
                    user_name=user_name,
                    conversation_message_count=message_count,
                )
            )
        return history

    def update_feedback(self, feedback_id: int, **fields: Any) -> Optional[FeedbackRecord]:
        """
        Partially update a feedback record.

        Only rating, feedback_text, response_time_ms, token_count and metadata
        may be changed; fields not supplied keep their values.

        Returns:
            The updated record, or None if the id does not exist

        Raises:
            ValidationError: Unknown field names
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update feedback fields: {sorted(unknown)}")

        with self.database.session_scope() as session:
            row = session.get(FeedbackModel, feedback_id)
            if row is None:
                return None
            for name, value in fields.items():
                setattr(row, "meta_data" if name == "metadata" else name, value)
            session.flush()
            record = FeedbackRecord.from_model(row)

        logger.debug(f"Updated feedback {feedback_id}: {sorted(fields)}")
        return record

    def record_token_usage(self, bot_id: str, usage: Optional[Dict[str, int]]) -> TokenUsage:
        """
        Add one generative call's usage to the bot's running totals.

        Args:
            bot_id: Bot whose totals to update
            usage: {"prompt_tokens", "completion_tokens", "total_tokens"}
        """
        with self.database.session_scope() as session:
            result = self.record_token_usage_in_session(session, bot_id, usage)

        logger.debug(f"Token usage for bot {bot_id}: total {result.total_tokens}")
        return result

    def record_token_usage_in_session(
        self, session: Session, bot_id: str, usage: Optional[Dict[str, int]]
    ) -> TokenUsage:
        """Same as record_token_usage, within an open session."""
        usage = usage or {}
        prompt = int(usage.get("prompt_tokens", 0) or 0)
        completion = int(usage.get("completion_tokens", 0) or 0)
        total = int(usage.get("total_tokens", 0) or 0) or prompt + completion

        row = session.get(TokenUsageModel, bot_id)
        if row is None:
            row = TokenUsageModel(
                bot_id=bot_id,
                prompt_tokens=0,
                completion_tokens=0,
                total_tokens=0,
                calls=0,
            )
            session.add(row)
        row.prompt_tokens += prompt
        row.completion_tokens += completion
        row.total_tokens += total
        row.calls += 1
        row.updated_at = utcnow()
        session.flush()
        return self._token_usage(row)

    def get_token_usage(self, bot_id: str) -> TokenUsage:
        with self.database.session_scope() as session:
            row = session.get(TokenUsageModel, bot_id)
            if row is None:
                return TokenUsage(bot_id=bot_id)
            return self._token_usage(row)

    @staticmethod
    def _token_usage(row: TokenUsageModel) -> TokenUsage:
        return TokenUsage(
            bot_id=row.bot_id,
            prompt_tokens=row.prompt_tokens,
            completion_tokens=row.completion_tokens,
            total_tokens=row.total_tokens,
            calls=row.calls,
            updated_at=row.updated_at,
        )
