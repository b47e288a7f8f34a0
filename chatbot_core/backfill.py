"""
Embedding Backfill Module

Embeds chat messages that have no vector yet, oldest first.

Each message is embedded with a short contextual header (time, sender,
receiver) and stored under `source_id = "message:<id>"`, so the job can be
stopped and resumed at any time: messages already embedded are skipped by
the query and by the idempotent insert.

Usage:
    backfill = EmbeddingBackfill(database, vector_index)
    stats = backfill.run()
    print(stats.to_dict())
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy import and_, func, literal, or_, select

from config.settings import get_settings
from chatbot_core.conversation_chain import destination_type, message_source_id
from chatbot_core.database import Database, EmbeddingModel, MessageModel, UserModel
from chatbot_core.vector_store import EmbeddingMetadata, EmbeddingRecord, VectorIndex

logger = logging.getLogger(__name__)

CONTEXT_WINDOW = 2  # Surrounding messages on each side kept in metadata
CONTEXT_WINDOW_HOURS = 1


@dataclass
class BackfillStats:
    """Statistics for one backfill run."""

    total_messages: int = 0
    processed: int = 0
    embedded: int = 0
    failed: int = 0
    batches: int = 0
    elapsed_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_messages": self.total_messages,
            "processed": self.processed,
            "embedded": self.embedded,
            "failed": self.failed,
            "batches": self.batches,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }


class EmbeddingBackfill:
    """
    Batch job that embeds messages lacking a vector.

    Messages are fetched in batches, embedded in chunks of `concurrency`
    parallel requests, and the job sleeps `delay_seconds` after each chunk.
    A message whose embedding fails is logged and skipped for the rest of
    the run.
    """

    def __init__(
        self,
        database: Database,
        vector_index: VectorIndex,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        delay_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        config = get_settings().backfill
        self.database = database
        self.vector_index = vector_index
        self.batch_size = batch_size or config.batch_size
        self.concurrency = concurrency or config.concurrency
        self.delay_seconds = config.delay_seconds if delay_seconds is None else delay_seconds
        self._sleep = sleep

    def _pending_messages(self, exclude: Set[str]) -> List[MessageModel]:
        source_id = literal("message:").concat(MessageModel.id)
        stmt = (
            select(MessageModel)
            .outerjoin(EmbeddingModel, EmbeddingModel.source_id == source_id)
            .where(EmbeddingModel.id.is_(None))
            .order_by(MessageModel.created_at.asc())
            .limit(self.batch_size)
        )
        if exclude:
            stmt = stmt.where(MessageModel.id.not_in(list(exclude)))

        with self.database.session_scope() as session:
            return list(session.scalars(stmt).all())

    def _display_name(self, session, user_id: Optional[str]) -> Optional[str]:
        if not user_id:
            return None
        name = session.scalar(select(UserModel.name).where(UserModel.id == user_id))
        return name or user_id

    def _surrounding_ids(self, session, message: MessageModel) -> List[Dict[str, str]]:
        if message.group_id:
            same_thread = MessageModel.group_id == message.group_id
        elif message.receiver_id:
            same_thread = or_(
                and_(
                    MessageModel.sender_id == message.sender_id,
                    MessageModel.receiver_id == message.receiver_id,
                ),
                and_(
                    MessageModel.sender_id == message.receiver_id,
                    MessageModel.receiver_id == message.sender_id,
                ),
            )
        else:
            return []

        window = timedelta(hours=CONTEXT_WINDOW_HOURS)
        rows = session.execute(
            select(MessageModel.id, MessageModel.created_at)
            .where(
                same_thread,
                MessageModel.id != message.id,
                MessageModel.created_at.between(
                    message.created_at - window, message.created_at + window
                ),
            )
            .order_by(MessageModel.created_at)
            .limit(CONTEXT_WINDOW * 2 + 1)
        ).all()
        return [{"id": row.id, "created_at": row.created_at.isoformat()} for row in rows]

    def contextual_text(self, message: MessageModel) -> str:
        """Message text with a header naming time, sender and receiver."""
        with self.database.session_scope() as session:
            sender = self._display_name(session, message.sender_id) or "Unknown"
            receiver = self._display_name(session, message.receiver_id)

        parts = [f"Time: {message.created_at.isoformat()}", f"Sender: {sender}"]
        if receiver:
            parts.append(f"Receiver: {receiver}")
        if message.group_id:
            parts.append(f"Group: {message.group_id}")
        parts.append("\nMessage:")
        parts.append(message.content)
        return "\n".join(parts)

    def _metadata(self, message: MessageModel) -> EmbeddingMetadata:
        is_user = message.sender_type == "user"
        bot_id = None
        if message.sender_type == "bot":
            bot_id = message.sender_id
        elif message.receiver_type == "bot":
            bot_id = message.receiver_id

        with self.database.session_scope() as session:
            context_messages = self._surrounding_ids(session, message)

        return EmbeddingMetadata(
            kind="message",
            bot_id=bot_id,
            user_id=message.sender_id if is_user else None,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            group_id=message.group_id,
            context_type=destination_type(message),
            is_user_message=is_user,
            source="backfill",
            created_at=message.created_at,
            extra={
                "context_messages": context_messages,
                "context_window_hours": CONTEXT_WINDOW_HOURS,
            },
        )

    def _embed(self, text: str) -> Optional[List[float]]:
        try:
            return self.vector_index.embedding_service.embed_text(text)
        except Exception as e:
            logger.error(f"Embedding failed: {e}")
            return None

    def _process_chunk(self, messages: List[MessageModel], executor: ThreadPoolExecutor) -> Set[str]:
        """Embed and store one chunk; returns ids of messages that failed."""
        texts = [self.contextual_text(m) for m in messages]
        vectors = list(executor.map(self._embed, texts))

        failed = set()
        records = []
        for message, vector in zip(messages, vectors):
            if vector is None:
                logger.warning(f"Skipping message {message.id}: embedding failed")
                failed.add(message.id)
                continue
            records.append(
                EmbeddingRecord(
                    vector=vector,
                    metadata=self._metadata(message),
                    content=message.content,
                    source_id=message_source_id(message.id),
                )
            )

        if records:
            self.vector_index.insert_many(records)
        return failed

    def count_pending(self) -> int:
        source_id = literal("message:").concat(MessageModel.id)
        stmt = (
            select(func.count(MessageModel.id))
            .outerjoin(EmbeddingModel, EmbeddingModel.source_id == source_id)
            .where(EmbeddingModel.id.is_(None))
        )
        with self.database.session_scope() as session:
            return session.scalar(stmt)

    def run(self, max_batches: Optional[int] = None) -> BackfillStats:
        """
        Embed every pending message.

        Args:
            max_batches: Stop after this many batches (default: until done)

        Returns:
            BackfillStats for this run
        """
        start = time.perf_counter()
        stats = BackfillStats(total_messages=self.count_pending())
        failed: Set[str] = set()

        logger.info(f"Starting backfill for {stats.total_messages} messages")

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            while max_batches is None or stats.batches < max_batches:
                batch = self._pending_messages(failed)
                if not batch:
                    break

                batch_failed = 0
                for i in range(0, len(batch), self.concurrency):
                    chunk_failed = self._process_chunk(batch[i:i + self.concurrency], executor)
                    failed |= chunk_failed
                    batch_failed += len(chunk_failed)
                    self._sleep(self.delay_seconds)

                stats.batches += 1
                stats.processed += len(batch)
                stats.failed += batch_failed
                stats.embedded += len(batch) - batch_failed

                logger.info(
                    f"Processed {stats.processed}/{stats.total_messages} messages. "
                    f"{len(batch) - batch_failed} embeddings generated in this batch."
                )

        stats.elapsed_seconds = time.perf_counter() - start
        logger.info(f"Backfill complete: {stats.to_dict()}")
        return stats
