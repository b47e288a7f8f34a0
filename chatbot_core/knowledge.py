"""
Knowledge Store Module

Bot-scoped facts taught through `/learn` or the API. Each entry is a row in
`bot_knowledge` plus one embedding record (`source_id = "knowledge:<id>"`)
written in the same transaction.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete as sql_delete, select

from chatbot_core.database import Database, KnowledgeModel, new_id, utcnow
from chatbot_core.errors import ValidationError
from chatbot_core.vector_store import EmbeddingMetadata, SearchResult, VectorIndex

logger = logging.getLogger(__name__)

KNOWLEDGE_KIND = "knowledge"


def knowledge_source_id(knowledge_id: str) -> str:
    return f"knowledge:{knowledge_id}"


@dataclass
class KnowledgeEntry:
    """A fact taught to a bot."""

    id: str
    bot_id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "content": self.content,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_model(cls, row: KnowledgeModel) -> "KnowledgeEntry":
        return cls(
            id=row.id,
            bot_id=row.bot_id,
            content=row.content,
            metadata=dict(row.meta_data or {}),
            created_at=row.created_at,
        )


class KnowledgeStore:
    """
    Knowledge taught to bots, searchable by similarity.

    Example:
        store = KnowledgeStore(database, vector_index)
        store.add_knowledge("bot_1", "Paris is the capital of France")
        results = store.search_knowledge("capital of France", "bot_1", k=3)
    """

    def __init__(self, database: Database, vector_index: VectorIndex):
        self.database = database
        self.vector_index = vector_index

    def add_knowledge(
        self,
        bot_id: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> KnowledgeEntry:
        """
        Embed and store a knowledge entry.

        Args:
            bot_id: Owning bot
            content: Fact text
            metadata: Optional metadata (e.g. {"source": "user_command"})

        Returns:
            The stored KnowledgeEntry

        Raises:
            ValidationError: Empty content
            ProviderError: Embedding failed (nothing is written)
        """
        if not content or not content.strip():
            raise ValidationError("Knowledge content must not be empty")

        metadata = dict(metadata or {})
        vector = self.vector_index.embedding_service.embed_text(content)
        self.vector_index.validate_vector(vector)

        knowledge_id = new_id()
        created_at = utcnow()
        embedding_metadata = EmbeddingMetadata(
            kind=KNOWLEDGE_KIND,
            bot_id=bot_id,
            context_type=KNOWLEDGE_KIND,
            source=metadata.get("source"),
            created_at=created_at,
            extra={k: v for k, v in metadata.items() if k != "source"},
        )

        with self.database.session_scope() as session:
            row = KnowledgeModel(
                id=knowledge_id,
                bot_id=bot_id,
                content=content,
                meta_data=metadata,
                created_at=created_at,
            )
            session.add(row)
            session.flush()
            self.vector_index.insert_in_session(
                session,
                vector,
                embedding_metadata,
                content=content,
                source_id=knowledge_source_id(knowledge_id),
            )
            entry = KnowledgeEntry.from_model(row)

        logger.info(f"Added knowledge {knowledge_id} for bot {bot_id}")
        return entry

    def search_knowledge(self, query: str, bot_id: str, k: int = 5) -> List[SearchResult]:
        """Similarity search over one bot's knowledge."""
        return self.vector_index.search_by_text(
            query, k=k, filter={"kind": KNOWLEDGE_KIND, "bot_id": bot_id}
        )

    def list_knowledge(self, bot_id: str) -> List[KnowledgeEntry]:
        """Return the bot's knowledge, newest first."""
        with self.database.session_scope() as session:
            rows = session.scalars(
                select(KnowledgeModel)
                .where(KnowledgeModel.bot_id == bot_id)
                .order_by(KnowledgeModel.created_at.desc())
            ).all()
            return [KnowledgeEntry.from_model(r) for r in rows]

    def delete_knowledge(self, bot_id: str) -> int:
        """
        Delete all of a bot's knowledge and its embeddings.

        Returns:
            Number of knowledge entries deleted
        """
        with self.database.session_scope() as session:
            self.vector_index.delete_in_session(
                session, filter={"kind": KNOWLEDGE_KIND, "bot_id": bot_id}
            )
            deleted = session.execute(
                sql_delete(KnowledgeModel).where(KnowledgeModel.bot_id == bot_id)
            ).rowcount

        logger.info(f"Deleted {deleted} knowledge entries for bot {bot_id}")
        return deleted
