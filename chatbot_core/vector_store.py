"""
Vector Store Module

Vector similarity search implemented directly on the relational store.

Each embedded unit (a knowledge entry or a chat message) is one row in
`message_embeddings`: a unique source id, the content, the vector as a JSON
array and typed metadata. Well-known metadata fields are real columns and
filter in SQL; the open `extra` map filters in Python after the SQL prefilter.
Cosine similarity over the candidate rows is computed with numpy.

Design Rationale:
- No separate vector database: the store the platform already runs is enough
  for per-bot and per-user candidate sets
- Dimension is fixed when the index is first opened and recorded in
  `vector_index_info`; opening it with another dimension is rejected
- Vectors are write-once; inserting an existing source id is a no-op
- Ties in similarity are broken by insertion order

Schema (stored per record):
- source_id: Unique id of the embedded unit (e.g. "knowledge:<id>", "message:<id>")
- content: Text that was embedded
- embedding: Vector representation
- kind, bot_id, user_id, sender_id, receiver_id, group_id, context_type,
  is_user_message, source, created_at: Filterable metadata
- extra: Open metadata (always includes model_name and embedding_version)
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import numpy as np
from sqlalchemy import delete as sql_delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from config.settings import get_settings
from chatbot_core.database import (
    Database,
    EmbeddingModel,
    VectorIndexInfoModel,
    get_database,
    utcnow,
)
from chatbot_core.embeddings import EmbeddingService, cosine_similarities
from chatbot_core.errors import ValidationError

logger = logging.getLogger(__name__)

INDEX_NAME = "message_embeddings"
EMBEDDING_VERSION = "1"

WELL_KNOWN_FIELDS = (
    "kind",
    "bot_id",
    "user_id",
    "sender_id",
    "receiver_id",
    "group_id",
    "context_type",
    "is_user_message",
    "source",
    "created_at",
)

MetadataFilter = Dict[str, Any]


@dataclass
class EmbeddingMetadata:
    """
    Typed metadata attached to an embedding record.

    Attributes:
        kind: "knowledge" or "message"
        bot_id: Owning bot (knowledge) or bot involved in the message
        user_id: Author of a user message
        sender_id / receiver_id / group_id: Message routing
        context_type: direct_message, group_message, bot_message or knowledge
        is_user_message: True for messages authored by a user
        source: Provenance, e.g. "user_command"
        created_at: Creation time of the embedded unit
        extra: Any further key/value pairs
    """

    kind: Optional[str] = None
    bot_id: Optional[str] = None
    user_id: Optional[str] = None
    sender_id: Optional[str] = None
    receiver_id: Optional[str] = None
    group_id: Optional[str] = None
    context_type: Optional[str] = None
    is_user_message: bool = False
    source: Optional[str] = None
    created_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten well-known fields and extra into one dictionary."""
        data = dict(self.extra)
        for name in WELL_KNOWN_FIELDS:
            value = getattr(self, name)
            if name == "created_at" and value is not None:
                value = value.isoformat()
            data[name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmbeddingMetadata":
        """Create from a flat dictionary; unknown keys go to extra."""
        known = {}
        extra = {}
        for key, value in data.items():
            if key in WELL_KNOWN_FIELDS:
                known[key] = value
            elif key == "extra" and isinstance(value, dict):
                extra.update(value)
            else:
                extra[key] = value

        created_at = known.get("created_at")
        if isinstance(created_at, str):
            known["created_at"] = datetime.fromisoformat(created_at)
        if "is_user_message" in known:
            known["is_user_message"] = bool(known["is_user_message"])

        return cls(extra=extra, **known)

    @classmethod
    def from_model(cls, row: EmbeddingModel) -> "EmbeddingMetadata":
        return cls(
            kind=row.kind,
            bot_id=row.bot_id,
            user_id=row.user_id,
            sender_id=row.sender_id,
            receiver_id=row.receiver_id,
            group_id=row.group_id,
            context_type=row.context_type,
            is_user_message=bool(row.is_user_message),
            source=row.source,
            created_at=row.created_at,
            extra=dict(row.extra or {}),
        )


@dataclass
class SearchResult:
    """
    A single similarity search hit.

    Attributes:
        content: Text that was embedded
        metadata: Record metadata
        similarity: Cosine similarity to the query (-1 to 1)
        source_id: Unique id of the embedded unit
    """

    content: str
    metadata: EmbeddingMetadata
    similarity: float
    source_id: str

    def __repr__(self) -> str:
        return f"SearchResult(source_id='{self.source_id}', similarity={self.similarity:.4f})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "metadata": self.metadata.to_dict(),
            "similarity": self.similarity,
            "source_id": self.source_id,
        }


@dataclass
class EmbeddingRecord:
    """Input for VectorIndex.insert_many."""

    vector: Sequence[float]
    metadata: Union[EmbeddingMetadata, Dict[str, Any], None] = None
    content: str = ""
    source_id: Optional[str] = None


class VectorIndex:
    """
    Vector index over the `message_embeddings` table.

    Every public method is a single storage transaction. Callers that need
    a record written together with other rows use the session-level helpers
    `insert_in_session` and `delete_in_session`.

    Example:
        index = VectorIndex(database, embedding_service)
        sid = index.insert(vector, EmbeddingMetadata(kind="knowledge", bot_id="b1"),
                           content="Paris is the capital of France")
        results = index.search(query_vector, k=5, filter={"bot_id": "b1"})
    """

    def __init__(
        self,
        database: Optional[Database] = None,
        embedding_service: Optional[EmbeddingService] = None,
        dimension: Optional[int] = None,
    ):
        """
        Open (or create) the index.

        Args:
            database: Relational store (default: process-wide database)
            embedding_service: Used by search_by_text and for model_name
            dimension: Vector dimension (default: embedding service, then config)

        Raises:
            ValidationError: If the stored index has a different dimension
        """
        self.database = database or get_database()
        self._embedding_service = embedding_service

        if dimension is None:
            if embedding_service is not None:
                dimension = embedding_service.dimension
            else:
                dimension = get_settings().embedding.dimension
        if dimension <= 0:
            raise ValidationError(f"Invalid vector dimension: {dimension}")
        self.dimension = dimension

        self._ensure_dimension()
        logger.info(f"VectorIndex ready: dimension={self.dimension}")

    @property
    def embedding_service(self) -> EmbeddingService:
        if self._embedding_service is None:
            self._embedding_service = EmbeddingService()
        return self._embedding_service

    @property
    def model_name(self) -> str:
        if self._embedding_service is not None:
            return self._embedding_service.model_name
        return get_settings().embedding.openai_model

    def _ensure_dimension(self) -> None:
        with self.database.session_scope() as session:
            info = session.get(VectorIndexInfoModel, INDEX_NAME)
            if info is None:
                session.add(VectorIndexInfoModel(name=INDEX_NAME, dimension=self.dimension))
                logger.info(f"Recorded vector index dimension {self.dimension}")
            elif info.dimension != self.dimension:
                raise ValidationError(
                    f"Vector index was created with dimension {info.dimension}, "
                    f"got {self.dimension}"
                )

    def validate_vector(self, vector: Sequence[float]) -> List[float]:
        """
        Check a vector before any storage call.

        Raises:
            ValidationError: Empty, non-numeric, non-finite or wrong dimension
        """
        if vector is None or len(vector) == 0:
            raise ValidationError("Vector must be a non-empty sequence of numbers")

        values = []
        for x in vector:
            if isinstance(x, bool) or not isinstance(x, (int, float, np.integer, np.floating)):
                raise ValidationError(f"Vector contains a non-numeric value: {x!r}")
            x = float(x)
            if not math.isfinite(x):
                raise ValidationError("Vector contains a non-finite value")
            values.append(x)

        if len(values) != self.dimension:
            raise ValidationError(
                f"Vector dimension {len(values)} does not match index dimension {self.dimension}"
            )
        return values

    def _coerce_metadata(
        self, metadata: Union[EmbeddingMetadata, Dict[str, Any], None]
    ) -> EmbeddingMetadata:
        if metadata is None:
            return EmbeddingMetadata()
        if isinstance(metadata, dict):
            return EmbeddingMetadata.from_dict(metadata)
        return metadata

    def _row_values(
        self,
        values: List[float],
        metadata: EmbeddingMetadata,
        content: str,
        source_id: str,
    ) -> Dict[str, Any]:
        extra = dict(metadata.extra)
        extra.setdefault("model_name", self.model_name)
        extra.setdefault("embedding_version", EMBEDDING_VERSION)
        row = {name: getattr(metadata, name) for name in WELL_KNOWN_FIELDS}
        row.update(
            source_id=source_id,
            content=content or "",
            embedding=values,
            extra=extra,
            inserted_at=utcnow(),
        )
        return row

    def insert_in_session(
        self,
        session: Session,
        vector: Sequence[float],
        metadata: Union[EmbeddingMetadata, Dict[str, Any], None] = None,
        content: str = "",
        source_id: Optional[str] = None,
    ) -> Tuple[str, bool]:
        """
        Insert-or-skip within an open session.

        Returns:
            Tuple of (source_id, inserted)
        """
        values = self.validate_vector(vector)
        source_id = source_id or str(uuid.uuid4())
        row = self._row_values(values, self._coerce_metadata(metadata), content, source_id)

        dialect = session.get_bind().dialect.name
        if dialect in ("sqlite", "postgresql"):
            insert = sqlite_insert if dialect == "sqlite" else pg_insert
            stmt = insert(EmbeddingModel).values(**row).on_conflict_do_nothing(
                index_elements=["source_id"]
            )
            inserted = session.execute(stmt).rowcount == 1
        else:
            exists = session.scalar(
                select(EmbeddingModel.id).where(EmbeddingModel.source_id == source_id)
            )
            inserted = exists is None
            if inserted:
                session.add(EmbeddingModel(**row))
                session.flush()

        if not inserted:
            logger.debug(f"Embedding for {source_id} already exists, skipping")
        return source_id, inserted

    def insert(
        self,
        vector: Sequence[float],
        metadata: Union[EmbeddingMetadata, Dict[str, Any], None] = None,
        content: str = "",
        source_id: Optional[str] = None,
    ) -> str:
        """
        Insert one record. Re-inserting an existing source id writes nothing.

        Args:
            vector: Embedding vector of the index dimension
            metadata: EmbeddingMetadata or flat dict
            content: Text that was embedded
            source_id: Unique id of the unit (generated if omitted)

        Returns:
            The record's source id
        """
        self.validate_vector(vector)
        with self.database.session_scope() as session:
            source_id, _ = self.insert_in_session(session, vector, metadata, content, source_id)
        return source_id

    def insert_many(self, records: Iterable[EmbeddingRecord]) -> List[str]:
        """
        Insert several records in one transaction, each idempotently.

        All vectors are validated before anything is written.

        Returns:
            Source ids in input order
        """
        records = list(records)
        for record in records:
            self.validate_vector(record.vector)
        if not records:
            return []

        source_ids = []
        inserted = 0
        with self.database.session_scope() as session:
            for record in records:
                sid, was_inserted = self.insert_in_session(
                    session, record.vector, record.metadata, record.content, record.source_id
                )
                source_ids.append(sid)
                inserted += int(was_inserted)

        logger.debug(f"insert_many: {inserted} inserted, {len(records) - inserted} skipped")
        return source_ids

    def _split_filter(self, filter: Optional[MetadataFilter]):
        conditions = []
        extra_filter = {}
        for key, value in (filter or {}).items():
            if key in WELL_KNOWN_FIELDS:
                column = getattr(EmbeddingModel, key)
                if value is None:
                    conditions.append(column.is_(None))
                elif isinstance(value, (list, tuple, set)):
                    conditions.append(column.in_(list(value)))
                else:
                    conditions.append(column == value)
            else:
                extra_filter[key] = value
        return conditions, extra_filter

    @staticmethod
    def _matches_extra(row: EmbeddingModel, extra_filter: MetadataFilter) -> bool:
        extra = row.extra or {}
        for key, value in extra_filter.items():
            if isinstance(value, (list, tuple, set)):
                if extra.get(key) not in value:
                    return False
            elif extra.get(key) != value:
                return False
        return True

    def search(
        self,
        query_vector: Sequence[float],
        k: int = 5,
        filter: Optional[MetadataFilter] = None,
    ) -> List[SearchResult]:
        """
        Find the k records most similar to the query.

        Args:
            query_vector: Query vector of the index dimension
            k: Maximum number of results
            filter: Metadata equality filter (lists mean "any of")

        Returns:
            SearchResults ordered by similarity descending, ties by insertion order
        """
        query = self.validate_vector(query_vector)
        if k <= 0:
            raise ValidationError(f"k must be positive, got {k}")

        conditions, extra_filter = self._split_filter(filter)

        with self.database.session_scope() as session:
            rows = session.scalars(
                select(EmbeddingModel).where(*conditions).order_by(EmbeddingModel.id)
            ).all()

        if extra_filter:
            rows = [r for r in rows if self._matches_extra(r, extra_filter)]
        rows = [r for r in rows if len(r.embedding or []) == self.dimension]
        if not rows:
            return []

        similarities = cosine_similarities(query, np.array([r.embedding for r in rows]))
        # Rows are in insertion order, so a stable sort keeps ties in that order
        order = np.argsort(-similarities, kind="stable")[:k]

        results = [
            SearchResult(
                content=rows[i].content,
                metadata=EmbeddingMetadata.from_model(rows[i]),
                similarity=float(similarities[i]),
                source_id=rows[i].source_id,
            )
            for i in order
        ]
        logger.debug(f"Search over {len(rows)} candidates returned {len(results)} results")
        return results

    def search_by_text(
        self,
        text: str,
        k: int = 5,
        filter: Optional[MetadataFilter] = None,
    ) -> List[SearchResult]:
        """Embed text with the EmbeddingService, then search."""
        return self.search(self.embedding_service.embed_query(text), k=k, filter=filter)

    def delete_in_session(
        self,
        session: Session,
        ids: Optional[Iterable[str]] = None,
        filter: Optional[MetadataFilter] = None,
    ) -> int:
        """Delete by source ids or by metadata filter within an open session."""
        if (ids is None) == (filter is None):
            raise ValidationError("delete requires exactly one of ids or filter")

        if ids is not None:
            ids = list(ids)
            if not ids:
                return 0
            stmt = sql_delete(EmbeddingModel).where(EmbeddingModel.source_id.in_(ids))
            return session.execute(stmt).rowcount

        if not filter:
            raise ValidationError("delete filter must not be empty")

        conditions, extra_filter = self._split_filter(filter)
        if extra_filter:
            rows = session.scalars(select(EmbeddingModel).where(*conditions)).all()
            row_ids = [r.id for r in rows if self._matches_extra(r, extra_filter)]
            if not row_ids:
                return 0
            stmt = sql_delete(EmbeddingModel).where(EmbeddingModel.id.in_(row_ids))
        else:
            stmt = sql_delete(EmbeddingModel).where(*conditions)
        return session.execute(stmt).rowcount

    def delete(
        self,
        ids: Optional[Iterable[str]] = None,
        filter: Optional[MetadataFilter] = None,
    ) -> int:
        """
        Delete records selected by source ids or by a metadata filter.

        Exactly one selector must be given.

        Returns:
            Number of records deleted
        """
        with self.database.session_scope() as session:
            deleted = self.delete_in_session(session, ids=ids, filter=filter)
        logger.info(f"Deleted {deleted} embeddings")
        return deleted

    def existing_ids(self, ids: Iterable[str]) -> Set[str]:
        """Return the subset of source ids that already have a record."""
        ids = list(ids)
        if not ids:
            return set()
        with self.database.session_scope() as session:
            found = session.scalars(
                select(EmbeddingModel.source_id).where(EmbeddingModel.source_id.in_(ids))
            ).all()
        return set(found)

    def count(self, filter: Optional[MetadataFilter] = None) -> int:
        """Return the number of records, optionally matching a filter."""
        conditions, extra_filter = self._split_filter(filter)
        with self.database.session_scope() as session:
            if extra_filter:
                rows = session.scalars(select(EmbeddingModel).where(*conditions)).all()
                return sum(1 for r in rows if self._matches_extra(r, extra_filter))
            return session.scalar(
                select(func.count()).select_from(EmbeddingModel).where(*conditions)
            )
