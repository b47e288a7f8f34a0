"""
Relational Store Module

SQLAlchemy models and session management for every table the bot core reads
or writes. SQLite is the default backend; any SQLAlchemy URL works
(PostgreSQL in production).

Tables:
- messages: chat messages owned by the platform (read for history/recall)
- bots, users: display context (personality, names)
- message_embeddings: the vector index (one row per embedded unit)
- vector_index_info: dimension recorded at index creation
- bot_knowledge: facts taught to a bot
- bot_conversations: one opaque context state per conversation
- bot_feedback: append-only feedback and turn metrics
- bot_token_usage: running token totals per bot
- bot_commands: bot-scoped custom commands

Vectors are stored as JSON arrays; similarity is computed in Python.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from config.settings import get_settings
from chatbot_core.errors import PersistenceError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def _ensure_sqlite_dir(url: str) -> None:
    """Create the parent directory of a file-backed SQLite URL."""
    database = make_url(url).database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


class Base(DeclarativeBase):
    pass


class MessageModel(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    sender_id: Mapped[str] = mapped_column(String(64), index=True)
    receiver_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    group_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    sender_type: Mapped[str] = mapped_column(String(16), default="user")
    receiver_type: Mapped[str] = mapped_column(String(16), default="user")
    is_error: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class BotModel(Base):
    __tablename__ = "bots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    personality: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class UserModel(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class EmbeddingModel(Base):
    __tablename__ = "message_embeddings"

    # Autoincrement id doubles as insertion order for tie-breaking
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")
    embedding: Mapped[List[float]] = mapped_column(JSON, nullable=False)
    kind: Mapped[Optional[str]] = mapped_column(String(32), index=True, nullable=True)
    bot_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    sender_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    receiver_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    group_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    context_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    is_user_message: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    source: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    extra: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    inserted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class VectorIndexInfoModel(Base):
    __tablename__ = "vector_index_info"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    dimension: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class KnowledgeModel(Base):
    __tablename__ = "bot_knowledge"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    bot_id: Mapped[str] = mapped_column(String(64), index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    meta_data: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ConversationModel(Base):
    __tablename__ = "bot_conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    bot_id: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    context: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_interaction: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class FeedbackModel(Base):
    __tablename__ = "bot_feedback"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bot_id: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(64))
    conversation_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    message_index: Mapped[int] = mapped_column(Integer)
    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    feedback_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    token_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    meta_data: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class TokenUsageModel(Base):
    __tablename__ = "bot_token_usage"

    bot_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    prompt_tokens: Mapped[int] = mapped_column(Integer, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    calls: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class CommandModel(Base):
    __tablename__ = "bot_commands"
    __table_args__ = (UniqueConstraint("bot_id", "command", name="uq_bot_command"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bot_id: Mapped[str] = mapped_column(String(64), index=True)
    command: Mapped[str] = mapped_column(String(64))
    description: Mapped[str] = mapped_column(Text, default="")
    response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Database:
    """
    Engine and session factory for the relational store.

    Example:
        db = Database("sqlite:///./data/chatbot.db")
        with db.session_scope() as session:
            session.add(BotModel(id="bot_1", name="Helper"))
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        """
        Initialize the database and create missing tables.

        Args:
            url: SQLAlchemy URL (default from config)
            echo: Log emitted SQL (default from config)
        """
        settings = get_settings()
        self.url = url or settings.database.url
        self.echo = settings.database.echo if echo is None else echo

        connect_args = {}
        if self.url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            _ensure_sqlite_dir(self.url)

        try:
            self.engine: Engine = create_engine(
                self.url, echo=self.echo, connect_args=connect_args
            )
            self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
            self.create_tables()
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise PersistenceError(f"Database unavailable: {e}") from e

        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    def create_tables(self) -> None:
        """Create all tables defined on the declarative base."""
        Base.metadata.create_all(self.engine)
        logger.debug("All tables created")

    def drop_tables(self) -> None:
        """Drop every table (tests and full resets only)."""
        Base.metadata.drop_all(self.engine)
        logger.info("All tables dropped")

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        Provide a transactional scope around a series of operations.

        Commits on success, rolls back on error. SQLAlchemy errors are
        re-raised as PersistenceError; other exceptions pass through.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database transaction failed: {e}")
            raise PersistenceError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()


_database: Optional[Database] = None
_database_lock = threading.Lock()


def get_database() -> Database:
    """Get the process-wide Database built from settings."""
    global _database
    if _database is None:
        with _database_lock:
            if _database is None:
                _database = Database()
    return _database
