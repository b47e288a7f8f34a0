"""
Conversation Context Module

Manages the persisted context of one bot/user conversation.

A conversation's state is a single JSON document in `bot_conversations`:
- messages: ordered, bounded list of Message (oldest evicted first)
- metadata: relevant_documents (source ids), last_topics, command_history
  (last N commands), last_update_time

Design Rationale:
- The whole state is read and written as one blob; the row is created
  lazily on the first write, so a conversation that never completes a turn
  leaves nothing behind
- Each save re-reads the stored blob and applies the changes made since the
  last save on top of it (appended messages, appended commands, replaced
  metadata keys)
- At most one in-flight turn per conversation is assumed; for concurrent
  writers the replaced metadata keys resolve by last writer wins

Usage:
    context = ContextManager(database, knowledge_store, "bot_1", "user_1")
    context.initialize()
    context.add_message("What are the opening hours?", "user")
    context.add_message("We open at 9am.", "assistant")
    snapshot = context.get_relevant_context("opening hours")
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from chatbot_core.commands import is_command
from chatbot_core.database import ConversationModel, Database, new_id, utcnow
from chatbot_core.errors import ValidationError
from chatbot_core.knowledge import KnowledgeStore
from chatbot_core.vector_store import SearchResult

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant")


@dataclass
class Message:
    """
    Represents a single message in the conversation.

    Attributes:
        role: "user" or "assistant"
        content: The message text
        timestamp: When the message was added (server time, UTC)
        metadata: Additional info (sources, token usage, etc.)
    """
    role: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """Create from dictionary."""
        timestamp = data.get("timestamp")
        return cls(
            role=data["role"],
            content=data["content"],
            timestamp=datetime.fromisoformat(timestamp) if timestamp else utcnow(),
            metadata=data.get("metadata") or {},
        )

    def __str__(self) -> str:
        return f"{self.role}: {self.content}"


@dataclass
class ContextSnapshot:
    """Read-only view returned by ContextManager.get_relevant_context."""

    recent_messages: List[Message]
    relevant_documents: List[SearchResult]
    command_history: List[str]


def find_latest_conversation(database: Database, bot_id: str, user_id: str) -> Optional[str]:
    """Return the id of the most recently used active conversation, if any."""
    with database.session_scope() as session:
        return session.scalar(
            select(ConversationModel.id)
            .where(
                ConversationModel.bot_id == bot_id,
                ConversationModel.user_id == user_id,
                ConversationModel.status == "active",
            )
            .order_by(ConversationModel.last_interaction.desc())
            .limit(1)
        )


class ContextManager:
    """
    Bounded, persisted context for one bot/user conversation.

    States: uninitialized until initialize() is called, then ready.
    """

    def __init__(
        self,
        database: Database,
        knowledge_store: KnowledgeStore,
        bot_id: str,
        user_id: str,
        max_context_messages: int = 10,
        conversation_id: Optional[str] = None,
        command_history_size: int = 5,
        context_top_k: int = 3,
    ):
        """
        Args:
            database: Relational store
            knowledge_store: Used to find relevant documents for user messages
            bot_id: Bot side of the conversation
            user_id: User side of the conversation
            max_context_messages: Messages kept in state (oldest evicted first)
            conversation_id: Existing conversation to load
            command_history_size: Commands kept in state
            context_top_k: Knowledge documents tracked per user message
        """
        if max_context_messages <= 0:
            raise ValidationError("max_context_messages must be positive")

        self.database = database
        self.knowledge_store = knowledge_store
        self.bot_id = bot_id
        self.user_id = user_id
        self.max_context_messages = max_context_messages
        self.command_history_size = command_history_size
        self.context_top_k = context_top_k

        self._conversation_id = conversation_id
        self._messages: List[Message] = []
        self._metadata: Dict[str, Any] = {}
        self._persisted = False
        self._initialized = False
        self._reset_pending()

    def _reset_pending(self) -> None:
        # Changes not yet written
        self._pending_messages: List[Message] = []
        self._pending_commands: List[str] = []
        self._pending_metadata: Dict[str, Any] = {}
        self._cleared = False

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def is_persisted(self) -> bool:
        return self._persisted

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("ContextManager.initialize() must be called first")

    def initialize(self) -> "ContextManager":
        """
        Load existing state, or start an empty conversation.

        An id that does not exist for this bot and user yields a fresh
        conversation id; nothing is written until the first mutation.
        """
        self._reset_pending()
        if self._conversation_id:
            with self.database.session_scope() as session:
                row = session.scalar(
                    select(ConversationModel).where(
                        ConversationModel.id == self._conversation_id,
                        ConversationModel.bot_id == self.bot_id,
                        ConversationModel.user_id == self.user_id,
                    )
                )
                state = dict(row.context or {}) if row is not None else None

            if state is not None:
                self._messages = [Message.from_dict(m) for m in state.get("messages", [])]
                self._metadata = dict(state.get("metadata") or {})
                self._persisted = True
                self._initialized = True
                logger.debug(f"Loaded conversation {self._conversation_id}")
                return self

            logger.info(
                f"Conversation {self._conversation_id} not found for bot {self.bot_id} "
                f"and user {self.user_id}, starting a new one"
            )

        self._conversation_id = new_id()
        self._messages = []
        self._metadata = {}
        self._persisted = False
        self._initialized = True
        logger.debug(f"Started conversation {self._conversation_id}")
        return self

    def save_in_session(self, session: Session) -> None:
        """
        Write pending changes within an open session.

        The stored state is re-read and the changes made since the last save
        are applied on top of it; the in-memory state becomes the result.
        """
        self._require_initialized()
        now = utcnow()
        row = session.get(ConversationModel, self._conversation_id)
        if row is None:
            row = ConversationModel(
                id=self._conversation_id,
                bot_id=self.bot_id,
                user_id=self.user_id,
                status="active",
                created_at=now,
            )
            session.add(row)
            stored = {}
        else:
            stored = {} if self._cleared else dict(row.context or {})

        messages = [Message.from_dict(m) for m in stored.get("messages", [])]
        messages = (messages + self._pending_messages)[-self.max_context_messages:]

        metadata = dict(stored.get("metadata") or {})
        metadata.update(self._pending_metadata)
        if self._pending_commands:
            history = list(metadata.get("command_history", [])) + self._pending_commands
            metadata["command_history"] = history[-self.command_history_size:]

        row.context = {
            "messages": [m.to_dict() for m in messages],
            "metadata": metadata,
        }
        row.last_interaction = now
        session.flush()

        self._messages = messages
        self._metadata = metadata
        self._reset_pending()
        self._persisted = True

    def _save(self) -> None:
        with self.database.session_scope() as session:
            self.save_in_session(session)

    def add_message(
        self,
        content: str,
        role: str,
        metadata: Optional[Dict[str, Any]] = None,
        relevant_documents: Optional[List[SearchResult]] = None,
        save: bool = True,
    ) -> Message:
        """
        Append a message and persist the state.

        Args:
            content: Message text
            role: "user" or "assistant"
            metadata: Optional message metadata
            relevant_documents: Knowledge already retrieved for this message;
                searched for when omitted on a user message
            save: Persist now; when False the change waits for the next
                save_in_session()

        Returns:
            The appended Message
        """
        self._require_initialized()
        if role not in ROLES:
            raise ValidationError(f"Unknown role: {role}")

        message = Message(role=role, content=content, metadata=dict(metadata or {}))
        self._messages.append(message)
        if len(self._messages) > self.max_context_messages:
            self._messages = self._messages[-self.max_context_messages:]
        self._pending_messages.append(message)

        if role == "user":
            if is_command(content):
                history = list(self._metadata.get("command_history", []))
                history.append(content)
                self._metadata["command_history"] = history[-self.command_history_size:]
                self._pending_commands.append(content)
            else:
                if relevant_documents is None:
                    relevant_documents = self.knowledge_store.search_knowledge(
                        content, self.bot_id, k=self.context_top_k
                    )
                self._set_metadata("relevant_documents", [d.source_id for d in relevant_documents])
                self._set_metadata("last_topics", [content.lower()])

        self._set_metadata("last_update_time", message.timestamp.isoformat())
        if save:
            self._save()

        logger.debug(f"Added {role} message to {self._conversation_id}")
        return message

    def _set_metadata(self, key: str, value: Any) -> None:
        self._metadata[key] = value
        self._pending_metadata[key] = value

    def get_relevant_context(self, query_text: str, k: Optional[int] = None) -> ContextSnapshot:
        """
        Snapshot of recent messages, knowledge relevant to the query and
        recent commands. Does not modify state.
        """
        self._require_initialized()
        documents = self.knowledge_store.search_knowledge(
            query_text, self.bot_id, k=k or self.context_top_k
        )
        return ContextSnapshot(
            recent_messages=list(self._messages),
            relevant_documents=documents,
            command_history=list(self._metadata.get("command_history", [])),
        )

    def get_messages(self) -> List[Message]:
        self._require_initialized()
        return list(self._messages)

    @property
    def metadata(self) -> Dict[str, Any]:
        self._require_initialized()
        return dict(self._metadata)

    def summarize_context(self) -> str:
        """Plain-text rendering of messages, relevant documents and commands."""
        self._require_initialized()
        summary = "\n".join(str(m) for m in self._messages)

        documents = self._metadata.get("relevant_documents")
        if documents:
            summary += "\nRelevant context:\n" + "\n".join(documents)

        commands = self._metadata.get("command_history")
        if commands:
            summary += "\nRecent commands:\n" + "\n".join(commands)

        return summary

    def clear_context(self) -> None:
        """Reset state to empty; the conversation id is kept."""
        self._require_initialized()
        self._messages = []
        self._metadata = {}
        self._reset_pending()
        self._cleared = True
        self._save()
        logger.info(f"Cleared conversation {self._conversation_id}")

    def __len__(self) -> int:
        return len(self._messages)
