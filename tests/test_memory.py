"""
Tests for Conversation Context Module

Tests for Message, ContextManager and find_latest_conversation.
"""

import pytest
from datetime import datetime
from sqlalchemy import func, select

from chatbot_core.database import ConversationModel, utcnow
from chatbot_core.errors import ValidationError
from chatbot_core.knowledge import knowledge_source_id
from chatbot_core.memory import ContextManager, Message, find_latest_conversation


def _conversation_count(database):
    with database.session_scope() as session:
        return session.scalar(select(func.count()).select_from(ConversationModel))


@pytest.fixture
def make_context(database, knowledge_store):
    def _make(conversation_id=None, user_id="user_1", **kwargs):
        return ContextManager(
            database,
            knowledge_store,
            "bot_1",
            user_id,
            conversation_id=conversation_id,
            **kwargs,
        ).initialize()

    return _make


class TestMessage:
    """Tests for the Message dataclass."""

    def test_message_creation(self):
        msg = Message(role="user", content="Hello")
        assert msg.role == "user"
        assert isinstance(msg.timestamp, datetime)
        assert msg.metadata == {}

    def test_message_round_trip(self):
        data = {
            "role": "assistant",
            "content": "Hello!",
            "timestamp": utcnow().isoformat(),
            "metadata": {"key": "value"},
        }
        msg = Message.from_dict(data)
        assert msg.to_dict() == data

    def test_message_str(self):
        assert str(Message(role="user", content="Hi there")) == "user: Hi there"


class TestContextManagerLifecycle:
    """Tests for initialization and persistence."""

    def test_requires_initialize(self, database, knowledge_store):
        context = ContextManager(database, knowledge_store, "bot_1", "user_1")
        with pytest.raises(RuntimeError):
            context.add_message("Hello", "user")

    def test_new_conversation_is_not_persisted(self, database, make_context):
        context = make_context()

        assert context.conversation_id is not None
        assert not context.is_persisted
        assert len(context) == 0
        assert _conversation_count(database) == 0

    def test_first_write_persists(self, database, make_context):
        context = make_context()
        context.add_message("Hello", "user")

        assert context.is_persisted
        assert _conversation_count(database) == 1

    def test_reload_existing(self, make_context):
        context = make_context()
        context.add_message("Hello", "user")
        context.add_message("Hi! How can I help?", "assistant", metadata={"token_usage": 15})

        reloaded = make_context(context.conversation_id)

        assert reloaded.conversation_id == context.conversation_id
        assert [m.content for m in reloaded.get_messages()] == ["Hello", "Hi! How can I help?"]
        assert reloaded.get_messages()[1].metadata == {"token_usage": 15}

    def test_unknown_id_starts_fresh(self, make_context):
        context = make_context("does-not-exist")
        assert context.conversation_id != "does-not-exist"
        assert len(context) == 0

    def test_other_users_conversation_not_loaded(self, make_context):
        context = make_context(user_id="user_1")
        context.add_message("private", "user")

        other = make_context(context.conversation_id, user_id="user_2")
        assert other.conversation_id != context.conversation_id
        assert len(other) == 0

    def test_other_bots_conversation_not_loaded(self, database, knowledge_store, make_context):
        context = make_context()
        context.add_message("for bot one", "user")

        other = ContextManager(
            database, knowledge_store, "bot_2", "user_1", conversation_id=context.conversation_id
        ).initialize()
        assert other.conversation_id != context.conversation_id
        assert len(other) == 0

        other.add_message("for bot two", "user")
        reloaded = make_context(context.conversation_id)
        assert [m.content for m in reloaded.get_messages()] == ["for bot one"]

    def test_invalid_role(self, make_context):
        with pytest.raises(ValidationError):
            make_context().add_message("Hello", "system")

    def test_invalid_size(self, database, knowledge_store):
        with pytest.raises(ValidationError):
            ContextManager(database, knowledge_store, "bot_1", "user_1", max_context_messages=0)


class TestContextManagerState:
    """Tests for message bounds and metadata."""

    def test_oldest_messages_evicted(self, make_context):
        context = make_context(max_context_messages=3)
        for i in range(5):
            context.add_message(f"message {i}", "user" if i % 2 == 0 else "assistant")

        assert [m.content for m in context.get_messages()] == ["message 2", "message 3", "message 4"]
        assert len(make_context(context.conversation_id, max_context_messages=3)) == 3

    def test_command_history_bounded(self, make_context):
        context = make_context(command_history_size=2)
        for name in ("/help", "/learn a", "/forget"):
            context.add_message(name, "user")

        assert context.metadata["command_history"] == ["/learn a", "/forget"]
        assert "last_topics" not in context.metadata

    def test_user_message_tracks_relevant_documents(self, make_context, knowledge_store):
        entry = knowledge_store.add_knowledge("bot_1", "The office opens at 9am")
        context = make_context()

        context.add_message("When does the office open?", "user")

        metadata = context.metadata
        assert metadata["relevant_documents"] == [knowledge_source_id(entry.id)]
        assert metadata["last_topics"] == ["when does the office open?"]
        assert "last_update_time" in metadata

    def test_supplied_documents_skip_search(self, make_context, embedding_provider):
        context = make_context()
        calls = embedding_provider.calls

        context.add_message("Hello", "user", relevant_documents=[])

        assert embedding_provider.calls == calls
        assert context.metadata["relevant_documents"] == []

    def test_assistant_message_leaves_documents(self, make_context):
        context = make_context()
        context.add_message("Hello", "user", relevant_documents=[])
        context.add_message("Hi", "assistant")
        assert context.metadata["relevant_documents"] == []

    def test_get_relevant_context(self, make_context, knowledge_store):
        knowledge_store.add_knowledge("bot_1", "The office opens at 9am")
        context = make_context()
        context.add_message("/help", "user")
        context.add_message("Hello", "user", relevant_documents=[])
        before = context.metadata

        snapshot = context.get_relevant_context("office hours")

        assert [m.content for m in snapshot.recent_messages] == ["/help", "Hello"]
        assert snapshot.relevant_documents[0].content == "The office opens at 9am"
        assert snapshot.command_history == ["/help"]
        assert context.metadata == before

    def test_summarize_context(self, make_context):
        context = make_context()
        context.add_message("/help", "user")
        context.add_message("Hello", "user", relevant_documents=[])
        context.add_message("Hi there", "assistant")

        summary = context.summarize_context()

        assert "user: Hello" in summary
        assert "assistant: Hi there" in summary
        assert "Recent commands:\n/help" in summary

    def test_clear_context_keeps_id(self, make_context):
        context = make_context()
        context.add_message("Hello", "user", relevant_documents=[])
        conversation_id = context.conversation_id

        context.clear_context()

        assert context.conversation_id == conversation_id
        reloaded = make_context(conversation_id)
        assert reloaded.conversation_id == conversation_id
        assert len(reloaded) == 0
        assert reloaded.metadata == {}


class TestContextManagerPersistence:
    """Tests for deferred saves and read-modify-write of the stored state."""

    def test_deferred_save(self, database, make_context):
        context = make_context()
        context.add_message("Hello", "user", relevant_documents=[], save=False)
        context.add_message("Hi", "assistant", save=False)

        assert not context.is_persisted
        assert _conversation_count(database) == 0

        with database.session_scope() as session:
            context.save_in_session(session)

        assert context.is_persisted
        reloaded = make_context(context.conversation_id)
        assert [m.content for m in reloaded.get_messages()] == ["Hello", "Hi"]

    def test_save_rolled_back_with_session(self, database, make_context):
        context = make_context()
        context.add_message("Hello", "user", relevant_documents=[], save=False)

        with pytest.raises(RuntimeError):
            with database.session_scope() as session:
                context.save_in_session(session)
                raise RuntimeError("later write failed")

        assert _conversation_count(database) == 0

    def test_save_rereads_stored_state(self, make_context):
        first = make_context()
        first.add_message("one", "user", relevant_documents=[])
        conversation_id = first.conversation_id

        second = make_context(conversation_id)
        first.add_message("/help", "user")
        second.add_message("two", "user", relevant_documents=[])

        assert [m.content for m in second.get_messages()] == ["one", "/help", "two"]
        assert second.metadata["command_history"] == ["/help"]
        reloaded = make_context(conversation_id)
        assert [m.content for m in reloaded.get_messages()] == ["one", "/help", "two"]

    def test_replaced_keys_last_writer_wins(self, make_context):
        first = make_context()
        first.add_message("one", "user", relevant_documents=[])
        second = make_context(first.conversation_id)

        first.add_message("alpha", "user", relevant_documents=[])
        second.add_message("beta", "user", relevant_documents=[])

        reloaded = make_context(first.conversation_id)
        assert reloaded.metadata["last_topics"] == ["beta"]

    def test_merge_respects_bound(self, make_context):
        first = make_context(max_context_messages=3)
        first.add_message("one", "assistant")
        first.add_message("two", "assistant")
        second = make_context(first.conversation_id, max_context_messages=3)

        first.add_message("three", "assistant")
        second.add_message("four", "assistant")

        assert [m.content for m in second.get_messages()] == ["two", "three", "four"]


class TestFindLatestConversation:
    """Tests for find_latest_conversation."""

    def test_none_without_conversations(self, database):
        assert find_latest_conversation(database, "bot_1", "user_1") is None

    def test_most_recent_interaction_wins(self, database, make_context):
        first = make_context()
        first.add_message("one", "user", relevant_documents=[])
        second = make_context()
        second.add_message("two", "user", relevant_documents=[])

        assert find_latest_conversation(database, "bot_1", "user_1") == second.conversation_id

        first.add_message("three", "user", relevant_documents=[])
        assert find_latest_conversation(database, "bot_1", "user_1") == first.conversation_id

    def test_scoped_to_user(self, database, make_context):
        make_context(user_id="user_2").add_message("hi", "user", relevant_documents=[])
        assert find_latest_conversation(database, "bot_1", "user_1") is None
