"""
Tests for Chat Service Module

End-to-end tests of the chat-endpoint facade on a SQLite store.
"""

import pytest
from sqlalchemy import select

from chatbot_core.chat_service import ERROR_REPLY, RATE_LIMIT_REPLY, ChatService
from chatbot_core.database import BotModel, MessageModel
from chatbot_core.errors import ValidationError
from chatbot_core.rate_limiter import RateLimiterRegistry


@pytest.fixture
def service(database, embedding_service, llm_service, rate_limiters, settings):
    return ChatService(
        database=database,
        embedding_service=embedding_service,
        llm_service=llm_service,
        rate_limiters=rate_limiters,
        settings=settings,
    )


def _messages(database):
    with database.session_scope() as session:
        return session.scalars(select(MessageModel).order_by(MessageModel.created_at)).all()


class TestHandleMessage:
    """Tests for ChatService.handle_message."""

    @pytest.mark.parametrize("message", ["", "   "])
    def test_empty_message_rejected(self, service, database, message):
        with pytest.raises(ValidationError):
            service.handle_message(message, "bot_1", "user_1")
        assert _messages(database) == []

    def test_initializing_stores_only(self, service, database, llm_provider):
        result = service.handle_message("Hi", "bot_1", "user_1", is_initializing=True)

        assert result["success"]
        stored = _messages(database)
        assert [m.id for m in stored] == [result["message_id"]]
        assert llm_provider.prompts == []

    def test_turn_stores_message_and_reply(self, service, database):
        result = service.handle_message("Hello there", "bot_1", "user_1")

        assert result["success"]
        assert result["answer"] == "Generated answer"
        assert result["conversation_id"]

        stored = _messages(database)
        assert [(m.sender_id, m.content) for m in stored] == [
            ("user_1", "Hello there"),
            ("bot_1", "Generated answer"),
        ]
        assert stored[0].id == result["message_id"]
        assert stored[1].sender_type == "bot"
        assert not stored[1].is_error

    def test_follow_up_uses_stored_history(self, service, llm_provider):
        service.handle_message("My name is Sam", "bot_1", "user_1")
        service.handle_message("What is my name?", "bot_1", "user_1")

        rewrite_prompt = llm_provider.prompts[1]
        assert "Standalone question:" in rewrite_prompt
        assert "user: My name is Sam\nassistant: Generated answer" in rewrite_prompt
        assert "What is my name?\n" not in rewrite_prompt.split("Follow Up Question:")[0]

    def test_command(self, service, database, knowledge_store):
        result = service.handle_message("/learn The office opens at 9am", "bot_1", "user_1")

        assert result["success"]
        assert result["type"] == "command"
        assert result["response"] == "I've learned this information!"
        assert [e.content for e in knowledge_store.list_knowledge("bot_1")] == ["The office opens at 9am"]

        stored = _messages(database)
        assert [m.content for m in stored] == [
            "/learn The office opens at 9am",
            "I've learned this information!",
        ]

    def test_command_recorded_in_context(self, service):
        service.handle_message("/help", "bot_1", "user_1")
        summary = service.get_context_summary("bot_1", "user_1")
        assert "Recent commands:\n/help" in summary

    def test_unknown_command(self, service):
        result = service.handle_message("/dance", "bot_1", "user_1")
        assert not result["success"]
        assert result["response"].startswith("Unknown command: dance")

    def test_rate_limited(self, service, database, clock):
        service.orchestrator.rate_limiters = RateLimiterRegistry(
            tokens_per_interval=500, interval_seconds=60, clock=clock
        )

        result = service.handle_message("Hello", "bot_1", "user_1")

        assert not result["success"]
        assert result["error"] == RATE_LIMIT_REPLY
        assert result["retry_after"] is None
        assert [m.content for m in _messages(database)] == ["Hello"]

    def test_failure_stores_error_reply(self, service, database, llm_provider):
        llm_provider.error = RuntimeError("model offline")

        result = service.handle_message("Hello", "bot_1", "user_1")

        assert not result["success"]
        assert result["error"] == ERROR_REPLY
        stored = _messages(database)
        assert stored[-1].content == ERROR_REPLY
        assert stored[-1].is_error


class TestLearnThenAsk:
    """A fact taught with /learn is used to answer a later question."""

    def test_learned_fact_reaches_prompt(self, service, llm_provider):
        service.handle_message("/learn The office opens at 9am on weekdays", "bot_1", "user_1")
        llm_provider.standalone = "When does the office open?"

        result = service.handle_message("When does it open?", "bot_1", "user_1")

        assert result["success"]
        assert "The office opens at 9am on weekdays" in llm_provider.prompts[-1]
        assert result["source_documents"][0]["content"] == "The office opens at 9am on weekdays"

    def test_forget_removes_fact(self, service, llm_provider):
        service.handle_message("/learn The office opens at 9am", "bot_1", "user_1")
        service.handle_message("/forget", "bot_1", "user_1")

        result = service.handle_message("When does the office open?", "bot_1", "user_1")

        assert result["source_documents"] == []


class TestFeedbackApi:
    """Tests for feedback submission and reporting."""

    def test_submit_feedback(self, service):
        turn = service.handle_message("Hello", "bot_1", "user_1")
        feedback_id = service.submit_feedback(
            "bot_1", "user_1", turn["conversation_id"], 1, rating=5, feedback_text="Great"
        )

        assert isinstance(feedback_id, int)
        metrics = service.get_bot_metrics("bot_1")
        assert metrics.total_feedback == 2
        assert metrics.average_rating == pytest.approx(5.0)
        assert service.get_feedback_history("bot_1", limit=1)[0].feedback.rating == 5

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"message_index": -1},
            {"message_index": 0, "rating": 0},
            {"message_index": 0, "rating": 6},
            {"message_index": 0, "response_time_ms": -5},
            {"message_index": 0, "token_count": -1},
        ],
    )
    def test_invalid_feedback(self, service, kwargs):
        with pytest.raises(ValidationError):
            service.submit_feedback("bot_1", "user_1", None, **kwargs)


class TestAdministration:
    """Tests for bots, knowledge and conversation management."""

    def test_teach_and_stats(self, service):
        service.upsert_bot("bot_1", "Helper")
        service.teach("bot_1", "Paris is the capital of France")

        stats = service.get_stats()

        assert stats["bots"] == 1
        assert stats["vector_index"]["knowledge_records"] == 1
        assert stats["embedding"]["model"] == "fake-embedding"
        assert stats["llm"]["model"] == "fake-llm"

    def test_teach_default_source(self, service, knowledge_store):
        entry = service.teach("bot_1", "Paris is the capital of France")
        assert entry.metadata == {"source": "api"}

    def test_upsert_bot_updates(self, service, database):
        service.upsert_bot("bot_1", "Helper")
        service.upsert_bot("bot_1", "Helper", "You are terse.")

        with database.session_scope() as session:
            assert session.get(BotModel, "bot_1").personality == "You are terse."

    def test_delete_bot(self, service, database):
        service.upsert_bot("bot_1", "Helper")
        service.teach("bot_1", "fact one")
        service.teach("bot_1", "fact two")
        service.command_interpreter.add_custom_command("bot_1", "hours", "Hours", "9am")

        assert service.delete_bot("bot_1") == {"knowledge": 2, "commands": 1}
        assert service.vector_index.count({"kind": "knowledge"}) == 0
        with database.session_scope() as session:
            assert session.get(BotModel, "bot_1") is None

    def test_clear_conversation(self, service):
        assert not service.clear_conversation("bot_1", "user_1")

        turn = service.handle_message("Hello", "bot_1", "user_1")
        assert service.get_latest_conversation("bot_1", "user_1") == turn["conversation_id"]

        assert service.clear_conversation("bot_1", "user_1")
        assert service.get_context_summary("bot_1", "user_1", turn["conversation_id"]) == ""
