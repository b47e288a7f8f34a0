"""
Tests for Knowledge Store Module
"""

import pytest

from chatbot_core.errors import ProviderError, ValidationError
from chatbot_core.knowledge import KNOWLEDGE_KIND, knowledge_source_id


class TestKnowledgeStore:
    """Tests for KnowledgeStore."""

    def test_add_knowledge(self, knowledge_store, vector_index):
        entry = knowledge_store.add_knowledge("bot_1", "Paris is the capital of France")

        assert entry.bot_id == "bot_1"
        assert entry.content == "Paris is the capital of France"
        assert entry.created_at is not None
        assert vector_index.existing_ids([knowledge_source_id(entry.id)]) == {
            knowledge_source_id(entry.id)
        }
        assert vector_index.count({"kind": KNOWLEDGE_KIND, "bot_id": "bot_1"}) == 1

    def test_metadata_source_and_extra(self, knowledge_store):
        knowledge_store.add_knowledge(
            "bot_1", "The office opens at 9am", {"source": "user_command", "user_id": "u1"}
        )

        result = knowledge_store.search_knowledge("office", "bot_1", k=1)[0]
        assert result.metadata.source == "user_command"
        assert result.metadata.extra["user_id"] == "u1"
        assert result.metadata.context_type == "knowledge"

    @pytest.mark.parametrize("content", ["", "   "])
    def test_empty_content_rejected(self, knowledge_store, embedding_provider, content):
        with pytest.raises(ValidationError):
            knowledge_store.add_knowledge("bot_1", content)
        assert embedding_provider.calls == 0

    def test_embedding_failure_writes_nothing(self, knowledge_store, embedding_provider, vector_index):
        embedding_provider.fail_on = "secret"

        with pytest.raises(ProviderError):
            knowledge_store.add_knowledge("bot_1", "the secret recipe")

        assert knowledge_store.list_knowledge("bot_1") == []
        assert vector_index.count() == 0

    def test_search_ranks_relevant_first(self, knowledge_store):
        knowledge_store.add_knowledge("bot_1", "The office opens at 9am on weekdays")
        knowledge_store.add_knowledge("bot_1", "Paris is the capital of France")

        results = knowledge_store.search_knowledge("What is the capital of France?", "bot_1", k=2)

        assert results[0].content == "Paris is the capital of France"
        assert results[0].similarity > results[1].similarity

    def test_search_scoped_to_bot(self, knowledge_store):
        knowledge_store.add_knowledge("bot_1", "Paris is the capital of France")
        knowledge_store.add_knowledge("bot_2", "Berlin is the capital of Germany")

        results = knowledge_store.search_knowledge("capital", "bot_1", k=5)
        assert [r.content for r in results] == ["Paris is the capital of France"]

    def test_search_ignores_message_embeddings(self, knowledge_store, vector_index, embedding_service):
        vector_index.insert(
            embedding_service.embed_text("capital of France"),
            {"kind": "message", "bot_id": "bot_1"},
            content="capital of France",
        )
        assert knowledge_store.search_knowledge("capital of France", "bot_1") == []

    def test_list_knowledge_newest_first(self, knowledge_store):
        knowledge_store.add_knowledge("bot_1", "first fact")
        knowledge_store.add_knowledge("bot_1", "second fact")

        contents = [e.content for e in knowledge_store.list_knowledge("bot_1")]
        assert contents == ["second fact", "first fact"]

    def test_delete_knowledge(self, knowledge_store, vector_index):
        knowledge_store.add_knowledge("bot_1", "first fact")
        knowledge_store.add_knowledge("bot_1", "second fact")
        knowledge_store.add_knowledge("bot_2", "other bot fact")

        assert knowledge_store.delete_knowledge("bot_1") == 2

        assert knowledge_store.list_knowledge("bot_1") == []
        assert knowledge_store.search_knowledge("fact", "bot_1") == []
        assert len(knowledge_store.list_knowledge("bot_2")) == 1
        assert vector_index.count() == 1

    def test_delete_knowledge_empty(self, knowledge_store):
        assert knowledge_store.delete_knowledge("nobody") == 0
