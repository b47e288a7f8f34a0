"""
Tests for the relational store module.
"""

import pytest

from chatbot_core.database import BotModel, Database, utcnow
from chatbot_core.errors import PersistenceError


class TestDatabase:
    """Tests for Database session handling."""

    def test_creates_sqlite_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "chat.db"
        db = Database(f"sqlite:///{path}")
        try:
            assert path.parent.exists()
        finally:
            db.dispose()

    def test_session_commits(self, database):
        with database.session_scope() as session:
            session.add(BotModel(id="bot_1", name="Helper"))

        with database.session_scope() as session:
            assert session.get(BotModel, "bot_1").name == "Helper"

    def test_integrity_error_becomes_persistence_error(self, database):
        with database.session_scope() as session:
            session.add(BotModel(id="bot_1", name="Helper"))

        with pytest.raises(PersistenceError):
            with database.session_scope() as session:
                session.add(BotModel(id="bot_1", name="Duplicate"))

        with database.session_scope() as session:
            assert session.get(BotModel, "bot_1").name == "Helper"

    def test_other_errors_roll_back(self, database):
        with pytest.raises(KeyError):
            with database.session_scope() as session:
                session.add(BotModel(id="bot_1", name="Helper"))
                session.flush()
                raise KeyError("boom")

        with database.session_scope() as session:
            assert session.get(BotModel, "bot_1") is None

    def test_utcnow_is_naive(self):
        assert utcnow().tzinfo is None
