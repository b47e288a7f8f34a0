"""
Shared fixtures for the bot chat core tests.

Every test gets its own SQLite file, a deterministic bag-of-words embedding
provider and a scripted LLM provider, so no network access is needed.
"""

import hashlib
import re
import threading
from datetime import timedelta
from typing import List, Optional

import pytest

from config.settings import Settings
from chatbot_core.database import Database, MessageModel, utcnow
from chatbot_core.embeddings import BaseEmbeddingProvider, EmbeddingService
from chatbot_core.feedback import FeedbackRecorder
from chatbot_core.knowledge import KnowledgeStore
from chatbot_core.llm_service import BaseLLMProvider, LLMResponse, LLMService
from chatbot_core.rate_limiter import RateLimiterRegistry
from chatbot_core.vector_store import VectorIndex

DIMENSION = 64


class FakeEmbeddingProvider(BaseEmbeddingProvider):
    """Hashes lowercase words into a fixed number of buckets."""

    def __init__(self, dimension: int = DIMENSION):
        self._dimension = dimension
        self.fail_on: Optional[str] = None
        self.calls = 0
        self._lock = threading.Lock()

    def embed_text(self, text: str) -> List[float]:
        with self._lock:
            self.calls += 1
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("embedding backend unavailable")
        vector = [0.0] * self._dimension
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self._dimension
            vector[bucket] += 1.0
        return vector

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self.embed_text(t) for t in texts]

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return "fake-embedding"


class FakeLLMProvider(BaseLLMProvider):
    """
    Scripted LLM provider.

    Rewrite prompts echo the follow-up question unless `standalone` is set;
    answer prompts return `answer`. Every prompt is recorded in `prompts`.
    """

    USAGE = {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}

    def __init__(self):
        self.answer = "Generated answer"
        self.standalone: Optional[str] = None
        self.error: Optional[Exception] = None
        self.prompts: List[str] = []
        self.max_tokens: List[Optional[int]] = []

    def generate(self, prompt, system_prompt=None, temperature=0.7, max_tokens=None):
        self.prompts.append(prompt)
        self.max_tokens.append(max_tokens)
        if self.error is not None:
            raise self.error

        if "Standalone question:" in prompt:
            match = re.search(r"Follow Up Question: (.*)\n", prompt)
            content = self.standalone or match.group(1)
        else:
            content = self.answer
        return LLMResponse(content=content, model="fake-llm", usage=dict(self.USAGE))

    @property
    def model_name(self) -> str:
        return "fake-llm"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'test.db'}")
    yield db
    db.dispose()


@pytest.fixture
def embedding_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def embedding_service(embedding_provider):
    return EmbeddingService(provider=embedding_provider)


@pytest.fixture
def vector_index(database, embedding_service):
    return VectorIndex(database, embedding_service)


@pytest.fixture
def knowledge_store(database, vector_index):
    return KnowledgeStore(database, vector_index)


@pytest.fixture
def llm_provider():
    return FakeLLMProvider()


@pytest.fixture
def llm_service(llm_provider, settings):
    return LLMService(provider=llm_provider, config=settings.llm)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rate_limiters(clock):
    return RateLimiterRegistry(tokens_per_interval=10000, interval_seconds=60, clock=clock)


@pytest.fixture
def feedback_recorder(database):
    return FeedbackRecorder(database)


@pytest.fixture
def store_message(database):
    """Insert a row into `messages`; timestamps default to strictly increasing."""
    counter = {"n": 0}
    base = utcnow() - timedelta(hours=1)

    def _store(
        content,
        sender_id,
        receiver_id=None,
        sender_type="user",
        receiver_type="bot",
        group_id=None,
        created_at=None,
        is_error=False,
    ):
        counter["n"] += 1
        with database.session_scope() as session:
            row = MessageModel(
                content=content,
                sender_id=sender_id,
                receiver_id=receiver_id,
                sender_type=sender_type,
                receiver_type=receiver_type,
                group_id=group_id,
                is_error=is_error,
                created_at=created_at or base + timedelta(seconds=counter["n"]),
            )
            session.add(row)
            session.flush()
            return row.id

    return _store
