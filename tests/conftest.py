"""Pytest configuration and fixtures for support chat tests."""

import json
from typing import Any, Dict, List, Optional

import pytest

from support_rag.cache import reset_embedding_cache
from support_rag.circuit_breaker import reset_all_circuit_breakers
from support_rag.config import ProviderConfig
from support_rag.models import KnowledgeItem
from support_rag.providers.base import AIProvider, Capability

TEST_API_KEY = "test-key-0123456789abcdef"


def pytest_configure(config):
    """Register custom pytest markers for test categorization."""
    config.addinivalue_line("markers", "unit: fast tests with no network")
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (skip with '-m \"not integration\"')"
    )


@pytest.fixture(autouse=True)
def isolated_state(monkeypatch):
    """Keep every test independent of the host environment and of earlier tests.

    This fixture:
    1. Removes ZHIPU_API_KEY so only explicit configs carry a credential
    2. Drops all circuit breakers
    3. Drops the shared embedding cache
    """
    monkeypatch.delenv("ZHIPU_API_KEY", raising=False)
    reset_all_circuit_breakers()
    reset_embedding_cache()
    yield
    reset_all_circuit_breakers()
    reset_embedding_cache()


def sse(*frames: Any) -> bytes:
    """Encode frames as an SSE body; strings are sent verbatim, everything else as JSON."""
    out = []
    for frame in frames:
        payload = frame if isinstance(frame, str) else json.dumps(frame, ensure_ascii=False)
        out.append(f"data: {payload}\n\n")
    return "".join(out).encode("utf-8")


def delta(text: str, finish_reason: Optional[str] = None) -> Dict[str, Any]:
    return {"choices": [{"delta": {"content": text}, "finish_reason": finish_reason}]}


class FakeProvider(AIProvider):
    """In-memory provider with scripted answers and call recording."""

    name = "fake"
    capabilities = frozenset(Capability)

    def __init__(self):
        self.vectors: Dict[str, List[float]] = {}
        self.default_vector: Optional[List[float]] = None
        self.embed_error: Optional[Exception] = None
        self.embed_calls: List[List[str]] = []

        self.stream_blocks: List[bytes] = []
        self.stream_error: Optional[Exception] = None
        self.fail_after = 0  # blocks delivered before stream_error is raised
        self.stream_calls: List[List[Dict[str, Any]]] = []

        self.vision_answer = "图片中的支架安装位置正确。"
        self.vision_error: Optional[Exception] = None
        self.vision_calls: List[str] = []

        self.transcript = "如何安装"
        self.transcribe_error: Optional[Exception] = None

    async def embed(self, texts, config):
        self.embed_calls.append(list(texts))
        if self.embed_error is not None:
            raise self.embed_error
        fallback = self.default_vector or [0.0] * config.embedding_dim
        return [list(self.vectors.get(t, fallback)) for t in texts]

    async def stream_chat(self, messages, config, params=None):
        self.stream_calls.append(messages)
        for i, block in enumerate(self.stream_blocks):
            if self.stream_error is not None and i >= self.fail_after:
                raise self.stream_error
            yield block
        if self.stream_error is not None:
            raise self.stream_error

    async def complete(self, messages, config, params=None):
        return "ok"

    async def analyze_image(self, image_url, prompt, config):
        self.vision_calls.append(prompt)
        if self.vision_error is not None:
            raise self.vision_error
        return self.vision_answer

    async def transcribe(self, audio_b64, config, audio_format="wav"):
        if self.transcribe_error is not None:
            raise self.transcribe_error
        return self.transcript


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def provider_config():
    """Config with a plausible key and small vectors."""
    return ProviderConfig(api_key=TEST_API_KEY, embedding_dim=4)


@pytest.fixture
def offline_config():
    return ProviderConfig(api_key=None, embedding_dim=4)


@pytest.fixture
def knowledge_base():
    return [
        KnowledgeItem(id="kb-install", title="安装指南", content="先固定支架，再连接电源线。", tags=["安装"]),
        KnowledgeItem(id="kb-clean", title="清洁保养", content="每月用软布擦拭表面。", tags=["保养"]),
        KnowledgeItem(id="kb-reset", title="Factory Reset", content="Hold the power button for ten seconds.",
                      tags=["reset"]),
    ]
