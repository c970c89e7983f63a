"""
Test Suite for the chat orchestrator

Tests cover:
- Grounded path: retrieval, prompt assembly, streaming, state trail
- Canned path without a credential or with an open circuit breaker
- Failure classification and degradation during retrieval and streaming
- Vision branch, disabled multimodal, rejected input
- Speech transcription fallback
"""

import asyncio
from unittest.mock import Mock

import pytest

from conftest import FakeProvider, delta, sse
from support_rag.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from support_rag.config import ProviderConfig
from support_rag.errors import (
    AuthenticationError,
    CredentialMissingError,
    ErrorKind,
    ProviderError,
    ProviderNetworkError,
    RateLimitedError,
    ServiceUnavailableError,
    user_message,
)
from support_rag.fallback import MULTIMODAL_DISABLED_MESSAGE, NO_KNOWLEDGE_NOTICE
from support_rag.llm_client import StreamingCompletionClient
from support_rag.models import ChatState, ProjectConfig, ResponsePath
from support_rag.orchestrator import ChatOrchestrator, counts_against_breaker
from support_rag.prompt import PromptAssembler
from support_rag.validation import REJECTED_MESSAGES

IMAGE = "data:image/png;base64,iVBORw0KGgo="


def _orchestrator(provider, breaker=None, retries=1, smoothing_ms=0) -> ChatOrchestrator:
    return ChatOrchestrator(
        provider=provider,
        completion=StreamingCompletionClient(provider=provider, smoothing_ms=smoothing_ms),
        breaker=breaker,
        canned_delay_ms=0,
        retries=retries,
        backoff=0,
    )


def _calls(on_chunk: Mock):
    return [c.args for c in on_chunk.call_args_list]


def _assert_single_terminal(on_chunk: Mock):
    calls = _calls(on_chunk)
    assert calls, "on_chunk was never called"
    assert calls[-1][1] is True
    assert sum(1 for c in calls if c[1]) == 1


# ============================================================================
# Canned path
# ============================================================================

class TestNoCredential:
    """Without an API key the pipeline never reaches the provider."""

    @pytest.mark.asyncio
    async def test_install_question_terminates(self, fake_provider, offline_config, knowledge_base):
        on_chunk = Mock()

        result = await _orchestrator(fake_provider).respond("如何安装", knowledge_base, offline_config, on_chunk)

        _assert_single_terminal(on_chunk)
        assert result.path == ResponsePath.CANNED
        assert result.error_kind == ErrorKind.CREDENTIAL.value
        assert result.final_state == ChatState.DONE
        assert "".join(c[0] for c in _calls(on_chunk)) == result.text
        assert fake_provider.embed_calls == [] and fake_provider.stream_calls == []

    @pytest.mark.asyncio
    async def test_category_template_when_nothing_matches(self, fake_provider, offline_config):
        result = await _orchestrator(fake_provider).respond("如何安装", [], offline_config)

        assert result.text.startswith(NO_KNOWLEDGE_NOTICE)
        assert "关于产品安装" in result.text
        assert ProjectConfig().support_phone in result.text

    @pytest.mark.asyncio
    async def test_knowledge_answer_quotes_best_item(self, fake_provider, offline_config, knowledge_base):
        result = await _orchestrator(fake_provider).respond("安装", knowledge_base, offline_config)

        assert result.text.startswith('根据产品知识库，关于"安装"的信息')
        assert "先固定支架，再连接电源线。" in result.text

    @pytest.mark.asyncio
    async def test_project_contact_details_used(self, fake_provider, offline_config):
        project = ProjectConfig(support_phone="010-1234", company_name="Acme")
        result = await _orchestrator(fake_provider).respond("设备故障", [], offline_config, project=project)
        assert "010-1234" in result.text

    @pytest.mark.asyncio
    async def test_async_callback(self, fake_provider, offline_config):
        seen = []

        async def on_chunk(text, is_done, finish_reason):
            seen.append((text, is_done, finish_reason))

        await _orchestrator(fake_provider).respond("你好", [], offline_config, on_chunk)

        assert seen[-1] == ("", True, "stop")


# ============================================================================
# Grounded path
# ============================================================================

class TestGroundedAnswer:
    """Retrieve, assemble, stream."""

    @pytest.mark.asyncio
    async def test_streams_model_answer(self, fake_provider, provider_config, knowledge_base):
        fake_provider.default_vector = [1.0, 0.0, 0.0, 0.0]
        fake_provider.stream_blocks = [sse(delta("先固定"), delta("支架")), sse("[DONE]")]
        on_chunk = Mock()

        result = await _orchestrator(fake_provider).respond("安装步骤", knowledge_base, provider_config, on_chunk)

        assert _calls(on_chunk) == [("先固定", False, None), ("支架", False, None), ("", True, "stop")]
        assert result.path == ResponsePath.GROUNDED
        assert result.text == "先固定支架"
        assert result.states == [ChatState.IDLE, ChatState.RETRIEVING, ChatState.STREAMING, ChatState.DONE]
        assert result.sources == ["安装指南", "清洁保养", "Factory Reset"]

    @pytest.mark.asyncio
    async def test_prompt_contains_numbered_context(self, fake_provider, provider_config, knowledge_base):
        fake_provider.default_vector = [1.0, 0.0, 0.0, 0.0]
        fake_provider.stream_blocks = [sse("[DONE]")]

        await _orchestrator(fake_provider).respond(
            "安装步骤", knowledge_base, provider_config, system_instruction="You are Acme support."
        )

        system, user = fake_provider.stream_calls[0]
        assert system["content"].startswith("You are Acme support.")
        assert "[Knowledge Item 1: 安装指南]" in user["content"]
        assert user["content"].endswith("User Question: 安装步骤")

    @pytest.mark.asyncio
    async def test_no_match_prompt_says_so(self, fake_provider, provider_config, knowledge_base):
        fake_provider.vectors["保修期多久"] = [1.0, 0.0, 0.0, 0.0]
        fake_provider.default_vector = [0.0, 1.0, 0.0, 0.0]
        fake_provider.stream_blocks = [sse(delta("抱歉，没有相关信息"), "[DONE]")]

        result = await _orchestrator(fake_provider).respond("保修期多久", knowledge_base, provider_config)

        assert PromptAssembler.NO_INFORMATION_MARKER in fake_provider.stream_calls[0][1]["content"]
        assert result.sources == []

    @pytest.mark.asyncio
    async def test_lazy_embeddings_written_back(self, fake_provider, provider_config, knowledge_base):
        fake_provider.default_vector = [0.0, 0.0, 1.0, 0.0]
        fake_provider.stream_blocks = [sse("[DONE]")]

        await _orchestrator(fake_provider).respond("清洁", knowledge_base, provider_config)

        assert all(item.embedding == [0.0, 0.0, 1.0, 0.0] for item in knowledge_base)

    @pytest.mark.asyncio
    async def test_unknown_retrieval_error_still_asks_model(self, fake_provider, provider_config, knowledge_base):
        fake_provider.embed_error = ProviderError("bad request", status=400)
        fake_provider.stream_blocks = [sse(delta("ok"), "[DONE]")]

        result = await _orchestrator(fake_provider).respond("Factory reset", knowledge_base, provider_config)

        assert result.path == ResponsePath.GROUNDED
        assert result.sources == ["Factory Reset"]


# ============================================================================
# Degradation
# ============================================================================

class TestDegradation:
    """Provider failures become canned answers with a notice."""

    @pytest.mark.asyncio
    async def test_rate_limit_during_stream(self, fake_provider, provider_config, knowledge_base):
        fake_provider.default_vector = [1.0, 0.0, 0.0, 0.0]
        fake_provider.stream_error = RateLimitedError("busy")
        on_chunk = Mock()

        result = await _orchestrator(fake_provider).respond("如何安装", knowledge_base, provider_config, on_chunk)

        _assert_single_terminal(on_chunk)
        assert result.path == ResponsePath.CANNED
        assert result.error_kind == ErrorKind.RATE_LIMIT.value
        assert result.text.startswith(user_message(ErrorKind.RATE_LIMIT))
        assert ChatState.ERROR in result.states
        assert result.final_state == ChatState.DONE

    @pytest.mark.asyncio
    async def test_network_error_during_retrieval_skips_model(self, fake_provider, provider_config, knowledge_base):
        fake_provider.embed_error = ProviderNetworkError("connection refused")

        result = await _orchestrator(fake_provider).respond("安装", knowledge_base, provider_config)

        assert result.error_kind == ErrorKind.NETWORK.value
        assert result.text.startswith(user_message(ErrorKind.NETWORK))
        assert fake_provider.stream_calls == []

    @pytest.mark.asyncio
    async def test_partial_stream_then_failure(self, fake_provider, provider_config, knowledge_base):
        fake_provider.default_vector = [1.0, 0.0, 0.0, 0.0]
        fake_provider.stream_blocks = [sse(delta("部分回答"))]
        fake_provider.stream_error = ProviderNetworkError("reset by peer")
        fake_provider.fail_after = 1
        on_chunk = Mock()

        result = await _orchestrator(fake_provider).respond("安装", knowledge_base, provider_config, on_chunk)

        assert _calls(on_chunk)[0] == ("部分回答", False, None)
        assert _calls(on_chunk)[-1] == ("", True, "error")
        assert result.text == f"部分回答\n\n{user_message(ErrorKind.NETWORK)}"
        assert result.finish_reason == "error"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        RateLimitedError("busy"),
        AuthenticationError("bad key"),
        ServiceUnavailableError("down"),
        ProviderNetworkError("timeout", timed_out=True),
        ProviderError("server error", status=500),
        RuntimeError("unexpected"),
    ])
    async def test_never_raises(self, fake_provider, provider_config, knowledge_base, error):
        fake_provider.default_vector = [1.0, 0.0, 0.0, 0.0]
        fake_provider.stream_error = error
        on_chunk = Mock()

        result = await _orchestrator(fake_provider).respond("设备故障怎么办", knowledge_base, provider_config, on_chunk)

        _assert_single_terminal(on_chunk)
        assert result.text
        assert "{" not in result.text.split("\n")[0]

    @pytest.mark.asyncio
    async def test_open_breaker_short_circuits(self, fake_provider, provider_config, knowledge_base):
        breaker = CircuitBreaker(CircuitBreakerConfig(
            name="test", failure_threshold=2, failure_filter=counts_against_breaker,
        ))
        fake_provider.default_vector = [1.0, 0.0, 0.0, 0.0]
        fake_provider.stream_error = ServiceUnavailableError("down")
        orchestrator = _orchestrator(fake_provider, breaker=breaker)

        await orchestrator.respond("安装", knowledge_base, provider_config)
        await orchestrator.respond("安装", knowledge_base, provider_config)
        embeds_before = len(fake_provider.embed_calls)
        result = await orchestrator.respond("安装", knowledge_base, provider_config)

        assert breaker.is_open()
        assert len(fake_provider.stream_calls) == 2
        assert len(fake_provider.embed_calls) == embeds_before
        assert result.error_kind == ErrorKind.SERVICE_UNAVAILABLE.value

    def test_breaker_filter(self):
        assert counts_against_breaker(ServiceUnavailableError("down"))
        assert counts_against_breaker(ProviderNetworkError("refused"))
        assert not counts_against_breaker(AuthenticationError("bad key"))
        assert not counts_against_breaker(CredentialMissingError())
        assert not counts_against_breaker(RuntimeError("bug"))

    @pytest.mark.asyncio
    async def test_smoothed_partial_answer_kept_on_failure(self, fake_provider, provider_config, knowledge_base):
        fake_provider.default_vector = [1.0, 0.0, 0.0, 0.0]
        fake_provider.stream_blocks = [sse(delta("Model said this."))]
        fake_provider.stream_error = ProviderNetworkError("reset by peer")
        fake_provider.fail_after = 1

        result = await _orchestrator(fake_provider, smoothing_ms=30).respond("安装", knowledge_base, provider_config)

        assert result.path == ResponsePath.GROUNDED
        assert result.text.startswith("Model said this.")
        assert result.text.endswith(user_message(ErrorKind.NETWORK))
        assert result.finish_reason == "error"


class FlakyProvider(FakeProvider):
    """Fails the first N embedding and stream calls, then behaves normally."""

    def __init__(self, error, embed_failures=0, stream_failures=0):
        super().__init__()
        self.error = error
        self.embed_failures = embed_failures
        self.stream_failures = stream_failures

    async def embed(self, texts, config):
        if self.embed_failures > 0:
            self.embed_failures -= 1
            self.embed_calls.append(list(texts))
            raise self.error
        return await super().embed(texts, config)

    async def stream_chat(self, messages, config, params=None):
        self.stream_calls.append(messages)
        if self.stream_failures > 0:
            self.stream_failures -= 1
            raise self.error
        for block in self.stream_blocks:
            yield block


class SlowProvider(FakeProvider):
    """Sends one frame per interval and never finishes on its own schedule."""

    def __init__(self, frames=6, interval=0.1):
        super().__init__()
        self.frames = frames
        self.interval = interval

    async def stream_chat(self, messages, config, params=None):
        self.stream_calls.append(messages)
        for i in range(self.frames):
            await asyncio.sleep(self.interval)
            yield sse(delta(str(i)))
        yield sse("[DONE]")


# ============================================================================
# Retries
# ============================================================================

class TestRetries:
    """Transient provider failures are retried before anything is streamed."""

    @pytest.mark.asyncio
    async def test_stream_open_retried(self, provider_config, knowledge_base):
        provider = FlakyProvider(ServiceUnavailableError("down"), stream_failures=2)
        provider.default_vector = [1.0, 0.0, 0.0, 0.0]
        provider.stream_blocks = [sse(delta("ok"), "[DONE]")]

        result = await _orchestrator(provider, retries=3).respond("安装", knowledge_base, provider_config)

        assert result.path == ResponsePath.GROUNDED
        assert result.text == "ok"
        assert result.error_kind is None
        assert len(provider.stream_calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_last_attempt(self, provider_config, knowledge_base):
        provider = FlakyProvider(ServiceUnavailableError("down"), stream_failures=5)
        provider.default_vector = [1.0, 0.0, 0.0, 0.0]

        result = await _orchestrator(provider, retries=3).respond("安装", knowledge_base, provider_config)

        assert result.path == ResponsePath.CANNED
        assert result.error_kind == ErrorKind.SERVICE_UNAVAILABLE.value
        assert len(provider.stream_calls) == 3

    @pytest.mark.asyncio
    async def test_rejected_key_not_retried(self, fake_provider, provider_config, knowledge_base):
        fake_provider.default_vector = [1.0, 0.0, 0.0, 0.0]
        fake_provider.stream_error = AuthenticationError("bad key")

        result = await _orchestrator(fake_provider, retries=3).respond("安装", knowledge_base, provider_config)

        assert result.error_kind == ErrorKind.AUTHENTICATION.value
        assert len(fake_provider.stream_calls) == 1

    @pytest.mark.asyncio
    async def test_no_retry_after_first_chunk(self, fake_provider, provider_config, knowledge_base):
        fake_provider.default_vector = [1.0, 0.0, 0.0, 0.0]
        fake_provider.stream_blocks = [sse(delta("部分回答"))]
        fake_provider.stream_error = ProviderNetworkError("reset by peer")
        fake_provider.fail_after = 1

        result = await _orchestrator(fake_provider, retries=3).respond("安装", knowledge_base, provider_config)

        assert len(fake_provider.stream_calls) == 1
        assert result.text.startswith("部分回答")
        assert result.finish_reason == "error"

    @pytest.mark.asyncio
    async def test_embedding_retried(self, provider_config, knowledge_base):
        provider = FlakyProvider(ProviderNetworkError("connection refused"), embed_failures=1)
        provider.default_vector = [1.0, 0.0, 0.0, 0.0]
        provider.stream_blocks = [sse(delta("ok"), "[DONE]")]

        result = await _orchestrator(provider, retries=2).respond("安装", knowledge_base, provider_config)

        assert result.path == ResponsePath.GROUNDED
        assert result.error_kind is None
        assert provider.embed_calls[0] == provider.embed_calls[1]
        assert result.sources


# ============================================================================
# Deadline
# ============================================================================

class TestDeadline:
    """The whole streaming call is bounded by the configured timeout."""

    @pytest.mark.asyncio
    async def test_slow_stream_is_cut_off(self, knowledge_base):
        provider = SlowProvider(frames=6, interval=0.1)
        provider.default_vector = [1.0, 0.0, 0.0, 0.0]
        config = ProviderConfig(api_key="test-key-0123456789abcdef", embedding_dim=4, timeout_seconds=0.25)
        on_chunk = Mock()
        loop = asyncio.get_running_loop()
        start = loop.time()

        result = await _orchestrator(provider).respond("安装", knowledge_base, config, on_chunk)

        assert loop.time() - start < 0.55
        assert result.error_kind == ErrorKind.NETWORK.value
        assert result.finish_reason == "error"
        assert result.text.startswith("0")
        assert "5" not in result.text
        _assert_single_terminal(on_chunk)

    @pytest.mark.asyncio
    async def test_silent_stream_degrades_to_canned(self, knowledge_base):
        provider = SlowProvider(frames=1, interval=1.0)
        provider.default_vector = [1.0, 0.0, 0.0, 0.0]
        config = ProviderConfig(api_key="test-key-0123456789abcdef", embedding_dim=4, timeout_seconds=0.1)

        result = await _orchestrator(provider).respond("安装", knowledge_base, config)

        assert result.path == ResponsePath.CANNED
        assert result.error_kind == ErrorKind.NETWORK.value
        assert result.text.startswith(user_message(ErrorKind.NETWORK))


# ============================================================================
# Input validation
# ============================================================================

class TestRejectedInput:
    """Invalid text never reaches retrieval."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text,reason", [
        ("", "empty"),
        ("   ", "empty"),
        ("x" * 2001, "too_long"),
        ("<script>alert(1)</script>", "unsafe"),
    ])
    async def test_rejection(self, fake_provider, provider_config, text, reason):
        on_chunk = Mock()
        result = await _orchestrator(fake_provider).respond(text, [], provider_config, on_chunk)

        assert result.path == ResponsePath.REJECTED
        assert result.text == REJECTED_MESSAGES[reason]
        _assert_single_terminal(on_chunk)
        assert fake_provider.embed_calls == []


# ============================================================================
# Vision
# ============================================================================

class TestImageBranch:
    """Image turns skip retrieval."""

    @pytest.mark.asyncio
    async def test_multimodal_disabled(self, fake_provider, provider_config, knowledge_base):
        on_chunk = Mock()
        project = ProjectConfig(multimodal_enabled=False)

        result = await _orchestrator(fake_provider).respond(
            "看看这个", knowledge_base, provider_config, on_chunk, image=IMAGE, project=project
        )

        assert result.path == ResponsePath.DISABLED
        assert result.text == MULTIMODAL_DISABLED_MESSAGE
        assert result.final_state == ChatState.DONE
        assert fake_provider.vision_calls == [] and fake_provider.embed_calls == []
        _assert_single_terminal(on_chunk)

    @pytest.mark.asyncio
    async def test_vision_answer(self, fake_provider, provider_config, knowledge_base):
        on_chunk = Mock()

        result = await _orchestrator(fake_provider).respond(
            "支架装对了吗", knowledge_base, provider_config, on_chunk, image=IMAGE
        )

        assert result.path == ResponsePath.VISION
        assert result.text == fake_provider.vision_answer
        assert "支架装对了吗" in fake_provider.vision_calls[0]
        assert fake_provider.embed_calls == []
        _assert_single_terminal(on_chunk)

    @pytest.mark.asyncio
    async def test_vision_failure_degrades(self, fake_provider, provider_config):
        fake_provider.vision_error = ServiceUnavailableError("vision down")

        result = await _orchestrator(fake_provider).respond("", [], provider_config, image=IMAGE)

        assert result.path == ResponsePath.CANNED
        assert result.text.startswith(user_message(ErrorKind.SERVICE_UNAVAILABLE))
        assert "图片分析功能需要AI服务支持" in result.text

    @pytest.mark.asyncio
    async def test_image_without_credential(self, fake_provider, offline_config):
        result = await _orchestrator(fake_provider).respond("", [], offline_config, image=IMAGE)

        assert result.path == ResponsePath.CANNED
        assert result.error_kind == ErrorKind.CREDENTIAL.value
        assert fake_provider.vision_calls == []


# ============================================================================
# Speech
# ============================================================================

class TestTranscribe:
    """Speech to text with a fixed fallback hint."""

    @pytest.mark.asyncio
    async def test_transcript(self, fake_provider, provider_config):
        assert await _orchestrator(fake_provider).transcribe("UklGRg==", provider_config) == "如何安装"

    @pytest.mark.asyncio
    async def test_no_credential(self, fake_provider, offline_config):
        text = await _orchestrator(fake_provider).transcribe("UklGRg==", offline_config)
        assert "语音识别功能需要AI服务支持" in text

    @pytest.mark.asyncio
    async def test_provider_failure(self, fake_provider, provider_config):
        fake_provider.transcribe_error = ProviderNetworkError("refused")
        text = await _orchestrator(fake_provider).transcribe("UklGRg==", provider_config)
        assert "语音识别功能需要AI服务支持" in text
