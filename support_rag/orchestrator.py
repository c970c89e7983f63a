"""
Chat orchestrator: one user turn in, one streamed assistant answer out.

Per-turn state machine: IDLE -> RETRIEVING -> STREAMING -> DONE, with ERROR
entered whenever a step fails. Failures never escape respond(): they are
classified and answered from the canned path through the same
on_chunk(text, is_done, finish_reason) contract, so the caller always sees
exactly one terminal chunk.

Branches:
- image + multimodal disabled: fixed notice, nothing else runs
- image + multimodal enabled: vision analysis (non-streaming), no retrieval
- no credential or open breaker: canned reply
- otherwise: retrieve -> assemble prompt -> stream completion

Retrieval and the completion stream are each bounded by config.timeout_seconds
as a whole. Transient failures (network, 408, 429, 5xx) are retried with
jittered exponential backoff, but a stream is never restarted once a chunk
reached the caller.
"""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from typing import Awaitable, List, MutableSequence, Optional, TypeVar

from loguru import logger

from support_rag import config as CFG
from support_rag import metrics
from support_rag.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, get_circuit_breaker
from support_rag.config import ProviderConfig
from support_rag.embeddings import EmbeddingClient
from support_rag.errors import (
    AuthenticationError,
    ErrorKind,
    InputValidationError,
    ProviderError,
    ProviderNetworkError,
    RateLimitedError,
    SupportRAGError,
    classify_error,
    format_error_for_logging,
    is_retryable,
    user_message,
)
from support_rag.fallback import MULTIMODAL_DISABLED_MESSAGE, CannedResponder
from support_rag.llm_client import StreamingCompletionClient
from support_rag.logging_config import log_structured
from support_rag.models import (
    ChatState,
    ChatTurnResult,
    KnowledgeItem,
    ProjectConfig,
    ResponsePath,
)
from support_rag.prompt import PromptAssembler
from support_rag.providers.base import AIProvider
from support_rag.providers.registry import get_provider
from support_rag.retrieval import KnowledgeRetriever, RetrievalResult
from support_rag.streaming import OnChunk, deliver, synthetic_chunks
from support_rag.validation import rejection_message, validate_text_input

T = TypeVar("T")

# Failure kinds that skip the model even though retrieval fell back to keywords
_DEGRADE_KINDS = {
    ErrorKind.AUTHENTICATION,
    ErrorKind.RATE_LIMIT,
    ErrorKind.NETWORK,
    ErrorKind.SERVICE_UNAVAILABLE,
}


def counts_against_breaker(error: BaseException) -> bool:
    """Provider failures only. A rejected key belongs to one session, not the provider."""
    return isinstance(error, (ProviderError, ProviderNetworkError)) and not isinstance(error, AuthenticationError)


class _Turn:
    """Bookkeeping for one respond() call."""

    def __init__(self, on_chunk: Optional[OnChunk]):
        self.states: List[ChatState] = [ChatState.IDLE]
        self.parts: List[str] = []
        self.done = False
        self._on_chunk = on_chunk

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def enter(self, state: ChatState) -> None:
        self.states.append(state)
        logger.debug(f"chat turn -> {state.value}")

    async def forward(self, text: str, is_done: bool, finish_reason: Optional[str]) -> None:
        if self.done:
            return
        self.parts.append(text)
        self.done = is_done
        if self._on_chunk is not None:
            result = self._on_chunk(text, is_done, finish_reason)
            if inspect.isawaitable(result):
                await result


class ChatOrchestrator:
    """Facade over retrieval, prompt assembly, streaming and the canned fallback."""

    def __init__(
        self,
        retriever: Optional[KnowledgeRetriever] = None,
        completion: Optional[StreamingCompletionClient] = None,
        responder: Optional[CannedResponder] = None,
        provider: Optional[AIProvider] = None,
        breaker: Optional[CircuitBreaker] = None,
        canned_delay_ms: int = CFG.CANNED_CHAR_DELAY_MS,
        retries: int = CFG.RETRIES,
        backoff: float = CFG.BACKOFF,
    ):
        self.retriever = retriever or KnowledgeRetriever(embedder=EmbeddingClient(provider=provider))
        self.completion = completion or StreamingCompletionClient(provider=provider)
        self.responder = responder or CannedResponder()
        self._provider = provider
        self._breaker = breaker
        self.canned_delay_ms = canned_delay_ms
        self.retries = max(1, retries)
        self.backoff = backoff

    def provider_for(self, config: ProviderConfig) -> AIProvider:
        return self._provider if self._provider is not None else get_provider(config)

    def breaker_for(self, config: ProviderConfig) -> CircuitBreaker:
        if self._breaker is not None:
            return self._breaker
        return get_circuit_breaker(
            config.provider,
            CircuitBreakerConfig(name=config.provider, failure_filter=counts_against_breaker),
        )

    async def respond(
        self,
        user_text: str,
        knowledge_base: MutableSequence[KnowledgeItem],
        config: ProviderConfig,
        on_chunk: Optional[OnChunk] = None,
        image: Optional[str] = None,
        project: Optional[ProjectConfig] = None,
        system_instruction: Optional[str] = None,
    ) -> ChatTurnResult:
        """
        Answer one user turn.

        Args:
            user_text: Raw user message (may be empty when an image is attached)
            knowledge_base: Project knowledge; items may be replaced in place with
                freshly embedded copies
            config: Provider context for this call (credential, models, timeout)
            on_chunk: Callback receiving (text, is_done, finish_reason), sync or async
            image: Optional image data URI
            project: Project knobs (multimodal flag, contact details, thresholds)
            system_instruction: Overrides project.system_instruction

        Returns:
            ChatTurnResult with the full answer, branch taken and state trail.
            Provider, credential, network and input failures never raise.
        """
        project = project or ProjectConfig()
        turn = _Turn(on_chunk)
        start = time.time()

        if image:
            result = await self._respond_image(turn, user_text, image, config, project)
        else:
            result = await self._respond_text(turn, user_text, knowledge_base, config, project, system_instruction)

        metrics.track_chat_turn(result.path.value)
        log_structured("chat_turn_completed", {
            "path": result.path.value,
            "error_kind": result.error_kind,
            "states": [s.value for s in result.states],
            "latency_ms": int((time.time() - start) * 1000),
            "answer_chars": len(result.text),
        })
        return result

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def _respond_text(
        self,
        turn: _Turn,
        user_text: str,
        knowledge_base: MutableSequence[KnowledgeItem],
        config: ProviderConfig,
        project: ProjectConfig,
        system_instruction: Optional[str],
    ) -> ChatTurnResult:
        try:
            query = validate_text_input(user_text)
        except InputValidationError as e:
            logger.info(f"Rejected user input: {e.message}")
            return await self._replay(turn, rejection_message(e), ResponsePath.REJECTED)

        if not config.has_credential:
            return await self._canned(turn, query, knowledge_base, project, ErrorKind.CREDENTIAL)

        breaker = self.breaker_for(config)
        if breaker.is_open():
            return await self._canned(turn, query, knowledge_base, project, ErrorKind.SERVICE_UNAVAILABLE)

        turn.enter(ChatState.RETRIEVING)
        try:
            retrieval = await self._retrieve(query, knowledge_base, config, project)
        except SupportRAGError as e:
            breaker.record_failure(e)
            return await self._fail(turn, e, query, knowledge_base, project)

        if retrieval.fallback_error is not None:
            breaker.record_failure(retrieval.fallback_error)
            kind = classify_error(retrieval.fallback_error)
            if kind in _DEGRADE_KINDS:
                return await self._fail(turn, retrieval.fallback_error, query, knowledge_base, project)
            logger.info(f"Vector retrieval failed ({kind.value}); continuing with keyword results")

        prompt = PromptAssembler.assemble(
            query, retrieval.items, system_instruction or project.system_instruction
        )

        turn.enter(ChatState.STREAMING)
        delay = self.backoff
        for attempt in range(1, self.retries + 1):
            try:
                _, finish_reason = await self._within_deadline(
                    self.completion.stream_complete(prompt.system, prompt.user, config, on_chunk=turn.forward),
                    config, "completion stream",
                )
                break
            except SupportRAGError as e:
                # Once a chunk reached the caller the answer cannot be restarted
                if turn.parts or not is_retryable(e) or attempt == self.retries:
                    breaker.record_failure(e)
                    return await self._fail(turn, e, query, knowledge_base, project)
                await self._back_off("completion", attempt, delay, e)
                delay *= 2
            except Exception as e:
                logger.exception(f"Unexpected streaming failure: {e}")
                return await self._fail(turn, e, query, knowledge_base, project)

        breaker.record_success()
        turn.enter(ChatState.DONE)
        return ChatTurnResult(
            text=turn.text,
            path=ResponsePath.GROUNDED,
            states=turn.states,
            finish_reason=finish_reason,
            sources=PromptAssembler.cited_titles(retrieval.items),
        )

    async def _respond_image(
        self,
        turn: _Turn,
        user_text: str,
        image: str,
        config: ProviderConfig,
        project: ProjectConfig,
    ) -> ChatTurnResult:
        if not (project.multimodal_enabled and config.multimodal_enabled):
            return await self._replay(turn, MULTIMODAL_DISABLED_MESSAGE, ResponsePath.DISABLED)

        if not config.has_credential:
            metrics.track_fallback(ErrorKind.CREDENTIAL.value)
            return await self._replay(
                turn, self.responder.image_answer(project), ResponsePath.CANNED, ErrorKind.CREDENTIAL
            )

        prompt = project.vision_prompt
        if user_text and user_text.strip():
            prompt = f"{prompt}\n\n用户描述：{user_text.strip()}"

        turn.enter(ChatState.STREAMING)
        try:
            answer = await self.breaker_for(config).call(
                self.provider_for(config).analyze_image, image, prompt, config
            )
        except SupportRAGError as e:
            kind = self._record_error(turn, e)
            text = self.responder.image_answer(project)
            if kind != ErrorKind.UNKNOWN:
                text = f"{user_message(kind)}\n\n{text}"
            return await self._replay(turn, text, ResponsePath.CANNED, kind)

        _, finish_reason = await deliver(synthetic_chunks(answer, self.canned_delay_ms), turn.forward)
        turn.enter(ChatState.DONE)
        return ChatTurnResult(text=turn.text, path=ResponsePath.VISION, states=turn.states, finish_reason=finish_reason)

    # ------------------------------------------------------------------
    # Provider calls: deadline and retries
    # ------------------------------------------------------------------

    async def _retrieve(
        self,
        query: str,
        knowledge_base: MutableSequence[KnowledgeItem],
        config: ProviderConfig,
        project: ProjectConfig,
    ) -> RetrievalResult:
        """Retrieval with the embedding step retried on transient failures."""
        delay = self.backoff
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._within_deadline(
                    self.retriever.retrieve_scored(
                        query, knowledge_base, config,
                        threshold=project.search_threshold, top_k=project.max_context_items,
                    ),
                    config, "retrieval",
                )
            except SupportRAGError as e:
                if not is_retryable(e) or attempt == self.retries:
                    raise
                error = e
            else:
                error = result.fallback_error
                if error is None or not is_retryable(error) or attempt == self.retries:
                    return result
            await self._back_off("embedding", attempt, delay, error)
            delay *= 2

    @staticmethod
    async def _within_deadline(awaitable: Awaitable[T], config: ProviderConfig, what: str) -> T:
        """Bound the whole call, not just each socket read."""
        try:
            return await asyncio.wait_for(awaitable, timeout=config.timeout_seconds)
        except asyncio.TimeoutError:
            raise ProviderNetworkError(
                f"{what} exceeded {config.timeout_seconds}s",
                base_url=config.base_url,
                timed_out=True,
            )

    async def _back_off(self, what: str, attempt: int, delay: float, error: BaseException) -> None:
        # Jittered exponential backoff; honour Retry-After when the provider sends one
        if isinstance(error, RateLimitedError) and error.retry_after_seconds:
            delay = max(delay, error.retry_after_seconds)
        sleep_time = delay + random.uniform(0.0, 0.1 * delay)
        logger.debug(
            f"{what} attempt {attempt}/{self.retries} failed: {type(error).__name__}; "
            f"backing off {sleep_time:.2f}s"
        )
        metrics.track_retry(what)
        await asyncio.sleep(sleep_time)

    # ------------------------------------------------------------------
    # Degradation
    # ------------------------------------------------------------------

    def _record_error(self, turn: _Turn, error: BaseException) -> ErrorKind:
        turn.enter(ChatState.ERROR)
        kind = classify_error(error)
        metrics.track_fallback(kind.value)
        log_structured("chat_fallback", {"kind": kind.value, **format_error_for_logging(error)}, level="warning")
        return kind

    async def _fail(
        self,
        turn: _Turn,
        error: BaseException,
        query: str,
        knowledge_base: MutableSequence[KnowledgeItem],
        project: ProjectConfig,
    ) -> ChatTurnResult:
        kind = self._record_error(turn, error)

        if turn.text:
            # Part of the model answer already reached the caller; close it with a notice
            await turn.forward(f"\n\n{user_message(kind)}", False, None)
            await turn.forward("", True, "error")
            turn.enter(ChatState.DONE)
            return ChatTurnResult(text=turn.text, path=ResponsePath.GROUNDED, states=turn.states,
                                  error_kind=kind.value, finish_reason="error")

        text = self.responder.respond(query, knowledge_base, project, kind)
        return await self._replay(turn, text, ResponsePath.CANNED, kind)

    async def _canned(
        self,
        turn: _Turn,
        query: str,
        knowledge_base: MutableSequence[KnowledgeItem],
        project: ProjectConfig,
        kind: ErrorKind,
    ) -> ChatTurnResult:
        metrics.track_fallback(kind.value)
        text = self.responder.respond(query, knowledge_base, project, kind)
        return await self._replay(turn, text, ResponsePath.CANNED, kind)

    async def _replay(
        self,
        turn: _Turn,
        text: str,
        path: ResponsePath,
        kind: Optional[ErrorKind] = None,
    ) -> ChatTurnResult:
        """Deliver a finished string through the chunk contract."""
        if turn.states[-1] != ChatState.STREAMING:
            turn.enter(ChatState.STREAMING)
        _, finish_reason = await deliver(synthetic_chunks(text, self.canned_delay_ms), turn.forward)
        turn.enter(ChatState.DONE)
        return ChatTurnResult(
            text=turn.text,
            path=path,
            states=turn.states,
            error_kind=kind.value if kind is not None else None,
            finish_reason=finish_reason,
        )

    # ------------------------------------------------------------------
    # Speech
    # ------------------------------------------------------------------

    async def transcribe(
        self,
        audio_b64: str,
        config: ProviderConfig,
        project: Optional[ProjectConfig] = None,
        audio_format: str = "wav",
    ) -> str:
        """Speech to text; falls back to a fixed hint instead of raising."""
        project = project or ProjectConfig()
        if not config.has_credential:
            return self.responder.speech_answer(project)
        try:
            return await self.breaker_for(config).call(
                self.provider_for(config).transcribe, audio_b64, config, audio_format
            )
        except SupportRAGError as e:
            logger.warning(f"Speech recognition failed ({classify_error(e).value}): {e.message}")
            return self.responder.speech_answer(project)
