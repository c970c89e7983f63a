"""
Streaming helpers shared by the completion client and the canned path.

- SSEDecoder: raw body bytes -> StreamChunks (UTF-8 safe across reads)
- ChunkCoalescer: batches small deltas onto a fixed emission cadence
- synthetic_chunks: replays a finished string through the same chunk contract
- deliver: pumps chunks into an on_chunk(text, is_done, finish_reason) callback
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import json
from contextlib import aclosing, nullcontext, suppress
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Tuple, Union

from loguru import logger

from support_rag import config as CFG
from support_rag import metrics
from support_rag.errors import MalformedStreamFrameError
from support_rag.models import StreamChunk

OnChunk = Callable[[str, bool, Optional[str]], Union[None, Awaitable[None]]]

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class SSEDecoder:
    """Incremental decoder for OpenAI-style `data: {json}` event streams.

    Feed it byte blocks exactly as they arrive. Multi-byte characters split
    across blocks are held back until complete; partial lines are buffered
    until their newline arrives. Once a terminal chunk is produced every
    later byte is ignored.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self.done = False
        self.skipped_frames = 0

    def feed(self, data: bytes) -> List[StreamChunk]:
        if self.done:
            return []
        self._pending += self._utf8.decode(data)
        chunks: List[StreamChunk] = []
        while not self.done and "\n" in self._pending:
            line, self._pending = self._pending.split("\n", 1)
            chunks.extend(self._parse_line(line))
        return chunks

    def flush(self) -> List[StreamChunk]:
        """Parse whatever is left once the body has ended."""
        if self.done:
            return []
        self._pending += self._utf8.decode(b"", final=True)
        line, self._pending = self._pending, ""
        return self._parse_line(line)

    def _parse_line(self, line: str) -> List[StreamChunk]:
        line = line.strip()
        if not line.startswith(DATA_PREFIX):
            # blank separators, comments, event:/id: fields
            return []
        payload = line[len(DATA_PREFIX):].strip()
        if not payload:
            return []
        if payload == DONE_SENTINEL:
            self.done = True
            return [StreamChunk(text="", is_done=True, finish_reason="stop")]

        try:
            frame = json.loads(payload)
        except json.JSONDecodeError as e:
            self._skip(MalformedStreamFrameError(f"Skipping unparseable SSE frame: {e.msg}", frame=payload))
            return []

        try:
            choice = frame["choices"][0]
        except (KeyError, IndexError, TypeError):
            # usage / keepalive frames carry no choices
            return []
        if not isinstance(choice, dict):
            self._skip(MalformedStreamFrameError("Skipping SSE frame with non-object choice", frame=payload))
            return []

        chunks: List[StreamChunk] = []
        delta = choice.get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            chunks.append(StreamChunk(text=content))

        finish_reason = choice.get("finish_reason")
        if finish_reason is not None:
            self.done = True
            chunks.append(StreamChunk(text="", is_done=True, finish_reason=str(finish_reason)))
        return chunks

    def _skip(self, err: MalformedStreamFrameError) -> None:
        self.skipped_frames += 1
        metrics.track_skipped_frame()
        logger.warning(f"{err.message} | frame={err.frame!r}")


class _Failure:
    __slots__ = ("error",)

    def __init__(self, error: BaseException):
        self.error = error


_END = object()


class ChunkCoalescer:
    """Buffering stage between a chunk producer and its consumer.

    Text deltas are accumulated and re-emitted at most once per interval.
    Order is preserved; the terminal chunk flushes the buffer and is
    forwarded immediately.
    """

    def __init__(self, interval_ms: int = CFG.SMOOTHING_INTERVAL_MS):
        self.interval = max(0, interval_ms) / 1000.0

    async def __call__(self, source: AsyncIterator[StreamChunk]) -> AsyncIterator[StreamChunk]:
        if self.interval <= 0:
            async for chunk in source:
                yield chunk
            return

        queue: asyncio.Queue = asyncio.Queue()

        async def pump() -> None:
            try:
                async for item in source:
                    await queue.put(item)
            except Exception as e:
                await queue.put(_Failure(e))
            else:
                await queue.put(_END)

        loop = asyncio.get_running_loop()
        producer = asyncio.create_task(pump())
        buffer: List[str] = []
        deadline: Optional[float] = None
        try:
            while True:
                timeout = None if deadline is None else max(0.0, deadline - loop.time())
                try:
                    item = await asyncio.wait_for(queue.get(), timeout)
                except asyncio.TimeoutError:
                    if buffer:
                        yield StreamChunk(text="".join(buffer))
                        buffer.clear()
                    deadline = None
                    continue

                if item is _END:
                    if buffer:
                        yield StreamChunk(text="".join(buffer))
                    return
                if isinstance(item, _Failure):
                    if buffer:
                        yield StreamChunk(text="".join(buffer))
                    raise item.error
                if item.text:
                    buffer.append(item.text)
                if item.is_done:
                    if buffer:
                        yield StreamChunk(text="".join(buffer))
                    yield StreamChunk(text="", is_done=True, finish_reason=item.finish_reason)
                    return
                if buffer and deadline is None:
                    deadline = loop.time() + self.interval
        finally:
            producer.cancel()
            with suppress(asyncio.CancelledError):
                await producer


async def synthetic_chunks(text: str, delay_ms: int = CFG.CANNED_CHAR_DELAY_MS) -> AsyncIterator[StreamChunk]:
    """Replay a finished answer character by character, then finish with 'stop'."""
    delay = max(0, delay_ms) / 1000.0
    for ch in text:
        yield StreamChunk(text=ch)
        if delay:
            await asyncio.sleep(delay)
        else:
            # let other tasks run between characters
            await asyncio.sleep(0)
    yield StreamChunk(text="", is_done=True, finish_reason="stop")


async def deliver(chunks: AsyncIterator[StreamChunk], on_chunk: Optional[OnChunk] = None) -> Tuple[str, Optional[str]]:
    """
    Forward every chunk to on_chunk in arrival order.

    on_chunk may be a plain function or a coroutine function. Nothing is
    forwarded after the terminal chunk.

    Returns:
        (full text, finish reason of the terminal chunk)
    """
    parts: List[str] = []
    finish_reason: Optional[str] = None
    closer = aclosing(chunks) if hasattr(chunks, "aclose") else nullcontext(chunks)
    async with closer as stream:
        async for chunk in stream:
            parts.append(chunk.text)
            if on_chunk is not None:
                result: Any = on_chunk(chunk.text, chunk.is_done, chunk.finish_reason)
                if inspect.isawaitable(result):
                    await result
            if chunk.is_done:
                finish_reason = chunk.finish_reason
                break
    return "".join(parts), finish_reason
