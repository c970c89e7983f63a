from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from uuid import uuid4

import orjson
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse, Response, StreamingResponse
from loguru import logger

from support_rag import config as CFG
from support_rag.circuit_breaker import get_all_circuit_breakers
from support_rag.config import ProviderConfig
from support_rag.logging_config import setup_logging
from support_rag.metrics import get_content_type, get_metrics, track_request
from support_rag.models import (
    ChatRequest,
    ChatResponse,
    ChatRole,
    ChatTurnResult,
    HealthResponse,
    RetrievedItem,
    RetrieveRequest,
    RetrieveResponse,
    StreamChunk,
    TranscribeRequest,
)
from support_rag.orchestrator import ChatOrchestrator
from support_rag.providers.registry import close_providers
from support_rag.session_manager import get_session_manager

ORCHESTRATOR: Optional[ChatOrchestrator] = None


def get_orchestrator() -> ChatOrchestrator:
    global ORCHESTRATOR
    if ORCHESTRATOR is None:
        ORCHESTRATOR = ChatOrchestrator()
    return ORCHESTRATOR


def _provider_config(api_key: Optional[str], multimodal_enabled: bool = True) -> ProviderConfig:
    return ProviderConfig.from_env(session_key=api_key, multimodal_enabled=multimodal_enabled)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: logging and shared clients. Shutdown: close provider connections."""
    setup_logging()
    get_orchestrator()
    logger.info(f"support-rag API starting: {CFG.health_summary()}")
    yield
    try:
        await close_providers()
    except Exception as e:
        logger.warning(f"Error closing provider clients: {e}")


app = FastAPI(title="support-rag", default_response_class=ORJSONResponse, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CFG.CORS_ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every request with timing and status."""
    request_id = str(uuid4())
    start_time = time.time()
    logger.info(
        f"[{request_id}] → {request.method} {request.url.path} "
        f"client={request.client.host if request.client else 'unknown'}"
    )

    response = await call_next(request)
    duration = time.time() - start_time

    if request.url.path != "/metrics":
        track_request(endpoint=request.url.path, method=request.method,
                      status=response.status_code, duration=duration)

    response.headers["X-Request-ID"] = request_id
    logger.info(
        f"[{request_id}] ← {request.method} {request.url.path} "
        f"status={response.status_code} duration={duration:.3f}s"
    )
    return response


@app.get("/healthz", response_model=HealthResponse)
def healthz() -> HealthResponse:
    breakers = get_all_circuit_breakers()
    degraded = any(b["state"] == "open" for b in breakers.values())
    return HealthResponse(
        status="degraded" if degraded else "ok",
        config=CFG.health_summary(),
        sessions=get_session_manager().get_stats(),
        breakers=breakers,
    )


@app.get("/config")
def config() -> Dict[str, Any]:
    """Effective non-secret provider settings."""
    return ProviderConfig.from_env().redacted()


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type=get_content_type())


def _start_turn(req: ChatRequest):
    sessions = get_session_manager()
    session = sessions.get_or_create(req.session_id, welcome_message=req.project.welcome_message)
    sessions.append_message(session.session_id, ChatRole.USER, req.message, image=req.image)
    return session.session_id


def _finish_turn(session_id: str, result: ChatTurnResult) -> None:
    get_session_manager().append_message(session_id, ChatRole.ASSISTANT, result.text)


@app.post("/chat", response_model=ChatResponse)
async def chat(req: ChatRequest) -> ChatResponse:
    """Run one chat turn and return the whole answer."""
    t0 = time.time()
    session_id = _start_turn(req)
    result = await get_orchestrator().respond(
        req.message,
        req.knowledge_base,
        _provider_config(req.api_key, req.project.multimodal_enabled),
        image=req.image,
        project=req.project,
    )
    _finish_turn(session_id, result)
    return ChatResponse(
        session_id=session_id,
        answer=result.text,
        path=result.path,
        error_kind=result.error_kind,
        sources=result.sources,
        latency_ms=int((time.time() - t0) * 1000),
    )


def _sse(event: Dict[str, Any]) -> str:
    return f"data: {orjson.dumps(event).decode()}\n\n"


@app.post("/chat/stream")
async def chat_stream(req: ChatRequest) -> StreamingResponse:
    """
    Streaming chat turn as Server-Sent Events.

    Each chunk is sent as {"type": "chunk", "text", "is_done", "finish_reason"};
    a final {"type": "done", ...} event carries the branch taken and session id.
    """
    t0 = time.time()
    session_id = _start_turn(req)
    config_ = _provider_config(req.api_key, req.project.multimodal_enabled)
    queue: asyncio.Queue = asyncio.Queue()

    async def on_chunk(text: str, is_done: bool, finish_reason: Optional[str]) -> None:
        await queue.put(StreamChunk(text=text, is_done=is_done, finish_reason=finish_reason))

    async def run_turn() -> ChatTurnResult:
        try:
            return await get_orchestrator().respond(
                req.message, req.knowledge_base, config_,
                on_chunk=on_chunk, image=req.image, project=req.project,
            )
        finally:
            await queue.put(None)

    async def generate_stream():
        task = asyncio.create_task(run_turn())
        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                yield _sse({"type": "chunk", **chunk.model_dump()})

            result = await task
            _finish_turn(session_id, result)
            yield _sse({
                "type": "done",
                "session_id": session_id,
                "path": result.path.value,
                "error_kind": result.error_kind,
                "sources": result.sources,
                "total_latency_ms": int((time.time() - t0) * 1000),
            })
        except Exception as e:
            logger.error(f"Streaming chat failed: {e}")
            yield _sse({"type": "error", "error": "internal error"})
        finally:
            # Client went away: stop the upstream call
            if not task.done():
                task.cancel()

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@app.post("/retrieve", response_model=RetrieveResponse)
async def retrieve(req: RetrieveRequest) -> RetrieveResponse:
    """Rank knowledge items for a query; embeddings are not echoed back."""
    t0 = time.time()
    result = await get_orchestrator().retriever.retrieve_scored(
        req.query, req.knowledge_base, _provider_config(req.api_key),
        threshold=req.threshold, top_k=req.top_k,
    )
    return RetrieveResponse(
        query=req.query,
        strategy=result.strategy,
        results=[
            RetrievedItem(
                id=s.item.id, title=s.item.title, content=s.item.content,
                type=s.item.type, tags=s.item.tags, score=round(s.score, 4),
            )
            for s in result.scored
        ],
        latency_ms=int((time.time() - t0) * 1000),
    )


@app.post("/speech/transcribe")
async def transcribe(req: TranscribeRequest) -> Dict[str, str]:
    text = await get_orchestrator().transcribe(
        req.audio, _provider_config(req.api_key), project=req.project, audio_format=req.format
    )
    return {"text": text}


def main() -> None:
    import uvicorn

    uvicorn.run("support_rag.server:app", host=CFG.HOST, port=CFG.PORT)


if __name__ == "__main__":
    main()
