"""
Pydantic Data Models for the support chat pipeline

Provides structured, type-safe data definitions for:
- Knowledge items and retrieval results
- Chat messages and stream chunks
- Project configuration consumed by the orchestrator
- HTTP request and response schemas
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from support_rag import config as CFG


def _now_ms() -> int:
    return int(time.time() * 1000)


# ============================================================================
# Enums
# ============================================================================


class KnowledgeType(str, Enum):
    """Source type of a knowledge item; informational only for retrieval."""
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    PDF = "pdf"
    DOC = "doc"


class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ChatState(str, Enum):
    """Per-turn orchestrator states."""
    IDLE = "idle"
    RETRIEVING = "retrieving"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"


class ResponsePath(str, Enum):
    """Which branch produced the assistant answer."""
    GROUNDED = "grounded"
    VISION = "vision"
    CANNED = "canned"
    DISABLED = "disabled"
    REJECTED = "rejected"


# ============================================================================
# Knowledge Models
# ============================================================================


class KnowledgeItem(BaseModel):
    """A unit of groundable knowledge."""

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {
            "id": "kb-1",
            "title": "Installation Guide",
            "content": "Mount the bracket, then connect the power cable.",
            "type": "text",
            "tags": ["install"],
        }
    })

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Stable identifier")
    title: str = Field(default="", description="Item title")
    content: str = Field(default="", description="Primary retrieval target")
    type: KnowledgeType = Field(default=KnowledgeType.TEXT)
    tags: List[str] = Field(default_factory=list, description="Short labels used for lexical scoring")
    embedding: Optional[List[float]] = Field(default=None, description="Vector, absent until vectorized")
    version: int = Field(default=0, ge=0, description="Bumped whenever the embedding is recomputed")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_size: Optional[int] = Field(default=None, alias="fileSize", ge=0)
    created_at: int = Field(default_factory=_now_ms, alias="createdAt", description="Epoch millis")

    def has_valid_embedding(self, dim: int) -> bool:
        return self.embedding is not None and len(self.embedding) == dim

    def with_embedding(self, vector: List[float]) -> "KnowledgeItem":
        """Return a copy carrying a fresh embedding and a bumped version."""
        return self.model_copy(update={"embedding": list(vector), "version": self.version + 1})


class ScoredItem(BaseModel):
    """Item paired with the score it earned in one retrieval call; never persisted."""

    item: KnowledgeItem
    score: float


class AssembledPrompt(BaseModel):
    system: str
    user: str


# ============================================================================
# Chat Models
# ============================================================================


class ChatMessage(BaseModel):
    """One entry in a conversation transcript."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: ChatRole
    content: str = ""
    image: Optional[str] = Field(default=None, description="Data URI of an attached image")
    timestamp: int = Field(default_factory=_now_ms)


class StreamChunk(BaseModel):
    """Transient piece of one assistant turn. The final chunk carries is_done=True."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    is_done: bool = False
    finish_reason: Optional[str] = None


DEFAULT_SYSTEM_INSTRUCTION = (
    "你是一名专业的产品售后智能客服，负责解答用户关于产品安装、使用、故障排查和维护保养的问题。"
)
DEFAULT_WELCOME_MESSAGE = "您好！我是智能客服助手，请问有什么可以帮您？"
DEFAULT_VISION_PROMPT = "请分析这张图片中的产品安装或使用情况，指出可能存在的问题并给出建议。"


class ProjectConfig(BaseModel):
    """Per-project knobs the orchestrator reads but never mutates."""

    model_config = ConfigDict(populate_by_name=True)

    provider: str = Field(default=CFG.PROVIDER)
    system_instruction: str = Field(default=DEFAULT_SYSTEM_INSTRUCTION, alias="systemInstruction")
    multimodal_enabled: bool = Field(default=True, alias="multimodalEnabled")
    vision_prompt: str = Field(default=DEFAULT_VISION_PROMPT, alias="visionPrompt")
    welcome_message: str = Field(default=DEFAULT_WELCOME_MESSAGE, alias="welcomeMessage")
    support_phone: str = Field(default="400-888-6666", alias="supportPhone")
    support_website: str = Field(default="www.aivirtualservice.com", alias="supportWebsite")
    company_name: str = Field(default="中恒创世", alias="companyName")
    search_threshold: float = Field(default=CFG.SIMILARITY_THRESHOLD, ge=-1.0, le=1.0, alias="searchThreshold")
    max_context_items: int = Field(default=CFG.TOP_K, ge=1, le=20, alias="maxContextItems")


class ChatTurnResult(BaseModel):
    """Outcome of one respond() call."""

    text: str = ""
    path: ResponsePath
    states: List[ChatState] = Field(default_factory=list)
    error_kind: Optional[str] = None
    finish_reason: Optional[str] = None
    sources: List[str] = Field(default_factory=list, description="Titles of the grounding items")

    @property
    def final_state(self) -> Optional[ChatState]:
        return self.states[-1] if self.states else None


# ============================================================================
# HTTP Request / Response Models
# ============================================================================


class ChatRequest(BaseModel):
    """Request for one grounded chat turn."""

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {
            "message": "如何安装这款产品？",
            "session_id": "3f2c...",
            "project": {"companyName": "中恒创世"},
            "knowledge_base": [
                {"id": "kb-1", "title": "安装指南", "content": "先固定支架，再连接电源。"}
            ],
        }
    })

    message: str = Field(default="", max_length=2000, description="User text")
    image: Optional[str] = Field(default=None, description="Image as a data URI")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    api_key: Optional[str] = Field(default=None, alias="apiKey", description="Session-scoped key override")
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    knowledge_base: List[KnowledgeItem] = Field(default_factory=list, alias="knowledgeBase")

    @field_validator("image")
    @classmethod
    def _image_is_data_uri(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith("data:image/"):
            raise ValueError("image must be a data:image/... URI")
        return v

    @model_validator(mode="after")
    def _needs_text_or_image(self) -> "ChatRequest":
        if not self.message.strip() and not self.image:
            raise ValueError("message or image is required")
        return self


class RetrieveRequest(BaseModel):
    """Request for ranked knowledge retrieval only."""

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., min_length=1, max_length=2000)
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    knowledge_base: List[KnowledgeItem] = Field(default_factory=list, alias="knowledgeBase")
    top_k: Optional[int] = Field(default=None, ge=1, le=20)
    threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)


class RetrievedItem(BaseModel):
    """Knowledge item as returned over HTTP; embeddings are never echoed."""

    id: str
    title: str
    content: str
    type: KnowledgeType
    tags: List[str] = Field(default_factory=list)
    score: float


class RetrieveResponse(BaseModel):
    query: str
    strategy: str = Field(description="vector or keyword")
    results: List[RetrievedItem]
    latency_ms: int = Field(ge=0)


class ChatResponse(BaseModel):
    session_id: Optional[str] = None
    answer: str
    path: ResponsePath
    error_kind: Optional[str] = None
    sources: List[str] = Field(default_factory=list)
    latency_ms: int = Field(ge=0)


class HealthResponse(BaseModel):
    status: str
    config: Dict[str, Any] = Field(default_factory=dict)
    sessions: Dict[str, Any] = Field(default_factory=dict)
    breakers: Dict[str, Any] = Field(default_factory=dict)


class TranscribeRequest(BaseModel):
    """Voice message to transcribe."""

    model_config = ConfigDict(populate_by_name=True)

    audio: str = Field(..., min_length=1, description="Base64-encoded audio")
    format: str = Field(default="wav", pattern=r"^(wav|mp3)$")
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    project: ProjectConfig = Field(default_factory=ProjectConfig)
