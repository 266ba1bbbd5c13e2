"""Pydantic request/response schemas for the API.

Defines the public contracts used by the FastAPI endpoints:
- QueryRequest: Input payload for the question-answering endpoints.
- Source: Per-entry citation returned alongside answers.
- QueryResponse: Answer, sources and retrieval metadata.
- IndexAccepted / EntryDeleted: Acknowledgements for indexing and deletion.
- ComponentStatus / SystemHealth / CompatibilityReport: Health check results.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from kb_rag.generation import AnswerMode


class QueryRequest(BaseModel):
    """Request body for asking a question.

    Attributes:
        question: The user question (3 to 500 characters).
        mode: Optional fidelity override; defaults to the configured toggles.
        user_id: Optional requesting user, echoed in metadata.
    """
    question: str = Field(..., min_length=3, max_length=500, description="User question")
    mode: Optional[AnswerMode] = Field(default=None, description="normal | strict | super_strict")
    user_id: Optional[str] = Field(default=None, max_length=128)


class Source(BaseModel):
    entry_id: int
    title: Optional[str] = None
    url: Optional[str] = None
    category: Optional[str] = None
    score: float


class QueryResponse(BaseModel):
    """Response body of POST /rag/query.

    Attributes:
        answer: The generated answer, or the configured no-data message.
        sources: One citation per knowledge entry used.
        metadata: items_used, mode, top_score, context_length, degraded_embedding,
            no_data, user_id and timings_ms.
    """
    answer: str
    sources: List[Source]
    metadata: Dict[str, Any]


class IndexAccepted(BaseModel):
    entry_id: int
    status: str = "queued"


class EntryDeleted(BaseModel):
    entry_id: int
    deleted: bool


class ComponentStatus(BaseModel):
    """Health of one component (embedding provider or vector store)."""
    component: str
    status: Literal["connected", "error", "no_active_provider", "no_embedding_support"]
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)


class SystemHealth(BaseModel):
    status: Literal["healthy", "unhealthy"]
    embedding: ComponentStatus
    vector_store: ComponentStatus


class CompatibilityReport(BaseModel):
    """Result of the pre-enable compatibility check.

    Attributes:
        status: no_active_provider | no_embedding_support | connected | error.
        can_enable: True only when retrieval features may be switched on.
        message: Human readable outcome.
        hint: Remediation hint for the administrator.
        provider: Active provider name and kind, when there is one.
        compatible_providers: Configured providers that can embed.
        repaired: Embedding fields auto-filled during the check.
    """
    status: Literal["no_active_provider", "no_embedding_support", "connected", "error"]
    can_enable: bool
    message: str
    hint: str = ""
    provider: Optional[Dict[str, Any]] = None
    compatible_providers: List[Dict[str, Any]] = Field(default_factory=list)
    repaired: List[str] = Field(default_factory=list)
    degraded_embedding: bool = False
