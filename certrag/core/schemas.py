"""
FAA Certification RAG - Data Models
Pydantic models for the HTTP contract, stored conversations and queue messages.
Wire names are camelCase to match the chat frontend.
"""

from typing import List, Optional, Dict, Any
from enum import Enum
from pydantic import BaseModel, Field


class ApiModel(BaseModel):
    """Base model that accepts both field names and camelCase aliases."""

    class Config:
        populate_by_name = True

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# =============================================================================
# Source Citations
# =============================================================================

class CFRSource(ApiModel):
    """A 14 CFR section that contributed to an answer."""
    title: int = 14
    part: int
    section: str
    section_title: str = Field(default="", alias="sectionTitle")
    url: str = ""


class DRSSource(ApiModel):
    """A DRS document (AC, AD, TSO, Order) that contributed to an answer."""
    doc_type: str = Field(alias="docType")
    doc_number: str = Field(alias="docNumber")
    title: str


# =============================================================================
# Conversation Models
# =============================================================================

class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ConversationTurn(ApiModel):
    """One message in a multi-turn conversation. Timestamps are epoch milliseconds."""
    role: TurnRole
    content: str
    timestamp: int
    sources: Optional[List[str]] = None
    is_clarifying: Optional[bool] = Field(default=None, alias="isClarifying")


class StoredConversation(ApiModel):
    """Conversation state persisted per session."""
    session_id: str = Field(alias="sessionId")
    created_at: int = Field(alias="createdAt")
    updated_at: int = Field(alias="updatedAt")
    turns: List[ConversationTurn] = Field(default_factory=list)


# =============================================================================
# Background Indexing
# =============================================================================

class IndexQueueMessage(ApiModel):
    """Work item for the background index worker."""
    document_guid: str = Field(alias="documentGuid")
    document_number: str = Field(alias="documentNumber")
    title: str = ""
    doc_type: str = Field(alias="docType")
    download_url: str = Field(alias="downloadUrl")
    enqueued_at: str = Field(default="", alias="enqueuedAt")
    retry_count: int = Field(default=0, alias="retryCount")


class QueueStats(ApiModel):
    enabled: bool
    approximate_message_count: Optional[int] = Field(default=None, alias="approximateMessageCount")
    queue_name: str = Field(alias="queueName")

    def to_wire(self) -> Dict[str, Any]:
        # approximateMessageCount is reported as null when unknown
        return self.model_dump(by_alias=True)


# =============================================================================
# API Request/Response Models
# =============================================================================

class AskRequest(ApiModel):
    """Request to ask a question."""
    question: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    is_clarifying: bool = Field(default=False, alias="isClarifying")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "question": "What are the stall speed requirements for Part 23 airplanes?",
                "sessionId": None,
                "isClarifying": False,
            }
        }


class AskResponse(ApiModel):
    """Answer plus the sources and routing diagnostics behind it."""
    answer: str
    sources: List[str] = Field(default_factory=list)
    source_count: int = Field(default=0, alias="sourceCount")
    context: str = ""
    error: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    needs_clarification: Optional[bool] = Field(default=None, alias="needsClarification")
    clarifying_question: Optional[str] = Field(default=None, alias="clarifyingQuestion")
    ecfr_used: Optional[bool] = Field(default=None, alias="ecfrUsed")
    cfr_sources: Optional[List[CFRSource]] = Field(default=None, alias="cfrSources")
    drs_sources: Optional[List[DRSSource]] = Field(default=None, alias="drsSources")
    classification_used: Optional[bool] = Field(default=None, alias="classificationUsed")
    vector_search_used: Optional[bool] = Field(default=None, alias="vectorSearchUsed")

    @classmethod
    def failure(cls, error: str) -> "AskResponse":
        """User-visible failure: populated error, empty answer, sources and context."""
        return cls(answer="", sources=[], source_count=0, context="", error=error)


class HealthResponse(ApiModel):
    """Availability of each external credential/service."""
    status: str = "ok"
    version: str
    has_llm_key: bool = Field(alias="hasLlmKey")
    has_search_index: bool = Field(alias="hasSearchIndex")
    has_embedding_service: bool = Field(alias="hasEmbeddingService")
    has_drs_api_key: bool = Field(alias="hasDrsApiKey")
    has_blob_storage: bool = Field(alias="hasBlobStorage")
    index_queue: QueueStats = Field(alias="indexQueue")


class ReindexRequest(ApiModel):
    clear_index: bool = Field(default=False, alias="clearIndex")
    doc_types: List[str] = Field(default_factory=lambda: ["AC"], alias="docTypes")
    limit: int = Field(default=50, ge=1, le=1000)


class ReindexedDocument(ApiModel):
    doc_type: str = Field(alias="docType")
    document_number: str = Field(alias="documentNumber")
    title: str
    document_guid: str = Field(alias="documentGuid")


class ReindexResponse(ApiModel):
    cleared: bool
    found: int
    enqueued: int
    documents: List[ReindexedDocument] = Field(default_factory=list)
