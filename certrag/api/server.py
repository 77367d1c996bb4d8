"""
FAA Certification RAG - FastAPI Application
HTTP surface: question answering, health, cache listing and reindexing.
"""

import json
import time
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError

from certrag import __version__
from certrag.core.config import get_settings
from certrag.core.logging import setup_logging
from certrag.core.schemas import (
    AskRequest,
    AskResponse,
    ConversationTurn,
    HealthResponse,
    QueueStats,
    ReindexedDocument,
    ReindexRequest,
    ReindexResponse,
    TurnRole,
)
from certrag.rag.llm import LLMRateLimitError
from certrag.services import ServiceContainer, build_services


RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait a moment and try again."
QUESTION_REQUIRED_MESSAGE = "Question is required and must be a non-empty string"

# Search terms used to discover documents when rebuilding the index
REINDEX_TOPICS: Dict[str, List[str]] = {
    "AC": [
        "airworthiness", "type certification", "structures", "flight test",
        "powerplant", "avionics", "systems", "maintenance",
    ],
    "AD": ["airworthiness directive", "inspection", "replacement"],
    "TSO": ["equipment", "avionics", "navigation", "communication"],
    "Order": ["certification", "airworthiness", "designee"],
}


def error_response(status_code: int, error: str) -> JSONResponse:
    """Failure body: populated error, empty answer, sources and context."""
    return JSONResponse(status_code=status_code, content=AskResponse.failure(error).to_wire())


def _now_ms() -> int:
    return int(time.time() * 1000)


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the application.

    Services passed in are used as-is; otherwise they are built from settings
    on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging("api")
        logger.info("FAA Certification RAG starting up...")
        owned = app.state.services is None
        if owned:
            app.state.services = build_services()

        yield

        logger.info("FAA Certification RAG shutting down...")
        if owned:
            await app.state.services.close()
            app.state.services = None

    app = FastAPI(
        title="FAA Certification RAG",
        description="""
        Question answering over FAA aircraft-certification material.

        Sources:
        - Hybrid search index (eCFR sections and DRS document chunks)
        - Electronic Code of Federal Regulations (14 CFR)
        - FAA Dynamic Regulatory System (advisory circulars, ADs, TSOs, orders)
        """,
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_settings().cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_services() -> ServiceContainer:
        return app.state.services

    # =========================================================================
    # Chat
    # =========================================================================

    @app.post(
        "/api/ask",
        tags=["Chat"],
        response_model=AskResponse,
        response_model_by_alias=True,
        response_model_exclude_none=True,
        openapi_extra={
            "requestBody": {
                "required": True,
                "content": {"application/json": {"schema": AskRequest.model_json_schema(by_alias=True)}},
            }
        },
    )
    async def ask(request: Request):
        """
        Answer a question from FAA regulations and guidance.

        Body: AskRequest. A new session id is generated when none is given;
        both turns are appended to the session's conversation. Invalid bodies
        get a 400 with the AskResponse error shape, not a 422.
        """
        try:
            body = json.loads(await request.body() or b"null")
        except ValueError:
            body = None

        if body is None:
            return error_response(400, "Request body is required")

        try:
            ask_request = AskRequest.model_validate(body)
        except ValidationError as e:
            fields = {str(err["loc"][0]) for err in e.errors() if err.get("loc")}
            if not fields or "question" in fields:
                return error_response(400, QUESTION_REQUIRED_MESSAGE)
            return error_response(400, f"Invalid request fields: {', '.join(sorted(fields))}")

        question = (ask_request.question or "").strip()
        if not question:
            return error_response(400, QUESTION_REQUIRED_MESSAGE)

        services = get_services()
        conversations = services.conversations

        try:
            session_id = ask_request.session_id or conversations.generate_session_id()
            conversation = await conversations.get(session_id)
            logger.info(f"Ask request: '{question[:100]}' session={session_id}")

            result = await services.pipeline.ask_question(
                question,
                session_id=session_id,
                is_clarifying=ask_request.is_clarifying,
                conversation=conversation,
            )

            if conversation is None:
                conversation = conversations.new_conversation(session_id)
            conversation.turns.append(ConversationTurn(role=TurnRole.USER, content=question, timestamp=_now_ms()))
            conversation.turns.append(ConversationTurn(
                role=TurnRole.ASSISTANT,
                content=result.answer,
                timestamp=_now_ms(),
                sources=result.sources,
                is_clarifying=bool(result.needs_clarification),
            ))
            await conversations.save(conversation)

            result.session_id = session_id
            return JSONResponse(status_code=200, content=result.to_wire())

        except LLMRateLimitError as e:
            logger.warning(f"Rate limit: {e}")
            return error_response(429, RATE_LIMIT_MESSAGE)
        except Exception as e:
            logger.error(f"Error processing request: {e}")
            return error_response(500, f"Internal server error: {e}")

    # =========================================================================
    # System
    # =========================================================================

    @app.get("/api/health", tags=["System"])
    async def health():
        """Credential/service availability and index queue statistics. Never fails."""
        services = get_services()
        queue = services.queue
        try:
            queue_stats = await queue.get_queue_stats()
        except Exception as e:
            logger.warning(f"Queue stats unavailable: {e}")
            queue_stats = QueueStats(enabled=queue.is_enabled, queue_name=queue.queue_name)

        response = HealthResponse(
            status="ok",
            version=__version__,
            has_llm_key=services.llm.is_available,
            has_search_index=services.index.is_available,
            has_embedding_service=services.embeddings.is_available,
            has_drs_api_key=services.drs.is_available,
            has_blob_storage=services.cache.durable,
            index_queue=queue_stats,
        )
        content = response.to_wire()
        content["indexQueue"] = queue_stats.to_wire()
        return content

    @app.get("/api/cache", tags=["System"])
    async def list_cache():
        """Document cache contents: totals, counts by namespace and recent entries."""
        try:
            return await get_services().cache.describe()
        except Exception as e:
            logger.error(f"Cache list failed: {e}")
            return JSONResponse(status_code=500, content={"error": str(e)})

    # =========================================================================
    # Indexing
    # =========================================================================

    @app.post("/api/reindex", tags=["Indexing"])
    async def reindex(request: Optional[ReindexRequest] = None):
        """
        Queue DRS documents for background indexing.

        Searches a fixed set of topic terms per document type, deduplicates by
        document GUID and enqueues up to `limit` documents per type. With
        clearIndex the whole index is deleted first.
        """
        request = request or ReindexRequest()
        services = get_services()

        if not services.queue.is_enabled:
            raise HTTPException(status_code=503, detail="Index queue not configured")
        if not services.drs.is_available:
            raise HTTPException(status_code=503, detail="DRS_API_KEY not configured")

        cleared = False
        if request.clear_index and services.index.is_available:
            try:
                cleared = await services.index.clear()
            except Exception as e:
                logger.error(f"Index clear failed: {e}")
                raise HTTPException(status_code=500, detail=f"Index clear failed: {e}")

        seen_guids = set()
        to_enqueue = []
        for doc_type in request.doc_types:
            found_for_type = 0
            for term in REINDEX_TOPICS.get(doc_type, [doc_type]):
                if found_for_type >= request.limit:
                    break
                try:
                    results = await services.drs.search_documents_filtered(
                        [term], doc_type, max_results=request.limit
                    )
                except Exception as e:
                    logger.warning(f"Reindex search '{term}' ({doc_type}) failed: {e}")
                    continue

                for doc in results:
                    if found_for_type >= request.limit:
                        break
                    if not doc.document_guid or doc.document_guid in seen_guids:
                        continue
                    seen_guids.add(doc.document_guid)
                    to_enqueue.append((doc, doc_type))
                    found_for_type += 1

        logger.info(f"Reindex: found {len(to_enqueue)} documents across {request.doc_types}")
        enqueued = await services.queue.enqueue_for_indexing(to_enqueue)

        return ReindexResponse(
            cleared=cleared,
            found=len(to_enqueue),
            enqueued=enqueued,
            documents=[
                ReindexedDocument(
                    doc_type=doc_type,
                    document_number=doc.document_number,
                    title=doc.title,
                    document_guid=doc.document_guid,
                )
                for doc, doc_type in to_enqueue
            ],
        ).to_wire()

    return app


app = create_app()
