"""
FAA Certification RAG - Service Wiring
Builds the shared component graph used by the API server and the index worker.
"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from certrag.core.config import Settings, get_settings
from certrag.rag.blob_store import BlobStore, create_blob_store
from certrag.rag.chunking import SemanticChunker
from certrag.rag.conversation_store import ConversationStore
from certrag.rag.document_cache import DocumentCache
from certrag.rag.drs_client import DRSClient
from certrag.rag.ecfr_client import ECFRClient
from certrag.rag.embedding import EmbeddingService
from certrag.rag.index_queue import IndexProcessor, IndexQueue
from certrag.rag.llm import LLMService
from certrag.rag.pipeline import RAGPipeline
from certrag.rag.query_classifier import QueryClassifier
from certrag.rag.search_index import SearchIndex


@dataclass
class ServiceContainer:
    settings: Settings
    blob_store: BlobStore
    cache: DocumentCache
    conversations: ConversationStore
    llm: LLMService
    classifier: QueryClassifier
    ecfr: ECFRClient
    drs: DRSClient
    embeddings: EmbeddingService
    index: SearchIndex
    queue: IndexQueue
    chunker: SemanticChunker
    pipeline: RAGPipeline
    processor: IndexProcessor

    async def close(self) -> None:
        """Release HTTP and storage clients."""
        await self.pipeline.wait_for_background()
        for closeable in (self.ecfr, self.drs, self.embeddings, self.index, self.queue, self.blob_store):
            close = getattr(closeable, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning(f"Error closing {type(closeable).__name__}: {e}")


def build_services(settings: Optional[Settings] = None) -> ServiceContainer:
    """Construct every component from settings. Missing credentials degrade, never fail."""
    settings = settings or get_settings()

    blob_store = create_blob_store(settings.storage_connection_string)
    cache = DocumentCache(blob_store, settings.cache_container, settings.cache_ttl_default_hours)
    conversations = ConversationStore(
        blob_store,
        container=settings.conversation_container,
        ttl_days=settings.conversation_ttl_days,
        max_turns=settings.conversation_max_turns,
        max_assistant_chars=settings.conversation_max_assistant_chars,
    )

    llm = LLMService(
        api_key=settings.llm_api_key,
        endpoint=settings.llm_endpoint,
        model=settings.llm_model,
        max_tokens=settings.llm_max_tokens,
    )
    classifier = QueryClassifier(llm, cache=cache, cache_ttl_hours=settings.cache_ttl_classifier_hours)

    ecfr = ECFRClient(settings.ecfr_base_url)
    drs = DRSClient(
        cache,
        base_url=settings.drs_api_endpoint,
        api_key=settings.drs_api_key,
        timeout_seconds=settings.drs_timeout_seconds,
        max_attempts=settings.drs_max_attempts,
        cache_ttl_hours=settings.cache_ttl_drs_hours,
    )

    embeddings = EmbeddingService(
        endpoint=settings.azure_ai_services_endpoint,
        api_key=settings.azure_ai_services_key,
        model=settings.embedding_model,
        dimension=settings.embedding_dimension,
    )
    index = SearchIndex(
        settings.azure_search_endpoint,
        settings.azure_search_key,
        embeddings,
        index_name=settings.azure_search_index,
        api_version=settings.azure_search_api_version,
    )
    queue = IndexQueue(
        settings.storage_connection_string,
        queue_name=settings.index_queue_name,
        visibility_timeout=settings.queue_visibility_timeout,
        max_dequeue_count=settings.queue_max_dequeue_count,
    )
    chunker = SemanticChunker(
        llm,
        model=settings.effective_chunk_model,
        target_size=settings.chunk_target_size,
        min_size=settings.chunk_min_size,
        max_chunks=settings.chunk_max_per_doc,
        analysis_limit=settings.chunk_analysis_limit,
    )

    pipeline = RAGPipeline(
        settings,
        llm=llm,
        classifier=classifier,
        ecfr=ecfr,
        drs=drs,
        conversations=conversations,
        index=index,
        queue=queue,
    )
    processor = IndexProcessor(drs, index, chunker, max_chars=settings.index_max_chars)

    return ServiceContainer(
        settings=settings,
        blob_store=blob_store,
        cache=cache,
        conversations=conversations,
        llm=llm,
        classifier=classifier,
        ecfr=ecfr,
        drs=drs,
        embeddings=embeddings,
        index=index,
        queue=queue,
        chunker=chunker,
        pipeline=pipeline,
        processor=processor,
    )
