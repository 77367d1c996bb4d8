"""Retrieval, routing and indexing components for FAA Certification RAG."""
from certrag.rag.blob_store import BlobStore, MemoryBlobStore, AzureBlobStore, create_blob_store
from certrag.rag.document_cache import DocumentCache
from certrag.rag.ecfr_client import ECFRClient, RegulationSection
from certrag.rag.drs_client import DRSClient, RepositoryDocument, RepositoryError
from certrag.rag.search_evaluator import RetrievedDocument, SearchQuality, evaluate_search_results
from certrag.rag.llm import LLMService, LLMRateLimitError
from certrag.rag.query_classifier import QueryClassifier, QueryClassification, QueryIntent
from certrag.rag.chunking import SemanticChunker, DocumentChunk, ChunkingResult
from certrag.rag.embedding import EmbeddingService
from certrag.rag.search_index import SearchIndex, IndexDocument, SearchHit
from certrag.rag.index_queue import IndexQueue, IndexProcessor, ProcessOutcome
from certrag.rag.conversation_store import ConversationStore
from certrag.rag.pipeline import RAGPipeline

__all__ = [
    "BlobStore", "MemoryBlobStore", "AzureBlobStore", "create_blob_store",
    "DocumentCache",
    "ECFRClient", "RegulationSection",
    "DRSClient", "RepositoryDocument", "RepositoryError",
    "RetrievedDocument", "SearchQuality", "evaluate_search_results",
    "LLMService", "LLMRateLimitError",
    "QueryClassifier", "QueryClassification", "QueryIntent",
    "SemanticChunker", "DocumentChunk", "ChunkingResult",
    "EmbeddingService",
    "SearchIndex", "IndexDocument", "SearchHit",
    "IndexQueue", "IndexProcessor", "ProcessOutcome",
    "ConversationStore",
    "RAGPipeline",
]
