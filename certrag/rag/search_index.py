"""
FAA Certification RAG - Hybrid Search Index
Azure AI Search (REST) holding eCFR sections and DRS document chunks with
Cohere content vectors; queried with combined keyword + vector search.
"""

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import httpx
from loguru import logger

from certrag.core.config import ConfigurationError
from certrag.rag.embedding import EmbeddingService


SELECT_FIELDS = (
    "id,documentType,title,content,cfrPart,cfrSection,documentNumber,"
    "documentId,effectiveDate,source,lastIndexed"
)
SEARCH_FIELDS = "title,content,cfrSection,documentNumber"

_DOC_TYPE_PREFIX = re.compile(r'^(AC|AD|TSO|Order)\s*', re.IGNORECASE)


def normalize_indexed_number(document_number: str) -> str:
    """Dedup form of a document number: "AC 23-8C" -> "23-8C"."""
    return _DOC_TYPE_PREFIX.sub("", document_number).strip().upper()


@dataclass
class IndexDocument:
    """One record in the search index. Chunk records carry their parent in document_id."""
    id: str
    document_type: str
    title: str
    content: str
    cfr_part: Optional[int] = None
    cfr_section: Optional[str] = None
    document_number: Optional[str] = None
    document_id: Optional[str] = None
    effective_date: Optional[str] = None
    source: Optional[str] = None
    last_indexed: Optional[str] = None
    revision: Optional[str] = None
    change_number: Optional[str] = None
    status: Optional[str] = None

    _WIRE_NAMES = {
        "id": "id",
        "document_type": "documentType",
        "title": "title",
        "content": "content",
        "cfr_part": "cfrPart",
        "cfr_section": "cfrSection",
        "document_number": "documentNumber",
        "document_id": "documentId",
        "effective_date": "effectiveDate",
        "source": "source",
        "last_indexed": "lastIndexed",
        "revision": "revision",
        "change_number": "changeNumber",
        "status": "status",
    }

    @property
    def parent_id(self) -> str:
        return self.document_id or self.id

    def to_record(self) -> Dict[str, Any]:
        return {
            wire: getattr(self, name)
            for name, wire in self._WIRE_NAMES.items()
            if getattr(self, name) is not None
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "IndexDocument":
        values = {name: record.get(wire) for name, wire in cls._WIRE_NAMES.items()}
        values["id"] = values["id"] or ""
        values["document_type"] = values["document_type"] or ""
        values["title"] = values["title"] or ""
        values["content"] = values["content"] or ""
        return cls(**values)


@dataclass
class SearchHit:
    document: IndexDocument
    score: float


def index_definition(name: str, dimensions: int) -> Dict[str, Any]:
    """Index schema: filterable metadata plus an HNSW/cosine vector field."""
    return {
        "name": name,
        "fields": [
            {"name": "id", "type": "Edm.String", "key": True, "filterable": True},
            {"name": "documentType", "type": "Edm.String", "filterable": True, "facetable": True},
            {"name": "title", "type": "Edm.String", "searchable": True},
            {"name": "content", "type": "Edm.String", "searchable": True},
            {
                "name": "contentVector",
                "type": "Collection(Edm.Single)",
                "searchable": True,
                "dimensions": dimensions,
                "vectorSearchProfile": "vector-profile",
            },
            {"name": "cfrPart", "type": "Edm.Int32", "filterable": True, "facetable": True},
            {"name": "cfrSection", "type": "Edm.String", "filterable": True, "searchable": True},
            {"name": "documentNumber", "type": "Edm.String", "filterable": True, "searchable": True},
            {"name": "documentId", "type": "Edm.String", "filterable": True},
            {"name": "effectiveDate", "type": "Edm.String", "filterable": True, "sortable": True},
            {"name": "source", "type": "Edm.String"},
            {"name": "lastIndexed", "type": "Edm.String", "filterable": True, "sortable": True},
            {"name": "revision", "type": "Edm.String", "filterable": True, "facetable": True},
            {"name": "changeNumber", "type": "Edm.String", "filterable": True, "facetable": True},
            {"name": "status", "type": "Edm.String", "filterable": True, "facetable": True},
        ],
        "vectorSearch": {
            "algorithms": [
                {
                    "name": "hnsw-algorithm",
                    "kind": "hnsw",
                    "hnswParameters": {"m": 4, "efConstruction": 400, "efSearch": 500, "metric": "cosine"},
                }
            ],
            "profiles": [{"name": "vector-profile", "algorithm": "hnsw-algorithm"}],
        },
    }


class SearchIndex:
    """
    Client for the hybrid search index.

    Index creation is single-flight: concurrent first writers share one
    existence check / create call.
    """

    UPLOAD_BATCH_SIZE = 1000

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        embeddings: EmbeddingService,
        index_name: str = "faa-documents",
        api_version: str = "2024-07-01",
        http_client: httpx.AsyncClient = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.embeddings = embeddings
        self.index_name = index_name
        self.api_version = api_version
        self._client = http_client
        self._ensure_task: Optional[asyncio.Task] = None

        if not self.is_available:
            logger.warning("Azure Search not configured - hybrid search unavailable")

    @property
    def is_available(self) -> bool:
        return bool(self.endpoint and self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=60.0)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _url(self, path: str = "") -> str:
        return f"{self.endpoint}/indexes/{self.index_name}{path}"

    async def _request(self, method: str, path: str = "", **kwargs) -> httpx.Response:
        if not self.is_available:
            raise ConfigurationError("Azure Search credentials not configured")
        return await self._get_client().request(
            method,
            self._url(path),
            params={"api-version": self.api_version},
            headers={"api-key": self.api_key},
            **kwargs,
        )

    # =========================================================================
    # Index Management
    # =========================================================================

    async def _create_if_missing(self) -> None:
        response = await self._request("GET")
        if response.status_code == 200:
            logger.debug(f"Index '{self.index_name}' already exists")
            return
        if response.status_code != 404:
            response.raise_for_status()

        logger.info(f"Creating index '{self.index_name}'...")
        response = await self._request(
            "PUT", json=index_definition(self.index_name, self.embeddings.dimension)
        )
        response.raise_for_status()
        logger.info(f"Index '{self.index_name}' created successfully")

    async def ensure_index(self) -> None:
        if self._ensure_task is None:
            self._ensure_task = asyncio.ensure_future(self._create_if_missing())
        try:
            await self._ensure_task
        except Exception:
            self._ensure_task = None
            raise

    async def clear(self) -> bool:
        """Delete the whole index; it is recreated on the next write. False if it did not exist."""
        response = await self._request("DELETE")
        self._ensure_task = None
        if response.status_code == 404:
            logger.info(f"Index '{self.index_name}' does not exist")
            return False
        response.raise_for_status()
        logger.info(f"Index '{self.index_name}' deleted")
        return True

    # =========================================================================
    # Search
    # =========================================================================

    async def hybrid_search(
        self,
        query: str,
        top: int = 10,
        document_types: Optional[List[str]] = None,
        filter: Optional[str] = None,
    ) -> List[SearchHit]:
        """Keyword + vector search. Raises on transport or configuration errors."""
        query_vector = await self.embeddings.embed_query(query)

        filter_string = filter or ""
        if document_types:
            type_filter = " or ".join(f"documentType eq '{t}'" for t in document_types)
            filter_string = f"({filter_string}) and ({type_filter})" if filter_string else type_filter

        body = {
            "search": query,
            "queryType": "simple",
            "searchFields": SEARCH_FIELDS,
            "select": SELECT_FIELDS,
            "top": top,
            "vectorQueries": [
                {"kind": "vector", "vector": query_vector, "k": top, "fields": "contentVector"}
            ],
        }
        if filter_string:
            body["filter"] = filter_string

        response = await self._request("POST", "/docs/search", json=body)
        response.raise_for_status()

        return [
            SearchHit(document=IndexDocument.from_record(item), score=float(item.get("@search.score") or 0))
            for item in response.json().get("value", [])
        ]

    async def get_indexed_document_numbers(
        self,
        document_type: Optional[str] = None,
        max_results: int = 1000,
    ) -> Set[str]:
        """Normalized document numbers already in the index; empty on any failure."""
        if not self.is_available:
            return set()

        body = {"search": "*", "select": "documentNumber", "top": max_results, "queryType": "simple"}
        if document_type:
            body["filter"] = f"documentType eq '{document_type}'"

        try:
            response = await self._request("POST", "/docs/search", json=body)
            response.raise_for_status()
        except Exception as e:
            # Index might not exist yet
            logger.warning(f"Could not query indexed documents: {e}")
            return set()

        return {
            normalize_indexed_number(item["documentNumber"])
            for item in response.json().get("value", [])
            if item.get("documentNumber")
        }

    # =========================================================================
    # Indexing
    # =========================================================================

    async def index_documents(self, documents: List[IndexDocument]) -> int:
        """Embed and upload records (merge-or-upload). Returns the number indexed."""
        if not documents:
            return 0

        await self.ensure_index()

        vectors = await self.embeddings.embed_documents([f"{d.title}\n\n{d.content}" for d in documents])
        indexed_at = datetime.now(timezone.utc).isoformat()

        records = []
        for document, vector in zip(documents, vectors):
            record = document.to_record()
            record["lastIndexed"] = document.last_indexed or indexed_at
            record["contentVector"] = vector
            record["@search.action"] = "mergeOrUpload"
            records.append(record)

        for i in range(0, len(records), self.UPLOAD_BATCH_SIZE):
            batch = records[i:i + self.UPLOAD_BATCH_SIZE]
            response = await self._request("POST", "/docs/index", json={"value": batch})
            response.raise_for_status()
            logger.info(f"Indexed {min(i + self.UPLOAD_BATCH_SIZE, len(records))}/{len(records)} documents")

        return len(records)
