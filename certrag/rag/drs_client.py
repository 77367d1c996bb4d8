"""
FAA Certification RAG - DRS Client
Search and download advisory circulars, airworthiness directives, TSOs and
Orders from the FAA Dynamic Regulatory System (DRS), with cache-first
text retrieval.
"""

import asyncio
import re
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from certrag.core.config import ConfigurationError
from certrag.rag.document_cache import DocumentCache
from certrag.rag.pdf_extract import PDFExtractor, pdf_extractor


# Overall deadline expiry and httpx phase timeouts both count as a search timeout
SEARCH_TIMEOUT_ERRORS = (asyncio.TimeoutError, httpx.TimeoutException)


class RepositoryError(RuntimeError):
    """A DRS search failed after its retry budget."""


@dataclass
class RepositoryDocument:
    """Normalized DRS document metadata."""
    document_guid: str
    document_number: str
    title: str
    last_modified: str = ""
    status: Optional[str] = None
    download_url: Optional[str] = None
    file_name: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "RepositoryDocument":
        """Build from a DRS API record (fields carry a drs: prefix)."""
        number = raw.get("drs:documentNumber") or ""
        return cls(
            document_guid=raw.get("documentGuid") or "",
            document_number=number,
            title=raw.get("drs:title") or number or "Unknown",
            last_modified=raw.get("docLastModifiedDate") or "",
            status=raw.get("drs:status"),
            download_url=raw.get("mainDocumentDownloadURL"),
            file_name=raw.get("mainDocumentFileName"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepositoryDocument":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})


@dataclass
class FetchedDocument:
    """Extracted text plus the metadata it came from."""
    text: str
    doc: RepositoryDocument


# =============================================================================
# Document Number Matching
# =============================================================================

_TYPE_PREFIX = re.compile(r'^(AC|AD|TSO|ORDER)\s*')
_CHANGE_SUFFIX = re.compile(r'\s+(CHG|CHANGE)\s*\d*$', re.IGNORECASE)
_EDITORIAL_SUFFIX = re.compile(r'\s+Ed\s+Update\s*\d*$', re.IGNORECASE)


def normalize_doc_number(doc_number: str) -> str:
    """'ac23-8c' and 'AC  23-8C' both become 'AC 23-8C'."""
    text = re.sub(r'\s+', ' ', doc_number.upper())
    text = _TYPE_PREFIX.sub(r'\1 ', text)
    return text.strip()


def base_doc_number(doc_number: str) -> str:
    """Normalized number without change/editorial suffixes: 'AC 23-8C CHG 1' -> 'AC 23-8C'."""
    text = _CHANGE_SUFFIX.sub("", normalize_doc_number(doc_number))
    text = _EDITORIAL_SUFFIX.sub("", text)
    return text.strip()


def exact_match(candidate: str, requested: str) -> bool:
    return normalize_doc_number(candidate) == normalize_doc_number(requested)


def base_match(candidate: str, requested: str) -> bool:
    return base_doc_number(candidate) == base_doc_number(requested)


def prefix_match(candidate: str, requested: str) -> bool:
    wanted = normalize_doc_number(requested)
    return (
        normalize_doc_number(candidate).startswith(wanted)
        or base_doc_number(candidate).startswith(wanted)
    )


def contains_match(candidate: str, requested: str) -> bool:
    wanted = normalize_doc_number(requested)
    candidate_base = base_doc_number(candidate)
    return wanted in normalize_doc_number(candidate) or (
        bool(candidate_base) and candidate_base in wanted
    )


# Strictest first; a later tier is only tried when every earlier tier finds nothing
DOCUMENT_NUMBER_MATCHERS: Sequence[Tuple[str, Callable[[str, str], bool]]] = (
    ("exact", exact_match),
    ("base", base_match),
    ("prefix", prefix_match),
    ("contains", contains_match),
)


def find_document_match(
    documents: List[RepositoryDocument],
    requested: str,
) -> Optional[Tuple[str, RepositoryDocument]]:
    """First tier (in precedence order) with any matching document wins."""
    for tier, matcher in DOCUMENT_NUMBER_MATCHERS:
        for doc in documents:
            if doc.document_number and matcher(doc.document_number, requested):
                return tier, doc
    return None


# =============================================================================
# Client
# =============================================================================

class DRSClient:
    """
    Client for the FAA DRS data-pull API.

    Filtered searches carry a client-side deadline and are retried once on
    timeout. Cache-backed fetch methods never raise; they return None.
    """

    MAX_KEYWORDS = 10

    def __init__(
        self,
        cache: DocumentCache,
        base_url: str = "https://drs.faa.gov/api/drs",
        api_key: str = "",
        timeout_seconds: float = 15.0,
        max_attempts: int = 2,
        cache_ttl_hours: float = 24,
        extractor: PDFExtractor = None,
        http_client: httpx.AsyncClient = None,
    ):
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.cache_ttl_hours = cache_ttl_hours
        self.extractor = extractor or pdf_extractor
        self._client = http_client

        if not api_key:
            logger.warning("DRS_API_KEY not configured - DRS searches will be unavailable")

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ConfigurationError("DRS_API_KEY is not configured")
        return {"x-api-key": self.api_key, "Content-Type": "application/json"}

    async def _post_filtered(
        self,
        doc_type: str,
        document_filters: Dict[str, List[str]],
    ) -> Optional[List[Dict[str, Any]]]:
        """POST a filtered search; returns the raw documents array or None when absent."""
        response = await self._get_client().post(
            f"{self.base_url}/data-pull/{doc_type}/filtered",
            json={"offset": 0, "documentFilters": document_filters},
            headers=self._headers(),
        )
        if response.status_code != 200:
            logger.error(f"DRS API error response: {response.text[:500]}")
            raise RepositoryError(f"DRS API error: {response.status_code} {response.reason_phrase}")

        data = response.json()
        documents = data.get("documents") if isinstance(data, dict) else None
        if not isinstance(documents, list):
            logger.warning("DRS response has no documents array")
            return None

        total = (data.get("summary") or {}).get("totalItems", "unknown")
        logger.info(f"DRS found {len(documents)} documents (total: {total})")
        return documents

    async def _post_with_deadline(
        self,
        doc_type: str,
        document_filters: Dict[str, List[str]],
    ) -> Optional[List[Dict[str, Any]]]:
        """Filtered search bounded by one overall deadline, connect through last byte."""
        return await asyncio.wait_for(
            self._post_filtered(doc_type, document_filters), timeout=self.timeout_seconds
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        logger.warning(f"DRS search timeout, retrying ({retry_state.attempt_number}/{self.max_attempts})...")

    # =========================================================================
    # Search
    # =========================================================================

    async def search_documents_filtered(
        self,
        keywords: List[str],
        doc_type: str,
        status_filter: Optional[List[str]] = None,
        max_results: int = 10,
        doc_number_prefix: Optional[str] = None,
    ) -> List[RepositoryDocument]:
        """
        Keyword + status filtered search.

        At most 10 keyword values are sent. A timeout is retried once; any
        other failure, or a timeout on the last attempt, raises RepositoryError.
        """
        status_filter = status_filter or ["Current"]
        filters = {"drs:status": status_filter, "Keyword": keywords[:self.MAX_KEYWORDS]}
        logger.info(
            f"DRS filtered search: keywords={keywords[:self.MAX_KEYWORDS]} type={doc_type} "
            f"status={','.join(status_filter)} prefix={doc_number_prefix}"
        )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(SEARCH_TIMEOUT_ERRORS),
            stop=stop_after_attempt(self.max_attempts),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            raw_documents = await retrying(self._post_with_deadline, doc_type, filters)
        except SEARCH_TIMEOUT_ERRORS as e:
            raise RepositoryError(f"DRS search failed: timed out after {self.timeout_seconds}s") from e
        except RepositoryError:
            raise
        except Exception as e:
            raise RepositoryError(f"DRS search failed: {e}") from e

        if raw_documents is None:
            return []

        if doc_number_prefix:
            prefix = doc_number_prefix.upper()
            raw_documents = [
                raw for raw in raw_documents
                if (raw.get("drs:documentNumber") or "").upper().startswith(prefix)
            ]
            logger.info(f"Filtered to {len(raw_documents)} docs matching prefix \"{doc_number_prefix}\"")

        return [RepositoryDocument.from_raw(raw) for raw in raw_documents[:max_results]]

    async def search_documents(self, query: str, doc_type: Optional[str] = None) -> List[RepositoryDocument]:
        """Single-keyword search; doc type defaults to AC. Raises RepositoryError on failure."""
        search_type = doc_type or "AC"
        logger.info(f"Searching DRS for: \"{query}\" (type: {search_type})")
        try:
            raw_documents = await self._post_filtered(search_type, {"Keyword": [query]})
        except RepositoryError:
            raise
        except Exception as e:
            raise RepositoryError(f"DRS search failed: {e}") from e
        return [RepositoryDocument.from_raw(raw) for raw in raw_documents or []]

    async def search_by_document_number(
        self,
        doc_number: str,
        doc_type: str,
        status_filter: Optional[List[str]] = None,
    ) -> Optional[RepositoryDocument]:
        """Resolve a human document number, escalating exact -> base -> prefix -> contains."""
        requested = normalize_doc_number(doc_number)
        logger.info(f"Searching DRS for: \"{requested}\" (type: {doc_type})")

        try:
            raw_documents = await self._post_filtered(
                doc_type,
                {"drs:status": status_filter or ["Current"], "Keyword": [doc_number]},
            )
        except Exception as e:
            logger.error(f"Error searching for {doc_number}: {e}")
            return None

        if not raw_documents:
            logger.info(f"No documents found for \"{doc_number}\"")
            return None

        documents = [RepositoryDocument.from_raw(raw) for raw in raw_documents]
        match = find_document_match(documents, requested)
        if match is None:
            available = ", ".join(d.document_number for d in documents[:5])
            logger.info(f"No matching document found for \"{requested}\". Available: {available}...")
            return None

        tier, doc = match
        logger.info(f"{tier.capitalize()} match found: {doc.document_number} (requested: {requested})")
        return doc

    # =========================================================================
    # Download & Extraction
    # =========================================================================

    async def download_document(self, url: str) -> bytes:
        logger.info(f"Downloading document from: {url}")
        response = await self._get_client().get(url, headers={"x-api-key": self.api_key})
        if response.status_code != 200:
            raise RepositoryError(f"DRS download error: {response.status_code} {response.reason_phrase}")

        logger.info(f"Downloaded {len(response.content) / 1024 / 1024:.2f} MB")
        return response.content

    async def extract_text_from_pdf(self, data: bytes) -> str:
        """Raises PDFExtractionError when the PDF yields no text."""
        return await asyncio.to_thread(self.extractor.extract_text, data)

    # =========================================================================
    # Cache-first Fetch
    # =========================================================================

    async def is_cached(self, doc_type: str, doc_number: str) -> bool:
        return await self.cache.has(DocumentCache.drs_key(doc_type, doc_number))

    async def _cached(self, doc_type: str, doc_number: str) -> Optional[FetchedDocument]:
        entry = await self.cache.get(DocumentCache.drs_key(doc_type, doc_number))
        if entry is None:
            return None
        logger.info(f"DRS cache hit: {doc_type}/{doc_number}")
        return FetchedDocument(text=entry.data["text"], doc=RepositoryDocument.from_dict(entry.data["doc"]))

    async def _download_and_cache(self, doc: RepositoryDocument, doc_type: str, cache_number: str) -> FetchedDocument:
        data = await self.download_document(doc.download_url)
        text = await self.extract_text_from_pdf(data)
        await self.cache.set(
            DocumentCache.drs_key(doc_type, cache_number),
            {"text": text, "doc": doc.to_dict()},
            self.cache_ttl_hours,
        )
        return FetchedDocument(text=text, doc=doc)

    async def fetch_document_with_cache(self, doc_number: str, doc_type: str) -> Optional[FetchedDocument]:
        """Cache, then number search, then download + extract. None on any failure."""
        cached = await self._cached(doc_type, doc_number)
        if cached:
            return cached

        doc = await self.search_by_document_number(doc_number, doc_type)
        if doc is None:
            logger.info(f"Document not found: {doc_type}/{doc_number}")
            return None
        if not doc.download_url:
            logger.info(f"No download URL for: {doc_type}/{doc_number}")
            return None

        try:
            return await self._download_and_cache(doc, doc_type, doc_number)
        except Exception as e:
            logger.error(f"Failed to fetch/extract {doc_type}/{doc_number}: {e}")
            return None

    async def fetch_document_direct(self, doc: RepositoryDocument, doc_type: str) -> Optional[FetchedDocument]:
        """Like fetch_document_with_cache but with metadata already resolved (no search)."""
        if not doc.download_url:
            logger.info(f"No download URL for: {doc.document_number}")
            return None

        cached = await self._cached(doc_type, doc.document_number)
        if cached:
            return cached

        try:
            return await self._download_and_cache(doc, doc_type, doc.document_number)
        except Exception as e:
            logger.error(f"Failed to fetch/extract {doc.document_number}: {e}")
            return None

    async def fetch_documents_with_cache(
        self,
        requests: List[Tuple[str, str]],
    ) -> List[Optional[FetchedDocument]]:
        """Parallel (doc_number, doc_type) fetches; failures come back as None."""
        return list(await asyncio.gather(
            *(self.fetch_document_with_cache(number, doc_type) for number, doc_type in requests)
        ))
