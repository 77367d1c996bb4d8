"""
FAA Certification RAG - RAG Pipeline
Orchestrates retrieval and answer generation:

1. Hybrid search over the index, scored by the search evaluator
2. When results are insufficient: classify the question (concurrently with a
   DRS keyword search), then fetch eCFR sections and DRS documents in parallel
3. Queue unindexed DRS documents and index fetched sections in the background
4. Format a source-labeled context and generate a cited answer
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from loguru import logger

from certrag.core.config import Settings
from certrag.core.schemas import AskResponse, CFRSource, DRSSource, StoredConversation
from certrag.rag.conversation_store import ConversationStore
from certrag.rag.drs_client import DRSClient, RepositoryDocument
from certrag.rag.ecfr_client import ECFRClient, RegulationSection
from certrag.rag.index_queue import IndexQueue, truncate_for_index
from certrag.rag.llm import LLMRateLimitError, LLMService, is_rate_limit_error
from certrag.rag.query_classifier import (
    QueryClassification,
    QueryClassifier,
    build_question_with_context,
    quick_classify_document_request,
)
from certrag.rag.search_evaluator import RetrievedDocument, evaluate_search_results, extract_document_type
from certrag.rag.search_index import IndexDocument, SearchHit, SearchIndex, normalize_indexed_number


CFR_TITLE = 14

NOT_FOUND_ANSWER = (
    "I couldn't find relevant information in the FAA regulations, eCFR, or guidance materials. "
    "Please try rephrasing your question or specifying a regulation section number."
)

DEFAULT_CLARIFYING_QUESTION = (
    "Could you be more specific about what you're looking for? For example, which CFR Part "
    "(23, 25, etc.) or which aspect of the regulation?"
)

SYSTEM_PROMPT = """You are an FAA aircraft certification expert with deep knowledge of aviation regulations and guidance materials.

Your role is to answer questions based ONLY on the provided FAA regulations, advisory circulars, and guidance documents.

Rules:
1. ALWAYS cite specific regulation sections (e.g., "14 CFR § 23.2150") or advisory circular numbers when answering
2. If the regulations don't address the question, say so explicitly
3. Never make up information not in the provided documents
4. Be precise about requirements, compliance methods, and specifications
5. If there's ambiguity or multiple acceptable compliance methods, mention them
6. When appropriate, distinguish between:
   - Regulatory requirements (14 CFR sections)
   - Advisory guidance (ACs, policy memos)
   - Acceptable means of compliance
7. If a question involves certification basis or applicability, be specific about which part (Part 23, 25, 27, 29, etc.)
8. Suggest consulting with local FAA Aircraft Certification Office (ACO) or Designated Engineering Representative (DER) when regulations allow for interpretation or require coordination

COMPLETENESS REQUIREMENTS:
When listing requirements, limits, criteria, or specifications:
- If the provided documents contain both Part 23 AND Part 25 content for a topic, present information from BOTH parts
- Part 23 (normal category) uses performance-based requirements in the 23.2xxx sections
- Part 25 (transport category) uses prescriptive requirements with specific values
- Only say the answer is incomplete if the user asks about a specific part/category and you don't have that part's content
- For injury criteria, performance limits, test conditions, or pass/fail thresholds, include all values from the source documents

Answer questions clearly and professionally, as if advising an aircraft manufacturer, engineering team, or certification applicant."""

ECFR_NOTE = """

IMPORTANT: Some content is from the official Electronic Code of Federal Regulations (eCFR). This is the authoritative, current regulatory text. Always cite these as "14 CFR § X.XXX"."""

DRS_NOTE = """

Note: Some documents were retrieved from the FAA Dynamic Regulatory System (DRS), the official source for FAA advisory circulars and directives."""


# =============================================================================
# Helpers
# =============================================================================

REFERENCE_PATTERNS = (
    ("AC", re.compile(r'\bAC\s*(\d+[A-Z]?[-.]?\d*[A-Z]*)', re.IGNORECASE)),  # AC 23-8C, AC23-8
    ("AD", re.compile(r'\bAD\s*(\d{4}-\d{2}-\d{2})', re.IGNORECASE)),        # AD 2024-01-02
    ("TSO", re.compile(r'\bTSO-?([A-Z]?\d+[A-Z]?)', re.IGNORECASE)),         # TSO-C129
)


def extract_document_references(question: str) -> List[Tuple[str, str]]:
    """(doc_type, doc_number) for every AC/AD/TSO number written in the question."""
    refs = []
    for doc_type, pattern in REFERENCE_PATTERNS:
        refs.extend((doc_type, match.group(1)) for match in pattern.finditer(question))
    return refs


def build_drs_keywords(classification: QueryClassification) -> List[str]:
    """ACs usually cite "14 CFR Part NN"; topics add subject words. DRS takes at most 10."""
    keywords = [f"14 CFR Part {part}" for part in classification.cfr_parts]
    keywords.extend(classification.topics[:3])
    return keywords[:10]


def score_title_relevance(title: str, topics: List[str]) -> int:
    """Count topic words (longer than 3 chars) that appear in the title."""
    title_lower = title.lower()
    return sum(
        1
        for topic in topics
        for word in topic.lower().split()
        if len(word) > 3 and word in title_lower
    )


def format_context(documents: List[RetrievedDocument]) -> str:
    context = "# Relevant FAA Regulations and Guidance Material\n\n"
    for doc in documents:
        context += f"## Source: {doc.title}\n{doc.chunk}\n\n---\n\n"
    return context


def build_system_prompt(has_ecfr: bool, has_drs: bool) -> str:
    prompt = SYSTEM_PROMPT
    if has_ecfr:
        prompt += ECFR_NOTE
    if has_drs:
        prompt += DRS_NOTE
    return prompt


@dataclass
class Candidate:
    doc: RepositoryDocument
    doc_type: str
    score: float


@dataclass
class RetrievalBundle:
    """Documents from one retrieval path plus the citations they produce."""
    documents: List[RetrievedDocument] = field(default_factory=list)
    cfr_sources: List[CFRSource] = field(default_factory=list)
    drs_sources: List[DRSSource] = field(default_factory=list)
    candidates: List[Candidate] = field(default_factory=list)


# =============================================================================
# Pipeline
# =============================================================================

class RAGPipeline:
    """
    Retrieval-and-routing orchestrator.

    Every retrieval step absorbs its own failures so a question is answered
    from whatever context is available. Only an LLM rate limit escapes, as
    LLMRateLimitError.
    """

    def __init__(
        self,
        settings: Settings,
        llm: LLMService,
        classifier: QueryClassifier,
        ecfr: ECFRClient,
        drs: DRSClient,
        conversations: ConversationStore,
        index: Optional[SearchIndex] = None,
        queue: Optional[IndexQueue] = None,
    ):
        self.settings = settings
        self.llm = llm
        self.classifier = classifier
        self.ecfr = ecfr
        self.drs = drs
        self.conversations = conversations
        self.index = index
        self.queue = queue
        self._background: Set[asyncio.Future] = set()

    @property
    def has_hybrid_search(self) -> bool:
        return (
            self.settings.vector_search_enabled
            and self.index is not None
            and self.index.is_available
            and self.index.embeddings.is_available
        )

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_for_background(self) -> None:
        """Let fire-and-forget indexing finish (used on shutdown)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # Entry Point
    # =========================================================================

    async def ask_question(
        self,
        question: str,
        session_id: Optional[str] = None,
        is_clarifying: bool = False,
        conversation: Optional[StoredConversation] = None,
    ) -> AskResponse:
        """
        Answer a question.

        Raises:
            LLMRateLimitError: the answer model is rate limiting
        """
        vector = await self._search_index(question)
        quality = evaluate_search_results(vector.documents, question)
        logger.info(f"Search evaluation: sufficient={quality.is_sufficient} ({quality.reason})")

        classification_used = False
        ecfr_sections: List[RegulationSection] = []
        repository = RetrievalBundle()
        fallback = RetrievalBundle()

        if not quality.is_sufficient:
            classification, classification_used, keyword_results = await self._classify(question, conversation)

            if (
                classification.needs_clarification
                and not is_clarifying
                and classification.confidence < self.settings.clarity_min_confidence
            ):
                logger.info(f"Query needs clarification (confidence: {classification.confidence})")
                clarifying_question = classification.suggested_question or DEFAULT_CLARIFYING_QUESTION
                return AskResponse(
                    answer=clarifying_question,
                    session_id=session_id,
                    needs_clarification=True,
                    clarifying_question=clarifying_question,
                    classification_used=classification_used,
                )

            ecfr_sections, repository = await asyncio.gather(
                self._fetch_regulations(question, classification),
                self._fetch_repository_documents(question, classification),
            )

            await self._enqueue_unindexed(repository.candidates)
            if ecfr_sections and self.has_hybrid_search:
                self._spawn(self._index_sections(ecfr_sections))

            if not vector.documents and not ecfr_sections and not repository.documents:
                fallback = await self._fetch_top_keyword_result(keyword_results)

        documents = list(vector.documents)
        cfr_sources = list(vector.cfr_sources)
        drs_sources = list(vector.drs_sources)

        for section in ecfr_sections:
            documents.append(RetrievedDocument(
                title=section.display_title, chunk=section.content, score=1.0, source="eCFR"
            ))
            cfr_sources.append(CFRSource(
                title=section.title,
                part=section.part,
                section=section.section,
                section_title=section.heading,
                url=section.url,
            ))

        documents.extend(repository.documents)
        drs_sources.extend(repository.drs_sources)
        documents.extend(fallback.documents)
        drs_sources.extend(fallback.drs_sources)

        ecfr_used = bool(ecfr_sections) or bool(vector.cfr_sources)
        vector_search_used = bool(vector.documents)

        if not documents:
            return AskResponse(
                answer=NOT_FOUND_ANSWER,
                session_id=session_id,
                ecfr_used=bool(ecfr_sections),
                classification_used=classification_used,
            )

        context = format_context(documents)
        conversation_context = self.conversations.format_for_context(
            conversation, self.settings.conversation_context_turns
        )
        if conversation_context:
            context = conversation_context + "\n\n" + context

        system_prompt = build_system_prompt(
            bool(ecfr_sections), bool(repository.documents or fallback.documents)
        )
        user_message = (
            f"{context}\n\nUser Question: {question}\n\n"
            "Please answer based on the FAA regulations and guidance materials provided above."
        )

        logger.info(f"Generating answer from {len(documents)} sources...")
        try:
            answer = await self.llm.complete(system_prompt, [{"role": "user", "content": user_message}])
        except LLMRateLimitError:
            raise
        except Exception as e:
            if is_rate_limit_error(e):
                raise LLMRateLimitError(str(e)) from e
            logger.error(f"Error generating answer: {e}")
            response = AskResponse.failure(f"Error generating answer: {e}")
            response.session_id = session_id
            response.classification_used = classification_used
            return response

        return AskResponse(
            answer=answer,
            sources=[doc.title for doc in documents],
            source_count=len(documents),
            context=context,
            session_id=session_id,
            ecfr_used=ecfr_used,
            cfr_sources=cfr_sources or None,
            drs_sources=drs_sources or None,
            classification_used=classification_used,
            vector_search_used=vector_search_used,
        )

    # =========================================================================
    # Hybrid Search
    # =========================================================================

    async def _search_index(self, question: str) -> RetrievalBundle:
        bundle = RetrievalBundle()
        if not self.has_hybrid_search:
            logger.info("Hybrid search skipped (disabled or not configured)")
            return bundle

        try:
            hits = await self.index.hybrid_search(question, top=self.settings.vector_search_max_results)
        except Exception as e:
            logger.warning(f"Hybrid search failed, falling back to live APIs: {e}")
            return bundle

        relevant = [h for h in hits if h.score >= self.settings.vector_search_min_score]

        # Keep the best-scoring chunk per parent document
        best: Dict[str, SearchHit] = {}
        for hit in relevant:
            existing = best.get(hit.document.parent_id)
            if existing is None or hit.score > existing.score:
                best[hit.document.parent_id] = hit
        deduped = sorted(best.values(), key=lambda h: h.score, reverse=True)
        logger.info(f"Hybrid search: {len(deduped)} documents from {len(relevant)} relevant chunks")

        for hit in deduped:
            doc = hit.document
            bundle.documents.append(RetrievedDocument(
                title=doc.title, chunk=doc.content, score=hit.score, document_id=doc.parent_id, source="index"
            ))
            if doc.document_type == "eCFR" and doc.cfr_part and doc.cfr_section:
                bundle.cfr_sources.append(CFRSource(
                    part=doc.cfr_part,
                    section=doc.cfr_section,
                    section_title=re.sub(r'^14 CFR § \d+\.\d+ - ', '', doc.title),
                    url=doc.source or "",
                ))
            elif doc.document_type and doc.document_number:
                bundle.drs_sources.append(DRSSource(
                    doc_type=doc.document_type, doc_number=doc.document_number, title=doc.title
                ))
        return bundle

    # =========================================================================
    # Classification
    # =========================================================================

    async def _classify(
        self,
        question: str,
        conversation: Optional[StoredConversation],
    ) -> Tuple[QueryClassification, bool, List[Tuple[RepositoryDocument, str]]]:
        """Classification (LLM unless the question cites a document) plus a concurrent keyword search."""
        quick = quick_classify_document_request(question)
        if quick.is_doc_request:
            logger.info(f"Explicit document reference: {quick.doc_type} {quick.doc_number}")
            keyword_results = await self._keyword_search(question)
            return QueryClassifier.from_document_request(quick), False, keyword_results

        classification, keyword_results = await asyncio.gather(
            self.classifier.classify(build_question_with_context(question, conversation)),
            self._keyword_search(question),
        )
        return classification, True, keyword_results

    async def _keyword_search(self, question: str) -> List[Tuple[RepositoryDocument, str]]:
        if not self.drs.is_available:
            return []
        doc_type = extract_document_type(question) or "AC"
        try:
            results = await self.drs.search_documents(question, doc_type)
        except Exception as e:
            logger.warning(f"DRS keyword search failed: {e}")
            return []
        return [(doc, doc_type) for doc in results]

    # =========================================================================
    # eCFR
    # =========================================================================

    async def _fetch_regulations(
        self,
        question: str,
        classification: QueryClassification,
    ) -> List[RegulationSection]:
        section_ids = list(classification.cfr_sections)

        if not section_ids and classification.cfr_parts:
            searches = await asyncio.gather(*(
                self.ecfr.search_sections(question, CFR_TITLE, part)
                for part in classification.cfr_parts[:2]
            ))
            for results in searches:
                for result in results:
                    section_id = f"{result.part}.{result.section}"
                    if result.part and result.section and section_id not in section_ids:
                        section_ids.append(section_id)

        if not section_ids:
            return []

        section_ids = section_ids[:self.settings.drs_max_cfr_queries]
        logger.info(f"Fetching {len(section_ids)} eCFR sections: {section_ids}")
        return await self.ecfr.fetch_sections(CFR_TITLE, section_ids)

    async def _index_sections(self, sections: List[RegulationSection]) -> None:
        documents = [
            IndexDocument(
                id=f"ecfr-{s.title}-{s.part}-{s.section}",
                document_type="eCFR",
                title=s.display_title,
                content=s.content,
                cfr_part=s.part,
                cfr_section=s.section,
                effective_date=s.effective_date,
                source=s.url,
            )
            for s in sections
        ]
        try:
            await self.index.index_documents(documents)
        except Exception as e:
            logger.warning(f"Background indexing of eCFR sections failed: {e}")

    # =========================================================================
    # DRS
    # =========================================================================

    async def _fetch_repository_documents(
        self,
        question: str,
        classification: QueryClassification,
    ) -> RetrievalBundle:
        """
        Cache-first DRS retrieval.

        Order: explicit references in the question, then candidates from
        part-specific and general keyword searches (cached first, fresh
        downloads capped), then a plain keyword search.
        """
        bundle = RetrievalBundle()
        if not self.drs.is_available:
            return bundle

        max_docs = self.settings.drs_max_total_documents
        max_chars = self.settings.drs_max_document_chars
        fetched_urls: Set[str] = set()

        def add(text: str, doc: RepositoryDocument, doc_type: str, score: float, key: str) -> None:
            if key in fetched_urls:
                return
            fetched_urls.add(key)
            bundle.documents.append(RetrievedDocument(
                title=doc.title, chunk=text, score=score, source="DRS"
            ))
            bundle.drs_sources.append(DRSSource(
                doc_type=doc_type, doc_number=doc.document_number, title=doc.title
            ))

        # 1. Documents cited in the question
        for doc_type, doc_number in extract_document_references(question):
            if len(bundle.documents) >= max_docs:
                break
            result = await self.drs.fetch_document_with_cache(doc_number, doc_type)
            if result and result.doc.download_url:
                add(truncate_for_index(result.text, self.settings.index_max_chars),
                    result.doc, doc_type, 1.0, result.doc.download_url)

        # 2. Part-specific and general keyword candidates
        keywords = build_drs_keywords(classification)
        if keywords and len(bundle.documents) < max_docs:
            candidates = await self._collect_candidates(classification, keywords)
            bundle.candidates = candidates

            unique: List[Candidate] = []
            seen: Set[str] = set(fetched_urls)
            for candidate in sorted(candidates, key=lambda c: c.score, reverse=True):
                if candidate.doc.download_url not in seen:
                    seen.add(candidate.doc.download_url)
                    unique.append(candidate)

            cached_flags = await asyncio.gather(*(
                self.drs.is_cached(c.doc_type, c.doc.document_number) for c in unique
            ))
            cached = [c for c, hit in zip(unique, cached_flags) if hit]
            uncached = [c for c, hit in zip(unique, cached_flags) if not hit]
            logger.info(f"DRS candidates: {len(cached)} cached, {len(uncached)} need download")

            for c in cached:
                if len(bundle.documents) >= max_docs:
                    break
                fetched = await self.drs.fetch_document_direct(c.doc, c.doc_type)
                if fetched:
                    add(fetched.text[:max_chars], fetched.doc, c.doc_type, c.score, c.doc.download_url)

            fresh_downloads = 0
            for c in uncached:
                if len(bundle.documents) >= max_docs:
                    break
                if fresh_downloads >= self.settings.drs_max_fresh_downloads:
                    logger.info(f"Reached fresh download limit ({fresh_downloads}), skipping remaining")
                    break
                fetched = await self.drs.fetch_document_direct(c.doc, c.doc_type)
                if fetched:
                    fresh_downloads += 1
                    add(fetched.text[:max_chars], fetched.doc, c.doc_type, c.score, c.doc.download_url)

        # 3. Plain keyword search on the question text
        if not bundle.documents:
            for doc_type in classification.document_types[:self.settings.drs_max_doc_types]:
                try:
                    results = await self.drs.search_documents(question, doc_type)
                except Exception as e:
                    logger.warning(f"DRS fallback search for {doc_type} failed: {e}")
                    continue
                top = results[0] if results else None
                if top is None or not top.download_url or not top.document_number:
                    continue
                result = await self.drs.fetch_document_with_cache(top.document_number, doc_type)
                if result:
                    add(result.text[:max_chars], result.doc, doc_type, 0.9, top.download_url)

        logger.info(f"DRS fetch complete: {len(bundle.documents)} documents")
        return bundle

    async def _collect_candidates(
        self,
        classification: QueryClassification,
        keywords: List[str],
    ) -> List[Candidate]:
        doc_types = [t for t in classification.document_types if t != "AD"] or ["AC", "TSO", "Order"]
        doc_types = doc_types[:self.settings.drs_max_doc_types]
        per_search = self.settings.drs_max_results_per_search
        topics = classification.topics

        candidates: List[Candidate] = []

        def collect(results: List[RepositoryDocument], doc_type: str, base_score: float) -> None:
            for doc in results:
                if doc.download_url and doc.document_number:
                    score = base_score + score_title_relevance(doc.title, topics) * 0.1
                    candidates.append(Candidate(doc=doc, doc_type=doc_type, score=score))

        for doc_type in doc_types:
            try:
                if doc_type == "AC" and classification.cfr_parts:
                    part_keywords = topics[:3] or keywords
                    for part in classification.cfr_parts[:2]:
                        results = await self.drs.search_documents_filtered(
                            part_keywords,
                            "AC",
                            max_results=per_search * 5,
                            doc_number_prefix=f"AC {part}-",
                        )
                        collect(results, "AC", 0.9)

                results = await self.drs.search_documents_filtered(
                    keywords, doc_type, max_results=per_search * 3
                )
                collect(results, doc_type, 0.85)
            except Exception as e:
                logger.warning(f"DRS filtered search for {doc_type} failed: {e}")

        return candidates

    async def _fetch_top_keyword_result(
        self,
        keyword_results: List[Tuple[RepositoryDocument, str]],
    ) -> RetrievalBundle:
        """Last resort: download the first keyword-search hit that has a PDF."""
        bundle = RetrievalBundle()
        top = next(((doc, doc_type) for doc, doc_type in keyword_results if doc.download_url), None)
        if top is None:
            return bundle

        doc, doc_type = top
        logger.info(f"Last-resort DRS fetch: {doc.title}")
        fetched = await self.drs.fetch_document_direct(doc, doc_type)
        if fetched is None:
            return bundle

        bundle.documents.append(RetrievedDocument(
            title=doc.title,
            chunk=truncate_for_index(fetched.text, self.settings.index_max_chars),
            score=1.0,
            source="DRS",
        ))
        bundle.drs_sources.append(DRSSource(doc_type=doc_type, doc_number=doc.document_number, title=doc.title))
        return bundle

    # =========================================================================
    # Progressive Indexing
    # =========================================================================

    async def _enqueue_unindexed(self, candidates: List[Candidate]) -> int:
        """Queue the next batch of DRS candidates the index does not hold yet."""
        if (
            not candidates
            or not self.settings.progressive_index_enabled
            or self.queue is None
            or not self.queue.is_enabled
            or not self.has_hybrid_search
        ):
            return 0

        try:
            indexed = await self.index.get_indexed_document_numbers()
            if len(indexed) >= self.settings.progressive_max_indexed:
                logger.info(f"Index cap reached ({self.settings.progressive_max_indexed}), skipping enqueue")
                return 0

            batch: List[Tuple[RepositoryDocument, str]] = []
            queued: Set[str] = set()
            for c in candidates:
                number = normalize_indexed_number(c.doc.document_number)
                if number in indexed or number in queued:
                    continue
                queued.add(number)
                batch.append((c.doc, c.doc_type))
                if len(batch) >= self.settings.progressive_batch_size:
                    break

            if not batch:
                return 0
            return await self.queue.enqueue_for_indexing(batch)
        except Exception as e:
            logger.warning(f"Progressive indexing check failed: {e}")
            return 0
