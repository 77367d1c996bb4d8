#!/usr/bin/env python
"""
FAA Certification RAG - Unit Tests
Test individual components of the retrieval and routing layer
"""

import asyncio
import base64
import json

import httpx
import pytest

from conftest import FakeIndex, FakeLLM, make_queue


class FakeExtractor:
    """PDF extractor stand-in: the 'PDF' bytes are the text."""

    def extract_text(self, data):
        return data.decode("utf-8")


def drs_record(number, guid=None, url=None, title=None, status="Current"):
    return {
        "documentGuid": guid or f"guid-{number}",
        "drs:documentNumber": number,
        "drs:title": title or f"{number} Guidance",
        "drs:status": status,
        "docLastModifiedDate": "2024-01-01",
        "mainDocumentDownloadURL": url if url is not None else f"https://drs.faa.gov/download/{number}.pdf",
    }


def drs_client(cache, handler, **kwargs):
    from certrag.rag.drs_client import DRSClient

    return DRSClient(
        cache,
        api_key="test-key",
        extractor=FakeExtractor(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


class TestSearchEvaluator:
    """Test search-quality evaluation."""

    def test_no_results(self):
        """Test that an empty result set is insufficient."""
        from certrag.rag.search_evaluator import evaluate_search_results

        quality = evaluate_search_results([], "What is the stall speed requirement?")

        assert quality.is_sufficient is False
        assert quality.reason == "No search results found"
        assert quality.score == 0.0

    def test_low_relevance(self):
        """Test that a top score below the threshold is insufficient."""
        from certrag.rag.search_evaluator import RetrievedDocument, evaluate_search_results

        results = [RetrievedDocument(title="14 CFR § 23.2150", chunk="stall", score=0.5)]
        quality = evaluate_search_results(results, "stall speed")

        assert quality.is_sufficient is False
        assert quality.reason == "Low relevance scores (top: 0.50)"
        assert quality.score == 0.5

    def test_named_document_missing(self):
        """Test that well-scored results are rejected when the named document is absent."""
        from certrag.rag.search_evaluator import RetrievedDocument, evaluate_search_results

        results = [RetrievedDocument(title="AC 25-7D Flight Test Guide", chunk="flight test", score=0.9)]
        quality = evaluate_search_results(results, "What does AC 23-8C say about stalls?")

        assert quality.is_sufficient is False
        assert quality.specific_doc_mentioned == "AC 23-8C"
        assert quality.reason == 'Specific document "AC 23-8C" not found in index'
        assert quality.score == pytest.approx(0.45)

    def test_named_document_present(self):
        """Test that results containing the named document are sufficient."""
        from certrag.rag.search_evaluator import RetrievedDocument, evaluate_search_results

        results = [RetrievedDocument(title="AC 23-8C Flight Test Guide", chunk="stall", score=0.8)]
        quality = evaluate_search_results(results, "What does AC 23-8C say about stalls?")

        assert quality.is_sufficient is True
        assert quality.reason == "Good search results"

    def test_extract_document_type(self):
        """Test repository document type detection."""
        from certrag.rag.search_evaluator import extract_document_type

        assert extract_document_type("Advisory circular on icing") == "AC"
        assert extract_document_type("Airworthiness directive for the Cessna 172") == "AD"
        assert extract_document_type("TSO-C129a receiver requirements") == "TSO"
        assert extract_document_type("What does 14 CFR Part 25 require for flutter?") == "AC"
        assert extract_document_type("What does the CFR say about definitions?") is None
        assert extract_document_type("How does the STC process work?") is None
        assert extract_document_type("repair of composite structure") == "AC"
        assert extract_document_type("unsafe condition reporting") == "AD"


class TestQueryClassifier:
    """Test classifier parsing, the regex pre-filter and caching."""

    def test_parse_fenced_reply(self):
        """Test parsing a fenced JSON reply with out-of-range values."""
        from certrag.rag.query_classifier import QueryIntent, parse_classifier_response

        reply = """```json
        {"intent": "regulatory_lookup", "topics": ["flutter"], "cfrParts": [25, "23"],
         "cfrSections": ["25.629"], "documentTypes": ["AC", "XYZ"], "confidence": 1.7,
         "reasoning": "flutter question"}
        ```"""
        parsed = parse_classifier_response(reply)
        c = parsed.classification

        assert parsed.is_fallback is False
        assert c.intent == QueryIntent.REGULATORY_LOOKUP
        assert c.cfr_parts == [25, 23]
        assert c.cfr_sections == ["25.629"]
        assert c.document_types == ["AC"]
        assert c.confidence == 1.0

    def test_parse_defaults(self):
        """Test defaults for missing or invalid fields."""
        from certrag.rag.query_classifier import QueryIntent, parse_classifier_response

        c = parse_classifier_response('{"intent": "chit_chat"}').classification

        assert c.intent == QueryIntent.GENERAL_QUESTION
        assert c.document_types == ["AC"]
        assert c.confidence == 0.5
        assert c.needs_clarification is False

    def test_parse_malformed(self):
        """Test that malformed output yields the default classification."""
        from certrag.rag.query_classifier import parse_classifier_response

        parsed = parse_classifier_response("I think this is about Part 25")

        assert parsed.is_fallback is True
        assert parsed.classification.confidence == 0.3
        assert parsed.classification.document_types == ["AC"]

    def test_parse_non_finite_and_mistyped_values(self):
        """Test that valid JSON with unusable values degrades field by field."""
        from certrag.rag.query_classifier import QueryClassifier, QueryIntent, parse_classifier_response

        reply = ('{"intent": "regulatory_lookup", "cfrParts": [1e400, NaN, 25], "confidence": 0.8, '
                 '"specificDocument": {"number": "AC 23-8C"}, "reasoning": ["x"], "suggestedQuestion": 7}')
        parsed = parse_classifier_response(reply)
        c = parsed.classification

        assert parsed.is_fallback is False
        assert c.intent == QueryIntent.REGULATORY_LOOKUP
        assert c.cfr_parts == [25]
        assert c.specific_document is None
        assert c.reasoning == "No reasoning provided"
        assert c.suggested_question is None

        classifier = QueryClassifier(FakeLLM(classification='{"cfrParts": [1e400]}'))
        assert asyncio.run(classifier.classify("Part 25 flutter?")).cfr_parts == []

    def test_quick_classify(self):
        """Test the regex pre-filter for explicit document references."""
        from certrag.rag.query_classifier import quick_classify_document_request

        ac = quick_classify_document_request("Show me AC 43.13-1B")
        assert (ac.is_doc_request, ac.doc_type, ac.doc_number) == (True, "AC", "43.13-1B")

        ad = quick_classify_document_request("What is AD 2023-01-05 about?")
        assert (ad.doc_type, ad.doc_number) == ("AD", "2023-01-05")

        tso = quick_classify_document_request("Requirements of TSO-C129a")
        assert (tso.doc_type, tso.doc_number) == ("TSO", "C129a")

        assert quick_classify_document_request("How do I certify a flap?").is_doc_request is False

    def test_classification_cached(self, cache):
        """Test that a successful classification is served from cache the second time."""
        from certrag.rag.query_classifier import QueryClassifier

        llm = FakeLLM(classification='{"intent": "regulatory_lookup", "cfrParts": [23], "confidence": 0.9}')
        classifier = QueryClassifier(llm, cache=cache)

        first = asyncio.run(classifier.classify("Stall speed for Part 23?"))
        second = asyncio.run(classifier.classify("  stall speed for part 23?  "))

        assert len(llm.classifier_calls) == 1
        assert first.cfr_parts == second.cfr_parts == [23]
        assert second.confidence == 0.9

    def test_failed_classification_not_cached(self, cache):
        """Test that LLM failures return the default and are retried next time."""
        from certrag.rag.query_classifier import QueryClassifier

        llm = FakeLLM(classification=None)
        classifier = QueryClassifier(llm, cache=cache)

        result = asyncio.run(classifier.classify("anything"))
        asyncio.run(classifier.classify("anything"))

        assert result.confidence == 0.3
        assert len(llm.classifier_calls) == 2

    def test_question_with_context(self):
        """Test follow-up questions carry the original question and recent turns."""
        from certrag.core.schemas import ConversationTurn, StoredConversation, TurnRole
        from certrag.rag.query_classifier import build_question_with_context

        conversation = StoredConversation(session_id="s", created_at=0, updated_at=0, turns=[
            ConversationTurn(role=TurnRole.USER, content="Part 23 stall speed?", timestamp=1),
            ConversationTurn(role=TurnRole.ASSISTANT, content="x" * 600, timestamp=2),
        ])
        text = build_question_with_context("What about Part 25?", conversation)

        assert "Original question: Part 23 stall speed?" in text
        assert "Assistant: " + "x" * 500 + "..." in text
        assert text.endswith("Current question: What about Part 25?")
        assert build_question_with_context("Q?", None) == "Q?"


class TestDRSClient:
    """Test document-number matching, filtered search and cache-first fetch."""

    def test_normalize_doc_number(self):
        """Test document number normalization."""
        from certrag.rag.drs_client import base_doc_number, normalize_doc_number

        assert normalize_doc_number("ac23-8c") == "AC 23-8C"
        assert normalize_doc_number("AC  23-8C") == "AC 23-8C"
        assert base_doc_number("AC 23-8C CHG 1") == "AC 23-8C"
        assert base_doc_number("AC 20-115D Ed Update 2") == "AC 20-115D"

    def test_match_tiers(self):
        """Test that the strictest matching tier wins."""
        from certrag.rag.drs_client import RepositoryDocument, find_document_match

        def docs(*numbers):
            return [RepositoryDocument(document_guid=n, document_number=n, title=n) for n in numbers]

        tier, doc = find_document_match(docs("AC 23-8B", "AC 23-8C"), "ac 23-8c")
        assert (tier, doc.document_number) == ("exact", "AC 23-8C")

        tier, doc = find_document_match(docs("AC 23-8", "AC 23-8C CHG 1"), "AC 23-8C")
        assert (tier, doc.document_number) == ("base", "AC 23-8C CHG 1")

        tier, doc = find_document_match(docs("AC 21-40A", "AC 20-115D"), "AC 20-115")
        assert (tier, doc.document_number) == ("prefix", "AC 20-115D")

        tier, doc = find_document_match(docs("AC 00-1", "AC 43.13-1B"), "43.13-1B")
        assert (tier, doc.document_number) == ("contains", "AC 43.13-1B")

        assert find_document_match(docs("AC 00-1"), "AC 99-9") is None

    def test_filtered_search_request(self, cache):
        """Test the filtered search body, prefix filtering and result normalization."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "documents": [drs_record("AC 25-7D"), drs_record("AC 23-8C")],
                "summary": {"totalItems": 2},
            })

        client = drs_client(cache, handler)
        results = asyncio.run(client.search_documents_filtered(
            ["flight test"], "AC", max_results=5, doc_number_prefix="AC 25-"
        ))

        assert [d.document_number for d in results] == ["AC 25-7D"]
        assert results[0].download_url == "https://drs.faa.gov/download/AC 25-7D.pdf"
        assert seen[0].url.path.endswith("/data-pull/AC/filtered")
        assert seen[0].headers["x-api-key"] == "test-key"
        body = json.loads(seen[0].content)
        assert body == {"offset": 0, "documentFilters": {"drs:status": ["Current"], "Keyword": ["flight test"]}}

    def test_filtered_search_retries_timeout(self, cache):
        """Test that one timeout is retried and a second raises RepositoryError."""
        from certrag.rag.drs_client import RepositoryError

        attempts = []

        def flaky(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json={"documents": [drs_record("AC 23-8C")]})

        results = asyncio.run(drs_client(cache, flaky).search_documents_filtered(["stall"], "AC"))
        assert len(attempts) == 2
        assert results[0].document_number == "AC 23-8C"

        def always_timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(RepositoryError):
            asyncio.run(drs_client(cache, always_timeout).search_documents_filtered(["stall"], "AC"))

    def test_filtered_search_overall_deadline(self, cache):
        """Test that a response slower than the deadline is abandoned and retried."""
        from certrag.rag.drs_client import RepositoryError

        attempts = []

        async def slow_then_fast(request):
            attempts.append(request)
            if len(attempts) == 1:
                await asyncio.sleep(5)
            return httpx.Response(200, json={"documents": [drs_record("AC 23-8C")]})

        results = asyncio.run(drs_client(cache, slow_then_fast, timeout_seconds=0.05).search_documents_filtered(
            ["stall"], "AC"
        ))
        assert len(attempts) == 2
        assert results[0].document_number == "AC 23-8C"

        async def always_slow(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json={"documents": []})

        with pytest.raises(RepositoryError, match="timed out"):
            asyncio.run(drs_client(cache, always_slow, timeout_seconds=0.05).search_documents_filtered(
                ["stall"], "AC"
            ))

    def test_filtered_search_caps_keywords(self, cache):
        """Test that at most 10 keyword values are posted."""
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"documents": []})

        keywords = [f"topic {i}" for i in range(12)]
        asyncio.run(drs_client(cache, handler).search_documents_filtered(keywords, "AC"))

        assert seen[0]["documentFilters"]["Keyword"] == keywords[:10]

    def test_search_unavailable(self, cache):
        """Test that searching without an API key raises RepositoryError."""
        from certrag.rag.drs_client import DRSClient, RepositoryError

        client = DRSClient(cache)

        assert client.is_available is False
        with pytest.raises(RepositoryError):
            asyncio.run(client.search_documents("stall speed"))

    def test_fetch_with_cache(self, cache):
        """Test that a fetched document is downloaded once and then served from cache."""
        downloads = []

        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json={"documents": [drs_record("AC 23-8C CHG 1")]})
            downloads.append(request)
            return httpx.Response(200, content=b"Flight test guide for Part 23 airplanes")

        client = drs_client(cache, handler)

        first = asyncio.run(client.fetch_document_with_cache("AC 23-8C", "AC"))
        second = asyncio.run(client.fetch_document_with_cache("AC 23-8C", "AC"))

        assert first.text == "Flight test guide for Part 23 airplanes"
        assert second.doc.document_number == "AC 23-8C CHG 1"
        assert len(downloads) == 1
        assert asyncio.run(client.is_cached("AC", "AC 23-8C")) is True

    def test_fetch_not_found(self, cache):
        """Test that a document with no match returns None."""
        def handler(request):
            return httpx.Response(200, json={"documents": [drs_record("AC 00-1")]})

        assert asyncio.run(drs_client(cache, handler).fetch_document_with_cache("AC 99-9", "AC")) is None

    def test_search_by_number_prefers_exact(self, cache):
        """Test that an exact match beats a revision match in the same result set."""
        def handler(request):
            return httpx.Response(200, json={"documents": [
                drs_record("AC 23-8C CHG 1"), drs_record("AC 23-8"), drs_record("AC 23-8C"),
            ]})

        doc = asyncio.run(drs_client(cache, handler).search_by_document_number("ac 23-8c", "AC"))

        assert doc.document_number == "AC 23-8C"

    def test_search_by_number_error_is_none(self, cache):
        """Test that an upstream error resolves to None."""
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        assert asyncio.run(drs_client(cache, handler).search_by_document_number("AC 23-8C", "AC")) is None

    def test_batch_fetch_isolates_failures(self, cache):
        """Test that one failed fetch does not fail the batch."""
        def handler(request):
            if request.method == "POST":
                keyword = json.loads(request.content)["documentFilters"]["Keyword"][0]
                if keyword == "AC 23-8C":
                    return httpx.Response(200, json={"documents": [drs_record("AC 23-8C")]})
                return httpx.Response(500, text="boom")
            return httpx.Response(200, content=b"text")

        results = asyncio.run(drs_client(cache, handler).fetch_documents_with_cache(
            [("AC 23-8C", "AC"), ("AC 25-7D", "AC")]
        ))

        assert results[0].text == "text"
        assert results[1] is None


class TestECFRClient:
    """Test regulation text retrieval."""

    SECTION_XML = (
        '<?xml version="1.0" encoding="UTF-8"?><SECTION><HEAD>§ 25.629 Aeroelastic stability requirements.</HEAD>'
        '<P>(a) General. The aeroelastic stability evaluations must include flutter.</P>'
        '<P>(b) Aeroelastic stability envelopes.</P></SECTION>'
    )

    def make_client(self, handler):
        from certrag.rag.ecfr_client import ECFRClient
        return ECFRClient(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    def test_fetch_section(self):
        """Test fetching and cleaning a section."""
        def handler(request):
            if request.url.path.endswith("titles.json"):
                return httpx.Response(200, json={"titles": [{"number": 14, "up_to_date_as_of": "2024-05-01"}]})
            assert request.url.params["section"] == "25.629"
            return httpx.Response(200, text=self.SECTION_XML)

        section = asyncio.run(self.make_client(handler).fetch_section(14, 25, "629"))

        assert section.heading == "§ 25.629 Aeroelastic stability requirements."
        assert "(a) General." in section.content
        assert "<P>" not in section.content
        assert section.effective_date == "2024-05-01"
        assert section.url == "https://www.ecfr.gov/current/title-14/part-25/section-25.629"

    def test_fetch_section_not_found(self):
        """Test that a 404 becomes None."""
        def handler(request):
            if request.url.path.endswith("titles.json"):
                return httpx.Response(200, json={"titles": []})
            return httpx.Response(404)

        assert asyncio.run(self.make_client(handler).fetch_section(14, 25, "9999")) is None

    def test_fetch_sections_drops_invalid(self):
        """Test that malformed section ids are skipped."""
        def handler(request):
            if request.url.path.endswith("titles.json"):
                return httpx.Response(200, json={"titles": [{"number": 14, "up_to_date_as_of": "2024-05-01"}]})
            return httpx.Response(200, text=self.SECTION_XML)

        sections = asyncio.run(self.make_client(handler).fetch_sections(14, ["25.629", "not-a-section"]))

        assert [s.citation for s in sections] == ["25.629"]

    def test_parse_section_id(self):
        """Test section id parsing."""
        from certrag.rag.ecfr_client import ECFRClient

        assert ECFRClient.parse_section_id("23.2150") == (23, "2150")
        assert ECFRClient.parse_section_id("abc") is None
        assert ECFRClient.parse_section_id("25") is None

    def test_search_sections(self):
        """Test parsing search hits that only carry a hierarchy."""
        def handler(request):
            return httpx.Response(200, json={"results": [{
                "hierarchy": {"title": "14", "part": "25", "section": "25.629"},
                "headings": {"section": "Aeroelastic stability requirements."},
                "full_text_excerpt": "flutter",
                "score": 3.2,
            }]})

        results = asyncio.run(self.make_client(handler).search_sections("flutter", 14, 25))

        assert (results[0].part, results[0].section) == (25, "629")
        assert results[0].section_title == "Aeroelastic stability requirements."

    def test_search_failure_is_empty(self):
        """Test that search errors degrade to an empty list."""
        def handler(request):
            return httpx.Response(503)

        assert asyncio.run(self.make_client(handler).search_sections("flutter")) == []

    def test_part_structure(self):
        """Test structure lookup at the latest date, and None on failure."""
        def handler(request):
            if request.url.path.endswith("titles.json"):
                return httpx.Response(200, json={"titles": [{"number": 14, "up_to_date_as_of": "2024-05-01"}]})
            assert request.url.path.endswith("/structure/2024-05-01/title-14.json")
            if request.url.params["part"] == "25":
                return httpx.Response(200, json={"type": "part", "identifier": "25", "children": []})
            return httpx.Response(404)

        client = self.make_client(handler)

        assert asyncio.run(client.get_part_structure(14, 25))["identifier"] == "25"
        assert asyncio.run(client.get_part_structure(14, 99)) is None


class TestSemanticChunker:
    """Test chunking."""

    TEXT = "\n\n".join(f"Section {i}. " + "The applicant must show compliance. " * 12 for i in range(30))

    def test_fallback_covers_document(self):
        """Test that fallback chunks cover the text with no gaps and respect the minimum size."""
        from certrag.rag.chunking import fallback_chunks

        chunks = fallback_chunks(self.TEXT, 2000, 500, 50)

        assert chunks[0].start_char == 0
        assert chunks[-1].end_char == len(self.TEXT)
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start_char <= prev.end_char
            assert nxt.start_char > prev.start_char
        for chunk in chunks:
            assert chunk.content == self.TEXT[chunk.start_char:chunk.end_char]
            assert len(chunk.content) >= 500
        assert [c.index for c in chunks] == list(range(len(chunks)))

    def test_fallback_max_chunks(self):
        """Test that the last allowed chunk runs to the end of the text."""
        from certrag.rag.chunking import fallback_chunks

        chunks = fallback_chunks(self.TEXT, 2000, 500, 3)

        assert len(chunks) == 3
        assert chunks[-1].end_char == len(self.TEXT)

    def test_fallback_deterministic(self):
        """Test that fallback chunking is repeatable."""
        from certrag.rag.chunking import fallback_chunks

        assert fallback_chunks(self.TEXT, 2000, 500, 50) == fallback_chunks(self.TEXT, 2000, 500, 50)

    def test_short_document_single_chunk(self):
        """Test that short documents are not split."""
        from certrag.rag.chunking import SemanticChunker

        result = asyncio.run(SemanticChunker().chunk("A short section.", "Short"))

        assert result.method == "single"
        assert result.total_chunks == 1

    def test_llm_boundaries(self):
        """Test chunking at LLM-proposed boundaries."""
        from certrag.rag.chunking import SemanticChunker

        text = "A" * 1500 + "\n\n" + "B" * 1500
        llm = FakeLLM(answer='Here you go: [{"pos": 0, "title": "Intro"}, {"pos": 1502, "title": "Body"}]')

        result = asyncio.run(SemanticChunker(llm).chunk(text, "Doc"))

        assert result.method == "llm"
        assert [c.title for c in result.chunks] == ["Intro", "Body"]
        assert result.chunks[1].content == "B" * 1500

    def test_unparseable_boundaries_fall_back(self):
        """Test that an unusable LLM reply falls back to fixed-length chunks."""
        from certrag.rag.chunking import SemanticChunker

        result = asyncio.run(SemanticChunker(FakeLLM(answer="no idea")).chunk(self.TEXT, "Doc"))

        assert result.method == "fallback"
        assert result.chunks[-1].end_char == len(self.TEXT)


class TestDocumentCache:
    """Test the TTL cache."""

    def test_ttl_expiry(self, memory_store):
        """Test that expired entries miss and are deleted."""
        from certrag.rag.document_cache import DocumentCache

        now = [1_000_000.0]
        cache = DocumentCache(memory_store, clock=lambda: now[0])
        key = DocumentCache.drs_key("AC", "AC 23-8C")

        asyncio.run(cache.set(key, {"text": "hello"}, ttl_hours=1))
        assert asyncio.run(cache.get(key)).data == {"text": "hello"}

        now[0] += 3601
        assert asyncio.run(cache.get(key)) is None
        assert asyncio.run(memory_store.read(cache.container, key)) is None

    def test_keys(self):
        """Test key formats."""
        from certrag.rag.document_cache import DocumentCache

        assert DocumentCache.drs_key("AC", "AC 23-8C") == "drs/AC/AC-23-8C.json"
        assert DocumentCache.classifier_key(" What? ") == DocumentCache.classifier_key("what?")
        assert DocumentCache.classifier_key("what?").startswith("classifier/")

    def test_describe(self, cache):
        """Test the cache listing summary."""
        from certrag.rag.document_cache import DocumentCache

        asyncio.run(cache.set(DocumentCache.drs_key("AC", "AC 23-8C"), {"text": "a"}))
        asyncio.run(cache.set(DocumentCache.classifier_key("q"), {"intent": "general_question"}))

        summary = asyncio.run(cache.describe())

        assert summary["enabled"] is False
        assert summary["totalDocuments"] == 2
        assert summary["byType"] == {"drs": 1, "classifier": 1}
        assert len(summary["recentDocuments"]) == 2


class TestConversationStore:
    """Test conversation persistence."""

    def make_store(self, memory_store, now, **kwargs):
        from certrag.rag.conversation_store import ConversationStore
        return ConversationStore(memory_store, clock=lambda: now[0], **kwargs)

    def turn(self, role, content):
        from certrag.core.schemas import ConversationTurn, TurnRole
        return ConversationTurn(role=TurnRole(role), content=content, timestamp=0)

    def test_turn_cap(self, memory_store):
        """Test that only the most recent turns are kept."""
        store = self.make_store(memory_store, [1000.0], max_turns=4)

        for i in range(6):
            asyncio.run(store.add_turn("s1", self.turn("user", f"q{i}")))
        conversation = asyncio.run(store.get("s1"))

        assert [t.content for t in conversation.turns] == ["q2", "q3", "q4", "q5"]

    def test_expiry(self, memory_store):
        """Test that conversations older than the TTL read as missing and are deleted."""
        now = [1000.0]
        store = self.make_store(memory_store, now)

        asyncio.run(store.add_turn("s1", self.turn("user", "hello")))
        now[0] += 6 * 24 * 3600
        assert asyncio.run(store.get("s1")) is not None

        now[0] += 2 * 24 * 3600
        assert asyncio.run(store.get("s1")) is None
        assert asyncio.run(memory_store.read(store.container, "s1.json")) is None

    def test_format_for_context(self, memory_store):
        """Test rendering with assistant truncation."""
        store = self.make_store(memory_store, [1000.0], max_assistant_chars=10)
        conversation = store.new_conversation("s1")
        conversation.turns = [self.turn("user", "Part 23?"), self.turn("assistant", "y" * 20)]

        text = store.format_for_context(conversation)

        assert text.startswith("# Previous Conversation")
        assert "**User:** Part 23?" in text
        assert "**Assistant:** " + "y" * 10 + "..." in text
        assert store.format_for_context(None) == ""


class TestIndexQueue:
    """Test enqueue, message validation and processing outcomes."""

    def repository_doc(self, number, url="https://drs.faa.gov/download/doc.pdf"):
        from certrag.rag.drs_client import RepositoryDocument
        return RepositoryDocument(document_guid=f"guid-{number}", document_number=number, title=number, download_url=url)

    def test_enqueue_skips_missing_url(self):
        """Test that candidates without a download URL are not enqueued."""
        from certrag.rag.index_queue import decode_message

        queue, queues = make_queue()
        count = asyncio.run(queue.enqueue_for_indexing([
            (self.repository_doc("AC 23-8C"), "AC"),
            (self.repository_doc("AC 25-7D", url=None), "AC"),
        ]))

        assert count == 1
        message = decode_message(queues["index-queue"][0].content)
        assert message.document_number == "AC 23-8C"
        assert message.doc_type == "AC"
        assert message.retry_count == 0

    def test_disabled_queue(self):
        """Test that enqueue is a no-op without storage."""
        from certrag.rag.index_queue import IndexQueue

        queue = IndexQueue()

        assert queue.is_enabled is False
        assert asyncio.run(queue.enqueue_for_indexing([(self.repository_doc("AC 23-8C"), "AC")])) == 0
        assert asyncio.run(queue.get_queue_stats()).to_wire() == {
            "enabled": False, "approximateMessageCount": None, "queueName": "index-queue"
        }

    def test_decode_invalid_messages(self):
        """Test that malformed messages decode to None."""
        from certrag.rag.index_queue import decode_message

        def encode(payload):
            return base64.b64encode(json.dumps(payload).encode()).decode()

        assert decode_message("not base64 at all!") is None
        assert decode_message(encode({"documentGuid": "g", "documentNumber": "AC 1", "docType": "AC"})) is None
        assert decode_message(encode({
            "documentGuid": "", "documentNumber": "AC 1", "docType": "AC", "downloadUrl": "https://x"
        })) is None
        assert decode_message(encode({
            "documentGuid": "g", "documentNumber": "AC 1", "docType": "AC", "downloadUrl": "https://x"
        })).document_guid == "g"

    def make_processor(self, cache, index, handler=None):
        from certrag.rag.chunking import SemanticChunker
        from certrag.rag.drs_client import DRSClient
        from certrag.rag.index_queue import IndexProcessor

        drs = drs_client(cache, handler) if handler else DRSClient(cache)
        return IndexProcessor(drs, index, SemanticChunker())

    def message(self, number="AC 23-8C"):
        from certrag.core.schemas import IndexQueueMessage
        return IndexQueueMessage(
            document_guid="guid-1",
            document_number=number,
            title=f"{number} Flight Test Guide",
            doc_type="AC",
            download_url="https://drs.faa.gov/download/doc.pdf",
        )

    def test_already_indexed(self, cache):
        """Test that indexed documents succeed without any work."""
        index = FakeIndex(indexed_numbers={"23-8C"})
        processor = self.make_processor(cache, index)

        assert asyncio.run(processor.process_queue_message(self.message())) is True
        assert index.indexed == []

    def test_embeddings_unavailable_is_retryable(self, cache):
        """Test that missing embeddings fail the message for retry."""
        from certrag.rag.index_queue import ProcessOutcome, encode_message

        processor = self.make_processor(cache, FakeIndex(embeddings_available=False))

        assert asyncio.run(processor.handle(encode_message(self.message()))) == ProcessOutcome.RETRY

    def test_invalid_message_discarded(self, cache):
        """Test that malformed content is discarded."""
        from certrag.rag.index_queue import ProcessOutcome

        processor = self.make_processor(cache, FakeIndex())

        assert asyncio.run(processor.handle("garbage")) == ProcessOutcome.DISCARD

    def test_download_failure_is_retryable(self, cache):
        """Test that a failed download returns False."""
        def handler(request):
            return httpx.Response(500)

        processor = self.make_processor(cache, FakeIndex(), handler)

        assert asyncio.run(processor.process_queue_message(self.message())) is False

    def test_indexes_chunks(self, cache):
        """Test that a long document is truncated, chunked and indexed per chunk."""
        from certrag.rag.index_queue import TRUNCATION_MARKER

        body = ("Paragraph text about compliance. " * 60 + "\n\n") * 40

        def handler(request):
            return httpx.Response(200, content=body.encode())

        index = FakeIndex()
        processor = self.make_processor(cache, index, handler)
        processor.max_chars = 20000

        assert asyncio.run(processor.process_queue_message(self.message())) is True
        assert len(index.indexed) > 1
        assert index.indexed[0].id == "drs-ac-AC-23-8C-chunk-0"
        assert all(r.document_id == "drs-ac-AC-23-8C" for r in index.indexed)
        assert all(r.source == "FAA DRS" for r in index.indexed)
        assert index.indexed[-1].content.endswith(TRUNCATION_MARKER)


class TestIndexWorker:
    """Test the queue worker's message disposition."""

    def make_worker(self, cache, queue, index=None):
        from certrag.api.worker import IndexWorker
        from certrag.rag.chunking import SemanticChunker
        from certrag.rag.drs_client import DRSClient
        from certrag.rag.index_queue import IndexProcessor

        processor = IndexProcessor(DRSClient(cache), index or FakeIndex(), SemanticChunker())
        return IndexWorker(queue, processor)

    def test_discarded_message_deleted(self, cache):
        """Test that malformed messages are removed from the queue."""
        queue, queues = make_queue()
        worker = self.make_worker(cache, queue)

        async def scenario():
            client = await queue._get_client()
            await client.send_message("garbage")
            return await worker.run_once()

        assert asyncio.run(scenario()) == 1
        assert queues["index-queue"] == []

    def test_retry_left_on_queue(self, cache):
        """Test that retryable failures stay on the queue."""
        from certrag.rag.index_queue import ProcessOutcome, encode_message
        from certrag.core.schemas import IndexQueueMessage

        queue, queues = make_queue()
        worker = self.make_worker(cache, queue, FakeIndex(embeddings_available=False))
        message = IndexQueueMessage(
            document_guid="g", document_number="AC 23-8C", doc_type="AC", download_url="https://x"
        )

        async def scenario():
            client = await queue._get_client()
            sent = await client.send_message(encode_message(message))
            sent.dequeue_count = 1
            return await worker.process_message(sent)

        assert asyncio.run(scenario()) == ProcessOutcome.RETRY
        assert len(queues["index-queue"]) == 1

    def test_poison_after_max_dequeue(self, cache):
        """Test that messages past the dequeue limit move to the poison queue."""
        queue, queues = make_queue()
        worker = self.make_worker(cache, queue)

        async def scenario():
            client = await queue._get_client()
            sent = await client.send_message("payload")
            sent.dequeue_count = 4
            return await worker.process_message(sent)

        assert asyncio.run(scenario()) is None
        assert queues["index-queue"] == []
        assert [m.content for m in queues["index-queue-poison"]] == ["payload"]


class TestLLMHelpers:
    """Test LLM error classification and reply parsing."""

    def test_rate_limit_detection(self):
        """Test rate limit detection by status and message."""
        from certrag.rag.llm import is_rate_limit_error

        assert is_rate_limit_error(RuntimeError("Error code: 429 - Too Many Requests"))
        assert is_rate_limit_error(RuntimeError("rate_limit_exceeded"))
        assert is_rate_limit_error(UpstreamStatusError(status_code=429))
        assert not is_rate_limit_error(ValueError("bad request"))

    def test_strip_code_fences(self):
        """Test fence stripping."""
        from certrag.rag.llm import parse_json_reply, strip_code_fences

        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert parse_json_reply('```\n[1, 2]\n```') == [1, 2]

    def test_unconfigured_llm(self):
        """Test that calling an unconfigured LLM raises ConfigurationError."""
        from certrag.core.config import ConfigurationError
        from certrag.rag.llm import LLMService

        llm = LLMService(api_key="")

        assert llm.is_available is False
        with pytest.raises(ConfigurationError):
            asyncio.run(llm.complete("system", [{"role": "user", "content": "hi"}]))


class UpstreamStatusError(Exception):
    def __init__(self, status_code):
        super().__init__("upstream error")
        self.status_code = status_code


class TestLogging:
    """Test per-process log configuration."""

    def test_process_log_file(self, tmp_path):
        """Test that each process writes its own labelled log file."""
        import logging
        import sys
        from types import SimpleNamespace

        from loguru import logger

        from certrag.core.logging import setup_logging

        setup_logging("worker", settings=SimpleNamespace(debug_mode=False, base_dir=tmp_path))
        logger.info("indexed AC 23-8C")
        logger.remove()
        logger.add(sys.stderr)

        content = (tmp_path / "logs" / "worker.log").read_text()
        assert "| worker |" in content
        assert "indexed AC 23-8C" in content
        assert logging.getLogger("httpx").level == logging.WARNING
