#!/usr/bin/env python
"""
FAA Certification RAG - API Tests
Test the HTTP surface with an in-process client
"""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import make_queue, make_settings


class StubPipeline:
    """Records ask_question calls and returns or raises what it was given."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    async def ask_question(self, question, session_id=None, is_clarifying=False, conversation=None):
        self.calls.append({
            "question": question,
            "session_id": session_id,
            "is_clarifying": is_clarifying,
            "turns": [t.content for t in conversation.turns] if conversation else None,
        })
        if self.error is not None:
            raise self.error
        return self.response.model_copy()


@pytest.fixture
def services():
    """Services built from empty settings: every external capability unconfigured."""
    from certrag.services import build_services
    return build_services(make_settings())


@pytest.fixture
def client(services):
    from certrag.api.server import create_app
    return TestClient(create_app(services))


class TestAskEndpoint:
    """Test POST /api/ask."""

    def test_missing_question(self, client):
        """Test that a missing question is rejected with 400 and an error body."""
        response = client.post("/api/ask", json={})

        assert response.status_code == 400
        assert response.json() == {
            "error": "Question is required and must be a non-empty string",
            "answer": "",
            "sources": [],
            "sourceCount": 0,
            "context": "",
        }

    def test_blank_question(self, client):
        """Test that a whitespace-only question is rejected."""
        response = client.post("/api/ask", json={"question": "   "})

        assert response.status_code == 400

    def test_non_string_question(self, client):
        """Test that a non-string question is rejected."""
        response = client.post("/api/ask", json={"question": 42})

        assert response.status_code == 400

    def test_invalid_field_types(self, client, services):
        """Test that request-model validation failures become 400 error bodies."""
        services.pipeline = StubPipeline(error=AssertionError("pipeline must not run"))

        not_an_object = client.post("/api/ask", json=["Stall speed?"])
        assert not_an_object.status_code == 400
        assert not_an_object.json()["error"] == "Question is required and must be a non-empty string"

        bad_session = client.post("/api/ask", json={"question": "Stall speed?", "sessionId": {"id": 1}})
        assert bad_session.status_code == 400
        assert bad_session.json()["error"] == "Invalid request fields: sessionId"
        assert services.pipeline.calls == []

    def test_request_schema_documented(self, client):
        """Test that the ask endpoint documents its request body."""
        operation = client.get("/openapi.json").json()["paths"]["/api/ask"]["post"]
        schema = operation["requestBody"]["content"]["application/json"]["schema"]

        assert set(schema["properties"]) == {"question", "sessionId", "isClarifying"}

    def test_missing_body(self, client):
        """Test that an empty body is rejected."""
        response = client.post("/api/ask", content=b"")

        assert response.status_code == 400
        assert response.json()["error"] == "Request body is required"

    def test_answer_and_session(self, client, services):
        """Test a successful answer, session creation and turn persistence."""
        from certrag.core.schemas import AskResponse

        stub = StubPipeline(AskResponse(answer="Answer", sources=["Source"], source_count=1, context="ctx"))
        services.pipeline = stub

        first = client.post("/api/ask", json={"question": "  Stall speed?  "})
        body = first.json()

        assert first.status_code == 200
        assert body["answer"] == "Answer"
        assert body["sourceCount"] == 1
        assert "error" not in body
        session_id = body["sessionId"]
        assert stub.calls[0]["question"] == "Stall speed?"
        assert stub.calls[0]["turns"] is None

        second = client.post("/api/ask", json={"question": "And Part 25?", "sessionId": session_id, "isClarifying": True})

        assert second.json()["sessionId"] == session_id
        assert stub.calls[1]["is_clarifying"] is True
        assert stub.calls[1]["turns"] == ["Stall speed?", "Answer"]

        stored = asyncio.run(services.conversations.get(session_id))
        assert len(stored.turns) == 4
        assert stored.turns[1].sources == ["Source"]

    def test_rate_limit(self, client, services):
        """Test that rate limiting maps to 429."""
        from certrag.rag.llm import LLMRateLimitError

        services.pipeline = StubPipeline(error=LLMRateLimitError("429 Too Many Requests"))

        response = client.post("/api/ask", json={"question": "Stall speed?"})

        assert response.status_code == 429
        assert response.json()["error"] == "Rate limit exceeded. Please wait a moment and try again."
        assert response.json()["answer"] == ""

    def test_internal_error(self, client, services):
        """Test that unexpected failures map to 500 with the error message."""
        services.pipeline = StubPipeline(error=RuntimeError("kaput"))

        response = client.post("/api/ask", json={"question": "Stall speed?"})

        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error: kaput"
        assert response.json()["sources"] == []


class TestSystemEndpoints:
    """Test GET /api/health and GET /api/cache."""

    def test_health(self, client):
        """Test availability flags with nothing configured."""
        response = client.get("/api/health")
        body = response.json()

        assert response.status_code == 200
        assert body["status"] == "ok"
        assert body["version"] == "1.0.0"
        assert body["hasLlmKey"] is False
        assert body["hasSearchIndex"] is False
        assert body["hasEmbeddingService"] is False
        assert body["hasDrsApiKey"] is False
        assert body["hasBlobStorage"] is False
        assert body["indexQueue"] == {"enabled": False, "approximateMessageCount": None, "queueName": "index-queue"}

    def test_health_queue_stats(self, client, services):
        """Test that queue statistics are reported when the queue is configured."""
        queue, _ = make_queue()
        services.queue = queue

        body = client.get("/api/health").json()

        assert body["indexQueue"] == {"enabled": True, "approximateMessageCount": 0, "queueName": "index-queue"}

    def test_cache_listing(self, client, services):
        """Test the cache summary."""
        asyncio.run(services.cache.set("drs/AC/AC-23-8C.json", {"text": "x"}))

        body = client.get("/api/cache").json()

        assert body["enabled"] is False
        assert body["totalDocuments"] == 1
        assert body["byType"]["drs"] == 1
        assert body["recentDocuments"][0]["name"] == "drs/AC/AC-23-8C.json"


class TestReindexEndpoint:
    """Test POST /api/reindex."""

    def test_queue_not_configured(self, client):
        """Test that reindexing without a queue returns 503."""
        response = client.post("/api/reindex", json={})

        assert response.status_code == 503

    def test_enqueues_unique_documents(self, client, services):
        """Test topic searches, GUID deduplication and the per-type limit."""
        from certrag.rag.drs_client import DRSClient
        from certrag.rag.index_queue import decode_message

        searches = []

        def handler(request):
            searches.append(request)
            return httpx.Response(200, json={"documents": [
                {"documentGuid": f"g{i}", "drs:documentNumber": f"TSO-C{i}", "drs:title": f"TSO-C{i}",
                 "mainDocumentDownloadURL": f"https://drs.faa.gov/download/{i}.pdf"}
                for i in range(3)
            ]})

        queue, queues = make_queue()
        services.queue = queue
        services.drs = DRSClient(
            services.cache,
            api_key="test-key",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        response = client.post("/api/reindex", json={"docTypes": ["TSO"], "limit": 2})
        body = response.json()

        assert response.status_code == 200
        assert body["cleared"] is False
        assert body["found"] == 2
        assert body["enqueued"] == 2
        assert [d["documentNumber"] for d in body["documents"]] == ["TSO-C0", "TSO-C1"]
        assert body["documents"][0]["docType"] == "TSO"
        assert len(searches) == 1
        assert {decode_message(m.content).document_guid for m in queues["index-queue"]} == {"g0", "g1"}
