"""
FAA Certification RAG - Test Fixtures
Fakes for the LLM, hybrid index and queue client, plus settings/pipeline builders.
"""

import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))


# =============================================================================
# Fakes
# =============================================================================

class FakeLLM:
    """LLMService stand-in that answers by prompt kind and records every call."""

    def __init__(self, answer="Generated answer.", classification=None, error=None, available=True):
        self.answer = answer
        self.classification = classification
        self.error = error
        self.available = available
        self.calls = []

    @property
    def is_available(self):
        return self.available

    @property
    def classifier_calls(self):
        from certrag.rag.query_classifier import CLASSIFIER_SYSTEM_PROMPT
        return [c for c in self.calls if c["system"] == CLASSIFIER_SYSTEM_PROMPT]

    @property
    def answer_calls(self):
        from certrag.rag.query_classifier import CLASSIFIER_SYSTEM_PROMPT
        return [c for c in self.calls if c["system"] != CLASSIFIER_SYSTEM_PROMPT]

    async def complete(self, system, messages, max_tokens=None, temperature=None, model=None):
        from certrag.rag.query_classifier import CLASSIFIER_SYSTEM_PROMPT

        self.calls.append({"system": system, "messages": messages, "model": model})
        if system == CLASSIFIER_SYSTEM_PROMPT:
            if self.classification is None:
                raise RuntimeError("no classification scripted")
            return self.classification
        if self.error is not None:
            raise self.error
        return self.answer


class FakeEmbeddings:
    def __init__(self, available=True):
        self.is_available = available
        self.dimension = 4


class FakeIndex:
    """SearchIndex stand-in holding hits to return and records that were indexed."""

    def __init__(self, hits=None, indexed_numbers=None, available=True, embeddings_available=True):
        self.hits = hits or []
        self.indexed_numbers = set(indexed_numbers or [])
        self.is_available = available
        self.embeddings = FakeEmbeddings(embeddings_available)
        self.indexed = []
        self.queries = []

    async def hybrid_search(self, query, top=10, document_types=None, filter=None):
        self.queries.append(query)
        return list(self.hits)[:top]

    async def get_indexed_document_numbers(self, document_type=None, max_results=1000):
        return set(self.indexed_numbers)

    async def index_documents(self, documents):
        self.indexed.extend(documents)
        return len(documents)

    async def clear(self):
        self.indexed = []
        return True


class FakeQueueClient:
    """azure.storage.queue.aio.QueueClient stand-in backed by a shared dict."""

    def __init__(self, name, queues):
        self.name = name
        self.queues = queues
        self.queues.setdefault(name, [])

    async def create_queue(self):
        return None

    async def send_message(self, content):
        message = SimpleNamespace(id=f"{self.name}-{len(self.queues[self.name])}", content=content, dequeue_count=0)
        self.queues[self.name].append(message)
        return message

    async def get_queue_properties(self):
        return SimpleNamespace(approximate_message_count=len(self.queues[self.name]))

    async def receive_messages(self, messages_per_page=None, visibility_timeout=None, max_messages=None):
        for message in list(self.queues[self.name])[:max_messages]:
            message.dequeue_count += 1
            yield message

    async def delete_message(self, message):
        self.queues[self.name] = [m for m in self.queues[self.name] if m.id != message.id]

    async def close(self):
        return None


def make_queue(queues=None, **kwargs):
    from certrag.rag.index_queue import IndexQueue

    queues = {} if queues is None else queues
    queue = IndexQueue(client_factory=lambda name: FakeQueueClient(name, queues), **kwargs)
    return queue, queues


def make_settings(**overrides):
    from certrag.core.config import Settings
    return Settings(_env_file=None, **overrides)


def make_hit(title, content, score, document_type="eCFR", **fields):
    from certrag.rag.search_index import IndexDocument, SearchHit

    document = IndexDocument(
        id=fields.pop("id", title), document_type=document_type, title=title, content=content, **fields
    )
    return SearchHit(document=document, score=score)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def memory_store():
    from certrag.rag.blob_store import MemoryBlobStore
    return MemoryBlobStore()


@pytest.fixture
def cache(memory_store):
    from certrag.rag.document_cache import DocumentCache
    return DocumentCache(memory_store)


@pytest.fixture
def build_pipeline(memory_store, cache):
    """Factory for a RAGPipeline wired to fakes; unspecified clients are unconfigured."""
    from certrag.rag.conversation_store import ConversationStore
    from certrag.rag.drs_client import DRSClient
    from certrag.rag.ecfr_client import ECFRClient
    from certrag.rag.pipeline import RAGPipeline
    from certrag.rag.query_classifier import QueryClassifier

    def build(llm=None, index=None, ecfr=None, drs=None, queue=None, **settings):
        llm = llm or FakeLLM()
        return RAGPipeline(
            make_settings(**settings),
            llm=llm,
            classifier=QueryClassifier(llm, cache=cache),
            ecfr=ecfr or ECFRClient(http_client=None),
            drs=drs or DRSClient(cache),
            conversations=ConversationStore(memory_store),
            index=index,
            queue=queue,
        )

    return build
