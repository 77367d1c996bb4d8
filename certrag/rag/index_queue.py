"""
FAA Certification RAG - Background Index Queue
Azure Storage Queue that moves PDF download, chunking, embedding and indexing
off the request path.

Request path: DRS metadata check -> enqueue unindexed documents -> return.
Worker: dequeue -> dedup -> download/extract -> chunk -> embed + index.
"""

import asyncio
import base64
import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from azure.core.exceptions import ResourceExistsError
from azure.storage.queue.aio import QueueClient
from loguru import logger
from pydantic import ValidationError

from certrag.core.schemas import IndexQueueMessage, QueueStats
from certrag.rag.chunking import SemanticChunker
from certrag.rag.drs_client import DRSClient, RepositoryDocument
from certrag.rag.search_index import IndexDocument, SearchIndex, normalize_indexed_number


TRUNCATION_MARKER = "\n\n[Document truncated due to length...]"


class IndexingError(RuntimeError):
    """Indexing a queued document failed; the message should be redelivered."""


class ProcessOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRY = "retry"        # redelivered by the queue until the poison threshold
    DISCARD = "discard"    # malformed, never retried


# =============================================================================
# Message Helpers
# =============================================================================

def encode_message(message: IndexQueueMessage) -> str:
    """Base64 JSON, the format queue-triggered consumers expect."""
    return base64.b64encode(json.dumps(message.to_wire()).encode("utf-8")).decode("ascii")


def decode_message(content: Any) -> Optional[IndexQueueMessage]:
    """
    Parse raw queue content into a message.

    Returns None for anything malformed: undecodable content, missing
    fields, or an empty GUID or download URL.
    """
    try:
        if isinstance(content, (str, bytes)):
            payload = json.loads(base64.b64decode(content, validate=True))
        else:
            payload = content
        message = IndexQueueMessage.model_validate(payload)
    except (ValueError, TypeError, ValidationError):
        return None

    if not message.document_guid or not message.download_url:
        return None
    return message


def drs_document_id(doc_type: str, document_number: str) -> str:
    return f"drs-{doc_type.lower()}-{re.sub(r'[^a-zA-Z0-9]', '-', document_number)}"


def truncate_for_index(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


# =============================================================================
# Queue
# =============================================================================

class IndexQueue:
    """
    Enqueue/dequeue access to the index queue and its poison queue.

    Queue clients are created lazily; creation is single-flight per queue
    name. Without a connection string the queue is disabled and enqueue is
    a no-op.
    """

    def __init__(
        self,
        connection_string: str = "",
        queue_name: str = "index-queue",
        visibility_timeout: int = 300,
        max_dequeue_count: int = 3,
        client_factory: Callable[[str], QueueClient] = None,
    ):
        self.queue_name = queue_name
        self.poison_queue_name = f"{queue_name}-poison"
        self.visibility_timeout = visibility_timeout
        self.max_dequeue_count = max_dequeue_count
        self._connection_string = connection_string
        self._factory = client_factory
        if self._factory is None and connection_string:
            self._factory = lambda name: QueueClient.from_connection_string(connection_string, name)

        self._clients: Dict[str, QueueClient] = {}
        self._init_tasks: Dict[str, asyncio.Task] = {}
        self._failed = False

        if self._factory is None:
            logger.warning("IndexQueue: no Azure Storage configured, queue disabled")

    @property
    def is_enabled(self) -> bool:
        return self._factory is not None and not self._failed

    async def _create_client(self, name: str) -> QueueClient:
        client = self._factory(name)
        try:
            await client.create_queue()
            logger.info(f"IndexQueue initialized: {name}")
        except ResourceExistsError:
            pass
        self._clients[name] = client
        return client

    async def _get_client(self, name: Optional[str] = None) -> Optional[QueueClient]:
        if not self.is_enabled:
            return None
        name = name or self.queue_name
        if name in self._clients:
            return self._clients[name]

        task = self._init_tasks.get(name)
        if task is None:
            task = asyncio.ensure_future(self._create_client(name))
            self._init_tasks[name] = task
        try:
            return await task
        except Exception as e:
            logger.error(f"IndexQueue initialization failed for {name}: {e}")
            self._init_tasks.pop(name, None)
            if name == self.queue_name:
                self._failed = True
            return None

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
        self._init_tasks.clear()

    async def enqueue_for_indexing(self, documents: List[Tuple[RepositoryDocument, str]]) -> int:
        """Send one message per (document, doc_type) that has a download URL."""
        client = await self._get_client()
        if client is None:
            logger.warning("IndexQueue not available, skipping enqueue")
            return 0

        enqueued = 0
        now = datetime.now(timezone.utc).isoformat()

        for doc, doc_type in documents:
            if not doc.download_url:
                logger.info(f"Skipping {doc_type} {doc.document_number}: no download URL")
                continue

            message = IndexQueueMessage(
                document_guid=doc.document_guid,
                document_number=doc.document_number,
                title=doc.title,
                doc_type=doc_type,
                download_url=doc.download_url,
                enqueued_at=now,
                retry_count=0,
            )
            try:
                await client.send_message(encode_message(message))
                enqueued += 1
                logger.info(f"Enqueued: {doc_type} {doc.document_number}")
            except Exception as e:
                logger.warning(f"Failed to enqueue {doc_type} {doc.document_number}: {e}")

        logger.info(f"Enqueued {enqueued}/{len(documents)} documents for background indexing")
        return enqueued

    async def get_queue_stats(self) -> QueueStats:
        if not self.is_enabled:
            return QueueStats(enabled=False, approximate_message_count=None, queue_name=self.queue_name)

        client = await self._get_client()
        if client is None:
            return QueueStats(enabled=False, approximate_message_count=None, queue_name=self.queue_name)

        try:
            properties = await client.get_queue_properties()
            return QueueStats(
                enabled=True,
                approximate_message_count=properties.approximate_message_count or 0,
                queue_name=self.queue_name,
            )
        except Exception as e:
            logger.warning(f"Failed to get queue stats: {e}")
            return QueueStats(enabled=True, approximate_message_count=None, queue_name=self.queue_name)

    async def receive(self, max_messages: int = 4) -> List[Any]:
        """Dequeue up to max_messages, hidden for the visibility timeout."""
        client = await self._get_client()
        if client is None:
            return []
        messages = []
        async for message in client.receive_messages(
            messages_per_page=max_messages,
            visibility_timeout=self.visibility_timeout,
            max_messages=max_messages,
        ):
            messages.append(message)
        return messages

    async def delete(self, message: Any) -> None:
        client = await self._get_client()
        if client is not None:
            await client.delete_message(message)

    async def move_to_poison(self, message: Any) -> None:
        """Copy the message to {queue}-poison and remove it from the work queue."""
        poison = await self._get_client(self.poison_queue_name)
        if poison is None:
            raise IndexingError(f"Poison queue {self.poison_queue_name} unavailable")
        await poison.send_message(message.content)
        await self.delete(message)
        logger.warning(f"Moved message {message.id} to {self.poison_queue_name}")


# =============================================================================
# Processing
# =============================================================================

class IndexProcessor:
    """Turns one queue message into indexed chunk records."""

    def __init__(
        self,
        drs: DRSClient,
        index: SearchIndex,
        chunker: SemanticChunker,
        max_chars: int = 50000,
    ):
        self.drs = drs
        self.index = index
        self.chunker = chunker
        self.max_chars = max_chars

    async def handle(self, content: Any) -> ProcessOutcome:
        """Malformed messages are discarded up front; processing failures are retried."""
        message = decode_message(content)
        if message is None:
            logger.error("Invalid queue message format, discarding")
            return ProcessOutcome.DISCARD

        if await self.process_queue_message(message):
            return ProcessOutcome.SUCCEEDED
        return ProcessOutcome.RETRY

    async def process_queue_message(self, message: IndexQueueMessage) -> bool:
        """
        Dedup, download, chunk and index one document.

        Returns True when the document is indexed or already present, False
        on any failure.
        """
        started = datetime.now(timezone.utc)
        label = f"{message.doc_type} {message.document_number}"
        logger.info(f"Processing: {label}")

        try:
            indexed = await self.index.get_indexed_document_numbers()
            if normalize_indexed_number(message.document_number) in indexed:
                logger.info(f"Already indexed: {label}")
                return True

            if not self.index.embeddings.is_available:
                logger.warning("Embedding service not available, cannot index")
                return False

            count = await self._index(message)
        except Exception as e:
            logger.error(f"Error processing {label}: {e}")
            return False

        elapsed = (datetime.now(timezone.utc) - started).total_seconds()
        logger.info(f"Indexed: {label} as {count} chunks ({elapsed:.1f}s)")
        return True

    async def _index(self, message: IndexQueueMessage) -> int:
        doc = RepositoryDocument(
            document_guid=message.document_guid,
            document_number=message.document_number,
            title=message.title,
            last_modified=message.enqueued_at,
            download_url=message.download_url,
        )
        fetched = await self.drs.fetch_document_direct(doc, message.doc_type)
        if fetched is None:
            raise IndexingError(f"Failed to download {message.doc_type} {message.document_number}")

        text = truncate_for_index(fetched.text, self.max_chars)
        doc_id = drs_document_id(message.doc_type, message.document_number)
        result = await self.chunker.chunk(text, message.title)

        records = [
            IndexDocument(
                id=f"{doc_id}-chunk-{chunk.index}" if result.total_chunks > 1 else doc_id,
                document_id=doc_id,
                document_type=message.doc_type,
                document_number=message.document_number,
                title=message.title,
                content=chunk.content,
                source="FAA DRS",
                status=fetched.doc.status,
            )
            for chunk in result.chunks
        ]
        return await self.index.index_documents(records)
