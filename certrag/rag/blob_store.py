"""
FAA Certification RAG - Blob Storage
Key-value blob capability shared by the document cache and the conversation store.
Azure Blob Storage when a connection string is configured, an in-process map otherwise.
"""

import asyncio
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.storage.blob.aio import BlobServiceClient
from loguru import logger


@dataclass
class BlobRecord:
    """A stored blob with its user metadata."""
    name: str
    data: bytes
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class BlobInfo:
    """Listing entry for a stored blob."""
    name: str
    size: int
    last_modified: Optional[datetime] = None


class BlobStore(Protocol):
    """Minimal blob operations used by the cache and the conversation store."""

    durable: bool

    async def read(self, container: str, name: str) -> Optional[BlobRecord]:
        ...

    async def write(
        self,
        container: str,
        name: str,
        data: bytes,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        ...

    async def delete(self, container: str, name: str) -> None:
        ...

    async def list(self, container: str, prefix: str = "") -> List[BlobInfo]:
        ...


class MemoryBlobStore:
    """
    In-process blob store.

    State lives in this process only, so it is not shared between API
    instances or with the worker. Suitable for local development and tests.
    """

    durable = False

    def __init__(self):
        self._blobs: Dict[Tuple[str, str], Tuple[BlobRecord, datetime]] = {}

    async def read(self, container: str, name: str) -> Optional[BlobRecord]:
        entry = self._blobs.get((container, name))
        return entry[0] if entry else None

    async def write(
        self,
        container: str,
        name: str,
        data: bytes,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        record = BlobRecord(name=name, data=data, metadata=dict(metadata or {}))
        self._blobs[(container, name)] = (record, datetime.now(timezone.utc))

    async def delete(self, container: str, name: str) -> None:
        self._blobs.pop((container, name), None)

    async def list(self, container: str, prefix: str = "") -> List[BlobInfo]:
        return [
            BlobInfo(name=name, size=len(record.data), last_modified=modified)
            for (owner, name), (record, modified) in self._blobs.items()
            if owner == container and name.startswith(prefix)
        ]


class AzureBlobStore:
    """
    Azure Blob Storage backend.

    Containers are created on first use. Creation is single-flight per
    container so concurrent first callers share one setup call.
    """

    durable = True

    def __init__(self, connection_string: str):
        self._connection_string = connection_string
        self._service: Optional[BlobServiceClient] = None
        self._ready: Dict[str, asyncio.Task] = {}

    def _get_service(self) -> BlobServiceClient:
        """Lazy initialization of the service client."""
        if self._service is None:
            self._service = BlobServiceClient.from_connection_string(self._connection_string)
        return self._service

    async def _create_container(self, container: str) -> None:
        client = self._get_service().get_container_client(container)
        try:
            await client.create_container()
            logger.info(f"Created blob container '{container}'")
        except ResourceExistsError:
            pass

    async def _container(self, container: str):
        task = self._ready.get(container)
        if task is None:
            task = asyncio.ensure_future(self._create_container(container))
            self._ready[container] = task
        try:
            await task
        except Exception:
            # Allow a later caller to retry setup
            self._ready.pop(container, None)
            raise
        return self._get_service().get_container_client(container)

    async def read(self, container: str, name: str) -> Optional[BlobRecord]:
        client = await self._container(container)
        try:
            downloader = await client.get_blob_client(name).download_blob()
            data = await downloader.readall()
        except ResourceNotFoundError:
            return None
        metadata = dict(downloader.properties.metadata or {})
        return BlobRecord(name=name, data=data, metadata=metadata)

    async def write(
        self,
        container: str,
        name: str,
        data: bytes,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        client = await self._container(container)
        await client.get_blob_client(name).upload_blob(
            data, overwrite=True, metadata=metadata or {}
        )

    async def delete(self, container: str, name: str) -> None:
        client = await self._container(container)
        try:
            await client.get_blob_client(name).delete_blob()
        except ResourceNotFoundError:
            pass

    async def list(self, container: str, prefix: str = "") -> List[BlobInfo]:
        client = await self._container(container)
        blobs = []
        async for blob in client.list_blobs(name_starts_with=prefix or None):
            blobs.append(BlobInfo(name=blob.name, size=blob.size or 0, last_modified=blob.last_modified))
        return blobs

    async def close(self) -> None:
        if self._service is not None:
            await self._service.close()
            self._service = None


def create_blob_store(connection_string: str) -> BlobStore:
    """Durable store when a connection string is configured, in-memory otherwise."""
    if connection_string:
        return AzureBlobStore(connection_string)
    logger.warning(
        "No blob storage configured - using in-memory store (degraded mode: "
        "state is lost on restart and not shared between instances)"
    )
    return MemoryBlobStore()
