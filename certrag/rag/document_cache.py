"""
FAA Certification RAG - Document Cache
TTL key-value cache for expensive fetches (DRS document text, classifier
results) over the blob store.
"""

import hashlib
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from loguru import logger

from certrag.rag.blob_store import BlobStore


# Key namespaces
DRS_PREFIX = "drs/"
CLASSIFIER_PREFIX = "classifier/"

_UNSAFE_KEY_CHARS = re.compile(r'[\s/\\:*?"<>|]')


@dataclass
class CachedEntry:
    """A cached payload with its write time (epoch seconds) and TTL."""
    key: str
    data: Any
    ttl_hours: float
    cached_at: float

    def is_expired(self, now: float) -> bool:
        return now - self.cached_at > self.ttl_hours * 3600

    def to_json(self) -> str:
        return json.dumps({
            "key": self.key,
            "data": self.data,
            "cachedAt": int(self.cached_at * 1000),
            "ttlHours": self.ttl_hours,
        })

    @classmethod
    def from_json(cls, raw: bytes, metadata: Dict[str, str]) -> "CachedEntry":
        envelope = json.loads(raw)
        cached_at_ms = envelope.get("cachedAt", metadata.get("cachedat"))
        ttl_hours = envelope.get("ttlHours", metadata.get("ttlhours"))
        return cls(
            key=envelope["key"],
            data=envelope["data"],
            ttl_hours=float(ttl_hours),
            cached_at=float(cached_at_ms) / 1000,
        )


class DocumentCache:
    """
    Generic TTL cache.

    TTL is enforced when an entry is read: an expired entry is a miss and its
    blob is deleted on that read. There is no background sweep and no size
    bound. Storage failures are logged and treated as misses so a cache
    problem never fails a request.
    """

    def __init__(
        self,
        store: BlobStore,
        container: str = "document-cache",
        default_ttl_hours: float = 24,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.container = container
        self.default_ttl_hours = default_ttl_hours
        self._clock = clock

        if not getattr(store, "durable", False):
            logger.warning("Document cache is running in memory (degraded mode)")
        logger.info(f"DocumentCache initialized: container={container}, default_ttl={default_ttl_hours}h")

    @property
    def durable(self) -> bool:
        return bool(getattr(self.store, "durable", False))

    # =========================================================================
    # Keys
    # =========================================================================

    @staticmethod
    def drs_key(doc_type: str, doc_number: str) -> str:
        safe_number = _UNSAFE_KEY_CHARS.sub("-", doc_number)
        return f"{DRS_PREFIX}{doc_type}/{safe_number}.json"

    @staticmethod
    def classifier_key(question: str) -> str:
        digest = hashlib.sha256(question.lower().strip().encode("utf-8")).hexdigest()
        return f"{CLASSIFIER_PREFIX}{digest[:16]}.json"

    # =========================================================================
    # Operations
    # =========================================================================

    async def get(self, key: str) -> Optional[CachedEntry]:
        """Return the live entry for key, or None on miss, expiry or error."""
        try:
            record = await self.store.read(self.container, key)
            if record is None:
                return None

            entry = CachedEntry.from_json(record.data, record.metadata)
            if entry.is_expired(self._clock()):
                logger.debug(f"Cache expired: {key}")
                await self.store.delete(self.container, key)
                return None

            logger.debug(f"Cache hit: {key}")
            return entry
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl_hours: Optional[float] = None) -> None:
        ttl = ttl_hours if ttl_hours is not None else self.default_ttl_hours
        entry = CachedEntry(key=key, data=value, ttl_hours=ttl, cached_at=self._clock())
        try:
            await self.store.write(
                self.container,
                key,
                entry.to_json().encode("utf-8"),
                metadata={
                    "cachedat": str(int(entry.cached_at * 1000)),
                    "ttlhours": str(ttl),
                },
            )
            logger.debug(f"Cached: {key} (ttl={ttl}h)")
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self.store.delete(self.container, key)
        except Exception as e:
            logger.warning(f"Cache delete failed for {key}: {e}")

    async def has(self, key: str) -> bool:
        return await self.get(key) is not None

    async def describe(self, recent: int = 20) -> Dict[str, Any]:
        """Summary of cached entries grouped by namespace."""
        blobs = await self.store.list(self.container)
        blobs.sort(key=lambda b: b.last_modified.timestamp() if b.last_modified else 0)
        return {
            "enabled": self.durable,
            "totalDocuments": len(blobs),
            "totalSize": sum(b.size for b in blobs),
            "byType": {
                "drs": sum(1 for b in blobs if b.name.startswith(DRS_PREFIX)),
                "classifier": sum(1 for b in blobs if b.name.startswith(CLASSIFIER_PREFIX)),
            },
            "recentDocuments": [
                {
                    "name": b.name,
                    "size": b.size,
                    "lastModified": b.last_modified.isoformat() if b.last_modified else "",
                }
                for b in reversed(blobs[-recent:])
            ],
        }
