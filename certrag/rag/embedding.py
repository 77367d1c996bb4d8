"""
FAA Certification RAG - Embedding Service
Cohere embeddings through the Azure AI Model Inference API
"""

from typing import List

import httpx
from loguru import logger

from certrag.core.config import ConfigurationError


class EmbeddingService:
    """
    Generate document and query embeddings.

    Cohere distinguishes input types: documents are embedded with
    input_type="document", search queries with input_type="query".
    """

    API_VERSION = "2024-05-01-preview"
    BATCH_SIZE = 16

    def __init__(
        self,
        endpoint: str = "",
        api_key: str = "",
        model: str = "cohere-embed",
        dimension: int = 1024,
        http_client: httpx.AsyncClient = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.dimension = dimension
        self._client = http_client

        if self.is_available:
            logger.info(f"Embedding service configured: {self.model} ({self.dimension} dims)")
        else:
            logger.warning("Azure AI Services not configured - embeddings unavailable")

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

    async def _embed(self, texts: List[str], input_type: str) -> List[List[float]]:
        if not self.is_available:
            raise ConfigurationError("Azure AI Services credentials not configured")

        response = await self._get_client().post(
            f"{self.endpoint}/models/embeddings",
            params={"api-version": self.API_VERSION},
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "extra-parameters": "pass-through",
            },
            json={"input": texts, "model": self.model, "input_type": input_type},
        )
        if response.status_code != 200:
            raise RuntimeError(f"Embedding API error ({response.status_code}): {response.text}")

        data = sorted(response.json()["data"], key=lambda item: item["index"])
        return [item["embedding"] for item in data]

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        """Embed texts in batches; output order matches input order."""
        embeddings: List[List[float]] = []
        for i in range(0, len(texts), self.BATCH_SIZE):
            embeddings.extend(await self._embed(texts[i:i + self.BATCH_SIZE], "document"))
        return embeddings

    async def embed_query(self, text: str) -> List[float]:
        return (await self._embed([text], "query"))[0]
