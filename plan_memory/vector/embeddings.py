"""
Embedding providers used for memory vectors and query embeddings.
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from typing import List

import numpy as np
import ollama

from ..core.errors import UpstreamError


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    @abstractmethod
    def embed_text(self, text: str) -> list[float]:
        """Generate embedding vector for given text."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass

    async def embed(self, texts: List[str]) -> List[list[float]]:
        """Embed a batch of texts, one vector per input."""
        return [self.embed_text(text) for text in texts]


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic hash-based embedding provider for testing purposes.

    The sha256 digest of the text seeds a random generator, so the same text
    always maps to the same full-dimension vector without a model download.
    """

    def __init__(self, dimension: int = 384):
        self.dimension = dimension

    def embed_text(self, text: str) -> list[float]:
        """Generate deterministic embedding vector using hash function."""
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        seed = int.from_bytes(digest[:4], "big")
        rng = np.random.RandomState(seed)
        return rng.uniform(-1.0, 1.0, self.dimension).tolist()

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        return self.dimension


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Sentence transformers embedding provider using pre-trained models."""

    def __init__(self, model_name: str = "all-mpnet-base-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = None

    @property
    def model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed_text(self, text: str) -> list[float]:
        """Generate embedding vector using sentence transformers."""
        embedding = self.model.encode(text, convert_to_tensor=False)
        return embedding.tolist()

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        if self._dimension is None:
            dummy_embedding = self.model.encode("test", convert_to_tensor=False)
            self._dimension = len(dummy_embedding)
        return self._dimension

    async def embed(self, texts: List[str]) -> List[list[float]]:
        # encode is CPU bound; keep the event loop free
        embeddings = await asyncio.to_thread(self.model.encode, list(texts), convert_to_tensor=False)
        return [np.asarray(e).tolist() for e in embeddings]


class OllamaEmbedding(IEmbeddingProvider):
    """Embeddings served by a local Ollama instance."""

    def __init__(self, model_name: str = "nomic-embed-text", host: str = None, client: "ollama.AsyncClient" = None):
        self.model_name = model_name
        self.client = client or ollama.AsyncClient(host=host)
        self._dimension = None

    def embed_text(self, text: str) -> list[float]:
        return asyncio.run(self.embed([text]))[0]

    def get_dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.embed_text("test"))
        return self._dimension

    async def embed(self, texts: List[str]) -> List[list[float]]:
        try:
            response = await self.client.embed(model=self.model_name, input=list(texts))
        except Exception as e:
            raise UpstreamError(f"Ollama embedding failed: {e}", details={"model": self.model_name}) from e

        embeddings = [list(vector) for vector in response["embeddings"]]
        if len(embeddings) != len(texts):
            raise UpstreamError(
                "Embedding count mismatch",
                details={"expected": len(texts), "received": len(embeddings)}
            )
        if embeddings and self._dimension is None:
            self._dimension = len(embeddings[0])
        return embeddings
