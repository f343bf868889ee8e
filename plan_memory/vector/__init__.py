"""
Plan memory vectors: storage, embedding providers and similarity grouping.
"""

from .index import IEmbeddingStore, InMemoryEmbeddingStore
from .types import MemoryVector, SearchHit, VectorCluster
from .embeddings import IEmbeddingProvider, DeterministicHashEmbedding, SentenceTransformerEmbedding, OllamaEmbedding
from .similarity import VectorSimilarityEngine

__all__ = [
    'IEmbeddingStore',
    'InMemoryEmbeddingStore',
    'MemoryVector',
    'SearchHit',
    'VectorCluster',
    'IEmbeddingProvider',
    'DeterministicHashEmbedding',
    'SentenceTransformerEmbedding',
    'OllamaEmbedding',
    'VectorSimilarityEngine'
]
