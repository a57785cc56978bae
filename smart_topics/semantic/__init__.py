"""
Semantic layer: embeddings, vector math and clustering.
"""

from smart_topics.semantic.batch_embedding import BatchEmbeddingProcessor, BatchQueue
from smart_topics.semantic.clustering_service import ClusteringResult, ClusteringService, ClusterResult
from smart_topics.semantic.embedding_service import (
    EmbeddingProvider,
    LocalHashEmbeddingProvider,
    OpenAICompatibleEmbeddingProvider,
    SentenceTransformerEmbeddingProvider,
    build_embedding_provider,
)

__all__ = [
    "BatchEmbeddingProcessor",
    "BatchQueue",
    "ClusterResult",
    "ClusteringResult",
    "ClusteringService",
    "EmbeddingProvider",
    "LocalHashEmbeddingProvider",
    "OpenAICompatibleEmbeddingProvider",
    "SentenceTransformerEmbeddingProvider",
    "build_embedding_provider",
]
