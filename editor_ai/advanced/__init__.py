"""
Advanced layer: interleaved context, attention, categorized vector stores,
chain-of-thought, sequential thinking and category-scoped RAG.
"""

from .manager import AdvancedAIServiceManager
from .providers import (
    AdvancedAIProvider,
    MockAdvancedProvider,
    ProviderStatus,
    ServiceBackedAdvancedProvider,
    pseudo_embedding,
)
from .types import (
    AdvancedAIResponse,
    AdvancedCapabilities,
    AdvancedConfiguration,
    AdvancedQueryOptions,
    AttentionResult,
    CategorizedContext,
    ChainOfThoughtResponse,
    ChainOfThoughtStep,
    CodeSegment,
    ContextCategory,
    ContextMetadata,
    InterleavedContext,
    PerformanceMetrics,
    RAGResult,
    SemanticSearchQuery,
    SemanticSearchResult,
    SequentialThinking,
    TextSegment,
)
from .vector_store import (
    MemoryVectorStore,
    VectorDatabaseService,
    VectorStoreConfig,
    VectorStoreError,
    cosine_similarity,
)

__all__ = [
    "AdvancedAIProvider",
    "AdvancedAIResponse",
    "AdvancedAIServiceManager",
    "AdvancedCapabilities",
    "AdvancedConfiguration",
    "AdvancedQueryOptions",
    "AttentionResult",
    "CategorizedContext",
    "ChainOfThoughtResponse",
    "ChainOfThoughtStep",
    "CodeSegment",
    "ContextCategory",
    "ContextMetadata",
    "InterleavedContext",
    "MemoryVectorStore",
    "MockAdvancedProvider",
    "PerformanceMetrics",
    "ProviderStatus",
    "RAGResult",
    "SemanticSearchQuery",
    "SemanticSearchResult",
    "SequentialThinking",
    "ServiceBackedAdvancedProvider",
    "TextSegment",
    "VectorDatabaseService",
    "VectorStoreConfig",
    "VectorStoreError",
    "cosine_similarity",
    "pseudo_embedding",
]
