"""
Vector Store
============
Store registry plus an in-memory store for categorized context.

The memory store keeps documents in a dict and scores them with substring
matching (text search) or cosine similarity (embedding search). Only the
memory type is registered; any other type is rejected with VectorStoreError.
"""

import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from math import sqrt
from pathlib import Path
from typing import Any

from ..errors import AIError, AIErrorCode
from ..events import Emitter
from ..types import now_ms
from .types import (
    CategorizedContext,
    ContextCategory,
    SemanticSearchQuery,
    SemanticSearchResult,
)

logger = logging.getLogger(__name__)

TEXT_MATCH_SCORE = 0.8
HYBRID_CANDIDATES = 100


class VectorStoreError(AIError):
    """Unknown store or document"""

    def __init__(self, message: str, details: Any = None):
        super().__init__(AIErrorCode.INVALID_REQUEST, message, details)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 when undefined"""
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)


@dataclass
class VectorStoreConfig:
    name: str
    type: str = "memory"  # only "memory" is registered
    dimensions: int = 1536
    index_type: str = "flat"  # flat, ivf, hnsw, lsh
    categories: list[ContextCategory] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    connection_config: dict[str, Any] | None = None


@dataclass
class VectorStoreInfo:
    id: str
    name: str
    type: str
    dimensions: int
    document_count: int
    categories: list[ContextCategory]
    created_at: int
    last_updated: int
    size: int  # bytes
    status: str = "active"  # active, optimizing, error, offline


@dataclass
class QueryLatency:
    p50: float = 10
    p95: float = 50
    p99: float = 100


@dataclass
class VectorStoreStatistics:
    total_documents: int
    category_counts: dict[ContextCategory, int]
    average_embedding_norm: float
    index_size: int
    query_latency: QueryLatency
    memory_usage: int
    disk_usage: int
    last_optimized: int


@dataclass
class QueryAnalysis:
    query: str
    execution_time: float  # milliseconds
    results_count: int
    index_hits: int
    cache_hits: int
    similarity_distribution: list[float]
    category_breakdown: dict[ContextCategory, int]
    recommendations: dict[str, Any] = field(default_factory=dict)


@dataclass
class StoreUpdate:
    store_id: str
    document_count: int


class VectorStoreInstance(ABC):
    """Operations every store backend provides"""

    @abstractmethod
    async def add_documents(self, documents: list[CategorizedContext]) -> list[str]:
        pass

    @abstractmethod
    async def update_document(self, document_id: str, document: CategorizedContext) -> None:
        pass

    @abstractmethod
    async def delete_document(self, document_id: str) -> None:
        pass

    @abstractmethod
    async def get_document(self, document_id: str) -> CategorizedContext:
        pass

    @abstractmethod
    async def search(self, query: SemanticSearchQuery) -> list[SemanticSearchResult]:
        pass

    @abstractmethod
    async def similarity_search(
        self, embedding: list[float], top_k: int
    ) -> list[SemanticSearchResult]:
        pass

    @abstractmethod
    async def hybrid_search(
        self, text_query: str, embedding: list[float], weights: dict[str, float]
    ) -> list[SemanticSearchResult]:
        pass

    @abstractmethod
    async def search_by_category(
        self, category: ContextCategory, query: str
    ) -> list[SemanticSearchResult]:
        pass

    @abstractmethod
    async def get_category_counts(self) -> dict[ContextCategory, int]:
        pass

    @abstractmethod
    async def get_related_documents(
        self, document_id: str, relationship_type: str | None = None
    ) -> list[CategorizedContext]:
        pass

    async def batch_add(self, documents: list[CategorizedContext]) -> list[str]:
        return await self.add_documents(documents)

    async def batch_update(self, updates: list[tuple[str, CategorizedContext]]) -> None:
        for document_id, document in updates:
            await self.update_document(document_id, document)

    async def batch_delete(self, document_ids: list[str]) -> None:
        for document_id in document_ids:
            await self.delete_document(document_id)

    @abstractmethod
    async def get_statistics(self) -> VectorStoreStatistics:
        pass

    @abstractmethod
    async def analyze_query(self, query: str) -> QueryAnalysis:
        pass

    @abstractmethod
    async def get_recommendations(
        self, document_id: str, count: int
    ) -> list[CategorizedContext]:
        pass

    @abstractmethod
    async def optimize(self) -> None:
        pass

    @abstractmethod
    async def rebuild_index(self) -> None:
        pass

    @abstractmethod
    async def backup(self, backup_path: str | Path) -> None:
        pass

    @abstractmethod
    async def restore(self, backup_path: str | Path) -> None:
        pass

    @abstractmethod
    def get_document_count(self) -> int:
        pass

    @abstractmethod
    def get_info(self) -> dict[str, Any]:
        """documentCount, createdAt, lastUpdated, size and status"""

    async def dispose(self) -> None:
        pass


class MemoryVectorStore(VectorStoreInstance):
    """Dict-backed store for development and tests"""

    def __init__(self, store_id: str, config: VectorStoreConfig) -> None:
        self.store_id = store_id
        self.config = config
        self.documents: dict[str, CategorizedContext] = {}
        self.created_at = now_ms()
        self.last_updated = self.created_at
        self.last_optimized = self.created_at

    def _require(self, document_id: str) -> CategorizedContext:
        document = self.documents.get(document_id)
        if document is None:
            raise VectorStoreError(f"Document {document_id} not found")
        return document

    def _touch(self) -> None:
        self.last_updated = now_ms()

    @staticmethod
    def _result(
        doc_id: str, doc: CategorizedContext, score: float, explanation: str
    ) -> SemanticSearchResult:
        return SemanticSearchResult(
            id=doc_id,
            content=doc.content,
            score=score,
            metadata=doc.metadata.to_dict(),
            embedding=doc.embedding,
            explanation=explanation,
        )

    async def add_documents(self, documents: list[CategorizedContext]) -> list[str]:
        ids = []
        for document in documents:
            doc_id = f"doc_{now_ms()}_{uuid.uuid4().hex[:9]}"
            self.documents[doc_id] = document
            ids.append(doc_id)
        self._touch()
        return ids

    async def update_document(self, document_id: str, document: CategorizedContext) -> None:
        self._require(document_id)
        self.documents[document_id] = document
        self._touch()

    async def delete_document(self, document_id: str) -> None:
        self.documents.pop(document_id, None)
        self._touch()

    async def get_document(self, document_id: str) -> CategorizedContext:
        return self._require(document_id)

    async def search(self, query: SemanticSearchQuery) -> list[SemanticSearchResult]:
        needle = query.query.lower()
        results = [
            self._result(doc_id, doc, TEXT_MATCH_SCORE, "Text match found")
            for doc_id, doc in self.documents.items()
            if needle in doc.content.lower()
        ]
        return results[: query.max_results]

    async def similarity_search(
        self, embedding: list[float], top_k: int
    ) -> list[SemanticSearchResult]:
        results = []
        for doc_id, doc in self.documents.items():
            similarity = cosine_similarity(embedding, doc.embedding)
            results.append(
                self._result(
                    doc_id, doc, similarity, f"Cosine similarity: {similarity:.3f}"
                )
            )
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:top_k]

    async def hybrid_search(
        self, text_query: str, embedding: list[float], weights: dict[str, float]
    ) -> list[SemanticSearchResult]:
        """Weighted union of text and embedding matches, best first"""
        text_results = await self.search(
            SemanticSearchQuery(
                query=text_query,
                embedding=embedding,
                search_type="hybrid",
                max_results=HYBRID_CANDIDATES,
                threshold=0.0,
            )
        )
        semantic_results = await self.similarity_search(embedding, HYBRID_CANDIDATES)

        text_weight = weights.get("text", 1.0)
        semantic_weight = weights.get("semantic", 1.0)
        combined: dict[str, SemanticSearchResult] = {}
        for result in text_results:
            result.score *= text_weight
            combined[result.id] = result
        for result in semantic_results:
            existing = combined.get(result.id)
            if existing is not None:
                existing.score += result.score * semantic_weight
            else:
                result.score *= semantic_weight
                combined[result.id] = result

        return sorted(combined.values(), key=lambda r: r.score, reverse=True)

    async def search_by_category(
        self, category: ContextCategory, query: str
    ) -> list[SemanticSearchResult]:
        needle = query.lower()
        return [
            self._result(
                doc_id, doc, TEXT_MATCH_SCORE, f"Category match: {category.value}"
            )
            for doc_id, doc in self.documents.items()
            if doc.category == category and needle in doc.content.lower()
        ]

    async def get_category_counts(self) -> dict[ContextCategory, int]:
        counts: dict[ContextCategory, int] = {}
        for doc in self.documents.values():
            counts[doc.category] = counts.get(doc.category, 0) + 1
        return counts

    async def get_related_documents(
        self, document_id: str, relationship_type: str | None = None
    ) -> list[CategorizedContext]:
        document = self._require(document_id)
        related = []
        for relationship in document.relationships:
            if relationship_type and relationship.type != relationship_type:
                continue
            target = self.documents.get(relationship.target_id)
            if target is not None:
                related.append(target)
        return related

    async def get_statistics(self) -> VectorStoreStatistics:
        count = len(self.documents)
        norms = [
            sqrt(sum(x * x for x in doc.embedding))
            for doc in self.documents.values()
            if doc.embedding
        ]
        return VectorStoreStatistics(
            total_documents=count,
            category_counts=await self.get_category_counts(),
            average_embedding_norm=sum(norms) / len(norms) if norms else 0.0,
            index_size=count * 1024,
            query_latency=QueryLatency(),
            memory_usage=count * 2048,
            disk_usage=0,
            last_optimized=self.last_optimized,
        )

    async def analyze_query(self, query: str) -> QueryAnalysis:
        start = time.time()
        results = await self.search(
            SemanticSearchQuery(query=query, max_results=len(self.documents) or 1)
        )
        return QueryAnalysis(
            query=query,
            execution_time=(time.time() - start) * 1000,
            results_count=len(results),
            index_hits=len(self.documents),
            cache_hits=0,
            similarity_distribution=[r.score for r in results],
            category_breakdown=await self.get_category_counts(),
            recommendations={
                "optimizeQuery": "Consider using more specific terms",
                "suggestedFilters": [f"category:{ContextCategory.CODE_CONTEXT.value}"],
                "performanceImprovements": ["Add more context to improve relevance"],
            },
        )

    async def get_recommendations(
        self, document_id: str, count: int
    ) -> list[CategorizedContext]:
        document = self._require(document_id)
        recommendations = []
        for doc_id, candidate in self.documents.items():
            if len(recommendations) >= count:
                break
            if doc_id != document_id and candidate.category == document.category:
                recommendations.append(candidate)
        return recommendations

    async def optimize(self) -> None:
        self.last_optimized = now_ms()

    async def rebuild_index(self) -> None:
        # Flat index: nothing to rebuild
        pass

    async def backup(self, backup_path: str | Path) -> None:
        path = Path(backup_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "storeId": self.store_id,
            "createdAt": self.created_at,
            "documents": {i: doc.to_dict() for i, doc in self.documents.items()},
        }
        with open(path, "w") as f:
            json.dump(data, f)
        logger.info(f"Backed up store {self.store_id} to {path}")

    async def restore(self, backup_path: str | Path) -> None:
        path = Path(backup_path)
        try:
            with open(path) as f:
                data = json.load(f)
            documents = {
                doc_id: CategorizedContext.from_dict(doc)
                for doc_id, doc in data["documents"].items()
            }
        except (OSError, ValueError, KeyError) as e:
            raise VectorStoreError(f"Failed to restore store from {path}: {e}") from e

        self.documents = documents
        self._touch()
        logger.info(f"Restored {len(documents)} documents into store {self.store_id}")

    def get_document_count(self) -> int:
        return len(self.documents)

    def get_info(self) -> dict[str, Any]:
        return {
            "documentCount": len(self.documents),
            "createdAt": self.created_at,
            "lastUpdated": self.last_updated,
            "size": len(self.documents) * 1024,
            "status": "active",
        }

    async def dispose(self) -> None:
        self.documents.clear()


STORE_TYPES: dict[str, type] = {
    "memory": MemoryVectorStore,
}


class VectorDatabaseService:
    """Registry of named vector stores"""

    def __init__(self) -> None:
        self.on_did_create_store: Emitter[str] = Emitter("create_store")
        self.on_did_update_store: Emitter[StoreUpdate] = Emitter("update_store")
        self.on_did_delete_store: Emitter[str] = Emitter("delete_store")
        self._stores: dict[str, VectorStoreInstance] = {}
        self._store_configs: dict[str, VectorStoreConfig] = {}

    def _get(self, store_id: str) -> VectorStoreInstance:
        instance = self._stores.get(store_id)
        if instance is None:
            raise VectorStoreError(f"Store {store_id} not found")
        return instance

    def _fire_update(self, store_id: str, instance: VectorStoreInstance) -> None:
        self.on_did_update_store.fire(
            StoreUpdate(store_id=store_id, document_count=instance.get_document_count())
        )

    # Store management

    async def create_store(self, config: VectorStoreConfig) -> str:
        store_cls = STORE_TYPES.get(config.type)
        if store_cls is None:
            raise VectorStoreError(f"Unsupported vector store type: {config.type}")

        store_id = f"store_{now_ms()}_{uuid.uuid4().hex[:9]}"
        self._stores[store_id] = store_cls(store_id, config)
        self._store_configs[store_id] = config
        logger.debug(f"Created {config.type} store {config.name} ({store_id})")
        self.on_did_create_store.fire(store_id)
        return store_id

    async def delete_store(self, store_id: str) -> None:
        instance = self._stores.pop(store_id, None)
        if instance is None:
            return
        await instance.dispose()
        del self._store_configs[store_id]
        self.on_did_delete_store.fire(store_id)

    async def list_stores(self) -> list[VectorStoreInfo]:
        return [self._info(store_id) for store_id in self._stores]

    async def get_store_info(self, store_id: str) -> VectorStoreInfo:
        self._get(store_id)
        return self._info(store_id)

    def _info(self, store_id: str) -> VectorStoreInfo:
        config = self._store_configs[store_id]
        info = self._stores[store_id].get_info()
        return VectorStoreInfo(
            id=store_id,
            name=config.name,
            type=config.type,
            dimensions=config.dimensions,
            document_count=info["documentCount"],
            categories=list(config.categories),
            created_at=info["createdAt"],
            last_updated=info["lastUpdated"],
            size=info["size"],
            status=info["status"],
        )

    # Documents

    async def add_documents(
        self, store_id: str, documents: list[CategorizedContext]
    ) -> list[str]:
        instance = self._get(store_id)
        ids = await instance.add_documents(documents)
        self._fire_update(store_id, instance)
        return ids

    async def update_document(
        self, store_id: str, document_id: str, document: CategorizedContext
    ) -> None:
        await self._get(store_id).update_document(document_id, document)

    async def delete_document(self, store_id: str, document_id: str) -> None:
        instance = self._get(store_id)
        await instance.delete_document(document_id)
        self._fire_update(store_id, instance)

    async def get_document(self, store_id: str, document_id: str) -> CategorizedContext:
        return await self._get(store_id).get_document(document_id)

    # Search

    async def search(
        self, store_id: str, query: SemanticSearchQuery
    ) -> list[SemanticSearchResult]:
        return await self._get(store_id).search(query)

    async def similarity_search(
        self, store_id: str, embedding: list[float], top_k: int
    ) -> list[SemanticSearchResult]:
        return await self._get(store_id).similarity_search(embedding, top_k)

    async def hybrid_search(
        self,
        store_id: str,
        text_query: str,
        embedding: list[float],
        weights: dict[str, float],
    ) -> list[SemanticSearchResult]:
        return await self._get(store_id).hybrid_search(text_query, embedding, weights)

    async def search_by_category(
        self, store_id: str, category: ContextCategory, query: str = ""
    ) -> list[SemanticSearchResult]:
        return await self._get(store_id).search_by_category(category, query)

    async def get_category_counts(self, store_id: str) -> dict[ContextCategory, int]:
        return await self._get(store_id).get_category_counts()

    async def get_related_documents(
        self, store_id: str, document_id: str, relationship_type: str | None = None
    ) -> list[CategorizedContext]:
        return await self._get(store_id).get_related_documents(
            document_id, relationship_type
        )

    # Batches

    async def batch_add(
        self, store_id: str, documents: list[CategorizedContext]
    ) -> list[str]:
        instance = self._get(store_id)
        ids = await instance.batch_add(documents)
        self._fire_update(store_id, instance)
        return ids

    async def batch_update(
        self, store_id: str, updates: list[tuple[str, CategorizedContext]]
    ) -> None:
        await self._get(store_id).batch_update(updates)

    async def batch_delete(self, store_id: str, document_ids: list[str]) -> None:
        instance = self._get(store_id)
        await instance.batch_delete(document_ids)
        self._fire_update(store_id, instance)

    # Analytics

    async def get_store_statistics(self, store_id: str) -> VectorStoreStatistics:
        return await self._get(store_id).get_statistics()

    async def analyze_query_performance(self, store_id: str, query: str) -> QueryAnalysis:
        return await self._get(store_id).analyze_query(query)

    async def get_recommendations(
        self, store_id: str, document_id: str, count: int
    ) -> list[CategorizedContext]:
        return await self._get(store_id).get_recommendations(document_id, count)

    # Maintenance

    async def optimize_store(self, store_id: str) -> None:
        await self._get(store_id).optimize()

    async def rebuild_index(self, store_id: str) -> None:
        await self._get(store_id).rebuild_index()

    async def backup_store(self, store_id: str, backup_path: str | Path) -> None:
        await self._get(store_id).backup(backup_path)

    async def restore_store(self, store_id: str, backup_path: str | Path) -> None:
        instance = self._get(store_id)
        await instance.restore(backup_path)
        self._fire_update(store_id, instance)

    async def dispose(self) -> None:
        for store_id in list(self._stores):
            await self.delete_store(store_id)
        self.on_did_create_store.dispose()
        self.on_did_update_store.dispose()
        self.on_did_delete_store.dispose()
