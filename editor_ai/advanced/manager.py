"""
Advanced AI Service Manager
===========================
Augmentation pipeline on top of the base service:

- Interleaved text/code context with attention analysis
- Categorized context filed into per-category vector stores
- Semantic search across every store
- Chain-of-thought and sequential reasoning
- Category-scoped RAG

Usage:
    manager = AdvancedAIServiceManager(service=service)
    await manager.initialize()
    response = await manager.process_advanced_query(
        "How is auth wired?", AdvancedQueryOptions(use_chain_of_thought=True)
    )
"""

import logging
import time
from dataclasses import fields, replace
from typing import TYPE_CHECKING, Any

from ..errors import AIError, AIErrorCode
from ..events import CancellationToken, Emitter
from .providers import (
    AdvancedAIProvider,
    MockAdvancedProvider,
    ServiceBackedAdvancedProvider,
    apply_attention_weights,
    pseudo_embedding,
)
from .types import (
    AdvancedAIResponse,
    AdvancedCapabilities,
    AdvancedConfiguration,
    AdvancedQueryOptions,
    AdvancedResponseMetadata,
    AttentionResult,
    CategorizedContext,
    ChainOfThoughtResponse,
    ContextCategory,
    ContextMetadata,
    ContextRelationship,
    InterleavedContext,
    PerformanceMetrics,
    RAGResult,
    SemanticSearchQuery,
    SemanticSearchResult,
    SequentialThinking,
    SourceReference,
)
from .vector_store import VectorDatabaseService, VectorStoreConfig

if TYPE_CHECKING:
    from ..service import AIServiceManager

logger = logging.getLogger(__name__)

RAG_QUERY_CHARS = 200
CODE_DEPENDENCY_STRENGTH = 0.8
SOURCE_EXCERPT_CHARS = 200


def elapsed_ms(start_time: float) -> float:
    return (time.time() - start_time) * 1000


class AdvancedAIServiceManager:
    """
    Composes an advanced provider with the vector database.

    Nothing works before initialize(), which creates the category stores
    and installs a provider: the one given, a ServiceBackedAdvancedProvider
    when a service manager is given, otherwise MockAdvancedProvider.
    """

    def __init__(
        self,
        vector_database: VectorDatabaseService | None = None,
        provider: AdvancedAIProvider | None = None,
        service: "AIServiceManager | None" = None,
        configuration: AdvancedConfiguration | None = None,
    ) -> None:
        self._owns_vector_database = vector_database is None
        self.vector_database = vector_database or VectorDatabaseService()
        self.service = service
        self._provider = provider
        self._configuration = configuration or AdvancedConfiguration()
        self._metrics = PerformanceMetrics()
        self._attention_weights: dict[str, dict[str, float]] = {}
        self._initialized = False

        self.on_did_process_context: Emitter[InterleavedContext] = Emitter("process_context")
        self.on_did_update_attention: Emitter[AttentionResult] = Emitter("update_attention")
        self.on_did_complete_reasoning: Emitter[ChainOfThoughtResponse] = Emitter(
            "complete_reasoning"
        )
        self.on_did_categorize_context: Emitter[
            dict[ContextCategory, list[CategorizedContext]]
        ] = Emitter("categorize_context")

    async def initialize(self) -> None:
        if self._initialized:
            return

        for category in ContextCategory:
            await self.vector_database.create_store(
                VectorStoreConfig(
                    name=f"{category.value}_store",
                    type="memory",
                    dimensions=self._configuration.embedding_dimensions,
                    index_type="flat",
                    categories=[category],
                    metadata={
                        "description": f"Vector store for {category.value} context",
                        "autoOptimize": True,
                    },
                )
            )

        if self._provider is None:
            if self.service is not None:
                self._provider = ServiceBackedAdvancedProvider(
                    self.service,
                    self.vector_database,
                    dimensions=self._configuration.embedding_dimensions,
                    retrieval_top_k=self._configuration.retrieval_top_k,
                )
            else:
                logger.warning(
                    "No AI service manager available, using the mock advanced provider"
                )
                self._provider = MockAdvancedProvider(
                    dimensions=self._configuration.embedding_dimensions
                )
        await self._provider.configure(self._configuration)

        self._initialized = True
        logger.info(
            f"Advanced AI service initialized with {len(ContextCategory)} vector "
            f"stores and provider {self._provider.id}"
        )

    @property
    def provider(self) -> AdvancedAIProvider:
        if not self._initialized or self._provider is None:
            raise AIError.configuration("Advanced AI service is not initialized")
        return self._provider

    # ------------------------------------------------------------------
    # Context processing
    # ------------------------------------------------------------------

    async def process_interleaved_context(
        self, context: InterleavedContext, token: CancellationToken | None = None
    ) -> AdvancedAIResponse:
        """Attention, categorization and contextual RAG for a bare context"""
        provider = self.provider
        start_time = time.time()
        try:
            attention = await self.analyze_attention("", context, token)
            categorized = await self._categorize_context_segments(context)
            rag_results = await self._perform_contextual_rag(categorized, context, token)

            response = await provider.process_query("", context, token)
            response.attention_analysis = attention
            response.semantic_context = categorized
            response.rag_results = rag_results
            response.metadata.processing_time = elapsed_ms(start_time)
            response.metadata.context_categories = list(
                dict.fromkeys(c.category for c in categorized)
            )

            self.on_did_process_context.fire(context)
            self._record_success(response.metadata.processing_time)
            return response
        except Exception as e:
            self._record_failure()
            logger.error(f"Failed to process interleaved context: {e}")
            raise

    async def analyze_attention(
        self,
        query: str,
        context: InterleavedContext,
        token: CancellationToken | None = None,
        context_id: str | None = None,
    ) -> AttentionResult:
        """Provider scores, with any weights stored for context_id applied on top"""
        start_time = time.time()
        result = await self.provider.analyze_attention(query, context, token)
        overrides = self._attention_weights.get(context_id) if context_id else None
        if overrides:
            result = apply_attention_weights(result, overrides)
        self._metrics.attention_compute_time = elapsed_ms(start_time)
        self.on_did_update_attention.fire(result)
        return result

    def update_attention_weights(self, context_id: str, weights: dict[str, float]) -> None:
        """Store segment weights for context_id; an empty map clears them"""
        if any(w < 0 for w in weights.values()):
            raise AIError(
                AIErrorCode.INVALID_REQUEST,
                "Attention weights must not be negative",
                {"contextId": context_id},
            )
        if not weights:
            self._attention_weights.pop(context_id, None)
            return
        self._attention_weights.setdefault(context_id, {}).update(weights)
        logger.debug(f"Attention weights for {context_id}: {weights}")

    # ------------------------------------------------------------------
    # Semantic search and indexing
    # ------------------------------------------------------------------

    async def semantic_search(
        self, query: SemanticSearchQuery
    ) -> list[SemanticSearchResult]:
        """
        Search every store and merge the hits.

        Embedding queries run a similarity search (hybrid when asked) and
        drop hits under the threshold; keyword queries, or queries without
        an embedding, run a substring search. Duplicate ids keep their best
        score.
        """
        merged: dict[str, SemanticSearchResult] = {}
        for store in await self.vector_database.list_stores():
            try:
                results = await self._search_store(store.id, query)
            except Exception as e:
                logger.warning(f"Search failed for store {store.name}: {e}")
                continue
            for result in results:
                existing = merged.get(result.id)
                if existing is None or result.score > existing.score:
                    merged[result.id] = result

        ranked = sorted(merged.values(), key=lambda r: r.score, reverse=True)
        return ranked[: query.max_results]

    async def _search_store(
        self, store_id: str, query: SemanticSearchQuery
    ) -> list[SemanticSearchResult]:
        if not query.embedding or query.search_type == "keyword":
            return await self.vector_database.search(store_id, query)

        if query.search_type == "hybrid":
            results = await self.vector_database.hybrid_search(
                store_id, query.query, query.embedding, {"text": 0.5, "semantic": 0.5}
            )
        else:
            results = await self.vector_database.similarity_search(
                store_id, query.embedding, query.max_results
            )
        return [r for r in results if r.score >= query.threshold]

    async def index_content(
        self,
        content: str,
        category: ContextCategory,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """File content under a category and return the new document id"""
        metadata = metadata or {}
        document = CategorizedContext(
            category=category,
            content=content,
            embedding=await self._create_embedding(content),
            metadata=ContextMetadata(
                source=metadata.get("source", "unknown"),
                language=metadata.get("language"),
                framework=metadata.get("framework"),
                tags=list(metadata.get("tags", [])),
                relevance_score=1.0,
            ),
        )
        store_id = await self._get_store_for_category(category)
        ids = await self.vector_database.add_documents(store_id, [document])
        return ids[0]

    # ------------------------------------------------------------------
    # Reasoning and RAG
    # ------------------------------------------------------------------

    async def chain_of_thought_reasoning(
        self,
        query: str,
        context: InterleavedContext | None = None,
        token: CancellationToken | None = None,
    ) -> ChainOfThoughtResponse:
        start_time = time.time()
        result = await self.provider.perform_chain_of_thought(query, context, token)
        self._metrics.reasoning_time = elapsed_ms(start_time)
        self.on_did_complete_reasoning.fire(result)
        return result

    async def sequential_problem_solving(
        self,
        problem: str,
        context: InterleavedContext | None = None,
        token: CancellationToken | None = None,
    ) -> SequentialThinking:
        return await self.provider.perform_sequential_thinking(problem, context, token)

    async def rag_query(
        self,
        query: str,
        categories: list[ContextCategory],
        context: InterleavedContext | None = None,
        token: CancellationToken | None = None,
    ) -> list[RAGResult]:
        start_time = time.time()
        results = await self.provider.perform_rag_query(query, categories, context, token)
        self._metrics.rag_retrieval_time = elapsed_ms(start_time)
        return results

    # ------------------------------------------------------------------
    # Vector stores
    # ------------------------------------------------------------------

    async def create_vector_store(self, config: VectorStoreConfig) -> str:
        """Create a store; one without categories accepts every category"""
        if not config.categories:
            config = replace(config, categories=list(ContextCategory))
        return await self.vector_database.create_store(config)

    async def update_vector_store(
        self, store_id: str, documents: list[CategorizedContext]
    ) -> list[str]:
        return await self.vector_database.batch_add(store_id, documents)

    async def query_vector_store(
        self, store_id: str, query: SemanticSearchQuery
    ) -> list[SemanticSearchResult]:
        return await self.vector_database.search(store_id, query)

    # ------------------------------------------------------------------
    # Categorization
    # ------------------------------------------------------------------

    async def categorize_context(self, content: str) -> list[ContextCategory]:
        return await self.provider.categorize_content(content)

    async def get_categorized_context(
        self, categories: list[ContextCategory]
    ) -> dict[ContextCategory, list[CategorizedContext]]:
        grouped: dict[ContextCategory, list[CategorizedContext]] = {}
        for category in categories:
            store_id = await self._get_store_for_category(category)
            results = await self.vector_database.search_by_category(store_id, category, "")
            grouped[category] = [
                CategorizedContext(
                    category=category,
                    content=result.content,
                    embedding=result.embedding,
                    metadata=ContextMetadata.from_dict(result.metadata),
                )
                for result in results
            ]
        self.on_did_categorize_context.fire(grouped)
        return grouped

    # ------------------------------------------------------------------
    # Combined query
    # ------------------------------------------------------------------

    async def process_advanced_query(
        self,
        query: str,
        options: AdvancedQueryOptions,
        context: InterleavedContext | None = None,
        token: CancellationToken | None = None,
    ) -> AdvancedAIResponse:
        """
        Run the enabled augmentation steps, then answer the query.

        Args:
            query: User query
            options: Independent switches for each step
            context: Interleaved context; defaults to the query as a single
                instruction segment

        Returns:
            The provider's answer plus every enabled step's output
        """
        provider = self.provider
        context = context or InterleavedContext.from_query(query)
        start_time = time.time()
        try:
            reasoning = None
            if options.use_chain_of_thought:
                reasoning = await self.chain_of_thought_reasoning(query, context, token)

            sequential = None
            if options.use_sequential_thinking:
                sequential = await self.sequential_problem_solving(query, context, token)

            rag_results: list[RAGResult] = []
            if options.use_rag and options.rag_categories:
                rag_results = await self.rag_query(
                    query, options.rag_categories, context, token
                )

            if options.use_attention:
                attention = await self.analyze_attention(query, context, token)
            else:
                attention = AttentionResult()

            semantic_results: list[SemanticSearchResult] = []
            if options.use_semantic_search:
                semantic_results = await self.semantic_search(
                    SemanticSearchQuery(
                        query=query,
                        embedding=await self._create_embedding(query),
                        search_type="semantic",
                        max_results=10,
                        threshold=0.7,
                    )
                )

            base = await provider.process_query(query, context, token)
            categorized = await self._categorize_context_segments(context)

            response = AdvancedAIResponse(
                content=base.content,
                reasoning=reasoning or base.reasoning,
                sequential_thinking=sequential,
                rag_results=rag_results,
                attention_analysis=attention,
                semantic_context=categorized,
                confidence=base.confidence,
                sources=[self._source_reference(r) for r in semantic_results],
                metadata=AdvancedResponseMetadata(
                    model=base.metadata.model or "unknown",
                    processing_time=elapsed_ms(start_time),
                    tokens_used=base.metadata.tokens_used,
                    reasoning_depth=len(reasoning.steps) if reasoning else 0,
                    context_categories=list(options.rag_categories or []),
                ),
            )
            self._record_success(response.metadata.processing_time)
            return response
        except Exception as e:
            self._record_failure()
            logger.error(f"Advanced query failed: {e}")
            raise

    @staticmethod
    def _source_reference(result: SemanticSearchResult) -> SourceReference:
        source = result.metadata.get("source", "unknown")
        return SourceReference(
            id=result.id,
            title=source,
            type="code" if source == "code_segment" else "documentation",
            relevance=result.score,
            excerpt=result.content[:SOURCE_EXCERPT_CHARS],
        )

    # ------------------------------------------------------------------
    # Capabilities, configuration and metrics
    # ------------------------------------------------------------------

    def get_capabilities(self) -> AdvancedCapabilities:
        if self._provider is not None:
            return self._provider.capabilities
        return AdvancedCapabilities()

    def is_feature_supported(self, feature: str) -> bool:
        capabilities = self.get_capabilities()
        return feature in capabilities.feature_names() and capabilities.supports(feature)

    async def update_configuration(self, **changes: Any) -> None:
        known = {f.name for f in fields(AdvancedConfiguration)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise AIError.configuration(
                f"Unknown configuration option: {', '.join(unknown)}"
            )
        self._configuration = replace(self._configuration, **changes)
        if self._provider is not None:
            await self._provider.configure(self._configuration)

    def get_configuration(self) -> AdvancedConfiguration:
        return replace(self._configuration)

    def get_performance_metrics(self) -> PerformanceMetrics:
        return replace(self._metrics)

    async def optimize_performance(self) -> None:
        stores = await self.vector_database.list_stores()
        for store in stores:
            await self.vector_database.optimize_store(store.id)
        self._metrics.vector_store_size = sum(s.document_count for s in stores)
        self._metrics.cache_hit_rate = min(self._metrics.cache_hit_rate + 0.1, 1.0)
        logger.info(f"Optimized {len(stores)} vector stores")

    async def dispose(self) -> None:
        if self._provider is not None:
            await self._provider.dispose()
        if self._owns_vector_database:
            await self.vector_database.dispose()
        self.on_did_process_context.dispose()
        self.on_did_update_attention.dispose()
        self.on_did_complete_reasoning.dispose()
        self.on_did_categorize_context.dispose()
        self._initialized = False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record_success(self, processing_time: float) -> None:
        metrics = self._metrics
        metrics.total_queries += 1
        metrics.successful_queries += 1
        n = metrics.successful_queries
        metrics.average_response_time = (
            metrics.average_response_time * (n - 1) + processing_time
        ) / n

    def _record_failure(self) -> None:
        self._metrics.total_queries += 1
        self._metrics.failed_queries += 1

    async def _categorize_context_segments(
        self, context: InterleavedContext
    ) -> list[CategorizedContext]:
        categorized = []
        for segment in context.text_segments:
            try:
                categories = await self.categorize_context(segment.content)
            except AIError as e:
                logger.warning(f"Categorization failed for segment {segment.id}: {e.message}")
                categories = []
            categorized.append(
                CategorizedContext(
                    category=categories[0] if categories else ContextCategory.DOCUMENTATION,
                    content=segment.content,
                    embedding=await self._create_embedding(segment.content),
                    metadata=ContextMetadata(
                        source="text_segment",
                        tags=[segment.type],
                        relevance_score=segment.relevance_score,
                    ),
                )
            )

        for segment in context.code_segments:
            categorized.append(
                CategorizedContext(
                    category=ContextCategory.CODE_CONTEXT,
                    content=segment.content,
                    embedding=segment.semantic_embedding
                    or await self._create_embedding(segment.content),
                    metadata=ContextMetadata(
                        source="code_segment",
                        language=segment.language,
                        tags=[segment.type],
                        relevance_score=1.0,
                    ),
                    relationships=[
                        ContextRelationship(
                            target_id=dependency,
                            type="depends_on",
                            strength=CODE_DEPENDENCY_STRENGTH,
                            description="Code dependency",
                        )
                        for dependency in segment.dependencies
                    ],
                )
            )
        return categorized

    async def _perform_contextual_rag(
        self,
        categorized: list[CategorizedContext],
        context: InterleavedContext,
        token: CancellationToken | None,
    ) -> list[RAGResult]:
        grouped: dict[ContextCategory, list[str]] = {}
        for item in categorized:
            grouped.setdefault(item.category, []).append(item.content)

        results: list[RAGResult] = []
        for category, contents in grouped.items():
            query = " ".join(contents)[:RAG_QUERY_CHARS]
            try:
                results.extend(
                    await self.provider.perform_rag_query(query, [category], context, token)
                )
            except Exception as e:
                logger.warning(f"RAG query failed for category {category.value}: {e}")
        return results

    async def _create_embedding(self, text: str) -> list[float]:
        dimensions = self._configuration.embedding_dimensions
        try:
            embedding = await self.provider.create_embedding(text)
        except Exception as e:
            logger.warning(f"Embedding failed, using pseudo-embedding: {e}")
            return pseudo_embedding(text, dimensions)
        return embedding or pseudo_embedding(text, dimensions)

    async def _get_store_for_category(self, category: ContextCategory) -> str:
        for store in await self.vector_database.list_stores():
            if category in store.categories or category.value in store.name:
                return store.id
        return await self.vector_database.create_store(
            VectorStoreConfig(
                name=f"{category.value} Store",
                type="memory",
                dimensions=self._configuration.embedding_dimensions,
                categories=[category],
            )
        )
