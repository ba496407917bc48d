"""
Tests for the advanced AI layer
===============================

Run with: pytest tests/test_advanced.py -v
"""

from math import sqrt

import pytest
import pytest_asyncio

from editor_ai.advanced.manager import AdvancedAIServiceManager
from editor_ai.advanced.providers import (
    MockAdvancedProvider,
    ServiceBackedAdvancedProvider,
    apply_attention_weights,
    compute_attention,
    pseudo_embedding,
)
from editor_ai.advanced.types import (
    AdvancedCapabilities,
    AdvancedQueryOptions,
    AttentionResult,
    CodeSegment,
    ContextCategory,
    InterleavedContext,
    SemanticSearchQuery,
    TextSegment,
)
from editor_ai.advanced.vector_store import VectorStoreConfig
from editor_ai.configuration import ModelConfiguration, ModelConfigurationService
from editor_ai.credentials import MemorySecretStore
from editor_ai.errors import AIError, AIErrorCode
from editor_ai.providers import MockProvider
from editor_ai.service import AIServiceManager
from editor_ai.storage import MemoryKeyValueStorage


class FailingAdvancedProvider(MockAdvancedProvider):
    async def process_query(self, query, context, token=None):
        raise AIError.timeout()


@pytest_asyncio.fixture
async def manager():
    advanced = AdvancedAIServiceManager()
    await advanced.initialize()
    yield advanced
    await advanced.dispose()


@pytest.fixture
def chat_provider():
    return MockProvider(provider_id="local")


@pytest_asyncio.fixture
async def service(chat_provider):
    config_service = ModelConfigurationService(
        storage=MemoryKeyValueStorage(),
        secret_store=MemorySecretStore(),
        validate_on_add=False,
    )
    await config_service.add(
        ModelConfiguration(
            id="local",
            name="Local",
            type="local",
            provider="ollama",
            endpoint="http://localhost:11434",
            model="llama3.1",
        )
    )
    service = AIServiceManager(config_service, max_retries=1)
    service.register_provider(chat_provider)
    return service


@pytest_asyncio.fixture
async def backed(service):
    advanced = AdvancedAIServiceManager(service=service)
    await advanced.initialize()
    yield advanced
    await advanced.dispose()


class TestPseudoEmbedding:
    """Test the hashed embedding"""

    def test_deterministic_and_normalized(self):
        """Same text gives the same unit vector"""
        first = pseudo_embedding("retry with backoff", 64)
        assert first == pseudo_embedding("retry with backoff", 64)
        assert len(first) == 64
        assert sqrt(sum(v * v for v in first)) == pytest.approx(1.0)

    def test_case_insensitive(self):
        """Tokens are lowercased before hashing"""
        assert pseudo_embedding("Parse JSON", 32) == pseudo_embedding("parse json", 32)

    def test_empty_text(self):
        """Empty text is the zero vector"""
        assert pseudo_embedding("", 8) == [0.0] * 8


class TestAttention:
    """Test attention scoring"""

    def test_focuses_matching_segment(self):
        """The segment that matches the query carries the most weight"""
        context = InterleavedContext(
            text_segments=[
                TextSegment(id="t1", content="retry with backoff", type="explanation", position=0),
                TextSegment(id="t2", content="render markdown tables", type="explanation", position=1),
            ]
        )
        result = compute_attention("retry with backoff", context, 256)

        assert result.focused_segments[0] == "t1"
        assert sum(result.attention_weights.values()) == pytest.approx(1.0)
        assert result.context_relevance == pytest.approx(1.0)

    def test_empty_context(self):
        """No segments gives the default result"""
        result = compute_attention("anything", InterleavedContext(), 16)
        assert result.focused_segments == []
        assert result.attention_weights == {}

    def test_apply_weights_renormalizes(self):
        """Overrides replace known weights, renormalize and move the focus"""
        result = AttentionResult(
            focused_segments=["a"],
            attention_weights={"a": 0.75, "b": 0.25},
            context_relevance=0.9,
        )
        updated = apply_attention_weights(result, {"b": 2.25, "ghost": 9.0})

        assert updated.attention_weights == {"a": pytest.approx(0.25), "b": pytest.approx(0.75)}
        assert updated.focused_segments == ["b"]
        assert updated.context_relevance == 0.9


class TestAttentionWeights:
    """Test stored attention weight overrides"""

    def _context(self) -> InterleavedContext:
        return InterleavedContext(
            text_segments=[
                TextSegment(id="t1", content="retry with backoff", type="explanation", position=0),
                TextSegment(id="t2", content="render markdown tables", type="explanation", position=1),
            ]
        )

    @pytest.mark.asyncio
    async def test_stored_weights_apply_per_context(self, backed):
        """Weights stored for a context id shift its focus; other ids are untouched"""
        backed.update_attention_weights("ctx", {"t2": 3.0})
        seen = []
        backed.on_did_update_attention.subscribe(seen.append)

        weighted = await backed.analyze_attention("retry with backoff", self._context(), context_id="ctx")
        plain = await backed.analyze_attention("retry with backoff", self._context(), context_id="other")

        assert weighted.focused_segments == ["t2"]
        assert sum(weighted.attention_weights.values()) == pytest.approx(1.0)
        assert plain.focused_segments[0] == "t1"
        assert seen == [weighted, plain]

    @pytest.mark.asyncio
    async def test_empty_map_clears(self, backed):
        """An empty weight map removes the stored overrides"""
        backed.update_attention_weights("ctx", {"t2": 3.0})
        backed.update_attention_weights("ctx", {})

        result = await backed.analyze_attention("retry with backoff", self._context(), context_id="ctx")
        assert result.focused_segments[0] == "t1"

    def test_negative_weight_rejected(self, manager):
        """Negative weights are an invalid request"""
        with pytest.raises(AIError) as exc_info:
            manager.update_attention_weights("ctx", {"t1": -1.0})
        assert exc_info.value.code == AIErrorCode.INVALID_REQUEST


class TestLifecycle:
    """Test initialization and disposal"""

    @pytest.mark.asyncio
    async def test_provider_requires_initialize(self):
        """The provider is unavailable before initialize()"""
        advanced = AdvancedAIServiceManager()
        with pytest.raises(AIError) as exc_info:
            advanced.provider
        assert exc_info.value.code == AIErrorCode.CONFIGURATION_ERROR

    @pytest.mark.asyncio
    async def test_creates_category_stores_once(self, manager):
        """One store per category; a second initialize is a no-op"""
        await manager.initialize()
        stores = await manager.vector_database.list_stores()
        assert len(stores) == len(ContextCategory)
        assert {s.name for s in stores} == {f"{c.value}_store" for c in ContextCategory}

    @pytest.mark.asyncio
    async def test_default_providers(self, manager, backed):
        """Mock without a service manager, service-backed with one"""
        assert isinstance(manager.provider, MockAdvancedProvider)
        assert isinstance(backed.provider, ServiceBackedAdvancedProvider)

    @pytest.mark.asyncio
    async def test_dispose(self):
        """Disposal releases the provider and uninitializes"""
        provider = MockAdvancedProvider()
        advanced = AdvancedAIServiceManager(provider=provider)
        await advanced.initialize()
        await advanced.dispose()

        assert provider.disposed is True
        with pytest.raises(AIError):
            advanced.provider


class TestIndexingAndSearch:
    """Test indexing and semantic search across stores"""

    @pytest.mark.asyncio
    async def test_embedding_search_applies_threshold(self, manager):
        """Similar documents pass the threshold; unrelated ones do not"""
        await manager.index_content("retry with backoff", ContextCategory.CODE_CONTEXT)
        await manager.index_content("render markdown tables", ContextCategory.DOCUMENTATION)

        results = await manager.semantic_search(
            SemanticSearchQuery(
                query="retry with backoff",
                embedding=pseudo_embedding("retry with backoff"),
                threshold=0.7,
            )
        )
        assert [r.content for r in results] == ["retry with backoff"]
        assert results[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_keyword_search(self, manager):
        """Keyword queries match substrings in every store"""
        await manager.index_content("retry with backoff", ContextCategory.CODE_CONTEXT)
        await manager.index_content("backoff limits", ContextCategory.DOCUMENTATION)

        results = await manager.semantic_search(
            SemanticSearchQuery(query="backoff", search_type="keyword")
        )
        assert sorted(r.content for r in results) == ["backoff limits", "retry with backoff"]

    @pytest.mark.asyncio
    async def test_index_metadata(self, manager):
        """Indexing keeps the given metadata"""
        doc_id = await manager.index_content(
            "def parse(): ...",
            ContextCategory.CODE_CONTEXT,
            {"source": "parser.py", "language": "python", "tags": ["parser"]},
        )
        store_id = next(
            s.id
            for s in await manager.vector_database.list_stores()
            if s.name == "code_context_store"
        )
        document = await manager.vector_database.get_document(store_id, doc_id)
        assert document.metadata.source == "parser.py"
        assert document.metadata.language == "python"
        assert document.metadata.tags == ["parser"]

    @pytest.mark.asyncio
    async def test_categorized_context(self, manager):
        """Documents are grouped by category and the grouping is announced"""
        await manager.index_content("unit test helpers", ContextCategory.TESTING)
        fired = []
        manager.on_did_categorize_context.subscribe(fired.append)

        grouped = await manager.get_categorized_context(
            [ContextCategory.TESTING, ContextCategory.SECURITY]
        )
        assert [c.content for c in grouped[ContextCategory.TESTING]] == ["unit test helpers"]
        assert grouped[ContextCategory.SECURITY] == []
        assert fired == [grouped]

    @pytest.mark.asyncio
    async def test_create_vector_store_without_categories(self, manager):
        """A store created without categories accepts all of them"""
        store_id = await manager.create_vector_store(VectorStoreConfig(name="scratch"))
        info = await manager.vector_database.get_store_info(store_id)
        assert info.categories == list(ContextCategory)


class TestAdvancedQuery:
    """Test the combined query pipeline"""

    @pytest.mark.asyncio
    async def test_plain_query(self, manager):
        """Without options the provider answer is returned with metadata"""
        response = await manager.process_advanced_query("Explain retries", AdvancedQueryOptions())

        assert response.content == "Mock response to: Explain retries"
        assert response.metadata.model == "mock"
        assert response.metadata.tokens_used == 50
        assert response.metadata.reasoning_depth == 0
        assert response.semantic_context[0].category == ContextCategory.CODE_CONTEXT

    @pytest.mark.asyncio
    async def test_enabled_steps(self, manager):
        """Reasoning, sequential thinking and semantic sources are attached"""
        await manager.index_content(
            "explain retries", ContextCategory.CODE_CONTEXT, {"source": "code_segment"}
        )
        reasoning_events = []
        manager.on_did_complete_reasoning.subscribe(reasoning_events.append)

        response = await manager.process_advanced_query(
            "explain retries",
            AdvancedQueryOptions(
                use_chain_of_thought=True,
                use_sequential_thinking=True,
                use_semantic_search=True,
            ),
        )

        assert response.reasoning.final_answer.startswith("Mock chain of thought")
        assert response.metadata.reasoning_depth == 1
        assert response.sequential_thinking.final_solution == "Mock solution for: explain retries"
        assert [s.type for s in response.sources] == ["code"]
        assert len(reasoning_events) == 1

    @pytest.mark.asyncio
    async def test_metrics(self):
        """Successes and failures are both counted"""
        advanced = AdvancedAIServiceManager()
        await advanced.initialize()
        await advanced.process_advanced_query("one", AdvancedQueryOptions())

        failing = AdvancedAIServiceManager(provider=FailingAdvancedProvider())
        await failing.initialize()
        with pytest.raises(AIError):
            await failing.process_advanced_query("two", AdvancedQueryOptions())

        ok = advanced.get_performance_metrics()
        assert (ok.total_queries, ok.successful_queries, ok.failed_queries) == (1, 1, 0)
        bad = failing.get_performance_metrics()
        assert (bad.total_queries, bad.successful_queries, bad.failed_queries) == (1, 0, 1)

    @pytest.mark.asyncio
    async def test_interleaved_context_event(self, manager):
        """Processing a context announces it"""
        fired = []
        manager.on_did_process_context.subscribe(fired.append)
        context = InterleavedContext.from_query("what does this do")

        await manager.process_interleaved_context(context)
        assert len(fired) == 1


class TestConfiguration:
    """Test capabilities, configuration and optimization"""

    @pytest.mark.asyncio
    async def test_feature_support(self, manager):
        """Known features report their flag; unknown ones are unsupported"""
        assert manager.is_feature_supported("chain_of_thought") is True
        assert manager.is_feature_supported("multimodal_support") is False
        assert manager.is_feature_supported("time_travel") is False

    def test_capabilities_reject_unknown(self):
        """Asking the capabilities record directly about an unknown feature raises"""
        with pytest.raises(ValueError):
            AdvancedCapabilities().supports("time_travel")

    @pytest.mark.asyncio
    async def test_update_configuration(self, manager):
        """Known options update the configuration and reach the provider"""
        await manager.update_configuration(embedding_dimensions=64, retrieval_top_k=3)

        config = manager.get_configuration()
        assert (config.embedding_dimensions, config.retrieval_top_k) == (64, 3)
        assert manager.provider.dimensions == 64

        with pytest.raises(AIError) as exc_info:
            await manager.update_configuration(warp_factor=9)
        assert "warp_factor" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_configuration_is_a_copy(self, manager):
        """Mutating the returned configuration does not change the manager"""
        config = manager.get_configuration()
        config.retrieval_top_k = 99
        assert manager.get_configuration().retrieval_top_k == 5

    @pytest.mark.asyncio
    async def test_optimize_performance(self, manager):
        """Optimization records the store size and bumps the cache rate"""
        await manager.index_content("a", ContextCategory.CODE_CONTEXT)
        await manager.index_content("b", ContextCategory.TESTING)
        await manager.optimize_performance()

        metrics = manager.get_performance_metrics()
        assert metrics.vector_store_size == 2
        assert metrics.cache_hit_rate == pytest.approx(0.1)


class TestServiceBackedProvider:
    """Test generation through the AI service manager"""

    @pytest.mark.asyncio
    async def test_process_query_includes_context(self, backed, chat_provider):
        """Rendered context is sent ahead of the query"""
        context = InterleavedContext(
            text_segments=[TextSegment(id="t", content="We use httpx", type="explanation", position=0)],
            code_segments=[CodeSegment(id="c", content="client.get(url)", language="python", position=1)],
        )
        response = await backed.provider.process_query("Which client?", context)

        prompt = chat_provider.requests[0][-1].content
        assert prompt.startswith("Context:\n[explanation] We use httpx")
        assert "```python\nclient.get(url)\n```" in prompt
        assert prompt.endswith("Query: Which client?")
        assert response.content.startswith("Mock response to:")

    @pytest.mark.asyncio
    async def test_chain_of_thought_steps(self, backed, chat_provider):
        """Step blocks in the reply become reasoning steps"""
        chat_provider.queue_response("Step 1: read the code\ndetails\nStep 2: fix it")
        result = await backed.chain_of_thought_reasoning("Fix the bug")

        assert [s.thought for s in result.steps] == ["read the code", "fix it"]
        assert result.steps[0].reasoning == "details"
        assert result.metadata.total_steps == 2

    @pytest.mark.asyncio
    async def test_sequential_thinking(self, backed, chat_provider):
        """Numbered lines become ordered subproblems"""
        chat_provider.queue_response("1. parse input\n2. validate\n3. emit\nSOLUTION: done")
        result = await backed.sequential_problem_solving("Build a parser")

        subproblems = result.decomposition.subproblems
        assert [s.description for s in subproblems] == ["parse input", "validate", "emit"]
        assert subproblems[1].prerequisites == ["sub1"]
        assert result.decomposition.complexity == "medium"
        assert result.final_solution == "done"

    @pytest.mark.asyncio
    async def test_categorize(self, backed, chat_provider):
        """Categories are read from the reply in order; documentation otherwise"""
        chat_provider.queue_response("testing, code_context")
        chat_provider.queue_response("no idea")

        assert await backed.categorize_context("def test_x(): ...") == [
            ContextCategory.TESTING,
            ContextCategory.CODE_CONTEXT,
        ]
        assert await backed.categorize_context("???") == [ContextCategory.DOCUMENTATION]

    @pytest.mark.asyncio
    async def test_rag_uses_indexed_documents(self, backed, chat_provider):
        """Retrieved documents are cited and set the confidence"""
        await backed.index_content("retry with backoff", ContextCategory.CODE_CONTEXT)
        [result] = await backed.rag_query("retry with backoff", [ContextCategory.CODE_CONTEXT])

        assert [d.content for d in result.retrieved_documents] == ["retry with backoff"]
        assert result.confidence == pytest.approx(1.0)
        assert "[1] retry with backoff" in chat_provider.requests[0][-1].content

    @pytest.mark.asyncio
    async def test_generation_errors_are_counted(self, backed, chat_provider):
        """Failed generations show up in the provider status"""
        chat_provider.queue_failure(AIError.invalid_api_key())
        with pytest.raises(AIError):
            await backed.sequential_problem_solving("x")

        status = await backed.provider.get_status()
        assert status.error_rate == 1.0
        assert status.last_error == "Invalid API key provided"
