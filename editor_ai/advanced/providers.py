"""
Advanced Providers
==================
Back ends for the advanced layer.

ServiceBackedAdvancedProvider generates through an AIServiceManager and
retrieves from the vector database. MockAdvancedProvider returns canned
answers and is the fallback when no service manager is wired in. Both
use deterministic hashed pseudo-embeddings; there is no embedding model.
"""

import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from hashlib import blake2b
from math import sqrt
from typing import TYPE_CHECKING

from ..errors import AIError
from ..events import CancellationToken
from ..types import AIMessage
from .types import (
    AdvancedAIResponse,
    AdvancedCapabilities,
    AdvancedConfiguration,
    AdvancedResponseMetadata,
    AttentionResult,
    ChainOfThoughtResponse,
    ChainOfThoughtStep,
    ContextCategory,
    Dependency,
    InterleavedContext,
    ProblemDecomposition,
    RAGResult,
    ReasoningMetadata,
    RetrievedDocument,
    SemanticSearchQuery,
    SemanticSearchResult,
    SequentialThinking,
    SolutionStep,
    Subproblem,
    VerificationStep,
)
from .vector_store import VectorDatabaseService, cosine_similarity

if TYPE_CHECKING:
    from ..service import AIServiceManager

logger = logging.getLogger(__name__)

DEFAULT_DIMENSIONS = 1536

_STEP_BLOCK = re.compile(r"Step (\d+):\s*(.*?)(?=Step \d+:|$)", re.DOTALL)
_NUMBERED_LINE = re.compile(r"^\s*(\d+)[.)]\s+(.+)$", re.MULTILINE)


def pseudo_embedding(text: str, dimensions: int = DEFAULT_DIMENSIONS) -> list[float]:
    """
    Deterministic bag-of-words vector.

    Each lowercase token is hashed into one signed bucket and the result is
    L2-normalized. Empty text gives the zero vector.
    """
    vector = [0.0] * dimensions
    for token in text.lower().split():
        digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
        index = int.from_bytes(digest[:4], "little") % dimensions
        vector[index] += -1.0 if digest[4] % 2 else 1.0

    norm = sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


def render_context(context: InterleavedContext | None) -> str:
    """Plain-text rendering of text and code segments in position order"""
    if context is None:
        return ""
    parts: list[tuple[int, str]] = []
    for text in context.text_segments:
        parts.append((text.position, f"[{text.type}] {text.content}"))
    for code in context.code_segments:
        parts.append((code.position, f"```{code.language}\n{code.content}\n```"))
    for visual in context.visual_segments:
        parts.append((visual.position, f"[{visual.type}] {visual.description}"))
    parts.sort(key=lambda p: p[0])
    return "\n\n".join(text for _, text in parts)


@dataclass
class ResourceUsage:
    memory: float = 0
    cpu: float = 0
    storage: float = 0


@dataclass
class ProviderStatus:
    is_online: bool
    response_time: float
    error_rate: float
    capabilities: AdvancedCapabilities
    last_error: str | None = None
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)


class AdvancedAIProvider(ABC):
    """Contract for advanced back ends"""

    id: str
    name: str
    capabilities: AdvancedCapabilities

    @abstractmethod
    async def process_query(
        self,
        query: str,
        context: InterleavedContext,
        token: CancellationToken | None = None,
    ) -> AdvancedAIResponse:
        pass

    @abstractmethod
    async def perform_chain_of_thought(
        self,
        query: str,
        context: InterleavedContext | None = None,
        token: CancellationToken | None = None,
    ) -> ChainOfThoughtResponse:
        pass

    @abstractmethod
    async def perform_sequential_thinking(
        self,
        problem: str,
        context: InterleavedContext | None = None,
        token: CancellationToken | None = None,
    ) -> SequentialThinking:
        pass

    @abstractmethod
    async def perform_rag_query(
        self,
        query: str,
        categories: list[ContextCategory],
        context: InterleavedContext | None = None,
        token: CancellationToken | None = None,
    ) -> list[RAGResult]:
        pass

    @abstractmethod
    async def perform_semantic_search(
        self, query: SemanticSearchQuery, token: CancellationToken | None = None
    ) -> list[SemanticSearchResult]:
        pass

    @abstractmethod
    async def process_interleaved_context(
        self, context: InterleavedContext, token: CancellationToken | None = None
    ) -> InterleavedContext:
        pass

    @abstractmethod
    async def analyze_attention(
        self,
        query: str,
        context: InterleavedContext,
        token: CancellationToken | None = None,
    ) -> AttentionResult:
        pass

    @abstractmethod
    async def categorize_content(
        self, content: str, token: CancellationToken | None = None
    ) -> list[ContextCategory]:
        pass

    @abstractmethod
    async def create_embedding(
        self, text: str, token: CancellationToken | None = None
    ) -> list[float]:
        pass

    def compute_similarity(self, a: list[float], b: list[float]) -> float:
        return cosine_similarity(a, b)

    @abstractmethod
    async def is_healthy(self) -> bool:
        pass

    @abstractmethod
    async def get_status(self) -> ProviderStatus:
        pass

    async def configure(self, config: AdvancedConfiguration) -> None:
        pass

    async def dispose(self) -> None:
        pass


def compute_attention(
    query: str, context: InterleavedContext, dimensions: int
) -> AttentionResult:
    """
    Score every text and code segment against the query.

    Weights are the segments' cosine similarities normalized to sum to 1
    (uniform when nothing matches). Segments weighted at or above the mean
    are focused, best first.
    """
    segments = [(s.id, s.content) for s in context.text_segments] + [
        (s.id, s.content) for s in context.code_segments
    ]
    if not segments:
        return AttentionResult()

    query_embedding = pseudo_embedding(query, dimensions)
    similarities = {
        seg_id: max(cosine_similarity(query_embedding, pseudo_embedding(text, dimensions)), 0.0)
        for seg_id, text in segments
    }
    total = sum(similarities.values())
    if total == 0:
        weights = {seg_id: 1 / len(similarities) for seg_id in similarities}
    else:
        weights = {seg_id: s / total for seg_id, s in similarities.items()}

    mean_weight = 1 / len(weights)
    focused = sorted(
        (seg_id for seg_id, w in weights.items() if w >= mean_weight),
        key=lambda seg_id: weights[seg_id],
        reverse=True,
    )
    return AttentionResult(
        focused_segments=focused,
        attention_weights=weights,
        context_relevance=max(similarities.values()),
        semantic_similarity=sum(similarities.values()) / len(similarities),
    )


def apply_attention_weights(
    result: AttentionResult, overrides: dict[str, float]
) -> AttentionResult:
    """
    Replace the weights of overridden segments and renormalize.

    Ids the result does not know are ignored. Focus is recomputed against
    the new mean; the scalar scores are kept.
    """
    weights = dict(result.attention_weights)
    for seg_id, weight in overrides.items():
        if seg_id in weights:
            weights[seg_id] = weight
    total = sum(weights.values())
    if not weights or total <= 0:
        return result

    weights = {seg_id: w / total for seg_id, w in weights.items()}
    mean_weight = 1 / len(weights)
    focused = sorted(
        (seg_id for seg_id, w in weights.items() if w >= mean_weight),
        key=lambda seg_id: weights[seg_id],
        reverse=True,
    )
    return replace(result, focused_segments=focused, attention_weights=weights)


class ServiceBackedAdvancedProvider(AdvancedAIProvider):
    """Advanced provider that generates through the AI service manager"""

    id = "service-backed"
    name = "Service-backed Advanced AI Provider"

    def __init__(
        self,
        service: "AIServiceManager",
        vector_database: VectorDatabaseService | None = None,
        capabilities: AdvancedCapabilities | None = None,
        dimensions: int = DEFAULT_DIMENSIONS,
        retrieval_top_k: int = 5,
    ) -> None:
        self.service = service
        self.vector_database = vector_database
        self.capabilities = capabilities or AdvancedCapabilities()
        self.dimensions = dimensions
        self.retrieval_top_k = retrieval_top_k
        self._requests = 0
        self._errors = 0
        self._last_error: str | None = None
        self._last_response_time = 0.0

    async def _generate(
        self, system: str | None, prompt: str, token: CancellationToken | None
    ):
        messages = [AIMessage("system", system)] if system else []
        messages.append(AIMessage("user", prompt))
        start_time = time.time()
        self._requests += 1
        try:
            return await self.service.send_messages(messages, token)
        except AIError as e:
            self._errors += 1
            self._last_error = e.message
            raise
        finally:
            self._last_response_time = (time.time() - start_time) * 1000

    async def process_query(
        self,
        query: str,
        context: InterleavedContext,
        token: CancellationToken | None = None,
    ) -> AdvancedAIResponse:
        rendered = render_context(context)
        prompt = f"Context:\n{rendered}\n\nQuery: {query}" if rendered else query
        response = await self._generate(None, prompt, token)
        return AdvancedAIResponse(
            content=response.content,
            confidence=response.confidence,
            metadata=AdvancedResponseMetadata(
                model=response.metadata.model,
                processing_time=response.metadata.processing_time,
                tokens_used=response.metadata.tokens,
            ),
        )

    async def perform_chain_of_thought(
        self,
        query: str,
        context: InterleavedContext | None = None,
        token: CancellationToken | None = None,
    ) -> ChainOfThoughtResponse:
        rendered = render_context(context)
        full_query = f"{query}\n\nRelated context:\n{rendered}" if rendered else query
        start_time = time.time()
        response = await self.service.chain_of_thought(full_query, token=token)

        steps = []
        for number, body in _STEP_BLOCK.findall(response.content):
            lines = body.strip().splitlines() or [""]
            steps.append(
                ChainOfThoughtStep(
                    step_number=int(number),
                    thought=lines[0].strip(),
                    reasoning="\n".join(lines[1:]).strip(),
                    confidence=response.confidence,
                )
            )
        if not steps:
            steps = [
                ChainOfThoughtStep(
                    step_number=1,
                    thought=response.content.strip(),
                    confidence=response.confidence,
                )
            ]

        return ChainOfThoughtResponse(
            query=query,
            steps=steps,
            final_answer=response.content,
            overall_confidence=response.confidence,
            reasoning_path=[step.thought for step in steps],
            metadata=ReasoningMetadata(
                total_steps=len(steps),
                processing_time=(time.time() - start_time) * 1000,
                model=response.metadata.model,
            ),
        )

    async def perform_sequential_thinking(
        self,
        problem: str,
        context: InterleavedContext | None = None,
        token: CancellationToken | None = None,
    ) -> SequentialThinking:
        rendered = render_context(context)
        prompt = (
            "Break the following problem into numbered subproblems "
            '("1. ...", "2. ...") in the order they should be solved, then give '
            'the final solution on a line starting with "SOLUTION:".\n\n'
            f"Problem: {problem}"
        )
        if rendered:
            prompt += f"\n\nContext:\n{rendered}"
        response = await self._generate(
            "You are an AI assistant that solves problems by decomposing them "
            "into ordered subproblems.",
            prompt,
            token,
        )

        content = response.content
        solution_text, _, final = content.partition("SOLUTION:")
        numbered = _NUMBERED_LINE.findall(solution_text)

        subproblems = []
        for number, description in numbered:
            sub_id = f"sub{number}"
            prerequisites = [subproblems[-1].id] if subproblems else []
            subproblems.append(
                Subproblem(
                    id=sub_id,
                    description=description.strip(),
                    priority=int(number),
                    prerequisites=prerequisites,
                )
            )
        dependencies = [
            Dependency(source=a.id, target=b.id, type="sequential")
            for a, b in zip(subproblems, subproblems[1:])
        ]

        count = len(subproblems)
        if count <= 2:
            complexity = "low"
        elif count <= 4:
            complexity = "medium"
        elif count <= 7:
            complexity = "high"
        else:
            complexity = "very_high"

        return SequentialThinking(
            problem_statement=problem,
            decomposition=ProblemDecomposition(
                subproblems=subproblems,
                dependencies=dependencies,
                complexity=complexity,
                estimated_time=count * 60,
            ),
            solution_steps=[
                SolutionStep(
                    id=f"step{i + 1}",
                    description=sub.description,
                    status="completed",
                )
                for i, sub in enumerate(subproblems)
            ],
            final_solution=(final or content).strip(),
        )

    async def perform_rag_query(
        self,
        query: str,
        categories: list[ContextCategory],
        context: InterleavedContext | None = None,
        token: CancellationToken | None = None,
    ) -> list[RAGResult]:
        """One grounded answer per category, from that category's documents"""
        embedding = await self.create_embedding(query)
        results = []
        for category in categories:
            documents = await self._retrieve(category, embedding)
            sources = "\n\n".join(
                f"[{i + 1}] {doc.content}" for i, doc in enumerate(documents)
            )
            response = await self._generate(
                "You are an AI assistant that answers questions based on provided "
                "context. Always cite your sources and indicate when information "
                "is not available in the provided context.",
                f'Answer the following query using the provided sources: "{query}"'
                f"\n\nSources ({category.value}):\n{sources or 'None'}",
                token,
            )
            confidence = (
                sum(d.score for d in documents) / len(documents)
                if documents
                else response.confidence
            )
            results.append(
                RAGResult(
                    query=query,
                    retrieved_documents=documents,
                    generated_response=response.content,
                    confidence=confidence,
                    category=category,
                )
            )
        return results

    async def _retrieve(
        self, category: ContextCategory, embedding: list[float]
    ) -> list[RetrievedDocument]:
        if self.vector_database is None:
            return []

        found: list[RetrievedDocument] = []
        for store in await self.vector_database.list_stores():
            if category not in store.categories:
                continue
            matches = await self.vector_database.similarity_search(
                store.id, embedding, self.retrieval_top_k
            )
            for match in matches:
                document = await self.vector_database.get_document(store.id, match.id)
                if document.category != category:
                    continue
                found.append(
                    RetrievedDocument(
                        id=match.id,
                        content=match.content,
                        score=match.score,
                        category=category,
                        metadata=match.metadata,
                        embedding=match.embedding,
                    )
                )
        found.sort(key=lambda d: d.score, reverse=True)
        return found[: self.retrieval_top_k]

    async def perform_semantic_search(
        self, query: SemanticSearchQuery, token: CancellationToken | None = None
    ) -> list[SemanticSearchResult]:
        if self.vector_database is None:
            return []
        embedding = query.embedding or await self.create_embedding(query.query)
        results: list[SemanticSearchResult] = []
        for store in await self.vector_database.list_stores():
            results.extend(
                await self.vector_database.similarity_search(
                    store.id, embedding, query.max_results
                )
            )
        results = [r for r in results if r.score >= query.threshold]
        results.sort(key=lambda r: r.score, reverse=True)
        return results[: query.max_results]

    async def process_interleaved_context(
        self, context: InterleavedContext, token: CancellationToken | None = None
    ) -> InterleavedContext:
        if context.sequence_order:
            return context
        positions = sorted(
            {s.position for s in context.text_segments}
            | {s.position for s in context.code_segments}
            | {s.position for s in context.visual_segments}
        )
        return replace(
            context,
            sequence_order=positions,
            attention_weights=context.attention_weights or [1.0] * len(positions),
        )

    async def analyze_attention(
        self,
        query: str,
        context: InterleavedContext,
        token: CancellationToken | None = None,
    ) -> AttentionResult:
        return compute_attention(query, context, self.dimensions)

    async def categorize_content(
        self, content: str, token: CancellationToken | None = None
    ) -> list[ContextCategory]:
        """Ask the model which categories apply; documentation when unsure"""
        names = ", ".join(c.value for c in ContextCategory)
        response = await self._generate(
            "You classify software development content. Respond only with "
            "category names.",
            f"Classify the following content into one or more of these categories: "
            f"{names}.\nRespond with a comma-separated list of category names."
            f"\n\n{content}",
            token,
        )
        reply = response.content.lower()
        found = sorted(
            (c for c in ContextCategory if c.value in reply),
            key=lambda c: reply.index(c.value),
        )
        return found or [ContextCategory.DOCUMENTATION]

    async def create_embedding(
        self, text: str, token: CancellationToken | None = None
    ) -> list[float]:
        return pseudo_embedding(text, self.dimensions)

    async def is_healthy(self) -> bool:
        return self.service.is_available()

    async def get_status(self) -> ProviderStatus:
        return ProviderStatus(
            is_online=self.service.is_available(),
            response_time=self._last_response_time,
            error_rate=self._errors / self._requests if self._requests else 0.0,
            capabilities=self.capabilities,
            last_error=self._last_error,
        )

    async def configure(self, config: AdvancedConfiguration) -> None:
        self.dimensions = config.embedding_dimensions
        self.retrieval_top_k = config.retrieval_top_k


class MockAdvancedProvider(AdvancedAIProvider):
    """Canned answers, installed when no service manager is available"""

    id = "mock-provider"
    name = "Mock Advanced AI Provider"

    def __init__(
        self,
        capabilities: AdvancedCapabilities | None = None,
        dimensions: int = DEFAULT_DIMENSIONS,
        categories: list[ContextCategory] | None = None,
    ) -> None:
        self.capabilities = capabilities or AdvancedCapabilities()
        self.dimensions = dimensions
        self.categories = categories or [ContextCategory.CODE_CONTEXT]
        self.rag_results: list[RAGResult] = []
        self.disposed = False

    async def process_query(
        self,
        query: str,
        context: InterleavedContext,
        token: CancellationToken | None = None,
    ) -> AdvancedAIResponse:
        return AdvancedAIResponse(
            content=f"Mock response to: {query}",
            reasoning=ChainOfThoughtResponse(
                query=query,
                steps=[
                    ChainOfThoughtStep(
                        step_number=1,
                        thought="Analyzing the query",
                        reasoning="Breaking down the user request",
                        evidence=["User input"],
                        next_steps=["Generate response"],
                    )
                ],
                final_answer=f"Mock response to: {query}",
                reasoning_path=["analyze", "respond"],
                metadata=ReasoningMetadata(total_steps=1, processing_time=100, model="mock"),
            ),
            confidence=0.8,
            metadata=AdvancedResponseMetadata(
                model="mock", processing_time=100, tokens_used=50, reasoning_depth=1
            ),
        )

    async def perform_chain_of_thought(
        self,
        query: str,
        context: InterleavedContext | None = None,
        token: CancellationToken | None = None,
    ) -> ChainOfThoughtResponse:
        return ChainOfThoughtResponse(
            query=query,
            steps=[
                ChainOfThoughtStep(
                    step_number=1,
                    thought="Mock thinking step",
                    reasoning="Mock reasoning",
                    evidence=["Mock evidence"],
                )
            ],
            final_answer=f"Mock chain of thought response to: {query}",
            reasoning_path=["think", "reason", "conclude"],
            metadata=ReasoningMetadata(total_steps=1, processing_time=100, model="mock"),
        )

    async def perform_sequential_thinking(
        self,
        problem: str,
        context: InterleavedContext | None = None,
        token: CancellationToken | None = None,
    ) -> SequentialThinking:
        return SequentialThinking(
            problem_statement=problem,
            decomposition=ProblemDecomposition(
                subproblems=[
                    Subproblem(
                        id="sub1",
                        description="Mock subproblem",
                        expected_output="Mock output",
                    )
                ],
                complexity="medium",
                estimated_time=300,
            ),
            solution_steps=[
                SolutionStep(
                    id="step1",
                    description="Mock solution step",
                    approach="Mock approach",
                    implementation="Mock implementation",
                    validation="Mock validation",
                    status="completed",
                )
            ],
            verification=[
                VerificationStep(
                    id="verify1",
                    test_case="Mock test",
                    expected_result="Mock expected",
                    actual_result="Mock actual",
                    passed=True,
                    feedback="Mock feedback",
                )
            ],
            final_solution=f"Mock solution for: {problem}",
        )

    async def perform_rag_query(
        self,
        query: str,
        categories: list[ContextCategory],
        context: InterleavedContext | None = None,
        token: CancellationToken | None = None,
    ) -> list[RAGResult]:
        return [r for r in self.rag_results if r.category in categories]

    async def perform_semantic_search(
        self, query: SemanticSearchQuery, token: CancellationToken | None = None
    ) -> list[SemanticSearchResult]:
        return []

    async def process_interleaved_context(
        self, context: InterleavedContext, token: CancellationToken | None = None
    ) -> InterleavedContext:
        return context

    async def analyze_attention(
        self,
        query: str,
        context: InterleavedContext,
        token: CancellationToken | None = None,
    ) -> AttentionResult:
        return AttentionResult()

    async def categorize_content(
        self, content: str, token: CancellationToken | None = None
    ) -> list[ContextCategory]:
        return list(self.categories)

    async def create_embedding(
        self, text: str, token: CancellationToken | None = None
    ) -> list[float]:
        return pseudo_embedding(text, self.dimensions)

    async def is_healthy(self) -> bool:
        return True

    async def get_status(self) -> ProviderStatus:
        return ProviderStatus(
            is_online=True,
            response_time=100,
            error_rate=0,
            capabilities=self.capabilities,
            resource_usage=ResourceUsage(memory=100, cpu=10, storage=50),
        )

    async def configure(self, config: AdvancedConfiguration) -> None:
        self.dimensions = config.embedding_dimensions

    async def dispose(self) -> None:
        self.disposed = True
