"""
Advanced Types
==============
Records for the augmentation pipeline: interleaved context, attention,
categorized context, semantic search, reasoning traces and RAG results.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

from ..types import now_ms


class ContextCategory(str, Enum):
    CODE_CONTEXT = "code_context"
    DOCUMENTATION = "documentation"
    API_REFERENCE = "api_reference"
    EXAMPLES = "examples"
    PATTERNS = "patterns"
    BEST_PRACTICES = "best_practices"
    ERROR_SOLUTIONS = "error_solutions"
    ARCHITECTURE = "architecture"
    DEPENDENCIES = "dependencies"
    TESTING = "testing"
    DEPLOYMENT = "deployment"
    PERFORMANCE = "performance"
    SECURITY = "security"
    USER_INTERACTIONS = "user_interactions"
    BUSINESS_LOGIC = "business_logic"


RELATIONSHIP_TYPES = ("depends_on", "related_to", "implements", "extends", "uses", "calls")


# ----------------------------------------------------------------------
# Categorized context
# ----------------------------------------------------------------------


@dataclass
class ContextRelationship:
    target_id: str
    type: str  # one of RELATIONSHIP_TYPES
    strength: float
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "targetId": self.target_id,
            "type": self.type,
            "strength": self.strength,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContextRelationship":
        return cls(
            target_id=data["targetId"],
            type=data["type"],
            strength=data.get("strength", 0.0),
            description=data.get("description", ""),
        )


@dataclass
class ContextMetadata:
    source: str = "unknown"
    timestamp: int = field(default_factory=now_ms)
    language: str | None = None
    framework: str | None = None
    tags: list[str] = field(default_factory=list)
    relevance_score: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "source": self.source,
            "timestamp": self.timestamp,
            "tags": list(self.tags),
            "relevanceScore": self.relevance_score,
        }
        if self.language is not None:
            data["language"] = self.language
        if self.framework is not None:
            data["framework"] = self.framework
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContextMetadata":
        return cls(
            source=data.get("source", "unknown"),
            timestamp=data.get("timestamp", 0),
            language=data.get("language"),
            framework=data.get("framework"),
            tags=list(data.get("tags", [])),
            relevance_score=data.get("relevanceScore", 1.0),
        )


@dataclass
class CategorizedContext:
    """A piece of content filed under one category, with its embedding"""

    category: ContextCategory
    content: str
    embedding: list[float] = field(default_factory=list)
    metadata: ContextMetadata = field(default_factory=ContextMetadata)
    relationships: list[ContextRelationship] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "content": self.content,
            "embedding": list(self.embedding),
            "metadata": self.metadata.to_dict(),
            "relationships": [r.to_dict() for r in self.relationships],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CategorizedContext":
        return cls(
            category=ContextCategory(data["category"]),
            content=data["content"],
            embedding=list(data.get("embedding", [])),
            metadata=ContextMetadata.from_dict(data.get("metadata", {})),
            relationships=[
                ContextRelationship.from_dict(r) for r in data.get("relationships", [])
            ],
        )


# ----------------------------------------------------------------------
# Interleaved context and attention
# ----------------------------------------------------------------------


@dataclass
class TextSegment:
    id: str
    content: str
    type: str = "natural_language"  # documentation, comment, natural_language, instruction
    position: int = 0
    relevance_score: float = 1.0


@dataclass
class CodeSegment:
    id: str
    content: str
    language: str = ""
    type: str = "expression"  # function, class, variable, import, expression
    position: int = 0
    dependencies: list[str] = field(default_factory=list)
    semantic_embedding: list[float] = field(default_factory=list)


@dataclass
class VisualSegment:
    id: str
    type: str  # diagram, screenshot, flowchart, ui_mockup
    description: str = ""
    position: int = 0
    related_code: list[str] = field(default_factory=list)


@dataclass
class InterleavedContext:
    text_segments: list[TextSegment] = field(default_factory=list)
    code_segments: list[CodeSegment] = field(default_factory=list)
    visual_segments: list[VisualSegment] = field(default_factory=list)
    sequence_order: list[int] = field(default_factory=list)
    attention_weights: list[float] = field(default_factory=list)

    @classmethod
    def from_query(cls, query: str) -> "InterleavedContext":
        """Single instruction segment holding the query"""
        return cls(
            text_segments=[
                TextSegment(
                    id="query",
                    content=query,
                    type="instruction",
                    position=0,
                    relevance_score=1.0,
                )
            ],
            sequence_order=[0],
            attention_weights=[1.0],
        )


@dataclass
class AttentionResult:
    focused_segments: list[str] = field(default_factory=list)
    attention_weights: dict[str, float] = field(default_factory=dict)
    context_relevance: float = 0.8
    semantic_similarity: float = 0.7


# ----------------------------------------------------------------------
# Semantic search
# ----------------------------------------------------------------------


@dataclass
class SemanticFilter:
    field: str
    operator: str  # equals, contains, range, exists
    value: Any = None
    weight: float = 1.0


@dataclass
class SemanticSearchQuery:
    query: str
    embedding: list[float] = field(default_factory=list)
    filters: list[SemanticFilter] = field(default_factory=list)
    search_type: str = "semantic"  # similarity, hybrid, keyword, semantic
    max_results: int = 10
    threshold: float = 0.7


@dataclass
class SemanticSearchResult:
    id: str
    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] = field(default_factory=list)
    explanation: str = ""


# ----------------------------------------------------------------------
# Reasoning
# ----------------------------------------------------------------------


@dataclass
class AlternativeThought:
    thought: str
    probability: float
    reasoning: str = ""


@dataclass
class ChainOfThoughtStep:
    step_number: int
    thought: str
    reasoning: str = ""
    evidence: list[str] = field(default_factory=list)
    confidence: float = 0.8
    alternatives: list[AlternativeThought] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)


@dataclass
class ReasoningMetadata:
    total_steps: int = 0
    processing_time: float = 0.0
    model: str = "unknown"
    reasoning_type: str = "deductive"  # deductive, inductive, abductive


@dataclass
class ChainOfThoughtResponse:
    query: str
    steps: list[ChainOfThoughtStep] = field(default_factory=list)
    final_answer: str = ""
    overall_confidence: float = 0.8
    reasoning_path: list[str] = field(default_factory=list)
    metadata: ReasoningMetadata = field(default_factory=ReasoningMetadata)


@dataclass
class Subproblem:
    id: str
    description: str
    priority: int = 1
    prerequisites: list[str] = field(default_factory=list)
    expected_output: str = ""


@dataclass
class Dependency:
    source: str
    target: str
    type: str = "sequential"  # sequential, parallel, conditional
    strength: float = 1.0


@dataclass
class ProblemDecomposition:
    subproblems: list[Subproblem] = field(default_factory=list)
    dependencies: list[Dependency] = field(default_factory=list)
    complexity: str = "medium"  # low, medium, high, very_high
    estimated_time: int = 0  # seconds


@dataclass
class SolutionStep:
    id: str
    description: str
    approach: str = ""
    implementation: str = ""
    validation: str = ""
    status: str = "pending"  # pending, in_progress, completed, failed


@dataclass
class VerificationStep:
    id: str
    test_case: str
    expected_result: str = ""
    actual_result: str = ""
    passed: bool = False
    feedback: str = ""


@dataclass
class SequentialThinking:
    problem_statement: str
    decomposition: ProblemDecomposition = field(default_factory=ProblemDecomposition)
    solution_steps: list[SolutionStep] = field(default_factory=list)
    verification: list[VerificationStep] = field(default_factory=list)
    final_solution: str = ""


# ----------------------------------------------------------------------
# RAG and responses
# ----------------------------------------------------------------------


@dataclass
class RetrievedDocument:
    id: str
    content: str
    score: float
    category: ContextCategory
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] = field(default_factory=list)


@dataclass
class RAGResult:
    query: str
    retrieved_documents: list[RetrievedDocument]
    generated_response: str
    confidence: float
    category: ContextCategory


@dataclass
class SourceReference:
    id: str
    title: str
    type: str = "documentation"  # documentation, code, example, api, tutorial
    relevance: float = 0.0
    excerpt: str = ""
    url: str | None = None


@dataclass
class AdvancedResponseMetadata:
    model: str = "unknown"
    processing_time: float = 0.0  # milliseconds
    tokens_used: int = 0
    reasoning_depth: int = 0
    context_categories: list[ContextCategory] = field(default_factory=list)


@dataclass
class AdvancedAIResponse:
    content: str
    reasoning: ChainOfThoughtResponse | None = None
    sequential_thinking: SequentialThinking | None = None
    rag_results: list[RAGResult] = field(default_factory=list)
    attention_analysis: AttentionResult = field(default_factory=AttentionResult)
    semantic_context: list[CategorizedContext] = field(default_factory=list)
    confidence: float = 0.8
    sources: list[SourceReference] = field(default_factory=list)
    metadata: AdvancedResponseMetadata = field(default_factory=AdvancedResponseMetadata)


# ----------------------------------------------------------------------
# Capabilities, configuration and metrics
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class AdvancedCapabilities:
    interleaved_context: bool = True
    attention_mechanism: bool = True
    semantic_search: bool = True
    chain_of_thought: bool = True
    sequential_thinking: bool = True
    rag_support: bool = True
    vector_database: bool = True
    context_categorization: bool = True
    multimodal_support: bool = False
    realtime_processing: bool = True
    adaptive_learning: bool = False
    explainable_ai: bool = True

    @classmethod
    def feature_names(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    def supports(self, feature: str) -> bool:
        if feature not in self.feature_names():
            raise ValueError(f"Unknown feature: {feature}")
        return bool(getattr(self, feature))


def _default_features() -> list[str]:
    caps = AdvancedCapabilities()
    return [name for name in caps.feature_names() if getattr(caps, name)]


@dataclass
class AdvancedConfiguration:
    primary_model: str = "gpt-4"
    fallback_models: list[str] = field(default_factory=lambda: ["gpt-3.5-turbo"])
    embedding_model: str = "text-embedding-ada-002"
    reranking_model: str | None = None

    max_context_length: int = 8192
    attention_heads: int = 12
    embedding_dimensions: int = 1536

    default_vector_store: str = "default"
    chunk_size: int = 1000
    chunk_overlap: int = 200
    retrieval_top_k: int = 5

    max_reasoning_steps: int = 10
    confidence_threshold: float = 0.7

    batch_size: int = 32
    cache_size: int = 1000
    parallel_processing: bool = True

    enabled_features: list[str] = field(default_factory=_default_features)


@dataclass
class PerformanceMetrics:
    average_response_time: float = 0.0
    context_processing_time: float = 0.0
    attention_compute_time: float = 0.0
    rag_retrieval_time: float = 0.0
    reasoning_time: float = 0.0

    average_confidence: float = 0.0
    context_relevance: float = 0.0
    response_accuracy: float = 0.0

    memory_usage: int = 0
    cpu_usage: float = 0.0
    vector_store_size: int = 0
    cache_hit_rate: float = 0.0

    total_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0
    average_tokens_per_query: float = 0.0


@dataclass
class AdvancedQueryOptions:
    """Independent switches for process_advanced_query"""

    use_chain_of_thought: bool = False
    use_sequential_thinking: bool = False
    use_rag: bool = False
    rag_categories: list[ContextCategory] | None = None
    use_attention: bool = False
    use_semantic_search: bool = False
