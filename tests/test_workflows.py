"""
Tests for multi-step workflows
==============================

Run with: pytest tests/test_workflows.py -v
"""

import json

import pytest
import pytest_asyncio

import editor_ai.workflows as workflows_module
from editor_ai.configuration import ModelConfiguration, ModelConfigurationService
from editor_ai.credentials import MemorySecretStore
from editor_ai.errors import AIError, AIErrorCode
from editor_ai.providers import MockProvider
from editor_ai.service import AIServiceManager
from editor_ai.storage import MemoryKeyValueStorage
from editor_ai.workflows import HumanDecision, WorkflowAgent, WorkflowService, calculate_relevance


@pytest.fixture
def provider():
    return MockProvider(provider_id="local")


@pytest_asyncio.fixture
async def workflows(provider):
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
    manager = AIServiceManager(config_service, max_retries=1)
    manager.register_provider(provider)
    return WorkflowService(manager)


class TestConversationFlow:
    """Test bounded conversation memory"""

    @pytest.mark.asyncio
    async def test_history_is_trimmed(self, workflows, provider):
        """Only the system prompt and newest messages are sent"""
        provider.responder = lambda messages: f"reply {len(messages)}"

        await workflows.execute_conversation_flow("c1", "first", max_history=2)
        await workflows.execute_conversation_flow("c1", "second", max_history=2)

        sent = [(m.role, m.content) for m in provider.requests[1]]
        assert sent[0][0] == "system"
        assert sent[1:] == [("assistant", "reply 2"), ("user", "second")]

    @pytest.mark.asyncio
    async def test_history_is_per_conversation(self, workflows, provider):
        """Conversations do not share memory"""
        await workflows.execute_conversation_flow("a", "hello")
        await workflows.execute_conversation_flow("b", "other")

        assert [m.role for m in workflows.get_conversation_history("a")] == [
            "system",
            "user",
            "assistant",
        ]
        workflows.clear_conversation_memory("a")
        assert workflows.get_conversation_history("a") == []
        assert len(workflows.get_conversation_history("b")) == 3


class TestBatchWorkflow:
    """Test batched processing"""

    @pytest.mark.asyncio
    async def test_batches_in_order(self, workflows, monkeypatch):
        """Results keep input order and batches are separated by a delay"""
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        monkeypatch.setattr(workflows_module.asyncio, "sleep", fake_sleep)

        async def double(n):
            return str(n * 2)

        results = await workflows.execute_batch_workflow(
            [1, 2, 3, 4, 5], double, batch_size=2, delay=0.5
        )
        assert results == ["2", "4", "6", "8", "10"]
        assert delays == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_invalid_batch_size(self, workflows):
        """A non-positive batch size is an invalid request"""
        calls = []

        async def noop(item):
            calls.append(item)
            return ""

        with pytest.raises(AIError) as exc_info:
            await workflows.execute_batch_workflow([1], noop, batch_size=0)
        assert exc_info.value.code == AIErrorCode.INVALID_REQUEST
        assert exc_info.value.details == {"batchSize": 0}
        assert calls == []


class TestStructuredOutput:
    """Test JSON responses"""

    @pytest.mark.asyncio
    async def test_parses_json(self, workflows, provider):
        """Valid JSON is returned parsed"""
        provider.queue_response(json.dumps({"name": "parser", "lines": 40}))
        result = await workflows.execute_structured_output_workflow(
            "Describe the module", {"type": "object"}
        )
        assert result == {"name": "parser", "lines": 40}
        assert '"type": "object"' in provider.requests[0][1].content

    @pytest.mark.asyncio
    async def test_invalid_json(self, workflows, provider):
        """Non-JSON replies raise PARSING_ERROR"""
        provider.queue_response("Sure! Here it is:")
        with pytest.raises(AIError) as exc_info:
            await workflows.execute_structured_output_workflow("x", {})
        assert exc_info.value.code == AIErrorCode.PARSING_ERROR

    @pytest.mark.asyncio
    async def test_validator_rejects(self, workflows, provider):
        """Validator failures raise PARSING_ERROR"""
        provider.queue_response("[1, 2]")
        with pytest.raises(AIError) as exc_info:
            await workflows.execute_structured_output_workflow(
                "x", {}, validator=lambda value: isinstance(value, dict)
            )
        assert "validation criteria" in exc_info.value.message


class TestHumanInTheLoop:
    """Test feedback-driven refinement"""

    @pytest.mark.asyncio
    async def test_refines_until_approved(self, workflows, provider):
        """Feedback triggers a revision; approval returns it"""
        provider.queue_response("draft")
        provider.queue_response("revised")
        seen = []

        async def reviewer(content, info):
            seen.append((content, info["attempt"]))
            if content == "draft":
                return HumanDecision(approved=False, feedback="more detail")
            return HumanDecision(approved=True)

        result = await workflows.execute_hitl_workflow("Write docs", reviewer)
        assert result == "revised"
        assert seen == [("draft", 1), ("revised", 2)]
        assert '"more detail"' in provider.requests[1][1].content

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, workflows, provider):
        """The last response is returned when never approved"""

        async def reviewer(content, info):
            return HumanDecision(approved=False, feedback="no")

        await workflows.execute_hitl_workflow("Task", reviewer, max_attempts=2)
        # initial answer plus one revision
        assert len(provider.requests) == 2


class TestMultiAgentWorkflow:
    """Test supervisor/agent collaboration"""

    @pytest.mark.asyncio
    async def test_agent_failure_is_reported(self, workflows, provider):
        """A failing agent yields an error string instead of failing the run"""
        def responder(messages):
            if "role: Writer" in messages[0].content:
                raise AIError.invalid_api_key()
            return f"Mock response to: {messages[-1].content}"

        provider.responder = responder

        agents = [WorkflowAgent("writer", "Writer"), WorkflowAgent("editor", "Editor")]
        results = await workflows.execute_multi_agent_workflow("Write a README", agents)

        assert results["writer"] == "Error: Invalid API key provided"
        assert results["editor"].startswith("Mock response to:")

    @pytest.mark.asyncio
    async def test_supervisor_failure_propagates(self, workflows, provider):
        """Without a plan the workflow fails"""
        provider.queue_failure(AIError.invalid_api_key())
        with pytest.raises(AIError):
            await workflows.execute_multi_agent_workflow("x", [WorkflowAgent("a", "A")])


class TestDocumentWorkflows:
    """Test RAG and map-reduce workflows"""

    def test_relevance(self):
        """Relevance averages term occurrences"""
        assert calculate_relevance("cache", "cache cache miss") == 2.0
        assert calculate_relevance("", "anything") == 0.0

    @pytest.mark.asyncio
    async def test_rag_picks_top_documents(self, workflows, provider):
        """The three most relevant documents are cited"""
        documents = ["about cats", "cache cache", "cache layer", "cache", "dogs"]
        result = await workflows.execute_rag_workflow("cache", documents)

        assert result.sources == ["cache cache", "cache layer", "cache"]
        assert "[1] cache cache" in provider.requests[0][1].content

    @pytest.mark.asyncio
    async def test_map_reduce_keeps_errors(self, workflows, provider):
        """Failed map items become error strings in the results"""

        async def mapper(item):
            if item == 2:
                raise RuntimeError("bad item")
            return f"ok {item}"

        result = await workflows.execute_map_reduce_workflow([1, 2], mapper, "Summarize")
        assert result.results == ["ok 1", "Error processing item 1: bad item"]
        assert result.summary.startswith("Mock response to: Summarize")
