"""
Tests for the AI service manager
================================

Run with: pytest tests/test_service.py -v

Providers are MockProvider instances; retry sleeps are patched out.
"""

import pytest
import pytest_asyncio

import editor_ai.service as service_module
from editor_ai.configuration import ModelConfiguration, ModelConfigurationService
from editor_ai.context import StaticContextProvider
from editor_ai.credentials import MemorySecretStore
from editor_ai.errors import AIError, AIErrorCode
from editor_ai.events import CancellationTokenSource
from editor_ai.providers import MockProvider
from editor_ai.service import (
    AIServiceManager,
    extract_reasoning_steps,
    parse_action,
    parse_final_answer,
    parse_react_response,
)
from editor_ai.storage import MemoryKeyValueStorage
from editor_ai.types import AIMessage, CodeContext, CursorPosition, RAGDocument


def model(model_id: str, provider: str = "ollama") -> ModelConfiguration:
    return ModelConfiguration(
        id=model_id,
        name=model_id.title(),
        type="local",
        provider=provider,
        endpoint="http://localhost:11434",
        model=model_id,
    )


@pytest.fixture
def sleeps(monkeypatch):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(service_module.asyncio, "sleep", fake_sleep)
    return delays


@pytest_asyncio.fixture
async def config_service():
    service = ModelConfigurationService(
        storage=MemoryKeyValueStorage(),
        secret_store=MemorySecretStore(),
        validate_on_add=False,
    )
    await service.add(model("primary"))
    await service.add(model("backup"))
    return service


@pytest.fixture
def provider():
    return MockProvider(provider_id="primary")


@pytest.fixture
def manager(config_service, provider):
    manager = AIServiceManager(config_service, max_retries=3)
    manager.register_provider(provider)
    manager.register_provider(MockProvider(provider_id="backup"))
    return manager


class TestModelSelection:
    """Test active model resolution"""

    @pytest.mark.asyncio
    async def test_first_request_uses_default(self, manager, provider):
        """With no active model the default configuration is selected"""
        assert manager.get_active_model() is None
        response = await manager.send_chat_message("Hello")

        assert response.content == "Mock response to: Hello"
        assert manager.get_active_model() == "primary"
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_switch_to_unknown_model(self, manager):
        """Unknown ids raise MODEL_NOT_FOUND and keep the active model"""
        manager.switch_model("backup")
        with pytest.raises(AIError) as exc_info:
            manager.switch_model("nonexistent")
        assert exc_info.value.code == AIErrorCode.MODEL_NOT_FOUND
        assert manager.get_active_model() == "backup"

    @pytest.mark.asyncio
    async def test_switch_without_provider(self, config_service):
        """A configuration with no registered provider cannot be activated"""
        manager = AIServiceManager(config_service, max_retries=1)
        with pytest.raises(AIError) as exc_info:
            manager.switch_model("primary")
        assert exc_info.value.code == AIErrorCode.SERVICE_UNAVAILABLE
        assert manager.get_active_model() is None

    @pytest.mark.asyncio
    async def test_provider_tag_fallback(self, config_service):
        """A provider registered under the tag serves any config with that tag"""
        manager = AIServiceManager(config_service, max_retries=1)
        shared = MockProvider(provider_id="ollama")
        manager.register_provider(shared)

        await manager.send_chat_message("Hi")
        assert len(shared.requests) == 1

    @pytest.mark.asyncio
    async def test_no_configuration(self):
        """Without any configuration requests fail with CONFIGURATION_ERROR"""
        empty = ModelConfigurationService(
            storage=MemoryKeyValueStorage(),
            secret_store=MemorySecretStore(),
            validate_on_add=False,
        )
        manager = AIServiceManager(empty, max_retries=1)
        with pytest.raises(AIError) as exc_info:
            await manager.send_chat_message("Hi")
        assert exc_info.value.code == AIErrorCode.CONFIGURATION_ERROR
        assert manager.is_available() is False

    @pytest.mark.asyncio
    async def test_default_change_switches_model(self, manager, config_service):
        """Changing the default configuration switches the active model"""
        changes = []
        manager.on_did_change_active_model.subscribe(changes.append)
        await config_service.set_default("backup")
        assert manager.get_active_model() == "backup"
        assert changes == ["backup"]

    @pytest.mark.asyncio
    async def test_model_listing(self, manager):
        """Available models and capabilities come from the registry"""
        assert manager.get_available_models() == [
            {"id": "primary", "name": "Primary"},
            {"id": "backup", "name": "Backup"},
        ]
        assert manager.get_model_capabilities("primary").chat is True
        with pytest.raises(AIError):
            manager.get_model_capabilities("missing")


class TestRetry:
    """Test retry with exponential backoff"""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, manager, provider, sleeps):
        """Retryable failures are retried with doubling delays"""
        provider.queue_failure(AIError.timeout(), times=2)
        response = await manager.send_chat_message("Hi")

        assert response.content == "Mock response to: Hi"
        assert len(provider.requests) == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self, manager, provider, sleeps):
        """At most max_retries attempts are made"""
        errors = []
        manager.on_did_error.subscribe(errors.append)
        provider.queue_failure(AIError.timeout(), times=5)

        with pytest.raises(AIError) as exc_info:
            await manager.send_chat_message("Hi")
        assert exc_info.value.code == AIErrorCode.TIMEOUT
        assert len(provider.requests) == 3
        assert len(sleeps) == 2
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, manager, provider, sleeps):
        """Non-retryable errors fail on the first attempt"""
        provider.queue_failure(AIError.invalid_api_key())
        with pytest.raises(AIError) as exc_info:
            await manager.send_chat_message("Hi")
        assert exc_info.value.code == AIErrorCode.INVALID_API_KEY
        assert len(provider.requests) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_cancelled_before_attempt(self, manager):
        """A cancelled token stops the loop before calling the operation"""
        source = CancellationTokenSource()
        source.cancel()
        calls = []

        async def operation():
            calls.append(1)
            return "never"

        with pytest.raises(AIError) as exc_info:
            await manager.execute_with_retry(operation, source.token)
        assert exc_info.value.code == AIErrorCode.TIMEOUT
        assert exc_info.value.message == "Operation cancelled"
        assert calls == []

    @pytest.mark.asyncio
    async def test_unknown_exceptions_are_classified(self, manager):
        """Plain exceptions surface as AIError"""

        async def operation():
            raise KeyError("choices")

        with pytest.raises(AIError) as exc_info:
            await manager.execute_with_retry(operation, max_retries=1)
        assert exc_info.value.code == AIErrorCode.INVALID_RESPONSE


class TestOperations:
    """Test prompt-building operations"""

    @pytest.mark.asyncio
    async def test_stream_stops_on_cancel(self, manager, provider):
        """Chunks after cancellation are not delivered"""
        provider.queue_response("one two three")
        source = CancellationTokenSource()

        chunks = []
        async for chunk in manager.send_chat_message_stream("Hi", token=source.token):
            chunks.append(chunk)
            source.cancel()
        assert chunks == ["one "]

    @pytest.mark.asyncio
    async def test_stream_error_is_classified(self, manager, provider):
        """Stream failures fire on_did_error and raise AIError"""
        errors = []
        manager.on_did_error.subscribe(errors.append)
        provider.queue_failure(RuntimeError("socket closed"))

        with pytest.raises(AIError) as exc_info:
            async for _ in manager.send_chat_message_stream("Hi"):
                pass
        assert exc_info.value.code == AIErrorCode.INTERNAL_ERROR
        assert errors == [exc_info.value]

    @pytest.mark.asyncio
    async def test_completion(self, manager, provider):
        """A completion reply becomes a single text item"""
        provider.queue_response("return x")
        items = await manager.get_code_completion(CursorPosition(3, 8), "def f(x):\n    ")

        assert [item.insert_text for item in items] == ["return x"]
        prompt = provider.requests[0][0].content
        assert "line 3, column 8" in prompt

    @pytest.mark.asyncio
    async def test_completion_failure_returns_empty(self, manager, provider):
        """Completion failures are reported through the event, not raised"""
        errors = []
        manager.on_did_error.subscribe(errors.append)
        provider.queue_failure(AIError.invalid_api_key())

        assert await manager.get_code_completion(CursorPosition(0, 0), "x") == []
        assert errors[0].code == AIErrorCode.INVALID_API_KEY

    @pytest.mark.asyncio
    async def test_refactor_and_analyze_prompts(self, manager, provider):
        """Code and instruction are embedded in the prompts"""
        await manager.refactor_code("x=1", "use a constant")
        await manager.analyze_code("y=2")

        refactor_prompt = provider.requests[0][0].content
        analyze_prompt = provider.requests[1][0].content
        assert '"use a constant"' in refactor_prompt
        assert "```\nx=1\n```" in refactor_prompt
        assert analyze_prompt.startswith("Analyze the following code")

    @pytest.mark.asyncio
    async def test_context_enrichment(self, manager, provider):
        """The stored editor context is attached when none is passed"""
        context = CodeContext(active_file="src/app.py")
        manager.update_context(context)
        await manager.analyze_code("pass")

        assert provider.requests[0][0].context is context
        assert '"activeFile": "src/app.py"' in provider.requests[0][0].content

    @pytest.mark.asyncio
    async def test_chain_of_thought(self, manager, provider):
        """Step blocks are extracted into the reasoning field"""
        provider.queue_response("Step 1: read\nStep 2: decide\nDone")
        response = await manager.chain_of_thought("Why?")

        assert response.reasoning == "Step 1: read\n\nStep 2: decide\nDone"
        system, user = provider.requests[0]
        assert system.role == "system"
        assert user.content.startswith('Think step by step to answer this query: "Why?"')

    @pytest.mark.asyncio
    async def test_react_agent(self, manager, provider):
        """Actions are executed until a final answer is given"""
        provider.queue_response(
            'THOUGHT: need data\nACTION: {"type": "search", "parameters": {"q": "todo"}}'
        )
        provider.queue_response("THOUGHT: enough\nFINAL_ANSWER: 3 todos")

        response = await manager.react_agent("Count todos")

        assert len(response.actions) == 1
        step = response.actions[0]
        assert step.thought == "need data"
        assert step.action.parameters == {"q": "todo"}
        assert step.observation.success is True
        assert response.content == "3 todos"
        assert len(provider.requests) == 2
        assert "Current Thought: Action search completed successfully" in (
            provider.requests[1][1].content
        )

    @pytest.mark.asyncio
    async def test_react_iteration_limit(self, manager, provider):
        """The loop stops after max_iterations"""
        provider.responder = lambda messages: "THOUGHT: again\nACTION: look around"
        response = await manager.react_agent("Loop", max_iterations=2)

        assert len(response.actions) == 2
        assert response.actions[0].action.type == "search"
        assert response.actions[0].action.description == "look around"
        assert response.content == "Task: Loop\n\nStopped after 2 reasoning and action cycles without a final answer."

    @pytest.mark.asyncio
    async def test_rag_query(self, config_service, provider):
        """Retrieved documents are cited and returned as sources"""
        documents = [
            RAGDocument(id="1", content="def parse(): pass", path="src/parser.py"),
            RAGDocument(id="2", content="README text", path="README.md"),
        ]
        manager = AIServiceManager(
            config_service,
            context_provider=StaticContextProvider(documents=documents),
            max_retries=1,
        )
        manager.register_provider(provider)

        response = await manager.rag_query("parse")
        assert response.sources == ["src/parser.py"]
        assert "[1] src/parser.py" in provider.requests[0][1].content

    @pytest.mark.asyncio
    async def test_rag_without_context_provider(self, manager):
        """RAG needs a context provider"""
        with pytest.raises(AIError) as exc_info:
            await manager.rag_query("anything")
        assert exc_info.value.code == AIErrorCode.RAG_SEARCH_FAILED


class TestConversations:
    """Test the in-memory conversation map"""

    @pytest.mark.asyncio
    async def test_lifecycle(self, manager):
        """Conversations can be created, appended to and deleted"""
        manager.switch_model("primary")
        conversation_id = manager.create_conversation()
        manager.add_message(conversation_id, AIMessage("user", "hi"))

        conversation = manager.get_conversation(conversation_id)
        assert conversation.model_id == "primary"
        assert [m.content for m in conversation.messages] == ["hi"]

        manager.delete_conversation(conversation_id)
        assert manager.get_conversations() == []

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, manager):
        """Appending to an unknown conversation is an invalid request"""
        with pytest.raises(AIError) as exc_info:
            manager.add_message("missing", AIMessage("user", "hi"))
        assert exc_info.value.code == AIErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_dispose_releases_providers(self, manager, provider):
        """Disposing the manager disposes every provider"""
        await manager.dispose()
        assert provider.disposed is True
        assert manager.get_provider("primary") is None


class TestReplyParsing:
    """Test ReAct and chain-of-thought parsing helpers"""

    def test_parse_action_json(self):
        """JSON actions keep their type and parameters"""
        action = parse_action('{"type": "file_read", "parameters": {"path": "a.py"}}')
        assert action.type == "file_read"
        assert action.parameters == {"path": "a.py"}

    def test_parse_action_text(self):
        """Plain text becomes a search"""
        action = parse_action("grep for TODO")
        assert action.type == "search"
        assert action.description == "grep for TODO"

    def test_final_answer_stops(self):
        """FINAL_ANSWER ends the loop"""
        thought, action, should_continue = parse_react_response(
            "THOUGHT: done\nFINAL_ANSWER: yes"
        )
        assert thought == "done"
        assert action is None
        assert should_continue is False

    def test_final_answer_text(self):
        """The final answer keeps everything after the marker"""
        assert parse_final_answer("THOUGHT: done\nFINAL_ANSWER: 3 todos\nin src/") == "3 todos\nin src/"
        assert parse_final_answer("THOUGHT: still going") is None

    def test_no_steps(self):
        """Replies without steps have empty reasoning"""
        assert extract_reasoning_steps("Just an answer") == ""
