"""
AI Service Manager
==================
Single entry point for editor AI requests.

Resolves the active provider through the configuration registry, enriches
the request with editor context, builds the prompt for the operation,
runs it with retry and publishes the outcome on the response/error events.
"""

import asyncio
import json
import logging
import re
import uuid
from collections.abc import AsyncIterator, Callable, Coroutine
from typing import Any, TypeVar

from .configuration import ModelConfigurationService
from .context import ActionExecutor, ContextProvider, EchoActionExecutor, context_json
from .errors import AIError, AIErrorCode, ErrorHandler, sanitize_for_logging
from .events import CancellationToken, Disposable, Emitter, is_cancelled
from .providers.base import AIServiceProvider, capabilities_from_config
from .settings import get_max_retries, load_user_config
from .types import (
    AIAction,
    ActionObservation,
    AICapabilities,
    AIConversation,
    AIMessage,
    AIResponse,
    CodeContext,
    CompletionItem,
    CompletionItemKind,
    CursorPosition,
    ReActStep,
    ResponseMetadata,
    now_ms,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REACT_ITERATIONS = 10
RAG_DOCUMENT_LIMIT = 10

COT_SYSTEM_PROMPT = (
    "You are an AI assistant that uses step-by-step reasoning. Break down "
    "complex problems into logical steps, show your reasoning for each step, "
    "and provide a clear final answer."
)

REACT_SYSTEM_PROMPT = """You are a ReAct (Reasoning + Acting) agent. For each step:
1. THOUGHT: Reason about what you need to do next
2. ACTION: Choose an action to take (search, analyze, read_file, etc.)
3. OBSERVATION: Process the result and decide next steps

Available actions: search, code_analysis, file_read, web_search, tool_call"""

RAG_SYSTEM_PROMPT = (
    "You are an AI assistant that answers questions based on provided context. "
    "Always cite your sources and indicate when information is not available "
    "in the provided context."
)

_STEP_PATTERN = re.compile(r"Step \d+:.*?(?=Step \d+:|$)", re.DOTALL)
_THOUGHT_PATTERN = re.compile(r"THOUGHT:\s*(.*?)(?=ACTION:|FINAL_ANSWER:|$)", re.DOTALL)
_ACTION_PATTERN = re.compile(r"ACTION:\s*(.*?)(?=OBSERVATION:|$)", re.DOTALL)
_FINAL_PATTERN = re.compile(r"FINAL_ANSWER:\s*(.*)", re.DOTALL)


class AIServiceManager:
    """
    Orchestrates providers, context and conversations.

    Providers are registered explicitly (keyed by provider id); a model
    configuration resolves to the provider registered under its id, or
    under its provider tag.
    """

    def __init__(
        self,
        config_service: ModelConfigurationService,
        context_provider: ContextProvider | None = None,
        action_executor: ActionExecutor | None = None,
        max_retries: int | None = None,
        error_handler: ErrorHandler | None = None,
    ) -> None:
        self.config_service = config_service
        self.context_provider = context_provider
        self.action_executor = action_executor or EchoActionExecutor()
        self.error_handler = error_handler or ErrorHandler()
        if max_retries is None:
            max_retries = get_max_retries(load_user_config())
        self.max_retries = max_retries

        self.on_did_change_active_model: Emitter[str] = Emitter("active_model")
        self.on_did_receive_response: Emitter[AIResponse] = Emitter("response")
        self.on_did_error: Emitter[AIError] = Emitter("error")

        self._providers: dict[str, AIServiceProvider] = {}
        self._conversations: dict[str, AIConversation] = {}
        self._active_model_id: str | None = None
        self._current_context: CodeContext | None = None
        self._subscriptions: list[Disposable] = [
            config_service.on_did_change_default_model.subscribe(
                self._handle_default_model_changed
            )
        ]

    # ------------------------------------------------------------------
    # Provider management
    # ------------------------------------------------------------------

    def register_provider(self, provider: AIServiceProvider) -> None:
        self._providers[provider.id] = provider
        logger.info(f"Registered provider {provider.id} ({provider.provider_name})")

    async def unregister_provider(self, provider_id: str, dispose: bool = True) -> None:
        provider = self._providers.pop(provider_id, None)
        if provider is None:
            return
        if dispose:
            await provider.dispose()
        logger.info(f"Unregistered provider {provider_id}")

    def get_provider(self, provider_id: str) -> AIServiceProvider | None:
        return self._providers.get(provider_id)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def send_chat_message(
        self,
        message: str,
        context: CodeContext | None = None,
        token: CancellationToken | None = None,
    ) -> AIResponse:
        enriched = await self._enrich_context(context)
        return await self._send([AIMessage("user", message, context=enriched)], token)

    async def send_chat_message_stream(
        self,
        message: str,
        context: CodeContext | None = None,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        """Yield response chunks; stops quietly once `token` is cancelled"""
        provider = self._get_active_provider()
        enriched = await self._enrich_context(context)
        messages = [AIMessage("user", message, context=enriched)]

        try:
            async for chunk in provider.send_stream_request(messages, token):
                if is_cancelled(token):
                    break
                yield chunk
        except Exception as e:
            ai_error = self.error_handler.handle(e, provider.name)
            self.on_did_error.fire(ai_error)
            if ai_error is e:
                raise
            raise ai_error from e

    async def get_code_completion(
        self,
        position: CursorPosition,
        context: str,
        token: CancellationToken | None = None,
    ) -> list[CompletionItem]:
        """Completion items for the code around `position`; [] on any failure"""
        try:
            provider = self._get_active_provider()
            code_context = await self._enrich_context(None)
            prompt = (
                f"Complete the following code at line {position.line}, "
                f"column {position.column}:\n\n"
                f"```\n{context}\n```\n\n"
                f"Context: {context_json(code_context)}\n\n"
                "Provide intelligent code completions that are contextually "
                "appropriate."
            )
            messages = [AIMessage("user", prompt, context=code_context)]
            response = await self.execute_with_retry(
                lambda: provider.send_request(messages, token), token
            )
        except Exception as e:
            ai_error = self.error_handler.handle(e)
            if not is_cancelled(token):
                self.on_did_error.fire(ai_error)
            return []

        return [
            CompletionItem(
                text=response.content,
                insert_text=response.content,
                kind=CompletionItemKind.TEXT,
                confidence=response.confidence,
            )
        ]

    async def refactor_code(
        self,
        code: str,
        instruction: str,
        context: CodeContext | None = None,
        token: CancellationToken | None = None,
    ) -> AIResponse:
        enriched = await self._enrich_context(context)
        prompt = (
            "Refactor the following code according to the instruction: "
            f'"{instruction}"\n\n'
            f"```\n{code}\n```\n\n"
            f"Context: {context_json(enriched)}\n\n"
            "Provide the refactored code with explanations."
        )
        return await self._send([AIMessage("user", prompt, context=enriched)], token)

    async def analyze_code(
        self,
        code: str,
        context: CodeContext | None = None,
        token: CancellationToken | None = None,
    ) -> AIResponse:
        enriched = await self._enrich_context(context)
        prompt = (
            "Analyze the following code for issues, improvements, and metrics:\n\n"
            f"```\n{code}\n```\n\n"
            f"Context: {context_json(enriched)}\n\n"
            "Provide detailed analysis including issues, suggestions, and code "
            "metrics."
        )
        return await self._send([AIMessage("user", prompt, context=enriched)], token)

    async def send_messages(
        self, messages: list[AIMessage], token: CancellationToken | None = None
    ) -> AIResponse:
        """Send an explicit message list through the active provider"""
        return await self._send(messages, token)

    # ------------------------------------------------------------------
    # Reasoning operations
    # ------------------------------------------------------------------

    async def chain_of_thought(
        self,
        query: str,
        context: CodeContext | None = None,
        token: CancellationToken | None = None,
    ) -> AIResponse:
        enriched = await self._enrich_context(context)
        prompt = (
            f'Think step by step to answer this query: "{query}"\n\n'
            f"Context: {context_json(enriched)}\n\n"
            "Break down your reasoning into clear steps:\n"
            "1. Understanding the problem\n"
            "2. Analyzing the context\n"
            "3. Considering solutions\n"
            "4. Evaluating options\n"
            "5. Final recommendation"
        )
        messages = [
            AIMessage("system", COT_SYSTEM_PROMPT),
            AIMessage("user", prompt, context=enriched),
        ]

        def add_reasoning(response: AIResponse) -> None:
            response.reasoning = extract_reasoning_steps(response.content)

        return await self._send(messages, token, before_publish=add_reasoning)

    async def react_agent(
        self,
        task: str,
        context: CodeContext | None = None,
        token: CancellationToken | None = None,
        max_iterations: int | None = None,
    ) -> AIResponse:
        """Run THOUGHT/ACTION/OBSERVATION cycles until a final answer"""
        provider = self._get_active_provider()
        enriched = await self._enrich_context(context)
        if max_iterations is None:
            max_iterations = self._active_max_actions() or DEFAULT_REACT_ITERATIONS

        steps: list[ReActStep] = []
        current_thought = task
        final_answer: str | None = None
        try:
            for _ in range(max_iterations):
                if is_cancelled(token):
                    break
                messages = [
                    AIMessage("system", REACT_SYSTEM_PROMPT),
                    AIMessage(
                        "user",
                        build_react_prompt(task, current_thought, steps, enriched),
                        context=enriched,
                    ),
                ]
                response = await self.execute_with_retry(
                    lambda: provider.send_request(messages, token), token
                )

                thought, action, should_continue = parse_react_response(
                    response.content
                )
                final_answer = parse_final_answer(response.content)
                if action is not None:
                    observation = await self._execute_action(action, enriched)
                    steps.append(ReActStep(thought, action, observation))
                    current_thought = (
                        " ".join(observation.insights) or "Continue processing..."
                    )
                if not should_continue:
                    break
        except AIError as e:
            self.on_did_error.fire(e)
            raise

        if not final_answer:
            # iteration limit, cancellation or an empty answer
            final_answer = (
                f"Task: {task}\n\n"
                f"Stopped after {len(steps)} reasoning and action cycles "
                "without a final answer."
            )
        final = AIResponse(
            content=final_answer,
            confidence=0.8,
            actions=steps,
            metadata=ResponseMetadata(model=provider.id, tokens=0, processing_time=0),
        )
        self.on_did_receive_response.fire(final)
        return final

    async def rag_query(
        self,
        query: str,
        context: CodeContext | None = None,
        token: CancellationToken | None = None,
        limit: int = RAG_DOCUMENT_LIMIT,
    ) -> AIResponse:
        """Answer `query` from documents retrieved by the context provider"""
        enriched = await self._enrich_context(context)
        if self.context_provider is None:
            error = AIError.rag_search_failed("No context provider configured")
            self.on_did_error.fire(error)
            raise error

        try:
            documents = await self.context_provider.search_similar(query, limit)
        except Exception as e:
            error = AIError.rag_search_failed(str(e))
            logger.error(f"Document retrieval failed: {e}")
            self.on_did_error.fire(error)
            raise error from e

        sources = "\n\n".join(
            f"[{i + 1}] {doc.path}\n{doc.content}" for i, doc in enumerate(documents)
        )
        prompt = (
            f'Answer the following query using the provided sources: "{query}"\n\n'
            f"Sources:\n{sources}\n\n"
            f"Context: {context_json(enriched)}\n\n"
            "Provide a comprehensive answer based on the sources and cite them "
            "appropriately."
        )
        messages = [
            AIMessage("system", RAG_SYSTEM_PROMPT),
            AIMessage("user", prompt, context=enriched),
        ]

        def add_sources(response: AIResponse) -> None:
            response.sources = [doc.path for doc in documents]

        return await self._send(messages, token, before_publish=add_sources)

    # ------------------------------------------------------------------
    # Model management
    # ------------------------------------------------------------------

    def switch_model(self, model_id: str) -> None:
        config = self.config_service.get(model_id)
        if config is None:
            raise AIError.model_not_found(model_id)
        if self._provider_for(model_id, config.provider) is None:
            raise AIError.service_unavailable(
                f"Provider {config.provider} not available"
            )

        self._active_model_id = model_id
        logger.info(f"Active model: {model_id}")
        self.on_did_change_active_model.fire(model_id)

    def get_active_model(self) -> str | None:
        return self._active_model_id

    def get_available_models(self) -> list[dict[str, str]]:
        return [{"id": c.id, "name": c.name} for c in self.config_service.get_all()]

    def get_model_capabilities(self, model_id: str) -> AICapabilities:
        config = self.config_service.get(model_id)
        if config is None:
            raise AIError.model_not_found(model_id)
        return capabilities_from_config(config)

    def is_available(self) -> bool:
        return bool(self._providers) and self._active_model_id is not None

    # ------------------------------------------------------------------
    # Conversations and context
    # ------------------------------------------------------------------

    def create_conversation(self) -> str:
        conversation_id = uuid.uuid4().hex
        self._conversations[conversation_id] = AIConversation(
            id=conversation_id, model_id=self._active_model_id or ""
        )
        return conversation_id

    def get_conversation(self, conversation_id: str) -> AIConversation | None:
        return self._conversations.get(conversation_id)

    def delete_conversation(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)

    def get_conversations(self) -> list[AIConversation]:
        return list(self._conversations.values())

    def add_message(self, conversation_id: str, message: AIMessage) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise AIError(
                AIErrorCode.INVALID_REQUEST,
                f"Conversation {conversation_id} not found",
            )
        conversation.messages.append(message)
        conversation.updated_at = now_ms()

    def update_context(self, context: CodeContext) -> None:
        self._current_context = context

    def get_context(self) -> CodeContext | None:
        return self._current_context

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def execute_with_retry(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        token: CancellationToken | None = None,
        max_retries: int | None = None,
    ) -> T:
        """
        Run `operation` until it succeeds or fails for good.

        Raises:
            AIError: TIMEOUT "Operation cancelled" when the token is cancelled
                before an attempt, otherwise the classified failure of the
                last attempt
        """
        attempts = max_retries if max_retries is not None else self.max_retries
        attempts = max(attempts, 1)

        for attempt in range(attempts):
            if is_cancelled(token):
                raise AIError(AIErrorCode.TIMEOUT, "Operation cancelled")

            try:
                return await operation()
            except Exception as e:
                ai_error = self.error_handler.handle(e)
                if not self.error_handler.should_retry(ai_error) or (
                    attempt == attempts - 1
                ):
                    if ai_error is e:
                        raise
                    raise ai_error from e

                delay = self.error_handler.get_retry_delay(ai_error, attempt)
                logger.warning(
                    f"Retrying after error (attempt {attempt + 1}): "
                    f"{sanitize_for_logging(ai_error.message)}"
                )
                await asyncio.sleep(delay / 1000)

        raise AIError(AIErrorCode.INTERNAL_ERROR, "Retry loop exited without result")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def dispose(self) -> None:
        for subscription in self._subscriptions:
            subscription.dispose()
        for provider_id in list(self._providers):
            await self.unregister_provider(provider_id)
        self._conversations.clear()
        for emitter in (
            self.on_did_change_active_model,
            self.on_did_receive_response,
            self.on_did_error,
        ):
            emitter.dispose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _provider_for(self, model_id: str, provider_tag: str) -> AIServiceProvider | None:
        return self._providers.get(model_id) or self._providers.get(provider_tag)

    def _get_active_provider(self) -> AIServiceProvider:
        if self._active_model_id is None:
            default = self.config_service.get_default()
            if default is None:
                raise AIError.configuration("No active model configured")
            self.switch_model(default.id)

        model_id = self._active_model_id or ""
        config = self.config_service.get(model_id)
        if config is None:
            raise AIError.model_not_found(model_id)

        provider = self._provider_for(model_id, config.provider)
        if provider is None:
            raise AIError.service_unavailable(
                f"Provider {config.provider} not available"
            )
        return provider

    def _active_max_actions(self) -> int | None:
        if self._active_model_id is None:
            return None
        config = self.config_service.get(self._active_model_id)
        return config.parameters.max_actions if config else None

    async def _enrich_context(self, context: CodeContext | None) -> CodeContext:
        if context is not None:
            return context
        if self._current_context is not None:
            return self._current_context
        if self.context_provider is not None:
            return await self.context_provider.extract_context()
        return CodeContext()

    async def _send(
        self,
        messages: list[AIMessage],
        token: CancellationToken | None,
        before_publish: Callable[[AIResponse], None] | None = None,
    ) -> AIResponse:
        provider = self._get_active_provider()
        try:
            response = await self.execute_with_retry(
                lambda: provider.send_request(messages, token), token
            )
        except AIError as e:
            self.on_did_error.fire(e)
            raise

        if before_publish is not None:
            before_publish(response)
        self.on_did_receive_response.fire(response)
        return response

    async def _execute_action(
        self, action: AIAction, context: CodeContext
    ) -> ActionObservation:
        try:
            return await self.action_executor.execute(action, context)
        except Exception as e:
            logger.warning(f"Action {action.type} failed: {e}")
            return ActionObservation(result=f"Action failed: {e}", success=False)

    def _handle_default_model_changed(self, model_id: str) -> None:
        try:
            self.switch_model(model_id)
        except AIError as e:
            logger.warning(f"Could not switch to default model {model_id}: {e.message}")


def extract_reasoning_steps(content: str) -> str:
    """Join the "Step N:" blocks of a chain-of-thought reply"""
    return "\n".join(_STEP_PATTERN.findall(content))


def parse_action(text: str) -> AIAction:
    """JSON action object, or a search for the raw text when it is not JSON"""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict):
        return AIAction(type="search", description=text, parameters={})

    parameters = data.get("parameters")
    return AIAction(
        type=str(data.get("type", "search")),
        description=str(data.get("description", "")),
        parameters=parameters if isinstance(parameters, dict) else {},
    )


def parse_final_answer(content: str) -> str | None:
    """Text after FINAL_ANSWER:, or None when the reply has none"""
    match = _FINAL_PATTERN.search(content)
    return match.group(1).strip() if match else None


def parse_react_response(content: str) -> tuple[str, AIAction | None, bool]:
    """Returns (thought, action, should_continue)"""
    thought_match = _THOUGHT_PATTERN.search(content)
    action_match = _ACTION_PATTERN.search(content)
    final_match = _FINAL_PATTERN.search(content)

    thought = thought_match.group(1).strip() if thought_match else ""
    action = None
    if action_match and action_match.group(1).strip():
        action = parse_action(action_match.group(1).strip())
    return thought, action, final_match is None


def build_react_prompt(
    task: str, current_thought: str, steps: list[ReActStep], context: CodeContext
) -> str:
    history = "\n\n".join(
        f"Step {i + 1}:\n"
        f"THOUGHT: {step.thought}\n"
        f"ACTION: {json.dumps(step.action.to_dict())}\n"
        f"OBSERVATION: {step.observation.result}"
        for i, step in enumerate(steps)
    )
    return (
        f"Task: {task}\n\n"
        f"Current Thought: {current_thought}\n\n"
        f"Previous Actions:\n{history}\n\n"
        f"Context: {context_json(context)}\n\n"
        "What should I do next? Respond with:\n"
        "THOUGHT: [your reasoning]\n"
        "ACTION: [action to take] or FINAL_ANSWER: [if task is complete]"
    )
