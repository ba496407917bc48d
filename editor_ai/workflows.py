"""
Workflows
=========
Multi-step patterns built on AIServiceManager.send_messages:

- Supervisor/agent collaboration
- Document-grounded answers
- Map-reduce and batched processing
- JSON structured output
- Human-in-the-loop refinement
- Conversations with bounded memory
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .errors import AIError, AIErrorCode
from .service import AIServiceManager
from .types import AIMessage

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION_PROMPT = "You are a helpful AI assistant with conversation memory."
DEFAULT_MAX_HISTORY = 10
RAG_TOP_DOCUMENTS = 3


@dataclass
class WorkflowAgent:
    id: str
    role: str
    model: str | None = None


@dataclass
class HumanDecision:
    approved: bool
    feedback: str | None = None


@dataclass
class RAGWorkflowResult:
    answer: str
    sources: list[str] = field(default_factory=list)


@dataclass
class MapReduceResult:
    results: list[str]
    summary: str


HumanCallback = Callable[[str, dict[str, Any]], Awaitable[HumanDecision]]


def calculate_relevance(query: str, document: str) -> float:
    """Average number of occurrences of each query term in the document"""
    terms = query.lower().split()
    if not terms:
        return 0.0
    text = document.lower()
    return sum(text.count(term) for term in terms) / len(terms)


class WorkflowService:
    """Workflow helpers sharing one service manager"""

    def __init__(self, service: AIServiceManager) -> None:
        self.service = service
        self._conversation_memory: dict[str, list[AIMessage]] = {}

    async def _chat(self, system: str, user: str) -> str:
        response = await self.service.send_messages(
            [AIMessage("system", system), AIMessage("user", user)]
        )
        return response.content

    async def execute_multi_agent_workflow(
        self, task: str, agents: list[WorkflowAgent]
    ) -> dict[str, str]:
        """Supervisor plans, then every agent works in parallel"""
        roster = ", ".join(f"{a.id} ({a.role})" for a in agents)
        supervision = await self._chat(
            "You are a supervisor AI that coordinates other AI agents. "
            "Provide clear, specific instructions.",
            "You are a supervisor AI coordinating a team of specialized agents "
            f'to complete this task: "{task}"\n\n'
            f"Agents available: {roster}\n\n"
            "Provide specific instructions for each agent.",
        )

        async def run_agent(agent: WorkflowAgent) -> str:
            try:
                return await self._chat(
                    f"You are a specialized AI agent with the role: {agent.role}. "
                    "Work collaboratively and professionally.",
                    f"You are {agent.role}. The supervisor has assigned you this "
                    f'task: "{task}"\n\n'
                    f"Supervisor instructions: {supervision}\n\n"
                    "Complete your part of the task.",
                )
            except AIError as e:
                logger.error(f"Agent {agent.id} failed: {e.message}")
                return f"Error: {e.message}"

        outputs = await asyncio.gather(*(run_agent(agent) for agent in agents))
        return {agent.id: output for agent, output in zip(agents, outputs, strict=True)}

    async def execute_rag_workflow(
        self, query: str, documents: list[str], context: str | None = None
    ) -> RAGWorkflowResult:
        ranked = sorted(
            documents, key=lambda doc: calculate_relevance(query, doc), reverse=True
        )
        relevant = ranked[:RAG_TOP_DOCUMENTS]

        cited = "\n\n".join(f"[{i + 1}] {doc}" for i, doc in enumerate(relevant))
        prompt = f"Relevant documents:\n{cited}"
        if context:
            prompt = f"Context: {context}\n\n{prompt}"

        answer = await self._chat(
            "You are a knowledgeable assistant. Use the provided documents to "
            "answer questions accurately. Cite your sources.",
            f"{prompt}\n\nQuestion: {query}",
        )
        return RAGWorkflowResult(answer=answer, sources=relevant)

    async def execute_map_reduce_workflow(
        self,
        items: list[Any],
        map_function: Callable[[Any], Awaitable[str]],
        reduce_prompt: str,
    ) -> MapReduceResult:
        async def map_item(index: int, item: Any) -> str:
            try:
                return await map_function(item)
            except Exception as e:
                logger.error(f"Map phase error for item {index}: {e}")
                return f"Error processing item {index}: {e}"

        results = list(
            await asyncio.gather(*(map_item(i, item) for i, item in enumerate(items)))
        )

        listing = "\n\n".join(f"Result {i + 1}: {r}" for i, r in enumerate(results))
        summary = await self._chat(
            "You are an AI assistant specializing in data analysis and summarization.",
            f"{reduce_prompt}\n\nResults to analyze:\n{listing}",
        )
        return MapReduceResult(results=results, summary=summary)

    async def execute_batch_workflow(
        self,
        items: list[Any],
        processor: Callable[[Any], Awaitable[str]],
        batch_size: int = 5,
        delay: float = 1.0,
    ) -> list[str]:
        """Process `items` in order, at most `batch_size` at a time"""
        if batch_size < 1:
            raise AIError(
                AIErrorCode.INVALID_REQUEST,
                "batch_size must be positive",
                {"batchSize": batch_size},
            )

        results: list[str] = []
        for start in range(0, len(items), batch_size):
            batch = items[start : start + batch_size]
            results.extend(await asyncio.gather(*(processor(item) for item in batch)))
            if start + batch_size < len(items):
                await asyncio.sleep(delay)
        return results

    async def execute_structured_output_workflow(
        self,
        prompt: str,
        schema: dict[str, Any],
        validator: Callable[[Any], bool] | None = None,
    ) -> Any:
        """
        Ask for JSON matching `schema` and return the parsed value.

        Raises:
            AIError: PARSING_ERROR when the reply is not JSON or the
                validator rejects it
        """
        content = await self._chat(
            "You are an AI assistant that provides structured data responses. "
            "Always respond with valid JSON.",
            f"{prompt}\n\nPlease respond with valid JSON that matches this "
            f"schema:\n{json.dumps(schema, indent=2)}",
        )

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"Structured output parsing error: {e}")
            raise AIError(
                AIErrorCode.PARSING_ERROR,
                f"Failed to parse structured response: {e}",
                content,
            ) from e

        if validator is not None and not validator(parsed):
            logger.error("Structured output failed validation")
            raise AIError(
                AIErrorCode.PARSING_ERROR,
                "Failed to parse structured response: "
                "Response does not match validation criteria",
                content,
            )
        return parsed

    async def execute_hitl_workflow(
        self, task: str, human_callback: HumanCallback, max_attempts: int = 3
    ) -> str:
        """Refine the answer with human feedback until it is approved"""
        current = await self._chat(
            "You are a collaborative AI assistant working with a human. Provide "
            "high-quality responses that can be reviewed and refined.",
            task,
        )

        for attempt in range(max_attempts):
            decision = await human_callback(current, {"attempt": attempt + 1})
            if decision.approved:
                return current

            if decision.feedback and attempt < max_attempts - 1:
                current = await self._chat(
                    "You are improving your response based on human feedback. "
                    "Address the concerns raised.",
                    "Please improve your previous response based on this feedback: "
                    f'"{decision.feedback}"\n\n'
                    f"Original task: {task}\n"
                    f"Previous response: {current}",
                )

        return current

    async def execute_conversation_flow(
        self,
        conversation_id: str,
        message: str,
        max_history: int = DEFAULT_MAX_HISTORY,
        system_prompt: str = DEFAULT_CONVERSATION_PROMPT,
    ) -> str:
        history = self._conversation_memory.get(conversation_id, [])
        if not history:
            history.append(AIMessage("system", system_prompt))

        history.append(AIMessage("user", message))
        # System prompt plus the newest max_history messages
        if len(history) > max_history + 1:
            history = [history[0], *history[-max_history:]]

        response = await self.service.send_messages(list(history))
        history.append(AIMessage("assistant", response.content))
        self._conversation_memory[conversation_id] = history
        return response.content

    def clear_conversation_memory(self, conversation_id: str) -> None:
        self._conversation_memory.pop(conversation_id, None)

    def get_conversation_history(self, conversation_id: str) -> list[AIMessage]:
        return list(self._conversation_memory.get(conversation_id, []))
