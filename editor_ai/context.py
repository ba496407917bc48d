"""
Editor Collaborators
====================
Abstract seams the host editor implements: a context provider for editor
state and retrieval, and an action executor for ReAct steps.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from .types import AIAction, ActionObservation, CodeContext, RAGDocument

logger = logging.getLogger(__name__)


class ContextProvider(ABC):
    """Source of editor context, similar documents and embeddings"""

    @abstractmethod
    async def extract_context(self) -> CodeContext:
        pass

    @abstractmethod
    async def search_similar(self, query: str, limit: int = 10) -> list[RAGDocument]:
        pass

    @abstractmethod
    async def generate_embedding(self, text: str) -> list[float]:
        pass


class StaticContextProvider(ContextProvider):
    """
    In-memory context provider.

    Holds a fixed CodeContext and a document list; similarity search ranks
    documents by how many query terms they contain. Embeddings are the
    hashed pseudo-embeddings used by the advanced layer.
    """

    def __init__(
        self,
        context: CodeContext | None = None,
        documents: list[RAGDocument] | None = None,
        dimensions: int = 384,
    ) -> None:
        self.context = context or CodeContext()
        self.documents = list(documents or [])
        self.dimensions = dimensions

    async def extract_context(self) -> CodeContext:
        return self.context

    async def search_similar(self, query: str, limit: int = 10) -> list[RAGDocument]:
        terms = [t for t in query.lower().split() if t]
        if not terms:
            return self.documents[:limit]

        scored = []
        for doc in self.documents:
            text = doc.content.lower()
            score = sum(text.count(term) for term in terms)
            if score > 0:
                scored.append((score, doc))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [doc for _, doc in scored[:limit]]

    async def generate_embedding(self, text: str) -> list[float]:
        from .advanced.providers import pseudo_embedding

        return pseudo_embedding(text, self.dimensions)


class ActionExecutor(ABC):
    """Runs the action chosen by a ReAct step"""

    @abstractmethod
    async def execute(
        self, action: AIAction, context: CodeContext | None = None
    ) -> ActionObservation:
        pass


class EchoActionExecutor(ActionExecutor):
    """Default executor: reports the action as done without side effects"""

    async def execute(
        self, action: AIAction, context: CodeContext | None = None
    ) -> ActionObservation:
        logger.debug(f"Executing action {action.type}")
        return ActionObservation(
            result=(
                f"Executed {action.type} with parameters "
                f"{json.dumps(action.parameters)}"
            ),
            success=True,
            insights=[f"Action {action.type} completed successfully"],
        )


def context_json(context: CodeContext | None) -> str:
    """Indented JSON rendering of a context for prompts"""
    data: dict[str, Any] = context.to_dict() if context else {}
    return json.dumps(data, indent=2)
