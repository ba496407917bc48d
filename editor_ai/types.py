"""
Core Types
==========
Provider-agnostic request and response shapes shared by every adapter.
"""

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

ROLES = ("user", "assistant", "system")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds"""
    return int(time.time() * 1000)


class ActionType(str, Enum):
    """Actions a ReAct agent may request"""

    SEARCH = "search"
    CODE_ANALYSIS = "code_analysis"
    FILE_READ = "file_read"
    WEB_SEARCH = "web_search"
    TOOL_CALL = "tool_call"


class CompletionItemKind(IntEnum):
    TEXT = 1
    METHOD = 2
    FUNCTION = 3
    CONSTRUCTOR = 4
    FIELD = 5
    VARIABLE = 6
    CLASS = 7
    INTERFACE = 8
    MODULE = 9
    PROPERTY = 10
    UNIT = 11
    VALUE = 12
    ENUM = 13
    KEYWORD = 14
    SNIPPET = 15
    COLOR = 16
    FILE = 17
    REFERENCE = 18
    FOLDER = 19
    ENUM_MEMBER = 20
    CONSTANT = 21
    STRUCT = 22
    EVENT = 23
    OPERATOR = 24
    TYPE_PARAMETER = 25


@dataclass(frozen=True)
class CursorPosition:
    line: int
    column: int


@dataclass(frozen=True)
class WorkspaceInfo:
    root_path: str | None = None
    language: str | None = None
    framework: str | None = None


@dataclass(frozen=True)
class GitInfo:
    branch: str | None = None
    recent_commits: tuple[str, ...] = ()


@dataclass(frozen=True)
class CodeContext:
    """Read-only snapshot of editor state supplied by the editor"""

    active_file: str | None = None
    selected_text: str | None = None
    cursor_position: CursorPosition | None = None
    open_files: tuple[str, ...] = ()
    workspace_info: WorkspaceInfo | None = None
    git_info: GitInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        """camelCase dictionary without empty fields, used inside prompts"""
        data: dict[str, Any] = {}
        if self.active_file:
            data["activeFile"] = self.active_file
        if self.selected_text:
            data["selectedText"] = self.selected_text
        if self.cursor_position:
            data["cursorPosition"] = {
                "line": self.cursor_position.line,
                "column": self.cursor_position.column,
            }
        if self.open_files:
            data["openFiles"] = list(self.open_files)
        if self.workspace_info:
            workspace = {
                "rootPath": self.workspace_info.root_path,
                "language": self.workspace_info.language,
                "framework": self.workspace_info.framework,
            }
            data["workspaceInfo"] = {k: v for k, v in workspace.items() if v}
        if self.git_info:
            git: dict[str, Any] = {}
            if self.git_info.branch:
                git["branch"] = self.git_info.branch
            if self.git_info.recent_commits:
                git["recentCommits"] = list(self.git_info.recent_commits)
            data["gitInfo"] = git
        return data


@dataclass
class AIAction:
    """Action chosen by a ReAct step"""

    type: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    result: Any = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "description": self.description,
            "parameters": self.parameters,
        }
        if self.result is not None:
            data["result"] = self.result
        return data


@dataclass
class ActionObservation:
    """What the action executor reports back to the reasoning loop"""

    result: Any
    success: bool
    insights: list[str] = field(default_factory=list)


@dataclass
class ReActStep:
    thought: str
    action: AIAction
    observation: ActionObservation


@dataclass
class AIMessage:
    """A single chat message"""

    role: str  # 'user', 'assistant', 'system'
    content: str
    context: CodeContext | None = None
    timestamp: int = field(default_factory=now_ms)
    reasoning: str | None = None
    actions: list[AIAction] | None = None

    def to_wire(self) -> dict[str, str]:
        """Role/content pair as every chat backend expects it"""
        return {"role": self.role, "content": self.content}


@dataclass
class ResponseMetadata:
    model: str = "unknown"
    tokens: int = 0
    processing_time: float = 0.0  # milliseconds


@dataclass
class AIResponse:
    """Normalized output of every provider"""

    content: str
    confidence: float = 0.8
    reasoning: str | None = None
    sources: list[str] | None = None
    actions: list[Any] | None = None
    metadata: ResponseMetadata = field(default_factory=ResponseMetadata)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "content": self.content,
            "confidence": self.confidence,
            "metadata": {
                "model": self.metadata.model,
                "tokens": self.metadata.tokens,
                "processingTime": self.metadata.processing_time,
            },
        }
        if self.reasoning is not None:
            data["reasoning"] = self.reasoning
        if self.sources is not None:
            data["sources"] = self.sources
        return data


@dataclass
class AIConversation:
    """Conversation owned by the service manager's in-memory map"""

    id: str
    model_id: str
    messages: list[AIMessage] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class AICapabilities:
    chat: bool = True
    code_completion: bool = True
    code_refactoring: bool = True
    code_analysis: bool = True
    chain_of_thought: bool = True
    react: bool = True
    rag: bool = True
    streaming: bool = True
    context_window: int = 4096


@dataclass
class CompletionItem:
    text: str
    insert_text: str
    kind: CompletionItemKind = CompletionItemKind.TEXT
    confidence: float = 0.8
    detail: str | None = None
    documentation: str | None = None
    range: tuple[int, int, int, int] | None = None


@dataclass
class RAGDocument:
    """Document returned by the context provider's similarity search"""

    id: str
    content: str
    path: str
    language: str = ""
    doc_type: str = "code"  # 'code', 'documentation', 'config', 'test'
    last_modified: int = 0
    size: int = 0
    embedding: list[float] | None = None
