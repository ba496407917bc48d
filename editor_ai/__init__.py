"""
Editor AI - Model Orchestration for Code Editors
================================================

Configures local and cloud model backends, routes chat, completion,
refactoring and reasoning requests through one service manager, and adds
an advanced layer with categorized vector stores and retrieval.

Security Features:
- API keys live in the keyring or an encrypted file, never in the config
- Prompts and keys are sanitized before logging

Example Usage:
    >>> from editor_ai import AIServiceManager, ModelConfigurationService
    >>> from editor_ai.providers import create_provider
    >>>
    >>> config_service = ModelConfigurationService()
    >>> service = AIServiceManager(config_service)
    >>> for config in config_service.get_all():
    ...     service.register_provider(
    ...         create_provider(config, config_service.resolve_api_key(config))
    ...     )
    >>>
    >>> import asyncio
    >>> response = asyncio.run(service.send_chat_message("Explain this diff"))
    >>> print(response.content)
"""

__version__ = "1.0.0"

from .configuration import (
    ModelConfiguration,
    ModelConfigurationService,
    create_from_preset,
    get_preset_configurations,
)
from .context import (
    ActionExecutor,
    ContextProvider,
    EchoActionExecutor,
    StaticContextProvider,
)
from .credentials import (
    CredentialManager,
    configure_credentials_interactive,
    get_api_key,
    get_credential_manager,
    set_api_key,
)
from .errors import AIError, AIErrorCode, ErrorHandler
from .events import CancellationToken, CancellationTokenSource, Emitter
from .service import AIServiceManager
from .types import AIMessage, AIResponse, CodeContext
from .workflows import WorkflowService

__all__ = [
    # Version
    "__version__",

    # Credential management
    "get_api_key",
    "set_api_key",
    "get_credential_manager",
    "CredentialManager",
    "configure_credentials_interactive",

    # Configuration
    "ModelConfiguration",
    "ModelConfigurationService",
    "create_from_preset",
    "get_preset_configurations",

    # Errors and events
    "AIError",
    "AIErrorCode",
    "ErrorHandler",
    "CancellationToken",
    "CancellationTokenSource",
    "Emitter",

    # Service
    "AIServiceManager",
    "AIMessage",
    "AIResponse",
    "CodeContext",
    "ContextProvider",
    "StaticContextProvider",
    "ActionExecutor",
    "EchoActionExecutor",
    "WorkflowService",
]
