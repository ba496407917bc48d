"""
Command Line Interface
======================
Manage model configurations and send prompts from a terminal.

Usage:
    editor-ai --discover
    editor-ai --add-preset openai-gpt4 --set-default openai-gpt4
    editor-ai "Explain this stack trace" --stream
"""

import argparse
import asyncio
import getpass
import logging
import sys

from .configuration import ModelConfigurationService, get_preset_configurations
from .credentials import configure_credentials_interactive, set_api_key
from .errors import AIError
from .providers import create_provider
from .service import AIServiceManager
from .settings import load_user_config, setup_logging
from .storage import SQLiteKeyValueStorage

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="editor-ai", description="Editor AI model manager and chat CLI"
    )
    parser.add_argument("prompt", nargs="?", help="The prompt to send")
    parser.add_argument("--model", "-m", help="Model configuration to use")
    parser.add_argument(
        "--stream", "-s", action="store_true", help="Stream the response"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument(
        "--configure",
        nargs="?",
        const="",
        metavar="PROVIDER",
        help="Store an API key for PROVIDER (all providers when omitted)",
    )
    parser.add_argument(
        "--discover", action="store_true", help="Discover and add local models"
    )
    parser.add_argument(
        "--list-presets", action="store_true", help="List configuration presets"
    )
    parser.add_argument(
        "--list-models", action="store_true", help="List configured models"
    )
    parser.add_argument("--add-preset", metavar="ID", help="Add a preset configuration")
    parser.add_argument("--set-default", metavar="ID", help="Set the default model")
    return parser


def configure_provider(provider: str) -> None:
    api_key = getpass.getpass(f"Enter API key for {provider}: ")
    if not api_key:
        print("No key entered.")
    elif set_api_key(provider, api_key):
        print(f"Saved {provider} credentials")
    else:
        print(f"Failed to save {provider} credentials")


def print_presets() -> None:
    print("\nModel Presets:")
    print("=" * 60)
    for preset in get_preset_configurations():
        print(f"\n{preset.id}:")
        print(f"  Name: {preset.name}")
        print(f"  Provider: {preset.provider} ({preset.type})")
        print(f"  Model: {preset.model}")
        print(f"  Endpoint: {preset.endpoint}")


def print_models(config_service: ModelConfigurationService) -> None:
    configs = config_service.get_all()
    if not configs:
        print("No models configured. Try --discover or --add-preset.")
        return

    default = config_service.get_default()
    print("\nConfigured Models:")
    print("=" * 60)
    for config in configs:
        marker = " (default)" if default and default.id == config.id else ""
        state = "" if config.enabled else " [disabled]"
        print(f"\n{config.id}{marker}{state}:")
        print(f"  Name: {config.name}")
        print(f"  Provider: {config.provider}")
        print(f"  Model: {config.model}")
        print(f"  Endpoint: {config.endpoint}")


async def discover(config_service: ModelConfigurationService) -> None:
    discovered = await config_service.discover_local()
    if not discovered:
        print("No local model servers found.")
        return

    for config in discovered:
        if config_service.get(config.id) is not None:
            print(f"  {config.id} (already configured)")
            continue
        try:
            await config_service.add(config)
            print(f"  Added {config.id}")
        except AIError as e:
            print(f"  Failed to add {config.id}: {e.message}")


def build_service(config_service: ModelConfigurationService) -> AIServiceManager:
    """Service manager with a provider registered for every enabled model"""
    service = AIServiceManager(config_service)
    for config in config_service.get_all():
        if not config.enabled:
            continue
        try:
            provider = create_provider(
                config, api_key=config_service.resolve_api_key(config)
            )
        except AIError as e:
            logger.warning(f"Skipping {config.id}: {e.message}")
            continue
        service.register_provider(provider)
    return service


async def send_prompt(
    config_service: ModelConfigurationService,
    prompt: str,
    model: str | None,
    stream: bool,
) -> None:
    service = build_service(config_service)
    try:
        if model:
            service.switch_model(model)

        if stream:
            async for chunk in service.send_chat_message_stream(prompt):
                print(chunk, end="", flush=True)
            print()
            return

        response = await service.send_chat_message(prompt)
        print(f"\n[{response.metadata.model}] ({response.metadata.processing_time:.0f}ms)")
        print("-" * 60)
        print(response.content)
        print("-" * 60)
        print(f"Tokens: {response.metadata.tokens}")
    finally:
        await service.dispose()


async def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, load_user_config())

    if args.configure is not None:
        if args.configure:
            configure_provider(args.configure.lower())
        else:
            configure_credentials_interactive()
        return 0

    if args.list_presets:
        print_presets()
        return 0

    config_service = ModelConfigurationService(storage=SQLiteKeyValueStorage())
    try:
        if args.discover:
            print("\nDiscovering local models...")
            await discover(config_service)
        if args.add_preset:
            config = config_service.create_from_preset(args.add_preset)
            await config_service.add(config)
            print(f"Added {config.id}")
        if args.set_default:
            await config_service.set_default(args.set_default)
            print(f"Default model: {args.set_default}")
        if args.list_models:
            print_models(config_service)

        if args.prompt:
            await send_prompt(config_service, args.prompt, args.model, args.stream)
        elif not (args.discover or args.add_preset or args.set_default or args.list_models):
            parser.print_help()
    except AIError as e:
        print(f"\nError: {e.message}")
        return 1
    finally:
        config_service.dispose()
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
