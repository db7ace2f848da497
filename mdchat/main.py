"""
Command-line entry point: run a turn of a markdown conversation, list models
or import a ChatGPT export.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

from mdchat.chat.chat_orchestrator import ChatOrchestrator
from mdchat.chat.chatgpt_import import import_export
from mdchat.chat.link_resolver import LocalFileSystem
from mdchat.chat.logging_utils import set_module_features
from mdchat.chat.markdown_codec import DEFAULT_ROLE_FORMATTER, ChatMarkdownCodec
from mdchat.chat.models import StreamDelta
from mdchat.clients import LLMClient
from mdchat.config import Configuration

logger = logging.getLogger("mdchat")

# Module-to-logger mapping; children inherit the level set on these parents
MODULE_LOGGERS = {
    "chat": ["mdchat.chat", "mdchat.tools"],
    "clients": ["mdchat.clients"],
}


def configure_logging(logging_config: dict[str, Any]) -> None:
    """
    Apply the ``logging`` section: global level and format, per-module levels
    and the feature flags checked by ``should_log_feature``.
    """
    level_map = logging.getLevelNamesMapping()

    global_level = logging_config.get("level", "WARNING")
    root = logging.getLogger()
    root.setLevel(level_map.get(global_level, logging.WARNING))
    if "format" in logging_config:
        for handler in root.handlers:
            handler.setFormatter(logging.Formatter(logging_config["format"]))

    features: dict[str, dict[str, bool]] = {}
    for module_name, module_config in logging_config.get("modules", {}).items():
        if not isinstance(module_config, dict):
            continue
        level_value = level_map.get(module_config.get("level", global_level), logging.WARNING)
        for logger_name in MODULE_LOGGERS.get(module_name, []):
            logging.getLogger(logger_name).setLevel(level_value)
        features[module_name] = module_config.get("enable_features", {}) or {}

    set_module_features(features)


def _on_logging_config_change(new_config: dict[str, Any]) -> None:
    """Reapply logging settings after the runtime configuration changes."""
    logging_config = new_config.get("logging", {})
    if logging_config:
        configure_logging(logging_config)
        logger.info("Logging configuration updated")


def _stream_to_stdout(delta: StreamDelta) -> bool:
    sys.stdout.write(delta.content)
    sys.stdout.flush()
    return True


def _print_status(message: str) -> None:
    if message:
        print(f"[{message}]", file=sys.stderr)


async def run_chat(config: Configuration, path: Path, stream: bool, model: str | None) -> int:
    """Complete one turn of the conversation in ``path`` and write it back."""
    async with LLMClient.from_configuration(config) as llm_client:
        orchestrator = ChatOrchestrator(
            config,
            llm_client,
            status_callback=_print_status,
            files=LocalFileSystem(path.resolve().parent),
        )
        session = orchestrator.load_markdown(path.read_text(encoding="utf-8"), str(path.resolve()))
        if model:
            session.set_model(model)
        if not stream:
            session.options.stream = False

        result = await orchestrator.complete_chat_response(_stream_to_stdout if session.options.stream else None)
        if not result.ok:
            print(result.error, file=sys.stderr)
            return 1

        if not session.options.stream and result.message is not None:
            print(result.message.content)
        else:
            print()
        path.write_text(orchestrator.markdown, encoding="utf-8")
        return 0


async def run_models(config: Configuration) -> int:
    async with LLMClient.from_configuration(config) as llm_client:
        models = await llm_client.list_models()
    if not models:
        print("No models returned by the endpoint", file=sys.stderr)
        return 1
    for name in models:
        print(name)
    return 0


def run_import(config: Configuration, export: Path, folder: Path) -> int:
    """Write every conversation of a ChatGPT export as a markdown chat in ``folder``."""
    chat_conf = config.get_chat_service_config()
    codec = ChatMarkdownCodec(
        role_formatter=chat_conf.get("role_formatter", DEFAULT_ROLE_FORMATTER),
        use_yaml_front_matter=bool(chat_conf.get("use_yaml_front_matter", False)),
    )
    written = import_export(export.read_text(encoding="utf-8"), folder, codec, config.default_options())
    print(f"Imported {len(written)} conversations into {folder}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mdchat", description="Chat with a language model inside a markdown file.")
    parser.add_argument("--config", help="Path to a configuration YAML file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    chat = subparsers.add_parser("chat", help="Complete the next assistant turn of a conversation file")
    chat.add_argument("file", type=Path)
    chat.add_argument("--no-stream", action="store_true", help="Wait for the whole reply instead of streaming")
    chat.add_argument("--model", help="Override the model stored in the document")

    subparsers.add_parser("models", help="List the models of the active endpoint")

    importer = subparsers.add_parser("import", help="Convert a ChatGPT export into markdown chats")
    importer.add_argument("export", type=Path, help="conversations.json from a ChatGPT data export")
    importer.add_argument("--out", type=Path, default=Path("."), help="Folder to write the chats to")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    try:
        config = Configuration(config_path=args.config)
    except (OSError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    configure_logging(config.get_logging_config())
    config.subscribe_to_changes(_on_logging_config_change)

    try:
        if args.command == "chat":
            return asyncio.run(run_chat(config, args.file, not args.no_stream, args.model))
        if args.command == "import":
            return run_import(config, args.export, args.out)
        return asyncio.run(run_models(config))
    except (OSError, ValueError) as e:
        # unreadable file, bad export, missing API key or bad provider selection
        print(str(e), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


def cli_main() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli_main()
