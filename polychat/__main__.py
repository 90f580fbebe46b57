"""CLI entry point for polychat."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from polychat.config import load_config
from polychat.errors import ChatError

logger = logging.getLogger(__name__)


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the FastAPI server."""
    import uvicorn

    from polychat.api.server import create_app

    config = load_config(Path(args.config) if args.config else None)
    host = args.host or config.api.host
    port = args.port or config.api.port

    try:
        app = create_app(config=config)
    except ChatError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs: http://{host}:{port}/docs\n")
    uvicorn.run(app, host=host, port=port)


def cmd_chat(args: argparse.Namespace) -> None:
    """Send one message through the orchestrator and print the reply."""
    import asyncio

    from polychat.chat.orchestrator import ChatOrchestrator
    from polychat.conversations.store import InMemoryConversationStore
    from polychat.llm.backend import CompletionOptions, create_registry

    config = load_config(Path(args.config) if args.config else None)

    async def _run() -> int:
        registry = create_registry(config)
        orchestrator = ChatOrchestrator(
            store=InMemoryConversationStore(),
            registry=registry,
            options=CompletionOptions(
                max_tokens=args.max_tokens or config.llm.max_tokens,
                temperature=config.llm.temperature,
            ),
            fallback_enabled=config.llm.fallback_enabled,
        )
        try:
            turn = await orchestrator.send_message(
                conversation_id=None,
                user_text=args.message,
                model_id=args.model,
            )
        finally:
            await registry.close()

        meta = turn.assistant_message.metadata or {}
        print(turn.assistant_message.content)
        print(
            f"\n[{meta.get('model')}] prompt={meta.get('prompt_tokens')} "
            f"completion={meta.get('completion_tokens')} total={meta.get('total_tokens')}"
        )
        return 0

    try:
        sys.exit(asyncio.run(_run()))
    except ChatError as e:
        print(f"Error ({e.kind.value}): {e.message}", file=sys.stderr)
        sys.exit(1)


def cmd_models(args: argparse.Namespace) -> None:
    """Print the model catalog."""
    from polychat.llm.models import list_models

    for m in list_models():
        marker = "*" if m["isPrimary"] else " "
        print(f" {marker} {m['id']:<20} {m['name']}  {m['description']}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="polychat",
        description="Multi-provider LLM chat backend (Gemini, Claude, GLM)",
    )
    parser.add_argument("--config", help="Path to config.yaml", default=None)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Set logging level (default: WARNING)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # serve command
    p_serve = sub.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--host", help="Bind host", default=None)
    p_serve.add_argument("--port", help="Bind port", type=int, default=None)
    p_serve.set_defaults(func=cmd_serve)

    # chat command
    p_chat = sub.add_parser("chat", help="Send a single message and print the reply")
    p_chat.add_argument("message", help="Message text")
    p_chat.add_argument("--model", help="Model id (default: primary)", default=None)
    p_chat.add_argument("--max-tokens", type=int, default=None)
    p_chat.set_defaults(func=cmd_chat)

    # models command
    p_models = sub.add_parser("models", help="List available models")
    p_models.set_defaults(func=cmd_models)

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
    )
    args.func(args)


if __name__ == "__main__":
    main()
