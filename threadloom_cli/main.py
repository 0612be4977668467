#!/usr/bin/env python3
"""
Threadloom command line.

Usage:
    threadloom chat "Summarize https://gitlab.com/acme/widgets" --model=google:gemini-2.0-flash
    threadloom chat "Add CSV export" --mode=ticket
    threadloom models
    threadloom validate

``chat`` runs one turn against an in-memory thread (optionally seeded with
``--history`` as a JSON list of {role, content}) and streams the reply to
stdout.
"""

import asyncio
import json
import logging
import sys
from typing import Optional

import fire

from agent.errors import ThreadloomError
from agent.orchestrator import ChatOrchestrator
from agent.settings import load_environment, load_settings, validate_settings
from agent.storage import InMemoryStorage
from providers import registry
from tools.tool_gateway import ToolGateway

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S',
        stream=sys.stderr,
    )
    for name in ("openai", "httpx", "httpcore", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def _chat(message: str, model: Optional[str], mode: str, history: Optional[str],
                no_prefetch: bool) -> int:
    settings = load_settings()
    storage = InMemoryStorage()
    thread = await storage.create_thread(title=message[:60] or "New chat")
    if history:
        for item in json.loads(history):
            await storage.create_message(thread_id=thread.id, role=item["role"],
                                         content=item["content"],
                                         pinned=bool(item.get("pinned", False)))
    await storage.create_message(thread_id=thread.id, role="user", content=message)

    gateway = ToolGateway()
    orchestrator = ChatOrchestrator(storage, settings=settings, gateway=gateway)
    try:
        async for fragment in orchestrator.stream_reply(
            thread.id, model=model, mode=mode, allow_prefetch=not no_prefetch,
        ):
            sys.stdout.write(fragment)
            sys.stdout.flush()
        sys.stdout.write("\n")
    except ThreadloomError as e:
        print(f"\nError ({e.kind}): {e.message}", file=sys.stderr)
        return 1
    finally:
        await gateway.close()
    return 0


def chat(message: str, model: Optional[str] = None, mode: str = "assistant",
         history: Optional[str] = None, no_prefetch: bool = False, verbose: bool = False) -> int:
    """Send one message and stream the reply."""
    setup_logging(verbose)
    load_environment()
    return asyncio.run(_chat(message, model, mode, history, no_prefetch))


def models() -> None:
    """List the model catalog."""
    load_environment()
    default = registry.default_specifier(load_settings())
    for row in registry.list_models():
        flags = []
        if not row["enabled"]:
            flags.append("disabled")
        if row["tool_calling"]:
            flags.append("tools")
        if row["specifier"] == default:
            flags.append("default")
        suffix = f"  [{', '.join(flags)}]" if flags else ""
        print(f"{row['specifier']:<55} {row['label']}{suffix}")


def validate() -> int:
    """Check configuration and credentials."""
    load_environment()
    rows = validate_settings(load_settings())
    failed = False
    for name, ok, msg in rows:
        print(f"{'ok ' if ok else '-- '} {name:<22} {msg}")
        if not ok and name == "INFERENCE_PROVIDER":
            failed = True
    return 1 if failed else 0


def main():
    fire.Fire({
        "chat": chat,
        "models": models,
        "validate": validate,
    })


if __name__ == "__main__":
    main()
