"""
Main CLI application for chatrelay.

Usage:
    chatrelay chat [--conversation ID] [--profile NAME] [--model NAME]
    chatrelay conversations list|show|delete
    chatrelay tools list
    chatrelay config show
    chatrelay version
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from chatrelay import __version__
from chatrelay.config import ChatRelayConfig, load_config

app = typer.Typer(name="chatrelay", help="ChatRelay - streaming chat relay with tool calls")
conversations_app = typer.Typer(help="Conversation management")
tools_app = typer.Typer(help="Tool management")
config_app = typer.Typer(help="Configuration management")

app.add_typer(conversations_app, name="conversations")
app.add_typer(tools_app, name="tools")
app.add_typer(config_app, name="config")

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "chatrelay.yaml",
        Path.cwd() / "chatrelay.yml",
        Path.home() / ".config" / "chatrelay" / "config.yaml",
        Path.home() / ".chatrelay" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def _build_registry(cfg: ChatRelayConfig, quiz_store=None):
    """Register the built-in tools that are not disabled, then freeze."""
    from chatrelay.session.quizzes import QuizStore
    from chatrelay.tools.quiz import SaveQuizTool
    from chatrelay.tools.registry import ToolRegistry

    registry = ToolRegistry(tool_timeout=cfg.relay.tool_timeout_seconds)
    builtin = [SaveQuizTool(quiz_store or QuizStore(cfg.store.quiz_db))]
    for tool in builtin:
        if tool.name in cfg.tools.disabled:
            continue
        registry.register(tool)
    registry.freeze()
    return registry


async def _open_store(cfg: ChatRelayConfig):
    from chatrelay.session.store import ConversationStore

    store = ConversationStore(cfg.store.history_db)
    await store.init()
    return store


@app.callback()
def main_callback(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
):
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    conversation: Optional[str] = typer.Option(None, "--conversation", help="Resume conversation ID"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    model: Optional[str] = typer.Option(None, help="Override the model name"),
):
    """Start an interactive chat session."""
    from chatrelay.cli.chat import ChatHandler
    from chatrelay.llm.providers.openai_compat import OpenAICompatProvider
    from chatrelay.orchestrator.core import TurnOrchestrator
    from chatrelay.session.quizzes import QuizStore

    overrides = {"llm.model": model} if model else None
    cfg = load_config(_get_config_path(), profile=profile, cli_overrides=overrides)

    async def _run():
        store = await _open_store(cfg)
        quiz_store = QuizStore(cfg.store.quiz_db)
        await quiz_store.init()
        try:
            conversation_id = conversation
            if conversation_id is None:
                conversation_id = await store.create_conversation()
            elif await store.get_conversation(conversation_id) is None:
                console.print(f"[red]Conversation not found:[/red] {conversation_id}")
                raise typer.Exit(1)

            registry = _build_registry(cfg, quiz_store)
            provider = OpenAICompatProvider(
                url=cfg.llm.api_base,
                model=cfg.llm.model,
                api_key=cfg.llm.api_key,
                temperature=cfg.llm.temperature,
                max_tokens=cfg.llm.max_tokens,
                connect_timeout=cfg.llm.connect_timeout_seconds,
                read_timeout=cfg.llm.read_timeout_seconds,
            )

            def factory(sink):
                return TurnOrchestrator(
                    store=store,
                    registry=registry,
                    provider=provider,
                    sink=sink,
                    system_prompt=cfg.llm.system_prompt,
                    extracted_text_prompt=cfg.llm.extracted_text_prompt,
                    error_apology=cfg.relay.error_apology,
                    tool_apology=cfg.relay.tool_apology,
                    empty_reply=cfg.relay.empty_reply,
                )

            handler = ChatHandler(factory, store, registry, conversation_id, console)
            await handler.run_loop()
        finally:
            await quiz_store.close()
            await store.close()

    asyncio.run(_run())


@conversations_app.command("list")
def conversations_list(
    user: Optional[str] = typer.Option(None, "--user", help="Only this user's conversations"),
):
    """List conversations."""

    async def _run():
        from chatrelay.cli.output import OutputFormatter

        store = await _open_store(load_config(_get_config_path()))
        try:
            conversations = await store.list_conversations(user_id=user)
            OutputFormatter(console).format_conversation_list(conversations)
        finally:
            await store.close()

    asyncio.run(_run())


@conversations_app.command("show")
def conversations_show(conversation_id: str = typer.Argument(..., help="Conversation ID")):
    """Show a conversation's turns."""

    async def _run():
        from chatrelay.cli.output import OutputFormatter

        store = await _open_store(load_config(_get_config_path()))
        try:
            meta = await store.get_conversation(conversation_id)
            if meta is None:
                console.print(f"[red]Conversation not found:[/red] {conversation_id}")
                raise typer.Exit(1)
            console.print(f"[bold]{meta['title'] or '(untitled)'}[/bold]")
            turns = await store.read_history(conversation_id)
            OutputFormatter(console).format_history(turns)
        finally:
            await store.close()

    asyncio.run(_run())


@conversations_app.command("delete")
def conversations_delete(conversation_id: str = typer.Argument(..., help="Conversation ID")):
    """Delete a conversation."""

    async def _run():
        store = await _open_store(load_config(_get_config_path()))
        try:
            await store.delete_conversation(conversation_id)
            console.print(f"Deleted conversation: {conversation_id}")
        finally:
            await store.close()

    asyncio.run(_run())


@tools_app.command("list")
def tools_list():
    """List registered tools."""
    from chatrelay.cli.output import OutputFormatter
    from chatrelay.session.quizzes import QuizStore
    from chatrelay.tools.quiz import SaveQuizTool

    cfg = load_config(_get_config_path())
    tools = [SaveQuizTool(QuizStore(cfg.store.quiz_db))]
    OutputFormatter(console).format_tool_list(tools, disabled=cfg.tools.disabled)


@tools_app.command("info")
def tools_info(tool_name: str = typer.Argument(..., help="Tool name")):
    """Show tool details and schema."""
    from chatrelay.cli.output import OutputFormatter

    registry = _build_registry(load_config(_get_config_path()))
    tool = registry.get(tool_name)
    if not tool:
        console.print(f"[red]Tool not found:[/red] {tool_name}")
        raise typer.Exit(1)
    OutputFormatter(console).format_tool_info(tool)


@config_app.command("show")
def config_show(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Show effective config."""
    from chatrelay.cli.output import OutputFormatter

    cfg = load_config(_get_config_path(), profile=profile)
    OutputFormatter(console).format_config(cfg.to_dict())


@app.command()
def version():
    """Show version."""
    console.print(f"chatrelay v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
