"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from chatrelay.llm.types import Turn, TurnStatus
from chatrelay.tools.base import Tool

ROLE_COLORS = {
    "user": "blue",
    "assistant": "green",
    "tool": "cyan",
    "system": "dim",
}

STATUS_COLORS = {
    TurnStatus.COMPLETE: "green",
    TurnStatus.ERROR: "red",
    TurnStatus.STOPPED: "yellow",
}


class OutputFormatter:
    """Rich-based output formatting for the chatrelay CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_tool_list(self, tools: list[Tool], disabled: list[str] | None = None) -> None:
        if not tools:
            self.console.print("[dim]No tools registered.[/dim]")
            return

        disabled_set = set(disabled or [])
        table = Table(title="Registered Tools", show_lines=True)
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("State", no_wrap=True)
        table.add_column("Description")

        for t in tools:
            state = Text("disabled", style="red") if t.name in disabled_set else Text("enabled", style="green")
            table.add_row(t.name, state, t.description)

        self.console.print(table)

    def format_tool_info(self, tool: Tool) -> None:
        self.console.print(Panel(tool.description, title=f"Tool: {tool.name}"))
        schema_json = json.dumps(tool.parameters, indent=2)
        self.console.print(Syntax(schema_json, "json", theme="monokai"))

    def format_conversation_list(self, conversations: list[dict]) -> None:
        if not conversations:
            self.console.print("[dim]No conversations found.[/dim]")
            return

        table = Table(title="Conversations")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Title")
        table.add_column("Updated", no_wrap=True)

        for c in conversations:
            table.add_row(
                c.get("conversation_id", "?"),
                c.get("title") or "[dim](untitled)[/dim]",
                c.get("updated_at", "?"),
            )

        self.console.print(table)

    def format_history(self, turns: list[Turn]) -> None:
        if not turns:
            self.console.print("[dim]No turns.[/dim]")
            return

        for turn in turns:
            ts = turn.created_at.strftime("%H:%M:%S")
            color = ROLE_COLORS.get(turn.role, "white")
            status = ""
            if turn.status != TurnStatus.COMPLETE:
                status_color = STATUS_COLORS.get(turn.status, "white")
                status = f" [{status_color}]({turn.status})[/{status_color}]"
            self.console.print(
                f"  [{color}]{ts} {turn.role:>9s}[/{color}]{status}  ", end=""
            )
            self.console.print(turn.content[:200], markup=False)

    def format_config(self, config: dict) -> None:
        self.console.print(Syntax(json.dumps(config, indent=2, default=str), "json", theme="monokai"))
