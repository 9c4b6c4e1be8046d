"""Interactive chat session handler."""

from __future__ import annotations

import asyncio
from typing import Callable

from rich.console import Console

from chatrelay.cli.output import OutputFormatter
from chatrelay.errors import RelayError
from chatrelay.orchestrator.core import TurnOrchestrator, TurnRequest
from chatrelay.relay.sink import ClientFrame, RelaySink
from chatrelay.session.store import ConversationStore
from chatrelay.tools.registry import ToolRegistry


class ConsoleSink(RelaySink):
    """Relay sink that prints each delta to a rich console as it arrives."""

    def __init__(self, console: Console) -> None:
        super().__init__()
        self.console = console

    async def _send(self, frame: ClientFrame) -> None:
        if frame.finished:
            self.console.print()
            return
        if frame.error:
            self.console.print(frame.content, end="", style="red", markup=False, soft_wrap=True)
        else:
            self.console.print(frame.content, end="", markup=False, soft_wrap=True)


OrchestratorFactory = Callable[[RelaySink], TurnOrchestrator]


class ChatHandler:
    """
    Manages the interactive chat loop.

    Each user message gets a fresh orchestrator (built by *factory*) bound to
    a ``ConsoleSink``.  Ctrl-C while a reply is streaming stops that turn;
    Ctrl-C at the prompt exits.
    """

    def __init__(
        self,
        factory: OrchestratorFactory,
        store: ConversationStore,
        registry: ToolRegistry,
        conversation_id: str,
        console: Console | None = None,
    ) -> None:
        self.factory = factory
        self.store = store
        self.registry = registry
        self.conversation_id = conversation_id
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self._running = True

    async def handle_command(self, command: str) -> bool:
        """
        Handle inline commands. Returns True if the command was handled.
        """
        cmd = command.strip().split(None, 1)[0].lower()

        if cmd == "/quit":
            self._running = False
            self.console.print("[dim]Goodbye.[/dim]")
            return True

        if cmd == "/history":
            turns = await self.store.read_history(self.conversation_id)
            self.formatter.format_history(turns)
            return True

        if cmd == "/tools":
            self.formatter.format_tool_list(self.registry.list())
            return True

        if cmd == "/help":
            self.console.print(
                "  [bold]Commands:[/bold]\n"
                "  /quit     - Exit the chat\n"
                "  /history  - Show this conversation\n"
                "  /tools    - List available tools\n"
                "  /help     - Show this help\n"
            )
            return True

        return False

    async def handle_input(self, user_input: str) -> None:
        """Run one turn, streaming the reply to the console."""
        orchestrator = self.factory(ConsoleSink(self.console))
        try:
            outcome = await orchestrator.run(
                TurnRequest(self.conversation_id, user_input)
            )
        except asyncio.CancelledError:
            # Ctrl-C cancels the running task; the orchestrator has already
            # persisted the partial reply as stopped.
            self.console.print("[yellow]Stopped.[/yellow]")
            return
        except RelayError as e:
            self.console.print(f"\n[red]Error:[/red] {e}")
            return

        if outcome.tool_results:
            for record, result in outcome.tool_results:
                status = "[green]OK[/green]" if result.success else "[red]FAILED[/red]"
                self.console.print(f"  [dim][{record.name}][/dim] {status}")

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            "[bold]ChatRelay[/bold]\n"
            f"[dim]Conversation {self.conversation_id}. "
            "Type /help for commands, /quit to exit.[/dim]\n"
        )

        while self._running:
            try:
                user_input = await asyncio.get_event_loop().run_in_executor(
                    None, lambda: input("you> ").strip()
                )
            except (EOFError, KeyboardInterrupt, asyncio.CancelledError):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                if await self.handle_command(user_input):
                    continue

            self.console.print("[dim]assistant>[/dim] ", end="")
            await self.handle_input(user_input)
