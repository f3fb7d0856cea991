#!/usr/bin/env python3
"""Interactive chat CLI for the orchestration service."""

import json
import sys

import httpx
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

MAX_CONFIRMATION_ROUNDS = 10


class ChatCLI:
    """Interactive chat interface that handles confirmation of sensitive function calls."""

    def __init__(self, base_url: str = "http://localhost:8000"):
        """Initialize chat CLI."""
        self.base_url = base_url
        self.history: list[dict] = []
        self.console = Console()
        self.client = httpx.Client(timeout=120.0)

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]Sashi - Interactive Chat[/bold blue]\n"
                "Ask questions or request operations on the backend.\n"
                "Commands: /help, /functions, /toggle <name>, /clear, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print(f"[red]Cannot connect to the service at {self.base_url}.[/red]")
            return

        self.console.print("[green]Connected[/green]\n")

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]")
                command = user_input.strip().lower()

                if command in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif command == "/help":
                    self._show_help()
                    continue
                elif command == "/clear":
                    self.history = []
                    self.console.print("[yellow]Conversation cleared[/yellow]")
                    continue
                elif command == "/functions":
                    self._show_functions()
                    continue
                elif command.startswith("/toggle "):
                    self._toggle_function(user_input.strip().split(maxsplit=1)[1])
                    continue
                elif command == "":
                    continue

                self._run_turn({"inquiry": user_input, "previous": self.history})

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]Goodbye![/yellow]")
            self.client.close()

    def _test_connection(self) -> bool:
        try:
            response = self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _run_turn(self, payload: dict) -> None:
        """Send a turn, then resubmit tool calls for as long as the service asks for confirmation."""
        for _ in range(MAX_CONFIRMATION_ROUNDS):
            response = self._post("/chat", payload)
            if response is None:
                return

            self.history = response.get("history", self.history)
            self._display_response(response)

            if response.get("state") != "awaiting_confirmation":
                return

            tool_calls = [self._confirm(call) for call in response.get("tool_calls", [])]
            payload = {"tools": tool_calls, "previous": self.history}

        self.console.print("[red]Too many confirmation rounds, stopping this turn[/red]")

    def _confirm(self, call: dict) -> dict:
        if not call.get("needsConfirm"):
            return {**call, "confirmed": True}

        function = call["function"]
        self.console.print(
            Panel(
                json.dumps(json.loads(function.get("arguments") or "{}"), indent=2),
                title=f"[bold yellow]Confirm {function['name']}[/bold yellow]",
                border_style="yellow",
            )
        )
        return {**call, "confirmed": Confirm.ask("Run this function?", default=False)}

    def _post(self, path: str, payload: dict) -> dict | None:
        try:
            with self.console.status("Thinking..."):
                response = self.client.post(f"{self.base_url}{path}", json=payload)
        except httpx.HTTPError as e:
            self.console.print(f"[red]Connection error: {e}[/red]")
            return None

        if response.status_code != 200:
            self.console.print(f"[red]API Error: {response.status_code} - {response.text}[/red]")
            return None
        return response.json()

    def _display_response(self, response: dict) -> None:
        content = response.get("output", {}).get("content")
        if content:
            self.console.print(
                Panel(
                    Markdown(content),
                    title="[bold green]Assistant[/bold green]",
                    border_style="green",
                    padding=(1, 2),
                )
            )

        visualization = response.get("visualization")
        if visualization and visualization.get("type") == "table" and visualization.get("data"):
            rows = visualization["data"]
            table = Table(title=visualization.get("tool"))
            columns = list(rows[0].keys())
            for column in columns:
                table.add_column(str(column))
            for row in rows:
                table.add_row(*(str(row.get(column, "")) for column in columns))
            self.console.print(table)

        if response.get("state") == "budget_exhausted":
            self.console.print("[yellow]The assistant stopped after reaching its step limit.[/yellow]")

    def _show_functions(self) -> None:
        try:
            functions = self.client.get(f"{self.base_url}/functions").json()
        except httpx.HTTPError as e:
            self.console.print(f"[red]Connection error: {e}[/red]")
            return

        table = Table(title="Registered functions")
        table.add_column("Name")
        table.add_column("Active")
        table.add_column("Confirm")
        table.add_column("Description")
        for function in functions:
            table.add_row(
                function["name"],
                "yes" if function["active"] else "no",
                "yes" if function["needConfirmation"] else "",
                function["description"],
            )
        self.console.print(table)

    def _toggle_function(self, name: str) -> None:
        try:
            response = self.client.get(f"{self.base_url}/functions/{name}/toggle_active")
        except httpx.HTTPError as e:
            self.console.print(f"[red]Connection error: {e}[/red]")
            return

        if response.status_code == 404:
            self.console.print(f"[red]Unknown function: {name}[/red]")
            return
        state = "active" if response.json()["active"] else "inactive"
        self.console.print(f"[yellow]{name} is now {state}[/yellow]")

    def _show_help(self) -> None:
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /functions - List registered functions
• /toggle <name> - Enable or disable a function
• /clear - Clear the conversation
• /quit or /exit - Exit the chat

[bold]Tips:[/bold]
• Functions marked "Confirm" ask for approval before they run
• Declining a call tells the assistant you did not want it to run
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"

    chat = ChatCLI(base_url)
    chat.start()


if __name__ == "__main__":
    main()
