"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from modelhub.llm.model import LanguageModel
from modelhub.llm.provider import LanguageModelProvider


class OutputFormatter:
    """Rich-based output formatting for the modelhub CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_providers(self, providers: list[LanguageModelProvider]) -> None:
        table = Table(title="Language Model Providers")
        table.add_column("Id", style="cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("Status", no_wrap=True)
        table.add_column("Models", justify="right")

        for provider in providers:
            if provider.is_authenticated():
                status = Text("authenticated", style="green")
            else:
                status = Text("unavailable", style="red")
            table.add_row(
                str(provider.id),
                str(provider.name),
                status,
                str(len(provider.provided_models())),
            )
        self.console.print(table)

        for provider in providers:
            self.console.print(Panel(
                provider.configuration_view().render(),
                title=str(provider.name),
            ))

    def format_models(self, models: list[LanguageModel]) -> None:
        table = Table(title="Available Models")
        table.add_column("Provider", style="cyan", no_wrap=True)
        table.add_column("Id", no_wrap=True)
        table.add_column("Name")
        table.add_column("Context", justify="right")

        for model in models:
            table.add_row(
                str(model.provider_id),
                str(model.id),
                str(model.name),
                f"{model.max_token_count:,}",
            )
        self.console.print(table)

    def format_config(self, config: dict) -> None:
        self.console.print(Syntax(json.dumps(config, indent=2), "json", theme="monokai"))

    def format_error(self, error: Exception) -> None:
        code = getattr(error, "code", type(error).__name__)
        self.console.print(f"[red]Error ({code}):[/red] {error}")
