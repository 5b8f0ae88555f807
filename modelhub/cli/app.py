"""
Main CLI application for modelhub.

Usage:
    mh providers
    mh models [--provider ID]
    mh chat PROMPT --provider ID --model ID [--temperature T] [--stop S ...]
    mh tokens PROMPT --provider ID --model ID
    mh config show
    mh version
"""

from __future__ import annotations

import asyncio
import logging
import logging.config
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx
import typer
from rich.console import Console

from modelhub import __version__
from modelhub.config import ModelhubConfig, SettingsStore, load_config
from modelhub.credentials import InMemoryCredentialStore
from modelhub.llm import init
from modelhub.llm.errors import LanguageModelError
from modelhub.llm.registry import LanguageModelRegistry
from modelhub.llm.types import LanguageModelRequest, Message

app = typer.Typer(name="mh", help="modelhub - one interface over many LLM backends")
config_app = typer.Typer(help="Configuration management")
app.add_typer(config_app, name="config")

console = Console()
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "modelhub.yaml",
        Path.cwd() / "modelhub.yml",
        Path.home() / ".config" / "modelhub" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def _configure_logging(level: str) -> None:
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"rich": {"datefmt": "%Y-%m-%d %H:%M:%S"}},
        "handlers": {
            "rich": {
                "class": "rich.logging.RichHandler",
                "rich_tracebacks": True,
                "show_path": False,
                "formatter": "rich",
            },
        },
        "root": {"handlers": ["rich"], "level": level.upper()},
    })


def _load(profile: str | None, verbose: bool) -> ModelhubConfig:
    cfg = load_config(_get_config_path(), profile=profile)
    _configure_logging("DEBUG" if verbose else cfg.logging.level)
    return cfg


@asynccontextmanager
async def _registry(cfg: ModelhubConfig) -> AsyncIterator[LanguageModelRegistry]:
    """Wire up settings, transport and providers, then authenticate them."""
    settings = SettingsStore(cfg)
    async with httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0)) as client:
        registry = init(settings, client, InMemoryCredentialStore())
        for provider in registry.providers():
            try:
                await provider.authenticate()
            except LanguageModelError as exc:
                logger.info("%s unavailable: %s", provider.name, exc)
        try:
            yield registry
        finally:
            settings.close()


def _fail(error: Exception) -> None:
    from modelhub.cli.output import OutputFormatter

    OutputFormatter(console).format_error(error)
    raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def providers(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Probe every provider and show its status."""
    from modelhub.cli.output import OutputFormatter

    cfg = _load(profile, verbose)

    async def _run():
        async with _registry(cfg) as registry:
            OutputFormatter(console).format_providers(registry.providers())

    asyncio.run(_run())


@app.command()
def models(
    provider: Optional[str] = typer.Option(None, help="Only list this provider's models"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """List the models of every authenticated provider."""
    from modelhub.cli.output import OutputFormatter

    cfg = _load(profile, verbose)

    async def _run():
        async with _registry(cfg) as registry:
            found = registry.available_models()
            if provider:
                found = [m for m in found if m.provider_id == provider]
            OutputFormatter(console).format_models(found)

    asyncio.run(_run())


@app.command()
def chat(
    prompt: str = typer.Argument(..., help="User message"),
    provider: str = typer.Option(..., help="Provider id, e.g. 'ollama'"),
    model: str = typer.Option(..., help="Model id"),
    system: Optional[str] = typer.Option(None, help="System prompt"),
    temperature: float = typer.Option(1.0, help="Sampling temperature"),
    stop: Optional[list[str]] = typer.Option(None, help="Stop sequence (repeatable)"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Stream a single completion to the terminal."""
    cfg = _load(profile, verbose)
    messages = [Message.system(system)] if system else []
    messages.append(Message.user(prompt))
    request = LanguageModelRequest(
        messages=messages,
        stop=list(stop or []),
        temperature=temperature,
    )

    async def _run():
        async with _registry(cfg) as registry:
            selected = registry.select_active_model(provider, model)
            stream = await selected.stream_completion(request)
            async for delta in stream:
                console.print(delta, end="", markup=False, highlight=False)
            console.print()

    try:
        asyncio.run(_run())
    except (LanguageModelError, KeyError) as exc:
        _fail(exc)


@app.command()
def tokens(
    prompt: str = typer.Argument(..., help="Text to count"),
    provider: str = typer.Option(..., help="Provider id"),
    model: str = typer.Option(..., help="Model id"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Estimate the token count of a prompt for a model."""
    cfg = _load(profile, verbose)
    request = LanguageModelRequest(messages=[Message.user(prompt)])

    async def _run():
        async with _registry(cfg) as registry:
            selected = registry.model(provider, model)
            count = await selected.count_tokens(request)
            console.print(f"{count} tokens (context window {selected.max_token_count:,})")

    try:
        asyncio.run(_run())
    except (LanguageModelError, KeyError) as exc:
        _fail(exc)


@config_app.command("show")
def config_show(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Show effective config."""
    from modelhub.cli.output import OutputFormatter

    cfg = load_config(_get_config_path(), profile=profile)
    OutputFormatter(console).format_config(cfg.to_dict())


@app.command()
def version():
    """Show version."""
    console.print(f"modelhub-core v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
