"""Command line interface for llm-relay."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.table import Table

from llm_relay import __version__
from llm_relay.adapters import API_MODES
from llm_relay.commit import generate_commit_message, git_diff
from llm_relay.config import RelayConfig, load_config
from llm_relay.discovery import fetch_models
from llm_relay.dispatcher import RequestDispatcher
from llm_relay.errors import RelayError
from llm_relay.types import (
    DataPart,
    Message,
    ResponseEnd,
    TextDelta,
    ThinkingDelta,
    ThinkingEnd,
    ToolCallPart,
)

console = Console()
err_console = Console(stderr=True)


def _load(ctx: click.Context) -> RelayConfig:
    config_path = ctx.obj.get("config_path")
    try:
        config, config_file = load_config(config_path)
    except FileNotFoundError as e:
        err_console.print(f"[red]{e}[/red]")
        sys.exit(1)
    if config_file:
        err_console.print(f"[dim]Config: {config_file}[/dim]")
    else:
        err_console.print("[dim]Config: defaults (no llm_relay.yaml found)[/dim]")
    return config


def _default_model(config: RelayConfig) -> str:
    if not config.models:
        err_console.print("[red]No models configured; pass --model.[/red]")
        sys.exit(1)
    return config.models[0].full_id


@click.group()
@click.version_option(__version__, prog_name="llm-relay")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to llm_relay.yaml (auto-detected from CWD or ~/.llm_relay/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """llm-relay - one chat model over many LLM wire protocols."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


async def _run_chat(config: RelayConfig, model_id: str, prompt: str,
                    system: str | None, show_thinking: bool) -> None:
    messages = [Message.system(system)] if system else []
    messages.append(Message.user(prompt))
    cancel = asyncio.Event()
    thinking = False
    async with RequestDispatcher(config) as dispatcher:
        async for event in dispatcher.stream_chat(model_id, messages, cancel=cancel):
            if isinstance(event, ThinkingDelta):
                if show_thinking:
                    thinking = True
                    console.print(event.text, end="", style="dim italic", highlight=False)
            elif isinstance(event, ThinkingEnd):
                if thinking:
                    console.print()
                    thinking = False
            elif isinstance(event, TextDelta):
                console.print(event.text, end="", highlight=False, markup=False)
            elif isinstance(event, ToolCallPart):
                console.print(f"\n[cyan]tool call[/cyan] {event.name} {event.arguments}")
            elif isinstance(event, DataPart):
                continue
            elif isinstance(event, ResponseEnd):
                console.print()
                if event.reason == "cancelled":
                    console.print("[yellow]Cancelled.[/yellow]")


@main.command()
@click.argument("prompt")
@click.option("--model", "-m", "model_id", default=None, help="Model id (base or base::config)")
@click.option("--system", "-s", default=None, help="System prompt")
@click.option("--thinking/--no-thinking", "show_thinking", default=True,
              help="Show reasoning as it streams")
@click.pass_context
def chat(ctx: click.Context, prompt: str, model_id: str | None, system: str | None,
         show_thinking: bool):
    """Send PROMPT and stream the answer."""
    config = _load(ctx)
    model_id = model_id or _default_model(config)
    try:
        asyncio.run(_run_chat(config, model_id, prompt, system, show_thinking))
    except RelayError as e:
        err_console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        err_console.print("[yellow]Interrupted.[/yellow]")
        sys.exit(130)


@main.command()
@click.option("--base-url", "-u", default=None, help="Backend base URL (defaults to config)")
@click.option("--api-key", "-k", default=None, help="API key (defaults to config)")
@click.option("--mode", "api_mode", default="openai",
              type=click.Choice(API_MODES),
              help="Wire protocol of the backend")
@click.pass_context
def models(ctx: click.Context, base_url: str | None, api_key: str | None, api_mode: str):
    """List the models a backend serves."""
    config = _load(ctx)
    base_url = base_url or config.base_url
    if api_key is None:
        api_key = config.api_key or ""
    try:
        found = asyncio.run(fetch_models(base_url, api_key, api_mode, retry=config.retry))
    except RelayError as e:
        err_console.print(f"[red]{e}[/red]")
        sys.exit(1)

    table = Table(title="Models", show_lines=False, border_style="dim")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Context", justify="right")
    table.add_column("Owner")
    for m in found:
        table.add_row(
            m.id,
            m.display_name,
            str(m.context_length) if m.context_length else "",
            m.owned_by or "",
        )
    console.print(table)


@main.command("commit-msg")
@click.option("--notes", "-n", default="", help="Notes for the model")
@click.option("--model", "-m", "model_id", default=None,
              help="Model id (defaults to the model marked for commit generation)")
@click.option("--cwd", default=None, help="Repository directory")
@click.pass_context
def commit_msg(ctx: click.Context, notes: str, model_id: str | None, cwd: str | None):
    """Generate a commit message for the staged (or unstaged) diff."""
    config = _load(ctx)

    async def run() -> str:
        diff = await git_diff(cwd)
        async with RequestDispatcher(config) as dispatcher:
            return await generate_commit_message(dispatcher, diff, notes, model_id)

    try:
        message = asyncio.run(run())
    except RelayError as e:
        err_console.print(f"[red]{e}[/red]")
        sys.exit(1)
    click.echo(message)


if __name__ == "__main__":
    main()
