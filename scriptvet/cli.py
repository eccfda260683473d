# scriptvet: Remote Script Trust Verification
# Copyright (C) 2026 scriptvet Project Contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""scriptvet CLI: Typer entry point.

Commands:
- scriptvet scan FILE|-|--url URL  Analyze a script and every remote script it runs
- scriptvet pin URL...             Print registry entries for the current content of URLs
- scriptvet setup                  Configure an LLM provider in ~/.scriptvet/config.yaml
- scriptvet version                Show the version
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.markup import escape

from scriptvet import __version__
from scriptvet.config import CONFIG_FILE, EngineSettings, load_config, load_engine_settings, save_config
from scriptvet.crypto.hasher import DIGEST_PREFIX
from scriptvet.exceptions import ProviderError, ScriptInputError, ScriptVetError, SynthesisError
from scriptvet.models.registry import get_registry
from scriptvet.reporter.console_out import console, print_error, print_full_report, print_pin_summary
from scriptvet.reporter.json_out import to_canonical_json, write_report
from scriptvet.scanner.content_fetcher import ContentFetcher, fetch_script
from scriptvet.scanner.llm_judge import (
    CLOUD_PROVIDERS,
    LOCAL_OPENAI_DEFAULT_URL,
    LLMProvider,
    create_provider_from_inputs,
)
from scriptvet.scanner.narrator import create_narrator
from scriptvet.scanner.orchestrator import analyze_script
from scriptvet.scanner.reference_validator import validate_reference

app = typer.Typer(
    name="scriptvet",
    help=(
        "scriptvet: check a shell script and every remote script it downloads and runs. "
        "Run 'scriptvet <command> --help' for flags."
    ),
    add_completion=False,
)

logger = logging.getLogger("scriptvet")

# Offered by `scriptvet setup`; any other model ID can be typed in.
_MODEL_CHOICES = {
    "gemini": ("gemini-2.5-flash", "gemini-2.5-pro", "gemini-2.0-flash"),
    "claude": ("claude-sonnet-4-20250514", "claude-3-7-sonnet-latest", "claude-3-5-haiku-latest"),
    "openai": ("gpt-5-mini", "gpt-4.1", "gpt-4o", "gpt-4o-mini"),
}
_LOCAL_MODELS = ("llama3.1", "llama3", "mistral", "qwen2")


def _configure_logging(*, quiet: bool = False, verbose: bool = False) -> None:
    if quiet:
        logging.basicConfig(level=logging.ERROR)
    elif verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.INFO)

    # Suppress noisy third-party logs
    for name in ("httpcore", "httpx", "google_genai", "openai", "anthropic"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _read_script(file: Optional[str], url: Optional[str], settings: EngineSettings) -> tuple[str, str]:
    """Return (content, display name) for the script to analyze.

    Raises:
        ScriptInputError: Missing, unreadable or empty input.
    """
    if url is not None:
        content = asyncio.run(
            fetch_script(url, timeout=settings.fetch_timeout, max_bytes=settings.max_response_bytes)
        )
        return content, url.strip()

    if file is None:
        raise ScriptInputError("No script given: pass a file, - for stdin, or --url")
    if file == "-":
        content, source = sys.stdin.read(), "<stdin>"
    else:
        path = Path(file)
        if not path.is_file():
            raise ScriptInputError(f"File not found: {path}")
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise ScriptInputError(f"Could not read {path}: {e}") from e
        source = str(path)

    if not content.strip():
        raise ScriptInputError(f"Script {source} is empty")
    return content, source


@app.command()
def scan(
    file: Optional[str] = typer.Argument(None, help="Script file to analyze, or - for stdin"),
    url: Optional[str] = typer.Option(None, "--url", help="Fetch the script to analyze from this URL"),
    output_json: bool = typer.Option(False, "--json", help="Output raw JSON to stdout (for CI)"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print the score and remote scripts"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging and per-script detail"),
    no_llm: bool = typer.Option(False, "--no-llm", help="Use the heuristic narrator even if an LLM is configured"),
    registry: Optional[Path] = typer.Option(None, "--registry", help="Known-script registry file (YAML or JSON)"),
    max_depth: Optional[int] = typer.Option(None, "--max-depth", help="Maximum levels of remote scripts to follow"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Also write the JSON report to this file"),
) -> None:
    """Analyze a shell script and every remote script it downloads and executes.

    Remote scripts are fetched, hashed and checked against the known-script
    registry, then analyzed the same way, up to --max-depth levels deep.
    The exit code is 0 whenever a report is produced, whatever the score.
    """
    _configure_logging(quiet=quiet or output_json, verbose=verbose)

    if (file is None) == (url is None):
        print_error("Give exactly one of FILE (or - for stdin) and --url")
        raise typer.Exit(code=1)

    try:
        settings = load_engine_settings({"max_depth": max_depth, "registry_path": registry})
        known = get_registry(settings.registry_path)
        content, source = _read_script(file, url, settings)
        narrator = create_narrator(use_llm=not no_llm)
        report = analyze_script(content, narrator=narrator, registry=known, settings=settings)
    except SynthesisError as e:
        print_error(f"analysis failed: {e}")
        raise typer.Exit(code=1)
    except ScriptVetError as e:
        print_error(str(e))
        raise typer.Exit(code=1)

    if output is not None:
        write_report(report, output)

    if output_json:
        typer.echo(to_canonical_json(report), nl=False)
        return

    print_full_report(
        report,
        source=source,
        narrator=narrator.name,
        max_depth=settings.max_depth,
        verbose=verbose,
        quiet=quiet,
    )


async def _fetch_for_pin(urls: list[str], settings: EngineSettings):
    async with ContentFetcher(
        timeout=settings.fetch_timeout,
        max_concurrent=settings.max_concurrent_fetches,
        max_bytes=settings.max_response_bytes,
    ) as fetcher:
        return await fetcher.fetch_all(urls)


@app.command()
def pin(
    urls: List[str] = typer.Argument(..., help="Remote script URLs to pin"),
) -> None:
    """Fetch scripts and print known-script registry entries for them.

    Review the scripts first, then append the printed YAML to your registry
    file. Exits 1 if any URL cannot be fetched.
    """
    _configure_logging(quiet=True)

    failures: list[str] = []
    valid: list[str] = []
    for raw in urls:
        reference = validate_reference(raw.strip())
        if reference is None:
            failures.append(f"Not a fetchable http(s) URL: {raw}")
        else:
            valid.append(reference.url)

    try:
        settings = load_engine_settings()
    except ScriptVetError as e:
        print_error(str(e))
        raise typer.Exit(code=1)

    outcomes = asyncio.run(_fetch_for_pin(valid, settings)) if valid else []

    entries = []
    for outcome in outcomes:
        if outcome.error is not None:
            failures.append(outcome.error)
        else:
            entries.append({"url": outcome.url, "hash": f"{DIGEST_PREFIX}{outcome.digest}"})

    if entries:
        typer.echo(yaml.safe_dump({"scripts": entries}, sort_keys=False), nl=False)
    print_pin_summary(len(entries), failures)

    if failures:
        raise typer.Exit(code=1)


def _prompt_menu(prompt: str, options: list[tuple[str, str]], default_idx: int = 1) -> str:
    """Numbered menu; returns the value of the chosen option."""
    console.print(f"\n[bold]{prompt}[/bold]")
    for idx, (_, label) in enumerate(options, start=1):
        console.print(f"  {idx}. {label}")

    while True:
        choice = typer.prompt("Enter number", default=default_idx, type=int)
        if 1 <= choice <= len(options):
            return options[choice - 1][0]
        console.print(f"[yellow]Pick a number from 1 to {len(options)}.[/yellow]")


def _discover_ollama_models() -> list[str]:
    """Names from ``ollama list``, or [] when Ollama is not installed."""
    try:
        listing = subprocess.run(
            ["ollama", "list"], capture_output=True, text=True, timeout=5, check=False
        )
    except (OSError, subprocess.SubprocessError):
        return []
    if listing.returncode != 0:
        return []

    rows = [line.split() for line in listing.stdout.splitlines()[1:]]
    return list(dict.fromkeys(row[0] for row in rows if row))


def _prompt_model(provider: str) -> str:
    if provider in _MODEL_CHOICES:
        models = _MODEL_CHOICES[provider]
    else:
        models = tuple(dict.fromkeys(_discover_ollama_models() + list(_LOCAL_MODELS)))

    options = [(m, m) for m in models] + [("", "Other (type a model ID)")]
    chosen = _prompt_menu(f"Model for {provider}", options)
    return chosen or typer.prompt("Model ID").strip()


def _prompt_llm_provider() -> Optional[LLMProvider]:
    """Ask for provider, model and credentials; None if the user gave up."""
    provider = _prompt_menu(
        "LLM provider",
        [
            ("gemini", "Gemini (Google)"),
            ("claude", "Claude (Anthropic)"),
            ("openai", "OpenAI"),
            ("local_openai", "Local server (Ollama, LM Studio, llama.cpp, vLLM)"),
        ],
    )

    if provider in CLOUD_PROVIDERS:
        key_var = CLOUD_PROVIDERS[provider][1]
        model = _prompt_model(provider)
        entered = typer.prompt(
            f"{key_var} (input hidden, Enter to use the environment)",
            default="",
            show_default=False,
            hide_input=True,
        ).strip()
        api_key = entered or os.environ.get(key_var, "").strip()
        if not model or not api_key:
            console.print(f"[yellow]{provider} needs a model and {key_var}.[/yellow]")
            return None
        return create_provider_from_inputs(provider, api_key=api_key, model=model)

    base_url = typer.prompt(
        "Server URL",
        default=os.environ.get("SCRIPTVET_LOCAL_OPENAI_URL", LOCAL_OPENAI_DEFAULT_URL),
    ).strip() or LOCAL_OPENAI_DEFAULT_URL
    # Ollama serves its OpenAI-compatible API under /v1
    if ":11434" in base_url and not base_url.rstrip("/").endswith("/v1"):
        base_url = base_url.rstrip("/") + "/v1"
    model = _prompt_model(provider)
    if not model:
        console.print("[yellow]No model given.[/yellow]")
        return None
    return create_provider_from_inputs(provider, base_url=base_url, model=model)


def _provider_config(provider: LLMProvider) -> dict:
    """The ``llm:`` config section that recreates ``provider``."""
    section: dict = {"provider": provider.name}
    for attr, key in (
        ("model_name", "model"),
        ("model", "model"),
        ("base_url", "base_url"),
        ("host", "host"),
    ):
        if hasattr(provider, attr):
            section[key] = getattr(provider, attr)
    if provider.name in CLOUD_PROVIDERS:
        section["api_key"] = getattr(provider, "api_key")
    return section


@app.command()
def setup() -> None:
    """Choose an LLM narrator and save it to ~/.scriptvet/config.yaml.

    Environment variables still take priority over the saved config.
    """
    console.print("\n[bold cyan]scriptvet setup[/bold cyan]\n")
    console.print(
        "Without an LLM, scripts are scored by built-in shell heuristics. "
        "An LLM narrator writes a review of each script and the remote scripts it runs.\n"
    )

    existing = load_config()
    current = existing.get("llm")
    if isinstance(current, dict) and current.get("provider"):
        console.print(
            f"[dim]Configured now: {escape(str(current['provider']))} "
            f"({escape(str(current.get('model', 'default model')))}) in {CONFIG_FILE}[/dim]\n"
        )

    if not typer.confirm("Configure an LLM provider?", default=True):
        return

    provider = _prompt_llm_provider()
    if provider is None:
        console.print("[yellow]Nothing saved; the heuristic narrator stays in use.[/yellow]")
        return

    console.print("\n[dim]Checking the provider...[/dim]", end=" ")
    try:
        provider.analyze_sync('Reply with this JSON object: {"status": "ok"}')
    except ProviderError as e:
        console.print("[bold red]FAILED[/bold red]")
        print_error(f"{e}. Config not saved.")
        raise typer.Exit(code=1)
    console.print("[bold green]OK[/bold green]")

    saved = save_config({**existing, "llm": _provider_config(provider)})
    console.print(f"\n[bold green]Saved to {saved}[/bold green]")
    console.print("Try it: [bold]scriptvet scan install.sh[/bold]")


@app.command()
def version() -> None:
    """Show the scriptvet version."""
    console.print(f"scriptvet v{__version__}")


if __name__ == "__main__":
    app()
