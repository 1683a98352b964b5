"""
CLI interface for AI Quota Guard.

Manages stored provider keys and reports local usage against the quota.
"""

import sys
from datetime import datetime
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_quota_guard.config.loader import Settings, load_settings
from ai_quota_guard.core.credentials import CredentialStore
from ai_quota_guard.core.errors import AIError
from ai_quota_guard.core.quota import QuotaTracker
from ai_quota_guard.storage.db import DEFAULT_DB_PATH
from ai_quota_guard.storage.repository import BlobRepository

app = typer.Typer()
keys_app = typer.Typer(help="Manage provider API keys.")
usage_app = typer.Typer(help="Inspect and reset local usage.")
app.add_typer(keys_app, name="keys")
app.add_typer(usage_app, name="usage")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


class _State:
    """Objects shared by all commands of one invocation."""

    def __init__(self, db_path: str, settings: Settings):
        self.db_path = db_path
        self.settings = settings
        self._repository: Optional[BlobRepository] = None

    @property
    def repository(self) -> BlobRepository:
        if self._repository is None:
            self._repository = BlobRepository(self.db_path)
        return self._repository

    def credentials(self) -> CredentialStore:
        return CredentialStore(self.repository)

    def quota(self) -> QuotaTracker:
        return QuotaTracker(self.repository, self.settings.quota)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the state database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML settings file"),
):
    """AI Quota Guard CLI."""
    try:
        settings = load_settings(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading config:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    ctx.obj = _State(db, settings)
    if ctx.invoked_subcommand is None:
        console.print("AI Quota Guard - Use --help to see available commands")


def _format_time(epoch_ms: Optional[int]) -> str:
    if not epoch_ms:
        return "-"
    return datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


@app.command()
def status(ctx: typer.Context):
    """Show configured providers and whether the quota is near its limit."""
    state: _State = ctx.obj
    credentials = state.credentials()
    quota = state.quota()

    configured = credentials.get_configured_providers()
    if configured:
        console.print(f"[green]✓[/] Configured providers: {', '.join(sorted(configured))}")
    else:
        console.print("[yellow]![/] No API keys configured. Run `ai-quota-guard keys set <provider> <key>`.")

    wait_ms = quota.get_wait_time()
    if wait_ms > 0:
        console.print(f"[red]✗[/] Rate limit reached; window resets in {-(-wait_ms // 1000)}s")
    elif quota.is_approaching_limit():
        console.print("[yellow]![/] Approaching the per-minute limit")
    else:
        console.print("[green]✓[/] Within rate limits")
    sys.exit(EXIT_CODE_PASS)


@keys_app.command("set")
def set_key(
    ctx: typer.Context,
    provider: str = typer.Argument(..., help="Provider name, e.g. openai"),
    key: str = typer.Argument(..., help="API key"),
    force: bool = typer.Option(False, "--force", "-f", help="Store the key even if its format looks wrong"),
):
    """Store an API key for a provider."""
    credentials = ctx.obj.credentials()
    if not force and not credentials.validate_key_format(provider, key):
        console.print(
            f"[red]Key does not look like a {provider} key.[/] Use --force to store it anyway."
        )
        sys.exit(EXIT_CODE_FAIL)
    try:
        credentials.set_key(provider, key)
    except AIError as e:
        console.print(f"[red]Error:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Stored key for {provider.lower()}: {credentials.get_masked_key(provider)}")
    sys.exit(EXIT_CODE_PASS)


@keys_app.command("check")
def check_key(
    ctx: typer.Context,
    provider: str = typer.Argument(..., help="Provider name, e.g. openai"),
    key: str = typer.Argument(..., help="API key to check"),
):
    """Check a key's format without storing it."""
    credentials = ctx.obj.credentials()
    if credentials.validate_key_format(provider, key):
        console.print(f"[green]✓[/] Key format looks valid for {provider.lower()}")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]✗[/] Key does not match the expected {provider.lower()} format")
    sys.exit(EXIT_CODE_FAIL)


@keys_app.command("list")
def list_keys(ctx: typer.Context):
    """List supported providers and their masked keys."""
    credentials = ctx.obj.credentials()
    providers = list(credentials.get_supported_providers())
    providers += sorted(set(credentials.get_configured_providers()) - set(providers))

    table = Table(title="API Keys")
    table.add_column("Provider")
    table.add_column("Key")
    table.add_column("Added")
    table.add_column("Format")
    for provider in providers:
        key = credentials.get_key(provider)
        if key is None:
            table.add_row(provider, "[dim]not set[/]", "-", "-")
            continue
        valid = credentials.validate_key_format(provider, key)
        table.add_row(
            provider,
            credentials.get_masked_key(provider),
            _format_time(credentials.get_key_added_at(provider)),
            "[green]ok[/]" if valid else "[yellow]unexpected[/]",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@keys_app.command("remove")
def remove_key(ctx: typer.Context, provider: str = typer.Argument(..., help="Provider name")):
    """Remove the stored key for a provider."""
    credentials = ctx.obj.credentials()
    if not credentials.has_key(provider):
        console.print(f"[yellow]No key stored for {provider.lower()}[/]")
        sys.exit(EXIT_CODE_PASS)
    credentials.remove_key(provider)
    console.print(f"[green]✓[/] Removed key for {provider.lower()}")
    sys.exit(EXIT_CODE_PASS)


@usage_app.command("show")
def show_usage(ctx: typer.Context):
    """Show window, session and lifetime usage."""
    state: _State = ctx.obj
    quota = state.quota()
    config = quota.get_config()
    stats = quota.get_usage_stats()
    session = quota.get_session_stats()

    console.print("\n[bold]Current window[/bold]")
    console.print(f"Requests: {stats['requests_this_minute']:,} / {config.max_requests_per_minute:,}")
    console.print(f"Tokens: {stats['tokens_this_minute']:,} / {config.max_tokens_per_minute:,}")
    wait_ms = quota.get_wait_time()
    if wait_ms > 0:
        console.print(f"[red]Limit reached[/], resets in {-(-wait_ms // 1000)}s")
    elif quota.is_approaching_limit():
        console.print("[yellow]Approaching limit[/]")

    console.print("\n[bold]Session[/bold]")
    console.print(f"Started: {_format_time(session['start_time'])}")
    console.print(f"Requests: {session['requests']:,}  Tokens: {session['tokens']:,}")

    console.print("\n[bold]History[/bold]")
    console.print(f"Total requests: {stats['total_requests']:,}  Total tokens: {stats['total_tokens']:,}")

    by_tool = quota.get_usage_by_tool()
    if by_tool:
        table = Table(title="Usage by tool")
        table.add_column("Tool")
        table.add_column("Requests", justify="right")
        table.add_column("Tokens", justify="right")
        for tool, usage in sorted(by_tool.items()):
            table.add_row(tool, f"{usage.requests:,}", f"{usage.tokens:,}")
        console.print(table)
    sys.exit(EXIT_CODE_PASS)


@usage_app.command("reset")
def reset_usage(
    ctx: typer.Context,
    session_only: bool = typer.Option(False, "--session", help="Reset only the session counters"),
):
    """Reset usage statistics."""
    quota = ctx.obj.quota()
    if session_only:
        quota.reset_session()
        console.print("[green]✓[/] Session statistics reset")
    else:
        quota.reset_stats()
        console.print("[green]✓[/] All usage statistics reset")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
