"""agentrelay CLI: run the server and operate on the relay database.

Usage:
    agentrelay serve               Start the HTTP API (uvicorn)
    agentrelay reap                Expire overdue agent events now
    agentrelay register NAME       Register an agent and print its credentials
    agentrelay config show         Display resolved configuration
"""

import logging
import os
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agentrelay import __version__
from agentrelay.config import load_config

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="agentrelay",
    help="Event relay between a social platform and external AI agents",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Configuration management")
app.add_typer(config_app, name="config")

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to agentrelay.yaml config file"
    ),
):
    """Agent relay command-line interface."""
    global _config_path
    _config_path = config


@app.command()
def version():
    """Show the installed version."""
    console.print(f"agentrelay {__version__}")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
):
    """Start the HTTP API."""
    import uvicorn

    cfg = load_config(config_path=_config_path)
    final_host = host or cfg.server.host
    final_port = port or cfg.server.port

    # The app loads its own config at import; point it at the same file
    if _config_path:
        os.environ["AGENTRELAY_CONFIG"] = str(_config_path)

    console.print(f"[bold]Starting agent relay on {final_host}:{final_port}[/bold]")
    # Timers live in process memory, so one worker only
    uvicorn.run(
        "agentrelay.api.main:app",
        host=final_host,
        port=final_port,
        log_level=cfg.server.log_level,
        workers=1,
    )


@app.command()
def reap():
    """Expire every open event whose expiry has passed."""
    from agentrelay.db.connection import get_db_context, init_db
    from agentrelay.services.expiry_reaper import ExpiryReaper
    from agentrelay.services.payment_service import LocalLedgerRail

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s:%(message)s")
    init_db()
    expired = ExpiryReaper(get_db_context, LocalLedgerRail()).sweep()
    if not expired:
        console.print("[green]No overdue events.[/green]")
        return
    table = Table(title=f"Expired {len(expired)} event(s)")
    table.add_column("Event ID")
    for event_id in expired:
        table.add_row(event_id)
    console.print(table)


@app.command()
def register(name: str = typer.Argument(..., help="Display name of the agent")):
    """Register an agent and print its one-time credentials."""
    from agentrelay.db.connection import get_db_context, init_db
    from agentrelay.services.agent_service import AgentService

    name = name.strip()
    if not name or len(name) > 100:
        console.print("[red]Name must be 1-100 characters.[/red]")
        raise typer.Exit(1)

    init_db()
    with get_db_context() as db:
        registered = AgentService(db).register(name)
        agent_id = registered.agent.id

    console.print(
        Panel(
            f"agent id:    {agent_id}\n"
            f"api key:     {registered.api_key}\n"
            f"claim token: {registered.claim_token}",
            title=f"Agent '{name}' registered",
            subtitle="Shown once; store these now",
        )
    )


@config_app.command("show")
def config_show():
    """Display resolved configuration (secrets masked)."""
    try:
        cfg = load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Invalid config:[/red] {e}")
        raise typer.Exit(1)

    console.print("[bold]Server:[/bold]")
    console.print(f"  host: {cfg.server.host}")
    console.print(f"  port: {cfg.server.port}")
    console.print(f"  log_level: {cfg.server.log_level}")
    console.print(f"  app_url: {cfg.server.app_url}")

    console.print("\n[bold]Events:[/bold]")
    console.print(f"  ttl_hours: {cfg.events.ttl_hours}")

    console.print("\n[bold]Webhook:[/bold]")
    console.print(f"  path: {cfg.webhook.path}")
    console.print(f"  timeout_seconds: {cfg.webhook.timeout_seconds}")
    console.print(f"  max_attempts: {cfg.webhook.max_attempts}")
    console.print(f"  backoff_base_seconds: {cfg.webhook.backoff_base_seconds}")

    console.print("\n[bold]Auth:[/bold]")
    key = cfg.auth.api_key
    console.print(f"  api_key: {'****' + key[-4:] if len(key) > 4 else ('(set)' if key else '(none)')}")
    console.print(f"  failure_max: {cfg.auth.failure_max}")
    console.print(f"  failure_window_seconds: {cfg.auth.failure_window_seconds}")


if __name__ == "__main__":
    app()
