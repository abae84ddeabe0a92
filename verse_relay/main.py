"""
main.py — verse-relay application entrypoint.

Bootstraps:
  1. Config loading
  2. OBS service (session registry + idle sweep)
  3. Connection store (stored connections are restored on API startup)
  4. FastAPI server (uvicorn)

CLI:
  python run.py start              start the relay server
  python run.py init-config        create a default config.yaml
  python run.py check              test OBS connectivity and list scenes
  python run.py send-verse         push one verse to OBS and disconnect
  python run.py list-connections   print stored OBS connections
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from verse_relay import __version__
from verse_relay.api import create_app, set_store
from verse_relay.config import get_settings, reload_settings
from verse_relay.core import ConnectionConfig, ConnectionRegistry, OBSError, OBSService, init_obs_service
from verse_relay.store import ConnectionStore
from verse_relay.verses import Verse

console = Console()
app = typer.Typer(name="verse-relay", help="Push Bible verses into OBS Studio over obs-websocket v5")


def setup_logging(level: str = "info") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


async def build_and_run(config_path: Optional[Path] = None) -> None:
    settings = reload_settings(config_path)
    setup_logging(settings.api.log_level)
    log = logging.getLogger("verse_relay")

    console.rule(f"[bold blue]verse-relay v{__version__}[/bold blue]")

    # 1. OBS service
    init_obs_service(
        handshake_timeout=settings.obs.handshake_timeout,
        request_timeout=settings.obs.request_timeout,
        open_timeout=settings.obs.open_timeout,
        display_setup=settings.obs.display_setup,
        restore_retries=settings.obs.restore_retries,
        restore_retry_delay=settings.obs.restore_retry_delay,
    )

    # 2. Connection store (active records are restored in the API lifespan)
    store = ConnectionStore(settings.store.connections_file)
    store.load()
    set_store(store)
    fast_app = create_app()

    # 3. Startup summary
    active = len(store.active())
    console.print(f"\n[green]✓ Store[/green]     {settings.store.connections_file} ({active} active connection(s) to restore)")
    console.print(f"[green]✓ API[/green]       http://{settings.api.host}:{settings.api.port}")
    console.print(f"[green]✓ WS[/green]        ws://{settings.api.host}:{settings.api.port}/ws")
    console.print(
        f"[green]✓ Sweep[/green]     idle sessions closed after {settings.obs.idle_threshold:.0f}s"
        f" (checked every {settings.obs.idle_sweep_interval:.0f}s)"
    )
    if settings.api.api_key:
        console.print(f"[green]✓ Auth[/green]      API key set — Bearer token required")
    else:
        console.print(f"[yellow]⚠ Auth[/yellow]      No API key set — open access (fine for LAN, not internet)")
    console.print(f"[green]✓ Docs[/green]      http://{settings.api.host}:{settings.api.port}/docs\n")

    # 4. uvicorn
    config = uvicorn.Config(
        fast_app,
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.api.log_level,
        loop="asyncio",
    )
    server = uvicorn.Server(config)

    loop = asyncio.get_running_loop()

    def shutdown():
        log.info("Shutdown signal received.")
        server.should_exit = True

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown)
        except NotImplementedError:
            pass  # Windows

    await server.serve()


async def _one_shot_session(
    url: Optional[str],
    password: Optional[str],
    source_name: Optional[str] = None,
) -> tuple[OBSService, str]:
    """Open a single session for a CLI command; unset options fall back to the obs: config section."""
    obs = get_settings().obs
    registry = ConnectionRegistry(
        handshake_timeout=obs.handshake_timeout,
        request_timeout=obs.request_timeout,
        open_timeout=obs.open_timeout,
        display_setup=False,
    )
    service = OBSService(registry)
    config = ConnectionConfig(
        url=url or obs.default_url,
        password=obs.default_password if password is None else password,
        source_name=source_name or obs.default_source_name,
    )
    result = await service.connect(config)
    return service, result["session_id"]


# ──────────────────────────────────────────────────────────────────────────────
# CLI commands
# ──────────────────────────────────────────────────────────────────────────────

@app.command()
def start(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    host: Optional[str] = typer.Option(None, "--host", help="API bind host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="API port"),
    connections_file: Optional[Path] = typer.Option(None, "--connections", help="Stored connections file"),
):
    """Start the verse-relay server."""
    import os
    if host:
        os.environ["API_HOST"] = host
    if port:
        os.environ["API_PORT"] = str(port)
    if connections_file:
        os.environ["STORE_CONNECTIONS_FILE"] = str(connections_file)
    asyncio.run(build_and_run(config))


@app.command("init-config")
def init_config(
    output: Path = typer.Option(Path("config.yaml"), "--output", "-o"),
):
    """Generate a default config.yaml."""
    from verse_relay.config import Settings
    s = Settings.load()
    s.to_yaml(output)
    console.print(f"[green]✓[/green] Config written to [bold]{output}[/bold]")


@app.command("check")
def check_obs(
    url: Optional[str] = typer.Option(None, "--url", help="Defaults to obs.default_url"),
    password: Optional[str] = typer.Option(None, "--password"),
):
    """Test OBS WebSocket connectivity."""
    setup_logging("warning")

    async def _check():
        try:
            service, sid = await _one_shot_session(url, password)
        except OBSError as e:
            console.print(f"[red]✗ Could not connect to OBS: {e}[/red]")
            sys.exit(1)
        try:
            version, scenes, current = await asyncio.gather(
                service.get_version(sid),
                service.list_scenes(sid),
                service.get_current_scene(sid),
            )
            session = service.registry.lookup(sid)
            table = Table(title=f"OBS at {session.config.url}", show_header=False)
            table.add_column("", style="dim")
            table.add_column("")
            table.add_row("obs", version["obs_version"])
            table.add_row("obs-websocket", version["obs_web_socket_version"])
            table.add_row("platform", version["platform"])
            table.add_row("session", sid)
            table.add_row("scenes", ", ".join(f"[bold]{s}[/bold]" if s == current else s for s in scenes))
            console.print(table)
        except OBSError as e:
            console.print(f"[red]✗ Connected, but OBS did not answer: {e}[/red]")
            sys.exit(1)
        finally:
            await service.registry.shutdown()
    asyncio.run(_check())


@app.command("send-verse")
def send_verse_cmd(
    reference: str = typer.Argument(..., help='Verse reference, e.g. "John 3:16"'),
    text: str = typer.Argument(..., help="Verse text"),
    version: str = typer.Option("kjv", "--version", "-v"),
    url: Optional[str] = typer.Option(None, "--url", help="Defaults to obs.default_url"),
    password: Optional[str] = typer.Option(None, "--password"),
    source_name: Optional[str] = typer.Option(None, "--source", help="Defaults to obs.default_source_name"),
):
    """Push a single verse to an OBS text source."""
    setup_logging("warning")

    async def _send():
        try:
            service, sid = await _one_shot_session(url, password, source_name)
        except OBSError as e:
            console.print(f"[red]✗ Could not connect to OBS: {e}[/red]")
            sys.exit(1)
        try:
            result = await service.send_verse(sid, Verse(reference=reference, text=text, version=version))
            console.print(f"[green]✓[/green] {reference} → '{result['source']}'")
        except OBSError as e:
            console.print(f"[red]✗ {e}[/red]")
            sys.exit(1)
        finally:
            await service.registry.shutdown()
    asyncio.run(_send())


@app.command("list-connections")
def list_connections_cmd(
    connections_file: Path = typer.Option(Path("connections.yaml"), "--file", "-f"),
):
    """Print the stored OBS connections."""
    store = ConnectionStore(connections_file)
    store.load()
    table = Table(title="Stored OBS Connections", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("URL", style="green")
    table.add_column("Source")
    table.add_column("Owner")
    table.add_column("Active", style="yellow")
    for r in store.all():
        table.add_row(r.id, r.name, r.url, r.source_name, r.owner_id or "-", "yes" if r.is_active else "no")
    console.print(table)


if __name__ == "__main__":
    app()
