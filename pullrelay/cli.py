#!/usr/bin/env python3
"""
pullrelay CLI

Command-line interface for the relay server and client.

Usage:
    pullrelay serve                  # Relay server + REST API
    pullrelay download CLIENT_ID     # Wait for a client, pull its file
    pullrelay list                   # List connected clients
    pullrelay client                 # Run a client
    pullrelay generate-file          # Write a test file for the client
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .client import RelayClient
from .config import ClientConfig, ServerConfig, default_file_path, load_config
from .errors import RelayError
from .generator import DEFAULT_SIZE, generate_file
from .server import RelayServer
from .transfer.session import SessionState

console = Console()


def setup_logging(verbose: bool = False, level: Optional[str] = None):
    """Configure logging with rich output."""
    if verbose:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, (level or 'INFO').upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)],
        force=True,
    )


def _server_config(ctx, **overrides) -> ServerConfig:
    config = load_config(ServerConfig, ctx.obj['config_path'], **overrides)
    setup_logging(ctx.obj['verbose'], config.log_level)
    return config


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('-c', '--config', 'config_path', type=click.Path(path_type=Path),
              help='JSON config file')
@click.pass_context
def cli(ctx, verbose, config_path):
    """pullrelay - pull files from clients behind private networks."""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['config_path'] = config_path


@cli.command()
@click.option('--host', default=None, help='Relay bind address')
@click.option('--port', type=int, default=None, help='Relay TCP port')
@click.option('--api-port', type=int, default=None, help='REST API port')
@click.option('--no-api', is_flag=True, help='Disable REST API')
@click.option('--download-dir', type=click.Path(path_type=Path), default=None,
              help='Where downloaded files are written')
@click.pass_context
def serve(ctx, host, port, api_port, no_api, download_dir):
    """Start the relay server and REST API."""
    config = _server_config(ctx, host=host, port=port, api_port=api_port,
                            download_dir=download_dir)

    async def run():
        server = RelayServer(config)
        try:
            await server.start()

            console.print(Panel.fit(
                f"[bold green]Relay Server Started[/bold green]\n\n"
                f"Relay Port: [yellow]{server.port}[/yellow]\n"
                f"Download Dir: [blue]{config.download_dir}[/blue]",
                title="Server Info"
            ))

            if not no_api:
                console.print(f"\n[dim]REST API available at http://localhost:{config.api_port}[/dim]")
                console.print(f"[dim]API docs at http://localhost:{config.api_port}/docs[/dim]\n")

                from .api import run_api_server
                await run_api_server(server, host=config.api_host, port=config.api_port)
            else:
                console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")
                while True:
                    await asyncio.sleep(1)
        finally:
            await server.stop()
            console.print("[green]Server stopped[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.argument('client_id')
@click.option('--port', type=int, default=None, help='Relay TCP port')
@click.option('--download-dir', type=click.Path(path_type=Path), default=None,
              help='Where downloaded files are written')
@click.option('--poll-interval', default=1.0, show_default=True,
              help='Seconds between checks for the client')
@click.option('--timeout', type=float, default=None,
              help='Give up waiting for the client after this many seconds')
@click.pass_context
def download(ctx, client_id, port, download_dir, poll_interval, timeout):
    """Wait for CLIENT_ID to connect, then pull its file."""
    config = _server_config(ctx, port=port, download_dir=download_dir)

    async def run() -> bool:
        server = RelayServer(config)
        await server.start()
        try:
            console.print(f"Waiting for client [cyan]{client_id}[/cyan] to connect "
                          f"on port [yellow]{server.port}[/yellow]...")

            waited = 0.0
            while server.registry.lookup(client_id) is None:
                if timeout is not None and waited >= timeout:
                    console.print(f"[red]Client {client_id} did not connect[/red]")
                    return False
                await asyncio.sleep(poll_interval)
                waited += poll_interval

            console.print(f"Client [cyan]{client_id}[/cyan] is connected. Initiating download...")
            try:
                session = await server.request_download(client_id)
            except RelayError as e:
                console.print(f"[red]✗ {e}[/red]")
                return False

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Waiting for data...", total=None)
                while session.is_active:
                    progress.update(task, description=f"Receiving... "
                                                      f"({session.chunks_seen} chunks)")
                    await asyncio.sleep(0.2)

            if session.state is SessionState.COMPLETED:
                console.print(Panel.fit(
                    f"[bold green]Download Complete[/bold green]\n\n"
                    f"File: [blue]{session.path}[/blue]\n"
                    f"Size: [yellow]{format_size(session.bytes_seen)}[/yellow]\n"
                    f"Chunks: [yellow]{session.chunks_seen}[/yellow]\n"
                    f"Duration: [yellow]{session.elapsed_seconds:.2f}s[/yellow]",
                    title=session.session_id
                ))
                return True

            console.print(f"\n[red]✗ Download failed: {session.error}[/red]")
            return False
        finally:
            await server.stop()

    try:
        ok = asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        ok = False
    if not ok:
        sys.exit(1)


@cli.command('list')
@click.option('--port', type=int, default=None, help='Relay TCP port')
@click.option('--wait', default=2.0, show_default=True,
              help='Seconds to let clients connect before listing')
@click.pass_context
def list_clients(ctx, port, wait):
    """List clients that connect within the wait period."""
    config = _server_config(ctx, port=port)

    async def run():
        server = RelayServer(config)
        await server.start()
        try:
            await asyncio.sleep(wait)
            clients = server.list_clients()

            if not clients:
                console.print("[yellow]No clients connected[/yellow]")
                return

            table = Table(title="Connected Clients")
            table.add_column("Client ID", style="cyan")
            table.add_column("Connected At", style="yellow")
            table.add_column("Active Download")
            for entry in clients:
                table.add_row(
                    entry.client_id,
                    entry.registered_at.isoformat(),
                    "yes" if entry.has_active_download else "no",
                )
            console.print(table)
        finally:
            await server.stop()

    asyncio.run(run())


@cli.command()
@click.option('--server-host', default=None, help='Relay server host')
@click.option('--server-port', type=int, default=None, help='Relay server port')
@click.option('--client-id', default=None, help='Client identifier')
@click.option('--file', 'file_path', type=click.Path(path_type=Path), default=None,
              help='File served on download requests')
@click.option('--chunk-size', type=int, default=None, help='Chunk size in bytes')
@click.pass_context
def client(ctx, server_host, server_port, client_id, file_path, chunk_size):
    """Run a client that serves its file to the relay server."""
    config = load_config(ClientConfig, ctx.obj['config_path'],
                         server_host=server_host, server_port=server_port,
                         client_id=client_id, file_path=file_path,
                         chunk_size=chunk_size)
    setup_logging(ctx.obj['verbose'], config.log_level)

    console.print(Panel.fit(
        f"[bold]File Download Client[/bold]\n\n"
        f"Client ID: [cyan]{config.client_id}[/cyan]\n"
        f"Server: [yellow]{config.server_host}:{config.server_port}[/yellow]\n"
        f"File: [blue]{config.file_path}[/blue]",
        title="Client Info"
    ))

    async def run():
        relay_client = RelayClient(config)
        try:
            await relay_client.run()
        finally:
            await relay_client.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Client stopped[/yellow]")


@cli.command('generate-file')
@click.option('--output', '-o', type=click.Path(path_type=Path), default=None,
              help='Output path (default: ~/file_to_download.txt)')
@click.option('--size-mb', type=float, default=DEFAULT_SIZE / (1024 * 1024),
              show_default=True, help='File size in MB')
@click.pass_context
def generate(ctx, output, size_mb):
    """Generate a random text file to serve from a client."""
    setup_logging(ctx.obj['verbose'])
    path = output or default_file_path()
    size = int(size_mb * 1024 * 1024)

    console.print(f"Generating {format_size(size)} test file...")
    console.print(f"Target path: [blue]{path}[/blue]")

    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        task = progress.add_task("Writing...", total=max(size, 1))

        def update(written, total):
            progress.update(task, completed=written)

        asyncio.run(generate_file(path, size, progress_callback=update))
        progress.update(task, completed=max(size, 1))

    console.print(f"\n[green]✓ File generated: {path} ({format_size(size)})[/green]")


def format_size(bytes_count: float) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
