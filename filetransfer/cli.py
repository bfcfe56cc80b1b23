#!/usr/bin/env python3
"""
File Transfer CLI

Command-line interface for the single-file TCP transfer system.

Usage:
    filetransfer serve [PORT] [ROOT_DIR]           # Run a server
    filetransfer put HOST:PORT FILE                # Store a file
    filetransfer get HOST:PORT FILE [DEST_DIR]     # Retrieve a file
"""

import time
import asyncio
import logging
from pathlib import Path
from typing import Callable, Awaitable, Optional, Tuple

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.panel import Panel
from rich.logging import RichHandler

from .config import Config, load_config
from .errors import FileTransferError
from .server import FileServer
from .transfer import TransferClient, TransferProgress, TransferResult

console = Console()


def setup_logging(level: str = 'INFO', verbose: bool = False):
    """Configure logging with rich output."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


def parse_address(address: str) -> Tuple[str, int]:
    """Split HOST:PORT."""
    host, sep, port = address.rpartition(':')
    if not sep or not host:
        raise click.BadParameter(f"{address} (use host:port)", param_hint='ADDRESS')
    try:
        return host.strip('[]'), int(port)
    except ValueError:
        raise click.BadParameter(f"invalid port in {address}", param_hint='ADDRESS') from None


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False, path_type=Path),
              help='JSON config file')
@click.pass_context
def cli(ctx, verbose, config_path):
    """File Transfer - store and retrieve single files over TCP with MD5 verification."""
    config = load_config(config_path)
    setup_logging(config.log_level, verbose)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.argument('port', type=int, required=False)
@click.argument('root_dir', type=click.Path(file_okay=False, path_type=Path), required=False)
@click.option('--host', default=None, help='Address to listen on')
@click.pass_context
def serve(ctx, port, root_dir, host):
    """Run a file transfer server."""
    config: Config = ctx.obj['config']
    if port is not None:
        config.port = port
    if root_dir is not None:
        config.root_dir = root_dir
    if host is not None:
        config.host = host

    async def run():
        server = FileServer(config)
        await server.start()

        console.print(Panel.fit(
            f"[bold green]File Server Started[/bold green]\n\n"
            f"Listening on port: [yellow]{server.port}[/yellow]\n"
            f"Root directory: [blue]{server.store.root}[/blue]\n"
            f"Free space: [yellow]{format_size(server.store.free_space())}[/yellow]",
            title="Server Info"
        ))
        console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

        await server.serve_forever()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")
    except OSError as e:
        console.print(f"[red]✗ Cannot start server: {e}[/red]")
        ctx.exit(1)


def run_transfer(config: Config, address: str, operation: str,
                 action: Callable[[TransferClient], Awaitable[TransferResult]]) -> int:
    """
    Run one client transfer with a progress bar.

    Returns:
        Process exit code (0 success, 1 failure)
    """
    host, port = parse_address(address)
    result: Optional[TransferResult] = None
    failure: Optional[FileTransferError] = None

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        task = progress.add_task(f"{operation.upper()} connecting...", total=None)

        def update_progress(p: TransferProgress):
            progress.update(
                task,
                total=p.total_bytes or None,
                completed=p.bytes_transferred,
                description=f"{operation.upper()} {p.file_name} ({p.phase.value})",
            )

        client = TransferClient(host, port, chunk_size=config.chunk_size,
                                max_frame_size=config.max_frame_size,
                                progress_callback=update_progress)

        start = time.monotonic()
        try:
            result = asyncio.run(action(client))
        except FileTransferError as e:
            failure = e
        elapsed = time.monotonic() - start

    if failure is not None:
        console.print(f"[red]✗ {operation.upper()} failed: {failure}[/red]")
    else:
        console.print(f"[green]✓ {result.message}: {result.path} "
                      f"({format_size(result.size)}, md5 {result.checksum})[/green]")

    console.print(f"{operation.upper()} operation took {elapsed:.3f}s")
    return 1 if failure is not None else 0


@cli.command()
@click.argument('address')
@click.argument('file_path', type=click.Path(path_type=Path))
@click.pass_context
def put(ctx, address, file_path):
    """Store FILE_PATH on the server at ADDRESS (host:port)."""
    code = run_transfer(ctx.obj['config'], address, 'put',
                        lambda client: client.put(file_path))
    ctx.exit(code)


@cli.command()
@click.argument('address')
@click.argument('file_name')
@click.argument('dest_dir', default='.',
                type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.pass_context
def get(ctx, address, file_name, dest_dir):
    """Retrieve FILE_NAME from the server at ADDRESS (host:port) into DEST_DIR."""
    code = run_transfer(ctx.obj['config'], address, 'get',
                        lambda client: client.get(file_name, dest_dir))
    ctx.exit(code)


def main():
    cli()


if __name__ == '__main__':
    main()
