#!/usr/bin/env python3
"""
clouddisk CLI

Command-line interface for the clouddisk server and client.

Usage:
    clouddisk serve                          # Start a server
    clouddisk upload LOCAL REMOTE            # Upload a file
    clouddisk download REMOTE LOCAL          # Download a file
    clouddisk download REMOTE LOCAL -p       # Download over parallel ranges
    clouddisk list                           # List remote files
    clouddisk stat REMOTE                    # Show size and digest
    clouddisk batch-upload LOCAL=REMOTE ...  # Upload several files
    clouddisk batch-download REMOTE=LOCAL .. # Download several files
"""

import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Tuple

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.panel import Panel
from rich.logging import RichHandler

from .client import DiskClient
from .config import load_config
from .errors import DiskError
from .server import DiskServer
from .transfer.pool import TransferOutcome

console = Console()


def setup_logging(verbose: bool = False, level_name: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


def parse_pairs(values: Tuple[str, ...]) -> List[Tuple[str, str]]:
    """Parse SOURCE=TARGET arguments."""
    pairs = []
    for value in values:
        source, sep, target = value.partition('=')
        if not sep or not source or not target:
            raise click.BadParameter(f"Invalid pair: {value} (use SOURCE=TARGET)")
        pairs.append((source, target))
    return pairs


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON config file')
@click.option('--host', default=None, help='Server host')
@click.option('--port', default=None, type=int, help='Server TCP port')
@click.pass_context
def cli(ctx, verbose, config_path, host, port):
    """clouddisk - remote file storage with parallel range transfers."""
    config = load_config(Path(config_path) if config_path else None)
    if host:
        config.host = host
    if port:
        config.port = port

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--data-dir', default=None, help='Data directory (files/ is served)')
@click.pass_context
def serve(ctx, data_dir):
    """Start a clouddisk server."""
    config = ctx.obj['config']
    if data_dir:
        config.data_dir = Path(data_dir)

    async def run():
        server = DiskServer(
            config.data_dir, host=config.host, port=config.port,
            buffer_size=config.buffer_size,
        )
        await server.start()

        console.print(Panel.fit(
            f"[bold green]clouddisk Server Started[/bold green]\n\n"
            f"Address: [yellow]{config.host}:{server.port}[/yellow]\n"
            f"Serving: [blue]{server.storage.files_dir}[/blue]",
            title="Server Info"
        ))
        console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

        try:
            await server.serve_forever()
        finally:
            await server.stop()
            console.print("[green]Server stopped[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


def _transfer_progress(progress: Progress, task):
    """Progress callback that drives a rich progress bar."""
    def update(p):
        progress.update(
            task,
            completed=p.progress_percent,
            description=f"{p.phase.capitalize()}... "
                        f"({p.completed_ranges}/{p.total_ranges} ranges)"
        )
    return update


def _show_outcome(outcome: TransferOutcome, action: str):
    if outcome.success:
        console.print(f"\n[green]✓ {action} complete: {outcome.artifact}[/green]")
        return

    console.print(f"\n[red]✗ {action} failed ({outcome.failure.value}): {outcome.error}[/red]")
    if outcome.failed_ranges:
        table = Table(title="Failed Ranges")
        table.add_column("Range", justify="right", style="cyan")
        table.add_column("Bytes", style="yellow")
        table.add_column("Attempts", justify="right")
        table.add_column("Cause", style="red")
        for r in outcome.failed_ranges:
            table.add_row(
                str(r.range.index),
                f"{r.range.start}-{r.range.end}",
                str(r.outcome.attempts),
                r.outcome.cause,
            )
        console.print(table)
    raise SystemExit(1)


def _policy_for(config, workers, concurrency):
    policy = config.transfer_policy()
    if workers:
        policy = replace(policy, worker_count=workers)
    if concurrency:
        policy = replace(policy, concurrency_cap=concurrency)
    return policy


@cli.command()
@click.argument('local_path', type=click.Path(exists=True, dir_okay=False))
@click.argument('remote_path')
@click.option('--mode', type=click.Choice(['single', 'multi', 'parallel']),
              default='single', help='Transfer mode')
@click.option('--workers', '-w', type=int, default=None, help='Number of ranges')
@click.option('--concurrency', '-c', type=int, default=None,
              help='Max simultaneous range connections')
@click.pass_context
def upload(ctx, local_path, remote_path, mode, workers, concurrency):
    """Upload a file to the server."""
    config = ctx.obj['config']
    policy = _policy_for(config, workers, concurrency)
    client = DiskClient(config, policy)
    local_path = Path(local_path)

    if mode == 'single':
        ok = asyncio.run(client.upload(local_path, remote_path))
    elif mode == 'multi':
        ok = asyncio.run(client.upload_multi(local_path, remote_path, policy.worker_count))
    else:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            task = progress.add_task("Uploading...", total=100)
            outcome = asyncio.run(client.upload_parallel(
                local_path, remote_path, _transfer_progress(progress, task)
            ))
        _show_outcome(outcome, "Upload")
        return

    if ok:
        console.print(f"[green]✓ Uploaded {local_path} -> {remote_path}[/green]")
    else:
        console.print(f"[red]✗ Upload failed: {local_path}[/red]")
        raise SystemExit(1)


@cli.command()
@click.argument('remote_path')
@click.argument('local_path', type=click.Path(dir_okay=False))
@click.option('--parallel', '-p', is_flag=True, help='Download over parallel ranges')
@click.option('--workers', '-w', type=int, default=None, help='Number of ranges')
@click.option('--concurrency', '-c', type=int, default=None,
              help='Max simultaneous range connections')
@click.pass_context
def download(ctx, remote_path, local_path, parallel, workers, concurrency):
    """Download a file from the server."""
    config = ctx.obj['config']
    client = DiskClient(config, _policy_for(config, workers, concurrency))
    local_path = Path(local_path)

    if not parallel:
        if asyncio.run(client.download(remote_path, local_path)):
            console.print(f"[green]✓ Downloaded to: {local_path}[/green]")
        else:
            console.print(f"[red]✗ Download failed: {remote_path}[/red]")
            raise SystemExit(1)
        return

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        task = progress.add_task("Fetching metadata...", total=100)
        outcome = asyncio.run(client.download_parallel(
            remote_path, local_path, _transfer_progress(progress, task)
        ))
    _show_outcome(outcome, "Download")


@cli.command('list')
@click.pass_context
def list_files(ctx):
    """List files on the server."""
    client = DiskClient(ctx.obj['config'])
    entries = asyncio.run(client.list_files())

    if not entries:
        console.print("[yellow]No files[/yellow]")
        return

    table = Table(title="Remote Files")
    table.add_column("Path", style="cyan")
    table.add_column("Size", justify="right", style="yellow")

    for entry in entries:
        table.add_row(entry.path, format_size(entry.size))

    console.print(table)
    console.print(f"[dim]{len(entries)} files[/dim]")


@cli.command()
@click.argument('remote_path')
@click.pass_context
def stat(ctx, remote_path):
    """Show size and digest of a remote file."""
    client = DiskClient(ctx.obj['config'])
    try:
        info = asyncio.run(client.stat(remote_path))
    except DiskError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)

    if info is None:
        console.print(f"[red]Not found: {remote_path}[/red]")
        raise SystemExit(1)

    console.print(Panel.fit(
        f"Path: [cyan]{info.path}[/cyan]\n"
        f"Size: [yellow]{info.size:,} bytes[/yellow] ({format_size(info.size)})\n"
        f"Digest: [green]{info.digest}[/green]",
        title="Remote File"
    ))


@cli.command('batch-upload')
@click.argument('pairs', nargs=-1, required=True)
@click.pass_context
def batch_upload(ctx, pairs):
    """Upload LOCAL=REMOTE pairs over one connection."""
    client = DiskClient(ctx.obj['config'])
    parsed = [(Path(local), remote) for local, remote in parse_pairs(pairs)]
    results = asyncio.run(client.batch_upload(parsed))
    _show_batch(parsed, results)


@cli.command('batch-download')
@click.argument('pairs', nargs=-1, required=True)
@click.pass_context
def batch_download(ctx, pairs):
    """Download REMOTE=LOCAL pairs over one connection."""
    client = DiskClient(ctx.obj['config'])
    parsed = [(remote, Path(local)) for remote, local in parse_pairs(pairs)]
    results = asyncio.run(client.batch_download(parsed))
    _show_batch(parsed, results)


def _show_batch(pairs, results):
    table = Table(title="Batch Transfer")
    table.add_column("Source", style="cyan")
    table.add_column("Target", style="blue")
    table.add_column("Result")

    for (source, target), ok in zip(pairs, results):
        table.add_row(
            str(source), str(target),
            "[green]ok[/green]" if ok else "[red]failed[/red]"
        )

    console.print(table)
    if not all(results):
        raise SystemExit(1)


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
