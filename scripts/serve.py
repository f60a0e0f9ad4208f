"""
WebSocket worker for live heatmap explanation and object tracking.

Clients stream captured frames and receive classifications, heatmaps and
tracked positions back on the same connection.
"""

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lafam.config import PipelineConfig, TrackingConfig
from lafam.grouping import ClassGrouper
from lafam.server import TrackingServer

app = typer.Typer(help="LaFAM explanation and tracking worker")
console = Console()


@app.command()
def main(
    port: int = typer.Option(8770, help="WebSocket port"),
    host: str = typer.Option("localhost", help="Host to bind to"),
    device: str = typer.Option(None, help="torch device (default: cuda if available)"),
    threshold: float = typer.Option(0.5, help="Default similarity threshold"),
    ema: float = typer.Option(0.75, help="Default position smoothing factor"),
    groups: Path = typer.Option(None, help="JSON file of class groups to include"),
    exclude_groups: Path = typer.Option(None, help="JSON file of class groups to exclude"),
    log_level: str = typer.Option("INFO", help="Logging level"),
) -> None:
    """Start the explanation and tracking worker."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    # Imported here so --help works without loading torch
    from lafam.torch_engine import TorchvisionEngine

    config = PipelineConfig(tracking=TrackingConfig(threshold=threshold, ema=ema).validate())
    grouper = ClassGrouper.from_json(groups, exclude_groups) if groups else None

    console.print()
    console.print(
        Panel(
            "[bold cyan]LaFAM Worker[/bold cyan]",
            border_style="cyan",
            expand=False,
        )
    )
    console.print()

    config_table = Table(show_header=False, box=None, padding=(0, 1))
    config_table.add_row("[dim]WebSocket[/dim]", f"[cyan]ws://{host}:{port}[/cyan]")
    config_table.add_row("[dim]Input size[/dim]", str(config.input_size))
    config_table.add_row(
        "[dim]Tracking[/dim]",
        f"threshold={config.tracking.threshold} ema={config.tracking.ema}",
    )
    config_table.add_row(
        "[dim]Class groups[/dim]",
        str(groups) if groups else "[dim]none[/dim]",
    )
    console.print(config_table)
    console.print()

    engine = TorchvisionEngine(device=device, input_size=config.input_size)
    server = TrackingServer(engine, host=host, port=port, config=config, grouper=grouper)

    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]⚠[/yellow] Shutting down...")


if __name__ == "__main__":
    app()
