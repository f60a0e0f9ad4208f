#!/usr/bin/env python3
"""
Explain a single image: activation heatmap overlay plus top predictions.

Writes the heatmap blended over the square-cropped input and prints the
highest scoring classes. With --class-idx the heatmap is the
class-activation map of those classes instead of the plain average.
"""

from __future__ import annotations

import logging
from pathlib import Path

import cv2
import typer
from rich.console import Console
from rich.table import Table

from lafam.config import PipelineConfig, load_palettes
from lafam.errors import LafamError
from lafam.heatmap import render_heatmap, top_n
from lafam.pipeline import FrameProcessor, HeatmapByClass, Predict, preprocess

from scripts._frames import bgr_to_image, overlay

app = typer.Typer(help="Heatmap explanation for an image file")
console = Console()


@app.command()
def main(
    image_path: Path = typer.Argument(..., help="Input image"),
    output: Path = typer.Option(None, help="Overlay PNG (default: <image>_lafam.png)"),
    palette: str = typer.Option("inferno", help="Palette name, or 'hsl' for the hue ramp"),
    palettes_file: Path = typer.Option(None, help="JSON palettes (default: matplotlib)"),
    class_idx: list[int] = typer.Option(None, help="Explain these classes only"),
    alpha: float = typer.Option(0.5, help="Heatmap opacity"),
    n_top: int = typer.Option(14, help="Number of predictions to list"),
    threshold: float = typer.Option(1.7, help="Minimum logit for a listed prediction"),
    device: str = typer.Option(None, help="torch device"),
) -> None:
    """Render the heatmap overlay and list the top predictions."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    from lafam.torch_engine import TorchvisionEngine

    frame = cv2.imread(str(image_path))
    if frame is None:
        console.print(f"[red]✗ Could not read image[/red] {image_path}")
        raise typer.Exit(1)

    config = PipelineConfig(top_n=n_top, top_n_threshold=threshold, palette=palette)
    colors = None
    if config.palette != "hsl":
        palettes = load_palettes(palettes_file)
        if config.palette not in palettes:
            console.print(
                f"[red]✗ Unknown palette[/red] {config.palette}; "
                f"available: {', '.join(sorted(palettes))}"
            )
            raise typer.Exit(1)
        colors = palettes[config.palette]

    engine = TorchvisionEngine(device=device, input_size=config.input_size)
    processor = FrameProcessor(engine, input_size=config.input_size)

    try:
        cropped, tensor = preprocess(bgr_to_image(frame), config)
        result = processor.handle(Predict(tensor=tensor))
        heatmap = result.heatmap
        if class_idx:
            heatmap = processor.handle(HeatmapByClass(class_idxs=tuple(class_idx))).heatmap
    except LafamError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)

    rendered = render_heatmap(heatmap, cropped.width, palette=colors, hue_base=config.hue_base)
    output = output or image_path.with_name(f"{image_path.stem}_lafam.png")
    cv2.imwrite(str(output), overlay(cropped, rendered, alpha))
    console.print(f"[green]✓ Wrote[/green] {output}")

    categories = getattr(engine, "categories", None)
    table = Table(title="Top predictions")
    table.add_column("#", justify="right")
    table.add_column("Class", justify="right")
    table.add_column("Label")
    table.add_column("Logit", justify="right")
    table.add_column("Probability", justify="right")
    for rank, idx in enumerate(top_n(result.logits, config.top_n, config.top_n_threshold), 1):
        label = categories[idx] if categories else ""
        table.add_row(
            str(rank),
            str(idx),
            label,
            f"{result.logits[idx]:.2f}",
            f"{result.predictions[idx]:.1%}",
        )
    console.print(table)


if __name__ == "__main__":
    app()
