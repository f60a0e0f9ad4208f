#!/usr/bin/env python3
"""
Offline tracking through a video file.

Objects are selected as cells of the 7x7 feature grid on the first frame
(``--select name=cell,cell,...``, cells in row-major order) and followed
through the remaining frames. Positions are written as CSV; an annotated
copy of the video is optional.
"""

from __future__ import annotations

import logging
from pathlib import Path

import cv2
import pandas as pd
import typer
from rich.console import Console
from rich.progress import Progress
from rich.table import Table

from lafam.config import PipelineConfig, TrackingConfig
from lafam.errors import LafamError
from lafam.image import round_half_up
from lafam.pipeline import FrameProcessor, SelectCells, Track, preprocess

from scripts._frames import bgr_to_image

app = typer.Typer(help="Track selected feature-grid cells through a video")
console = Console()

MARKER_COLORS = [(0, 0, 255), (0, 255, 0), (255, 0, 0), (0, 255, 255), (255, 0, 255)]


def parse_selection(selection: str) -> tuple[str, tuple[int, ...]]:
    """'name=1,2,3' -> ('name', (1, 2, 3))"""
    name, sep, cells = selection.partition("=")
    if not sep or not name:
        raise typer.BadParameter(f"expected name=cell,cell,... got {selection!r}")
    try:
        return name, tuple(int(c) for c in cells.split(",") if c.strip())
    except ValueError as e:
        raise typer.BadParameter(f"cells must be integers in {selection!r}") from e


def to_frame_coords(
    x: float, y: float, frame_width: int, frame_height: int, input_size: int
) -> tuple[float, float]:
    """Map a model-input position back onto the uncropped frame."""
    size = min(frame_width, frame_height)
    start_x = float(round_half_up((frame_width - size) / 2))
    start_y = float(round_half_up((frame_height - size) / 2))
    scale = size / input_size
    return start_x + x * scale, start_y + y * scale


@app.command()
def main(
    video_path: Path = typer.Argument(..., help="Input video"),
    select: list[str] = typer.Option(..., help="Object selection: name=cell,cell,..."),
    output: Path = typer.Option(None, help="Positions CSV (default: <video>_tracks.csv)"),
    annotate: Path = typer.Option(None, help="Write an annotated video here"),
    threshold: float = typer.Option(0.5, help="Similarity threshold"),
    ema: float = typer.Option(0.75, help="Position smoothing factor"),
    max_frames: int = typer.Option(0, help="Stop after this many frames (0 = all)"),
    device: str = typer.Option(None, help="torch device"),
) -> None:
    """Track the selected objects and log their positions."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    from lafam.torch_engine import TorchvisionEngine

    selections = [parse_selection(s) for s in select]
    try:
        config = PipelineConfig(tracking=TrackingConfig(threshold=threshold, ema=ema).validate())
    except LafamError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)

    cap = cv2.VideoCapture(str(video_path))
    if not cap.isOpened():
        console.print(f"[red]✗ Could not open video[/red] {video_path}")
        raise typer.Exit(1)

    fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
    n_frames = int(cap.get(cv2.CAP_PROP_FRAME_COUNT)) or None
    if max_frames and n_frames:
        n_frames = min(n_frames, max_frames)

    engine = TorchvisionEngine(device=device, input_size=config.input_size)
    processor = FrameProcessor(engine, input_size=config.input_size)

    writer = None
    rows = []
    frame_idx = 0
    try:
        with Progress(console=console) as progress:
            task = progress.add_task("Tracking", total=n_frames)
            while True:
                ok, frame = cap.read()
                if not ok or (max_frames and frame_idx >= max_frames):
                    break
                height, width = frame.shape[:2]

                _, tensor = preprocess(bgr_to_image(frame), config)
                result = processor.handle(Track(tensor=tensor, config=config.tracking))
                if frame_idx == 0:
                    # Embed against the first frame's volume right away
                    for i, (name, cells) in enumerate(selections):
                        color = MARKER_COLORS[i % len(MARKER_COLORS)]
                        processor.handle(SelectCells(object_id=name, cells=cells, color=color))

                for obj in result.objects:
                    fx, fy = (float("nan"), float("nan"))
                    if obj.found:
                        fx, fy = to_frame_coords(obj.x, obj.y, width, height, config.input_size)
                    rows.append(
                        {
                            "frame": frame_idx,
                            "time_s": frame_idx / fps,
                            "id": obj.id,
                            "status": obj.status.value,
                            "x": obj.x,
                            "y": obj.y,
                            "frame_x": fx,
                            "frame_y": fy,
                        }
                    )
                    if obj.found:
                        color = processor.tracker.get(obj.id).color
                        cv2.drawMarker(
                            frame, (int(fx), int(fy)), color,
                            markerType=cv2.MARKER_CROSS, markerSize=24, thickness=2,
                        )

                if annotate is not None:
                    if writer is None:
                        fourcc = cv2.VideoWriter_fourcc(*"mp4v")
                        writer = cv2.VideoWriter(str(annotate), fourcc, fps, (width, height))
                    writer.write(frame)

                frame_idx += 1
                progress.advance(task)
    except LafamError as e:
        console.print(f"[red]✗ Frame {frame_idx}: {e}[/red]")
        raise typer.Exit(1)
    finally:
        cap.release()
        if writer is not None:
            writer.release()

    df = pd.DataFrame(rows, columns=["frame", "time_s", "id", "status", "x", "y", "frame_x", "frame_y"])
    output = output or video_path.with_name(f"{video_path.stem}_tracks.csv")
    df.to_csv(output, index=False)
    console.print(f"[green]✓ Wrote[/green] {output} ({frame_idx} frames)")
    if annotate is not None:
        console.print(f"[green]✓ Wrote[/green] {annotate}")

    summary = Table(title="Tracking summary")
    summary.add_column("Object")
    summary.add_column("Found", justify="right")
    summary.add_column("Not found", justify="right")
    for name, _ in selections:
        counts = df[df["id"] == name]["status"].value_counts()
        summary.add_row(name, str(counts.get("found", 0)), str(counts.get("not_found", 0)))
    console.print(summary)


if __name__ == "__main__":
    app()
