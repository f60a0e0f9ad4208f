"""
Embedding-based object tracking over backbone feature volumes.

Implements:
- Reference embedding from a selection of grid cells (mean + L2 norm)
- Per-frame similarity map (projection onto the reference embedding)
- Bilinear upsampling of the similarity map (pixel-centre alignment)
- Threshold and weighted-centroid localization
- Exponential smoothing of the position over time
- An arena of independently tracked objects
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import numpy as np

from lafam.config import TrackingConfig
from lafam.errors import ShapeMismatch
from lafam.volume import FeatureVolume

logger = logging.getLogger(__name__)

NOT_FOUND_POSITION = (-1.0, -1.0)

# Norms at or below this are treated as a zero vector.
ZERO_NORM_EPS = 1e-12


class TrackState(Enum):
    UNSELECTED = "unselected"
    SELECTING = "selecting"
    EMBEDDED = "embedded"
    TRACKING = "tracking"


class TrackStatus(Enum):
    """Per-frame outcome for one tracked object."""

    FOUND = "found"
    NOT_FOUND = "not_found"
    EMBEDDED = "embedded"
    DEGENERATE = "degenerate"
    INACTIVE = "inactive"


@dataclass
class TrackedObject:
    """Selection, reference embedding and position state of one object."""

    id: Hashable
    color: tuple[int, int, int] | None = None
    selected_cells: frozenset[int] = frozenset()
    reference_embedding: np.ndarray | None = None
    previous_position: tuple[float, float] | None = None
    visible: bool = True
    state: TrackState = TrackState.UNSELECTED
    degenerate: bool = False

    @property
    def is_active(self) -> bool:
        return (
            bool(self.selected_cells)
            and self.visible
            and not self.degenerate
            and self.state in (TrackState.EMBEDDED, TrackState.TRACKING)
        )


@dataclass(frozen=True)
class TrackResult:
    id: Hashable
    x: float
    y: float
    status: TrackStatus

    @property
    def found(self) -> bool:
        return self.status is TrackStatus.FOUND

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "x": float(self.x),
            "y": float(self.y),
            "status": self.status.value,
        }


# ============================================================================
# Pure numeric steps
# ============================================================================


def extract_reference_embedding(
    volume: FeatureVolume, cells: Iterable[int]
) -> tuple[np.ndarray | None, bool]:
    """
    Mean channel vector over the selected cells, scaled to unit length.

    Args:
        volume: Feature volume of the frame the selection was made on
        cells: Flat row-major indices into the height x width grid

    Returns:
        (embedding, ok). embedding is None for an empty selection. A
        zero-norm mean is returned unnormalized as a zero vector with
        ok=False.
    """
    cells = sorted(set(int(c) for c in cells))
    if not cells:
        return None, False

    embedding = volume.cell_vectors(cells).astype(np.float64).mean(axis=0)
    norm = float(np.sqrt(np.sum(embedding**2)))
    if norm <= ZERO_NORM_EPS:
        return np.zeros(volume.channels, dtype=np.float32), False

    return (embedding / norm).astype(np.float32), True


def similarity_map(volume: FeatureVolume, embedding: np.ndarray) -> np.ndarray:
    """
    Dot product of each location's channel vector with the embedding.

    Only the reference is unit-norm, so this is a projection rather than a
    cosine similarity.

    Returns:
        Map of shape (H, W)
    """
    embedding = np.asarray(embedding, dtype=np.float64).reshape(-1)
    if embedding.size != volume.channels:
        raise ShapeMismatch(
            f"embedding has {embedding.size} channels, volume has {volume.channels}"
        )
    return np.tensordot(embedding, volume.data.astype(np.float64), axes=1)


def _axis_taps(src_size: int, dst_size: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    coords = (np.arange(dst_size) + 0.5) * (src_size / dst_size) - 0.5
    coords = np.clip(coords, 0, src_size - 1)
    lo = np.floor(coords).astype(np.intp)
    hi = np.minimum(lo + 1, src_size - 1)
    return lo, hi, coords - lo


def upsample_bilinear(values: np.ndarray, size: int) -> np.ndarray:
    """
    Upsample a 2D map to size x size with pixel-centre alignment.

    src = (dst + 0.5) * src_size / dst_size - 0.5, clamped to the map.
    """
    values = np.asarray(values, dtype=np.float64)
    if values.ndim != 2:
        raise ShapeMismatch(f"expected a 2D map, got shape {values.shape}")

    y_lo, y_hi, y_w = _axis_taps(values.shape[0], size)
    x_lo, x_hi, x_w = _axis_taps(values.shape[1], size)

    rows = values[y_lo, :] * (1 - y_w)[:, None] + values[y_hi, :] * y_w[:, None]
    return rows[:, x_lo] * (1 - x_w)[None, :] + rows[:, x_hi] * x_w[None, :]


def weighted_centroid(
    values: np.ndarray, threshold: float
) -> tuple[float, float] | None:
    """
    Centre of mass of the values at or above threshold.

    Coordinates are pixel centres: a lone peak at column x, row y gives
    (x + 0.5, y + 0.5).

    Returns:
        (cx, cy), or None when nothing survives the threshold
    """
    values = np.asarray(values, dtype=np.float64)
    weights = np.where(values < threshold, 0.0, values)
    weights = np.maximum(weights, 0.0)
    total = float(weights.sum())
    if total <= 0:
        return None

    rows, cols = np.indices(weights.shape)
    cx = float(np.sum((cols + 0.5) * weights) / total)
    cy = float(np.sum((rows + 0.5) * weights) / total)
    return cx, cy


def localize(
    sim: np.ndarray, config: TrackingConfig, input_size: int
) -> tuple[float, float] | None:
    """Upsample, threshold and locate a similarity map in input-pixel space."""
    resolution = int(config.target_resolution)
    upsampled = upsample_bilinear(sim, resolution)
    centroid = weighted_centroid(upsampled, config.threshold)
    if centroid is None:
        return None
    scale = input_size / resolution
    return centroid[0] * scale, centroid[1] * scale


def smooth_position(
    previous: tuple[float, float] | None,
    raw: tuple[float, float],
    ema: float,
) -> tuple[float, float]:
    """ema * previous + (1 - ema) * raw; raw is used as-is without a previous."""
    if previous is None or ema <= 0:
        return raw
    return (
        ema * previous[0] + (1 - ema) * raw[0],
        ema * previous[1] + (1 - ema) * raw[1],
    )


def _check_cell_range(
    object_id: Hashable, cells: Iterable[int], grid: tuple[int, int] | None
):
    """Raise ShapeMismatch for cells outside the grid (or negative, if unknown)."""
    if grid is None:
        bad = sorted(c for c in cells if c < 0)
        where = "a feature grid"
    else:
        height, width = grid
        bad = sorted(c for c in cells if c < 0 or c >= height * width)
        where = f"a {height}x{width} grid"
    if bad:
        raise ShapeMismatch(
            f"cells {bad} of object {object_id!r} are out of range for {where}"
        )


# ============================================================================
# Tracked object arena
# ============================================================================


class EmbeddingTracker:
    """
    Independent tracked objects keyed by id.

    Selection changes and per-frame updates must come from one serialized
    loop; nothing here is locked.
    """

    def __init__(self, input_size: int = 224):
        """
        Initialize tracker.

        Args:
            input_size: Side length of the square model input, in pixels.
                Positions are reported in this space.
        """
        self.input_size = input_size
        self.objects: dict[Hashable, TrackedObject] = {}
        # (height, width) of the last processed frame
        self.grid_shape: tuple[int, int] | None = None

    def __len__(self) -> int:
        return len(self.objects)

    def __contains__(self, object_id: Hashable) -> bool:
        return object_id in self.objects

    def get(self, object_id: Hashable) -> TrackedObject:
        try:
            return self.objects[object_id]
        except KeyError:
            raise KeyError(f"no tracked object with id {object_id!r}") from None

    def add(
        self, object_id: Hashable, color: tuple[int, int, int] | None = None
    ) -> TrackedObject:
        """Register an object with an empty selection (returns it if present)."""
        if object_id not in self.objects:
            self.objects[object_id] = TrackedObject(id=object_id, color=color)
        elif color is not None:
            self.objects[object_id].color = color
        return self.objects[object_id]

    def select(
        self,
        object_id: Hashable,
        cells: Iterable[int],
        volume: FeatureVolume | None = None,
        color: tuple[int, int, int] | None = None,
    ) -> TrackedObject:
        """
        Replace an object's cell selection.

        The previous embedding and position are dropped. With a volume the
        embedding is computed right away; otherwise on the next frame.
        Cells are checked against the grid (of ``volume``, or of the last
        frame) before anything changes.
        """
        selected = frozenset(int(c) for c in cells)
        grid = (volume.height, volume.width) if volume is not None else self.grid_shape
        _check_cell_range(object_id, selected, grid)

        obj = self.add(object_id, color)
        obj.selected_cells = selected
        obj.reference_embedding = None
        obj.previous_position = None
        obj.degenerate = False

        if not obj.selected_cells:
            obj.state = TrackState.UNSELECTED
            return obj

        obj.state = TrackState.SELECTING
        if volume is not None:
            self._embed(obj, volume)
        return obj

    def clear_selection(self, object_id: Hashable) -> TrackedObject:
        return self.select(object_id, ())

    def remove(self, object_id: Hashable) -> None:
        self.objects.pop(object_id, None)

    def set_visible(self, object_id: Hashable, visible: bool) -> TrackedObject:
        obj = self.get(object_id)
        obj.visible = bool(visible)
        return obj

    def active_objects(self) -> list[TrackedObject]:
        return [obj for obj in self.objects.values() if obj.is_active]

    def reset(self):
        """Drop every tracked object."""
        self.objects.clear()

    def _embed(self, obj: TrackedObject, volume: FeatureVolume):
        embedding, ok = extract_reference_embedding(volume, obj.selected_cells)
        obj.reference_embedding = embedding
        obj.degenerate = not ok
        if ok:
            obj.state = TrackState.EMBEDDED
        else:
            logger.debug(f"Degenerate embedding for object {obj.id!r}")

    def process_frame(
        self, volume: FeatureVolume, config: TrackingConfig
    ) -> list[TrackResult]:
        """
        Run one frame for every object.

        Args:
            volume: This frame's feature volume
            config: Tracking parameters for this frame

        Returns:
            One result per object, in insertion order
        """
        config = config.validate()

        # Every check runs before any object is touched
        grid = (volume.height, volume.width)
        for obj in self.objects.values():
            emb = obj.reference_embedding
            if emb is not None and emb.size != volume.channels:
                raise ShapeMismatch(
                    f"object {obj.id!r} was embedded with {emb.size} channels, "
                    f"frame has {volume.channels}"
                )
            pending = obj.state is TrackState.SELECTING and not obj.degenerate
            if pending and obj.visible:
                _check_cell_range(obj.id, obj.selected_cells, grid)

        self.grid_shape = grid
        return [self._process_object(obj, volume, config) for obj in self.objects.values()]

    def _process_object(
        self, obj: TrackedObject, volume: FeatureVolume, config: TrackingConfig
    ) -> TrackResult:
        x, y = NOT_FOUND_POSITION

        if not obj.selected_cells or not obj.visible:
            return TrackResult(obj.id, x, y, TrackStatus.INACTIVE)
        if obj.degenerate:
            return TrackResult(obj.id, x, y, TrackStatus.DEGENERATE)

        if obj.state is TrackState.SELECTING:
            self._embed(obj, volume)
            status = TrackStatus.DEGENERATE if obj.degenerate else TrackStatus.EMBEDDED
            return TrackResult(obj.id, x, y, status)

        sim = similarity_map(volume, obj.reference_embedding)
        raw = localize(sim, config, self.input_size)
        if raw is None:
            logger.debug(f"Object {obj.id!r} not found in frame")
            return TrackResult(obj.id, x, y, TrackStatus.NOT_FOUND)

        position = smooth_position(obj.previous_position, raw, config.ema)
        obj.previous_position = position
        obj.state = TrackState.TRACKING
        return TrackResult(obj.id, position[0], position[1], TrackStatus.FOUND)
