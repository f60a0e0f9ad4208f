"""
Configuration values passed explicitly into each per-frame computation.

Palettes are static data: a JSON object mapping a palette name to a list of
RGB triples, or a set sampled from matplotlib colormaps.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
from matplotlib import colormaps

from lafam.errors import ConfigError

logger = logging.getLogger(__name__)

IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)

DEFAULT_COLORMAPS = ("inferno", "viridis", "magma", "jet", "coolwarm")


@dataclass(frozen=True)
class TrackingConfig:
    """Tracking parameters, read once at the start of each frame."""

    threshold: float = 0.5
    ema: float = 0.75  # 0 = no smoothing, 1 = frozen
    target_resolution: int = 224
    overlay_alpha: float = 0.5  # display only

    def validate(self) -> TrackingConfig:
        if not 0.0 <= self.threshold <= 1.0:
            raise ConfigError(f"threshold must be in [0, 1], got {self.threshold}")
        if not 0.0 <= self.ema <= 1.0:
            raise ConfigError(f"ema must be in [0, 1], got {self.ema}")
        try:
            resolution = int(self.target_resolution)
        except (TypeError, ValueError, OverflowError) as e:
            raise ConfigError(
                f"target_resolution must be a positive integer, got {self.target_resolution}"
            ) from e
        if resolution <= 0:
            raise ConfigError(
                f"target_resolution must be positive, got {self.target_resolution}"
            )
        if not 0.0 <= self.overlay_alpha <= 1.0:
            raise ConfigError(
                f"overlay_alpha must be in [0, 1], got {self.overlay_alpha}"
            )
        return self

    def replace(self, **changes: Any) -> TrackingConfig:
        return dataclasses.replace(self, **changes).validate()

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> TrackingConfig:
        """Build from a (possibly partial) mapping, ignoring unknown keys."""
        raw = raw or {}
        known = {k: raw[k] for k in asdict(cls()) if k in raw}
        try:
            config = cls(
                threshold=float(known.get("threshold", cls.threshold)),
                ema=float(known.get("ema", cls.ema)),
                target_resolution=int(
                    known.get("target_resolution", cls.target_resolution)
                ),
                overlay_alpha=float(known.get("overlay_alpha", cls.overlay_alpha)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid tracking config: {e}") from e
        return config.validate()


@dataclass(frozen=True)
class PipelineConfig:
    """Model-input preparation and prediction display settings."""

    input_size: int = 224
    mean: tuple[float, float, float] = IMAGENET_MEAN
    std: tuple[float, float, float] = IMAGENET_STD
    top_n: int = 14
    top_n_threshold: float = 1.7
    hue_base: float = 20.0
    palette: str = "inferno"
    tracking: TrackingConfig = field(default_factory=TrackingConfig)


def default_palettes(n_colors: int = 16) -> dict[str, list[list[int]]]:
    """Sample a few matplotlib colormaps into RGB palettes."""
    if n_colors < 2:
        raise ConfigError("a palette needs at least two colours")
    palettes = {}
    positions = np.linspace(0.0, 1.0, n_colors)
    for name in DEFAULT_COLORMAPS:
        rgba = colormaps[name](positions)
        palettes[name] = np.rint(rgba[:, :3] * 255).astype(int).tolist()
    return palettes


def validate_palettes(raw: Any) -> dict[str, list[list[int]]]:
    if not isinstance(raw, dict) or not raw:
        raise ConfigError("palette data must be a non-empty JSON object")

    palettes = {}
    for name, colors in raw.items():
        try:
            arr = np.asarray(colors, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"palette {name!r} is not a list of RGB triples") from e
        if arr.ndim != 2 or arr.shape[1] != 3 or arr.shape[0] < 2:
            raise ConfigError(f"palette {name!r} needs at least two RGB triples")
        if not np.all(np.isfinite(arr)) or arr.min() < 0 or arr.max() > 255:
            raise ConfigError(f"palette {name!r} has values outside [0, 255]")
        palettes[str(name)] = arr.astype(int).tolist()
    return palettes


def load_palettes(path: Path | str | None = None) -> dict[str, list[list[int]]]:
    """
    Load palettes from JSON, falling back to the matplotlib defaults.

    Args:
        path: JSON file mapping palette name to RGB triples, or None

    Returns:
        Palette name -> list of [r, g, b]
    """
    if path is None:
        return default_palettes()

    path = Path(path)
    try:
        with open(path) as f:
            raw = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"palette file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"palette file {path} is not valid JSON: {e}") from e

    palettes = validate_palettes(raw)
    logger.info(f"Loaded {len(palettes)} palettes from {path}")
    return palettes
