"""
Heatmap synthesis from backbone feature volumes.

Implements:
- Channel-weighted spatial average (class-activation map when the weights
  come from the classifier's output layer)
- Min-max normalization to [0, 1]
- Colour mapping through a discrete palette or a continuous hue ramp
- Nearest upsampling to display resolution
- Softmax and top-N helpers for the accompanying predictions
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import numpy as np

from lafam.errors import ConfigError, NonFiniteValues, ShapeMismatch
from lafam.image import PlanarImage, round_half_up
from lafam.volume import FeatureVolume

MINMAX_EPS = 1e-6

# Fixed saturation / lightness of the hue ramp, in percent.
HSL_SATURATION = 100.0
HSL_LIGHTNESS = 50.0


def min_max_normalize(values: np.ndarray, eps: float = MINMAX_EPS) -> np.ndarray:
    """Scale to [0, 1]: (v - min) / (max - min + eps)."""
    values = np.asarray(values, dtype=np.float64)
    if values.size == 0:
        raise ShapeMismatch("cannot normalize an empty map")
    if not np.all(np.isfinite(values)):
        raise NonFiniteValues("map contains NaN or infinite values")
    lo = values.min()
    hi = values.max()
    return ((values - lo) / (hi - lo + eps)).astype(np.float32)


def average_heatmap(
    volume: FeatureVolume,
    weights: Sequence[float] | np.ndarray | None = None,
    normalize: bool = True,
) -> np.ndarray:
    """
    Reduce a feature volume to a single 2D map.

    Args:
        volume: Feature volume, shape (C, H, W)
        weights: Optional per-channel weights, shape (C,). Negative weights
            are clamped to zero. Defaults to an unweighted mean.
        normalize: Apply min-max normalization to the result

    Returns:
        Map of shape (H, W); in [0, 1] when normalized
    """
    data = volume.data.astype(np.float64)
    if weights is None:
        w = np.ones(volume.channels, dtype=np.float64)
    else:
        w = np.asarray(weights, dtype=np.float64).reshape(-1)
        if w.size != volume.channels:
            raise ShapeMismatch(
                f"got {w.size} weights for a volume with {volume.channels} channels"
            )
        if not np.all(np.isfinite(w)):
            raise NonFiniteValues("channel weights contain NaN or infinite values")
        w = np.maximum(w, 0.0)

    heatmap = np.tensordot(w, data, axes=1) / volume.channels
    if normalize:
        return min_max_normalize(heatmap)
    return heatmap.astype(np.float32)


def class_weights(
    logits: np.ndarray, class_idxs: Iterable[int], output_weights: np.ndarray
) -> np.ndarray:
    """
    Channel weights for a class-activation map of the selected classes.

    Logits outside ``class_idxs`` are zeroed and the result is projected
    through the classifier weight matrix.

    Args:
        logits: Shape (K,)
        class_idxs: Selected class indices
        output_weights: Classifier weights, shape (K, C)

    Returns:
        Weights of shape (C,)
    """
    logits = np.asarray(logits, dtype=np.float64).reshape(-1)
    output_weights = np.asarray(output_weights, dtype=np.float64)
    if output_weights.ndim != 2 or output_weights.shape[0] != logits.size:
        raise ShapeMismatch(
            f"output weights of shape {output_weights.shape} do not match "
            f"{logits.size} logits"
        )
    idx = np.fromiter((int(i) for i in class_idxs), dtype=np.intp)
    if idx.size and (idx.min() < 0 or idx.max() >= logits.size):
        raise ShapeMismatch("class index out of range")

    selected = np.zeros_like(logits)
    selected[idx] = logits[idx]
    return selected @ output_weights


def softmax(logits: np.ndarray) -> np.ndarray:
    logits = np.asarray(logits, dtype=np.float64)
    exps = np.exp(logits - logits.max())
    return (exps / exps.sum()).astype(np.float32)


def top_n(logits: np.ndarray, n: int, threshold: float = 0.0) -> list[int]:
    """Indices of the n largest logits, stopping at the first below threshold."""
    logits = np.asarray(logits).reshape(-1)
    order = np.argsort(-logits, kind="stable")
    result = []
    for idx in order[:n]:
        if logits[idx] < threshold:
            break
        result.append(int(idx))
    return result


def _as_map(values: np.ndarray) -> np.ndarray:
    values = np.asarray(values, dtype=np.float64)
    if values.ndim != 2:
        raise ShapeMismatch(f"expected a 2D map, got shape {values.shape}")
    if not np.all(np.isfinite(values)):
        raise NonFiniteValues("map contains NaN or infinite values")
    return np.clip(values, 0.0, 1.0)


def hsl_to_rgb(
    h: np.ndarray, saturation: float, lightness: float
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Six-sector HSL to RGB conversion.

    Args:
        h: Hue in degrees, [0, 360)
        saturation: Saturation in percent
        lightness: Lightness in percent

    Returns:
        (r, g, b) arrays in [0, 255], rounded half-up
    """
    h = np.asarray(h, dtype=np.float64)
    s = saturation / 100.0
    light = lightness / 100.0

    chroma = (1 - abs(2 * light - 1)) * s
    x = chroma * (1 - np.abs(np.mod(h / 60.0, 2) - 1))
    m = light - chroma / 2
    zero = np.zeros_like(h)
    c = np.full_like(h, chroma)

    sectors = [
        (h >= 0) & (h < 60),
        (h >= 60) & (h < 120),
        (h >= 120) & (h < 180),
        (h >= 180) & (h < 240),
        (h >= 240) & (h < 300),
    ]
    r = np.select(sectors, [c, x, zero, zero, x], default=c)
    g = np.select(sectors, [x, c, c, x, zero], default=zero)
    b = np.select(sectors, [zero, zero, x, c, c], default=x)

    return (
        round_half_up((r + m) * 255),
        round_half_up((g + m) * 255),
        round_half_up((b + m) * 255),
    )


def map_to_hsl(values: np.ndarray, hue_base: float = 0.0) -> PlanarImage:
    """Colour a [0, 1] map along a hue ramp: hue = (hue_base + 300 v) mod 360."""
    values = _as_map(values)
    hue = np.mod(hue_base + 300.0 * values, 360.0)
    r, g, b = hsl_to_rgb(hue, HSL_SATURATION, HSL_LIGHTNESS)
    return PlanarImage(np.stack([r, g, b]))


def map_to_palette(values: np.ndarray, palette: Sequence[Sequence[float]]) -> PlanarImage:
    """Colour a [0, 1] map through a discrete palette of RGB triples."""
    values = _as_map(values)
    colors = np.asarray(palette, dtype=np.float64)
    if colors.ndim != 2 or colors.shape[1] != 3 or colors.shape[0] < 2:
        raise ConfigError("a palette needs at least two RGB triples")

    idx = round_half_up(values * (colors.shape[0] - 1)).astype(np.intp)
    idx = np.clip(idx, 0, colors.shape[0] - 1)
    return PlanarImage(np.transpose(colors[idx], (2, 0, 1)))


def render_heatmap(
    values: np.ndarray,
    size: int,
    palette: Sequence[Sequence[float]] | None = None,
    hue_base: float = 0.0,
) -> PlanarImage:
    """
    Colour a heatmap and upsample it to a square display size.

    Nearest resampling keeps the cell boundaries crisp.

    Args:
        values: Map in [0, 1], shape (H, W)
        size: Output side length in pixels
        palette: RGB triples; uses the hue ramp when None
        hue_base: Starting hue of the ramp in degrees

    Returns:
        Three-channel image of shape (3, size, size)
    """
    if palette is not None:
        colored = map_to_palette(values, palette)
    else:
        colored = map_to_hsl(values, hue_base)
    return colored.resize(size, size, "nearest")
