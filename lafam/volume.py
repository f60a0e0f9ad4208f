"""
Feature volumes produced by the backbone, one per inference call.
"""

from __future__ import annotations

from collections.abc import Iterable

import numpy as np

from lafam.errors import NonFiniteValues, ShapeMismatch


class FeatureVolume:
    """Per-location activations, shape (channels, height, width)."""

    def __init__(self, data: np.ndarray):
        data = np.array(data, dtype=np.float32)
        if data.ndim == 4 and data.shape[0] == 1:
            data = data[0]
        if data.ndim != 3:
            raise ShapeMismatch(
                f"expected (channels, height, width), got shape {data.shape}"
            )
        if not np.all(np.isfinite(data)):
            raise NonFiniteValues("feature volume contains NaN or infinite values")
        data.setflags(write=False)
        self._data = data

    @classmethod
    def from_flat(
        cls, buffer: np.ndarray, channels: int, height: int, width: int
    ) -> FeatureVolume:
        """Wrap a flat channel-major buffer (as returned by ONNX/torch)."""
        flat = np.asarray(buffer, dtype=np.float32).reshape(-1)
        if flat.size != channels * height * width:
            raise ShapeMismatch(
                f"buffer has {flat.size} values, expected "
                f"{channels}x{height}x{width}"
            )
        return cls(flat.reshape(channels, height, width))

    @property
    def data(self) -> np.ndarray:
        return self._data

    @property
    def channels(self) -> int:
        return self._data.shape[0]

    @property
    def height(self) -> int:
        return self._data.shape[1]

    @property
    def width(self) -> int:
        return self._data.shape[2]

    @property
    def n_cells(self) -> int:
        return self.height * self.width

    def __repr__(self) -> str:
        return (
            f"FeatureVolume(channels={self.channels}, "
            f"height={self.height}, width={self.width})"
        )

    def _check_cells(self, cells: Iterable[int]) -> np.ndarray:
        idx = np.fromiter((int(c) for c in cells), dtype=np.intp)
        if idx.size and (idx.min() < 0 or idx.max() >= self.n_cells):
            raise ShapeMismatch(
                f"cell index out of range for a {self.height}x{self.width} grid"
            )
        return idx

    def cell_vectors(self, cells: Iterable[int]) -> np.ndarray:
        """
        Channel vectors at the given cells.

        Args:
            cells: Flat row-major indices into the height x width grid

        Returns:
            Array of shape (len(cells), channels)
        """
        idx = self._check_cells(cells)
        return self._data.reshape(self.channels, -1)[:, idx].T

    def mask_cells(self, cells: Iterable[int]) -> FeatureVolume:
        """Copy of the volume with every location outside ``cells`` zeroed."""
        idx = self._check_cells(cells)
        flat = self._data.reshape(self.channels, -1)
        masked = np.zeros_like(flat)
        masked[:, idx] = flat[:, idx]
        return FeatureVolume(masked.reshape(self._data.shape))
