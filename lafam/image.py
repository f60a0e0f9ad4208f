"""
Planar image buffers and the transforms that prepare them for the backbone.

Handles:
- Square centre crop
- Nearest and bilinear resize
- Per-channel normalization (and its inverse, for inspection)
- Layout conversion: interleaved pixels <-> planar channels <-> flat tensor
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from lafam.errors import (
    ChannelCountMismatch,
    ConfigError,
    NonFiniteValues,
    ShapeMismatch,
    UnsupportedInterpolation,
)

INTERPOLATION_MODES = ("nearest", "bilinear")


def round_half_up(values: np.ndarray | float) -> np.ndarray:
    """Round to nearest with ties going towards +infinity."""
    return np.floor(np.asarray(values, dtype=np.float64) + 0.5)


class PlanarImage:
    """
    Fixed-size multi-channel 2D buffer, channel-major.

    Every transform returns a new instance; the underlying array is
    read-only once constructed.
    """

    def __init__(self, channels: np.ndarray):
        """
        Args:
            channels: Shape (n_channels, height, width)
        """
        data = np.array(channels, dtype=np.float32)
        if data.ndim != 3:
            raise ShapeMismatch(
                f"expected (channels, height, width), got shape {data.shape}"
            )
        if not np.all(np.isfinite(data)):
            raise NonFiniteValues("image contains NaN or infinite values")
        data.setflags(write=False)
        self._channels = data

    @classmethod
    def from_channels(
        cls, channels: Sequence[np.ndarray], width: int, height: int
    ) -> PlanarImage:
        """Build from a list of flat row-major channel arrays."""
        stacked = []
        for i, channel in enumerate(channels):
            flat = np.asarray(channel, dtype=np.float32).reshape(-1)
            if flat.size != width * height:
                raise ShapeMismatch(
                    f"channel {i} has {flat.size} values, expected {width * height}"
                )
            stacked.append(flat.reshape(height, width))
        if not stacked:
            raise ShapeMismatch("an image needs at least one channel")
        return cls(np.stack(stacked))

    @classmethod
    def from_image_data(
        cls,
        pixels: np.ndarray,
        width: int | None = None,
        height: int | None = None,
    ) -> PlanarImage:
        """
        Convert interleaved pixels to a planar RGB image.

        Args:
            pixels: Shape (height, width, 3 or 4), or a flat RGBA buffer
                (canvas ImageData layout) together with width and height
            width: Required for flat input
            height: Required for flat input

        Returns:
            Three-channel image; an alpha channel is dropped
        """
        pixels = np.asarray(pixels)
        if pixels.ndim == 1:
            if width is None or height is None:
                raise ShapeMismatch("flat pixel buffers need width and height")
            if pixels.size != width * height * 4:
                raise ShapeMismatch(
                    f"flat RGBA buffer has {pixels.size} values, "
                    f"expected {width * height * 4}"
                )
            pixels = pixels.reshape(height, width, 4)
        if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
            raise ShapeMismatch(
                f"expected (height, width, 3|4) pixels, got shape {pixels.shape}"
            )
        return cls(np.transpose(pixels[:, :, :3], (2, 0, 1)))

    @classmethod
    def from_tensor(
        cls, tensor: np.ndarray, n_channels: int, width: int, height: int
    ) -> PlanarImage:
        """Inverse of ``to_tensor``."""
        flat = np.asarray(tensor, dtype=np.float32).reshape(-1)
        if flat.size != n_channels * width * height:
            raise ShapeMismatch(
                f"tensor has {flat.size} values, expected "
                f"{n_channels}x{height}x{width}"
            )
        return cls(flat.reshape(n_channels, height, width))

    @property
    def channels(self) -> np.ndarray:
        return self._channels

    @property
    def n_channels(self) -> int:
        return self._channels.shape[0]

    @property
    def height(self) -> int:
        return self._channels.shape[1]

    @property
    def width(self) -> int:
        return self._channels.shape[2]

    def __repr__(self) -> str:
        return (
            f"PlanarImage(n_channels={self.n_channels}, "
            f"width={self.width}, height={self.height})"
        )

    # ------------------------------------------------------------------
    # Resampling
    # ------------------------------------------------------------------

    def square_crop(self) -> PlanarImage:
        """Centre crop to a square of side min(width, height)."""
        size = min(self.width, self.height)
        start_x = int(round_half_up((self.width - size) / 2))
        start_y = int(round_half_up((self.height - size) / 2))
        return PlanarImage(
            self._channels[:, start_y : start_y + size, start_x : start_x + size]
        )

    def resize(
        self, new_width: int, new_height: int, interpolation: str = "bilinear"
    ) -> PlanarImage:
        """
        Resize every channel.

        Args:
            new_width: Target width in pixels
            new_height: Target height in pixels
            interpolation: "nearest" or "bilinear"

        Returns:
            Resized image with the same channel count
        """
        if interpolation not in INTERPOLATION_MODES:
            raise UnsupportedInterpolation(
                f"interpolation method {interpolation!r} is not supported"
            )
        if new_width <= 0 or new_height <= 0:
            raise ShapeMismatch(f"invalid target size {new_width}x{new_height}")

        x_ratio = self.width / new_width
        y_ratio = self.height / new_height

        if interpolation == "nearest":
            return PlanarImage(self._nearest(new_width, new_height, x_ratio, y_ratio))
        return PlanarImage(self._bilinear(new_width, new_height, x_ratio, y_ratio))

    def _nearest(
        self, new_width: int, new_height: int, x_ratio: float, y_ratio: float
    ) -> np.ndarray:
        xs = np.floor((np.arange(new_width) + 0.5) * x_ratio).astype(np.intp)
        ys = np.floor((np.arange(new_height) + 0.5) * y_ratio).astype(np.intp)
        xs = np.minimum(xs, self.width - 1)
        ys = np.minimum(ys, self.height - 1)
        return self._channels[:, ys[:, None], xs[None, :]]

    def _bilinear(
        self, new_width: int, new_height: int, x_ratio: float, y_ratio: float
    ) -> np.ndarray:
        # Sample positions follow x * ratio (corner aligned), not pixel centres.
        x_src = np.arange(new_width) * x_ratio
        y_src = np.arange(new_height) * y_ratio

        x_lo = np.floor(x_src).astype(np.intp)
        y_lo = np.floor(y_src).astype(np.intp)
        x_weight = x_src - x_lo
        y_weight = y_src - y_lo

        x_hi = np.minimum(np.ceil(x_src).astype(np.intp), self.width - 1)
        y_hi = np.minimum(np.ceil(y_src).astype(np.intp), self.height - 1)
        x_lo = np.minimum(x_lo, self.width - 1)
        y_lo = np.minimum(y_lo, self.height - 1)

        src = self._channels.astype(np.float64)
        top_left = src[:, y_lo[:, None], x_lo[None, :]]
        top_right = src[:, y_lo[:, None], x_hi[None, :]]
        bottom_left = src[:, y_hi[:, None], x_lo[None, :]]
        bottom_right = src[:, y_hi[:, None], x_hi[None, :]]

        xw = x_weight[None, None, :]
        yw = y_weight[None, :, None]
        top = top_left + (top_right - top_left) * xw
        bottom = bottom_left + (bottom_right - bottom_left) * xw
        return top + (bottom - top) * yw

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize(self, mean: Sequence[float], std: Sequence[float]) -> PlanarImage:
        """Map [0, 255] pixel values to model input: (v / 255 - mean) / std."""
        mean_arr, std_arr = self._check_affine(mean, std)
        out = (self._channels.astype(np.float64) / 255.0 - mean_arr) / std_arr
        return PlanarImage(out)

    def denormalize(self, mean: Sequence[float], std: Sequence[float]) -> PlanarImage:
        """Inverse of ``normalize``, for inspecting model input."""
        mean_arr, std_arr = self._check_affine(mean, std)
        out = (self._channels.astype(np.float64) * std_arr + mean_arr) * 255.0
        return PlanarImage(out)

    def _check_affine(
        self, mean: Sequence[float], std: Sequence[float]
    ) -> tuple[np.ndarray, np.ndarray]:
        if len(mean) != 3 or len(std) != 3:
            raise ChannelCountMismatch(
                "mean and standard deviation must each have 3 elements"
            )
        if self.n_channels != 3:
            raise ChannelCountMismatch(
                f"normalization needs 3 channels, image has {self.n_channels}"
            )
        std_arr = np.asarray(std, dtype=np.float64)
        if np.any(std_arr == 0):
            raise ConfigError("standard deviation must be non-zero")
        mean_arr = np.asarray(mean, dtype=np.float64)
        return mean_arr[:, None, None], std_arr[:, None, None]

    # ------------------------------------------------------------------
    # Layout conversion
    # ------------------------------------------------------------------

    def to_tensor(self) -> np.ndarray:
        """Flat channel-major float32 buffer, length n_channels*height*width."""
        return self._channels.reshape(-1).copy()

    def to_image_data(self) -> np.ndarray:
        """
        Interleaved RGBA pixels, shape (height, width, 4), dtype uint8.

        Values are clamped to [0, 255]; alpha is fully opaque.
        """
        rgba = np.zeros((self.height, self.width, 4), dtype=np.uint8)
        n = min(self.n_channels, 3)
        clamped = np.clip(np.rint(self._channels[:n]), 0, 255).astype(np.uint8)
        rgba[:, :, :n] = np.transpose(clamped, (1, 2, 0))
        rgba[:, :, 3] = 255
        return rgba
