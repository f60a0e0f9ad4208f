"""PlanarImage crop, resize, normalization and layout conversion tests."""

from __future__ import annotations

import numpy as np
import pytest

from lafam.config import IMAGENET_MEAN, IMAGENET_STD
from lafam.errors import (
    ChannelCountMismatch,
    ConfigError,
    NonFiniteValues,
    ShapeMismatch,
    UnsupportedInterpolation,
)
from lafam.image import PlanarImage, round_half_up


def make_rgb(width: int, height: int, seed: int = 0) -> PlanarImage:
    rng = np.random.default_rng(seed)
    return PlanarImage(rng.integers(0, 256, size=(3, height, width)).astype(np.float32))


class TestConstruction:
    def test_rejects_non_planar_shapes(self):
        with pytest.raises(ShapeMismatch):
            PlanarImage(np.zeros((4, 4)))

    def test_rejects_nan(self):
        data = np.zeros((1, 2, 2))
        data[0, 1, 1] = np.nan
        with pytest.raises(NonFiniteValues):
            PlanarImage(data)

    def test_buffer_is_read_only(self):
        image = make_rgb(3, 2)
        assert not image.channels.flags.writeable
        assert (image.n_channels, image.height, image.width) == (3, 2, 3)

    def test_from_channels_checks_length(self):
        with pytest.raises(ShapeMismatch):
            PlanarImage.from_channels([np.zeros(5)], width=2, height=2)

    def test_from_flat_rgba_drops_alpha(self):
        pixels = np.array([10, 20, 30, 255, 40, 50, 60, 128], dtype=np.uint8)
        image = PlanarImage.from_image_data(pixels, width=2, height=1)

        assert image.n_channels == 3
        np.testing.assert_array_equal(image.channels[0], [[10, 40]])
        np.testing.assert_array_equal(image.channels[2], [[30, 60]])

    def test_flat_rgba_size_mismatch(self):
        with pytest.raises(ShapeMismatch):
            PlanarImage.from_image_data(np.zeros(7, dtype=np.uint8), width=2, height=1)


class TestSquareCrop:
    def test_landscape_crop_is_centred(self):
        columns = np.tile(np.arange(5, dtype=np.float32), (3, 1))
        image = PlanarImage(columns[None])

        cropped = image.square_crop()

        assert (cropped.width, cropped.height) == (3, 3)
        np.testing.assert_array_equal(cropped.channels[0, 0], [1, 2, 3])

    def test_half_pixel_offset_rounds_up(self):
        columns = np.tile(np.arange(6, dtype=np.float32), (3, 1))
        cropped = PlanarImage(columns[None]).square_crop()
        np.testing.assert_array_equal(cropped.channels[0, 0], [2, 3, 4])

    def test_portrait_crop(self):
        rows = np.tile(np.arange(5, dtype=np.float32)[:, None], (1, 2))
        cropped = PlanarImage(rows[None]).square_crop()
        np.testing.assert_array_equal(cropped.channels[0, :, 0], [2, 3])


class TestResize:
    @pytest.mark.parametrize("mode", ["nearest", "bilinear"])
    def test_same_size_is_identity(self, mode):
        image = make_rgb(5, 4)
        resized = image.resize(5, 4, mode)
        np.testing.assert_array_equal(resized.channels, image.channels)

    def test_nearest_downsample_picks_centres(self):
        image = PlanarImage(np.arange(16, dtype=np.float32).reshape(1, 4, 4))
        resized = image.resize(2, 2, "nearest")
        np.testing.assert_array_equal(resized.channels[0], [[5, 7], [13, 15]])

    def test_bilinear_upsample_clamps_last_neighbour(self):
        image = PlanarImage(np.array([[[0.0, 10.0]]]))
        resized = image.resize(4, 1, "bilinear")
        np.testing.assert_allclose(resized.channels[0, 0], [0, 5, 10, 10])
        assert np.all(np.isfinite(resized.channels))

    def test_unsupported_mode(self):
        with pytest.raises(UnsupportedInterpolation):
            make_rgb(2, 2).resize(4, 4, "bicubic")

    def test_unsupported_mode_is_value_error(self):
        with pytest.raises(ValueError):
            make_rgb(2, 2).resize(4, 4, "lanczos")


class TestNormalize:
    def test_round_trip(self):
        image = make_rgb(6, 5, seed=3)
        restored = image.normalize(IMAGENET_MEAN, IMAGENET_STD).denormalize(
            IMAGENET_MEAN, IMAGENET_STD
        )
        np.testing.assert_allclose(restored.channels, image.channels, atol=1e-3)

    def test_white_pixel_value(self):
        image = PlanarImage(np.full((3, 1, 1), 255.0))
        out = image.normalize(IMAGENET_MEAN, IMAGENET_STD)
        expected = (1.0 - np.array(IMAGENET_MEAN)) / np.array(IMAGENET_STD)
        np.testing.assert_allclose(out.channels[:, 0, 0], expected, rtol=1e-6)

    def test_single_channel_rejected(self):
        with pytest.raises(ChannelCountMismatch):
            PlanarImage(np.zeros((1, 2, 2))).normalize(IMAGENET_MEAN, IMAGENET_STD)

    def test_short_mean_rejected(self):
        with pytest.raises(ChannelCountMismatch):
            make_rgb(2, 2).normalize((0.5, 0.5), IMAGENET_STD)

    def test_zero_std_rejected(self):
        with pytest.raises(ConfigError):
            make_rgb(2, 2).normalize(IMAGENET_MEAN, (0.2, 0.0, 0.2))


class TestLayout:
    def test_tensor_is_channel_major(self):
        image = PlanarImage(np.arange(12, dtype=np.float32).reshape(3, 2, 2))
        tensor = image.to_tensor()

        assert tensor.shape == (12,)
        np.testing.assert_array_equal(tensor, np.arange(12))
        back = PlanarImage.from_tensor(tensor, 3, width=2, height=2)
        np.testing.assert_array_equal(back.channels, image.channels)

    def test_image_data_clamps_and_sets_alpha(self):
        image = PlanarImage(np.array([[[-5.0, 300.0]], [[10.4, 10.6]], [[0.0, 255.0]]]))
        rgba = image.to_image_data()

        assert rgba.dtype == np.uint8
        assert rgba.shape == (1, 2, 4)
        np.testing.assert_array_equal(rgba[0, :, 0], [0, 255])
        np.testing.assert_array_equal(rgba[0, :, 1], [10, 11])
        np.testing.assert_array_equal(rgba[0, :, 3], [255, 255])


def test_round_half_up_ties():
    np.testing.assert_array_equal(round_half_up([0.5, 1.5, 2.5, -0.5]), [1, 2, 3, 0])
