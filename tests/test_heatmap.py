"""Heatmap synthesis, colour mapping and prediction helper tests."""

from __future__ import annotations

import numpy as np
import pytest

from lafam.errors import ConfigError, NonFiniteValues, ShapeMismatch
from lafam.heatmap import (
    MINMAX_EPS,
    average_heatmap,
    class_weights,
    map_to_hsl,
    map_to_palette,
    min_max_normalize,
    render_heatmap,
    softmax,
    top_n,
)
from lafam.volume import FeatureVolume


def two_channel_volume() -> FeatureVolume:
    # channel 0: [0, 2], channel 1: [0, 4] on a 1x2 grid
    return FeatureVolume(np.array([[[0.0, 2.0]], [[0.0, 4.0]]]))


class TestAverageHeatmap:
    def test_bounds(self):
        rng = np.random.default_rng(7)
        volume = FeatureVolume(rng.normal(size=(32, 7, 7)))

        heatmap = average_heatmap(volume)

        assert heatmap.shape == (7, 7)
        assert heatmap.min() == 0.0
        assert heatmap.max() <= 1.0
        assert heatmap.max() > 0.99

    def test_unweighted_mean(self):
        raw = average_heatmap(two_channel_volume(), normalize=False)
        np.testing.assert_allclose(raw, [[0.0, 3.0]])

    def test_normalized_uses_epsilon(self):
        heatmap = average_heatmap(two_channel_volume())
        np.testing.assert_allclose(heatmap, [[0.0, 3.0 / (3.0 + MINMAX_EPS)]], rtol=1e-6)

    def test_negative_weights_are_clamped(self):
        raw = average_heatmap(two_channel_volume(), weights=[1.0, -1.0], normalize=False)
        np.testing.assert_allclose(raw, [[0.0, 1.0]])

    def test_weight_count_mismatch(self):
        with pytest.raises(ShapeMismatch):
            average_heatmap(two_channel_volume(), weights=[1.0, 1.0, 1.0])

    def test_constant_volume_maps_to_zero(self):
        heatmap = average_heatmap(FeatureVolume(np.ones((3, 4, 4))))
        np.testing.assert_array_equal(heatmap, np.zeros((4, 4)))


class TestMinMax:
    def test_empty(self):
        with pytest.raises(ShapeMismatch):
            min_max_normalize(np.array([]))

    def test_nan(self):
        with pytest.raises(NonFiniteValues):
            min_max_normalize(np.array([0.0, np.nan]))


class TestPalette:
    def test_index_rounding(self):
        palette = [[0, 0, 0], [100, 100, 100], [200, 200, 200]]
        colored = map_to_palette(np.array([[0.0, 0.5, 1.0]]), palette)
        np.testing.assert_array_equal(colored.channels[0, 0], [0, 100, 200])

    def test_midpoint_rounds_up(self):
        colored = map_to_palette(np.array([[0.5]]), [[0, 0, 0], [255, 0, 0]])
        np.testing.assert_array_equal(colored.channels[:, 0, 0], [255, 0, 0])

    def test_out_of_range_values_are_clipped(self):
        colored = map_to_palette(np.array([[-1.0, 2.0]]), [[1, 2, 3], [4, 5, 6]])
        np.testing.assert_array_equal(colored.channels[:, 0, 0], [1, 2, 3])
        np.testing.assert_array_equal(colored.channels[:, 0, 1], [4, 5, 6])

    def test_single_colour_palette_rejected(self):
        with pytest.raises(ConfigError):
            map_to_palette(np.zeros((2, 2)), [[255, 255, 255]])

    def test_non_2d_map_rejected(self):
        with pytest.raises(ShapeMismatch):
            map_to_palette(np.zeros(4), [[0, 0, 0], [1, 1, 1]])


class TestHueRamp:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (0.0, (255, 0, 0)),
            (0.4, (0, 255, 0)),
            (0.8, (0, 0, 255)),
        ],
    )
    def test_primary_hues(self, value, expected):
        colored = map_to_hsl(np.array([[value]]))
        assert tuple(colored.channels[:, 0, 0].astype(int)) == expected

    def test_hue_base_shifts_ramp(self):
        colored = map_to_hsl(np.array([[0.0]]), hue_base=20.0)
        assert tuple(colored.channels[:, 0, 0].astype(int)) == (255, 85, 0)

    def test_output_in_byte_range(self):
        values = np.linspace(0, 1, 50).reshape(5, 10)
        channels = map_to_hsl(values, hue_base=20.0).channels
        assert channels.min() >= 0
        assert channels.max() <= 255


class TestRender:
    def test_nearest_blocks(self):
        values = np.zeros((7, 7))
        values[0, 0] = 1.0
        palette = [[0, 0, 0], [255, 255, 255]]

        rendered = render_heatmap(values, 224, palette=palette)

        assert (rendered.n_channels, rendered.height, rendered.width) == (3, 224, 224)
        assert np.all(rendered.channels[:, :32, :32] == 255)
        assert np.all(rendered.channels[:, 32:, :] == 0)


class TestPredictions:
    def test_softmax_sums_to_one(self):
        probs = softmax(np.array([1.0, 2.0, 3.0, 1000.0]))
        assert probs.sum() == pytest.approx(1.0, abs=1e-6)
        assert int(np.argmax(probs)) == 3

    def test_top_n_order(self):
        assert top_n(np.array([1.0, 5.0, 3.0, 2.0]), 2) == [1, 2]

    def test_top_n_threshold_stops_early(self):
        assert top_n(np.array([1.0, 5.0, 3.0, 2.0]), 4, threshold=2.5) == [1, 2]

    def test_class_weights_projects_selected_logits(self):
        output_weights = np.array([[1.0, 1.0, 1.0], [1.0, 2.0, 3.0]])
        weights = class_weights(np.array([2.0, 3.0]), [1], output_weights)
        np.testing.assert_allclose(weights, [3.0, 6.0, 9.0])

    def test_class_weights_index_out_of_range(self):
        with pytest.raises(ShapeMismatch):
            class_weights(np.zeros(2), [5], np.zeros((2, 3)))
