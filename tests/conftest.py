import sys
from pathlib import Path

import numpy as np
import pytest

# Add repository root to sys.path so 'lafam' can be imported in tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lafam.volume import FeatureVolume  # noqa: E402


class FakeEngine:
    """Backbone stand-in: returns a preset volume, classifies by avg-pool + linear."""

    def __init__(self, volume: np.ndarray, output_weights: np.ndarray):
        self.volume = FeatureVolume(volume)
        self.output_weights = np.asarray(output_weights, dtype=np.float32)
        self.infer_calls = 0

    def infer(self, tensor: np.ndarray) -> FeatureVolume:
        self.infer_calls += 1
        return self.volume

    def classify(self, volume: FeatureVolume) -> np.ndarray:
        pooled = volume.data.mean(axis=(1, 2))
        return self.output_weights @ pooled


@pytest.fixture
def grid_volume() -> np.ndarray:
    """4 channels on a 3x3 grid: channel 0 lights cell 0, channel 1 the rest."""
    data = np.zeros((4, 3, 3), dtype=np.float32)
    data[0, 0, 0] = 1.0
    data[1] = 1.0
    data[1, 0, 0] = 0.0
    return data


@pytest.fixture
def fake_engine(grid_volume) -> FakeEngine:
    # Three classes, class k reads channel k
    return FakeEngine(grid_volume, np.eye(4, dtype=np.float32)[:3])
