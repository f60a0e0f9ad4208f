"""
Inference engine contract.

The backbone is an external collaborator: anything that maps a model-input
tensor to a feature volume and a feature volume to class logits.
"""

from __future__ import annotations

from typing import Protocol

import numpy as np

from lafam.volume import FeatureVolume


class InferenceEngine(Protocol):
    """What the pipeline needs from a backbone."""

    output_weights: np.ndarray  # (n_classes, channels)

    def infer(self, tensor: np.ndarray) -> FeatureVolume: ...

    def classify(self, volume: FeatureVolume) -> np.ndarray: ...
