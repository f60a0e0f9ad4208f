"""
Torchvision ResNet-50 inference engine.

The backbone is split after layer4: ``infer`` returns the (2048, 7, 7)
feature volume, ``classify`` applies average pooling and the fc layer.
"""

from __future__ import annotations

import logging

import numpy as np
import torch
import torch.nn as nn
import torchvision.models as models

from lafam.errors import ShapeMismatch
from lafam.volume import FeatureVolume

logger = logging.getLogger(__name__)


class TorchvisionEngine:
    """Frozen ResNet-50 from torchvision, run without gradients."""

    def __init__(self, device: str | None = None, input_size: int = 224):
        """
        Initialize engine.

        Args:
            device: torch device string; picks CUDA when available if None
            input_size: Side length of the square model input
        """
        self.device = torch.device(
            device or ("cuda" if torch.cuda.is_available() else "cpu")
        )
        self.input_size = input_size
        logger.info(f"Loading ResNet-50 on {self.device}")

        weights = models.ResNet50_Weights.DEFAULT
        self.categories: list[str] = list(weights.meta["categories"])
        resnet = models.resnet50(weights=weights)
        resnet.eval()
        for p in resnet.parameters():
            p.requires_grad_(False)

        # Everything up to and including layer4; avgpool and fc form the head
        self.backbone = nn.Sequential(*list(resnet.children())[:-2]).to(self.device)
        self.avgpool = resnet.avgpool.to(self.device)
        self.fc = resnet.fc.to(self.device)

        self.output_weights = self.fc.weight.detach().cpu().numpy()

    def infer(self, tensor: np.ndarray) -> FeatureVolume:
        flat = np.asarray(tensor, dtype=np.float32).reshape(-1)
        expected = 3 * self.input_size * self.input_size
        if flat.size != expected:
            raise ShapeMismatch(
                f"input tensor has {flat.size} values, expected {expected}"
            )
        x = torch.from_numpy(
            flat.reshape(1, 3, self.input_size, self.input_size).copy()
        )
        with torch.no_grad():
            activations = self.backbone(x.to(self.device))
        return FeatureVolume(activations[0].cpu().numpy())

    def classify(self, volume: FeatureVolume) -> np.ndarray:
        x = torch.from_numpy(volume.data.copy()).unsqueeze(0)
        with torch.no_grad():
            pooled = torch.flatten(self.avgpool(x.to(self.device)), 1)
            logits = self.fc(pooled)
        return logits[0].cpu().numpy()
