"""OpenCV frame helpers shared by the offline scripts."""

from __future__ import annotations

import cv2
import numpy as np

from lafam.image import PlanarImage


def bgr_to_image(frame: np.ndarray) -> PlanarImage:
    """OpenCV BGR frame -> planar RGB image."""
    return PlanarImage.from_image_data(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))


def image_to_bgr(image: PlanarImage) -> np.ndarray:
    rgb = np.ascontiguousarray(image.to_image_data()[:, :, :3])
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)


def overlay(base: PlanarImage, heat: PlanarImage, alpha: float) -> np.ndarray:
    """Blend a rendered heatmap over the base image; returns a BGR frame."""
    base_bgr = image_to_bgr(base)
    heat_bgr = image_to_bgr(heat)
    if heat_bgr.shape[:2] != base_bgr.shape[:2]:
        heat_bgr = cv2.resize(
            heat_bgr, (base_bgr.shape[1], base_bgr.shape[0]),
            interpolation=cv2.INTER_NEAREST,
        )
    return cv2.addWeighted(base_bgr, 1.0 - alpha, heat_bgr, alpha, 0.0)
