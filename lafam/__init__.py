"""
Visual explanation and embedding tracking on CNN feature volumes.
"""

from lafam.config import PipelineConfig, TrackingConfig
from lafam.errors import (
    ChannelCountMismatch,
    ConfigError,
    LafamError,
    NonFiniteValues,
    ShapeMismatch,
    UnsupportedInterpolation,
)
from lafam.heatmap import average_heatmap, map_to_hsl, map_to_palette, render_heatmap
from lafam.image import PlanarImage
from lafam.tracker import EmbeddingTracker, TrackResult, TrackState, TrackStatus
from lafam.volume import FeatureVolume

__version__ = "0.1.0"

__all__ = [
    "ChannelCountMismatch",
    "ConfigError",
    "EmbeddingTracker",
    "FeatureVolume",
    "LafamError",
    "NonFiniteValues",
    "PipelineConfig",
    "PlanarImage",
    "ShapeMismatch",
    "TrackResult",
    "TrackState",
    "TrackStatus",
    "TrackingConfig",
    "UnsupportedInterpolation",
    "average_heatmap",
    "map_to_hsl",
    "map_to_palette",
    "render_heatmap",
]
