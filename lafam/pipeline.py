"""
Per-frame request handling around an inference engine.

Handles:
- Model-input preparation (square crop, resize, normalize, flatten)
- Classification with the unweighted activation heatmap
- Class-weighted heatmaps for selected classes
- Classification restricted to selected grid cells
- Per-cell classification and the derived class/group maps
- Tracking requests and tracked-object selection changes
"""

from __future__ import annotations

import logging
from collections.abc import Hashable
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from lafam.config import PipelineConfig, TrackingConfig
from lafam.engine import InferenceEngine
from lafam.errors import LafamError
from lafam.grouping import BoundingBox, ClassGrouper, find_areas, find_bounding_boxes
from lafam.heatmap import average_heatmap, class_weights, min_max_normalize, softmax
from lafam.image import PlanarImage
from lafam.tracker import EmbeddingTracker, TrackResult, TrackState
from lafam.volume import FeatureVolume

logger = logging.getLogger(__name__)


def preprocess(
    image: PlanarImage, config: PipelineConfig
) -> tuple[PlanarImage, np.ndarray]:
    """
    Prepare a captured frame for the backbone.

    Returns:
        (cropped, tensor): the square crop for display and the flat
        normalized model input of length 3 * input_size**2
    """
    cropped = image.square_crop()
    model_input = cropped.resize(
        config.input_size, config.input_size, "bilinear"
    ).normalize(config.mean, config.std)
    return cropped, model_input.to_tensor()


# ============================================================================
# Frame context and requests
# ============================================================================


@dataclass(frozen=True)
class FrameContext:
    """Outputs of the last inference call, shared by follow-up requests."""

    volume: FeatureVolume
    logits: np.ndarray | None = None


@dataclass(frozen=True)
class Predict:
    tensor: np.ndarray


@dataclass(frozen=True)
class HeatmapByClass:
    class_idxs: tuple[int, ...]


@dataclass(frozen=True)
class ClassByHeatmap:
    cells: tuple[int, ...]


@dataclass(frozen=True)
class CellClasses:
    tensor: np.ndarray


@dataclass(frozen=True)
class Track:
    tensor: np.ndarray
    config: TrackingConfig = field(default_factory=TrackingConfig)


@dataclass(frozen=True)
class SelectCells:
    object_id: Hashable
    cells: tuple[int, ...]
    color: tuple[int, int, int] | None = None


@dataclass(frozen=True)
class RemoveObject:
    object_id: Hashable


Request = (
    Predict | HeatmapByClass | ClassByHeatmap | CellClasses | Track | SelectCells | RemoveObject
)


# ============================================================================
# Results
# ============================================================================


@dataclass(frozen=True)
class ClassificationResult:
    heatmap: np.ndarray  # (H, W) in [0, 1]
    predictions: np.ndarray  # softmax
    logits: np.ndarray

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "results",
            "heatmap": self.heatmap.reshape(-1).tolist(),
            "predictions": self.predictions.tolist(),
            "logits": self.logits.tolist(),
        }


@dataclass(frozen=True)
class HeatmapResult:
    heatmap: np.ndarray

    def to_dict(self) -> dict[str, Any]:
        return {"type": "weighted_heatmap", "heatmap": self.heatmap.reshape(-1).tolist()}


@dataclass(frozen=True)
class PredictionsResult:
    predictions: np.ndarray
    logits: np.ndarray

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "class_by_heatmap",
            "predictions": self.predictions.tolist(),
            "logits": self.logits.tolist(),
        }


@dataclass(frozen=True)
class CellClassesResult:
    logits: np.ndarray  # (H, W) best logit per cell
    class_ids: np.ndarray  # (H, W) argmax class per cell

    def class_heatmap(self) -> np.ndarray:
        return min_max_normalize(self.class_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "cell_classes",
            "logits": self.logits.reshape(-1).tolist(),
            "class_ids": self.class_ids.reshape(-1).tolist(),
        }


@dataclass(frozen=True)
class GroupMapResult:
    group_ids: np.ndarray  # (H, W), -1 where ungrouped
    heatmap: np.ndarray
    boxes: list[BoundingBox]

    def to_dict(self, grouper: ClassGrouper | None = None) -> dict[str, Any]:
        boxes = []
        for box in self.boxes:
            entry = {
                "group_id": box.group_id,
                "top_left": list(box.top_left),
                "bottom_right": list(box.bottom_right),
            }
            if grouper is not None:
                entry["name"] = grouper.group_name(box.group_id)
            boxes.append(entry)
        return {
            "type": "group_map",
            "group_ids": self.group_ids.reshape(-1).tolist(),
            "heatmap": self.heatmap.reshape(-1).tolist(),
            "boxes": boxes,
        }


@dataclass(frozen=True)
class TrackingResult:
    objects: list[TrackResult]

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tracking", "objects": [o.to_dict() for o in self.objects]}


@dataclass(frozen=True)
class SelectionResult:
    object_id: Hashable
    state: TrackState
    degenerate: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "selection",
            "id": self.object_id,
            "state": self.state.value,
            "degenerate": self.degenerate,
        }


@dataclass(frozen=True)
class RemovedResult:
    object_id: Hashable

    def to_dict(self) -> dict[str, Any]:
        return {"type": "removed", "id": self.object_id}


Result = (
    ClassificationResult
    | HeatmapResult
    | PredictionsResult
    | CellClassesResult
    | TrackingResult
    | SelectionResult
    | RemovedResult
)


# ============================================================================
# Computations
# ============================================================================


def predict(
    engine: InferenceEngine, tensor: np.ndarray
) -> tuple[FrameContext, ClassificationResult]:
    volume = engine.infer(tensor)
    logits = np.asarray(engine.classify(volume), dtype=np.float32)
    result = ClassificationResult(
        heatmap=average_heatmap(volume),
        predictions=softmax(logits),
        logits=logits,
    )
    return FrameContext(volume=volume, logits=logits), result


def heatmap_by_class(
    engine: InferenceEngine, context: FrameContext, class_idxs: tuple[int, ...]
) -> HeatmapResult:
    """Class-activation map of the selected classes on the last frame."""
    if context.logits is None:
        raise LafamError("no classification results for the current frame")
    weights = class_weights(context.logits, class_idxs, engine.output_weights)
    return HeatmapResult(heatmap=average_heatmap(context.volume, weights))


def class_by_heatmap(
    engine: InferenceEngine, context: FrameContext, cells: tuple[int, ...]
) -> PredictionsResult:
    """Classify using only the activations at the selected cells."""
    logits = np.asarray(
        engine.classify(context.volume.mask_cells(cells)), dtype=np.float32
    )
    return PredictionsResult(predictions=softmax(logits), logits=logits)


def cell_classes(engine: InferenceEngine, volume: FeatureVolume) -> CellClassesResult:
    """Best class and logit for each grid cell classified on its own."""
    logits = np.zeros(volume.n_cells, dtype=np.float32)
    class_ids = np.zeros(volume.n_cells, dtype=np.int64)
    for cell in range(volume.n_cells):
        cell_logits = np.asarray(engine.classify(volume.mask_cells((cell,))))
        best = int(np.argmax(cell_logits))
        class_ids[cell] = best
        logits[cell] = cell_logits[best]
    shape = (volume.height, volume.width)
    return CellClassesResult(logits=logits.reshape(shape), class_ids=class_ids.reshape(shape))


def group_map(cells: CellClassesResult, grouper: ClassGrouper) -> GroupMapResult:
    """Group ids per cell, their min-max heatmap and multi-cell group boxes."""
    group_ids = np.vectorize(grouper.class_to_group, otypes=[np.int64])(cells.class_ids)
    areas = find_areas(group_ids)
    return GroupMapResult(
        group_ids=group_ids,
        heatmap=min_max_normalize(group_ids),
        boxes=find_bounding_boxes(areas),
    )


# ============================================================================
# Request dispatch
# ============================================================================


class FrameProcessor:
    """
    Serialized handler for one client's requests.

    Holds the last FrameContext and the tracked-object arena; callers must
    submit one request at a time.
    """

    def __init__(self, engine: InferenceEngine, input_size: int = 224):
        self.engine = engine
        self.tracker = EmbeddingTracker(input_size=input_size)
        self.context: FrameContext | None = None
        self.frames_processed = 0

    def _require_context(self) -> FrameContext:
        if self.context is None:
            raise LafamError("no frame has been processed yet")
        return self.context

    def handle(self, request: Request) -> Result:
        match request:
            case Predict(tensor=tensor):
                self.context, result = predict(self.engine, tensor)
                self.frames_processed += 1
                return result

            case HeatmapByClass(class_idxs=class_idxs):
                return heatmap_by_class(self.engine, self._require_context(), class_idxs)

            case ClassByHeatmap(cells=cells):
                return class_by_heatmap(self.engine, self._require_context(), cells)

            case CellClasses(tensor=tensor):
                volume = self.engine.infer(tensor)
                self.context = FrameContext(volume=volume)
                self.frames_processed += 1
                return cell_classes(self.engine, volume)

            case Track(tensor=tensor, config=config):
                volume = self.engine.infer(tensor)
                self.context = FrameContext(volume=volume)
                self.frames_processed += 1
                return TrackingResult(objects=self.tracker.process_frame(volume, config))

            case SelectCells(object_id=object_id, cells=cells, color=color):
                volume = self.context.volume if self.context is not None else None
                obj = self.tracker.select(object_id, cells, volume, color=color)
                logger.debug(
                    f"Selected {len(obj.selected_cells)} cells for {object_id!r} "
                    f"({obj.state.value})"
                )
                return SelectionResult(object_id, obj.state, obj.degenerate)

            case RemoveObject(object_id=object_id):
                self.tracker.remove(object_id)
                return RemovedResult(object_id)

            case _:
                raise LafamError(f"unsupported request: {type(request).__name__}")
