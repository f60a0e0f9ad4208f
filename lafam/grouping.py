"""
Class grouping and connected areas on the per-cell class grid.

The include/exclude group tables are static lookup data supplied by the
caller (group name -> list of class indices).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from scipy.ndimage import label

from lafam.errors import ConfigError

logger = logging.getLogger(__name__)

NO_GROUP = -1


class ClassGrouper:
    """Map classifier class ids to coarse group ids."""

    def __init__(
        self,
        include_groups: Mapping[str, Sequence[int]],
        exclude_groups: Mapping[str, Sequence[int]] | None = None,
    ):
        """
        Initialize grouper.

        Args:
            include_groups: Group name -> class ids, in group-id order
            exclude_groups: Group name -> class ids that never get a group
        """
        self.include_groups = dict(include_groups)
        self.exclude_groups = dict(exclude_groups or {})
        self.excluded_classes = {
            int(c) for ids in self.exclude_groups.values() for c in ids
        }

        self._group_names = list(self.include_groups)
        self._group_to_id = {name: i for i, name in enumerate(self._group_names)}
        self._class_to_group: dict[int, str] = {}
        for name, ids in self.include_groups.items():
            for class_id in ids:
                self._class_to_group[int(class_id)] = name

    def class_to_group(self, class_id: int) -> int:
        if class_id in self.excluded_classes:
            return NO_GROUP
        name = self._class_to_group.get(int(class_id))
        if name is None:
            return NO_GROUP
        return self._group_to_id[name]

    def group_id(self, name: str) -> int:
        return self._group_to_id.get(name, NO_GROUP)

    def group_name(self, group_id: int) -> str:
        if group_id < 0 or group_id >= len(self._group_names):
            return "---"
        return self._group_names[group_id]

    @classmethod
    def from_json(
        cls, include_path: Path | str, exclude_path: Path | str | None = None
    ) -> ClassGrouper:
        """Load the group tables from JSON files (name -> class ids)."""
        include = _load_group_table(include_path)
        exclude = _load_group_table(exclude_path) if exclude_path is not None else {}
        logger.info(
            f"Loaded {len(include)} class groups ({len(exclude)} excluded) "
            f"from {include_path}"
        )
        return cls(include, exclude)


def _load_group_table(path: Path | str) -> dict[str, list[int]]:
    path = Path(path)
    try:
        with open(path) as f:
            raw = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"group file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"group file {path} is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"group file {path} must map group names to class ids")
    try:
        return {str(name): [int(c) for c in ids] for name, ids in raw.items()}
    except (TypeError, ValueError) as e:
        raise ConfigError(f"group file {path} has a non-integer class id") from e


@dataclass(frozen=True)
class Area:
    group_id: int
    cells: tuple[tuple[int, int], ...]  # (row, col)


@dataclass(frozen=True)
class BoundingBox:
    group_id: int
    top_left: tuple[int, int]  # (row, col)
    bottom_right: tuple[int, int]  # (row, col), inclusive


def find_areas(grid: np.ndarray, skip: Iterable[int] = (NO_GROUP,)) -> list[Area]:
    """
    4-connected regions of equal value spanning more than one cell.

    Args:
        grid: 2D integer grid of group (or class) ids
        skip: Values that never form an area

    Returns:
        Areas ordered by their first cell in row-major order
    """
    grid = np.asarray(grid)
    skip = set(skip)
    found = []
    for value in np.unique(grid):
        if int(value) in skip:
            continue
        labeled, n = label(grid == value)
        for i in range(1, n + 1):
            rows, cols = np.nonzero(labeled == i)
            if rows.size > 1:
                cells = tuple(zip(rows.tolist(), cols.tolist()))
                found.append(Area(group_id=int(value), cells=cells))
    found.sort(key=lambda area: area.cells[0])
    return found


def find_bounding_boxes(areas: Iterable[Area]) -> list[BoundingBox]:
    boxes = []
    for area in areas:
        rows = [r for r, _ in area.cells]
        cols = [c for _, c in area.cells]
        boxes.append(
            BoundingBox(
                group_id=area.group_id,
                top_left=(min(rows), min(cols)),
                bottom_right=(max(rows), max(cols)),
            )
        )
    return boxes
