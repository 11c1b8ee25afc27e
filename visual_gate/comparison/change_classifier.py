"""Change classification: connected diff regions labelled as color, position or size changes."""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Optional

import numpy as np

from visual_gate.models.run_result import DetectedChange
from visual_gate.policy.thresholds import round_half_up

logger = logging.getLogger(__name__)

MIN_REGION_SIZE = 10
COLOR_DISTANCE_THRESHOLD = 50
POSITION_MIN_SIZE = 50
SEARCH_RADIUS = 100
SEARCH_STRIDE = 10
MATCH_TOLERANCE = 10
MATCH_MIN_SIMILARITY = 0.8
MIN_MOVE_PX = 5
SIZE_AREA_RATIO = 0.01


@dataclass
class ChangeRegion:
    x: int
    y: int
    width: int
    height: int
    diff_pixels: int

    def slices(self, dx: int = 0, dy: int = 0) -> tuple[slice, slice]:
        return (
            slice(self.y + dy, self.y + dy + self.height),
            slice(self.x + dx, self.x + dx + self.width),
        )


def find_change_regions(mask: np.ndarray, min_size: int = MIN_REGION_SIZE) -> list[ChangeRegion]:
    """4-connected components of a boolean diff mask, in row-major order of their first pixel.

    Components smaller than `min_size` in both dimensions are discarded.
    """
    height, width = mask.shape
    flat = mask.ravel()
    visited = np.zeros(flat.size, dtype=bool)
    regions: list[ChangeRegion] = []

    for start in np.flatnonzero(flat):
        if visited[start]:
            continue

        visited[start] = True
        worklist = deque([int(start)])
        min_x = max_x = int(start) % width
        min_y = max_y = int(start) // width
        count = 0

        while worklist:
            idx = worklist.popleft()
            y, x = divmod(idx, width)
            count += 1
            min_x, max_x = min(min_x, x), max(max_x, x)
            min_y, max_y = min(min_y, y), max(max_y, y)

            for nidx, inside in (
                (idx + 1, x + 1 < width),
                (idx - 1, x > 0),
                (idx + width, y + 1 < height),
                (idx - width, y > 0),
            ):
                if inside and flat[nidx] and not visited[nidx]:
                    visited[nidx] = True
                    worklist.append(nidx)

        region = ChangeRegion(min_x, min_y, max_x - min_x + 1, max_y - min_y + 1, count)
        if region.width >= min_size or region.height >= min_size:
            regions.append(region)

    logger.debug("Found %d change region(s)", len(regions))
    return regions


def average_color(pixels: np.ndarray, region: ChangeRegion) -> tuple[int, int, int]:
    patch = pixels[region.slices()][..., :3].reshape(-1, 3).astype(np.float64)
    r, g, b = patch.mean(axis=0)
    return round_half_up(r), round_half_up(g), round_half_up(b)


def region_similarity(
    expected: np.ndarray, actual: np.ndarray, region: ChangeRegion, dx: int, dy: int
) -> float:
    """Fraction of pixels within tolerance on every channel between the region and its shifted copy."""
    a = expected[region.slices()][..., :3].astype(np.int16)
    b = actual[region.slices(dx, dy)][..., :3].astype(np.int16)
    close = np.all(np.abs(a - b) < MATCH_TOLERANCE, axis=-1)
    return float(close.mean())


def find_translation(
    expected: np.ndarray, actual: np.ndarray, region: ChangeRegion
) -> Optional[tuple[int, int]]:
    """Best (dx, dy) on a strided grid whose similarity exceeds the match threshold."""
    height, width = expected.shape[:2]
    best: Optional[tuple[int, int]] = None
    best_similarity = 0.0

    for dy in range(-SEARCH_RADIUS, SEARCH_RADIUS + 1, SEARCH_STRIDE):
        for dx in range(-SEARCH_RADIUS, SEARCH_RADIUS + 1, SEARCH_STRIDE):
            new_x, new_y = region.x + dx, region.y + dy
            if (
                new_x < 0
                or new_y < 0
                or new_x + region.width >= width
                or new_y + region.height >= height
            ):
                continue
            similarity = region_similarity(expected, actual, region, dx, dy)
            if similarity > best_similarity and similarity > MATCH_MIN_SIMILARITY:
                best_similarity = similarity
                best = (dx, dy)
    return best


def classify_region(
    expected: np.ndarray, actual: np.ndarray, region: ChangeRegion
) -> DetectedChange:
    """Label one region. Priority: color, then position, then size, then a generic change."""
    height, width = expected.shape[:2]
    geometry = dict(x=region.x, y=region.y, width=region.width, height=region.height)

    old = average_color(expected, region)
    new = average_color(actual, region)
    distance = math.dist(old, new)
    if distance > COLOR_DISTANCE_THRESHOLD:
        return DetectedChange(
            type="color",
            description=(
                f"Color changed in {region.width}×{region.height}px area at ({region.x}, {region.y})"
            ),
            confidence=min(0.95, distance / 255),
            metadata={"oldValue": "rgb({}, {}, {})".format(*old), "newValue": "rgb({}, {}, {})".format(*new)},
            **geometry,
        )

    if region.width >= POSITION_MIN_SIZE and region.height >= POSITION_MIN_SIZE:
        move = find_translation(expected, actual, region)
        if move is not None:
            dx, dy = move
            if abs(dx) > MIN_MOVE_PX or abs(dy) > MIN_MOVE_PX:
                return DetectedChange(
                    type="position",
                    description=(
                        f"Element moved {abs(dx)}px {'right' if dx > 0 else 'left'}, "
                        f"{abs(dy)}px {'down' if dy > 0 else 'up'}"
                    ),
                    confidence=0.85,
                    metadata={"deltaX": dx, "deltaY": dy},
                    **geometry,
                )

    if (region.width * region.height) / (width * height) > SIZE_AREA_RATIO:
        return DetectedChange(
            type="size",
            description=f"Element size changed: {region.width}×{region.height}px",
            confidence=0.75,
            metadata={"deltaWidth": region.width, "deltaHeight": region.height},
            **geometry,
        )

    return DetectedChange(
        type="color",
        description=f"Visual change in {region.width}×{region.height}px area",
        confidence=0.6,
        **geometry,
    )


def detect_changes(expected: np.ndarray, actual: np.ndarray, mask: np.ndarray) -> list[DetectedChange]:
    return [classify_region(expected, actual, region) for region in find_change_regions(mask)]
