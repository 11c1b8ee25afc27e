"""Perceptual pixel diff over RGBA buffers.

Pixels are compared in YIQ space after blending against white; a pixel
counts as different when its weighted YIQ delta exceeds 35215 * threshold².
Pixels that look like anti-aliasing in either image are excluded from the
count and painted yellow in the diff image.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import numpy as np
from PIL import Image

from visual_gate.errors import DimensionMismatch
from visual_gate.models.screen import Mask, RectMask

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.02
MAX_YIQ_DELTA = 35215

DIFF_COLOR = np.array([255, 0, 0, 255], dtype=np.uint8)
AA_COLOR = np.array([255, 255, 0, 255], dtype=np.uint8)
UNCHANGED_ALPHA = 0.1

_RGB2Y = np.array([0.29889531, 0.58662247, 0.11448223])
_RGB2I = np.array([0.59597799, -0.27417610, -0.32180189])
_RGB2Q = np.array([0.21147017, -0.52261711, 0.31114694])

# x-major neighbor order; ties on min/max keep the first neighbor visited
_NEIGHBORS = [(dx, dy) for dx in (-1, 0, 1) for dy in (-1, 0, 1) if (dx, dy) != (0, 0)]


@dataclass
class PixelDiffResult:
    diff_pixels: int
    mask: np.ndarray  # bool (H, W), True where a pixel counts as different
    diff_image: np.ndarray  # uint8 (H, W, 4)

    @property
    def total_pixels(self) -> int:
        return int(self.mask.size)


def load_rgba(path: str | Path) -> np.ndarray:
    with Image.open(path) as img:
        return np.array(img.convert("RGBA"), dtype=np.uint8)


def save_rgba(pixels: np.ndarray, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(pixels).save(path)


def image_size(pixels: np.ndarray) -> tuple[int, int]:
    """(width, height) of an (H, W, 4) buffer."""
    return int(pixels.shape[1]), int(pixels.shape[0])


def paint_rect_masks(pixels: np.ndarray, masks: Iterable[Mask]) -> np.ndarray:
    """Return a copy with every rect mask filled opaque black, clipped to the image."""
    out = pixels.copy()
    height, width = out.shape[:2]
    for mask in masks:
        if not isinstance(mask, RectMask):
            continue
        x0, y0 = max(mask.x, 0), max(mask.y, 0)
        x1, y1 = min(mask.x + mask.width, width), min(mask.y + mask.height, height)
        if x1 > x0 and y1 > y0:
            out[y0:y1, x0:x1] = (0, 0, 0, 255)
    return out


def _blend_white(pixels: np.ndarray) -> np.ndarray:
    rgb = pixels[..., :3].astype(np.float64)
    alpha = pixels[..., 3:4].astype(np.float64) / 255
    return 255 + (rgb - 255) * alpha


def _shift(arr: np.ndarray, dx: int, dy: int) -> tuple[np.ndarray, np.ndarray]:
    """Neighbor view: out[y, x] = arr[y + dy, x + dx], plus a validity mask for in-bounds neighbors."""
    height, width = arr.shape[:2]
    pad = ((1, 1), (1, 1)) + ((0, 0),) * (arr.ndim - 2)
    padded = np.pad(arr, pad, mode="edge")
    shifted = padded[1 + dy:1 + dy + height, 1 + dx:1 + dx + width]

    valid = np.zeros((height + 2, width + 2), dtype=bool)
    valid[1:-1, 1:-1] = True
    return shifted, valid[1 + dy:1 + dy + height, 1 + dx:1 + dx + width]


def _edge_mask(height: int, width: int) -> np.ndarray:
    edge = np.zeros((height, width), dtype=bool)
    edge[0, :] = edge[-1, :] = True
    edge[:, 0] = edge[:, -1] = True
    return edge


def _has_many_siblings(pixels: np.ndarray) -> np.ndarray:
    """True where more than two neighbors (image edge counts as one) are identical RGBA."""
    height, width = pixels.shape[:2]
    packed = np.ascontiguousarray(pixels).view(np.uint32)[..., 0]
    count = _edge_mask(height, width).astype(np.int32)
    for dx, dy in _NEIGHBORS:
        neighbor, valid = _shift(packed, dx, dy)
        count += valid & (neighbor == packed)
    return count > 2


def _antialiased(luma: np.ndarray, siblings: np.ndarray, other_siblings: np.ndarray) -> np.ndarray:
    """Anti-aliasing candidates judged by brightness gradients among neighbors."""
    height, width = luma.shape
    ys, xs = np.indices((height, width))

    zeroes = _edge_mask(height, width).astype(np.int32)
    lo = np.zeros_like(luma)
    hi = np.zeros_like(luma)
    lo_x, lo_y = xs.copy(), ys.copy()
    hi_x, hi_y = xs.copy(), ys.copy()

    for dx, dy in _NEIGHBORS:
        neighbor, valid = _shift(luma, dx, dy)
        delta = luma - neighbor
        is_zero = valid & (delta == 0)
        zeroes += is_zero

        lower = valid & ~is_zero & (delta < lo)
        lo = np.where(lower, delta, lo)
        lo_x = np.where(lower, xs + dx, lo_x)
        lo_y = np.where(lower, ys + dy, lo_y)

        higher = valid & ~is_zero & (delta > hi)
        hi = np.where(higher, delta, hi)
        hi_x = np.where(higher, xs + dx, hi_x)
        hi_y = np.where(higher, ys + dy, hi_y)

    candidate = (zeroes <= 2) & (lo != 0) & (hi != 0)
    at_lo = siblings[lo_y, lo_x] & other_siblings[lo_y, lo_x]
    at_hi = siblings[hi_y, hi_x] & other_siblings[hi_y, hi_x]
    return candidate & (at_lo | at_hi)


def pixel_diff(
    expected: np.ndarray,
    actual: np.ndarray,
    threshold: float = DEFAULT_THRESHOLD,
    include_aa: bool = False,
) -> PixelDiffResult:
    """Compare two RGBA buffers of identical size.

    Raises DimensionMismatch before any pixel work if sizes differ.
    """
    if expected.shape[:2] != actual.shape[:2]:
        raise DimensionMismatch(image_size(expected), image_size(actual))

    height, width = expected.shape[:2]
    diff_image = np.empty((height, width, 4), dtype=np.uint8)

    rgb1 = _blend_white(expected)
    rgb2 = _blend_white(actual)
    y1, y2 = rgb1 @ _RGB2Y, rgb2 @ _RGB2Y
    di = rgb1 @ _RGB2I - rgb2 @ _RGB2I
    dq = rgb1 @ _RGB2Q - rgb2 @ _RGB2Q
    dy = y1 - y2
    delta = 0.5053 * dy * dy + 0.299 * di * di + 0.1957 * dq * dq

    identical = np.all(expected == actual, axis=-1)
    changed = ~identical & (delta > MAX_YIQ_DELTA * threshold * threshold)

    if include_aa or not changed.any():
        aa = np.zeros_like(changed)
    else:
        sib1 = _has_many_siblings(expected)
        sib2 = _has_many_siblings(actual)
        aa = changed & (
            _antialiased(y1, sib1, sib2)
            | _antialiased(y2, sib2, sib1)
        )

    mask = changed & ~aa

    raw_y = expected[..., :3].astype(np.float64) @ _RGB2Y
    fade = UNCHANGED_ALPHA * expected[..., 3].astype(np.float64) / 255
    gray = np.clip(255 + (raw_y - 255) * fade, 0, 255).astype(np.uint8)
    diff_image[..., 0] = gray
    diff_image[..., 1] = gray
    diff_image[..., 2] = gray
    diff_image[..., 3] = 255
    diff_image[aa] = AA_COLOR
    diff_image[mask] = DIFF_COLOR

    diff_pixels = int(mask.sum())
    logger.debug(
        "Pixel diff %dx%d: %d different, %d anti-aliased", width, height, diff_pixels, int(aa.sum())
    )
    return PixelDiffResult(diff_pixels=diff_pixels, mask=mask, diff_image=diff_image)
