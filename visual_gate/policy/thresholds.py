"""Viewport-scaled threshold bands and originality math."""

from __future__ import annotations

import math

from visual_gate.models.policy import ScreenThresholds, ThresholdBand

# tag -> ((warn_ratio, warn_factor, warn_min, warn_max), (fail_ratio, fail_factor, fail_min, fail_max))
_SCALING = {
    "standard": ((0.0002, 0.00027, 150, 600), (0.0005, 0.00065, 300, 1200)),
    "critical": ((0.0001, 0.00016, 100, 450), (0.0003, 0.00043, 200, 900)),
    "noisy": ((0.0003, 0.00038, 200, 900), (0.0008, 0.00100, 450, 2000)),
}


def round_half_up(value: float) -> int:
    """Round halves up: 2.5 -> 3, where `round` gives 2."""
    return int(math.floor(value + 0.5))


def _clamp(value: int, low: int, high: int) -> int:
    return min(max(value, low), high)


def _scaled_band(pixels: int, scaling: tuple[float, float, int, int]) -> ThresholdBand:
    ratio, factor, low, high = scaling
    return ThresholdBand(
        diff_pixel_ratio=ratio,
        diff_pixels=_clamp(round_half_up(pixels * factor), low, high),
    )


def scale_thresholds_to_viewport(width: int, height: int, tag: str | None = None) -> ScreenThresholds:
    """Derive pixel-count bands proportional to the viewport area.

    Counts are clamped per tag so tiny viewports keep a usable floor and huge
    ones cannot absorb a large regression.
    """
    warn_scaling, fail_scaling = _SCALING.get(tag or "standard", _SCALING["standard"])
    pixels = max(width, 0) * max(height, 0)
    return ScreenThresholds(
        warn=_scaled_band(pixels, warn_scaling),
        fail=_scaled_band(pixels, fail_scaling),
        require_masks=True if tag == "noisy" else None,
    )


def compute_originality_percent(diff_pixels: int, total_pixels: int) -> float:
    """Percentage of unchanged pixels; an empty image reports 0 rather than NaN."""
    if total_pixels <= 0:
        return 0.0
    return (1 - diff_pixels / total_pixels) * 100
