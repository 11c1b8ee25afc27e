"""Comparison engine: pixel diff, originality and PASS/WARN/FAIL evaluation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np

from visual_gate.comparison.change_classifier import detect_changes
from visual_gate.comparison.pixel_diff import (
    DEFAULT_THRESHOLD,
    PixelDiffResult,
    load_rgba,
    paint_rect_masks,
    pixel_diff,
    save_rgba,
)
from visual_gate.models.policy import ScreenThresholds
from visual_gate.models.run_result import DetectedChange, Status
from visual_gate.models.screen import Mask
from visual_gate.policy.thresholds import compute_originality_percent

logger = logging.getLogger(__name__)


def evaluate_status(
    diff_pixels: int,
    diff_pixel_ratio: float,
    thresholds: ScreenThresholds,
    masks: Optional[list[Mask]] = None,
    error: Optional[str] = None,
) -> Status:
    """FAIL on error, missing required masks, or either metric above the fail band; WARN above warn."""
    if error:
        return "FAIL"

    if thresholds.require_masks and not masks:
        return "FAIL"

    if diff_pixel_ratio > thresholds.fail.diff_pixel_ratio or diff_pixels > thresholds.fail.diff_pixels:
        return "FAIL"

    if diff_pixel_ratio > thresholds.warn.diff_pixel_ratio or diff_pixels > thresholds.warn.diff_pixels:
        return "WARN"

    return "PASS"


@dataclass
class ComparisonOutcome:
    status: Status
    diff_pixels: int
    diff_pixel_ratio: float
    total_pixels: int
    originality_percent: float
    diff: PixelDiffResult
    changes: list[DetectedChange] = field(default_factory=list)
    diff_path: Optional[Path] = None


class ComparisonEngine:
    """Compares expected and actual captures under resolved thresholds."""

    def __init__(self, threshold: float = DEFAULT_THRESHOLD, classify_changes: bool = True):
        self.threshold = threshold
        self.classify_changes = classify_changes

    def compare(
        self,
        expected: np.ndarray,
        actual: np.ndarray,
        thresholds: ScreenThresholds,
        masks: Optional[list[Mask]] = None,
    ) -> ComparisonOutcome:
        """Diff two RGBA buffers. Raises DimensionMismatch if sizes differ."""
        masks = masks or []
        if masks:
            expected = paint_rect_masks(expected, masks)
            actual = paint_rect_masks(actual, masks)

        result = pixel_diff(expected, actual, threshold=self.threshold)
        total = result.total_pixels
        ratio = result.diff_pixels / total if total else 0.0
        status = evaluate_status(result.diff_pixels, ratio, thresholds, masks)

        changes: list[DetectedChange] = []
        if self.classify_changes and result.diff_pixels:
            changes = detect_changes(expected, actual, result.mask)

        return ComparisonOutcome(
            status=status,
            diff_pixels=result.diff_pixels,
            diff_pixel_ratio=ratio,
            total_pixels=total,
            originality_percent=compute_originality_percent(result.diff_pixels, total),
            diff=result,
            changes=changes,
        )

    def compare_files(
        self,
        expected_path: Path,
        actual_path: Path,
        thresholds: ScreenThresholds,
        masks: Optional[list[Mask]] = None,
        diff_path: Optional[Path] = None,
    ) -> ComparisonOutcome:
        """Compare two PNG files; the diff image is written only when status is not PASS."""
        outcome = self.compare(load_rgba(expected_path), load_rgba(actual_path), thresholds, masks)

        if diff_path is not None and outcome.status != "PASS":
            save_rgba(outcome.diff.diff_image, diff_path)
            outcome.diff_path = diff_path

        logger.debug(
            "Compared %s vs %s: %s (%d px, %.4f%%)",
            expected_path.name, actual_path.name, outcome.status,
            outcome.diff_pixels, outcome.diff_pixel_ratio * 100,
        )
        return outcome
