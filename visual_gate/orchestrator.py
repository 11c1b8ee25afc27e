"""Gate run orchestrator: resolve, capture, compare and report every screen in the manifest."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from visual_gate.baselines.store import BaselineStore
from visual_gate.capture.capture import ScreenCapturer
from visual_gate.capture.clock import Clock, FixedClock, SystemClock, iso_timestamp
from visual_gate.capture.deterministic import write_debug_info
from visual_gate.comparison.engine import ComparisonEngine
from visual_gate.comparison.pixel_diff import image_size, load_rgba
from visual_gate.errors import CaptureFailure, DimensionMismatch, PolicyViolation
from visual_gate.models.config import GateConfig
from visual_gate.models.policy import OrgPolicy, ScreenThresholds
from visual_gate.models.run_result import RunSummary, ScreenResult
from visual_gate.models.screen import ManifestEntry
from visual_gate.policy.loader import load_org_policy
from visual_gate.policy.resolver import (
    apply_tag_rules,
    compute_policy_hash,
    get_tag_thresholds,
    merge_defaults,
    resolve_screen,
)
from visual_gate.reporter.evidence import create_evidence_pack
from visual_gate.reporter.html_report import generate_html_report
from visual_gate.reporter.json_report import RESULT_FILE, relativize_paths, write_screen_result, write_summary
from visual_gate.url_utils import resolve_screen_url
from visual_gate.utils.git import get_git_info

logger = logging.getLogger(__name__)

CapturerFactory = Callable[[], ScreenCapturer]


class GateRunner:
    """Runs the visual gate for one manifest against one base URL.

    Per-screen errors become FAIL results; only run-level errors (policy
    load, manifest) propagate.
    """

    def __init__(
        self,
        config: GateConfig,
        clock: Clock | None = None,
        capturer_factory: CapturerFactory | None = None,
        engine: ComparisonEngine | None = None,
    ):
        self.config = config
        self.clock = clock or SystemClock()
        self.store = BaselineStore(Path(config.baselines_dir))
        self.engine = engine or ComparisonEngine()
        self.capturer_factory = capturer_factory or self._default_capturer
        self._stop_requested = False
        self.run_dir: Optional[Path] = None

    def _default_capturer(self) -> ScreenCapturer:
        return ScreenCapturer(
            clock=FixedClock(),
            debug=self.config.debug,
            navigation_timeout_ms=self.config.navigation_timeout_ms,
            layout_stability_attempts=self.config.layout_stability_attempts,
        )

    def stop(self) -> None:
        """Stop before the next screen starts; finished screens stay in the summary."""
        self._stop_requested = True

    def run(self) -> RunSummary:
        return asyncio.run(self.run_async())

    async def run_async(self) -> RunSummary:
        start = time.time()
        policy = load_org_policy(self.config.policy_root)
        policy_hash = compute_policy_hash(policy)

        manifest = self.store.load_manifest()
        entries = self.store.select_screens(manifest, self.config.screens or None)

        run_id = f"run-{int(self.clock.now().timestamp() * 1000)}"
        run_dir = Path(self.config.out_dir) if self.config.out_dir else Path(self.config.runs_dir) / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        logger.info(
            "Starting gate run %s: %d screen(s), policy %s", run_id, len(entries), policy_hash
        )

        semaphore = asyncio.Semaphore(max(1, self.config.max_parallel_screens))
        total = len(entries)

        async with self.capturer_factory() as capturer:

            async def _run_one(index: int, entry: ManifestEntry) -> Optional[ScreenResult]:
                async with semaphore:
                    if self._stop_requested:
                        logger.warning("Run stopped, skipping %s", entry.screen_id)
                        return None
                    logger.info("Testing [%d/%d]: %s", index + 1, total, entry.screen_id)
                    result = await self.run_screen(entry, capturer, policy, run_dir)
                    self._log_result(result)
                    return result

            gathered = await asyncio.gather(*(_run_one(i, e) for i, e in enumerate(entries)))

        # gather keeps manifest order regardless of completion order
        results = [r for r in gathered if r is not None]

        git = get_git_info()
        summary = RunSummary.from_results(
            run_id,
            iso_timestamp(self.clock),
            [relativize_paths(r, run_dir) for r in results],
            sha=git.sha,
            branch=git.branch,
            policy_hash=policy_hash,
        )
        write_summary(summary, run_dir)
        generate_html_report(summary, run_dir)

        if self.config.create_evidence_pack:
            create_evidence_pack(run_dir, git=git)
            # regenerate so the report links the pack
            generate_html_report(summary, run_dir)

        logger.info(
            "Gate run complete: %d passed, %d warned, %d failed (%.1fs)",
            summary.passed, summary.warned, summary.failed, time.time() - start,
        )
        self.run_dir = run_dir
        return summary

    def _fallback_thresholds(self, tags: list[str], policy: Optional[OrgPolicy]) -> ScreenThresholds:
        return get_tag_thresholds(tags[0] if tags else None, merge_defaults(policy))

    async def run_screen(
        self,
        entry: ManifestEntry,
        capturer: ScreenCapturer,
        policy: Optional[OrgPolicy],
        run_dir: Path,
    ) -> ScreenResult:
        """Resolve, capture and compare one screen. Never raises for per-screen errors."""
        try:
            return await self._run_screen(entry, capturer, policy, run_dir)
        except Exception as e:
            logger.exception("Unexpected error testing %s", entry.screen_id)
            result = ScreenResult(
                screen_id=entry.screen_id,
                name=entry.name,
                url=entry.url,
                status="FAIL",
                thresholds=self._fallback_thresholds(list(entry.tags), policy),
                error=f"{type(e).__name__}: {e}",
            )
            write_screen_result(result, run_dir / "per-screen" / entry.screen_id / RESULT_FILE)
            return result

    async def _run_screen(
        self,
        entry: ManifestEntry,
        capturer: ScreenCapturer,
        policy: Optional[OrgPolicy],
        run_dir: Path,
    ) -> ScreenResult:
        screen_dir = run_dir / "per-screen" / entry.screen_id
        screen_dir.mkdir(parents=True, exist_ok=True)
        expected_path = screen_dir / "expected.png"
        actual_path = screen_dir / "actual.png"
        diff_path = screen_dir / "diff.png"

        base = dict(screen_id=entry.screen_id, name=entry.name, url=entry.url)

        def _fail(error: str, thresholds: ScreenThresholds, **extra) -> ScreenResult:
            result = ScreenResult(**base, status="FAIL", thresholds=thresholds, error=error, **extra)
            write_screen_result(relativize_paths(result, run_dir), screen_dir / RESULT_FILE)
            return result

        fallback = self._fallback_thresholds(list(entry.tags), policy)

        try:
            screen = self.store.load_screen(entry)
        except (json.JSONDecodeError, ValidationError) as e:
            return _fail(f"Invalid screen config: {e}", fallback)
        base.update(name=screen.name, url=screen.url)

        try:
            resolved = resolve_screen(screen, policy)
        except PolicyViolation as e:
            return _fail(str(e), self._fallback_thresholds(apply_tag_rules(screen, policy), policy))
        thresholds = resolved.resolved_thresholds

        if not self.store.baseline_image_path(entry.screen_id).exists():
            return _fail(f"Baseline image not found for {entry.screen_id}", thresholds)
        if not self.store.verify_baseline(entry):
            logger.warning("Baseline for %s does not match its manifest hash", entry.screen_id)
        self.store.copy_baseline(entry.screen_id, expected_path)

        url = resolve_screen_url(self.config.base_url, screen.url)
        try:
            capture = await capturer.capture(url, resolved, actual_path)
        except CaptureFailure as e:
            if self.config.debug and e.debug_info:
                write_debug_info(e.debug_info, screen_dir / "debug.json", self.clock)
            return _fail(
                str(e), thresholds,
                expected_path=str(expected_path),
                actual_path=str(actual_path) if actual_path.exists() else None,
            )

        try:
            outcome = await asyncio.to_thread(
                self.engine.compare_files,
                expected_path, actual_path, thresholds, resolved.masks, diff_path,
            )
        except DimensionMismatch as e:
            width, height = image_size(load_rgba(expected_path))
            return _fail(
                str(e), thresholds,
                total_pixels=width * height,
                expected_path=str(expected_path),
                actual_path=str(actual_path),
            )

        if not capture.layout_stable:
            logger.warning("%s was captured before its layout settled", entry.screen_id)

        result = ScreenResult(
            **base,
            status=outcome.status,
            diff_pixels=outcome.diff_pixels,
            diff_pixel_ratio=outcome.diff_pixel_ratio,
            total_pixels=outcome.total_pixels,
            originality_percent=outcome.originality_percent,
            thresholds=thresholds,
            expected_path=str(expected_path),
            actual_path=str(actual_path),
            diff_path=str(outcome.diff_path) if outcome.diff_path else None,
            changes=outcome.changes,
            layout_stable=capture.layout_stable,
        )
        write_screen_result(relativize_paths(result, run_dir), screen_dir / RESULT_FILE)
        return result

    @staticmethod
    def _log_result(result: ScreenResult) -> None:
        if result.status == "PASS":
            logger.info("[PASS] %s: %.2f%% match", result.screen_id, result.originality_percent)
        elif result.status == "WARN":
            logger.warning(
                "[WARN] %s: %d diff pixels (%.4f%%)",
                result.screen_id, result.diff_pixels, result.diff_pixel_ratio * 100,
            )
        else:
            detail = result.error or (
                f"{result.diff_pixels} diff pixels ({result.diff_pixel_ratio * 100:.4f}%)"
            )
            logger.error("[FAIL] %s: %s", result.screen_id, detail)
