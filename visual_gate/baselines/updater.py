"""Re-captures baselines through the deterministic capture path and refreshes manifest hashes."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from visual_gate.baselines.store import BaselineStore, hash_file
from visual_gate.capture.capture import ScreenCapturer
from visual_gate.capture.clock import Clock, FixedClock, SystemClock, iso_timestamp
from visual_gate.errors import CaptureFailure, PolicyViolation
from visual_gate.models.screen import ManifestEntry
from visual_gate.policy.loader import load_org_policy
from visual_gate.policy.resolver import resolve_screen
from visual_gate.reporter.json_report import SUMMARY_FILE
from visual_gate.url_utils import resolve_screen_url

logger = logging.getLogger(__name__)

UPDATE_SUMMARY_FILE = "baselines-update-summary.json"
TEMP_DIR = ".temp"


@dataclass
class BaselineUpdateResult:
    screen_id: str
    success: bool
    old_hash: str
    new_hash: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"screenId": self.screen_id, "success": self.success, "oldHash": self.old_hash}
        if self.new_hash:
            data["newHash"] = self.new_hash
        if self.error:
            data["error"] = self.error
        return data


def find_changed_screens(runs_dir: Path) -> list[str]:
    """Screen ids that warned or failed in the newest run that had any.

    Run directories are scanned newest first by modification time; runs
    without a readable summary are skipped.
    """
    runs_dir = Path(runs_dir)
    if not runs_dir.is_dir():
        return []

    run_dirs = sorted(
        (p for p in runs_dir.iterdir() if p.is_dir()),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    for run_dir in run_dirs:
        try:
            with open(run_dir / SUMMARY_FILE) as f:
                results = json.load(f).get("results", [])
        except (OSError, json.JSONDecodeError, AttributeError):
            continue
        changed = [r["screenId"] for r in results if r.get("status") in ("WARN", "FAIL")]
        if changed:
            logger.info("Using changed screens from %s", run_dir.name)
            return changed
    return []


class BaselineUpdater:
    """Replaces baseline.png files with fresh deterministic captures.

    Screens are captured into a temporary directory first, so a failed
    capture never clobbers an existing baseline. The manifest is rewritten
    once at the end with the new hashes of every screen that succeeded.
    """

    def __init__(
        self,
        store: BaselineStore,
        base_url: str,
        policy_root: str | Path = ".",
        clock: Clock | None = None,
        capturer_factory: Optional[Callable[[], ScreenCapturer]] = None,
    ):
        self.store = store
        self.base_url = base_url
        self.policy_root = policy_root
        self.clock = clock or SystemClock()
        self.capturer_factory = capturer_factory or (lambda: ScreenCapturer(clock=FixedClock()))

    def select(
        self,
        screen_ids: Optional[list[str]] = None,
        changed_only: bool = False,
        runs_dir: str | Path = "runs",
    ) -> list[ManifestEntry]:
        """Entries to update: explicit ids, else the last run's changed screens, else everything."""
        manifest = self.store.load_manifest()
        if not screen_ids and changed_only:
            screen_ids = find_changed_screens(Path(runs_dir))
            if not screen_ids:
                logger.info("No changed screens found, updating all baselines")
        return self.store.select_screens(manifest, screen_ids or None)

    def update(self, entries: list[ManifestEntry]) -> list[BaselineUpdateResult]:
        return asyncio.run(self.update_async(entries))

    async def update_async(self, entries: list[ManifestEntry]) -> list[BaselineUpdateResult]:
        policy = load_org_policy(self.policy_root)
        temp_dir = self.store.baselines_dir / TEMP_DIR
        results: list[BaselineUpdateResult] = []

        try:
            async with self.capturer_factory() as capturer:
                for entry in entries:
                    result = await self._update_one(entry, capturer, policy, temp_dir)
                    results.append(result)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

        new_hashes = {r.screen_id: r.new_hash for r in results if r.success}
        if new_hashes:
            manifest = self.store.load_manifest()
            manifest.baselines = [
                e.model_copy(update={"hash": new_hashes[e.screen_id]}) if e.screen_id in new_hashes else e
                for e in manifest.baselines
            ]
            self.store.save_manifest(manifest)

        self._write_summary(results)
        return results

    async def _update_one(self, entry, capturer, policy, temp_dir: Path) -> BaselineUpdateResult:
        logger.info("Updating %s", entry.screen_id)
        try:
            screen = self.store.load_screen(entry)
            resolved = resolve_screen(screen, policy)
        except (json.JSONDecodeError, ValidationError, PolicyViolation) as e:
            logger.error("Cannot update %s: %s", entry.screen_id, e)
            return BaselineUpdateResult(entry.screen_id, False, entry.hash, error=str(e))

        temp_path = temp_dir / f"{entry.screen_id}.png"
        url = resolve_screen_url(self.base_url, screen.url)
        try:
            await capturer.capture(url, resolved, temp_path)
        except CaptureFailure as e:
            logger.error("Failed to capture %s: %s", entry.screen_id, e)
            return BaselineUpdateResult(entry.screen_id, False, entry.hash, error=str(e))

        target = self.store.baseline_image_path(entry.screen_id)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(temp_path, target)
        new_hash = hash_file(target)
        if not self.store.screen_config_path(entry.screen_id).exists():
            self.store.save_screen(entry.screen_id, screen)
        logger.info("Updated %s - %s...", entry.screen_id, new_hash[:12])
        return BaselineUpdateResult(entry.screen_id, True, entry.hash, new_hash=new_hash)

    def _write_summary(self, results: list[BaselineUpdateResult]) -> Path:
        path = self.store.baselines_dir / UPDATE_SUMMARY_FILE
        summary = {
            "timestamp": iso_timestamp(self.clock),
            "baseURL": self.base_url,
            "totalUpdated": sum(1 for r in results if r.success),
            "totalFailed": sum(1 for r in results if not r.success),
            "results": [r.to_dict() for r in results],
        }
        with open(path, "w") as f:
            json.dump(summary, f, indent=2)
        return path
