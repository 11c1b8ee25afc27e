"""Baseline store: manifest, per-screen configs and baseline images on disk.

Layout:
    baselines/manifest.json
    baselines/<screenId>/screen.json
    baselines/<screenId>/baseline.png
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from visual_gate.errors import ManifestError
from visual_gate.models.screen import CssMask, Manifest, ManifestEntry, Mask, RectMask, ScreenBaseline

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
SCREEN_FILE = "screen.json"
BASELINE_IMAGE = "baseline.png"


def hash_file(path: Path) -> str:
    """SHA-256 hex digest of a file's bytes."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class BaselineStore:
    """Reads and updates the baseline repository for a run."""

    def __init__(self, baselines_dir: Path):
        self.baselines_dir = Path(baselines_dir)

    @property
    def manifest_path(self) -> Path:
        return self.baselines_dir / MANIFEST_FILE

    def screen_dir(self, screen_id: str) -> Path:
        return self.baselines_dir / screen_id

    def screen_config_path(self, screen_id: str) -> Path:
        return self.screen_dir(screen_id) / SCREEN_FILE

    def baseline_image_path(self, screen_id: str) -> Path:
        return self.screen_dir(screen_id) / BASELINE_IMAGE

    def load_manifest(self) -> Manifest:
        """Load manifest.json. Missing or unparseable manifests raise ManifestError."""
        if not self.manifest_path.exists():
            raise ManifestError(
                f"No manifest found at {self.manifest_path}. "
                "Create baselines before running the gate."
            )
        try:
            with open(self.manifest_path) as f:
                data = json.load(f)
            return Manifest.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise ManifestError(f"Invalid manifest {self.manifest_path}: {e}") from e

    def select_screens(self, manifest: Manifest, screen_ids: Optional[list[str]] = None) -> list[ManifestEntry]:
        """Manifest entries in manifest order, filtered by `screen_ids` when given.

        An empty selection raises ManifestError listing what is available.
        """
        entries = manifest.baselines
        if screen_ids:
            wanted = set(screen_ids)
            entries = [e for e in entries if e.screen_id in wanted]

        if not entries:
            if screen_ids:
                available = ", ".join(e.screen_id for e in manifest.baselines) or "none"
                raise ManifestError(
                    f"No matching screens for {', '.join(screen_ids)}. Available: {available}"
                )
            raise ManifestError("The manifest contains no baseline entries")
        return entries

    def load_screen(self, entry: ManifestEntry) -> ScreenBaseline:
        """Load screen.json, falling back to the manifest entry when it is missing."""
        path = self.screen_config_path(entry.screen_id)
        if not path.exists():
            logger.warning("Missing %s for %s, using manifest data", SCREEN_FILE, entry.screen_id)
            return ScreenBaseline(name=entry.name, url=entry.url, tags=list(entry.tags))

        with open(path) as f:
            data = json.load(f)
        data.setdefault("name", entry.name)
        data.setdefault("url", entry.url)
        return ScreenBaseline.model_validate(data)

    def save_screen(self, screen_id: str, screen: ScreenBaseline) -> Path:
        path = self.screen_config_path(screen_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(screen.model_dump(by_alias=True, exclude_none=True), f, indent=2)
        logger.debug("Saved %s", path)
        return path

    def add_masks(self, screen_id: str, entry: ManifestEntry, masks: list[Mask]) -> ScreenBaseline:
        """Append masks to a screen's config and persist it."""
        screen = self.load_screen(entry)
        updated = screen.model_copy(update={"masks": list(screen.masks) + list(masks)})
        self.save_screen(screen_id, updated)
        logger.info("Added %d mask(s) to %s", len(masks), screen_id)
        return updated

    def list_screen_ids(self) -> list[str]:
        """Screen directories on disk, sorted."""
        if not self.baselines_dir.exists():
            return []
        return sorted(
            p.name for p in self.baselines_dir.iterdir()
            if p.is_dir() and (p / SCREEN_FILE).exists()
        )

    def verify_baseline(self, entry: ManifestEntry) -> bool:
        """True if the baseline image exists and matches the manifest hash (when one is recorded)."""
        path = self.baseline_image_path(entry.screen_id)
        if not path.exists():
            logger.warning("Baseline image missing for %s: %s", entry.screen_id, path)
            return False
        if not entry.hash:
            return True
        actual = hash_file(path)
        if actual != entry.hash:
            logger.warning(
                "Baseline hash mismatch for %s: manifest %s, file %s",
                entry.screen_id, entry.hash[:12], actual[:12],
            )
            return False
        return True

    def copy_baseline(self, screen_id: str, dest: Path) -> Path:
        source = self.baseline_image_path(screen_id)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest)
        return dest

    def save_manifest(self, manifest: Manifest) -> Path:
        self.baselines_dir.mkdir(parents=True, exist_ok=True)
        with open(self.manifest_path, "w") as f:
            json.dump(manifest.model_dump(by_alias=True), f, indent=2)
        logger.debug("Saved %s", self.manifest_path)
        return self.manifest_path

    def validate_manifest(self, check_hash: bool = False) -> "ManifestValidation":
        """Check the manifest against the files on disk without raising."""
        try:
            manifest = self.load_manifest()
        except ManifestError as e:
            return ManifestValidation(valid=False, errors=[str(e)])

        errors: list[str] = []
        warnings: list[str] = []
        seen: set[str] = set()

        for i, entry in enumerate(manifest.baselines):
            if not entry.screen_id:
                errors.append(f"baselines.{i}.screenId: must not be empty")
                continue
            if not entry.name:
                errors.append(f"baselines.{i}.name: must not be empty")
            if entry.screen_id in seen:
                errors.append(f"Duplicate screenId: {entry.screen_id}")
            seen.add(entry.screen_id)

            image = self.baseline_image_path(entry.screen_id)
            if not image.exists():
                errors.append(f"Missing baseline file: {entry.screen_id}/{BASELINE_IMAGE}")
                continue

            if not self.screen_config_path(entry.screen_id).exists():
                warnings.append(f"{entry.screen_id}: missing {SCREEN_FILE}")
            else:
                try:
                    errors.extend(_screen_errors(entry.screen_id, self.load_screen(entry)))
                except (json.JSONDecodeError, ValidationError):
                    warnings.append(f"{entry.screen_id}: invalid {SCREEN_FILE}")

            if check_hash and entry.hash:
                actual = hash_file(image)
                if actual != entry.hash:
                    errors.append(
                        f"{entry.screen_id}: Hash mismatch "
                        f"(expected {entry.hash[:12]}..., got {actual[:12]}...)"
                    )

        return ManifestValidation(
            valid=not errors, errors=errors, warnings=warnings, manifest=manifest
        )


@dataclass
class ManifestValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    manifest: Optional[Manifest] = None


def _screen_errors(screen_id: str, screen: ScreenBaseline) -> list[str]:
    errors = []
    if screen.viewport is not None:
        if screen.viewport.width is not None and screen.viewport.width <= 0:
            errors.append(f"{screen_id}: Invalid viewport width")
        if screen.viewport.height is not None and screen.viewport.height <= 0:
            errors.append(f"{screen_id}: Invalid viewport height")
    for i, mask in enumerate(screen.masks):
        if isinstance(mask, CssMask) and not mask.selector.strip():
            errors.append(f"{screen_id}: Mask {i} missing selector")
        if isinstance(mask, RectMask) and (mask.width <= 0 or mask.height <= 0):
            errors.append(f"{screen_id}: Mask {i} has an empty rectangle")
    return errors
