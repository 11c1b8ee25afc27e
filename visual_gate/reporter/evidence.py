"""Evidence pack: a hashed, self-describing zip of one run's artifacts.

Every archived file is listed in MANIFEST.sha256 as `<sha256>  <entry>`, and
DECISION.md summarizes the run for reviewers who will not open the images.
"""

from __future__ import annotations

import hashlib
import json
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from visual_gate.baselines.store import hash_file
from visual_gate.errors import EvidenceError
from visual_gate.models.run_result import RunSummary
from visual_gate.reporter.html_report import EVIDENCE_FILE, REPORT_FILE
from visual_gate.reporter.json_report import RESULT_FILE, SUMMARY_FILE
from visual_gate.utils.git import GitInfo, get_git_info

logger = logging.getLogger(__name__)

MANIFEST_NAME = "MANIFEST.sha256"
DECISION_NAME = "DECISION.md"


@dataclass
class EvidencePackResult:
    output_path: Path
    files: list[tuple[str, str]] = field(default_factory=list)  # (entry name, sha256)

    @property
    def file_count(self) -> int:
        return len(self.files)


def build_manifest_sha256(files: list[tuple[str, str]]) -> str:
    """Sorted `<hash>  <path>` lines with a trailing newline."""
    lines = sorted(f"{digest}  {name}" for name, digest in files)
    return "\n".join(lines) + "\n"


def generate_decision_md(summary: RunSummary, git: Optional[GitInfo] = None) -> str:
    git = git or GitInfo()
    sha = summary.sha or git.sha
    branch = summary.branch or git.branch

    md = "# Gate Run Decision\n\n"
    md += "## Run Metadata\n\n"
    md += f"- **Run ID**: {summary.run_id}\n"
    md += f"- **Timestamp**: {summary.timestamp}\n"
    if sha:
        md += f"- **Git SHA**: {sha}\n"
    if branch:
        md += f"- **Git Branch**: {branch}\n"
    if summary.policy_hash:
        md += f"- **Policy Hash**: {summary.policy_hash}\n"
    md += (
        f"- **Totals**: {summary.total} screens, {summary.passed} PASS, "
        f"{summary.warned} WARN, {summary.failed} FAIL\n"
    )
    md += "\n"

    md += "## Thresholds\n\n"
    md += "Per-screen thresholds applied (resolved from org policy):\n\n"
    md += "| Screen ID | Warn px | Warn ratio | Fail px | Fail ratio | Masks required |\n"
    md += "|-----------|---------|------------|---------|------------|----------------|\n"
    for r in summary.results:
        t = r.thresholds
        md += (
            f"| {r.screen_id} | {t.warn.diff_pixels} | {t.warn.diff_pixel_ratio} | "
            f"{t.fail.diff_pixels} | {t.fail.diff_pixel_ratio} | {'yes' if t.require_masks else 'no'} |\n"
        )
    md += "\n"

    md += "## Screen Results\n\n"
    md += "| Screen ID | Route | Originality % | Status |\n"
    md += "|-----------|-------|---------------|--------|\n"
    for r in summary.results:
        md += f"| {r.screen_id} | {r.url} | {r.originality_percent:.2f}% | {r.status} |\n"
    md += "\n"

    errored = [r for r in summary.results if r.error]
    if errored:
        md += "## Notes\n\n"
        md += "### Errors\n\n"
        for r in errored:
            md += f"- **{r.screen_id}**: {r.error}\n"
        md += "\n"

    return md


def _load_summary(path: Path) -> RunSummary:
    try:
        with open(path) as f:
            return RunSummary.model_validate(json.load(f))
    except (json.JSONDecodeError, ValidationError) as e:
        raise EvidenceError(f"Summary file is invalid: {path}: {e}") from e


def _referenced_files(summary: RunSummary, run_dir: Path) -> list[str]:
    """Run-relative paths of actual/diff images and per-screen result files that exist."""
    names: list[str] = []
    for r in summary.results:
        for rel in (r.actual_path, r.diff_path):
            if rel and (run_dir / rel).is_file():
                names.append(Path(rel).as_posix())
        if r.actual_path:
            result_json = Path(r.actual_path).parent / RESULT_FILE
            if (run_dir / result_json).is_file():
                names.append(result_json.as_posix())
    return list(dict.fromkeys(names))


def create_evidence_pack(
    run_dir: Path, output_path: Optional[Path] = None, git: Optional[GitInfo] = None
) -> EvidencePackResult:
    """Zip a finished run. Raises EvidenceError if summary.json or report.html is missing."""
    run_dir = Path(run_dir)
    output_path = Path(output_path) if output_path else run_dir / EVIDENCE_FILE

    summary_path = run_dir / SUMMARY_FILE
    report_path = run_dir / REPORT_FILE
    if not summary_path.exists():
        raise EvidenceError(f"Summary file not found: {summary_path}")
    if not report_path.exists():
        raise EvidenceError(f"Report file not found: {report_path}")

    summary = _load_summary(summary_path)
    entries = [SUMMARY_FILE, REPORT_FILE] + _referenced_files(summary, run_dir)
    files = [(name, hash_file(run_dir / name)) for name in entries]

    decision = generate_decision_md(summary, git if git is not None else get_git_info(run_dir))

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(output_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, _ in files:
            zf.write(run_dir / name, arcname=name)
        zf.writestr(MANIFEST_NAME, build_manifest_sha256(files))
        zf.writestr(DECISION_NAME, decision)

    logger.info("Evidence pack written to %s (%d files)", output_path, len(files))
    return EvidencePackResult(output_path=output_path, files=files)


def verify_evidence_pack(path: Path) -> list[str]:
    """Entries whose bytes no longer match MANIFEST.sha256. Empty means intact."""
    mismatched = []
    with zipfile.ZipFile(path) as zf:
        manifest = zf.read(MANIFEST_NAME).decode()
        for line in manifest.splitlines():
            if not line.strip():
                continue
            digest, name = line.split("  ", 1)
            try:
                data = zf.read(name)
            except KeyError:
                mismatched.append(name)
                continue
            if hashlib.sha256(data).hexdigest() != digest:
                mismatched.append(name)
    return mismatched
