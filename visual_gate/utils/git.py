"""Git metadata for run summaries and evidence packs."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class GitInfo:
    sha: Optional[str] = None
    branch: Optional[str] = None


def _git(args: list[str], cwd: Optional[Path]) -> Optional[str]:
    try:
        out = subprocess.run(
            ["git", *args], cwd=cwd, capture_output=True, text=True, timeout=5, check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("git %s unavailable: %s", " ".join(args), e)
        return None
    return out.stdout.strip() or None


def get_git_info(cwd: Optional[Path] = None) -> GitInfo:
    """Current commit and branch, or empty fields outside a git checkout."""
    return GitInfo(
        sha=_git(["rev-parse", "HEAD"], cwd),
        branch=_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd),
    )
