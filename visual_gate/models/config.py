"""Run configuration for the visual gate."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


def _debug_from_env() -> bool:
    return os.environ.get("GATE_DEBUG") == "1"


class GateConfig(BaseModel):
    # Target
    base_url: str

    # Locations
    baselines_dir: str = "baselines"
    runs_dir: str = "runs"
    policy_root: str = "."
    out_dir: Optional[str] = None

    # Screen selection
    screens: list[str] = Field(default_factory=list)

    # Execution
    max_parallel_screens: int = 1
    navigation_timeout_ms: int = 30000
    layout_stability_attempts: int = 10
    debug: bool = Field(default_factory=_debug_from_env)

    # Output
    create_evidence_pack: bool = False

    @classmethod
    def load(cls, path: str | Path) -> "GateConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = json.load(f)
        return cls(**data)

    def save(self, path: str | Path) -> None:
        """Save config to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(), f, indent=2)
