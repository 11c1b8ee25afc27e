"""Org policy loading and validation for `.gate/policy.json`."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from visual_gate.errors import PolicyLoadError
from visual_gate.models.policy import OrgPolicy

logger = logging.getLogger(__name__)

POLICY_DIR = ".gate"
POLICY_FILE = "policy.json"
SUPPORTED_SCHEMA_VERSIONS = (1,)


def policy_path(base_path: str | Path) -> Path:
    return Path(base_path) / POLICY_DIR / POLICY_FILE


def load_org_policy(base_path: str | Path = ".") -> Optional[OrgPolicy]:
    """Load the org policy under `base_path`.

    A missing file means no policy (compiled-in defaults apply). A present
    file with a missing or unsupported schemaVersion, bad JSON, or invalid
    fields raises PolicyLoadError.
    """
    path = policy_path(base_path)
    if not path.exists():
        logger.debug("No org policy at %s, using core defaults", path)
        return None

    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise PolicyLoadError(f"Policy file {path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise PolicyLoadError(f"Policy file {path} must contain a JSON object")

    version = data.get("schemaVersion")
    if version not in SUPPORTED_SCHEMA_VERSIONS:
        raise PolicyLoadError(
            f"Unsupported policy schemaVersion {version!r} in {path}; "
            f"expected one of {list(SUPPORTED_SCHEMA_VERSIONS)}"
        )

    try:
        policy = OrgPolicy.model_validate(data)
    except ValidationError as e:
        raise PolicyLoadError(f"Invalid policy file {path}: {e}") from e

    logger.info("Loaded org policy from %s", path)
    return policy


@dataclass
class PolicyValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    policy: Optional[OrgPolicy] = None


def validate_policy(base_path: str | Path = ".") -> PolicyValidation:
    """Check the policy file without raising, collecting errors and warnings."""
    try:
        policy = load_org_policy(base_path)
    except PolicyLoadError as e:
        return PolicyValidation(valid=False, errors=[str(e)])

    if policy is None:
        return PolicyValidation(
            valid=True,
            warnings=[f"No policy file found at {policy_path(base_path)}; core defaults apply"],
        )

    errors: list[str] = []
    warnings: list[str] = []

    ratio = policy.enforcement.max_mask_coverage_ratio
    if ratio is not None and not 0 <= ratio <= 1:
        errors.append(f"enforcement.maxMaskCoverageRatio must be between 0 and 1 (got {ratio})")

    if policy.tag_rules is not None:
        overlap = sorted(set(policy.tag_rules.critical_routes) & set(policy.tag_rules.noisy_routes))
        if overlap:
            warnings.append(
                f"Routes tagged both critical and noisy (critical wins): {', '.join(overlap)}"
            )

    return PolicyValidation(valid=not errors, errors=errors, warnings=warnings, policy=policy)
