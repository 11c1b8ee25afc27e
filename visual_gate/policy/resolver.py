"""Policy resolution: merges org policy over core defaults and enforces override rules.

Thresholds may only be tightened by a screen unless the policy sets
`enforcement.allowLoosening` and the screen supplies `overrideJustification`.
A rejected override is a PolicyViolation, never a silent clamp.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Optional

from visual_gate.errors import PolicyViolation
from visual_gate.models.policy import (
    DeterminismConfig,
    DeterminismOverride,
    EnforcementConfig,
    OrgPolicy,
    PolicyDefaults,
    ScreenThresholds,
    ThresholdBand,
    ThresholdBandOverride,
    ThresholdOverride,
    ThresholdTiers,
    ViewportConfig,
    ViewportOverride,
)
from visual_gate.models.screen import Mask, RectMask, ResolvedScreenConfig, ScreenBaseline

logger = logging.getLogger(__name__)

CORE_DEFAULTS = PolicyDefaults(
    viewport=ViewportConfig(width=1280, height=720),
    determinism=DeterminismConfig(),
    thresholds=ThresholdTiers(
        standard=ScreenThresholds(
            warn=ThresholdBand(diff_pixel_ratio=0.0002, diff_pixels=250),
            fail=ThresholdBand(diff_pixel_ratio=0.0005, diff_pixels=600),
        ),
        critical=ScreenThresholds(
            warn=ThresholdBand(diff_pixel_ratio=0.0001, diff_pixels=150),
            fail=ThresholdBand(diff_pixel_ratio=0.0003, diff_pixels=400),
        ),
        noisy=ScreenThresholds(
            warn=ThresholdBand(diff_pixel_ratio=0.0003, diff_pixels=350),
            fail=ThresholdBand(diff_pixel_ratio=0.0008, diff_pixels=900),
            require_masks=True,
        ),
    ),
)

DEFAULT_ENFORCEMENT = EnforcementConfig()

# Determinism switches whose disabling counts as a loosening.
ESSENTIAL_DETERMINISM_FIELDS = ("disable_animations", "block_external_network")

TAGS = ("standard", "critical", "noisy")


@dataclass
class OverrideDecision:
    allowed: bool
    reason: str = ""


# ---------------------------------------------------------------------------
# Pure merge functions, one per config type
# ---------------------------------------------------------------------------


def merge_band(base: ThresholdBand, override: ThresholdBandOverride | None) -> ThresholdBand:
    if override is None:
        return base
    return base.model_copy(update=override.model_dump(exclude_none=True))


def merge_thresholds(base: ScreenThresholds, override: ThresholdOverride | None) -> ScreenThresholds:
    if override is None:
        return base
    return ScreenThresholds(
        warn=merge_band(base.warn, override.warn),
        fail=merge_band(base.fail, override.fail),
        require_masks=(
            override.require_masks if override.require_masks is not None else base.require_masks
        ),
    )


def merge_viewport(base: ViewportConfig, override: ViewportOverride | None) -> ViewportConfig:
    if override is None:
        return base
    return base.model_copy(update=override.model_dump(exclude_none=True))


def merge_determinism(
    base: DeterminismConfig, override: DeterminismOverride | None
) -> DeterminismConfig:
    if override is None:
        return base
    return base.model_copy(update=override.model_dump(exclude_none=True))


def merge_defaults(org_policy: OrgPolicy | None) -> PolicyDefaults:
    """Deep-merge the org policy `defaults` over CORE_DEFAULTS."""
    if org_policy is None:
        return CORE_DEFAULTS

    defaults = org_policy.defaults
    tiers = defaults.thresholds
    return PolicyDefaults(
        viewport=merge_viewport(CORE_DEFAULTS.viewport, defaults.viewport),
        determinism=merge_determinism(CORE_DEFAULTS.determinism, defaults.determinism),
        thresholds=ThresholdTiers(
            **{
                tag: merge_thresholds(
                    getattr(CORE_DEFAULTS.thresholds, tag),
                    getattr(tiers, tag) if tiers else None,
                )
                for tag in TAGS
            }
        ),
    )


def merge_enforcement(org_policy: OrgPolicy | None) -> EnforcementConfig:
    if org_policy is None:
        return DEFAULT_ENFORCEMENT
    return DEFAULT_ENFORCEMENT.model_copy(
        update=org_policy.enforcement.model_dump(exclude_none=True)
    )


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


def apply_tag_rules(screen: ScreenBaseline, org_policy: OrgPolicy | None) -> list[str]:
    """Explicit screen tags win; otherwise match the URL against critical then noisy routes."""
    if screen.tags:
        return list(screen.tags)

    if org_policy is None or org_policy.tag_rules is None:
        return []

    rules = org_policy.tag_rules
    if any(route in screen.url for route in rules.critical_routes):
        return ["critical"]
    if any(route in screen.url for route in rules.noisy_routes):
        return ["noisy"]
    return []


def get_tag_thresholds(tag: str | None, defaults: PolicyDefaults) -> ScreenThresholds:
    if tag in ("critical", "noisy"):
        return getattr(defaults.thresholds, tag)
    return defaults.thresholds.standard


# ---------------------------------------------------------------------------
# Loosening checks
# ---------------------------------------------------------------------------


def _band_raised(override: ThresholdBandOverride | None, base: ThresholdBand) -> bool:
    if override is None:
        return False
    if override.diff_pixel_ratio is not None and override.diff_pixel_ratio > base.diff_pixel_ratio:
        return True
    if override.diff_pixels is not None and override.diff_pixels > base.diff_pixels:
        return True
    return False


def is_threshold_loosening(per_screen: ThresholdOverride | None, base: ScreenThresholds) -> bool:
    """True if any band value is raised or requireMasks flips from true to false."""
    if per_screen is None:
        return False
    if _band_raised(per_screen.warn, base.warn) or _band_raised(per_screen.fail, base.fail):
        return True
    return per_screen.require_masks is False and base.require_masks is True


def _gate_loosening(enforcement: EnforcementConfig, has_justification: bool, what: str) -> OverrideDecision:
    if not enforcement.allow_loosening:
        return OverrideDecision(False, f"Policy enforcement does not allow loosening {what}")
    if not has_justification:
        return OverrideDecision(False, f"Loosening {what} requires overrideJustification field")
    return OverrideDecision(True)


def _has_justification(screen: ScreenBaseline) -> bool:
    return bool(screen.override_justification and screen.override_justification.strip())


def validate_threshold_override(
    screen: ScreenBaseline, base: ScreenThresholds, enforcement: EnforcementConfig
) -> OverrideDecision:
    if not is_threshold_loosening(screen.thresholds, base):
        return OverrideDecision(True)
    return _gate_loosening(enforcement, _has_justification(screen), "thresholds")


def is_determinism_loosening(per_screen: DeterminismOverride | None) -> list[str]:
    """Names of essential determinism switches that the override turns off."""
    if per_screen is None:
        return []
    return [f for f in ESSENTIAL_DETERMINISM_FIELDS if getattr(per_screen, f) is False]


def validate_determinism_override(
    per_screen: DeterminismOverride | None,
    enforcement: EnforcementConfig,
    has_justification: bool,
) -> OverrideDecision:
    disabled = is_determinism_loosening(per_screen)
    if not disabled:
        return OverrideDecision(True)
    return _gate_loosening(enforcement, has_justification, f"determinism ({', '.join(disabled)})")


# ---------------------------------------------------------------------------
# Masks
# ---------------------------------------------------------------------------


def compute_mask_coverage_ratio(masks: list[Mask], viewport: ViewportConfig) -> float:
    """Sum of rect-mask areas over viewport area. CSS masks have no bounded area and are ignored."""
    viewport_area = viewport.width * viewport.height
    if not masks or viewport_area <= 0:
        return 0.0
    total = sum(m.width * m.height for m in masks if isinstance(m, RectMask) and m.width > 0 and m.height > 0)
    return total / viewport_area


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def resolve_screen(screen: ScreenBaseline, org_policy: OrgPolicy | None) -> ResolvedScreenConfig:
    """Resolve thresholds, viewport and determinism for one screen.

    Raises PolicyViolation naming the screen and the offending field when an
    override is rejected or mask coverage exceeds the policy limit.
    """
    defaults = merge_defaults(org_policy)
    enforcement = merge_enforcement(org_policy)

    applied_tags = apply_tag_rules(screen, org_policy)
    primary_tag = applied_tags[0] if applied_tags else None
    base_thresholds = get_tag_thresholds(primary_tag, defaults)

    decision = validate_threshold_override(screen, base_thresholds, enforcement)
    if not decision.allowed:
        raise PolicyViolation(screen.name, "threshold", decision.reason)
    resolved_thresholds = merge_thresholds(base_thresholds, screen.thresholds)

    if screen.viewport is not None and not enforcement.allow_per_screen_viewport_override:
        if screen.viewport.model_dump(exclude_none=True):
            raise PolicyViolation(
                screen.name, "viewport", "Policy enforcement does not allow per-screen viewport overrides"
            )
    resolved_viewport = merge_viewport(
        defaults.viewport.model_copy(
            update={
                "device_scale_factor": defaults.determinism.device_scale_factor,
                "browser": defaults.determinism.browser,
            }
        ),
        screen.viewport,
    )

    decision = validate_determinism_override(screen.determinism, enforcement, _has_justification(screen))
    if not decision.allowed:
        raise PolicyViolation(screen.name, "determinism", decision.reason)
    resolved_determinism = merge_determinism(defaults.determinism, screen.determinism)

    if screen.masks and not enforcement.allow_per_screen_mask_override:
        raise PolicyViolation(
            screen.name, "masks", "Policy enforcement does not allow per-screen mask overrides"
        )
    coverage = compute_mask_coverage_ratio(screen.masks, resolved_viewport)
    if coverage > enforcement.max_mask_coverage_ratio:
        raise PolicyViolation(
            screen.name,
            "masks",
            f"mask coverage ({coverage * 100:.1f}%) exceeds policy limit "
            f"({enforcement.max_mask_coverage_ratio * 100:.1f}%)",
        )

    loosening = is_threshold_loosening(screen.thresholds, base_thresholds) or bool(
        is_determinism_loosening(screen.determinism)
    )
    if loosening:
        logger.warning(
            "Screen %s loosens policy with justification: %s",
            screen.name, screen.override_justification,
        )

    return ResolvedScreenConfig(
        **screen.model_dump(),
        resolved_viewport=resolved_viewport,
        resolved_thresholds=resolved_thresholds,
        resolved_determinism=resolved_determinism,
        applied_tags=applied_tags,
        loosening_applied=loosening,
        mask_coverage_ratio=coverage,
    )


def compute_policy_hash(policy: Optional[OrgPolicy]) -> str:
    """Stable 16-hex-char SHA-256 prefix of the policy's canonical JSON."""
    data = policy.model_dump(by_alias=True, exclude_unset=True) if policy else {}
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]
