"""Tests for policy merging, tag rules and override enforcement."""

import pytest

from visual_gate.errors import PolicyViolation
from visual_gate.models.policy import (
    DeterminismOverride,
    OrgPolicy,
    ThresholdBandOverride,
    ThresholdOverride,
    ViewportConfig,
    ViewportOverride,
)
from visual_gate.models.screen import CssMask, RectMask, ScreenBaseline
from visual_gate.policy.resolver import (
    CORE_DEFAULTS,
    apply_tag_rules,
    compute_mask_coverage_ratio,
    compute_policy_hash,
    is_determinism_loosening,
    is_threshold_loosening,
    merge_defaults,
    merge_enforcement,
    resolve_screen,
)


def _policy(**enforcement) -> OrgPolicy:
    return OrgPolicy.model_validate({"schemaVersion": 1, "enforcement": enforcement})


class TestMergeDefaults:
    """Tests for merging an org policy over the core defaults."""

    def test_no_policy_uses_core_defaults(self):
        assert merge_defaults(None) is CORE_DEFAULTS

    def test_partial_band_override_keeps_other_fields(self, org_policy):
        defaults = merge_defaults(org_policy)
        standard = defaults.thresholds.standard
        assert standard.warn.diff_pixels == 200
        assert standard.warn.diff_pixel_ratio == 0.0002
        assert standard.fail.diff_pixels == 600

    def test_untouched_tiers_match_core(self, org_policy):
        defaults = merge_defaults(org_policy)
        assert defaults.thresholds.critical == CORE_DEFAULTS.thresholds.critical
        assert defaults.thresholds.noisy.require_masks is True

    def test_enforcement_defaults(self):
        enforcement = merge_enforcement(None)
        assert enforcement.allow_loosening is False
        assert enforcement.max_mask_coverage_ratio == 0.35

    def test_enforcement_override(self, org_policy):
        enforcement = merge_enforcement(org_policy)
        assert enforcement.max_mask_coverage_ratio == 0.3
        assert enforcement.allow_per_screen_viewport_override is True


class TestTagRules:
    """Tests for tag assignment."""

    def test_explicit_tags_win(self, org_policy):
        screen = ScreenBaseline(name="Checkout", url="/checkout", tags=["noisy"])
        assert apply_tag_rules(screen, org_policy) == ["noisy"]

    def test_critical_route_match(self, org_policy):
        screen = ScreenBaseline(name="Pay", url="/checkout/pay")
        assert apply_tag_rules(screen, org_policy) == ["critical"]

    def test_noisy_route_match(self, org_policy):
        screen = ScreenBaseline(name="Feed", url="/feed")
        assert apply_tag_rules(screen, org_policy) == ["noisy"]

    def test_critical_checked_before_noisy(self):
        policy = OrgPolicy.model_validate({
            "schemaVersion": 1,
            "tagRules": {"criticalRoutes": ["/x"], "noisyRoutes": ["/x"]},
        })
        assert apply_tag_rules(ScreenBaseline(name="X", url="/x"), policy) == ["critical"]

    def test_no_rules_no_tags(self):
        assert apply_tag_rules(ScreenBaseline(name="Home", url="/"), None) == []


class TestLooseningChecks:
    """Tests for loosening detection."""

    def test_lower_values_are_not_loosening(self):
        override = ThresholdOverride(warn=ThresholdBandOverride(diff_pixels=10))
        assert not is_threshold_loosening(override, CORE_DEFAULTS.thresholds.standard)

    def test_raised_ratio_is_loosening(self):
        override = ThresholdOverride(fail=ThresholdBandOverride(diff_pixel_ratio=0.01))
        assert is_threshold_loosening(override, CORE_DEFAULTS.thresholds.standard)

    def test_disabling_required_masks_is_loosening(self):
        override = ThresholdOverride(require_masks=False)
        assert is_threshold_loosening(override, CORE_DEFAULTS.thresholds.noisy)
        assert not is_threshold_loosening(override, CORE_DEFAULTS.thresholds.standard)

    def test_determinism_loosening_lists_fields(self):
        override = DeterminismOverride(disable_animations=False, locale="de-DE")
        assert is_determinism_loosening(override) == ["disable_animations"]
        assert is_determinism_loosening(None) == []


class TestResolveScreen:
    """Tests for per-screen resolution and enforcement."""

    def test_defaults_without_policy(self):
        resolved = resolve_screen(ScreenBaseline(name="Home", url="/"), None)
        assert resolved.resolved_thresholds == CORE_DEFAULTS.thresholds.standard
        assert resolved.resolved_viewport.width == 1280
        assert resolved.resolved_viewport.height == 720
        assert resolved.resolved_viewport.browser == "chromium"
        assert resolved.applied_tags == []
        assert resolved.loosening_applied is False

    def test_tightening_is_allowed(self, org_policy):
        screen = ScreenBaseline(
            name="Home", url="/",
            thresholds=ThresholdOverride(warn=ThresholdBandOverride(diff_pixels=50)),
        )
        resolved = resolve_screen(screen, org_policy)
        assert resolved.resolved_thresholds.warn.diff_pixels == 50
        assert resolved.loosening_applied is False

    def test_loosening_rejected_when_not_allowed(self, org_policy):
        screen = ScreenBaseline(
            name="Home", url="/",
            thresholds=ThresholdOverride(fail=ThresholdBandOverride(diff_pixels=5000)),
            override_justification="flaky chart",
        )
        with pytest.raises(PolicyViolation) as exc_info:
            resolve_screen(screen, org_policy)
        assert exc_info.value.field == "threshold"
        assert exc_info.value.screen_name == "Home"
        assert "does not allow loosening thresholds" in str(exc_info.value)

    def test_loosening_requires_justification(self):
        screen = ScreenBaseline(
            name="Home", url="/",
            thresholds=ThresholdOverride(fail=ThresholdBandOverride(diff_pixels=5000)),
            override_justification="   ",
        )
        with pytest.raises(PolicyViolation, match="requires overrideJustification"):
            resolve_screen(screen, _policy(allowLoosening=True))

    def test_justified_loosening_is_applied(self):
        screen = ScreenBaseline(
            name="Home", url="/",
            thresholds=ThresholdOverride(fail=ThresholdBandOverride(diff_pixels=5000)),
            override_justification="Third-party map tiles",
        )
        resolved = resolve_screen(screen, _policy(allowLoosening=True))
        assert resolved.resolved_thresholds.fail.diff_pixels == 5000
        assert resolved.loosening_applied is True

    def test_noisy_screen_cannot_drop_required_masks(self):
        screen = ScreenBaseline(
            name="Feed", url="/feed", tags=["noisy"],
            thresholds=ThresholdOverride(require_masks=False),
        )
        with pytest.raises(PolicyViolation):
            resolve_screen(screen, None)

    def test_determinism_loosening_rejected(self):
        screen = ScreenBaseline(
            name="Home", url="/",
            determinism=DeterminismOverride(block_external_network=False),
        )
        with pytest.raises(PolicyViolation) as exc_info:
            resolve_screen(screen, None)
        assert exc_info.value.field == "determinism"
        assert "block_external_network" in exc_info.value.reason

    def test_harmless_determinism_override_merges(self):
        screen = ScreenBaseline(
            name="Home", url="/", determinism=DeterminismOverride(color_scheme="dark"),
        )
        resolved = resolve_screen(screen, None)
        assert resolved.resolved_determinism.color_scheme == "dark"
        assert resolved.resolved_determinism.disable_animations is True

    def test_viewport_override_rejected_by_enforcement(self):
        screen = ScreenBaseline(name="Home", url="/", viewport=ViewportOverride(width=375))
        with pytest.raises(PolicyViolation) as exc_info:
            resolve_screen(screen, _policy(allowPerScreenViewportOverride=False))
        assert exc_info.value.field == "viewport"

    def test_viewport_override_merges(self):
        screen = ScreenBaseline(name="Mobile", url="/", viewport=ViewportOverride(width=375, height=667))
        resolved = resolve_screen(screen, None)
        assert (resolved.resolved_viewport.width, resolved.resolved_viewport.height) == (375, 667)

    def test_policy_browser_flows_into_viewport(self):
        policy = OrgPolicy.model_validate({
            "schemaVersion": 1,
            "defaults": {"determinism": {"browser": "firefox", "deviceScaleFactor": 2}},
        })
        resolved = resolve_screen(ScreenBaseline(name="Home", url="/"), policy)
        assert resolved.resolved_viewport.browser == "firefox"
        assert resolved.resolved_viewport.device_scale_factor == 2

    def test_mask_override_rejected_by_enforcement(self):
        screen = ScreenBaseline(name="Home", url="/", masks=[CssMask(selector=".clock")])
        with pytest.raises(PolicyViolation) as exc_info:
            resolve_screen(screen, _policy(allowPerScreenMaskOverride=False))
        assert exc_info.value.field == "masks"

    def test_mask_coverage_over_limit(self):
        screen = ScreenBaseline(
            name="Home", url="/", masks=[RectMask(x=0, y=0, width=1280, height=360)],
        )
        with pytest.raises(PolicyViolation) as exc_info:
            resolve_screen(screen, None)
        assert "mask coverage (50.0%) exceeds policy limit (35.0%)" in str(exc_info.value)

    def test_mask_coverage_recorded(self):
        screen = ScreenBaseline(
            name="Home", url="/", masks=[RectMask(x=0, y=0, width=128, height=72)],
        )
        resolved = resolve_screen(screen, None)
        assert resolved.mask_coverage_ratio == pytest.approx(0.01)


class TestMaskCoverage:
    """Tests for mask coverage ratio."""

    def test_css_masks_have_no_area(self):
        viewport = ViewportConfig(width=100, height=100)
        assert compute_mask_coverage_ratio([CssMask(selector=".ad")], viewport) == 0.0

    def test_rect_areas_sum(self):
        viewport = ViewportConfig(width=100, height=100)
        masks = [RectMask(x=0, y=0, width=10, height=10), RectMask(x=50, y=50, width=20, height=10)]
        assert compute_mask_coverage_ratio(masks, viewport) == pytest.approx(0.03)

    def test_degenerate_rects_ignored(self):
        viewport = ViewportConfig(width=100, height=100)
        assert compute_mask_coverage_ratio([RectMask(x=0, y=0, width=0, height=50)], viewport) == 0.0


class TestPolicyHash:
    """Tests for the policy fingerprint."""

    def test_hash_is_stable(self, org_policy):
        assert compute_policy_hash(org_policy) == compute_policy_hash(org_policy)
        assert len(compute_policy_hash(org_policy)) == 16

    def test_hash_changes_with_policy(self, org_policy):
        assert compute_policy_hash(org_policy) != compute_policy_hash(_policy(allowLoosening=True))

    def test_no_policy_has_hash(self):
        assert len(compute_policy_hash(None)) == 16
