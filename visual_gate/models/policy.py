"""Org policy data structures: threshold bands, viewport, determinism, enforcement."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model for on-disk JSON that uses camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ThresholdBand(CamelModel):
    diff_pixel_ratio: float
    diff_pixels: int


class ScreenThresholds(CamelModel):
    warn: ThresholdBand
    fail: ThresholdBand
    require_masks: Optional[bool] = None


class ThresholdBandOverride(CamelModel):
    diff_pixel_ratio: Optional[float] = None
    diff_pixels: Optional[int] = None


class ThresholdOverride(CamelModel):
    """Partial thresholds supplied by an org policy tier or a single screen."""

    warn: Optional[ThresholdBandOverride] = None
    fail: Optional[ThresholdBandOverride] = None
    require_masks: Optional[bool] = None


BrowserName = Literal["chromium", "firefox", "webkit"]


class ViewportConfig(CamelModel):
    width: int = 1280
    height: int = 720
    device_scale_factor: float = 1
    browser: BrowserName = "chromium"


class ViewportOverride(CamelModel):
    width: Optional[int] = None
    height: Optional[int] = None
    device_scale_factor: Optional[float] = None
    browser: Optional[BrowserName] = None


class DeterminismConfig(CamelModel):
    browser: BrowserName = "chromium"
    device_scale_factor: float = 1
    locale: str = "en-US"
    timezone_id: str = "UTC"
    color_scheme: Literal["light", "dark"] = "light"
    reduce_motion: Literal["reduce", "no-preference"] = "reduce"
    disable_animations: bool = True
    block_external_network: bool = True
    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = "networkidle"
    layout_stability_ms: int = 300
    screenshot_after_settled_only: bool = True
    allowed_domains: list[str] = Field(
        default_factory=lambda: ["localhost", "127.0.0.1", "[::1]"]
    )


class DeterminismOverride(CamelModel):
    browser: Optional[BrowserName] = None
    device_scale_factor: Optional[float] = None
    locale: Optional[str] = None
    timezone_id: Optional[str] = None
    color_scheme: Optional[Literal["light", "dark"]] = None
    reduce_motion: Optional[Literal["reduce", "no-preference"]] = None
    disable_animations: Optional[bool] = None
    block_external_network: Optional[bool] = None
    wait_until: Optional[Literal["load", "domcontentloaded", "networkidle", "commit"]] = None
    layout_stability_ms: Optional[int] = None
    screenshot_after_settled_only: Optional[bool] = None
    allowed_domains: Optional[list[str]] = None


class ThresholdTiers(CamelModel):
    standard: ScreenThresholds
    critical: ScreenThresholds
    noisy: ScreenThresholds


class ThresholdTierOverrides(CamelModel):
    standard: Optional[ThresholdOverride] = None
    critical: Optional[ThresholdOverride] = None
    noisy: Optional[ThresholdOverride] = None


class PolicyDefaults(CamelModel):
    """Fully-populated defaults after merging an org policy over the core defaults."""

    viewport: ViewportConfig = Field(default_factory=ViewportConfig)
    determinism: DeterminismConfig = Field(default_factory=DeterminismConfig)
    thresholds: ThresholdTiers


class PolicyDefaultsOverride(CamelModel):
    viewport: Optional[ViewportOverride] = None
    determinism: Optional[DeterminismOverride] = None
    thresholds: Optional[ThresholdTierOverrides] = None


class TagRules(CamelModel):
    critical_routes: list[str] = Field(default_factory=list)
    noisy_routes: list[str] = Field(default_factory=list)


class EnforcementConfig(CamelModel):
    allow_loosening: bool = False
    allow_per_screen_viewport_override: bool = True
    allow_per_screen_mask_override: bool = True
    max_mask_coverage_ratio: float = 0.35


class EnforcementOverride(CamelModel):
    allow_loosening: Optional[bool] = None
    allow_per_screen_viewport_override: Optional[bool] = None
    allow_per_screen_mask_override: Optional[bool] = None
    max_mask_coverage_ratio: Optional[float] = None


class OrgPolicy(CamelModel):
    """Contents of `.gate/policy.json`. Read-only for the duration of a run."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    schema_version: Optional[int] = None
    defaults: PolicyDefaultsOverride = Field(default_factory=PolicyDefaultsOverride)
    tag_rules: Optional[TagRules] = None
    enforcement: EnforcementOverride = Field(default_factory=EnforcementOverride)
