"""Screen baseline, mask, and manifest data structures."""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import Field

from visual_gate.models.policy import (
    CamelModel,
    DeterminismConfig,
    DeterminismOverride,
    ScreenThresholds,
    ThresholdOverride,
    ViewportConfig,
    ViewportOverride,
)


class CssMask(CamelModel):
    type: Literal["css"] = "css"
    selector: str


class RectMask(CamelModel):
    type: Literal["rect"] = "rect"
    x: int
    y: int
    width: int
    height: int


Mask = Annotated[Union[CssMask, RectMask], Field(discriminator="type")]


class ScreenBaseline(CamelModel):
    """A screen's identity plus its optional per-screen overrides (`screen.json`)."""

    name: str
    url: str
    tags: list[str] = Field(default_factory=list)
    viewport: Optional[ViewportOverride] = None
    thresholds: Optional[ThresholdOverride] = None
    determinism: Optional[DeterminismOverride] = None
    masks: list[Mask] = Field(default_factory=list)
    override_justification: Optional[str] = None


class ResolvedScreenConfig(ScreenBaseline):
    """A ScreenBaseline after policy resolution. Built per screen per run, never persisted."""

    resolved_viewport: ViewportConfig
    resolved_thresholds: ScreenThresholds
    resolved_determinism: DeterminismConfig
    applied_tags: list[str] = Field(default_factory=list)
    loosening_applied: bool = False
    mask_coverage_ratio: float = 0.0


class ManifestEntry(CamelModel):
    screen_id: str
    name: str
    url: str = ""
    hash: str = ""
    tags: list[str] = Field(default_factory=list)


class Manifest(CamelModel):
    baselines: list[ManifestEntry] = Field(default_factory=list)
