"""Run result data structures produced by the gate runner."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import Field

from visual_gate.models.policy import CamelModel, ScreenThresholds

Status = Literal["PASS", "WARN", "FAIL"]


class DetectedChange(CamelModel):
    type: Literal["position", "size", "color"]
    description: str
    confidence: float
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class ScreenResult(CamelModel):
    screen_id: str
    name: str = ""
    url: str = ""
    status: Status
    diff_pixels: int = 0
    diff_pixel_ratio: float = 0.0
    total_pixels: int = 0
    originality_percent: float = 0.0
    thresholds: ScreenThresholds
    error: Optional[str] = None
    expected_path: Optional[str] = None
    actual_path: Optional[str] = None
    diff_path: Optional[str] = None
    changes: list[DetectedChange] = Field(default_factory=list)
    layout_stable: Optional[bool] = None


class RunSummary(CamelModel):
    run_id: str
    timestamp: str
    sha: Optional[str] = None
    branch: Optional[str] = None
    policy_hash: str = ""
    total: int = 0
    passed: int = 0
    warned: int = 0
    failed: int = 0
    results: list[ScreenResult] = Field(default_factory=list)

    @classmethod
    def from_results(
        cls, run_id: str, timestamp: str, results: list[ScreenResult], **extra: Any
    ) -> "RunSummary":
        return cls(
            run_id=run_id,
            timestamp=timestamp,
            total=len(results),
            passed=sum(1 for r in results if r.status == "PASS"),
            warned=sum(1 for r in results if r.status == "WARN"),
            failed=sum(1 for r in results if r.status == "FAIL"),
            results=results,
            **extra,
        )
