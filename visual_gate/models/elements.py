"""DOM snapshot data structures used by mask suggestion."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field

from visual_gate.models.policy import CamelModel

ChangeTag = Literal[
    "text_changed", "bbox_changed", "visibility_changed", "appeared", "disappeared"
]


class BoundingBox(CamelModel):
    x: float
    y: float
    width: float
    height: float


class ElementSnapshot(CamelModel):
    selector: str
    text: str = ""
    bbox: BoundingBox
    visible: bool = True
    test_id: Optional[str] = None
    id: Optional[str] = None
    aria_label: Optional[str] = None


class VolatileElement(CamelModel):
    element: ElementSnapshot
    snapshot_a: Optional[ElementSnapshot] = None
    snapshot_b: Optional[ElementSnapshot] = None
    changes: list[ChangeTag] = Field(default_factory=list)
    numeric_only: bool = False  # text differs only in digit runs (clocks, counters)


class MaskSuggestion(CamelModel):
    """A proposed mask. A recommendation only, never applied automatically."""

    screen_id: str
    route: str = ""
    selector: str
    bbox: Optional[BoundingBox] = None
    confidence: float
    reason: str
    examples: list[str] = Field(default_factory=list)
    type: Literal["css", "rect"] = "css"
