"""Mask suggestion from two DOM snapshots of the same page.

Elements whose text, position or visibility differ between snapshots are
volatile. Each one gets the most durable selector available; dense clusters
collapse into a single padded rectangle. Elements that look like error or
warning UI are never suggested, since masking them would hide regressions.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Optional

from playwright.async_api import Page

from visual_gate.capture.deterministic import DeterministicCaptureController
from visual_gate.capture.elements import capture_element_snapshot
from visual_gate.models.elements import (
    BoundingBox,
    ChangeTag,
    ElementSnapshot,
    MaskSuggestion,
    VolatileElement,
)
from visual_gate.models.screen import CssMask, Mask, RectMask

logger = logging.getLogger(__name__)

DEFAULT_MAX_SUGGESTIONS = 8
BBOX_TOLERANCE = 1
CONTAINER_GRID = 100
CONTAINER_MIN_ELEMENTS = 5
CONTAINER_PADDING = 8
CONTAINER_CONFIDENCE = 0.8
APPLY_MIN_CONFIDENCE = 0.75

UNSAFE_TEXT = (
    "error", "failed", "failure", "warning", "warn",
    "unauthorized", "blocked", "denied", "forbidden", "invalid",
)

_WHITESPACE = re.compile(r"\s+")
_DIGITS = re.compile(r"\d+")


# ---------------------------------------------------------------------------
# Volatility detection
# ---------------------------------------------------------------------------


def normalize_text(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def collapse_digits(text: str) -> str:
    return _DIGITS.sub("#", text)


def _bbox_changed(a: BoundingBox, b: BoundingBox) -> bool:
    return any(
        abs(getattr(a, attr) - getattr(b, attr)) > BBOX_TOLERANCE
        for attr in ("x", "y", "width", "height")
    )


def detect_volatile_elements(
    snapshot_a: list[ElementSnapshot], snapshot_b: list[ElementSnapshot]
) -> list[VolatileElement]:
    """Pair elements by selector and tag what differs between the two snapshots."""
    by_selector = {el.selector: el for el in snapshot_b}
    seen: set[str] = set()
    volatile: list[VolatileElement] = []

    for a in snapshot_a:
        seen.add(a.selector)
        b = by_selector.get(a.selector)
        if b is None:
            volatile.append(
                VolatileElement(element=a, snapshot_a=a, changes=["disappeared"])
            )
            continue

        changes: list[ChangeTag] = []
        numeric_only = False
        text_a, text_b = normalize_text(a.text), normalize_text(b.text)
        if text_a != text_b:
            changes.append("text_changed")
            numeric_only = collapse_digits(text_a) == collapse_digits(text_b)
        if _bbox_changed(a.bbox, b.bbox):
            changes.append("bbox_changed")
        if a.visible != b.visible:
            changes.append("visibility_changed")

        if changes:
            volatile.append(
                VolatileElement(
                    element=b, snapshot_a=a, snapshot_b=b,
                    changes=changes, numeric_only=numeric_only,
                )
            )

    for b in snapshot_b:
        if b.selector not in seen:
            volatile.append(VolatileElement(element=b, snapshot_b=b, changes=["appeared"]))

    logger.debug("Detected %d volatile element(s)", len(volatile))
    return volatile


# ---------------------------------------------------------------------------
# Selector ranking
# ---------------------------------------------------------------------------


def looks_like_hash(value: str) -> bool:
    return re.fullmatch(r"[0-9a-fA-F]{8,}", value) is not None


def is_too_short(value: str) -> bool:
    return 1 <= len(value) <= 3


def has_long_digit_run(value: str) -> bool:
    return re.search(r"\d{4,}", value) is not None


def has_generated_keyword(value: str) -> bool:
    lowered = value.lower()
    return any(k in lowered for k in ("random", "uuid", "guid", "tmp", "temp"))


UNSTABLE_ID_RULES: tuple[Callable[[str], bool], ...] = (
    looks_like_hash,
    is_too_short,
    has_long_digit_run,
    has_generated_keyword,
)


def is_stable_id(value: Optional[str]) -> bool:
    if not value:
        return False
    return not any(rule(value) for rule in UNSTABLE_ID_RULES)


@dataclass
class RankedSelector:
    selector: str
    confidence: float
    type: str  # "css" or "rect"


def _css_attr(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def rank_selector(element: ElementSnapshot) -> RankedSelector:
    """Most durable selector for an element: testid, stable id, aria-label, else its rectangle."""
    if element.test_id:
        return RankedSelector(f'[data-testid="{_css_attr(element.test_id)}"]', 0.95, "css")
    if is_stable_id(element.id):
        return RankedSelector(f"#{element.id}", 0.90, "css")
    if element.aria_label:
        return RankedSelector(f'[aria-label="{_css_attr(element.aria_label)}"]', 0.85, "css")
    return RankedSelector(element.selector, 0.50, "rect")


def is_safe_to_mask(element: ElementSnapshot) -> bool:
    text = (element.text or "").lower()
    return not any(word in text for word in UNSAFE_TEXT)


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------


def _union_bbox(boxes: list[BoundingBox], padding: float = 0) -> BoundingBox:
    x0 = min(b.x for b in boxes) - padding
    y0 = min(b.y for b in boxes) - padding
    x1 = max(b.x + b.width for b in boxes) + padding
    y1 = max(b.y + b.height for b in boxes) + padding
    return BoundingBox(x=max(x0, 0), y=max(y0, 0), width=x1 - max(x0, 0), height=y1 - max(y0, 0))


def _grid_cell(bbox: BoundingBox) -> tuple[int, int]:
    return int(bbox.x // CONTAINER_GRID), int(bbox.y // CONTAINER_GRID)


def _clusters(volatile: list[VolatileElement]) -> list[list[VolatileElement]]:
    """Volatile elements bucketed by the grid cell of their top-left corner, dense buckets only."""
    cells: dict[tuple[int, int], list[VolatileElement]] = defaultdict(list)
    for v in volatile:
        cells[_grid_cell(v.element.bbox)].append(v)
    return [cells[c] for c in sorted(cells) if len(cells[c]) >= CONTAINER_MIN_ELEMENTS]


def detect_container_volatility(
    volatile: list[VolatileElement], screen_id: str = "", route: str = ""
) -> list[MaskSuggestion]:
    """One padded rectangle per grid cell holding at least CONTAINER_MIN_ELEMENTS volatile elements."""
    suggestions = []
    for members in _clusters(volatile):
        bbox = _union_bbox([m.element.bbox for m in members], CONTAINER_PADDING)
        suggestions.append(
            MaskSuggestion(
                screen_id=screen_id,
                route=route,
                selector=f"rect({int(bbox.x)},{int(bbox.y)},{int(bbox.width)},{int(bbox.height)})",
                bbox=bbox,
                confidence=CONTAINER_CONFIDENCE,
                reason=f"Container with {len(members)} volatile elements",
                examples=[m.element.selector for m in members[:3]],
                type="rect",
            )
        )
    return suggestions


def _reason(v: VolatileElement) -> str:
    if v.numeric_only:
        return "Numeric content changes between loads (clock or counter)"
    return f"Element {', '.join(v.changes)}"


def _examples(v: VolatileElement) -> list[str]:
    texts = []
    for snap in (v.snapshot_a, v.snapshot_b):
        if snap is not None and snap.text and snap.text not in texts:
            texts.append(snap.text)
    return texts


def generate_mask_suggestions(
    volatile: list[VolatileElement],
    screen_id: str,
    max_suggestions: int = DEFAULT_MAX_SUGGESTIONS,
    route: str = "",
) -> list[MaskSuggestion]:
    """Container and individual suggestions, highest confidence first, capped at `max_suggestions`."""
    safe = [v for v in volatile if is_safe_to_mask(v.element)]
    containers = detect_container_volatility(safe, screen_id, route)
    absorbed = {id(m) for members in _clusters(safe) for m in members}

    individual = []
    for v in safe:
        if id(v) in absorbed:
            continue
        ranked = rank_selector(v.element)
        individual.append(
            MaskSuggestion(
                screen_id=screen_id,
                route=route,
                selector=ranked.selector,
                bbox=v.element.bbox,
                confidence=ranked.confidence,
                reason=_reason(v),
                examples=_examples(v),
                type=ranked.type,
            )
        )

    merged = sorted(containers + individual, key=lambda s: s.confidence, reverse=True)
    return merged[:max_suggestions]


def convert_to_mask(suggestion: MaskSuggestion) -> Mask:
    """Turn a suggestion into the mask value consumed by capture and comparison."""
    if suggestion.type == "rect":
        if suggestion.bbox is None:
            raise ValueError(f"Rect suggestion {suggestion.selector!r} has no bounding box")
        b = suggestion.bbox
        return RectMask(x=round(b.x), y=round(b.y), width=round(b.width), height=round(b.height))
    return CssMask(selector=suggestion.selector)


def is_suggestion_applicable(suggestion: MaskSuggestion) -> bool:
    """High-confidence suggestions whose example text passes the unsafe-text blocklist."""
    if suggestion.confidence < APPLY_MIN_CONFIDENCE:
        return False
    candidate = ElementSnapshot(
        selector=suggestion.selector,
        text=" ".join(suggestion.examples),
        bbox=suggestion.bbox or BoundingBox(x=0, y=0, width=0, height=0),
    )
    return is_safe_to_mask(candidate)


async def suggest_masks_for_screen(
    page: Page,
    screen_id: str,
    controller: DeterministicCaptureController | None = None,
    max_suggestions: int = DEFAULT_MAX_SUGGESTIONS,
    reload: bool = False,
    route: str = "",
) -> list[MaskSuggestion]:
    """Snapshot a loaded page twice, separated by a stability wait or a reload, and suggest masks."""
    controller = controller or DeterministicCaptureController()

    await controller.wait_for_layout_stability(page)
    snapshot_a = await capture_element_snapshot(page)

    if reload:
        await page.reload(wait_until=controller.config.wait_until)
    else:
        await page.wait_for_timeout(controller.config.layout_stability_ms)
    await controller.wait_for_layout_stability(page)
    snapshot_b = await capture_element_snapshot(page)

    volatile = detect_volatile_elements(snapshot_a, snapshot_b)
    suggestions = generate_mask_suggestions(volatile, screen_id, max_suggestions, route)
    logger.info("%s: %d volatile element(s), %d suggestion(s)", screen_id, len(volatile), len(suggestions))
    return suggestions
