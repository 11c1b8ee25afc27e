"""Tests for volatile element detection and mask suggestion."""

from unittest.mock import AsyncMock

import pytest

from visual_gate.capture.deterministic import DeterministicCaptureController
from visual_gate.masks.suggester import (
    convert_to_mask,
    detect_container_volatility,
    detect_volatile_elements,
    generate_mask_suggestions,
    is_safe_to_mask,
    is_stable_id,
    is_suggestion_applicable,
    rank_selector,
    suggest_masks_for_screen,
)
from visual_gate.models.elements import BoundingBox, MaskSuggestion
from visual_gate.models.policy import DeterminismConfig
from visual_gate.models.screen import CssMask, RectMask


def _suggestion(**kwargs) -> MaskSuggestion:
    data = dict(screen_id="home", selector="#clock", confidence=0.9, reason="Element text_changed")
    data.update(kwargs)
    return MaskSuggestion(**data)


class TestDetectVolatileElements:
    """Tests for pairing two snapshots and tagging differences."""

    def test_identical_snapshots(self, make_element):
        a = [make_element("#title", "Welcome")]
        b = [make_element("#title", "Welcome")]
        assert detect_volatile_elements(a, b) == []

    def test_whitespace_only_difference_ignored(self, make_element):
        a = [make_element("#title", "Hello   world")]
        b = [make_element("#title", " Hello world ")]
        assert detect_volatile_elements(a, b) == []

    def test_numeric_text_change(self, make_element):
        a = [make_element("#clock", "12:00:01")]
        b = [make_element("#clock", "12:00:05")]
        [v] = detect_volatile_elements(a, b)
        assert v.changes == ["text_changed"]
        assert v.numeric_only is True
        assert v.element.text == "12:00:05"

    def test_word_text_change(self, make_element):
        a = [make_element("#quote", "Carpe diem")]
        b = [make_element("#quote", "Seize the day")]
        [v] = detect_volatile_elements(a, b)
        assert v.changes == ["text_changed"]
        assert v.numeric_only is False

    def test_bbox_tolerance(self, make_element):
        a = [make_element("#a", x=10), make_element("#b", x=10)]
        b = [make_element("#a", x=11), make_element("#b", x=13)]
        volatile = detect_volatile_elements(a, b)
        assert [v.element.selector for v in volatile] == ["#b"]
        assert volatile[0].changes == ["bbox_changed"]

    def test_visibility_change(self, make_element):
        [v] = detect_volatile_elements(
            [make_element("#toast", "Saved", visible=True)],
            [make_element("#toast", "Saved", visible=False)],
        )
        assert v.changes == ["visibility_changed"]

    def test_appeared_and_disappeared(self, make_element):
        volatile = detect_volatile_elements(
            [make_element("#old", "gone")], [make_element("#new", "here")]
        )
        assert [(v.element.selector, v.changes) for v in volatile] == [
            ("#old", ["disappeared"]),
            ("#new", ["appeared"]),
        ]


class TestSelectorRanking:
    """Tests for stable id heuristics and selector preference."""

    @pytest.mark.parametrize("value", ["main-nav", "price", "cart_total"])
    def test_stable_ids(self, value):
        assert is_stable_id(value)

    @pytest.mark.parametrize(
        "value", [None, "", "ab", "deadbeef42", "item-12345", "uuid-header", "tmpNode"]
    )
    def test_unstable_ids(self, value):
        assert not is_stable_id(value)

    def test_test_id_preferred(self, make_element):
        ranked = rank_selector(make_element("div > span", test_id="clock", id="clock-id"))
        assert ranked.selector == '[data-testid="clock"]'
        assert ranked.confidence == 0.95
        assert ranked.type == "css"

    def test_stable_id(self, make_element):
        ranked = rank_selector(make_element("#visitor-count", id="visitor-count"))
        assert (ranked.selector, ranked.confidence) == ("#visitor-count", 0.90)

    def test_unstable_id_falls_through_to_aria(self, make_element):
        ranked = rank_selector(make_element("#a1b2c3d4e5", id="a1b2c3d4e5", aria_label="Server time"))
        assert (ranked.selector, ranked.confidence) == ('[aria-label="Server time"]', 0.85)

    def test_rect_fallback(self, make_element):
        ranked = rank_selector(make_element("body > div:nth-of-type(3) > span"))
        assert ranked.type == "rect"
        assert ranked.confidence == 0.50
        assert ranked.selector == "body > div:nth-of-type(3) > span"


class TestSafety:
    def test_error_text_is_unsafe(self, make_element):
        assert not is_safe_to_mask(make_element("#msg", "Payment FAILED, try again"))

    def test_plain_text_is_safe(self, make_element):
        assert is_safe_to_mask(make_element("#msg", "Last updated 3 minutes ago"))


class TestContainerVolatility:
    """Tests for collapsing dense clusters into one rectangle."""

    def _changed(self, make_element, count, x0=10, y0=10):
        a = [make_element(f"#item-{i}", f"v{i}", x=x0 + i * 5, y=y0 + i * 10) for i in range(count)]
        b = [make_element(f"#item-{i}", f"w{i}", x=x0 + i * 5, y=y0 + i * 10) for i in range(count)]
        return detect_volatile_elements(a, b)

    def test_six_elements_in_one_cell_collapse_to_one_rect(self, make_element):
        volatile = self._changed(make_element, 6)
        suggestions = generate_mask_suggestions(volatile, "dashboard", route="/dashboard")

        assert len(suggestions) == 1
        s = suggestions[0]
        assert s.type == "rect"
        assert s.confidence == 0.8
        assert s.bbox == BoundingBox(x=2, y=2, width=91, height=86)
        assert s.selector == "rect(2,2,91,86)"
        assert s.route == "/dashboard"
        assert len(s.examples) == 3

    def test_below_cluster_size_stays_individual(self, make_element):
        volatile = self._changed(make_element, 4)
        assert detect_container_volatility(volatile) == []
        assert len(generate_mask_suggestions(volatile, "dashboard")) == 4

    def test_padding_clamped_at_origin(self, make_element):
        volatile = self._changed(make_element, 5, x0=0, y0=0)
        [s] = detect_container_volatility(volatile)
        assert s.bbox.x == 0
        assert s.bbox.y == 0


class TestGenerateSuggestions:
    """Tests for ranking, filtering and capping suggestions."""

    def test_sorted_by_confidence(self, make_element):
        volatile = detect_volatile_elements(
            [
                make_element("body > p", "a", x=0),
                make_element("#visitors", "1", id="visitors", x=300),
                make_element("span", "x", test_id="clock", x=600),
            ],
            [
                make_element("body > p", "b", x=0),
                make_element("#visitors", "2", id="visitors", x=300),
                make_element("span", "y", test_id="clock", x=600),
            ],
        )
        suggestions = generate_mask_suggestions(volatile, "home")
        assert [s.confidence for s in suggestions] == [0.95, 0.90, 0.50]
        assert suggestions[1].reason == "Numeric content changes between loads (clock or counter)"
        assert suggestions[2].examples == ["a", "b"]

    def test_unsafe_elements_never_suggested(self, make_element):
        volatile = detect_volatile_elements(
            [make_element("#alert", "Error 500", id="alert")],
            [make_element("#alert", "Error 502", id="alert")],
        )
        assert generate_mask_suggestions(volatile, "home") == []

    def test_capped_at_max(self, make_element):
        a = [make_element(f"#el-{i}", "a", id=f"el-{i}", x=i * 200) for i in range(6)]
        b = [make_element(f"#el-{i}", "b", id=f"el-{i}", x=i * 200) for i in range(6)]
        volatile = detect_volatile_elements(a, b)
        assert len(generate_mask_suggestions(volatile, "home", max_suggestions=2)) == 2


class TestConvertToMask:
    def test_css(self):
        assert convert_to_mask(_suggestion()) == CssMask(selector="#clock")

    def test_rect_rounds_bbox(self):
        s = _suggestion(type="rect", bbox=BoundingBox(x=1.4, y=2.6, width=10.2, height=5.5))
        assert convert_to_mask(s) == RectMask(x=1, y=3, width=10, height=6)

    def test_rect_without_bbox(self):
        with pytest.raises(ValueError):
            convert_to_mask(_suggestion(type="rect"))


class TestApplicability:
    def test_low_confidence_not_applied(self):
        assert not is_suggestion_applicable(_suggestion(confidence=0.5))

    def test_unsafe_examples_not_applied(self):
        assert not is_suggestion_applicable(_suggestion(examples=["Access denied"]))

    def test_high_confidence_safe(self):
        assert is_suggestion_applicable(_suggestion(examples=["12:00", "12:01"]))


class TestSuggestMasksForScreen:
    """Tests for the two-snapshot browser flow."""

    @pytest.mark.asyncio
    async def test_two_snapshots_produce_suggestion(self, mock_page):
        box = {"x": 0, "y": 0, "width": 1280, "height": 720}
        snapshots = iter([
            [{"selector": "#clock", "text": "12:00:01", "id": "clock",
              "bbox": {"x": 10, "y": 10, "width": 80, "height": 20}, "visible": True}],
            [{"selector": "#clock", "text": "12:00:02", "id": "clock",
              "bbox": {"x": 10, "y": 10, "width": 80, "height": 20}, "visible": True}],
        ])

        async def evaluate(script, *args):
            if "querySelectorAll('body *')" in script:
                return next(snapshots)
            return box

        mock_page.evaluate = AsyncMock(side_effect=evaluate)
        controller = DeterministicCaptureController(DeterminismConfig(layout_stability_ms=0))

        suggestions = await suggest_masks_for_screen(mock_page, "home", controller, route="/")

        assert len(suggestions) == 1
        assert suggestions[0].selector == "#clock"
        assert suggestions[0].screen_id == "home"
        mock_page.reload.assert_not_called()

    @pytest.mark.asyncio
    async def test_reload_between_snapshots(self, mock_page):
        async def evaluate(script, *args):
            if "querySelectorAll('body *')" in script:
                return []
            return {"x": 0, "y": 0, "width": 100, "height": 100}

        mock_page.evaluate = AsyncMock(side_effect=evaluate)
        suggestions = await suggest_masks_for_screen(mock_page, "home", reload=True)

        assert suggestions == []
        mock_page.reload.assert_awaited_once_with(wait_until="networkidle")
