"""Pytest configuration and shared fixtures."""

import json
from pathlib import Path
from typing import Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest
from PIL import Image

from visual_gate.models.elements import BoundingBox, ElementSnapshot
from visual_gate.models.policy import (
    OrgPolicy,
    ScreenThresholds,
    ThresholdBand,
)
from visual_gate.models.screen import ScreenBaseline
from visual_gate.policy.resolver import resolve_screen


# ============================================================================
# Image Fixtures
# ============================================================================


def _make_image(width: int = 1280, height: int = 720, color=(255, 255, 255, 255)) -> np.ndarray:
    """Solid RGBA buffer."""
    img = np.empty((height, width, 4), dtype=np.uint8)
    img[...] = color
    return img


def _write_png(pixels: np.ndarray, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(pixels).save(path)
    return path


@pytest.fixture
def white_image() -> np.ndarray:
    return _make_image()


@pytest.fixture
def red_square_image() -> np.ndarray:
    """White 1280x720 image with a 300x300 red square at (100, 100)."""
    img = _make_image()
    img[100:400, 100:400] = (255, 0, 0, 255)
    return img


# ============================================================================
# Policy Fixtures
# ============================================================================


@pytest.fixture
def standard_thresholds() -> ScreenThresholds:
    return ScreenThresholds(
        warn=ThresholdBand(diff_pixel_ratio=0.0002, diff_pixels=250),
        fail=ThresholdBand(diff_pixel_ratio=0.0005, diff_pixels=600),
    )


@pytest.fixture
def org_policy() -> OrgPolicy:
    """A policy that tightens the standard tier and routes /checkout to critical."""
    return OrgPolicy.model_validate({
        "schemaVersion": 1,
        "defaults": {
            "thresholds": {
                "standard": {"warn": {"diffPixels": 200}},
            },
        },
        "tagRules": {
            "criticalRoutes": ["/checkout"],
            "noisyRoutes": ["/feed"],
        },
        "enforcement": {"allowLoosening": False, "maxMaskCoverageRatio": 0.3},
    })


@pytest.fixture
def write_policy(tmp_path: Path) -> Callable[[dict], Path]:
    """Write `.gate/policy.json` under tmp_path."""

    def _write(data: dict) -> Path:
        path = tmp_path / ".gate" / "policy.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data))
        return path

    return _write


# ============================================================================
# Baseline Fixtures
# ============================================================================


@pytest.fixture
def baselines_dir(tmp_path: Path) -> Path:
    """Baseline repository with two white screens: home and about."""
    root = tmp_path / "baselines"
    entries = []
    for screen_id, url in (("home", "/"), ("about", "/about")):
        _write_png(_make_image(64, 48), root / screen_id / "baseline.png")
        (root / screen_id / "screen.json").write_text(
            json.dumps({"name": screen_id.title(), "url": url})
        )
        entries.append({"screenId": screen_id, "name": screen_id.title(), "url": url})
    (root / "manifest.json").write_text(json.dumps({"baselines": entries}))
    return root


# ============================================================================
# Resolved Screen Fixtures
# ============================================================================


@pytest.fixture
def resolved_screen():
    return resolve_screen(ScreenBaseline(name="Home", url="/"), None)


# ============================================================================
# DOM Snapshot Fixtures
# ============================================================================


def _element(
    selector: str,
    text: str = "",
    x: float = 0,
    y: float = 0,
    width: float = 50,
    height: float = 20,
    visible: bool = True,
    test_id: Optional[str] = None,
    id: Optional[str] = None,
    aria_label: Optional[str] = None,
) -> ElementSnapshot:
    return ElementSnapshot(
        selector=selector,
        text=text,
        bbox=BoundingBox(x=x, y=y, width=width, height=height),
        visible=visible,
        test_id=test_id,
        id=id,
        aria_label=aria_label,
    )


# ============================================================================
# Playwright Mocks
# ============================================================================


@pytest.fixture
def mock_page() -> MagicMock:
    """Create a mock Playwright page."""
    page = MagicMock()
    page.add_init_script = AsyncMock()
    page.route = AsyncMock()
    page.goto = AsyncMock()
    page.reload = AsyncMock()
    page.screenshot = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.evaluate = AsyncMock(return_value={"x": 0, "y": 0, "width": 1280, "height": 720})
    page.close = AsyncMock()
    page.on = MagicMock()
    return page


@pytest.fixture
def mock_context(mock_page: MagicMock) -> MagicMock:
    context = MagicMock()
    context.new_page = AsyncMock(return_value=mock_page)
    context.close = AsyncMock()
    return context


@pytest.fixture
def mock_browser(mock_context: MagicMock) -> MagicMock:
    browser = MagicMock()
    browser.new_context = AsyncMock(return_value=mock_context)
    browser.close = AsyncMock()
    return browser


@pytest.fixture
def make_image() -> Callable[..., np.ndarray]:
    return _make_image


@pytest.fixture
def write_png() -> Callable[[np.ndarray, Path], Path]:
    return _write_png


@pytest.fixture
def make_element() -> Callable[..., ElementSnapshot]:
    return _element
