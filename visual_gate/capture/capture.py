"""Screen capture: one isolated, deterministic browser context per screen."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright

from visual_gate.capture.clock import Clock, FixedClock
from visual_gate.capture.deterministic import DeterministicCaptureController
from visual_gate.capture.masks import apply_masks
from visual_gate.errors import CaptureFailure
from visual_gate.models.screen import ResolvedScreenConfig

logger = logging.getLogger(__name__)


@dataclass
class CaptureOutcome:
    path: Path
    layout_stable: bool
    debug_info: dict[str, Any] = field(default_factory=dict)


class ScreenCapturer:
    """Captures screenshots of resolved screens.

    Browsers are launched lazily per engine and reused across screens; every
    screen gets its own context so clock, network routes and masks never
    leak between screens.

    Usage:
        async with ScreenCapturer() as capturer:
            outcome = await capturer.capture(url, resolved, out_path)
    """

    def __init__(
        self,
        clock: Clock | None = None,
        debug: bool = False,
        navigation_timeout_ms: int = 30000,
        layout_stability_attempts: int = 10,
        headless: bool = True,
    ):
        self.clock = clock or FixedClock()
        self.debug = debug
        self.navigation_timeout_ms = navigation_timeout_ms
        self.layout_stability_attempts = layout_stability_attempts
        self.headless = headless
        self._playwright_cm = None
        self._playwright: Optional[Playwright] = None
        self._browsers: dict[str, Browser] = {}
        self._launch_lock = asyncio.Lock()

    async def __aenter__(self) -> "ScreenCapturer":
        self._playwright_cm = async_playwright()
        self._playwright = await self._playwright_cm.__aenter__()
        return self

    async def __aexit__(self, *exc_info) -> None:
        for name, browser in self._browsers.items():
            try:
                await browser.close()
            except Exception as e:
                logger.debug("Error closing %s: %s", name, e)
        self._browsers.clear()
        if self._playwright_cm is not None:
            await self._playwright_cm.__aexit__(*exc_info)
        self._playwright_cm = None
        self._playwright = None

    async def _get_browser(self, name: str) -> Browser:
        async with self._launch_lock:
            if name not in self._browsers:
                if self._playwright is None:
                    raise RuntimeError("ScreenCapturer used outside of 'async with'")
                logger.debug("Launching %s", name)
                engine = getattr(self._playwright, name)
                self._browsers[name] = await engine.launch(headless=self.headless)
            return self._browsers[name]

    async def new_context(self, resolved: ResolvedScreenConfig) -> BrowserContext:
        viewport = resolved.resolved_viewport
        det = resolved.resolved_determinism
        browser = await self._get_browser(viewport.browser)
        return await browser.new_context(
            viewport={"width": viewport.width, "height": viewport.height},
            device_scale_factor=viewport.device_scale_factor,
            locale=det.locale,
            timezone_id=det.timezone_id,
            color_scheme=det.color_scheme,
            reduced_motion=det.reduce_motion,
        )

    async def capture(self, url: str, resolved: ResolvedScreenConfig, output_path: Path) -> CaptureOutcome:
        """Navigate to `url`, settle, apply masks and write a viewport screenshot.

        Any browser error (context setup, navigation, masking, screenshot) or a
        layout that never settles under a settled-only policy raises
        CaptureFailure.
        """
        if self._playwright is None:
            raise RuntimeError("ScreenCapturer used outside of 'async with'")

        controller = DeterministicCaptureController(
            resolved.resolved_determinism, clock=self.clock, debug=self.debug
        )
        try:
            context = await self.new_context(resolved)
        except Exception as e:
            raise CaptureFailure(f"Could not open a browser context for {url}: {e}") from e

        try:
            return await self._capture_page(context, controller, url, resolved, output_path)
        except CaptureFailure:
            raise
        except Exception as e:
            raise CaptureFailure(f"Capture of {url} failed: {e}", controller.debug_info()) from e
        finally:
            await context.close()

    async def _capture_page(
        self,
        context: BrowserContext,
        controller: DeterministicCaptureController,
        url: str,
        resolved: ResolvedScreenConfig,
        output_path: Path,
    ) -> CaptureOutcome:
        page = await context.new_page()
        await controller.prepare(page)

        try:
            await page.goto(
                url,
                wait_until=resolved.resolved_determinism.wait_until,
                timeout=self.navigation_timeout_ms,
            )
        except Exception as e:
            raise CaptureFailure(f"Navigation to {url} failed: {e}", controller.debug_info()) from e

        stable = await controller.wait_for_layout_stability(
            page, max_attempts=self.layout_stability_attempts
        )
        if not stable and resolved.resolved_determinism.screenshot_after_settled_only:
            raise CaptureFailure(
                f"Layout for {url} did not stabilize after "
                f"{self.layout_stability_attempts} attempts",
                controller.debug_info(),
            )

        await apply_masks(page, resolved.masks)

        output_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await page.screenshot(path=str(output_path), full_page=False, animations="disabled")
        except Exception as e:
            raise CaptureFailure(f"Screenshot of {url} failed: {e}", controller.debug_info()) from e

        logger.debug("Captured %s -> %s", url, output_path)
        return CaptureOutcome(path=output_path, layout_stable=stable, debug_info=controller.debug_info())
