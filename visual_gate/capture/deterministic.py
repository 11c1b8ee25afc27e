"""Deterministic page preparation: frozen clock, no animations, local-only network."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from playwright.async_api import Page, Route

from visual_gate.capture.clock import Clock, FixedClock, SystemClock, iso_timestamp
from visual_gate.models.elements import BoundingBox
from visual_gate.models.policy import DeterminismConfig

logger = logging.getLogger(__name__)

# Installed as an init script so the style survives navigations.
ANIMATION_BLOCKING_SCRIPT = """
(() => {
    const css = `
      *, *::before, *::after {
        animation-duration: 0s !important;
        animation-delay: 0s !important;
        transition-duration: 0s !important;
        transition-delay: 0s !important;
        animation-iteration-count: 1 !important;
      }
      @media (prefers-reduced-motion: reduce) {
        * {
          animation: none !important;
          transition: none !important;
        }
      }
      * {
        caret-color: transparent !important;
      }
    `;
    const install = () => {
        const style = document.createElement('style');
        style.setAttribute('data-gate-determinism', '');
        style.textContent = css;
        (document.head || document.documentElement).appendChild(style);
    };
    if (document.readyState === 'loading') {
        document.addEventListener('DOMContentLoaded', install, { once: true });
    } else {
        install();
    }
})();
"""


def build_freeze_time_script(epoch_ms: int) -> str:
    """Init script replacing `Date` with a proxy pinned to `epoch_ms`.

    Zero-argument construction and `Date.now()` return the fixed instant;
    explicit-argument construction passes through. `performance.now()` is
    pinned to the value observed at install time.
    """
    return f"""
(() => {{
    const fixedTime = {int(epoch_ms)};
    const OriginalDate = Date;
    class FrozenDate extends OriginalDate {{
        constructor(...args) {{
            if (args.length === 0) {{
                super(fixedTime);
            }} else {{
                super(...args);
            }}
        }}
        static now() {{
            return fixedTime;
        }}
    }}
    FrozenDate.parse = OriginalDate.parse;
    FrozenDate.UTC = OriginalDate.UTC;
    globalThis.Date = FrozenDate;

    if (typeof performance !== 'undefined' && performance.now) {{
        const pinned = performance.now();
        performance.now = () => pinned;
    }}
}})();
"""


def _normalize_host(host: str) -> str:
    return host.strip().lower().strip("[]")


def is_allowed_domain(url: str, allowed_domains: list[str]) -> bool:
    """True if the URL's host equals or is a subdomain of an allowed domain."""
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return False
    if not hostname:
        return False

    hostname = _normalize_host(hostname)
    for domain in allowed_domains:
        d = _normalize_host(domain)
        if d and (hostname == d or hostname.endswith(f".{d}")):
            return True
    return False


def make_network_predicate(allowed_domains: list[str]) -> Callable[[str], bool]:
    domains = list(allowed_domains)
    return lambda url: is_allowed_domain(url, domains)


def is_layout_stable(
    box1: Optional[BoundingBox], box2: Optional[BoundingBox], tolerance: float = 1
) -> bool:
    if box1 is None or box2 is None:
        return False
    return all(
        abs(getattr(box1, attr) - getattr(box2, attr)) <= tolerance
        for attr in ("x", "y", "width", "height")
    )


class DeterministicCaptureController:
    """Prepares a page so repeated captures of the same URL are byte-reproducible."""

    def __init__(
        self,
        config: DeterminismConfig | None = None,
        clock: Clock | None = None,
        debug: bool = False,
    ):
        self.config = config or DeterminismConfig()
        self.clock = clock or FixedClock()
        self.debug = debug
        self.console_errors: list[str] = []
        self.request_failures: list[dict[str, str]] = []
        self.blocked_requests: list[str] = []
        self._allow = make_network_predicate(self.config.allowed_domains)

    async def prepare(self, page: Page) -> None:
        """Install listeners, scripts and routes. Call before the first navigation."""
        if self.debug:
            self._setup_debug_listeners(page)

        if self.config.disable_animations:
            await page.add_init_script(ANIMATION_BLOCKING_SCRIPT)

        epoch_ms = int(self.clock.now().timestamp() * 1000)
        await page.add_init_script(build_freeze_time_script(epoch_ms))

        if self.config.block_external_network:
            await page.route("**/*", self._handle_route)

        logger.debug(
            "Prepared deterministic page (animations_off=%s, network_blocked=%s, clock=%d)",
            self.config.disable_animations, self.config.block_external_network, epoch_ms,
        )

    async def _handle_route(self, route: Route) -> None:
        url = route.request.url
        if self._allow(url):
            await route.continue_()
        else:
            self.blocked_requests.append(url)
            logger.debug("Blocked external request: %s", url)
            await route.abort("blockedbyclient")

    def _setup_debug_listeners(self, page: Page) -> None:
        page.on("console", self._on_console)
        page.on("requestfailed", self._on_request_failed)

    def _on_console(self, msg: Any) -> None:
        if msg.type == "error":
            self.console_errors.append(msg.text)

    def _on_request_failed(self, request: Any) -> None:
        self.request_failures.append({
            "url": request.url,
            "error": request.failure or "Unknown error",
        })

    async def get_layout_box(self, page: Page) -> Optional[BoundingBox]:
        raw = await page.evaluate("""() => {
            const root = document.body || document.documentElement;
            if (!root) return null;
            const rect = root.getBoundingClientRect();
            return { x: rect.x, y: rect.y, width: rect.width, height: rect.height };
        }""")
        if not raw:
            return None
        return BoundingBox(**raw)

    async def wait_for_layout_stability(self, page: Page, max_attempts: int = 10) -> bool:
        """Sample the root box twice per attempt; stable once no edge moved more than 1px.

        Returns False after `max_attempts` without raising.
        """
        stability_ms = self.config.layout_stability_ms
        for attempt in range(max_attempts):
            box1 = await self.get_layout_box(page)
            await page.wait_for_timeout(stability_ms)
            box2 = await self.get_layout_box(page)
            if is_layout_stable(box1, box2):
                logger.debug("Layout stable after %d attempt(s)", attempt + 1)
                return True
        logger.warning("Layout did not stabilize after %d attempts", max_attempts)
        return False

    def debug_info(self) -> dict[str, Any]:
        return {
            "consoleErrors": list(self.console_errors),
            "requestFailures": list(self.request_failures),
            "blockedRequests": list(self.blocked_requests),
        }


def write_debug_info(info: dict[str, Any], path: Path, clock: Clock | None = None) -> Path:
    """Write captured console errors and request failures, stamped with `clock`."""
    data = {**info, "timestamp": iso_timestamp(clock or SystemClock())}
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    logger.debug("Saved debug info to %s", path)
    return path
