"""DOM element snapshots: visible, text-bearing elements with stable identifiers."""

from __future__ import annotations

import logging

from playwright.async_api import Page

from visual_gate.models.elements import BoundingBox, ElementSnapshot

logger = logging.getLogger(__name__)

_SNAPSHOT_SCRIPT = """() => {
    const skipTags = new Set(['script', 'style', 'noscript', 'meta', 'link', 'head', 'title', 'html', 'body']);

    function getSelector(el) {
        if (el.dataset && el.dataset.testid) return `[data-testid="${el.dataset.testid}"]`;
        if (el.id) return `#${CSS.escape(el.id)}`;
        if (el.getAttribute('aria-label')) {
            return `[aria-label="${el.getAttribute('aria-label')}"]`;
        }
        // Structural path so the same node maps to the same selector across reloads
        const parts = [];
        let node = el;
        while (node && node.nodeType === 1 && node !== document.body) {
            const tag = node.tagName.toLowerCase();
            const parent = node.parentElement;
            if (!parent) break;
            const siblings = Array.from(parent.children).filter((c) => c.tagName === node.tagName);
            parts.unshift(siblings.length > 1 ? `${tag}:nth-of-type(${siblings.indexOf(node) + 1})` : tag);
            node = parent;
        }
        return parts.length ? 'body > ' + parts.join(' > ') : el.tagName.toLowerCase();
    }

    function ownText(el) {
        let text = '';
        for (const child of el.childNodes) {
            if (child.nodeType === Node.TEXT_NODE) text += child.textContent;
        }
        return text;
    }

    const results = [];
    for (const el of document.querySelectorAll('body *')) {
        const tag = el.tagName.toLowerCase();
        if (skipTags.has(tag)) continue;

        const text = ownText(el).replace(/\\s+/g, ' ').trim();
        const testId = (el.dataset && el.dataset.testid) || null;
        if (!text && !testId && tag !== 'img' && tag !== 'canvas') continue;

        const rect = el.getBoundingClientRect();
        const style = window.getComputedStyle(el);
        const visible = rect.width > 0 && rect.height > 0 &&
            style.visibility !== 'hidden' && style.display !== 'none' && style.opacity !== '0';

        results.push({
            selector: getSelector(el),
            text: text.substring(0, 200),
            bbox: { x: rect.x, y: rect.y, width: rect.width, height: rect.height },
            visible: visible,
            testId: testId,
            id: el.id || null,
            ariaLabel: el.getAttribute('aria-label'),
        });
    }
    return results;
}"""


async def capture_element_snapshot(page: Page) -> list[ElementSnapshot]:
    """Capture a point-in-time snapshot of the page's text-bearing elements."""
    raw_elements = await page.evaluate(_SNAPSHOT_SCRIPT)

    snapshots = []
    for raw in raw_elements:
        bbox = raw.get("bbox") or {}
        snapshots.append(
            ElementSnapshot(
                selector=raw.get("selector", ""),
                text=raw.get("text", ""),
                bbox=BoundingBox(
                    x=bbox.get("x", 0),
                    y=bbox.get("y", 0),
                    width=bbox.get("width", 0),
                    height=bbox.get("height", 0),
                ),
                visible=raw.get("visible", True),
                test_id=raw.get("testId"),
                id=raw.get("id"),
                aria_label=raw.get("ariaLabel"),
            )
        )
    logger.debug("Captured %d element snapshots", len(snapshots))
    return snapshots
