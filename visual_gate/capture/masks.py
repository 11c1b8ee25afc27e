"""Applies screen masks to a live page just before the screenshot."""

from __future__ import annotations

import logging

from playwright.async_api import Page

from visual_gate.models.screen import CssMask, Mask, RectMask

logger = logging.getLogger(__name__)

MASK_ATTRIBUTE = "data-visual-gate-mask"


async def apply_css_mask(page: Page, selector: str) -> int:
    """Hide every element matching `selector` without affecting layout. Returns the match count."""
    return await page.evaluate(
        """(sel) => {
            const elements = document.querySelectorAll(sel);
            let count = 0;
            elements.forEach((el) => {
                if (el instanceof HTMLElement) {
                    el.style.opacity = '0';
                    count += 1;
                }
            });
            return count;
        }""",
        selector,
    )


async def apply_rect_mask(page: Page, mask: RectMask) -> None:
    await page.evaluate(
        """({ x, y, width, height, attr }) => {
            const overlay = document.createElement('div');
            overlay.style.position = 'fixed';
            overlay.style.left = `${x}px`;
            overlay.style.top = `${y}px`;
            overlay.style.width = `${width}px`;
            overlay.style.height = `${height}px`;
            overlay.style.backgroundColor = '#000000';
            overlay.style.zIndex = '999999';
            overlay.setAttribute(attr, 'true');
            document.body.appendChild(overlay);
        }""",
        {"x": mask.x, "y": mask.y, "width": mask.width, "height": mask.height, "attr": MASK_ATTRIBUTE},
    )


async def apply_masks(page: Page, masks: list[Mask]) -> None:
    for mask in masks:
        if isinstance(mask, CssMask):
            matched = await apply_css_mask(page, mask.selector)
            if not matched:
                logger.warning("CSS mask %r matched no elements", mask.selector)
        elif isinstance(mask, RectMask):
            await apply_rect_mask(page, mask)
    if masks:
        logger.debug("Applied %d mask(s)", len(masks))
