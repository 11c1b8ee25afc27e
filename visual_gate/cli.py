"""CLI entry point for the visual gate."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from playwright.async_api import async_playwright
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from visual_gate.baselines.store import BaselineStore
from visual_gate.baselines.updater import UPDATE_SUMMARY_FILE, BaselineUpdater
from visual_gate.capture.clock import SystemClock, iso_timestamp
from visual_gate.capture.deterministic import DeterministicCaptureController
from visual_gate.errors import EvidenceError, ManifestError, PolicyLoadError
from visual_gate.masks.suggester import (
    DEFAULT_MAX_SUGGESTIONS,
    convert_to_mask,
    is_suggestion_applicable,
    suggest_masks_for_screen,
)
from visual_gate.models.config import GateConfig
from visual_gate.models.elements import MaskSuggestion
from visual_gate.models.policy import DeterminismConfig
from visual_gate.models.screen import ManifestEntry
from visual_gate.orchestrator import GateRunner
from visual_gate.policy.loader import load_org_policy, validate_policy
from visual_gate.policy.resolver import merge_defaults
from visual_gate.policy.thresholds import scale_thresholds_to_viewport
from visual_gate.reporter.evidence import create_evidence_pack
from visual_gate.url_utils import resolve_screen_url

console = Console()
logger = logging.getLogger(__name__)

_STATUS_STYLE = {"PASS": "green", "WARN": "yellow", "FAIL": "red"}


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Deterministic visual regression gate"""
    setup_logging(verbose)


def _build_config(
    config_path: Optional[str], base_url: Optional[str], **overrides
) -> GateConfig:
    if config_path:
        cfg = GateConfig.load(config_path)
        updates = {k: v for k, v in overrides.items() if v is not None}
        if base_url:
            updates["base_url"] = base_url
        return cfg.model_copy(update=updates)
    if not base_url:
        raise click.UsageError("--baseURL is required when no --config is given")
    return GateConfig(base_url=base_url, **{k: v for k, v in overrides.items() if v is not None})


@cli.command()
@click.option("--baseURL", "base_url", help="Base URL of the running application")
@click.option("--ci", is_flag=True, help="Exit with code 1 on any FAIL")
@click.option("--outDir", "out_dir", help="Output directory (default: runs/run-<ms>)")
@click.option("--screens", help="Comma-separated screen IDs to test")
@click.option("--parallel", type=int, help="Screens to capture concurrently")
@click.option("--evidence", is_flag=True, help="Also write evidence.zip")
@click.option("--config", "-c", "config_path", help="Gate config JSON file")
def run(
    base_url: Optional[str], ci: bool, out_dir: Optional[str], screens: Optional[str],
    parallel: Optional[int], evidence: bool, config_path: Optional[str],
) -> None:
    """Run the visual gate against the baselines."""
    screen_ids = [s.strip() for s in screens.split(",") if s.strip()] if screens else None
    try:
        cfg = _build_config(
            config_path, base_url,
            out_dir=out_dir, screens=screen_ids,
            max_parallel_screens=parallel, create_evidence_pack=evidence or None,
        )
    except FileNotFoundError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    runner = GateRunner(cfg)
    try:
        summary = runner.run()
    except ManifestError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        console.print("Create baselines under [bold]baselines/[/bold] with a manifest.json first.")
        sys.exit(1)
    except PolicyLoadError as e:
        console.print(f"[red]Policy error:[/red] {escape(str(e))}")
        console.print("Fix .gate/policy.json or run 'visual-gate policy validate'.")
        sys.exit(1)

    table = Table(title=f"Gate Run {summary.run_id}")
    table.add_column("Screen", style="bold")
    table.add_column("Status")
    table.add_column("Originality", justify="right")
    table.add_column("Diff px", justify="right")
    table.add_column("Detail")
    for r in summary.results:
        style = _STATUS_STYLE[r.status]
        table.add_row(
            r.screen_id,
            f"[{style}]{r.status}[/{style}]",
            f"{r.originality_percent:.2f}%",
            str(r.diff_pixels),
            r.error or "",
        )
    console.print(table)
    console.print(
        f"Total {summary.total}: [green]{summary.passed} PASS[/green], "
        f"[yellow]{summary.warned} WARN[/yellow], [red]{summary.failed} FAIL[/red]"
    )
    if runner.run_dir is not None:
        console.print(f"  Report: [blue]{runner.run_dir / 'report.html'}[/blue]")

    if ci and summary.failed > 0:
        console.print("[red]CI mode: exiting with code 1 due to failures[/red]")
        sys.exit(1)


@cli.command()
@click.argument("run_dir", type=click.Path(file_okay=False, path_type=Path))
@click.option("--out", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Zip path (default: <run_dir>/evidence.zip)")
def pack(run_dir: Path, out: Optional[Path]) -> None:
    """Build a hashed evidence pack for a finished run."""
    try:
        result = create_evidence_pack(run_dir, out)
    except EvidenceError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    console.print(f"[green]Evidence pack:[/green] {result.output_path} ({result.file_count} files)")


@cli.group()
def policy() -> None:
    """Inspect the org policy."""
    pass


@policy.command("validate")
@click.option("--root", default=".", help="Directory containing .gate/policy.json")
def policy_validate(root: str) -> None:
    """Validate .gate/policy.json."""
    result = validate_policy(root)
    for w in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {escape(w)}")
    for e in result.errors:
        console.print(f"[red]error:[/red] {escape(e)}")
    if not result.valid:
        sys.exit(1)

    defaults = merge_defaults(result.policy)
    table = Table(title="Resolved threshold bands")
    table.add_column("Tag", style="bold")
    table.add_column("Warn px / ratio")
    table.add_column("Fail px / ratio")
    table.add_column("Masks required")
    for tag in ("standard", "critical", "noisy"):
        t = getattr(defaults.thresholds, tag)
        table.add_row(
            tag,
            f"{t.warn.diff_pixels} / {t.warn.diff_pixel_ratio}",
            f"{t.fail.diff_pixels} / {t.fail.diff_pixel_ratio}",
            "yes" if t.require_masks else "no",
        )
    console.print(table)
    console.print("[green]Policy is valid[/green]")


@policy.command("thresholds")
@click.option("--width", type=int, default=1280, help="Viewport width")
@click.option("--height", type=int, default=720, help="Viewport height")
@click.option("--tag", type=click.Choice(["standard", "critical", "noisy"]), default="standard")
def policy_thresholds(width: int, height: int, tag: str) -> None:
    """Show pixel-count bands scaled to a viewport."""
    t = scale_thresholds_to_viewport(width, height, tag)
    console.print(f"[bold]{tag}[/bold] at {width}x{height}:")
    console.print(f"  warn: > {t.warn.diff_pixels} px or > {t.warn.diff_pixel_ratio}")
    console.print(f"  fail: > {t.fail.diff_pixels} px or > {t.fail.diff_pixel_ratio}")


@cli.group()
def baseline() -> None:
    """Manage baseline screenshots."""
    pass


@baseline.command("update")
@click.option("--baseURL", "base_url", required=True, help="Base URL of the running application")
@click.option("--screens", help="Comma-separated screen IDs to update")
@click.option("--changedOnly", "changed_only", is_flag=True, help="Update only screens that warned or failed in the latest run")
@click.option("--baselines", "baselines_dir", default="baselines", help="Baselines directory")
@click.option("--runs", "runs_dir", default="runs", help="Runs directory searched by --changedOnly")
@click.option("--policyRoot", "policy_root", default=".", help="Directory containing .gate/policy.json")
def baseline_update(
    base_url: str,
    screens: Optional[str],
    changed_only: bool,
    baselines_dir: str,
    runs_dir: str,
    policy_root: str,
) -> None:
    """Re-capture baselines and refresh their manifest hashes."""
    updater = BaselineUpdater(BaselineStore(Path(baselines_dir)), base_url, policy_root=policy_root)
    screen_ids = [s.strip() for s in screens.split(",") if s.strip()] if screens else None

    try:
        entries = updater.select(screen_ids, changed_only=changed_only, runs_dir=runs_dir)
        console.print(f"Found {len(entries)} screen(s) to update")
        results = updater.update(entries)
    except ManifestError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    except PolicyLoadError as e:
        console.print(f"[red]Policy error:[/red] {escape(str(e))}")
        sys.exit(1)

    for r in results:
        if r.success:
            console.print(f"[green]✓[/green] {r.screen_id} - {r.new_hash[:12]}...")
        else:
            console.print(f"[red]✗[/red] {r.screen_id}: {escape(r.error or '')}")

    updated = sum(1 for r in results if r.success)
    failed = len(results) - updated
    console.print(f"\n[green]Updated {updated} baseline(s)[/green]")
    console.print(f"Summary: [blue]{Path(baselines_dir) / UPDATE_SUMMARY_FILE}[/blue]")
    if failed:
        console.print(f"[red]{failed} baseline(s) failed to update[/red]")
        sys.exit(1)


@cli.group()
def manifest() -> None:
    """Inspect the baseline manifest."""
    pass


@manifest.command("validate")
@click.option("--baselines", "baselines_dir", default="baselines", help="Baselines directory")
@click.option("--checkHash", "check_hash", is_flag=True, help="Also verify baseline image hashes")
def manifest_validate(baselines_dir: str, check_hash: bool) -> None:
    """Validate manifest.json against the baselines on disk."""
    result = BaselineStore(Path(baselines_dir)).validate_manifest(check_hash=check_hash)
    for w in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {escape(w)}")
    for e in result.errors:
        console.print(f"[red]error:[/red] {escape(e)}")
    if not result.valid:
        console.print(f"[red]Manifest validation failed with {len(result.errors)} error(s)[/red]")
        sys.exit(1)
    console.print(f"[green]Manifest is valid[/green] ({len(result.manifest.baselines)} baselines)")


@cli.group()
def masks() -> None:
    """Analyze volatile elements and suggest masks."""
    pass


async def _suggest(
    base_url: str,
    store: BaselineStore,
    screen_ids: list[str],
    max_suggestions: int,
    reload: bool,
    apply: bool,
    determinism: DeterminismConfig,
) -> list[MaskSuggestion]:
    manifest_entries = {}
    if store.manifest_path.exists():
        manifest_entries = {e.screen_id: e for e in store.load_manifest().baselines}

    all_suggestions: list[MaskSuggestion] = []
    async with async_playwright() as p:
        browser = await getattr(p, determinism.browser).launch(headless=True)
        context = await browser.new_context(
            viewport={"width": 1280, "height": 720},
            device_scale_factor=determinism.device_scale_factor,
            locale=determinism.locale,
            timezone_id=determinism.timezone_id,
            color_scheme=determinism.color_scheme,
            reduced_motion=determinism.reduce_motion,
        )
        try:
            for screen_id in screen_ids:
                entry = manifest_entries.get(screen_id)
                if entry is None:
                    entry = ManifestEntry(screen_id=screen_id, name=screen_id)
                if not store.screen_config_path(screen_id).exists():
                    console.print(f"[yellow]Skipping {screen_id}: screen.json not found[/yellow]")
                    continue
                screen = store.load_screen(entry)
                url = resolve_screen_url(base_url, screen.url)
                console.print(f"\n[cyan]{screen_id}[/cyan]: {screen.name}  {url}")

                page = await context.new_page()
                controller = DeterministicCaptureController(determinism)
                try:
                    await controller.prepare(page)
                    await page.goto(url, wait_until=determinism.wait_until)
                    suggestions = await suggest_masks_for_screen(
                        page, screen_id, controller,
                        max_suggestions=max_suggestions, reload=reload, route=screen.url,
                    )
                except Exception as e:
                    console.print(f"  [red]Error:[/red] {escape(str(e))}")
                    continue
                finally:
                    await page.close()

                if not suggestions:
                    console.print("  [green]No volatile elements detected[/green]")
                for s in suggestions:
                    badge = "[green]●[/green]" if s.confidence >= 0.75 else "[dim]○[/dim]"
                    console.print(f"  {badge} {s.selector} ({s.confidence:.0%}) [dim]{s.reason}[/dim]")
                all_suggestions.extend(suggestions)

                if apply:
                    chosen = [s for s in suggestions if is_suggestion_applicable(s)]
                    if chosen:
                        store.add_masks(screen_id, entry, [convert_to_mask(s) for s in chosen])
                        console.print(f"  [green]Applied {len(chosen)} high-confidence mask(s)[/green]")
        finally:
            await context.close()
            await browser.close()
    return all_suggestions


@masks.command("suggest")
@click.option("--baseURL", "base_url", required=True, help="Base URL of the running application")
@click.option("--screen", "screen_id", help="Only analyze this screen ID")
@click.option("--apply", is_flag=True, help="Write high-confidence safe suggestions into screen.json")
@click.option("--maxSuggestions", "max_suggestions", type=int, default=DEFAULT_MAX_SUGGESTIONS, help="Maximum suggestions per screen")
@click.option("--reload", is_flag=True, help="Reload the page between snapshots")
@click.option("--baselines", "baselines_dir", default="baselines", help="Baselines directory")
@click.option("--runs", "runs_dir", default="runs", help="Runs directory")
def masks_suggest(
    base_url: str, screen_id: Optional[str], apply: bool, max_suggestions: int,
    reload: bool, baselines_dir: str, runs_dir: str,
) -> None:
    """Suggest masks for volatile elements on each screen."""
    store = BaselineStore(Path(baselines_dir))
    screen_ids = [screen_id] if screen_id else store.list_screen_ids()
    if not screen_ids:
        console.print("[red]No screens found[/red]")
        sys.exit(1)

    try:
        org_policy = load_org_policy(".")
    except PolicyLoadError as e:
        console.print(f"[red]Policy error:[/red] {escape(str(e))}")
        sys.exit(1)
    determinism = merge_defaults(org_policy).determinism

    clock = SystemClock()
    run_id = f"suggest-{int(clock.now().timestamp() * 1000)}"
    suggestions = asyncio.run(
        _suggest(base_url, store, screen_ids, max_suggestions, reload, apply, determinism)
    )

    out_dir = Path(runs_dir) / run_id
    out_dir.mkdir(parents=True, exist_ok=True)
    output_path = out_dir / "mask-suggestions.json"
    with open(output_path, "w") as f:
        json.dump({
            "runId": run_id,
            "timestamp": iso_timestamp(clock),
            "baseURL": base_url,
            "totalScreens": len(screen_ids),
            "totalSuggestions": len(suggestions),
            "suggestions": [s.model_dump(by_alias=True, exclude_none=True) for s in suggestions],
        }, f, indent=2)

    high = sum(1 for s in suggestions if s.confidence >= 0.75)
    console.print(f"\nScreens analyzed: {len(screen_ids)}  Suggestions: {len(suggestions)}  High confidence: {high}")
    console.print(f"Output: [blue]{output_path}[/blue]")


if __name__ == "__main__":
    cli()
