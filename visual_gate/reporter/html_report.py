"""HTML report generator: a self-contained page linking each screen's images."""

from __future__ import annotations

import html
import logging
from pathlib import Path

from visual_gate.models.run_result import RunSummary, ScreenResult

logger = logging.getLogger(__name__)

REPORT_FILE = "report.html"
EVIDENCE_FILE = "evidence.zip"

_BORDER = {"PASS": "#22c55e", "WARN": "#eab308", "FAIL": "#ef4444"}


def _image_cell(label: str, rel_path: str | None) -> str:
    if not rel_path:
        return f'<div class="shot empty"><div class="shot-label">{label}</div><div class="none">n/a</div></div>'
    src = html.escape(rel_path)
    return (
        f'<div class="shot"><div class="shot-label">{label}</div>'
        f'<a href="{src}"><img src="{src}" alt="{label}" loading="lazy"/></a></div>'
    )


def _build_screen_card(r: ScreenResult) -> str:
    """Build an HTML card for one screen result."""
    border = _BORDER.get(r.status, "#94a3b8")
    metrics = (
        f"{r.originality_percent:.2f}% original &middot; {r.diff_pixels} diff px "
        f"({r.diff_pixel_ratio * 100:.4f}%)"
    )
    t = r.thresholds
    bands = (
        f"warn &gt; {t.warn.diff_pixels} px / {t.warn.diff_pixel_ratio:.4%} &middot; "
        f"fail &gt; {t.fail.diff_pixels} px / {t.fail.diff_pixel_ratio:.4%}"
        + (" &middot; masks required" if t.require_masks else "")
    )

    card = f'''
    <div class="screen-card" data-status="{r.status}" style="border-left: 4px solid {border};">
      <div class="screen-header">
        <span class="badge {r.status.lower()}">{r.status}</span>
        <strong>{html.escape(r.screen_id)}</strong>
        <span class="muted">{html.escape(r.name)} &middot; {html.escape(r.url)}</span>
      </div>
      <div class="metrics">{metrics}</div>
      <div class="bands">{bands}</div>
    '''

    if r.error:
        card += f'<div class="failure-banner"><strong>Error:</strong> {html.escape(r.error)}</div>'

    if r.changes:
        items = "".join(
            f"<li><code>{c.type}</code> {html.escape(c.description)} "
            f"<span class=\"muted\">({c.confidence:.0%})</span></li>"
            for c in r.changes
        )
        card += f'<div class="changes"><h4>Detected changes</h4><ul>{items}</ul></div>'

    card += '<div class="shots">'
    card += _image_cell("Expected", r.expected_path)
    card += _image_cell("Actual", r.actual_path)
    card += _image_cell("Diff", r.diff_path)
    card += "</div></div>"
    return card


def generate_html_report(summary: RunSummary, run_dir: Path) -> Path:
    """Write report.html into the run directory. Image paths in `summary` must be run-relative."""
    output_path = run_dir / REPORT_FILE
    evidence_link = ""
    if (run_dir / EVIDENCE_FILE).exists():
        evidence_link = f'<a class="download" href="{EVIDENCE_FILE}">Download evidence pack</a>'

    git = ""
    if summary.sha:
        git = f" &middot; {html.escape(summary.branch or '')} @ {html.escape(summary.sha[:12])}"

    cards = "".join(_build_screen_card(r) for r in summary.results)

    report_html = f'''<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Visual Gate Report &middot; {html.escape(summary.run_id)}</title>
<style>
  :root {{ --pass: #22c55e; --warn: #eab308; --fail: #ef4444; --bg: #f8fafc; --card: white; --border: #e2e8f0; --text: #1e293b; --muted: #64748b; --accent: #6366f1; }}
  * {{ margin: 0; padding: 0; box-sizing: border-box; }}
  body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: var(--bg); color: var(--text); line-height: 1.6; padding: 1.5rem; }}
  .container {{ max-width: 1400px; margin: 0 auto; }}
  h1 {{ font-size: 1.8rem; margin-bottom: 0.3rem; }}
  .meta {{ color: var(--muted); margin-bottom: 1.5rem; font-size: 0.9rem; }}
  .muted {{ color: var(--muted); font-size: 0.85rem; }}
  .summary {{ display: grid; grid-template-columns: repeat(auto-fit, minmax(130px, 1fr)); gap: 0.8rem; margin-bottom: 1.5rem; }}
  .stat {{ background: var(--card); border-radius: 8px; padding: 1rem; box-shadow: 0 1px 3px rgba(0,0,0,0.08); text-align: center; }}
  .stat .value {{ font-size: 1.8rem; font-weight: 700; }}
  .stat .label {{ font-size: 0.8rem; color: var(--muted); }}
  .stat.pass .value {{ color: var(--pass); }}
  .stat.warn .value {{ color: var(--warn); }}
  .stat.fail .value {{ color: var(--fail); }}
  .badge {{ display: inline-block; padding: 0.15rem 0.55rem; border-radius: 9999px; font-size: 0.7rem; font-weight: 600; text-transform: uppercase; }}
  .badge.pass {{ background: #dcfce7; color: #166534; }}
  .badge.warn {{ background: #fef9c3; color: #854d0e; }}
  .badge.fail {{ background: #fecaca; color: #991b1b; }}
  .screen-card {{ background: var(--card); border-radius: 8px; margin-bottom: 0.8rem; padding: 0.8rem 1rem; box-shadow: 0 1px 3px rgba(0,0,0,0.08); }}
  .screen-header {{ display: flex; align-items: center; gap: 0.5rem; flex-wrap: wrap; }}
  .metrics, .bands {{ font-size: 0.85rem; color: var(--muted); }}
  .failure-banner {{ background: #fef2f2; border: 1px solid #fecaca; color: #991b1b; border-radius: 6px; padding: 0.6rem 0.8rem; margin: 0.6rem 0; font-size: 0.88rem; }}
  .changes h4 {{ font-size: 0.85rem; color: var(--muted); text-transform: uppercase; margin-top: 0.6rem; }}
  .changes ul {{ margin-left: 1.2rem; font-size: 0.85rem; }}
  .shots {{ display: grid; grid-template-columns: repeat(3, 1fr); gap: 0.6rem; margin-top: 0.6rem; }}
  .shot img {{ width: 100%; border-radius: 6px; border: 1px solid var(--border); }}
  .shot-label {{ font-size: 0.75rem; color: var(--muted); }}
  .shot .none {{ color: var(--muted); font-size: 0.8rem; padding: 1rem; border: 1px dashed var(--border); border-radius: 6px; text-align: center; }}
  .download {{ display: inline-block; margin-bottom: 1rem; padding: 0.4rem 0.9rem; border-radius: 6px; background: var(--accent); color: white; text-decoration: none; font-size: 0.85rem; }}
  .filter-bar {{ display: flex; gap: 0.5rem; margin-bottom: 1rem; }}
  .filter-btn {{ padding: 0.3rem 0.8rem; border-radius: 6px; border: 1px solid var(--border); background: var(--card); cursor: pointer; font-size: 0.82rem; }}
  .filter-btn.active {{ background: var(--accent); color: white; border-color: var(--accent); }}
</style>
</head>
<body>
<div class="container">
  <h1>Visual Gate Report</h1>
  <p class="meta">Run: {html.escape(summary.run_id)} &middot; {html.escape(summary.timestamp)}{git} &middot; Policy: {html.escape(summary.policy_hash or "defaults")}</p>

  <div class="summary">
    <div class="stat"><div class="value">{summary.total}</div><div class="label">Screens</div></div>
    <div class="stat pass"><div class="value">{summary.passed}</div><div class="label">Passed</div></div>
    <div class="stat warn"><div class="value">{summary.warned}</div><div class="label">Warned</div></div>
    <div class="stat fail"><div class="value">{summary.failed}</div><div class="label">Failed</div></div>
  </div>

  {evidence_link}

  <div class="filter-bar">
    <button class="filter-btn active" onclick="filterScreens(event, 'all')">All</button>
    <button class="filter-btn" onclick="filterScreens(event, 'FAIL')">Failed</button>
    <button class="filter-btn" onclick="filterScreens(event, 'WARN')">Warned</button>
    <button class="filter-btn" onclick="filterScreens(event, 'PASS')">Passed</button>
  </div>

  <div id="screen-list">
    {cards}
  </div>
</div>

<script>
function filterScreens(event, status) {{
  document.querySelectorAll('.filter-btn').forEach(b => b.classList.remove('active'));
  event.target.classList.add('active');
  document.querySelectorAll('.screen-card').forEach(card => {{
    card.style.display = status === 'all' || card.dataset.status === status ? '' : 'none';
  }});
}}
</script>
</body>
</html>'''

    with open(output_path, "w", encoding="utf-8") as f:
        f.write(report_html)
    logger.debug("Wrote HTML report to %s", output_path)
    return output_path
