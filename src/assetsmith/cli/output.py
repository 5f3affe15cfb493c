"""Rendering for the assetsmith CLI.

Every formatter takes ``json_mode``.  With it set the result is a JSON
document shaped ``{"status": ..., "data": ..., "error": ...}`` for scripts;
without it the same content is drawn with rich panels and tables.
"""

from __future__ import annotations

import json
from datetime import datetime
from io import StringIO
from typing import Any, Dict, List, Optional, Union

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

_STATUS_STYLES: Dict[str, str] = {
    "completed": "green",
    "processing": "yellow",
    "pending": "dim",
    "failed": "red",
}

_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")

Number = Union[int, float]


# ---------------------------------------------------------------------------
# Small formatters
# ---------------------------------------------------------------------------


def format_duration(seconds: Optional[Number]) -> str:
    """``75.5`` -> ``"1m 15.5s"``."""
    if seconds is None or seconds < 0:
        return "N/A"
    whole_minutes = int(seconds // 60)
    rest = float(seconds) - whole_minutes * 60
    return f"{whole_minutes}m {rest:.1f}s" if whole_minutes else f"{rest:.1f}s"


def format_bytes(size_bytes: Optional[Number]) -> str:
    """``1536`` -> ``"1.5 KB"``."""
    if size_bytes is None or size_bytes < 0:
        return "N/A"
    value = float(size_bytes)
    unit = 0
    while value >= 1024 and unit < len(_BYTE_UNITS) - 1:
        value /= 1024
        unit += 1
    if unit == 0:
        return f"{int(value)} B"
    return f"{value:.1f} {_BYTE_UNITS[unit]}"


def _timestamp(ts: Optional[float]) -> str:
    return datetime.fromtimestamp(ts).strftime("%H:%M:%S") if ts else "-"


def _styled(status: str) -> str:
    return f"[{_STATUS_STYLES.get(status, 'white')}]{status}[/]"


def _render(renderable: Any) -> str:
    # Render off-screen so callers decide where the text goes.
    out = StringIO()
    Console(file=out, force_terminal=True, width=100).print(renderable)
    return out.getvalue().rstrip("\n")


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def format_response(
    status: str,
    data: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
    *,
    json_mode: bool = False,
) -> str:
    """Render a ``{status, data, error}`` envelope; ``None`` parts are omitted."""
    if json_mode:
        envelope = {"status": status, "data": data, "error": error}
        return json.dumps({k: v for k, v in envelope.items() if v is not None}, indent=2, default=str)

    if error:
        message = Text.assemble(
            ("Error", "bold red"),
            (f" [{error.get('code', 'UNKNOWN')}]: ", "red"),
            str(error.get("message", "unknown failure")),
        )
        return _render(Panel(message, title="Error", border_style="red"))

    if not data:
        return f"Status: {status}"

    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="bold")
    grid.add_column(overflow="fold")
    for key, value in data.items():
        grid.add_row(str(key), "-" if value is None else str(value))
    return _render(Panel(grid, border_style="green"))


def format_error(message: str, code: str = "ERROR", *, json_mode: bool = False) -> str:
    return format_response("error", error={"code": code, "message": message}, json_mode=json_mode)


# ---------------------------------------------------------------------------
# Generation results
# ---------------------------------------------------------------------------


def _stage_table(stages: List[Dict[str, Any]]) -> Table:
    table = Table(title="Stages", show_lines=False)
    table.add_column("Stage", style="bold")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Took", justify="right")
    table.add_column("Error", overflow="fold")
    for record in stages:
        status = record.get("status", "")
        took = None
        if record.get("completed_at") and record.get("timestamp"):
            took = record["completed_at"] - record["timestamp"]
        table.add_row(
            record.get("stage", ""),
            _styled(status),
            _timestamp(record.get("timestamp")),
            format_duration(took) if took is not None else "-",
            record.get("error") or "",
        )
    return table


def format_result(result: Dict[str, Any], *, json_mode: bool = False) -> str:
    """Format one generation result (as produced by ``GenerationResult.to_dict``)."""
    if json_mode:
        return format_response("success", data={"result": result}, json_mode=True)

    request = result.get("request", {})
    status = result.get("status", "")
    lines = [
        f"[bold]{request.get('name', result.get('id'))}[/bold] "
        f"({request.get('type', '?')}) - {_styled(status)}",
        f"id: {result.get('id')}",
    ]
    final = result.get("final_asset")
    if final:
        lines.append(f"model: {final.get('model_path')}")
        lines.append(f"metadata: {final.get('metadata_path')}")
    remesh = result.get("remesh_result")
    if remesh:
        lines.append(
            f"polycount: {remesh.get('original_polycount')} -> {remesh.get('remeshed_polycount')} "
            f"(target {remesh.get('target_polycount')})"
        )
    analysis = result.get("analysis_result")
    if analysis:
        kind = analysis.get("buildingType") or analysis.get("weaponType") or analysis.get("slot") or analysis.get("rigType")
        lines.append(f"analysis: {kind}")

    panel = Panel("\n".join(lines), border_style=_STATUS_STYLES.get(status, "white"))
    return _render(panel) + "\n" + _render(_stage_table(result.get("stages", [])))


def format_batch(
    results: List[Dict[str, Any]],
    failures: List[Dict[str, Any]],
    *,
    json_mode: bool = False,
) -> str:
    """Summarise a batch run: successes plus reported failures."""
    if json_mode:
        return format_response(
            "success" if not failures else "partial",
            data={
                "succeeded": len(results),
                "failed": len(failures),
                "results": results,
                "failures": failures,
            },
            json_mode=True,
        )

    table = Table(title=f"Batch: {len(results)} succeeded, {len(failures)} failed")
    table.add_column("Request", style="bold")
    table.add_column("Status")
    table.add_column("Output / Reason", overflow="fold")
    for result in results:
        final = result.get("final_asset") or {}
        table.add_row(result.get("id", ""), "[green]ok[/]", final.get("model_path", ""))
    for failure in failures:
        table.add_row(failure.get("request_id", ""), "[red]failed[/]", failure.get("reason", ""))
    return _render(table)


def format_cache_stats(stats: Dict[str, Any], *, json_mode: bool = False) -> str:
    """Format :meth:`StageCache.stats` output."""
    if json_mode:
        return format_response("success", data={"cache": stats}, json_mode=True)

    table = Table(title="Stage cache")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Enabled", "yes" if stats.get("enabled") else "no")
    table.add_row("Entries", str(stats.get("count", 0)))
    table.add_row("Hits", str(stats.get("hit_count", 0)))
    table.add_row("Misses", str(stats.get("miss_count", 0)))
    table.add_row("Hit rate", f"{stats.get('hit_rate', 0.0) * 100:.1f}%")
    table.add_row(
        "Size",
        f"{format_bytes(stats.get('approx_size_bytes'))} / {format_bytes(stats.get('max_size_bytes'))}",
    )
    return _render(table)
