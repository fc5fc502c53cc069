"""Final report: structured RunReport, rendered as text (Jinja2) or JSON (orjson)."""

from __future__ import annotations

import math
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any

import orjson
from jinja2 import Environment, PackageLoader, select_autoescape

from .metrics import compute_summary, MetricsSnapshot
from .models import EngineTimings, MetricsSummary, ReportKind, RunReport, TestConfiguration

RULE_WIDTH = 80
FOOTER_BY_KIND = {
    ReportKind.NORMAL: "Load test completed.",
    ReportKind.NO_CREDENTIALS: "Load test completed without clients: no credentials available.",
    ReportKind.ALL_CONNECTIONS_FAILED: "Load test completed: every connection attempt failed.",
}

_env: Environment | None = None


def format_duration(seconds: float) -> str:
    """Format as 'Xm Ys'."""
    s = max(0.0, seconds)
    return f"{int(s // 60)}m {int(s % 60)}s"


def format_bytes(num_bytes: float) -> str:
    """Human-readable size with two decimals: 0 B, 512 B, 1.5 KB, ..."""
    if num_bytes <= 0:
        return "0 B"
    units = ("B", "KB", "MB", "GB")
    i = min(int(math.floor(math.log(num_bytes, 1024))), len(units) - 1)
    i = max(i, 0)
    value = round(num_bytes / (1024 ** i), 2)
    return f"{value:g} {units[i]}"


def _environment() -> Environment:
    global _env
    if _env is None:
        _env = Environment(
            loader=PackageLoader("sockswarm", "templates"),
            autoescape=select_autoescape(["html", "xml"]),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        _env.filters["duration"] = format_duration
        _env.filters["bytes"] = format_bytes
    return _env


def report_kind(summary: MetricsSummary) -> ReportKind:
    if summary.connections_started == 0:
        return ReportKind.NO_CREDENTIALS
    if summary.connections_successful == 0:
        return ReportKind.ALL_CONNECTIONS_FAILED
    return ReportKind.NORMAL


def error_breakdown(summary: MetricsSummary) -> list[dict[str, Any]]:
    """Error categories, most frequent first, with share of all errors in percent."""
    total = summary.errors
    rows = sorted(summary.error_counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [
        {"category": category, "count": count, "pct": 100.0 * count / total if total else 0.0}
        for category, count in rows
    ]


def build_report(
    snapshot: MetricsSnapshot,
    config: TestConfiguration,
    start_dt: datetime,
    end_dt: datetime,
    finalize_reason: str,
    now: float | None = None,
) -> RunReport:
    summary = compute_summary(snapshot, now)
    return RunReport(
        kind=report_kind(summary),
        config=config,
        summary=summary,
        start_datetime=start_dt.strftime("%Y-%m-%d %H:%M:%S UTC"),
        end_datetime=end_dt.strftime("%Y-%m-%d %H:%M:%S UTC"),
        finalize_reason=finalize_reason,
    )


def render_text(report: RunReport, timings: EngineTimings | None = None) -> str:
    timings = timings or EngineTimings()
    template = _environment().get_template("report.txt.j2")
    return template.render(
        kind=report.kind.value,
        config=report.config,
        summary=report.summary,
        start_datetime=report.start_datetime,
        end_datetime=report.end_datetime,
        finalize_reason=report.finalize_reason,
        error_rows=error_breakdown(report.summary),
        ack_fallback_ms=int(timings.ack_fallback_sec * 1000),
        rule="=" * RULE_WIDTH,
        footer=FOOTER_BY_KIND[report.kind],
    )


def report_to_dict(report: RunReport) -> dict[str, Any]:
    summary = report.summary
    data = asdict(summary)
    data["connection_success_rate_pct"] = summary.connection_success_rate_pct
    data["message_success_rate_pct"] = summary.message_success_rate_pct
    data["error_breakdown"] = error_breakdown(summary)
    return {
        "kind": report.kind.value,
        "config": asdict(report.config),
        "start_datetime": report.start_datetime,
        "end_datetime": report.end_datetime,
        "finalize_reason": report.finalize_reason,
        "summary": data,
    }


def render_json(report: RunReport) -> bytes:
    return orjson.dumps(report_to_dict(report), option=orjson.OPT_INDENT_2)


def generate_json_report(output_path: str | Path, report: RunReport) -> None:
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(render_json(report))
