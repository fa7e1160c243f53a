"""Containerised fairness audit and telemetry dashboard for Campaign Trail."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from jinja2 import Environment, FileSystemLoader, select_autoescape
from pydantic import BaseModel, Field

from campaign_trail.telemetry import TelemetryCollector

APP_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = APP_DIR / "templates"
DEFAULT_DB_PATH = Path(os.environ.get("CAMPAIGN_TRAIL_TELEMETRY_DB", "/data/telemetry.db"))

collector = TelemetryCollector(DEFAULT_DB_PATH)

jinja_env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html", "xml"]),
)

app = FastAPI(title="Campaign Trail Audit Dashboard")


class AuditEventRecord(BaseModel):
    occurred_at: str
    event_type: str
    player_id: str
    severity: str
    raw_value: float
    adjusted_value: float
    reason: str
    metadata: dict = Field(default_factory=dict)


MAX_QUERY_HOURS = int(os.environ.get("CAMPAIGN_TRAIL_MAX_QUERY_HOURS", "168") or 168)
MAX_AUDIT_RECORDS = int(os.environ.get("CAMPAIGN_TRAIL_MAX_AUDIT_RECORDS", "1000") or 1000)


def build_report(hours: int = 24) -> dict:
    """Fetch the latest aggregated telemetry report."""

    collector.flush()
    return collector.generate_report(hours)


def build_context(report: dict) -> dict:
    """Prepare sorted slices for template rendering."""

    polling = sorted(
        report.get("polling", {}).items(),
        key=lambda item: item[1]["avg_support"] or 0.0,
        reverse=True,
    )
    audit_rows = []
    for event_type, severities in sorted(report.get("audit_summary", {}).items()):
        for severity, count in sorted(severities.items()):
            audit_rows.append({"event_type": event_type, "severity": severity, "count": count})
    errors = sorted(report.get("errors", {}).items(), key=lambda item: item[1], reverse=True)
    performance = sorted(
        report.get("performance", {}).items(),
        key=lambda item: item[1]["avg_duration_ms"] or 0.0,
        reverse=True,
    )
    metric_counts = sorted(report.get("metric_counts", {}).items())
    return {
        "report": report,
        "polling": polling,
        "audit_rows": audit_rows,
        "recent_audits": collector.get_audit_events(hours=report.get("window_hours", 24), limit=20),
        "errors": errors,
        "performance": performance,
        "metric_counts": metric_counts,
        "system_events": report.get("system_events", []),
    }


def _normalise_hours(value: int) -> int:
    if value <= 0:
        raise HTTPException(status_code=400, detail="hours must be positive")
    return min(value, MAX_QUERY_HOURS)


def _normalise_limit(value: int) -> int:
    if value <= 0:
        raise HTTPException(status_code=400, detail="limit must be positive")
    return min(value, MAX_AUDIT_RECORDS)


@app.get("/", response_class=HTMLResponse)
async def index(hours: int = 24) -> HTMLResponse:
    """Render the dashboard landing page."""

    report = build_report(_normalise_hours(hours))
    template = jinja_env.get_template("index.html")
    html = template.render(**build_context(report))
    return HTMLResponse(html)


@app.get("/health", response_class=HTMLResponse)
async def healthcheck() -> HTMLResponse:
    """Simple health endpoint for container orchestration."""

    if DEFAULT_DB_PATH.exists():
        status = "ok"
    else:
        status = "telemetry database not found"
    return HTMLResponse(f"audit-dashboard: {status}")


@app.get("/api/report", response_class=JSONResponse)
async def api_report(hours: int = 24) -> JSONResponse:
    return JSONResponse(build_report(_normalise_hours(hours)))


@app.get("/api/audit", response_model=list[AuditEventRecord])
async def api_audit_events(
    player_id: Optional[str] = None,
    event_type: Optional[str] = None,
    severity: Optional[str] = None,
    hours: int = 24,
    limit: int = 250,
) -> list[AuditEventRecord]:
    """Return fairness audit events with optional filtering."""

    records = collector.get_audit_events(
        player_id=player_id or None,
        event_type=event_type or None,
        severity=severity or None,
        hours=_normalise_hours(hours),
        limit=_normalise_limit(limit),
    )
    return [AuditEventRecord(**record) for record in records]


@app.get("/api/audit.csv")
async def api_audit_events_csv(
    player_id: Optional[str] = None,
    event_type: Optional[str] = None,
    hours: int = 24,
    limit: int = 250,
) -> StreamingResponse:
    """Export fairness audit events as CSV."""

    records = collector.get_audit_events(
        player_id=player_id or None,
        event_type=event_type or None,
        hours=_normalise_hours(hours),
        limit=_normalise_limit(limit),
    )

    def _row_iter() -> Iterable[str]:
        yield "occurred_at,event_type,player_id,severity,raw_value,adjusted_value\n"
        for record in records:
            row = ",".join(
                [
                    record["occurred_at"],
                    record["event_type"],
                    record["player_id"],
                    record["severity"],
                    f"{record['raw_value']:.4f}",
                    f"{record['adjusted_value']:.4f}",
                ]
            )
            yield row + "\n"

    headers = {"Content-Disposition": "attachment; filename=fairness_audit.csv"}
    return StreamingResponse(_row_iter(), media_type="text/csv", headers=headers)
