"""Telemetry and fairness-audit sink for the campaign simulation."""
from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import DEFAULT_TELEMETRY_DB
from .models import AuditEvent

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Types of metrics tracked."""
    PHASE_TRANSITION = "phase_transition"
    POLLING = "polling"
    ENDORSEMENT = "endorsement"
    SCANDAL = "scandal"
    OPPOSITION = "opposition"
    ECONOMY = "economy"
    BALANCE = "balance"
    ERROR_RATE = "error_rate"
    PERFORMANCE = "performance"
    SYSTEM_EVENT = "system_event"


@dataclass
class MetricEvent:
    """Individual metric event."""
    timestamp: float
    metric_type: MetricType
    name: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class TelemetryCollector:
    """Buffers metric events and stores fairness audits in SQLite."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or DEFAULT_TELEMETRY_DB
        self._init_database()
        self._start_time = time.time()
        self._metrics_buffer: List[MetricEvent] = []
        self._flush_interval = 60  # Flush to DB every 60 seconds
        self._last_flush = time.time()

    def _init_database(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    metric_type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value REAL NOT NULL,
                    tags TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_timestamp
                ON metrics(timestamp DESC)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_type_name
                ON metrics(metric_type, name)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    recorded_at REAL NOT NULL,
                    occurred_at TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    player_id TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    raw_value REAL NOT NULL,
                    adjusted_value REAL NOT NULL,
                    reason TEXT NOT NULL,
                    metadata TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_player
                ON audit_events(player_id, recorded_at DESC)
            """)
            conn.commit()

    def track_phase_transition(
        self,
        player_id: str,
        cycle: int,
        from_phase: str,
        to_phase: str,
    ) -> None:
        """Record a campaign moving between phases."""
        self.record(
            MetricType.PHASE_TRANSITION,
            to_phase,
            1.0,
            tags={"player_id": player_id, "from_phase": from_phase},
            metadata={"cycle": cycle},
        )

    def track_polling(
        self,
        player_id: str,
        final_support: float,
        margin_of_error: float,
        offline_hours: Optional[float] = None,
    ) -> None:
        metadata: Dict[str, Any] = {"margin_of_error": margin_of_error}
        if offline_hours is not None:
            metadata["offline_hours"] = offline_hours
        self.record(
            MetricType.POLLING,
            "snapshot",
            final_support,
            tags={"player_id": player_id},
            metadata=metadata,
        )

    def track_endorsement(self, player_id: str, source: str, influence_bonus: float) -> None:
        self.record(
            MetricType.ENDORSEMENT,
            source,
            influence_bonus,
            tags={"player_id": player_id},
        )

    def track_scandal(
        self,
        player_id: str,
        event: str,
        value: float,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Track scandal lifecycle events such as generation, mitigation and containment."""
        self.record(
            MetricType.SCANDAL,
            event,
            value,
            tags={"player_id": player_id},
            metadata=details or {},
        )

    def track_opposition(
        self,
        player_id: str,
        event: str,
        value: float,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Track research and negative-ad activity."""
        self.record(
            MetricType.OPPOSITION,
            event,
            value,
            tags={"player_id": player_id},
            metadata=details or {},
        )

    def track_spend(self, player_id: str, category: str, amount: float, success: bool) -> None:
        self.record(
            MetricType.ECONOMY,
            category,
            amount,
            tags={"player_id": player_id, "success": str(success)},
        )

    def track_balance(
        self,
        player_id: str,
        adjusted_polling: float,
        cost_multiplier: float,
        underdog_buff: float,
    ) -> None:
        self.record(
            MetricType.BALANCE,
            "adjustment",
            adjusted_polling,
            tags={"player_id": player_id},
            metadata={"cost_multiplier": cost_multiplier, "underdog_buff": underdog_buff},
        )

    def track_error(
        self,
        error_type: str,
        operation: Optional[str] = None,
        player_id: Optional[str] = None,
        error_details: Optional[str] = None
    ):
        """Track errors and failures."""
        tags = {}
        if operation:
            tags["operation"] = operation
        if player_id:
            tags["player_id"] = player_id

        self.record(
            MetricType.ERROR_RATE,
            error_type,
            1.0,
            tags=tags,
            metadata={"error_details": error_details} if error_details else {}
        )

    def track_performance(
        self,
        operation: str,
        duration_ms: float,
        tags: Optional[Dict[str, str]] = None
    ):
        """Track performance metrics."""
        self.record(
            MetricType.PERFORMANCE,
            operation,
            duration_ms,
            tags=tags or {},
            metadata={"unit": "milliseconds"}
        )

    def track_system_event(
        self,
        event: str,
        *,
        source: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Record scheduler start/stop or health events."""

        tags = {}
        if source:
            tags["source"] = source

        metadata = {}
        if reason:
            metadata["reason"] = reason

        self.record(
            MetricType.SYSTEM_EVENT,
            event,
            1.0,
            tags=tags,
            metadata=metadata,
        )

    def track_audit_event(self, event: AuditEvent) -> None:
        """Store a fairness audit event immediately.

        Audit events bypass the metric buffer so they survive a crash between
        flushes. Storage failures are logged and dropped.
        """
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events
                    (recorded_at, occurred_at, event_type, player_id, severity,
                     raw_value, adjusted_value, reason, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        time.time(),
                        event.occurred_at.isoformat(),
                        event.event_type,
                        event.player_id,
                        event.severity,
                        event.raw_value,
                        event.adjusted_value,
                        event.reason,
                        json.dumps(event.metadata),
                    ),
                )
                conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to store audit event: {e}")

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Record a metric event."""
        event = MetricEvent(
            timestamp=time.time(),
            metric_type=metric_type,
            name=name,
            value=value,
            tags=tags or {},
            metadata=metadata or {}
        )

        self._metrics_buffer.append(event)

        # Auto-flush if buffer is getting large or enough time has passed
        if len(self._metrics_buffer) >= 100 or \
           time.time() - self._last_flush > self._flush_interval:
            self.flush()

    def flush(self):
        """Flush buffered metrics to database."""
        if not self._metrics_buffer:
            return

        try:
            with sqlite3.connect(self.db_path) as conn:
                for event in self._metrics_buffer:
                    conn.execute("""
                        INSERT INTO metrics
                        (timestamp, metric_type, name, value, tags, metadata)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (
                        event.timestamp,
                        event.metric_type.value,
                        event.name,
                        event.value,
                        json.dumps(event.tags),
                        json.dumps(event.metadata)
                    ))
                conn.commit()

            logger.info(f"Flushed {len(self._metrics_buffer)} metrics to database")
            self._metrics_buffer.clear()
            self._last_flush = time.time()

        except sqlite3.Error as e:
            logger.error(f"Failed to flush metrics: {e}")

    def get_audit_events(
        self,
        player_id: Optional[str] = None,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        hours: int = 24,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Return recent audit events, newest first."""
        query = """
            SELECT occurred_at, event_type, player_id, severity,
                   raw_value, adjusted_value, reason, metadata
            FROM audit_events
            WHERE recorded_at >= ?
        """
        params: List[Any] = [time.time() - hours * 3600]
        if player_id:
            query += " AND player_id = ?"
            params.append(player_id)
        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)
        if severity:
            query += " AND severity = ?"
            params.append(severity)
        query += " ORDER BY recorded_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            {
                "occurred_at": row[0],
                "event_type": row[1],
                "player_id": row[2],
                "severity": row[3],
                "raw_value": row[4],
                "adjusted_value": row[5],
                "reason": row[6],
                "metadata": json.loads(row[7]) if row[7] else {},
            }
            for row in rows
        ]

    def get_audit_summary(self, hours: int = 24) -> Dict[str, Dict[str, int]]:
        """Count audit events by type and severity."""
        start_time = time.time() - (hours * 3600)
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT event_type, severity, COUNT(*)
                FROM audit_events
                WHERE recorded_at >= ?
                GROUP BY event_type, severity
                """,
                (start_time,),
            ).fetchall()
        summary: Dict[str, Dict[str, int]] = {}
        for event_type, severity, count in rows:
            summary.setdefault(event_type, {})[severity] = count
        return summary

    def get_metric_counts(self, hours: int = 24) -> Dict[str, Dict[str, int]]:
        """Count metric events by type and name."""
        start_time = time.time() - (hours * 3600)
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT metric_type, name, COUNT(*)
                FROM metrics
                WHERE timestamp >= ?
                GROUP BY metric_type, name
                """,
                (start_time,),
            ).fetchall()
        counts: Dict[str, Dict[str, int]] = {}
        for metric_type, name, count in rows:
            counts.setdefault(metric_type, {})[name] = count
        return counts

    def get_polling_summary(self, hours: int = 24) -> Dict[str, Dict[str, float]]:
        """Per-player average, minimum and maximum support over the window."""
        start_time = time.time() - (hours * 3600)
        query = """
            SELECT
                json_extract(tags, '$.player_id') as player_id,
                AVG(value), MIN(value), MAX(value), COUNT(*)
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            GROUP BY player_id
        """
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(query, [MetricType.POLLING.value, start_time]).fetchall()
        return {
            row[0]: {
                "avg_support": row[1],
                "min_support": row[2],
                "max_support": row[3],
                "snapshots": row[4],
            }
            for row in rows
        }

    def get_error_summary(
        self,
        hours: int = 24
    ) -> Dict[str, int]:
        """Get error counts for the last N hours."""
        start_time = time.time() - (hours * 3600)

        query = """
            SELECT name, COUNT(*) as error_count
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            GROUP BY name
            ORDER BY error_count DESC
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [
                MetricType.ERROR_RATE.value,
                start_time
            ])
            return {row[0]: row[1] for row in cursor.fetchall()}

    def get_performance_summary(
        self,
        operation: Optional[str] = None,
        hours: int = 1
    ) -> Dict[str, Dict[str, float]]:
        """Get performance statistics for operations."""
        start_time = time.time() - (hours * 3600)

        query = """
            SELECT
                name,
                AVG(value) as avg_duration,
                MIN(value) as min_duration,
                MAX(value) as max_duration,
                COUNT(*) as sample_count
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
        """
        params: List[Any] = [MetricType.PERFORMANCE.value, start_time]

        if operation:
            query += " AND name = ?"
            params.append(operation)

        query += " GROUP BY name"

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, params)
            results = {}
            for row in cursor.fetchall():
                results[row[0]] = {
                    "avg_duration_ms": row[1],
                    "min_duration_ms": row[2],
                    "max_duration_ms": row[3],
                    "sample_count": row[4]
                }
            return results

    def get_system_events(
        self,
        hours: int = 24,
        limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Return recent system events such as scheduler start/stop."""

        start_time = time.time() - (hours * 3600)

        query = """
            SELECT
                name,
                timestamp,
                json_extract(tags, '$.source') as source,
                json_extract(metadata, '$.reason') as reason
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            ORDER BY timestamp DESC
            LIMIT ?
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [
                MetricType.SYSTEM_EVENT.value,
                start_time,
                limit,
            ])
            return [
                {
                    "event": row[0],
                    "timestamp": datetime.fromtimestamp(row[1]).isoformat(),
                    "source": row[2],
                    "reason": row[3],
                }
                for row in cursor.fetchall()
            ]

    def generate_report(self, hours: int = 24) -> Dict[str, Any]:
        """Generate an aggregated telemetry report."""
        return {
            "generated_at": datetime.now().isoformat(),
            "uptime_seconds": time.time() - self._start_time,
            "window_hours": hours,
            "metric_counts": self.get_metric_counts(hours),
            "polling": self.get_polling_summary(hours),
            "audit_summary": self.get_audit_summary(hours),
            "errors": self.get_error_summary(hours),
            "performance": self.get_performance_summary(hours=hours),
            "system_events": self.get_system_events(hours, limit=10),
        }

    def cleanup_old_data(self, days_to_keep: int = 30):
        """Clean up old telemetry data."""
        cutoff_time = time.time() - (days_to_keep * 86400)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM metrics WHERE timestamp < ?",
                (cutoff_time,)
            )
            deleted = cursor.rowcount
            cursor = conn.execute(
                "DELETE FROM audit_events WHERE recorded_at < ?",
                (cutoff_time,)
            )
            deleted += cursor.rowcount
            conn.commit()

        logger.info(f"Cleaned up {deleted} old telemetry rows")
        return deleted


# Singleton instance
_telemetry: Optional[TelemetryCollector] = None


def get_telemetry() -> TelemetryCollector:
    """Get or create singleton telemetry collector."""
    global _telemetry
    if _telemetry is None:
        _telemetry = TelemetryCollector()
    return _telemetry


# Context manager for timing operations
class track_duration:
    """Context manager for tracking operation duration."""

    def __init__(
        self,
        operation: str,
        tags: Optional[Dict[str, str]] = None,
        collector: Optional[TelemetryCollector] = None,
    ):
        self.operation = operation
        self.tags = tags or {}
        self.collector = collector
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.time() - self.start_time) * 1000
        telemetry = self.collector or get_telemetry()
        telemetry.track_performance(self.operation, duration_ms, self.tags)

        # Track error if exception occurred
        if exc_type:
            telemetry.track_error(
                exc_type.__name__,
                operation=self.operation,
                error_details=str(exc_val)
            )


__all__ = [
    "MetricEvent",
    "MetricType",
    "TelemetryCollector",
    "get_telemetry",
    "track_duration",
]
