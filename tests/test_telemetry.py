"""Tests for telemetry and fairness audit tracking."""
import json
import sqlite3
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

import campaign_trail.telemetry
from campaign_trail.models import AuditEvent
from campaign_trail.telemetry import (
    MetricEvent,
    MetricType,
    TelemetryCollector,
    get_telemetry,
    track_duration,
)


def make_audit(player_id="alice", event_type="fairness_floor", severity="info"):
    return AuditEvent(
        event_type=event_type,
        player_id=player_id,
        occurred_at=datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc),
        raw_value=10.0,
        adjusted_value=85.0,
        reason="retention floor applied",
        severity=severity,
        metadata={"level": 1},
    )


def test_metric_event_creation():
    """Test MetricEvent dataclass creation."""
    event = MetricEvent(
        timestamp=time.time(),
        metric_type=MetricType.POLLING,
        name="snapshot",
        value=31.5,
        tags={"player_id": "alice"},
    )

    assert event.metric_type == MetricType.POLLING
    assert event.value == 31.5
    assert event.metadata == {}


def test_telemetry_collector_init():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test_telemetry.db"
        collector = TelemetryCollector(db_path)

        assert collector.db_path == db_path
        assert db_path.exists()
        assert len(collector._metrics_buffer) == 0


def test_track_phase_transition(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")
    collector.track_phase_transition("alice", 2, "announcement", "fundraising")

    event = collector._metrics_buffer[0]
    assert event.metric_type == MetricType.PHASE_TRANSITION
    assert event.name == "fundraising"
    assert event.tags == {"player_id": "alice", "from_phase": "announcement"}
    assert event.metadata == {"cycle": 2}


def test_track_polling_and_summary(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")
    collector.track_polling("alice", 30.0, 4.0)
    collector.track_polling("alice", 34.0, 3.5, offline_hours=12.0)
    collector.track_polling("bob", 41.0, 4.0)
    assert collector._metrics_buffer[1].metadata == {"margin_of_error": 3.5, "offline_hours": 12.0}
    collector.flush()

    summary = collector.get_polling_summary()
    assert summary["alice"]["avg_support"] == pytest.approx(32.0)
    assert summary["alice"]["snapshots"] == 2
    assert summary["bob"]["max_support"] == 41.0


def test_track_spend_and_domain_events(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")
    collector.track_spend("alice", "mitigation", 40_000, success=False)
    collector.track_scandal("alice", "generated", 12.0, {"category": "gaffe"})
    collector.track_opposition("alice", "negative_ad", 36.0)
    collector.track_endorsement("alice", "union", 5.0)
    collector.track_balance("alice", 62.0, 1.6, 0.0)

    spend, scandal, opposition, endorsement, balance = collector._metrics_buffer
    assert spend.tags["success"] == "False"
    assert scandal.metadata == {"category": "gaffe"}
    assert opposition.metric_type == MetricType.OPPOSITION
    assert endorsement.name == "union"
    assert balance.metadata["cost_multiplier"] == 1.6


def test_flush_metrics(tmp_path):
    db_path = tmp_path / "test.db"
    collector = TelemetryCollector(db_path)
    collector.track_error("StaleRecordError", operation="advance_phase", player_id="alice")
    collector.track_performance("generate_poll", 12.5)
    collector.flush()

    assert collector._metrics_buffer == []
    with sqlite3.connect(db_path) as conn:
        rows = conn.execute("SELECT metric_type, name, tags FROM metrics ORDER BY id").fetchall()
    assert rows[0][0] == "error_rate"
    assert json.loads(rows[0][2]) == {"operation": "advance_phase", "player_id": "alice"}
    assert rows[1][1] == "generate_poll"


def test_auto_flush(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")
    for idx in range(100):
        collector.track_polling(f"p{idx}", 30.0, 4.0)
    assert collector._metrics_buffer == []


def test_audit_events_are_stored_immediately(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")
    collector.track_audit_event(make_audit())
    collector.track_audit_event(make_audit(player_id="bob", event_type="fairness_divergence", severity="major"))

    events = collector.get_audit_events()
    assert [e["player_id"] for e in events] == ["bob", "alice"]
    assert events[1]["metadata"] == {"level": 1}
    assert collector.get_audit_events(player_id="alice")[0]["adjusted_value"] == 85.0
    assert len(collector.get_audit_events(severity="major")) == 1
    assert len(collector.get_audit_events(limit=1)) == 1
    assert collector.get_audit_summary() == {
        "fairness_floor": {"info": 1},
        "fairness_divergence": {"major": 1},
    }


def test_system_events(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")
    collector.track_system_event("scheduler_started", source="scheduler")
    collector.track_system_event("scheduler_stopped", source="scheduler", reason="shutdown")
    collector.flush()

    events = collector.get_system_events()
    assert {e["event"] for e in events} == {"scheduler_started", "scheduler_stopped"}
    stopped = next(e for e in events if e["event"] == "scheduler_stopped")
    assert stopped["reason"] == "shutdown"


def test_track_duration_context(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")
    with track_duration("test_operation", {"type": "test"}, collector=collector):
        time.sleep(0.01)

    event = collector._metrics_buffer[0]
    assert event.metric_type == MetricType.PERFORMANCE
    assert event.name == "test_operation"
    assert event.value > 5


def test_track_duration_records_errors(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")
    with pytest.raises(ValueError):
        with track_duration("explode", collector=collector):
            raise ValueError("boom")

    performance, error = collector._metrics_buffer
    assert performance.name == "explode"
    assert error.metric_type == MetricType.ERROR_RATE
    assert error.name == "ValueError"
    assert error.metadata == {"error_details": "boom"}


def test_generate_report(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")
    collector.track_polling("alice", 30.0, 4.0)
    collector.track_error("TestError")
    collector.track_performance("query", 50.0)
    collector.track_audit_event(make_audit())
    collector.flush()

    report = collector.generate_report()
    assert report["window_hours"] == 24
    assert report["errors"] == {"TestError": 1}
    assert report["performance"]["query"]["sample_count"] == 1
    assert report["audit_summary"] == {"fairness_floor": {"info": 1}}
    assert report["metric_counts"]["polling"]["snapshot"] == 1


def test_cleanup_old_data(tmp_path):
    collector = TelemetryCollector(tmp_path / "test.db")
    collector.track_performance("old", 1.0)
    collector._metrics_buffer[0].timestamp = time.time() - 40 * 86400
    collector.flush()
    collector.track_audit_event(make_audit())

    assert collector.cleanup_old_data(days_to_keep=30) == 1
    assert len(collector.get_audit_events()) == 1


def test_singleton_pattern(monkeypatch, tmp_path):
    monkeypatch.setattr(campaign_trail.telemetry, "DEFAULT_TELEMETRY_DB", tmp_path / "t.db")
    monkeypatch.setattr(campaign_trail.telemetry, "_telemetry", None)
    first = get_telemetry()
    assert first is get_telemetry()
    assert first.db_path == tmp_path / "t.db"
