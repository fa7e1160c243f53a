"""Tests for retention floors, divergence auditing and the influence baseline."""
from __future__ import annotations

import math
from datetime import datetime, timezone

import pytest

from campaign_trail import fairness
from campaign_trail.exceptions import ValidationError
from campaign_trail.fairness import DivergenceSeverity, InfluenceInputs, InfluenceSnapshot

NOW = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)


def snapshot(total: float, level: int = 1) -> InfluenceSnapshot:
    return InfluenceSnapshot(total=total, level=level, taken_at=NOW)


@pytest.mark.parametrize("level, minimum", [(1, 5), (2, 15), (3, 30), (4, 50), (5, 75), (9, 75)])
def test_level_minimums(level, minimum):
    assert fairness.level_minimum(level) == minimum


def test_level_below_range_is_rejected():
    with pytest.raises(ValidationError):
        fairness.level_minimum(0)


def test_retention_floor_keeps_85_percent_of_last_value():
    assert fairness.retention_floor(snapshot(100.0), 1) == pytest.approx(85.0)
    assert fairness.retention_floor(snapshot(10.0), 3) == pytest.approx(30.0)
    assert fairness.retention_floor(None, 2) == pytest.approx(15.0)


@pytest.mark.parametrize("raw", [-10.0, 0.0, 12.5, 84.9, 85.0, 150.0])
@pytest.mark.parametrize("level", [1, 2, 3, 4, 5])
def test_floor_never_lowers_and_never_drops_below_minimum(raw, level):
    previous = snapshot(100.0)
    adjusted = fairness.apply_retention_floor(raw, previous, level)
    assert adjusted >= raw
    assert adjusted >= fairness.level_minimum(level)
    assert adjusted >= 85.0


def test_floor_audit_event_only_when_clamped():
    event = fairness.floor_audit_event("alice", 10.0, 85.0, NOW)
    assert event.event_type == "fairness_floor"
    assert event.raw_value == 10.0 and event.adjusted_value == 85.0
    assert fairness.floor_audit_event("alice", 90.0, 90.0, NOW) is None


@pytest.mark.parametrize(
    "online, offline, severity",
    [
        (100.0, 95.0, DivergenceSeverity.NONE),
        (100.0, 85.0, DivergenceSeverity.MINOR),
        (100.0, 50.0, DivergenceSeverity.MAJOR),
        (0.0, 0.0, DivergenceSeverity.NONE),
    ],
)
def test_divergence_classification(online, offline, severity):
    report = fairness.analyze_divergence(online, offline)
    assert report.severity == severity
    assert report.warning == (severity != DivergenceSeverity.NONE)


def test_divergence_audit_events(caplog):
    quiet = fairness.analyze_divergence(100.0, 98.0)
    assert fairness.divergence_audit_events("alice", quiet, NOW) == []

    loud = fairness.analyze_divergence(100.0, 40.0)
    with caplog.at_level("WARNING"):
        events = fairness.divergence_audit_events("alice", loud, NOW)
    assert len(events) == 1
    assert events[0].event_type == "fairness_divergence"
    assert events[0].severity == "major"
    assert events[0].metadata["relative_difference"] == pytest.approx(0.6)
    assert "Influence divergence for alice" in caplog.text


def test_soft_cap():
    assert fairness.soft_cap(100.0, 100.0) == pytest.approx(50.0)
    assert fairness.soft_cap(-3.0, 100.0) == 0.0
    assert fairness.soft_cap(10_000.0, 100.0) < 100.0


def test_baseline_donation_term():
    breakdown = fairness.compute_influence_baseline(InfluenceInputs(donation=10_000, level=1), None)
    assert breakdown.donation_term == pytest.approx(12.0)
    assert breakdown.soft_capped == pytest.approx(12.0 * 100 / 112, abs=1e-3)
    assert breakdown.total == 11


def test_baseline_small_donation_earns_only_the_floor():
    breakdown = fairness.compute_influence_baseline(InfluenceInputs(donation=500, level=2), None)
    assert breakdown.donation_term == 0.0
    assert breakdown.total == 15


def test_baseline_is_clamped_to_level_floor():
    breakdown = fairness.compute_influence_baseline(InfluenceInputs(donation=10_000, level=3), None)
    assert breakdown.donation_term == pytest.approx(15.0)
    assert breakdown.floored == pytest.approx(30.0)
    assert breakdown.total == 30


def test_baseline_proximity_and_reputation_terms():
    inputs = InfluenceInputs(donation=0, level=1, hours_until_election=360, reputation=100.0)
    breakdown = fairness.compute_influence_baseline(inputs, None)
    assert breakdown.proximity_term == pytest.approx(3.75)
    assert breakdown.reputation_term == pytest.approx(20.0)
    far = fairness.compute_influence_baseline(
        InfluenceInputs(donation=0, level=1, hours_until_election=5_000), None
    )
    assert far.proximity_term == 0.0


@pytest.mark.parametrize("idx", range(40))
def test_jitter_never_breaks_the_floor(idx):
    previous = snapshot(40.0)
    inputs = InfluenceInputs(donation=2_000, level=1)
    breakdown = fairness.compute_influence_baseline(inputs, previous, seed=f"alice:1:influence:{idx}")
    assert isinstance(breakdown.total, int)
    assert abs(breakdown.jitter) <= 2.0
    assert breakdown.total >= math.ceil(breakdown.floor)


def test_negative_donation_is_rejected():
    with pytest.raises(ValidationError):
        fairness.compute_influence_baseline(InfluenceInputs(donation=-1, level=1), None)
