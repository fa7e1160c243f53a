"""Tests for the SQLite campaign store."""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from campaign_trail import endorsements, phases, scandals
from campaign_trail.exceptions import RecordNotFound, StaleRecordError
from campaign_trail.fairness import InfluenceSnapshot
from campaign_trail.models import EndorsementSource, EndorsementTier, PollingSnapshot, ScandalCategory
from campaign_trail.state import CampaignStore

NOW = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def store(tmp_path):
    return CampaignStore(tmp_path / "campaigns.db")


def new_campaign(store, player_id="alice"):
    state, clock = phases.start_cycle(player_id, 1, NOW)
    return store.create_campaign(state, clock, NOW), clock


def snapshot(player_id: str, minutes: int, support: float) -> PollingSnapshot:
    return PollingSnapshot(
        player_id=player_id,
        timestamp=NOW + timedelta(minutes=minutes),
        sample_size=1000,
        base_support=support,
        volatility_delta=0.0,
        smoothing_delta=0.0,
        final_support=support,
        margin_of_error=4.0,
        reputation=50.0,
        seed=f"{player_id}:1:poll:{minutes}",
    )


def test_create_and_update_bump_version(store):
    created, clock = new_campaign(store)
    assert created.version == 1
    loaded, loaded_clock = store.require_campaign("alice")
    assert loaded == created
    assert loaded_clock == clock

    updated = store.update_campaign(replace(loaded, funds_raised=5_000), clock, NOW)
    assert updated.version == 2
    assert store.require_campaign("alice")[0].funds_raised == 5_000


def test_stale_update_is_rejected(store):
    created, clock = new_campaign(store)
    store.update_campaign(replace(created, reputation=60.0), clock, NOW)
    with pytest.raises(StaleRecordError):
        store.update_campaign(replace(created, reputation=40.0), clock, NOW)
    assert store.require_campaign("alice")[0].reputation == 60.0


def test_duplicate_create_is_rejected(store):
    new_campaign(store)
    with pytest.raises(StaleRecordError):
        new_campaign(store)


def test_missing_campaign(store):
    assert store.get_campaign("ghost") is None
    with pytest.raises(RecordNotFound):
        store.require_campaign("ghost")


def test_all_campaigns_and_history(store):
    alice, clock = new_campaign(store, "alice")
    new_campaign(store, "bob")
    assert [s.player_id for s, _ in store.all_campaigns()] == ["alice", "bob"]
    store.archive_campaign(alice, clock, NOW)
    assert [s.cycle for s in store.campaign_history("alice")] == [1]
    assert store.campaign_history("bob") == []


def test_snapshot_queries(store):
    for minutes, support in [(0, 30.0), (25, 32.0), (50, 35.0)]:
        store.record_snapshot(snapshot("alice", minutes, support))
    store.record_snapshot(snapshot("bob", 10, 41.0))

    assert store.latest_snapshot("alice").final_support == 35.0
    window = store.list_snapshots("alice", start=NOW + timedelta(minutes=10), end=NOW + timedelta(minutes=40))
    assert [s.final_support for s in window] == [32.0]
    assert len(store.list_snapshots("alice")) == 3
    assert store.latest_pollings() == {"alice": 35.0, "bob": 41.0}
    assert store.latest_snapshot("carol") is None


def test_endorsement_roundtrip_and_delete(store):
    records = []
    for idx in range(2):
        records.append(
            endorsements.acquire_endorsement(
                "alice", EndorsementSource.MEDIA, EndorsementTier.STATE, records, NOW + timedelta(minutes=idx)
            )
        )
    for record in records:
        store.save_endorsement(record)
    assert store.list_endorsements("alice") == records
    assert store.delete_endorsements([records[0].id]) == 1
    assert store.delete_endorsements([]) == 0
    assert store.list_endorsements("alice") == records[1:]


def test_scandal_filters(store):
    state, _ = phases.start_cycle("alice", 1, NOW)
    first = scandals.generate_scandal(state, NOW, sequence=0)
    second = scandals.generate_scandal(state, NOW + timedelta(hours=1), sequence=1, trigger=ScandalCategory.GAFFE)
    store.save_scandal(first)
    store.save_scandal(scandals.resolve_scandal(second, NOW + timedelta(hours=200)))

    assert store.get_scandal(first.id) == first
    assert len(store.list_scandals("alice")) == 2
    assert [s.id for s in store.list_scandals("alice", include_resolved=False)] == [first.id]
    assert [s.id for s in store.list_scandals("alice", start=NOW + timedelta(minutes=30))] == [second.id]


def test_influence_and_event_log(store):
    assert store.latest_influence("alice") is None
    store.record_influence("alice", InfluenceSnapshot(total=40.0, level=2, taken_at=NOW))
    store.record_influence("alice", InfluenceSnapshot(total=44.0, level=2, taken_at=NOW + timedelta(hours=1)))
    assert store.latest_influence("alice").total == 44.0

    store.append_event(NOW, "campaign_started", {"cycle": 1}, player_id="alice")
    store.append_event(NOW, "campaign_started", {"cycle": 1}, player_id="bob")
    events = store.export_events("alice")
    assert len(events) == 1
    assert events[0]["payload"] == {"cycle": 1}
    assert len(store.export_events()) == 2
