"""Campaign record persistence."""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .exceptions import RecordNotFound, StaleRecordError
from .fairness import InfluenceSnapshot
from .models import (
    CampaignPhaseState,
    CounterAd,
    EndorsementRecord,
    NegativeAd,
    OppositionResearch,
    PollingSnapshot,
    ResearchStatus,
    ScandalRecord,
    ScandalStatus,
)
from .phases import PhaseClock

logger = logging.getLogger(__name__)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS campaigns (
    player_id TEXT PRIMARY KEY,
    cycle INTEGER NOT NULL,
    version INTEGER NOT NULL,
    state TEXT NOT NULL,
    clock TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS campaign_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    player_id TEXT NOT NULL,
    cycle INTEGER NOT NULL,
    state TEXT NOT NULL,
    clock TEXT NOT NULL,
    archived_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS polling_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    player_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    final_support REAL NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_polling_player_time
    ON polling_snapshots (player_id, timestamp);
CREATE TABLE IF NOT EXISTS endorsements (
    id TEXT PRIMARY KEY,
    player_id TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_endorsements_player
    ON endorsements (player_id);
CREATE TABLE IF NOT EXISTS scandals (
    id TEXT PRIMARY KEY,
    player_id TEXT NOT NULL,
    status TEXT NOT NULL,
    discovered_at TEXT NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_scandals_player
    ON scandals (player_id, discovered_at);
CREATE TABLE IF NOT EXISTS research (
    id TEXT PRIMARY KEY,
    player_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    status TEXT NOT NULL,
    completes_at TEXT NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_research_status
    ON research (status, completes_at);
CREATE TABLE IF NOT EXISTS negative_ads (
    id TEXT PRIMARY KEY,
    player_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    launched_at TEXT NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_negative_ads_player
    ON negative_ads (player_id, launched_at);
CREATE TABLE IF NOT EXISTS counter_ads (
    id TEXT PRIMARY KEY,
    ad_id TEXT NOT NULL,
    player_id TEXT NOT NULL,
    countered_at TEXT NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_counter_ads_ad
    ON counter_ads (ad_id);
CREATE TABLE IF NOT EXISTS influence_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    player_id TEXT NOT NULL,
    total REAL NOT NULL,
    level INTEGER NOT NULL,
    taken_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    player_id TEXT,
    action TEXT NOT NULL,
    payload TEXT NOT NULL
);
"""


class CampaignStore:
    """SQLite-backed store for campaign records.

    The campaign row carries a version number; ``update_campaign`` only writes
    when the caller read the latest version, otherwise it raises
    :class:`StaleRecordError`.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.executescript(_DB_SCHEMA)
            conn.commit()

    # Campaigns ---------------------------------------------------------
    def create_campaign(
        self, state: CampaignPhaseState, clock: PhaseClock, now: datetime
    ) -> CampaignPhaseState:
        stored = _with_version(state, 1)
        with closing(sqlite3.connect(self._db_path)) as conn:
            try:
                conn.execute(
                    "INSERT INTO campaigns (player_id, cycle, version, state, clock, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        stored.player_id,
                        stored.cycle,
                        stored.version,
                        json.dumps(stored.to_dict()),
                        json.dumps(clock.to_dict()),
                        now.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise StaleRecordError(f"campaign:{state.player_id}", state.version) from exc
            conn.commit()
        return stored

    def update_campaign(
        self, state: CampaignPhaseState, clock: PhaseClock, now: datetime
    ) -> CampaignPhaseState:
        stored = _with_version(state, state.version + 1)
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                "UPDATE campaigns SET cycle = ?, version = ?, state = ?, clock = ?, updated_at = ? "
                "WHERE player_id = ? AND version = ?",
                (
                    stored.cycle,
                    stored.version,
                    json.dumps(stored.to_dict()),
                    json.dumps(clock.to_dict()),
                    now.isoformat(),
                    state.player_id,
                    state.version,
                ),
            )
            conn.commit()
        if cursor.rowcount == 0:
            logger.warning("Stale write for campaign %s at version %s", state.player_id, state.version)
            raise StaleRecordError(f"campaign:{state.player_id}", state.version)
        return stored

    def get_campaign(self, player_id: str) -> Optional[Tuple[CampaignPhaseState, PhaseClock]]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT version, state, clock FROM campaigns WHERE player_id = ?",
                (player_id,),
            ).fetchone()
        if not row:
            return None
        return _decode_campaign(row)

    def require_campaign(self, player_id: str) -> Tuple[CampaignPhaseState, PhaseClock]:
        record = self.get_campaign(player_id)
        if record is None:
            raise RecordNotFound(f"No campaign for player {player_id}")
        return record

    def all_campaigns(self) -> Iterable[Tuple[CampaignPhaseState, PhaseClock]]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT version, state, clock FROM campaigns ORDER BY player_id"
            ).fetchall()
        for row in rows:
            yield _decode_campaign(row)

    def archive_campaign(self, state: CampaignPhaseState, clock: PhaseClock, now: datetime) -> None:
        """Copy the finished cycle into the history table."""

        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "INSERT INTO campaign_history (player_id, cycle, state, clock, archived_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    state.player_id,
                    state.cycle,
                    json.dumps(state.to_dict()),
                    json.dumps(clock.to_dict()),
                    now.isoformat(),
                ),
            )
            conn.commit()

    def campaign_history(self, player_id: str) -> List[CampaignPhaseState]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT state FROM campaign_history WHERE player_id = ? ORDER BY cycle",
                (player_id,),
            ).fetchall()
        return [CampaignPhaseState.from_dict(json.loads(row[0])) for row in rows]

    # Polling -----------------------------------------------------------
    def record_snapshot(self, snapshot: PollingSnapshot) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "INSERT INTO polling_snapshots (player_id, timestamp, final_support, payload) "
                "VALUES (?, ?, ?, ?)",
                (
                    snapshot.player_id,
                    snapshot.timestamp.isoformat(),
                    snapshot.final_support,
                    json.dumps(snapshot.to_dict()),
                ),
            )
            conn.commit()

    def latest_snapshot(self, player_id: str) -> Optional[PollingSnapshot]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT payload FROM polling_snapshots WHERE player_id = ? "
                "ORDER BY timestamp DESC, id DESC LIMIT 1",
                (player_id,),
            ).fetchone()
        if not row:
            return None
        return PollingSnapshot.from_dict(json.loads(row[0]))

    def list_snapshots(
        self,
        player_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[PollingSnapshot]:
        query, params = _time_range(
            "SELECT payload FROM polling_snapshots WHERE player_id = ?",
            [player_id],
            "timestamp",
            start,
            end,
        )
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(query + " ORDER BY timestamp, id", params).fetchall()
        return [PollingSnapshot.from_dict(json.loads(row[0])) for row in rows]

    def latest_pollings(self) -> Dict[str, float]:
        """Most recent final support for every player with a snapshot."""

        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT player_id, final_support FROM polling_snapshots p "
                "WHERE id = (SELECT id FROM polling_snapshots q WHERE q.player_id = p.player_id "
                "ORDER BY timestamp DESC, id DESC LIMIT 1)"
            ).fetchall()
        return {row[0]: float(row[1]) for row in rows}

    # Endorsements ------------------------------------------------------
    def save_endorsement(self, record: EndorsementRecord) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "REPLACE INTO endorsements (id, player_id, acquired_at, expires_at, payload) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.player_id,
                    record.acquired_at.isoformat(),
                    record.expires_at.isoformat() if record.expires_at else None,
                    json.dumps(record.to_dict()),
                ),
            )
            conn.commit()

    def list_endorsements(self, player_id: str) -> List[EndorsementRecord]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT payload FROM endorsements WHERE player_id = ? ORDER BY acquired_at",
                (player_id,),
            ).fetchall()
        return [EndorsementRecord.from_dict(json.loads(row[0])) for row in rows]

    def delete_endorsements(self, ids: Iterable[str]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.executemany("DELETE FROM endorsements WHERE id = ?", [(i,) for i in ids])
            conn.commit()
        return cursor.rowcount

    # Scandals ----------------------------------------------------------
    def save_scandal(self, record: ScandalRecord) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "REPLACE INTO scandals (id, player_id, status, discovered_at, payload) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.player_id,
                    record.status.value,
                    record.discovered_at.isoformat(),
                    json.dumps(record.to_dict()),
                ),
            )
            conn.commit()

    def get_scandal(self, scandal_id: str) -> Optional[ScandalRecord]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute("SELECT payload FROM scandals WHERE id = ?", (scandal_id,)).fetchone()
        if not row:
            return None
        return ScandalRecord.from_dict(json.loads(row[0]))

    def list_scandals(
        self,
        player_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        include_resolved: bool = True,
    ) -> List[ScandalRecord]:
        base = "SELECT payload FROM scandals WHERE player_id = ?"
        params: List[object] = [player_id]
        if not include_resolved:
            base += " AND status != ?"
            params.append(ScandalStatus.RESOLVED.value)
        query, params = _time_range(base, params, "discovered_at", start, end)
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(query + " ORDER BY discovered_at", params).fetchall()
        return [ScandalRecord.from_dict(json.loads(row[0])) for row in rows]

    # Research ----------------------------------------------------------
    def save_research(self, record: OppositionResearch) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "REPLACE INTO research (id, player_id, target_id, status, completes_at, payload) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.player_id,
                    record.target_id,
                    record.status.value,
                    record.completes_at.isoformat(),
                    json.dumps(record.to_dict()),
                ),
            )
            conn.commit()

    def get_research(self, research_id: str) -> Optional[OppositionResearch]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute("SELECT payload FROM research WHERE id = ?", (research_id,)).fetchone()
        if not row:
            return None
        return OppositionResearch.from_dict(json.loads(row[0]))

    def list_research(self, player_id: str) -> List[OppositionResearch]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT payload FROM research WHERE player_id = ? ORDER BY completes_at",
                (player_id,),
            ).fetchall()
        return [OppositionResearch.from_dict(json.loads(row[0])) for row in rows]

    def due_research(self, now: datetime) -> List[OppositionResearch]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT payload FROM research WHERE status = ? ORDER BY completes_at",
                (ResearchStatus.PENDING.value,),
            ).fetchall()
        records = [OppositionResearch.from_dict(json.loads(row[0])) for row in rows]
        return [record for record in records if record.completes_at <= now]

    # Negative ads ------------------------------------------------------
    def save_negative_ad(self, ad: NegativeAd) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "REPLACE INTO negative_ads (id, player_id, target_id, launched_at, payload) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    ad.id,
                    ad.player_id,
                    ad.target_id,
                    ad.launched_at.isoformat(),
                    json.dumps(ad.to_dict()),
                ),
            )
            conn.commit()

    def get_negative_ad(self, ad_id: str) -> Optional[NegativeAd]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute("SELECT payload FROM negative_ads WHERE id = ?", (ad_id,)).fetchone()
        if not row:
            return None
        return NegativeAd.from_dict(json.loads(row[0]))

    def list_negative_ads(
        self,
        player_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[NegativeAd]:
        query, params = _time_range(
            "SELECT payload FROM negative_ads WHERE player_id = ?",
            [player_id],
            "launched_at",
            start,
            end,
        )
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(query + " ORDER BY launched_at", params).fetchall()
        return [NegativeAd.from_dict(json.loads(row[0])) for row in rows]

    def save_counter_ad(self, counter: CounterAd) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "REPLACE INTO counter_ads (id, ad_id, player_id, countered_at, payload) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    counter.id,
                    counter.ad_id,
                    counter.player_id,
                    counter.countered_at.isoformat(),
                    json.dumps(counter.to_dict()),
                ),
            )
            conn.commit()

    def list_counter_ads(self, ad_id: str) -> List[CounterAd]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT payload FROM counter_ads WHERE ad_id = ? ORDER BY countered_at",
                (ad_id,),
            ).fetchall()
        return [CounterAd.from_dict(json.loads(row[0])) for row in rows]

    # Influence ---------------------------------------------------------
    def record_influence(self, player_id: str, snapshot: InfluenceSnapshot) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "INSERT INTO influence_snapshots (player_id, total, level, taken_at) VALUES (?, ?, ?, ?)",
                (player_id, snapshot.total, snapshot.level, snapshot.taken_at.isoformat()),
            )
            conn.commit()

    def latest_influence(self, player_id: str) -> Optional[InfluenceSnapshot]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT total, level, taken_at FROM influence_snapshots WHERE player_id = ? "
                "ORDER BY taken_at DESC, id DESC LIMIT 1",
                (player_id,),
            ).fetchone()
        if not row:
            return None
        return InfluenceSnapshot(
            total=float(row[0]), level=int(row[1]), taken_at=datetime.fromisoformat(row[2])
        )

    # Event log ---------------------------------------------------------
    def append_event(self, timestamp: datetime, action: str, payload: dict, player_id: Optional[str] = None) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "INSERT INTO events (timestamp, player_id, action, payload) VALUES (?, ?, ?, ?)",
                (timestamp.isoformat(), player_id, action, json.dumps(payload)),
            )
            conn.commit()

    def export_events(self, player_id: Optional[str] = None) -> List[dict]:
        query = "SELECT timestamp, player_id, action, payload FROM events"
        params: List[object] = []
        if player_id:
            query += " WHERE player_id = ?"
            params.append(player_id)
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [
            {
                "timestamp": datetime.fromisoformat(row[0]),
                "player_id": row[1],
                "action": row[2],
                "payload": json.loads(row[3]),
            }
            for row in rows
        ]


def _with_version(state: CampaignPhaseState, version: int) -> CampaignPhaseState:
    return replace(state, version=version)


def _decode_campaign(row) -> Tuple[CampaignPhaseState, PhaseClock]:
    data = json.loads(row[1])
    data["version"] = int(row[0])
    return CampaignPhaseState.from_dict(data), PhaseClock.from_dict(json.loads(row[2]))


def _time_range(
    query: str,
    params: List[object],
    column: str,
    start: Optional[datetime],
    end: Optional[datetime],
) -> Tuple[str, List[object]]:
    params = list(params)
    if start is not None:
        query += f" AND {column} >= ?"
        params.append(start.isoformat())
    if end is not None:
        query += f" AND {column} <= ?"
        params.append(end.isoformat())
    return query, params


__all__ = ["CampaignStore"]
