"""Core data models for the campaign simulation."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class CampaignPhase(str, Enum):
    ANNOUNCEMENT = "announcement"
    FUNDRAISING = "fundraising"
    ACTIVE = "active"
    RESOLUTION = "resolution"
    RESULTS = "results"


class CampaignStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    WITHDRAWN = "withdrawn"


class EndorsementSource(str, Enum):
    CELEBRITY = "celebrity"
    UNION = "union"
    CORPORATE = "corporate"
    PARTY = "party"
    GRASSROOTS = "grassroots"
    MEDIA = "media"


class EndorsementTier(str, Enum):
    LOCAL = "local"
    STATE = "state"
    NATIONAL = "national"


class ScandalCategory(str, Enum):
    FINANCIAL = "financial"
    PERSONAL = "personal"
    POLICY_REVERSAL = "policy_reversal"
    ETHICS = "ethics"
    LEGAL = "legal"
    GAFFE = "gaffe"


class ScandalStatus(str, Enum):
    DISCOVERED = "discovered"
    CONTAINED = "contained"
    RESOLVED = "resolved"


class MitigationAction(str, Enum):
    PUBLIC_APOLOGY = "public_apology"
    PRESS_CONFERENCE = "press_conference"
    LEGAL_DEFENSE = "legal_defense"
    PR_FIRM = "pr_firm"
    STAFF_SHAKEUP = "staff_shakeup"
    COMMUNITY_OUTREACH = "community_outreach"


class ResearchType(str, Enum):
    FINANCIAL = "financial"
    VOTING_RECORD = "voting_record"
    PERSONAL = "personal"
    BUSINESS = "business"
    ASSOCIATIONS = "associations"


class ResearchStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


class DiscoveryTier(str, Enum):
    NOTHING = "nothing"
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class ActionLogEntry:
    action: str
    phase: CampaignPhase
    timestamp: datetime


@dataclass(frozen=True)
class CampaignPhaseState:
    """One player's active campaign cycle."""

    player_id: str
    cycle: int
    phase: CampaignPhase
    phase_started_at: datetime
    phase_ends_at: datetime
    spend_pressure_index: float
    volatility_modifier: float
    engagement_saturation: float
    seed: str
    funds_raised: float = 0.0
    funds_spent: float = 0.0
    endorsements_acquired: int = 0
    active_scandals: int = 0
    reputation: float = 50.0
    candidacy_declared: bool = False
    debate_submitted: bool = False
    actions: Tuple[ActionLogEntry, ...] = ()
    version: int = 0

    @property
    def available_funds(self) -> float:
        return max(0.0, self.funds_raised - self.funds_spent)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        data["phase_started_at"] = _iso(self.phase_started_at)
        data["phase_ends_at"] = _iso(self.phase_ends_at)
        data["actions"] = [
            {"action": a.action, "phase": a.phase.value, "timestamp": _iso(a.timestamp)}
            for a in self.actions
        ]
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "CampaignPhaseState":
        payload = dict(data)
        payload["phase"] = CampaignPhase(payload["phase"])
        payload["phase_started_at"] = _parse(payload["phase_started_at"])
        payload["phase_ends_at"] = _parse(payload["phase_ends_at"])
        payload["actions"] = tuple(
            ActionLogEntry(
                action=entry["action"],
                phase=CampaignPhase(entry["phase"]),
                timestamp=_parse(entry["timestamp"]),
            )
            for entry in payload.get("actions", [])
        )
        return CampaignPhaseState(**payload)


@dataclass(frozen=True)
class PollingSnapshot:
    player_id: str
    timestamp: datetime
    sample_size: int
    base_support: float
    volatility_delta: float
    smoothing_delta: float
    final_support: float
    margin_of_error: float
    reputation: float
    seed: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = _iso(self.timestamp)
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "PollingSnapshot":
        payload = dict(data)
        payload["timestamp"] = _parse(payload["timestamp"])
        return PollingSnapshot(**payload)


@dataclass(frozen=True)
class EndorsementRecord:
    id: str
    player_id: str
    source: EndorsementSource
    tier: EndorsementTier
    acquired_at: datetime
    expires_at: Optional[datetime]
    diminishing_factor: float
    influence_bonus: float
    fundraising_bonus: float

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        data["tier"] = self.tier.value
        data["acquired_at"] = _iso(self.acquired_at)
        data["expires_at"] = _iso(self.expires_at)
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "EndorsementRecord":
        payload = dict(data)
        payload["source"] = EndorsementSource(payload["source"])
        payload["tier"] = EndorsementTier(payload["tier"])
        payload["acquired_at"] = _parse(payload["acquired_at"])
        payload["expires_at"] = _parse(payload.get("expires_at"))
        return EndorsementRecord(**payload)


@dataclass(frozen=True)
class ScandalRecord:
    id: str
    player_id: str
    category: ScandalCategory
    severity: float
    status: ScandalStatus
    discovered_at: datetime
    reputation_hit: float
    recovery_rate_per_hour: float
    contained_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    mitigations: Tuple[MitigationAction, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        data["status"] = self.status.value
        data["discovered_at"] = _iso(self.discovered_at)
        data["contained_at"] = _iso(self.contained_at)
        data["resolved_at"] = _iso(self.resolved_at)
        data["mitigations"] = [action.value for action in self.mitigations]
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ScandalRecord":
        payload = dict(data)
        payload["category"] = ScandalCategory(payload["category"])
        payload["status"] = ScandalStatus(payload["status"])
        payload["discovered_at"] = _parse(payload["discovered_at"])
        payload["contained_at"] = _parse(payload.get("contained_at"))
        payload["resolved_at"] = _parse(payload.get("resolved_at"))
        payload["mitigations"] = tuple(
            MitigationAction(value) for value in payload.get("mitigations", [])
        )
        return ScandalRecord(**payload)


@dataclass(frozen=True)
class DiscoveryResult:
    tier: DiscoveryTier
    quality_score: float
    credibility: float
    findings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class OppositionResearch:
    id: str
    player_id: str
    target_id: str
    research_type: ResearchType
    amount_spent: float
    started_at: datetime
    completes_at: datetime
    status: ResearchStatus = ResearchStatus.PENDING
    prior_attempts: int = 0
    skeleton_proximity: float = 1.0
    completed_at: Optional[datetime] = None
    discovery: Optional[DiscoveryResult] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["research_type"] = self.research_type.value
        data["status"] = self.status.value
        data["started_at"] = _iso(self.started_at)
        data["completes_at"] = _iso(self.completes_at)
        data["completed_at"] = _iso(self.completed_at)
        if self.discovery is not None:
            data["discovery"] = {
                "tier": self.discovery.tier.value,
                "quality_score": self.discovery.quality_score,
                "credibility": self.discovery.credibility,
                "findings": list(self.discovery.findings),
            }
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "OppositionResearch":
        payload = dict(data)
        payload["research_type"] = ResearchType(payload["research_type"])
        payload["status"] = ResearchStatus(payload["status"])
        payload["started_at"] = _parse(payload["started_at"])
        payload["completes_at"] = _parse(payload["completes_at"])
        payload["completed_at"] = _parse(payload.get("completed_at"))
        discovery = payload.get("discovery")
        if discovery:
            payload["discovery"] = DiscoveryResult(
                tier=DiscoveryTier(discovery["tier"]),
                quality_score=float(discovery["quality_score"]),
                credibility=float(discovery["credibility"]),
                findings=tuple(discovery.get("findings", [])),
            )
        return OppositionResearch(**payload)


@dataclass(frozen=True)
class NegativeAd:
    id: str
    player_id: str
    target_id: str
    amount_spent: float
    launched_at: datetime
    phase: CampaignPhase
    effectiveness: float
    backfired: bool
    ethics_penalty: float
    voter_fatigue: float
    target_impact: float
    attacker_impact: float
    research_id: Optional[str] = None
    extreme: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["launched_at"] = _iso(self.launched_at)
        data["phase"] = self.phase.value
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "NegativeAd":
        payload = dict(data)
        payload["launched_at"] = _parse(payload["launched_at"])
        payload["phase"] = CampaignPhase(payload["phase"])
        return NegativeAd(**payload)


@dataclass(frozen=True)
class CounterAd:
    """A response ad lowering the current impact of an earlier attack."""

    id: str
    ad_id: str
    player_id: str
    amount_spent: float
    countered_at: datetime
    reduction: float

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["countered_at"] = _iso(self.countered_at)
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "CounterAd":
        payload = dict(data)
        payload["countered_at"] = _parse(payload["countered_at"])
        return CounterAd(**payload)


@dataclass(frozen=True)
class SpendResult:
    """Outcome of an operation that costs money.

    ``success`` is False when the player could not afford ``cost``.
    """

    success: bool
    cost: float
    message: str = ""


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    player_id: str
    occurred_at: datetime
    raw_value: float
    adjusted_value: float
    reason: str
    severity: str = "info"
    metadata: Dict[str, Any] = field(default_factory=dict)


__all__ = [
    "ActionLogEntry",
    "AuditEvent",
    "CampaignPhase",
    "CampaignPhaseState",
    "CampaignStatus",
    "CounterAd",
    "DiscoveryResult",
    "DiscoveryTier",
    "EndorsementRecord",
    "EndorsementSource",
    "EndorsementTier",
    "MitigationAction",
    "NegativeAd",
    "OppositionResearch",
    "PollingSnapshot",
    "ResearchStatus",
    "ResearchType",
    "ScandalCategory",
    "ScandalRecord",
    "ScandalStatus",
    "SpendResult",
]
