"""Scandal generation, decay and mitigation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from .config import Settings, get_settings
from .exceptions import InvalidStateTransition, ValidationError
from .models import (
    CampaignPhaseState,
    MitigationAction,
    ScandalCategory,
    ScandalRecord,
    ScandalStatus,
    SpendResult,
)
from .phases import spend_funds
from .rng import compose_seed, fnv1a_32, hash_chance, hash_range, hash_unit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScandalProfile:
    weight: float
    severity_min: float
    severity_max: float


@dataclass(frozen=True)
class MitigationProfile:
    rate_delta: float
    cost: float


SCANDAL_TABLE: Dict[ScandalCategory, ScandalProfile] = {
    ScandalCategory.FINANCIAL: ScandalProfile(20, 0.3, 0.8),
    ScandalCategory.PERSONAL: ScandalProfile(25, 0.2, 0.7),
    ScandalCategory.POLICY_REVERSAL: ScandalProfile(20, 0.1, 0.5),
    ScandalCategory.ETHICS: ScandalProfile(15, 0.4, 0.9),
    ScandalCategory.LEGAL: ScandalProfile(10, 0.5, 1.0),
    ScandalCategory.GAFFE: ScandalProfile(10, 0.05, 0.3),
}

MITIGATION_TABLE: Dict[MitigationAction, MitigationProfile] = {
    MitigationAction.PUBLIC_APOLOGY: MitigationProfile(0.3, 5_000),
    MitigationAction.PRESS_CONFERENCE: MitigationProfile(0.4, 10_000),
    MitigationAction.LEGAL_DEFENSE: MitigationProfile(0.5, 50_000),
    MitigationAction.PR_FIRM: MitigationProfile(0.6, 40_000),
    MitigationAction.STAFF_SHAKEUP: MitigationProfile(0.35, 15_000),
    MitigationAction.COMMUNITY_OUTREACH: MitigationProfile(0.25, 8_000),
}


def _hours_between(start: datetime, end: datetime) -> float:
    return max(0.0, (end - start).total_seconds() / 3600.0)


def roll_category(seed: str) -> ScandalCategory:
    """Weighted category pick from the seed."""

    total = sum(profile.weight for profile in SCANDAL_TABLE.values())
    roll = hash_unit(seed) * total
    cumulative = 0.0
    for category, profile in SCANDAL_TABLE.items():
        cumulative += profile.weight
        if roll < cumulative:
            return category
    return ScandalCategory.GAFFE


def generate_scandal(
    state: CampaignPhaseState,
    now: datetime,
    *,
    trigger: Optional[ScandalCategory] = None,
    sequence: int = 0,
    settings: Settings | None = None,
) -> ScandalRecord:
    """Create a new scandal, either for an explicit ``trigger`` or a rolled category.

    ``sequence`` distinguishes several scandals generated in the same cycle.
    """

    settings = settings or get_settings()
    seed = compose_seed(state.player_id, state.cycle, "scandal", sequence)
    if trigger is not None and not isinstance(trigger, ScandalCategory):
        raise ValidationError(f"Unknown scandal category: {trigger!r}")
    category = trigger or roll_category(seed + ":category")
    profile = SCANDAL_TABLE[category]
    severity = round(hash_range(seed + ":severity", profile.severity_min, profile.severity_max), 4)
    scandal_settings = settings.scandals
    rate = scandal_settings.base_recovery_per_hour * (1.0 - severity * 0.5)
    record = ScandalRecord(
        id="scn-%08x" % fnv1a_32(seed),
        player_id=state.player_id,
        category=category,
        severity=severity,
        status=ScandalStatus.DISCOVERED,
        discovered_at=now,
        reputation_hit=round(severity * scandal_settings.reputation_hit_per_severity, 4),
        recovery_rate_per_hour=min(scandal_settings.max_recovery_per_hour, rate),
    )
    logger.info(
        "Scandal %s (%s, severity %.2f) hit player %s",
        record.id,
        category.value,
        severity,
        state.player_id,
    )
    return record


def calculate_impact(scandal: ScandalRecord, now: datetime, settings: Settings | None = None) -> float:
    """Reputation points the scandal still costs at ``now``."""

    if scandal.status == ScandalStatus.RESOLVED:
        return 0.0
    settings = settings or get_settings()
    rate = scandal.recovery_rate_per_hour
    recovered = rate * _hours_between(scandal.discovered_at, now)
    if scandal.contained_at is not None:
        recovered += (
            settings.scandals.containment_multiplier
            * rate
            * _hours_between(scandal.contained_at, now)
        )
    return max(0.0, scandal.reputation_hit - recovered)


def total_penalty(scandals: Sequence[ScandalRecord], now: datetime, settings: Settings | None = None) -> float:
    return sum(calculate_impact(scandal, now, settings) for scandal in scandals)


def active_scandals(scandals: Sequence[ScandalRecord]) -> List[ScandalRecord]:
    return [scandal for scandal in scandals if scandal.status != ScandalStatus.RESOLVED]


def mitigate_scandal(
    scandal: ScandalRecord,
    action: MitigationAction,
    state: CampaignPhaseState,
    settings: Settings | None = None,
) -> Tuple[ScandalRecord, CampaignPhaseState, SpendResult]:
    """Pay for ``action`` and raise the scandal's recovery rate.

    Returns the records unchanged with an unsuccessful ``SpendResult`` when the
    campaign cannot afford the action.
    """

    if scandal.status == ScandalStatus.RESOLVED:
        raise InvalidStateTransition(f"Scandal {scandal.id} is already resolved")
    if not isinstance(action, MitigationAction):
        raise ValidationError(f"Unknown mitigation action: {action!r}")
    if action in scandal.mitigations:
        raise ValidationError(f"{action.value} already applied to scandal {scandal.id}")
    settings = settings or get_settings()
    profile = MITIGATION_TABLE[action]
    updated_state, result = spend_funds(state, profile.cost)
    if not result.success:
        return scandal, state, result
    delta = profile.rate_delta * (1.0 - settings.es_mitigation_drag * state.engagement_saturation)
    new_rate = min(settings.scandals.max_recovery_per_hour, scandal.recovery_rate_per_hour + delta)
    updated = replace(
        scandal,
        recovery_rate_per_hour=new_rate,
        mitigations=scandal.mitigations + (action,),
    )
    return updated, updated_state, result


def contain_scandal(scandal: ScandalRecord, now: datetime) -> ScandalRecord:
    if scandal.status != ScandalStatus.DISCOVERED:
        raise InvalidStateTransition(f"Scandal {scandal.id} is {scandal.status.value}; cannot contain")
    return replace(scandal, status=ScandalStatus.CONTAINED, contained_at=now)


def resolve_scandal(scandal: ScandalRecord, now: datetime, settings: Settings | None = None) -> ScandalRecord:
    settings = settings or get_settings()
    if scandal.status == ScandalStatus.RESOLVED:
        raise InvalidStateTransition(f"Scandal {scandal.id} is already resolved")
    impact = calculate_impact(scandal, now, settings)
    if impact >= settings.scandals.resolution_threshold:
        raise InvalidStateTransition(
            f"Scandal {scandal.id} still costs {impact:.2f} points; cannot resolve yet"
        )
    return replace(scandal, status=ScandalStatus.RESOLVED, resolved_at=now)


def sweep_scandals(
    scandals: Sequence[ScandalRecord], now: datetime, settings: Settings | None = None
) -> Tuple[List[ScandalRecord], List[ScandalRecord]]:
    """Auto-resolve faded scandals. Returns (all records, newly resolved)."""

    settings = settings or get_settings()
    threshold = settings.scandals.auto_resolve_threshold
    updated: List[ScandalRecord] = []
    resolved: List[ScandalRecord] = []
    for scandal in scandals:
        if scandal.status != ScandalStatus.RESOLVED and calculate_impact(scandal, now, settings) < threshold:
            scandal = replace(scandal, status=ScandalStatus.RESOLVED, resolved_at=now)
            resolved.append(scandal)
        updated.append(scandal)
    return updated, resolved


def scandal_risk(state: CampaignPhaseState, settings: Settings | None = None) -> float:
    scandal_settings = (settings or get_settings()).scandals
    return scandal_settings.risk_base + scandal_settings.risk_per_volatility * state.volatility_modifier


def roll_scandal_risk(state: CampaignPhaseState, check_index: int, settings: Settings | None = None) -> bool:
    """Deterministic check whether a scandal erupts on risk check ``check_index``."""

    seed = compose_seed(state.player_id, state.cycle, "scandal-risk", check_index)
    return hash_chance(seed, scandal_risk(state, settings))


__all__ = [
    "MITIGATION_TABLE",
    "MitigationProfile",
    "SCANDAL_TABLE",
    "ScandalProfile",
    "active_scandals",
    "calculate_impact",
    "contain_scandal",
    "generate_scandal",
    "mitigate_scandal",
    "resolve_scandal",
    "roll_category",
    "roll_scandal_risk",
    "scandal_risk",
    "sweep_scandals",
    "total_penalty",
]
