"""Competitive balance: frontrunner penalties, underdog buffs and the systemic cap."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Mapping, Optional

from .config import Settings, get_settings
from .exceptions import RecordNotFound, ValidationError


@dataclass(frozen=True)
class BalanceAdjustment:
    player_id: str
    raw_polling: float
    adjusted_polling: float
    leader_id: str
    margin: float
    is_frontrunner: bool = False
    is_underdog: bool = False
    cost_multiplier: float = 1.0
    underdog_buff: float = 0.0
    runner_up_id: Optional[str] = None


def apply_systemic_cap(value: float, settings: Settings | None = None) -> float:
    """Compress support above the cap, keeping only a fraction of the excess."""

    balance = (settings or get_settings()).balance
    if value <= balance.systemic_cap:
        return value
    return balance.systemic_cap + (value - balance.systemic_cap) * balance.systemic_retention


def compute_balance_adjustment(
    player_id: str, pollings: Mapping[str, float], settings: Settings | None = None
) -> BalanceAdjustment:
    """Adjust ``player_id``'s polling against the rest of the field.

    ``margin`` is the lead over the runner-up for the leader and the gap to the
    leader for everyone else.
    """

    if player_id not in pollings:
        raise RecordNotFound(f"No polling value for player {player_id}")
    balance = (settings or get_settings()).balance
    ranking = sorted(pollings.items(), key=lambda item: (-item[1], item[0]))
    leader_id, leader_value = ranking[0]
    value = pollings[player_id]

    if leader_id == player_id:
        runner_up_id = ranking[1][0] if len(ranking) > 1 else None
        lead = value - ranking[1][1] if len(ranking) > 1 else 0.0
        frontrunner = lead > balance.frontrunner_threshold
        multiplier = 1.0 + lead * balance.frontrunner_penalty_per_point if frontrunner else 1.0
        return BalanceAdjustment(
            player_id=player_id,
            raw_polling=value,
            adjusted_polling=round(apply_systemic_cap(value, settings), 4),
            leader_id=leader_id,
            runner_up_id=runner_up_id,
            margin=lead,
            is_frontrunner=frontrunner,
            cost_multiplier=round(multiplier, 4),
        )

    gap = leader_value - value
    underdog = gap > balance.underdog_threshold
    buff = min(gap * balance.underdog_buff_per_point, balance.underdog_buff_cap) if underdog else 0.0
    adjusted = min(100.0, apply_systemic_cap(value, settings) + buff)
    return BalanceAdjustment(
        player_id=player_id,
        raw_polling=value,
        adjusted_polling=round(adjusted, 4),
        leader_id=leader_id,
        margin=gap,
        is_underdog=underdog,
        underdog_buff=round(buff, 4),
    )


def fair_probability(
    base_probability: float, adjustment: BalanceAdjustment, settings: Settings | None = None
) -> float:
    """Blend a base probability with adjusted polling; never 0 or 1."""

    if not math.isfinite(base_probability):
        raise ValidationError("base_probability must be a finite number")
    balance = (settings or get_settings()).balance
    probability = 0.5 * base_probability + 0.5 * adjustment.adjusted_polling / 100.0
    if adjustment.is_underdog:
        probability += adjustment.underdog_buff / 100.0
    if adjustment.is_frontrunner:
        probability -= min(
            balance.frontrunner_probability_cap, (adjustment.cost_multiplier - 1.0) * 0.1
        )
    return max(balance.probability_floor, min(balance.probability_ceiling, probability))


def adjusted_cost(base_cost: float, adjustment: BalanceAdjustment) -> float:
    return base_cost * adjustment.cost_multiplier


__all__ = [
    "BalanceAdjustment",
    "adjusted_cost",
    "apply_systemic_cap",
    "compute_balance_adjustment",
    "fair_probability",
]
