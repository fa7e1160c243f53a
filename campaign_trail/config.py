"""Configuration loading utilities for the campaign simulation."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml


DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"
DEFAULT_STATE_DB = Path(os.environ.get("CAMPAIGN_TRAIL_STATE_DB", "campaign_trail.db"))
DEFAULT_TELEMETRY_DB = Path(
    os.environ.get("CAMPAIGN_TRAIL_TELEMETRY_DB", "campaign_telemetry.db")
)


@dataclass(frozen=True)
class OfflineBand:
    """Dampening and smoothing applied once a snapshot gap exceeds ``after_hours``."""

    after_hours: float
    dampening: float
    smoothing: float


@dataclass(frozen=True)
class PhaseSettings:
    durations_real_hours: Dict[str, float]
    fundraising_exit_minimum: float

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "PhaseSettings":
        durations = data.get("durations_real_hours", {})
        return PhaseSettings(
            durations_real_hours={
                "announcement": float(durations.get("announcement", 4)),
                "fundraising": float(durations.get("fundraising", 8)),
                "active": float(durations.get("active", 10)),
                "resolution": float(durations.get("resolution", 4)),
            },
            fundraising_exit_minimum=float(data.get("fundraising_exit_minimum", 500_000)),
        )


@dataclass(frozen=True)
class PollingSettings:
    interval_minutes: float
    sample_size_min: int
    sample_size_max: int
    max_shift_percent: float
    moe_baseline: float
    moe_reference_sample: int
    moe_minimum: float
    reputation_weight: float
    endorsement_points: float
    endorsement_cap: float
    funds_points_per_100k: float
    funds_cap: float
    scandal_points: float
    offline_bands: Tuple[OfflineBand, ...]
    default_smoothing: float
    trend_threshold: float

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "PollingSettings":
        sample = data.get("sample_size", {})
        moe = data.get("margin_of_error", {})
        base = data.get("base_support", {})
        bands = sorted(
            (
                OfflineBand(
                    after_hours=float(entry["after_hours"]),
                    dampening=float(entry["dampening"]),
                    smoothing=float(entry["smoothing"]),
                )
                for entry in data.get("offline", [])
            ),
            key=lambda band: band.after_hours,
            reverse=True,
        )
        return PollingSettings(
            interval_minutes=float(data.get("interval_minutes", 25)),
            sample_size_min=int(sample.get("min", 800)),
            sample_size_max=int(sample.get("max", 3000)),
            max_shift_percent=float(data.get("max_shift_percent", 5.0)),
            moe_baseline=float(moe.get("baseline", 4.0)),
            moe_reference_sample=int(moe.get("reference_sample", 1000)),
            moe_minimum=float(moe.get("minimum", 1.5)),
            reputation_weight=float(base.get("reputation_weight", 0.6)),
            endorsement_points=float(base.get("endorsement_points", 3.0)),
            endorsement_cap=float(base.get("endorsement_cap", 15.0)),
            funds_points_per_100k=float(base.get("funds_points_per_100k", 5.0)),
            funds_cap=float(base.get("funds_cap", 10.0)),
            scandal_points=float(base.get("scandal_points", 2.0)),
            offline_bands=tuple(bands),
            default_smoothing=float(data.get("default_smoothing", 0.3)),
            trend_threshold=float(data.get("trend_threshold", 0.5)),
        )


@dataclass(frozen=True)
class ScandalSettings:
    base_recovery_per_hour: float
    max_recovery_per_hour: float
    reputation_hit_per_severity: float
    containment_multiplier: float
    resolution_threshold: float
    auto_resolve_threshold: float
    risk_base: float
    risk_per_volatility: float

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ScandalSettings":
        return ScandalSettings(
            base_recovery_per_hour=float(data.get("base_recovery_per_hour", 0.8)),
            max_recovery_per_hour=float(data.get("max_recovery_per_hour", 3.0)),
            reputation_hit_per_severity=float(data.get("reputation_hit_per_severity", 20.0)),
            containment_multiplier=float(data.get("containment_multiplier", 1.5)),
            resolution_threshold=float(data.get("resolution_threshold", 2.0)),
            auto_resolve_threshold=float(data.get("auto_resolve_threshold", 1.0)),
            risk_base=float(data.get("risk_base", 0.05)),
            risk_per_volatility=float(data.get("risk_per_volatility", 0.1)),
        )


@dataclass(frozen=True)
class OppositionSettings:
    repeat_penalty_per_attempt: float
    repeat_penalty_cap: float
    spend_min: float
    spend_max: float
    proximity_min: float
    proximity_max: float

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "OppositionSettings":
        proximity = data.get("proximity_range", [0.5, 1.5])
        return OppositionSettings(
            repeat_penalty_per_attempt=float(data.get("repeat_penalty_per_attempt", 0.15)),
            repeat_penalty_cap=float(data.get("repeat_penalty_cap", 0.6)),
            spend_min=float(data.get("spend_min", 10_000)),
            spend_max=float(data.get("spend_max", 250_000)),
            proximity_min=float(proximity[0]),
            proximity_max=float(proximity[1]),
        )


@dataclass(frozen=True)
class NegativeAdSettings:
    baseline_effectiveness: float
    spend_min: float
    spend_max: float
    trailing_window_game_hours: float
    repeat_penalty_per_ad: float
    repeat_penalty_cap: float
    extreme_penalty: float
    credibility_reference: float
    credibility_weight: float
    fatigue_per_ad: float
    fatigue_cap: float
    fatigue_decay_game_hours: float
    backfire: Dict[str, float]
    impact: Dict[str, float]
    counter_max_reduction: float
    counter_spend_scale: float

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "NegativeAdSettings":
        backfire = {
            "credibility_weight": 0.3,
            "ethics_weight": 0.3,
            "extreme_bonus": 0.15,
            "cap": 0.5,
            "default_credibility": 40.0,
        }
        backfire.update({k: float(v) for k, v in data.get("backfire", {}).items()})
        impact = {
            "target_loss_ratio": 0.1,
            "target_loss_cap": 10.0,
            "attacker_cost_ratio": 0.1,
            "backfire_target_gain_ratio": 0.03,
            "backfire_target_gain_cap": 3.0,
            "backfire_attacker_loss_ratio": 0.12,
            "backfire_attacker_loss_cap": 10.0,
        }
        impact.update({k: float(v) for k, v in data.get("impact", {}).items()})
        counter = data.get("counter", {})
        return NegativeAdSettings(
            baseline_effectiveness=float(data.get("baseline_effectiveness", 30.0)),
            spend_min=float(data.get("spend_min", 5_000)),
            spend_max=float(data.get("spend_max", 500_000)),
            trailing_window_game_hours=float(data.get("trailing_window_game_hours", 168)),
            repeat_penalty_per_ad=float(data.get("repeat_penalty_per_ad", 5.0)),
            repeat_penalty_cap=float(data.get("repeat_penalty_cap", 40.0)),
            extreme_penalty=float(data.get("extreme_penalty", 15.0)),
            credibility_reference=float(data.get("credibility_reference", 70.0)),
            credibility_weight=float(data.get("credibility_weight", 0.5)),
            fatigue_per_ad=float(data.get("fatigue_per_ad", 0.1)),
            fatigue_cap=float(data.get("fatigue_cap", 0.6)),
            fatigue_decay_game_hours=float(data.get("fatigue_decay_game_hours", 168)),
            backfire=backfire,
            impact=impact,
            counter_max_reduction=float(counter.get("max_reduction", 0.8)),
            counter_spend_scale=float(counter.get("spend_scale", 50_000)),
        )


@dataclass(frozen=True)
class BalanceSettings:
    frontrunner_threshold: float = 15.0
    frontrunner_penalty_per_point: float = 0.03
    underdog_threshold: float = 10.0
    underdog_buff_per_point: float = 0.05
    underdog_buff_cap: float = 3.0
    systemic_cap: float = 60.0
    systemic_retention: float = 0.2
    probability_floor: float = 0.01
    probability_ceiling: float = 0.99
    frontrunner_probability_cap: float = 0.1

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BalanceSettings":
        return BalanceSettings(**{key: float(value) for key, value in data.items()})


@dataclass(frozen=True)
class FairnessSettings:
    level_minimums: Dict[int, float]
    retention_factor: float
    divergence_warning: float
    divergence_major: float

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "FairnessSettings":
        minimums = data.get("level_minimums", {1: 5, 2: 15, 3: 30, 4: 50, 5: 75})
        return FairnessSettings(
            level_minimums={int(k): float(v) for k, v in minimums.items()},
            retention_factor=float(data.get("retention_factor", 0.85)),
            divergence_warning=float(data.get("divergence_warning", 0.10)),
            divergence_major=float(data.get("divergence_major", 0.25)),
        )


@dataclass(frozen=True)
class InfluenceSettings:
    min_donation: float
    donation_weight: float
    level_multipliers: Dict[int, float]
    state_weight: float
    proximity_window_game_hours: float
    proximity_max_bonus: float
    reputation_max_bonus: float
    soft_cap_target: float
    jitter: float

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "InfluenceSettings":
        multipliers = data.get("level_multipliers", {1: 1.0, 2: 1.1, 3: 1.25, 4: 1.4, 5: 1.6})
        return InfluenceSettings(
            min_donation=float(data.get("min_donation", 1000)),
            donation_weight=float(data.get("donation_weight", 12.0)),
            level_multipliers={int(k): float(v) for k, v in multipliers.items()},
            state_weight=float(data.get("state_weight", 20.0)),
            proximity_window_game_hours=float(data.get("proximity_window_game_hours", 720)),
            proximity_max_bonus=float(data.get("proximity_max_bonus", 15.0)),
            reputation_max_bonus=float(data.get("reputation_max_bonus", 20.0)),
            soft_cap_target=float(data.get("soft_cap_target", 100.0)),
            jitter=float(data.get("jitter", 2.0)),
        )


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    phases: PhaseSettings
    default_reputation: float
    spi_fundraising_drag: float
    es_mitigation_drag: float
    polling: PollingSettings
    diminishing_factors: List[float]
    scandals: ScandalSettings
    opposition: OppositionSettings
    negative_ads: NegativeAdSettings
    balance: BalanceSettings
    fairness: FairnessSettings
    influence: InfluenceSettings

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        environment = data.get("environment", {})
        endorsements = data.get("endorsements", {})
        return Settings(
            phases=PhaseSettings.from_dict(data.get("phases", {})),
            default_reputation=float(environment.get("default_reputation", 50.0)),
            spi_fundraising_drag=float(environment.get("spi_fundraising_drag", 0.5)),
            es_mitigation_drag=float(environment.get("es_mitigation_drag", 0.3)),
            polling=PollingSettings.from_dict(data.get("polling", {})),
            diminishing_factors=[
                float(value)
                for value in endorsements.get("diminishing_factors", [1.0, 0.8, 0.6, 0.4])
            ],
            scandals=ScandalSettings.from_dict(data.get("scandals", {})),
            opposition=OppositionSettings.from_dict(data.get("opposition", {})),
            negative_ads=NegativeAdSettings.from_dict(data.get("negative_ads", {})),
            balance=BalanceSettings.from_dict(data.get("balance", {})),
            fairness=FairnessSettings.from_dict(data.get("fairness", {})),
            influence=InfluenceSettings.from_dict(data.get("influence", {})),
        )


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH
        self._cache: Optional[Settings] = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        self._cache = Settings.from_dict(data)
        return self._cache


_default_loader = SettingsLoader()


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return _default_loader.load()


__all__ = [
    "DEFAULT_SETTINGS_PATH",
    "DEFAULT_STATE_DB",
    "DEFAULT_TELEMETRY_DB",
    "OfflineBand",
    "Settings",
    "SettingsLoader",
    "get_settings",
]
