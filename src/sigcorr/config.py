"""
Engine settings for grouping, anomaly baselines and correlation mining.

Defaults are read from SIGCORR_* environment variables; a YAML file can
overlay them for a given deployment.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict

import yaml


class ConfigError(ValueError):
    """Raised when engine settings are out of range."""


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


@dataclass(frozen=True)
class Settings:
    # Grouping
    grouping_window_minutes: int = 60

    # Synchronous spike check
    spike_multiplier: float = 3.0
    spike_floor_per_hour: float = 10.0

    # Baselines and batch scan
    anomaly_window_hours: int = 24
    seasonal_lookback_days: int = 7
    min_velocity: float = 5.0
    z_score_threshold: float = 3.0
    scan_min_count: int = 5
    scan_limit: int = 100
    scan_page_size: int = 25

    # Historical pair mining
    pair_lookback_hours: int = 24
    pair_window_minutes: float = 5.0
    pair_min_events: int = 10
    pair_min_support: int = 3
    pair_min_confidence: float = 0.5

    # Real-time scorer
    scorer_window_minutes: float = 5.0
    scorer_minimum_score: float = 0.5
    scorer_persist_top: int = 10

    # Scheduler
    job_interval_seconds: int = 3600
    job_max_workers: int = 4

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            grouping_window_minutes=_env_int("SIGCORR_GROUPING_WINDOW_MINUTES", "60"),
            spike_multiplier=_env_float("SIGCORR_SPIKE_MULTIPLIER", "3"),
            spike_floor_per_hour=_env_float("SIGCORR_SPIKE_FLOOR_PER_HOUR", "10"),
            anomaly_window_hours=_env_int("SIGCORR_ANOMALY_WINDOW_HOURS", "24"),
            seasonal_lookback_days=_env_int("SIGCORR_SEASONAL_LOOKBACK_DAYS", "7"),
            min_velocity=_env_float("SIGCORR_MIN_VELOCITY", "5"),
            z_score_threshold=_env_float("SIGCORR_Z_SCORE_THRESHOLD", "3"),
            scan_min_count=_env_int("SIGCORR_SCAN_MIN_COUNT", "5"),
            scan_limit=_env_int("SIGCORR_SCAN_LIMIT", "100"),
            scan_page_size=_env_int("SIGCORR_SCAN_PAGE_SIZE", "25"),
            pair_lookback_hours=_env_int("SIGCORR_PAIR_LOOKBACK_HOURS", "24"),
            pair_window_minutes=_env_float("SIGCORR_PAIR_WINDOW_MINUTES", "5"),
            pair_min_events=_env_int("SIGCORR_PAIR_MIN_EVENTS", "10"),
            pair_min_support=_env_int("SIGCORR_PAIR_MIN_SUPPORT", "3"),
            pair_min_confidence=_env_float("SIGCORR_PAIR_MIN_CONFIDENCE", "0.5"),
            scorer_window_minutes=_env_float("SIGCORR_SCORER_WINDOW_MINUTES", "5"),
            scorer_minimum_score=_env_float("SIGCORR_SCORER_MINIMUM_SCORE", "0.5"),
            scorer_persist_top=_env_int("SIGCORR_SCORER_PERSIST_TOP", "10"),
            job_interval_seconds=_env_int("SIGCORR_JOB_INTERVAL_SECONDS", "3600"),
            job_max_workers=_env_int("SIGCORR_JOB_MAX_WORKERS", "4"),
        )
        settings.validate()
        return settings

    @classmethod
    def from_yaml(cls, path: Path, base: "Settings" | None = None) -> "Settings":
        """Overlay the keys of a YAML mapping on top of ``base`` (env defaults)."""
        with Path(path).open("r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
        if not isinstance(cfg, dict):
            raise ConfigError(f"{path}: expected a mapping at top level")
        section = cfg.get("sigcorr", cfg)
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(section) - known)
        if unknown:
            raise ConfigError(f"{path}: unknown settings {', '.join(unknown)}")
        settings = replace(base or cls.from_env(), **section)
        settings.validate()
        return settings

    def validate(self) -> None:
        positive = (
            "grouping_window_minutes",
            "anomaly_window_hours",
            "seasonal_lookback_days",
            "scan_limit",
            "scan_page_size",
            "pair_lookback_hours",
            "pair_window_minutes",
            "pair_min_support",
            "scorer_window_minutes",
            "job_interval_seconds",
            "job_max_workers",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)!r}")
        for name in ("pair_min_confidence", "scorer_minimum_score"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be within [0, 1], got {value!r}")
        if self.spike_multiplier <= 0 or self.spike_floor_per_hour < 0:
            raise ConfigError("spike_multiplier must be positive and spike_floor_per_hour non-negative")

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def load_settings(path: Path | None = None) -> Settings:
    """Env defaults, optionally overlaid by SIGCORR_CONFIG or an explicit YAML path."""
    cfg_path = path or os.getenv("SIGCORR_CONFIG")
    if cfg_path:
        return Settings.from_yaml(Path(cfg_path))
    return Settings.from_env()
