"""Immutable shield configuration.

Every component receives its policy object at construction. Nothing reads
module-level tunables at runtime.

Environment variables (all optional, see ShieldConfig.from_env):
- SHIELD_INITIAL_THRESHOLD: starting adaptive threshold (default 0.60).
- SHIELD_STANDBY_CONFIDENCE: confidence that halts regardless of trap streak.
- SHIELD_STATE_BACKEND: json | sqlite | memory.
- SHIELD_STATE_PATH: path of the persisted shield state.
- SHIELD_LEDGER_PATH: optional JSONL sink for the audit ledger.
- SHIELD_MAX_STATE_AGE_DAYS: persisted state older than this is discarded.
- SHIELD_PERSIST_ASYNC: if '0', persistence writes happen inline.
- SHIELD_STATS_INTERVAL_SECONDS: background stats recompute period.
- SHIELD_DB_FAILURE_THRESHOLD: persistence failures before writes are suspended.
- SHIELD_DB_LOCKDOWN_SECONDS: how long writes stay suspended.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, asdict, fields
from typing import Any, Dict, List, Optional

from .errors import SHIELD_E_CONFIG, shield_error


@dataclass(frozen=True)
class FrequencyPolicy:
    min_samples: int = 15
    chi_square_critical: float = 3.84
    runs_z_critical: float = 1.96
    max_run_length: int = 7
    min_cycle_lag: int = 2
    max_cycle_lag: int = 15
    cycle_match_fraction: float = 0.60
    min_entropy: float = 0.75
    tail_pattern_length: int = 10
    min_history_for_repeat: int = 20
    weight_chi_square: float = 0.20
    weight_runs: float = 0.25
    weight_cycles: float = 0.25
    weight_entropy: float = 0.15
    weight_repeat: float = 0.15
    trigger_score: float = 0.60


@dataclass(frozen=True)
class TempoPolicy:
    max_timestamps: int = 30
    max_intervals: int = 20
    window: int = 10
    min_intervals: int = 5
    robotic_cv: float = 0.15
    robotic_min_mean_ms: float = 500.0
    erratic_fraction: float = 0.60
    too_fast_ms: float = 200.0
    weight_robotic: float = 0.5
    weight_erratic: float = 0.3
    weight_too_fast: float = 0.2
    trigger_score: float = 0.5


@dataclass(frozen=True)
class MicrostructurePolicy:
    max_trades: int = 50
    max_trap_patterns: int = 20
    window: int = 10
    min_completed: int = 5
    big_stake: float = 20.0
    trap_rate: float = 0.60
    big_trap_rate: float = 0.70
    recent_window: int = 5
    recent_traps: int = 4
    bait_ratio: float = 1.5
    consecutive_traps: int = 3
    obi_signal: float = 0.3
    weight_trap_rate: float = 0.30
    weight_big_trap_rate: float = 0.25
    weight_recent_traps: float = 0.25
    weight_bait: float = 0.15
    weight_consecutive: float = 0.15
    trigger_score: float = 0.60


@dataclass(frozen=True)
class ContextualPolicy:
    window: int = 10
    min_history: int = 20
    reference_n: int = 20
    expected_frequency: float = 0.5
    frequency_std: float = 0.11
    max_run_scale: float = 2.0
    expected_volatility: float = 0.5
    volatility_std: float = 0.2
    trigger_z: float = 2.0
    max_trap_features: int = 200
    max_normal_features: int = 500


@dataclass(frozen=True)
class ThresholdPolicy:
    initial: float = 0.60
    floor: float = 0.45
    ceiling: float = 0.75
    base: float = 0.50
    span: float = 0.20
    history_size: int = 20
    recent_window: int = 10
    min_history: int = 5
    default_success_rate: float = 0.5
    reset_bump: float = 0.05


@dataclass(frozen=True)
class StandbyPolicy:
    standby_consecutive_traps: int = 2
    standby_confidence: float = 0.80
    invert_min_success_rate: float = 0.55
    invert_max_consecutive_traps: int = 2
    history_size: int = 10
    status_history: int = 5
    recovery_window_seconds: float = 30.0
    sequence_capacity: int = 40


@dataclass(frozen=True)
class PersistencePolicy:
    backend: str = "memory"
    state_path: str = "shield_state.json"
    ledger_path: Optional[str] = None
    ledger_max_records: int = 10_000
    max_state_age_days: float = 7.0
    persist_async: bool = True
    stats_interval_seconds: float = 5.0
    failure_threshold: int = 3
    lockdown_seconds: int = 30


@dataclass(frozen=True)
class ShieldConfig:
    """Top-level configuration value passed to every shield component."""

    frequency: FrequencyPolicy = field(default_factory=FrequencyPolicy)
    tempo: TempoPolicy = field(default_factory=TempoPolicy)
    microstructure: MicrostructurePolicy = field(default_factory=MicrostructurePolicy)
    contextual: ContextualPolicy = field(default_factory=ContextualPolicy)
    threshold: ThresholdPolicy = field(default_factory=ThresholdPolicy)
    standby: StandbyPolicy = field(default_factory=StandbyPolicy)
    persistence: PersistencePolicy = field(default_factory=PersistencePolicy)

    def validate(self) -> List[str]:
        errors: List[str] = []
        t = self.threshold
        if not (0.0 <= t.floor <= t.ceiling <= 1.0):
            errors.append("ThresholdPolicy: require 0 <= floor <= ceiling <= 1")
        if not (t.floor <= t.initial <= t.ceiling):
            errors.append("ThresholdPolicy: initial must lie within [floor, ceiling]")
        if t.recent_window < 1 or t.history_size < t.recent_window:
            errors.append("ThresholdPolicy: history_size must be >= recent_window >= 1")
        if self.frequency.min_samples < 2:
            errors.append("FrequencyPolicy: min_samples must be >= 2")
        if self.frequency.min_cycle_lag < 1:
            errors.append("FrequencyPolicy: min_cycle_lag must be >= 1")
        if self.tempo.min_intervals < 2:
            errors.append("TempoPolicy: min_intervals must be >= 2")
        if self.microstructure.min_completed < 1:
            errors.append("MicrostructurePolicy: min_completed must be >= 1")
        if self.contextual.frequency_std <= 0 or self.contextual.volatility_std <= 0:
            errors.append("ContextualPolicy: standard deviations must be positive")
        s = self.standby
        if s.standby_consecutive_traps < 1 or s.invert_max_consecutive_traps < 1:
            errors.append("StandbyPolicy: trap cutoffs must be >= 1")
        if not (0.0 < s.standby_confidence <= 1.0):
            errors.append("StandbyPolicy: standby_confidence must be in (0, 1]")
        if s.sequence_capacity < self.frequency.min_samples:
            errors.append("StandbyPolicy: sequence_capacity must hold at least FrequencyPolicy.min_samples outcomes")
        p = self.persistence
        if p.backend not in ("memory", "json", "sqlite"):
            errors.append(f"PersistencePolicy: unsupported backend {p.backend!r}")
        if p.ledger_max_records < 1:
            errors.append("PersistencePolicy: ledger_max_records must be >= 1")
        if p.max_state_age_days <= 0:
            errors.append("PersistencePolicy: max_state_age_days must be positive")
        return errors

    def raise_if_invalid(self) -> None:
        errs = self.validate()
        if errs:
            raise shield_error(SHIELD_E_CONFIG, "Invalid ShieldConfig: " + "; ".join(errs), errors=errs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShieldConfig":
        """Build from a nested dict (e.g. a JSON config file). Unknown keys are rejected."""
        sections = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for name, value in (data or {}).items():
            if name not in sections:
                raise shield_error(SHIELD_E_CONFIG, f"Unknown config section: {name!r}")
            if not isinstance(value, dict):
                raise shield_error(SHIELD_E_CONFIG, f"Config section {name!r} must be an object")
            policy_cls = type(getattr(cls(), name))
            known = {f.name for f in fields(policy_cls)}
            unknown = set(value) - known
            if unknown:
                raise shield_error(
                    SHIELD_E_CONFIG,
                    f"Unknown keys in config section {name!r}: {sorted(unknown)}",
                )
            kwargs[name] = policy_cls(**value)
        return cls(**kwargs)

    @classmethod
    def from_env(cls, base: Optional["ShieldConfig"] = None) -> "ShieldConfig":
        base = base or cls()

        def _get_int(name: str, default: int) -> int:
            try:
                return int(os.getenv(name, str(default)).strip())
            except Exception:
                return default

        def _get_float(name: str, default: float) -> float:
            try:
                return float(os.getenv(name, str(default)).strip())
            except Exception:
                return default

        initial = _get_float("SHIELD_INITIAL_THRESHOLD", base.threshold.initial)
        standby_conf = _get_float("SHIELD_STANDBY_CONFIDENCE", base.standby.standby_confidence)
        backend = (os.getenv("SHIELD_STATE_BACKEND", base.persistence.backend) or "memory").strip().lower()
        state_path = (os.getenv("SHIELD_STATE_PATH", "") or "").strip() or base.persistence.state_path
        ledger_path = (os.getenv("SHIELD_LEDGER_PATH", "") or "").strip() or base.persistence.ledger_path
        max_age = _get_float("SHIELD_MAX_STATE_AGE_DAYS", base.persistence.max_state_age_days)
        interval = _get_float("SHIELD_STATS_INTERVAL_SECONDS", base.persistence.stats_interval_seconds)
        failures = _get_int("SHIELD_DB_FAILURE_THRESHOLD", base.persistence.failure_threshold)
        lockdown = _get_int("SHIELD_DB_LOCKDOWN_SECONDS", base.persistence.lockdown_seconds)
        persist_async_raw = os.getenv("SHIELD_PERSIST_ASYNC")
        if persist_async_raw is None:
            persist_async = base.persistence.persist_async
        else:
            persist_async = persist_async_raw.strip() not in ("0", "false", "False", "no")

        # Clamp
        t = base.threshold
        initial = max(t.floor, min(t.ceiling, initial))
        if not (0.0 < standby_conf <= 1.0):
            standby_conf = base.standby.standby_confidence
        if max_age <= 0:
            max_age = base.persistence.max_state_age_days
        if interval <= 0:
            interval = base.persistence.stats_interval_seconds
        if failures < 1:
            failures = 1
        if lockdown < 1:
            lockdown = 1

        return cls(
            frequency=base.frequency,
            tempo=base.tempo,
            microstructure=base.microstructure,
            contextual=base.contextual,
            threshold=ThresholdPolicy(**{**asdict(t), "initial": initial}),
            standby=StandbyPolicy(**{**asdict(base.standby), "standby_confidence": standby_conf}),
            persistence=PersistencePolicy(
                backend=backend,
                state_path=state_path,
                ledger_path=ledger_path,
                ledger_max_records=base.persistence.ledger_max_records,
                max_state_age_days=max_age,
                persist_async=persist_async,
                stats_interval_seconds=interval,
                failure_threshold=failures,
                lockdown_seconds=lockdown,
            ),
        )
