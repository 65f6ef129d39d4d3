"""Shield facade.

Wires the outcome sequence, the four detectors, the voting aggregator, the
adaptive threshold, the state machine, the audit ledger and persistence into
a single object with the public API:

    shield = Shield(ShieldConfig.from_env())
    decision = shield.check("A", context={"momentum": 0.2})
    ...
    shield.record_outcome("B")
    shield.learn(original="A", actual="B", was_inverted=decision.was_inverted)

One re-entrant lock serializes every mutating call and the snapshot handed to
persistence. Persistence I/O runs on a background writer (unless
`persist_async` is off), so decisions never wait on storage.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional

from .aggregator import VotingAggregator
from .config import ShieldConfig
from .detectors import (
    ContextualFeatureDetector,
    FrequencyAnomalyDetector,
    MicrostructureBiasDetector,
    TempoAnomalyDetector,
    parse_stake,
)
from .errors import validation_error
from .ledger import AuditLedger
from .ops_stats import OpsStats
from .persistence import PersistenceBackend, PersistenceGateway, PersistenceWriter, make_backend
from .scheduler import StatsScheduler
from .sequence import OutcomeEvent, OutcomeSequence, parse_direction, parse_optional_direction, values_of
from .state_machine import EnsembleDecision, ResetResult, ShieldStateMachine
from .threshold import AdaptiveThresholdController

# ---------------------------
# Logging Configuration
# ---------------------------

logger = logging.getLogger("shield_gateway")
logger.setLevel(logging.INFO)

# Default handler (can be overridden by users)
if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%SZ"
    ))
    logger.addHandler(_handler)


def _parse_context(context: Any) -> Dict[str, Any]:
    if context is None:
        return {}
    if not isinstance(context, Mapping):
        raise validation_error("context must be an object", field="context", value=type(context).__name__)
    return dict(context)


def _parse_flag(value: Any, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    raise validation_error(f"{field_name} must be a boolean", field=field_name, value=repr(value))


class Shield:
    """Decision gate over the client's candidate actions."""

    def __init__(
        self,
        config: Optional[ShieldConfig] = None,
        *,
        backend: Optional[PersistenceBackend] = None,
        ledger: Optional[AuditLedger] = None,
        clock: Callable[[], float] = time.time,
        ops_stats: Optional[OpsStats] = None,
        start_scheduler: bool = False,
    ):
        self.config = config or ShieldConfig()
        self.config.raise_if_invalid()
        cfg = self.config

        self._clock = clock
        self._lock = threading.RLock()
        self.ops_stats = ops_stats or OpsStats()

        self.sequence = OutcomeSequence(cfg.standby.sequence_capacity)
        self.frequency = FrequencyAnomalyDetector(cfg.frequency)
        self.tempo = TempoAnomalyDetector(cfg.tempo)
        self.microstructure = MicrostructureBiasDetector(cfg.microstructure)
        self.contextual = ContextualFeatureDetector(cfg.contextual)
        self.aggregator = VotingAggregator(
            [self.contextual, self.frequency, self.tempo, self.microstructure],
            ops_stats=self.ops_stats,
        )
        self.threshold = AdaptiveThresholdController(cfg.threshold)
        if ledger is None:
            ledger = AuditLedger(
                cfg.persistence.ledger_path,
                clock_ms=self._now_ms,
                max_records=cfg.persistence.ledger_max_records,
            )
        self.ledger = ledger
        self.machine = ShieldStateMachine(
            self.aggregator,
            self.threshold,
            self.ledger,
            cfg.standby,
            ops_stats=self.ops_stats,
            clock_ms=self._now_ms,
        )

        self.persistence = PersistenceGateway(
            backend if backend is not None else make_backend(cfg.persistence),
            cfg.persistence,
            ops_stats=self.ops_stats,
            clock_ms=self._now_ms,
        )
        self._writer: Optional[PersistenceWriter] = (
            PersistenceWriter(self.persistence) if cfg.persistence.persist_async else None
        )
        self._last_save_ms: Optional[int] = None

        self.scheduler = StatsScheduler(
            self.tempo,
            self.microstructure,
            cfg.persistence.stats_interval_seconds,
            clock_ms=self._now_ms,
        )
        self._restore()
        if start_scheduler:
            self.scheduler.start()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ---------------------------
    # Persistence
    # ---------------------------

    def _restore(self) -> None:
        record = self.persistence.load()
        if record is None:
            logger.info("Shield initialized with fresh state (threshold %.3f)", self.threshold.threshold)
            return
        try:
            restored = self.frequency.restore_patterns(record.get("learnedPatterns") or [])
            self.machine.restore(record)
        except (TypeError, ValueError, AttributeError) as e:
            self.frequency.reset()
            self.persistence.record_unusable(e)
            logger.info("Shield initialized with fresh state (threshold %.3f)", self.threshold.threshold)
            return
        self.ledger.append(
            {
                "event": "state_restored",
                "mode": self.machine.state.mode.value,
                "adaptive_threshold": self.threshold.threshold,
                "learned_patterns": restored,
            }
        )

    def _persist(self) -> None:
        record = self.machine.to_record(self.frequency.export_patterns(), self._now_ms())
        self._last_save_ms = record["timestamp"]
        if self._writer is not None:
            self._writer.submit(record)
        else:
            self.persistence.save(record)

    def flush(self, timeout: Optional[float] = None) -> bool:
        if self._writer is None:
            return True
        return self._writer.flush(timeout)

    def close(self) -> None:
        self.scheduler.stop()
        if self._writer is not None:
            self._writer.flush(5.0)
            self._writer.close()

    def __enter__(self) -> "Shield":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ---------------------------
    # Decision path
    # ---------------------------

    def check(self, candidate: Any, context: Optional[Mapping[str, Any]] = None) -> EnsembleDecision:
        direction = parse_direction(candidate, "candidate")
        ctx = _parse_context(context)
        with self._lock:
            was_standby = self.machine.state.is_standby
            if not was_standby:
                self.tempo.record_action(self._now_ms())
            decision = self.machine.decide(direction, self.sequence.snapshot(), ctx)
            if not was_standby:
                self._persist()
            return decision

    def learn(self, original: Any, actual: Any, was_inverted: Any = False) -> None:
        orig = parse_direction(original, "original")
        act = parse_direction(actual, "actual")
        inverted = _parse_flag(was_inverted, "was_inverted")
        with self._lock:
            if self.machine.state.is_standby:
                logger.info("Learning skipped while in STANDBY")
                return
            was_trap = orig != act
            seq = self.sequence.snapshot()
            self.frequency.learn(seq, was_trap)
            self.microstructure.record_result(act, inverted, values_of(seq[-5:]))
            if inverted:
                # The inversion succeeded exactly when the original call would have lost.
                self.machine.record_inversion_outcome(orig != act)
            if len(seq) >= self.contextual.policy.window:
                self.contextual.label(seq[-self.contextual.policy.window:], was_trap)
            self.ledger.append(
                {
                    "event": "learn",
                    "original": orig.value,
                    "actual": act.value,
                    "was_inverted": inverted,
                    "adaptive_threshold": self.threshold.threshold,
                },
                timestamp_ms=self._now_ms(),
            )
            self._persist()

    def record_trade(self, direction: Any, stake: Any) -> None:
        d = parse_direction(direction)
        amount = parse_stake(stake)
        with self._lock:
            if self.machine.state.is_standby:
                logger.info("Trade ignored while in STANDBY")
                return
            self.microstructure.record_trade(d, amount, self._now_ms())

    def record_outcome(
        self,
        value: Any,
        predicted_value: Any = None,
        timestamp_ms: Optional[int] = None,
    ) -> OutcomeEvent:
        v = parse_direction(value, "value")
        pred = parse_optional_direction(predicted_value, "predicted_value")
        if timestamp_ms is not None and (isinstance(timestamp_ms, bool) or not isinstance(timestamp_ms, int)):
            raise validation_error("timestamp_ms must be an integer", field="timestamp_ms")
        with self._lock:
            event = OutcomeEvent(v, pred, self._now_ms() if timestamp_ms is None else timestamp_ms)
            self.sequence.append(event)
            return event

    # ---------------------------
    # Lifecycle
    # ---------------------------

    def manual_reset(self, confirmed: bool = False) -> ResetResult:
        with self._lock:
            result = self.machine.manual_reset(confirmed is True)
            if result.success:
                self._persist()
            return result

    def reset(self) -> None:
        """Reinitialize everything in place and clear persisted state."""
        with self._lock:
            self.machine.reset()
            self.sequence.clear()
            for det in (self.frequency, self.tempo, self.microstructure, self.contextual):
                det.reset()
            if self._writer is not None and not self._writer.flush(5.0):
                logger.warning("Pending state write did not finish before reset")
            self.persistence.clear()
            self._last_save_ms = None

    # ---------------------------
    # Read models
    # ---------------------------

    @property
    def is_standby(self) -> bool:
        return self.machine.state.is_standby

    @property
    def adaptive_threshold(self) -> float:
        return self.threshold.threshold

    def get_standby_status(self) -> Dict[str, Any]:
        with self._lock:
            return self.machine.standby_status()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            st = self.machine.state
            lifetime = self.threshold.lifetime_success_rate()
            derived = self.scheduler.latest() if self.scheduler.running else self.scheduler.run_once()
            return {
                "mode": st.mode.value,
                "is_standby": st.is_standby,
                "adaptive_threshold": self.threshold.threshold,
                "consecutive_trap_count": st.consecutive_trap_count,
                "totals": {
                    "checks": st.totals.checks,
                    "traps_detected": st.totals.traps_detected,
                    "inversions": st.totals.inversions,
                    "successful_inversions": st.totals.successful_inversions,
                },
                "inversion_success_rate": lifetime if lifetime is not None else 0.0,
                "inversion_history_length": len(self.threshold.history),
                "recovery_active": self.machine.recovery_active(),
                "standby_count": len(st.standby_history),
                "last_standby_reason": st.standby_history[-1].reason if st.standby_history else None,
                "sequence_length": len(self.sequence),
                "learned_patterns": len(self.frequency.learned_patterns),
                "ledger_records": self.ledger.total_records,
                "last_save_ms": self._last_save_ms,
                "your_bias": derived["obi"]["signal"],
                "your_imbalance": derived["obi"]["obi"],
                "tempo_status": derived["tempo_status"],
                "imbalance_trend": derived["imbalance_trend"],
                "ops": self.ops_stats.snapshot(),
            }

    def verify_ledger(self) -> bool:
        """Verify the in-memory tail and, with a file sink, the full chain on disk."""
        if not self.ledger.verify():
            return False
        if self.ledger.path:
            ok, reason, count = AuditLedger.verify_file(self.ledger.path)
            if not ok:
                logger.error("Ledger file %s failed verification: %s at record %d", self.ledger.path, reason, count)
            return ok
        return True
