"""Decision logic and the ACTIVE / STANDBY lifecycle.

ShieldStateMachine turns an aggregate vote into one of PROCEED / INVERT /
BLOCK / STANDBY, owns the consecutive-trap counter and the standby trigger,
and writes every decision and transition to the audit ledger.

Not thread-safe on its own: the Shield facade serializes all calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from . import metrics
from .aggregator import AggregateResult, VotingAggregator
from .config import StandbyPolicy
from .ledger import AuditLedger
from .ops_stats import OpsStats
from .persistence import SCHEMA_VERSION
from .sequence import Direction, OutcomeEvent, now_ms
from .threshold import AdaptiveThresholdController

logger = logging.getLogger("shield_gateway.state_machine")


class Mode(str, Enum):
    ACTIVE = "ACTIVE"
    STANDBY = "STANDBY"


class Recommendation(str, Enum):
    PROCEED = "PROCEED"
    INVERT = "INVERT"
    BLOCK = "BLOCK"
    STANDBY = "STANDBY"


@dataclass
class ShieldTotals:
    checks: int = 0
    traps_detected: int = 0
    inversions: int = 0
    successful_inversions: int = 0

    def to_record(self) -> Dict[str, int]:
        return {
            "checks": self.checks,
            "trapsDetected": self.traps_detected,
            "inversions": self.inversions,
            "successfulInversions": self.successful_inversions,
        }

    @classmethod
    def from_record(cls, d: Mapping[str, Any]) -> "ShieldTotals":
        return cls(
            checks=max(0, int(d.get("checks", 0) or 0)),
            traps_detected=max(0, int(d.get("trapsDetected", 0) or 0)),
            inversions=max(0, int(d.get("inversions", 0) or 0)),
            successful_inversions=max(0, int(d.get("successfulInversions", 0) or 0)),
        )


@dataclass(frozen=True)
class StandbyTrigger:
    reason: str
    confidence: float
    votes: Dict[str, bool]
    consecutive_trap_count: int
    threshold: float
    timestamp_ms: int

    def to_record(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "confidence": self.confidence,
            "votes": dict(self.votes),
            "consecutiveTrapCount": self.consecutive_trap_count,
            "threshold": self.threshold,
            "timestamp": self.timestamp_ms,
        }

    @classmethod
    def from_record(cls, d: Mapping[str, Any]) -> "StandbyTrigger":
        votes = d.get("votes") if isinstance(d.get("votes"), dict) else {}
        return cls(
            reason=str(d.get("reason") or "unknown"),
            confidence=float(d.get("confidence", 0.0) or 0.0),
            votes={str(k): bool(v) for k, v in votes.items()},
            consecutive_trap_count=int(d.get("consecutiveTrapCount", 0) or 0),
            threshold=float(d.get("threshold", 0.0) or 0.0),
            timestamp_ms=int(d.get("timestamp", 0) or 0),
        )


@dataclass
class ShieldState:
    mode: Mode = Mode.ACTIVE
    consecutive_trap_count: int = 0
    totals: ShieldTotals = field(default_factory=ShieldTotals)
    standby_trigger: Optional[StandbyTrigger] = None
    standby_history: Tuple[StandbyTrigger, ...] = ()
    recovery_until_ms: Optional[int] = None

    @property
    def is_standby(self) -> bool:
        return self.mode is Mode.STANDBY


@dataclass(frozen=True)
class EnsembleDecision:
    recommendation: Recommendation
    confidence: float
    votes: Dict[str, bool]
    original_direction: Direction
    final_direction: Optional[Direction]
    reason: str
    adaptive_threshold: float
    consecutive_trap_count: int
    timestamp_ms: int
    details: Dict[str, Any] = field(default_factory=dict)
    recovery_active: bool = False

    @property
    def was_inverted(self) -> bool:
        return self.recommendation is Recommendation.INVERT

    @property
    def can_proceed(self) -> bool:
        return self.recommendation not in (Recommendation.BLOCK, Recommendation.STANDBY)

    @property
    def is_standby(self) -> bool:
        return self.recommendation is Recommendation.STANDBY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommendation": self.recommendation.value,
            "confidence": self.confidence,
            "votes": dict(self.votes),
            "original_direction": self.original_direction.value,
            "final_direction": self.final_direction.value if self.final_direction else None,
            "was_inverted": self.was_inverted,
            "can_proceed": self.can_proceed,
            "reason": self.reason,
            "adaptive_threshold": self.adaptive_threshold,
            "consecutive_trap_count": self.consecutive_trap_count,
            "timestamp_ms": self.timestamp_ms,
            "recovery_active": self.recovery_active,
            "details": self.details,
        }


@dataclass(frozen=True)
class ResetResult:
    success: bool
    message: str
    new_threshold: Optional[float] = None
    needs_confirmation: bool = False
    already_active: bool = False
    recovery_until_ms: Optional[int] = None
    previous_trigger: Optional[StandbyTrigger] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.new_threshold is not None:
            d["new_threshold"] = self.new_threshold
        if self.needs_confirmation:
            d["needs_confirmation"] = True
        if self.already_active:
            d["already_active"] = True
        if self.recovery_until_ms is not None:
            d["recovery_until_ms"] = self.recovery_until_ms
        if self.previous_trigger is not None:
            d["previous_trigger"] = self.previous_trigger.to_record()
        return d


class ShieldStateMachine:
    def __init__(
        self,
        aggregator: VotingAggregator,
        threshold: AdaptiveThresholdController,
        ledger: AuditLedger,
        policy: Optional[StandbyPolicy] = None,
        *,
        ops_stats: Optional[OpsStats] = None,
        clock_ms: Callable[[], int] = now_ms,
    ):
        self.aggregator = aggregator
        self.threshold = threshold
        self.ledger = ledger
        self.policy = policy or StandbyPolicy()
        self.ops_stats = ops_stats
        self._clock_ms = clock_ms
        self.state = ShieldState()

    # ---------------------------
    # Decisions
    # ---------------------------

    def recovery_active(self, now: Optional[int] = None) -> bool:
        until = self.state.recovery_until_ms
        if until is None:
            return False
        return (self._clock_ms() if now is None else now) < until

    def decide(
        self,
        candidate: Direction,
        sequence: Tuple[OutcomeEvent, ...],
        context: Optional[Mapping[str, Any]] = None,
    ) -> EnsembleDecision:
        now = self._clock_ms()
        st = self.state

        if st.is_standby:
            trig = st.standby_trigger
            reason = f"STANDBY: {trig.reason if trig else 'awaiting manual reset'}"
            decision = EnsembleDecision(
                recommendation=Recommendation.STANDBY,
                confidence=1.0,
                votes={},
                original_direction=candidate,
                final_direction=None,
                reason=reason,
                adaptive_threshold=self.threshold.threshold,
                consecutive_trap_count=st.consecutive_trap_count,
                timestamp_ms=now,
                details={"standby": True, "triggered_at_ms": trig.timestamp_ms if trig else None},
            )
            self._log_decision(decision)
            return decision

        result = self.aggregator.evaluate(sequence, context)
        confidence = result.confidence
        thr = self.threshold.threshold
        p = self.policy
        st.totals.checks += 1

        if confidence >= thr and (
            st.consecutive_trap_count >= p.standby_consecutive_traps or confidence >= p.standby_confidence
        ):
            st.totals.traps_detected += 1
            st.consecutive_trap_count += 1
            trig = self._enter_standby(result, thr, now)
            decision = EnsembleDecision(
                recommendation=Recommendation.STANDBY,
                confidence=confidence,
                votes=result.votes,
                original_direction=candidate,
                final_direction=None,
                reason=f"STANDBY: {trig.reason}",
                adaptive_threshold=thr,
                consecutive_trap_count=st.consecutive_trap_count,
                timestamp_ms=now,
                details=result.details(),
            )
            self._log_decision(decision)
            return decision

        if confidence >= thr:
            st.totals.traps_detected += 1
            st.consecutive_trap_count += 1
            success_rate = self.threshold.success_rate()
            if success_rate > p.invert_min_success_rate and st.consecutive_trap_count < p.invert_max_consecutive_traps:
                recommendation = Recommendation.INVERT
                final: Optional[Direction] = candidate.opposite
                st.totals.inversions += 1
                reason = f"trap {confidence:.0%} - inverting"
            else:
                recommendation = Recommendation.BLOCK
                final = None
                reason = f"trap {confidence:.0%} - blocked"
        else:
            st.consecutive_trap_count = max(0, st.consecutive_trap_count - 1)
            recommendation = Recommendation.PROCEED
            final = candidate
            reason = "no trap indicators"

        decision = EnsembleDecision(
            recommendation=recommendation,
            confidence=confidence,
            votes=result.votes,
            original_direction=candidate,
            final_direction=final,
            reason=reason,
            adaptive_threshold=thr,
            consecutive_trap_count=st.consecutive_trap_count,
            timestamp_ms=now,
            details=result.details(),
            recovery_active=self.recovery_active(now),
        )
        self._log_decision(decision)
        return decision

    def _enter_standby(self, result: AggregateResult, thr: float, now: int) -> StandbyTrigger:
        st = self.state
        trig = StandbyTrigger(
            reason=(
                f"critical trap ({result.confidence:.0%} confidence, "
                f"{st.consecutive_trap_count} consecutive)"
            ),
            confidence=result.confidence,
            votes=result.votes,
            consecutive_trap_count=st.consecutive_trap_count,
            threshold=thr,
            timestamp_ms=now,
        )
        st.mode = Mode.STANDBY
        st.standby_trigger = trig
        st.standby_history = (st.standby_history + (trig,))[-self.policy.history_size:]
        st.recovery_until_ms = None
        logger.info("Standby entered: %s", trig.reason)
        metrics.set_standby_active(True)
        if self.ops_stats is not None:
            self.ops_stats.record_standby_entry()
        self.ledger.append({"event": "standby_entered", "trigger": trig.to_record()}, timestamp_ms=now)
        return trig

    def _log_decision(self, decision: EnsembleDecision) -> None:
        logger.debug(
            "decision=%s confidence=%.2f threshold=%.3f consecutive=%d",
            decision.recommendation.value,
            decision.confidence,
            decision.adaptive_threshold,
            decision.consecutive_trap_count,
        )
        metrics.record_decision(decision.recommendation.value)
        if self.ops_stats is not None:
            self.ops_stats.record_decision(decision.recommendation.value)
        payload = decision.to_dict()
        payload["event"] = "decision"
        # Per-detector detail is debugging material, not audit content.
        payload.pop("details", None)
        self.ledger.append(payload, timestamp_ms=decision.timestamp_ms)

    # ---------------------------
    # Learning and lifecycle
    # ---------------------------

    def record_inversion_outcome(self, success: bool) -> float:
        if success:
            self.state.totals.successful_inversions += 1
        new = self.threshold.record_inversion(success)
        metrics.set_adaptive_threshold(new)
        return new

    def manual_reset(self, confirmed: bool = False) -> ResetResult:
        st = self.state
        if not st.is_standby:
            return ResetResult(success=False, message="no standby active", already_active=True)
        if confirmed is not True:
            return ResetResult(
                success=False,
                message="explicit confirmation required",
                needs_confirmation=True,
                previous_trigger=st.standby_trigger,
            )

        now = self._clock_ms()
        previous = st.standby_trigger
        old_threshold = self.threshold.threshold
        st.mode = Mode.ACTIVE
        st.standby_trigger = None
        st.consecutive_trap_count = 0
        new_threshold = self.threshold.bump()
        st.recovery_until_ms = now + int(self.policy.recovery_window_seconds * 1000)

        logger.info("Manual reset confirmed; threshold %.3f -> %.3f", old_threshold, new_threshold)
        metrics.set_standby_active(False)
        metrics.set_adaptive_threshold(new_threshold)
        if self.ops_stats is not None:
            self.ops_stats.record_manual_reset()
        self.ledger.append(
            {
                "event": "manual_reset",
                "previous_threshold": old_threshold,
                "new_threshold": new_threshold,
                "recovery_until_ms": st.recovery_until_ms,
            },
            timestamp_ms=now,
        )
        return ResetResult(
            success=True,
            message="shield reactivated",
            new_threshold=new_threshold,
            recovery_until_ms=st.recovery_until_ms,
            previous_trigger=previous,
        )

    def reset(self) -> None:
        self.state = ShieldState()
        self.threshold.reset()
        metrics.set_standby_active(False)
        metrics.set_adaptive_threshold(self.threshold.threshold)
        self.ledger.append({"event": "reset"})
        logger.info("Shield state reinitialized")

    # ---------------------------
    # Read models
    # ---------------------------

    def standby_status(self) -> Dict[str, Any]:
        st = self.state
        if not st.is_standby:
            return {"is_standby": False, "can_operate": True}
        trig = st.standby_trigger
        now = self._clock_ms()
        return {
            "is_standby": True,
            "can_operate": False,
            "reason": trig.reason if trig else "unknown",
            "details": trig.to_record() if trig else {},
            "triggered_at": trig.timestamp_ms if trig else None,
            "time_in_standby_ms": max(0, now - trig.timestamp_ms) if trig else 0,
            "standby_count": len(st.standby_history),
            "history": [t.to_record() for t in st.standby_history[-self.policy.status_history:]],
        }

    # ---------------------------
    # Persistence records
    # ---------------------------

    def to_record(self, learned_patterns: List[Any], timestamp_ms: Optional[int] = None) -> Dict[str, Any]:
        st = self.state
        return {
            "schemaVersion": SCHEMA_VERSION,
            "mode": st.mode.value,
            "inversionHistory": list(self.threshold.history),
            "consecutiveTrapCount": st.consecutive_trap_count,
            "adaptiveThreshold": self.threshold.threshold,
            "totals": st.totals.to_record(),
            "standbyTrigger": st.standby_trigger.to_record() if st.standby_trigger else None,
            "standbyHistory": [t.to_record() for t in st.standby_history],
            "learnedPatterns": learned_patterns,
            "timestamp": int(self._clock_ms() if timestamp_ms is None else timestamp_ms),
        }

    def restore(self, record: Mapping[str, Any]) -> None:
        """Load a schema-2 record produced by `to_record` (or migrated to it).

        Raises TypeError/ValueError on malformed fields; nothing is changed then.
        """
        mode = Mode.STANDBY if record.get("mode") == Mode.STANDBY.value else Mode.ACTIVE
        trig_raw = record.get("standbyTrigger")
        trigger = StandbyTrigger.from_record(trig_raw) if isinstance(trig_raw, dict) else None
        history = tuple(
            StandbyTrigger.from_record(t) for t in record.get("standbyHistory") or [] if isinstance(t, dict)
        )[-self.policy.history_size:]
        totals_raw = record.get("totals")
        threshold = record.get("adaptiveThreshold")
        if not isinstance(threshold, (int, float)):
            threshold = self.threshold.policy.initial
        inversions = record.get("inversionHistory") or []
        if not isinstance(inversions, list):
            raise TypeError(f"inversionHistory must be a list, got {type(inversions).__name__}")
        state = ShieldState(
            mode=mode,
            consecutive_trap_count=max(0, int(record.get("consecutiveTrapCount", 0) or 0)),
            totals=ShieldTotals.from_record(totals_raw if isinstance(totals_raw, dict) else {}),
            standby_trigger=trigger if mode is Mode.STANDBY else None,
            standby_history=history,
        )
        self.threshold.restore(float(threshold), inversions)
        self.state = state
        metrics.set_standby_active(mode is Mode.STANDBY)
        metrics.set_adaptive_threshold(self.threshold.threshold)
        logger.info(
            "Shield state restored: mode=%s threshold=%.3f checks=%d",
            mode.value,
            self.threshold.threshold,
            self.state.totals.checks,
        )
