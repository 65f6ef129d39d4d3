"""Statistical detectors for the shield ensemble.

Four independent evaluators, each looking at a different signal:

- FrequencyAnomalyDetector: distributional tests over the resolved outcome
  sequence (chi-square, runs, periodicity, entropy, tail repetition).
- TempoAnomalyDetector: timing of the client's own actions.
- MicrostructureBiasDetector: the client's recent trades and how they settled.
- ContextualFeatureDetector: feature z-scores of the last few outcomes against
  an unbiased binary process.

Every detector implements the same capability, ``evaluate(sequence, context)
-> DetectorVote``. When a detector does not have enough data it raises
InsufficientDataError; the aggregator turns that into an abstention.

Learned state (trade log, action timestamps, pattern counts, feature
databases) lives in tuples / fresh dicts that are replaced on every update, so
background readers always see a complete snapshot. Mutation happens only from
the shield's single writer.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import math
import statistics
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from .config import ContextualPolicy, FrequencyPolicy, MicrostructurePolicy, TempoPolicy
from .errors import insufficient_data, validation_error
from .sequence import Direction, OutcomeEvent, parse_direction, values_of

logger = logging.getLogger("shield_gateway.detectors")


FREQUENCY = "frequency"
TEMPO = "tempo"
MICROSTRUCTURE = "microstructure"
CONTEXTUAL = "contextual"


@dataclass(frozen=True)
class DetectorVote:
    detector_id: str
    triggered: bool
    score: float = 0.0
    abstained: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detector_id": self.detector_id,
            "triggered": bool(self.triggered),
            "score": round(float(self.score), 6),
            "abstained": bool(self.abstained),
            "details": self.details,
        }

    @classmethod
    def abstain(cls, detector_id: str, reason: str, **details: Any) -> "DetectorVote":
        return cls(detector_id, False, 0.0, True, {"abstained": reason, **details})


class Detector(Protocol):
    detector_id: str

    def evaluate(self, sequence: Tuple[OutcomeEvent, ...], context: Mapping[str, Any]) -> DetectorVote:
        ...

    def reset(self) -> None:
        ...


def _sign(x: float) -> int:
    if x > 0:
        return 1
    if x < 0:
        return -1
    return 0


def _longest_run(vals: str) -> int:
    if not vals:
        return 0
    longest = current = 1
    for i in range(1, len(vals)):
        if vals[i] == vals[i - 1]:
            current += 1
            longest = max(longest, current)
        else:
            current = 1
    return longest


def _pstdev(xs: List[float]) -> float:
    if not xs:
        return 0.0
    return statistics.pstdev(xs)


# ---------------------------
# Frequency
# ---------------------------

def chi_square_uniform(count_a: int, count_b: int) -> float:
    total = count_a + count_b
    if total == 0:
        return 0.0
    expected = total / 2.0
    return (count_a - expected) ** 2 / expected + (count_b - expected) ** 2 / expected


def runs_test(vals: str) -> Tuple[int, float, float, int]:
    """Return (runs, expected_runs, z, longest_run) for an A/B string."""
    n = len(vals)
    count_a = vals.count("A")
    count_b = n - count_a
    runs = 1
    for i in range(1, n):
        if vals[i] != vals[i - 1]:
            runs += 1
    expected = (2.0 * count_a * count_b) / n + 1.0
    variance = (2.0 * count_a * count_b * (2.0 * count_a * count_b - n)) / (n * n * (n - 1))
    z = abs(runs - expected) / math.sqrt(variance if variance > 0 else 1.0)
    return runs, expected, z, _longest_run(vals)


def detect_cycles(binary: List[int], min_lag: int, max_lag: int, match_fraction: float) -> List[Tuple[int, float]]:
    """Lags whose match fraction exceeds `match_fraction`, strongest first."""
    n = len(binary)
    top = min(max_lag, n // 3)
    found: List[Tuple[int, float]] = []
    for p in range(min_lag, top + 1):
        matches = sum(1 for i in range(p, n) if binary[i] == binary[i - p])
        strength = matches / (n - p)
        if strength > match_fraction:
            found.append((p, strength))
    found.sort(key=lambda item: item[1], reverse=True)
    return found


def normalized_entropy(count_a: int, count_b: int) -> float:
    total = count_a + count_b
    if total == 0:
        return 0.0
    ent = 0.0
    for p in (count_a / total, count_b / total):
        ent -= p * math.log2(p if p > 0 else 0.001)
    # Binary entropy already has a maximum of 1 bit.
    return ent


class FrequencyAnomalyDetector:
    """Distributional tests over the resolved outcome sequence."""

    detector_id = FREQUENCY

    def __init__(self, policy: Optional[FrequencyPolicy] = None):
        self.policy = policy or FrequencyPolicy()
        self._patterns: Dict[str, Dict[str, int]] = {}

    def evaluate(self, sequence: Tuple[OutcomeEvent, ...], context: Mapping[str, Any]) -> DetectorVote:
        p = self.policy
        n = len(sequence)
        if n < p.min_samples:
            raise insufficient_data(self.detector_id, n, p.min_samples)

        vals = values_of(sequence)
        binary = [1 if v == "A" else 0 for v in vals]
        count_a = vals.count("A")
        count_b = n - count_a

        chi = chi_square_uniform(count_a, count_b)
        freq_anomaly = chi > p.chi_square_critical

        runs, expected_runs, runs_z, longest = runs_test(vals)
        runs_anomaly = runs_z > p.runs_z_critical or longest > p.max_run_length

        cycles = detect_cycles(binary, p.min_cycle_lag, p.max_cycle_lag, p.cycle_match_fraction)
        cycle_anomaly = bool(cycles)

        entropy = normalized_entropy(count_a, count_b)
        low_entropy = entropy < p.min_entropy

        repeating, repetition_rate = self._tail_repeats(vals)

        score = 0.0
        if freq_anomaly:
            score += p.weight_chi_square
        if runs_anomaly:
            score += p.weight_runs
        if cycle_anomaly:
            score += p.weight_cycles
        if low_entropy:
            score += p.weight_entropy
        if repeating:
            score += p.weight_repeat
        score = min(1.0, score)

        details: Dict[str, Any] = {
            "samples": n,
            "chi_square": round(chi, 4),
            "runs": runs,
            "expected_runs": round(expected_runs, 4),
            "runs_z": round(runs_z, 4),
            "max_consecutive": longest,
            "cycles": [{"period": lag, "strength": round(s, 4)} for lag, s in cycles[:2]],
            "entropy": round(entropy, 4),
            "pattern_repeat_rate": round(repetition_rate, 4),
            "flags": {
                "chi_square": freq_anomaly,
                "runs": runs_anomaly,
                "cycles": cycle_anomaly,
                "entropy": low_entropy,
                "pattern_repeat": repeating,
            },
        }
        known = self._patterns.get(vals[-p.tail_pattern_length:])
        if known:
            details["known_pattern"] = dict(known)
        return DetectorVote(self.detector_id, score > p.trigger_score, score, False, details)

    def _tail_repeats(self, vals: str) -> Tuple[bool, float]:
        k = self.policy.tail_pattern_length
        if len(vals) < self.policy.min_history_for_repeat:
            return False, 0.0
        tail = vals[-k:]
        historical = vals[:-k]
        matches = historical.count(tail)
        return matches > 0, matches / (len(historical) / float(k))

    def learn(self, sequence: Tuple[OutcomeEvent, ...], was_trap: bool) -> None:
        k = self.policy.tail_pattern_length
        if len(sequence) < k:
            return
        key = values_of(sequence[-k:])
        patterns = dict(self._patterns)
        entry = dict(patterns.get(key, {"count": 0, "traps": 0}))
        entry["count"] += 1
        if was_trap:
            entry["traps"] += 1
        patterns[key] = entry
        self._patterns = patterns

    @property
    def learned_patterns(self) -> Dict[str, Dict[str, int]]:
        return {k: dict(v) for k, v in self._patterns.items()}

    def export_patterns(self) -> List[List[Any]]:
        return [[k, dict(v)] for k, v in sorted(self._patterns.items())]

    def restore_patterns(self, patterns: List[Any]) -> int:
        restored: Dict[str, Dict[str, int]] = {}
        for item in patterns or []:
            try:
                key, data = item
                if not isinstance(key, str) or set(key) - {"A", "B"}:
                    continue
                restored[key] = {"count": int(data.get("count", 0)), "traps": int(data.get("traps", 0))}
            except (TypeError, ValueError, AttributeError):
                continue
        self._patterns = restored
        return len(restored)

    def reset(self) -> None:
        self._patterns = {}


# ---------------------------
# Tempo
# ---------------------------

def tempo_summary(intervals: Tuple[float, ...], policy: TempoPolicy) -> Dict[str, Any]:
    """Pure tempo statistics over the most recent intervals (ms)."""
    recent = list(intervals[-policy.window:])
    if not recent:
        return {"samples": 0}
    mean = sum(recent) / len(recent)
    cv = _pstdev(recent) / mean if mean > 0 else 0.0
    flips = 0
    for i in range(2, len(recent)):
        prev_change = recent[i - 1] - recent[i - 2]
        curr_change = recent[i] - recent[i - 1]
        if _sign(prev_change) != _sign(curr_change):
            flips += 1
    return {
        "samples": len(recent),
        "mean_interval_ms": mean,
        "cv": cv,
        "sign_flips": flips,
        "robotic": cv < policy.robotic_cv and mean > policy.robotic_min_mean_ms,
        "erratic": flips > len(recent) * policy.erratic_fraction,
        "too_fast": any(i < policy.too_fast_ms for i in recent),
    }


class TempoAnomalyDetector:
    """Looks at the spacing between the client's own actions."""

    detector_id = TEMPO

    def __init__(self, policy: Optional[TempoPolicy] = None):
        self.policy = policy or TempoPolicy()
        self._timestamps: Tuple[int, ...] = ()
        self._intervals: Tuple[float, ...] = ()

    def record_action(self, timestamp_ms: int) -> None:
        p = self.policy
        if self._timestamps:
            interval = float(timestamp_ms - self._timestamps[-1])
            self._intervals = (self._intervals + (interval,))[-p.max_intervals:]
        self._timestamps = (self._timestamps + (int(timestamp_ms),))[-p.max_timestamps:]

    @property
    def intervals(self) -> Tuple[float, ...]:
        return self._intervals

    def evaluate(self, sequence: Tuple[OutcomeEvent, ...], context: Mapping[str, Any]) -> DetectorVote:
        p = self.policy
        intervals = self._intervals
        if len(intervals) < p.min_intervals:
            raise insufficient_data(self.detector_id, len(intervals), p.min_intervals)

        s = tempo_summary(intervals, p)
        score = 0.0
        if s["robotic"]:
            score += p.weight_robotic
        if s["erratic"]:
            score += p.weight_erratic
        if s["too_fast"]:
            score += p.weight_too_fast
        score = min(1.0, score)

        details = {
            "avg_interval_ms": round(s["mean_interval_ms"]),
            "cv": round(s["cv"], 4),
            "robotic": s["robotic"],
            "erratic": s["erratic"],
            "too_fast": s["too_fast"],
        }
        return DetectorVote(self.detector_id, score > p.trigger_score, score, False, details)

    def reset(self) -> None:
        self._timestamps = ()
        self._intervals = ()


# ---------------------------
# Microstructure
# ---------------------------

@dataclass(frozen=True)
class TradeRecord:
    direction: Direction
    stake: float
    timestamp_ms: int
    result: Optional[Direction] = None
    was_inverted: bool = False

    @property
    def is_trap(self) -> bool:
        return self.result is not None and self.direction != self.result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "stake": self.stake,
            "timestamp_ms": self.timestamp_ms,
            "result": self.result.value if self.result else None,
            "was_inverted": self.was_inverted,
        }


def parse_stake(stake: Any) -> float:
    if isinstance(stake, bool):
        raise validation_error("stake must be a number", field="stake", value=repr(stake))
    try:
        amount = float(stake)
    except (TypeError, ValueError):
        raise validation_error("stake must be a number", field="stake", value=repr(stake))
    if not math.isfinite(amount) or amount < 0:
        raise validation_error("stake must be a finite, non-negative number", field="stake", value=repr(stake))
    return amount


def order_balance(trades: Tuple[TradeRecord, ...], window: int = 10, signal_at: float = 0.3) -> Dict[str, Any]:
    """OBI = (buy - sell) / (buy + sell) over the last `window` trades by stake."""
    recent = trades[-window:]
    buy = sum(t.stake for t in recent if t.direction is Direction.A)
    sell = sum(t.stake for t in recent if t.direction is Direction.B)
    total = buy + sell
    obi = (buy - sell) / total if total > 0 else 0.0
    if obi > signal_at:
        signal = "BUY_BIAS"
    elif obi < -signal_at:
        signal = "SELL_BIAS"
    else:
        signal = "BALANCED"
    return {
        "obi": round(obi, 3),
        "buy_volume": buy,
        "sell_volume": sell,
        "ratio": round(buy / sell, 2) if sell > 0 else None,
        "signal": signal,
    }


def imbalance_trend(trades: Tuple[TradeRecord, ...]) -> str:
    if len(trades) < 6:
        return "INSUFFICIENT"
    half = len(trades) // 2
    buy_first = sum(1 for t in trades[:half] if t.direction is Direction.A)
    buy_second = sum(1 for t in trades[half:] if t.direction is Direction.A)
    if buy_second > buy_first * 1.5:
        return "INCREASING_A"
    if buy_second < buy_first * 0.5:
        return "INCREASING_B"
    return "STABLE"


class MicrostructureBiasDetector:
    """Trap statistics over the client's own recent trades."""

    detector_id = MICROSTRUCTURE

    def __init__(self, policy: Optional[MicrostructurePolicy] = None):
        self.policy = policy or MicrostructurePolicy()
        self._trades: Tuple[TradeRecord, ...] = ()
        self._trap_patterns: Tuple[Dict[str, Any], ...] = ()

    @property
    def trades(self) -> Tuple[TradeRecord, ...]:
        return self._trades

    @property
    def trap_patterns(self) -> Tuple[Dict[str, Any], ...]:
        return self._trap_patterns

    def record_trade(self, direction: Any, stake: Any, timestamp_ms: int) -> TradeRecord:
        rec = TradeRecord(direction=parse_direction(direction), stake=parse_stake(stake), timestamp_ms=int(timestamp_ms))
        self._trades = (self._trades + (rec,))[-self.policy.max_trades:]
        return rec

    def record_result(self, result: Direction, was_inverted: bool = False, recent_sequence: str = "") -> None:
        if not self._trades:
            return
        last = dataclasses.replace(self._trades[-1], result=result, was_inverted=bool(was_inverted))
        self._trades = self._trades[:-1] + (last,)
        if last.is_trap:
            pattern = {
                "direction": last.direction.value,
                "stake": last.stake,
                "timestamp_ms": last.timestamp_ms,
                "recent_sequence": recent_sequence,
            }
            self._trap_patterns = (self._trap_patterns + (pattern,))[-self.policy.max_trap_patterns:]

    def obi(self) -> Dict[str, Any]:
        return order_balance(self._trades, self.policy.window, self.policy.obi_signal)

    def imbalance_trend(self) -> str:
        return imbalance_trend(self._trades)

    def evaluate(self, sequence: Tuple[OutcomeEvent, ...], context: Mapping[str, Any]) -> DetectorVote:
        p = self.policy
        trades = self._trades
        completed = [t for t in trades if t.result is not None]
        if len(completed) < p.min_completed:
            raise insufficient_data(self.detector_id, len(completed), p.min_completed)

        recent = completed[-p.window:]
        traps = [t for t in recent if t.is_trap]
        wins = [t for t in recent if not t.is_trap]
        trap_rate = len(traps) / len(recent)

        big = [t for t in recent if t.stake >= p.big_stake]
        big_trap_rate = (sum(1 for t in big if t.is_trap) / len(big)) if big else 0.0

        last_n = recent[-p.recent_window:]
        consistent_trap = sum(1 for t in last_n if t.is_trap) >= p.recent_traps

        avg_win = sum(t.stake for t in wins) / len(wins) if wins else 0.0
        avg_loss = sum(t.stake for t in traps) / len(traps) if traps else 0.0
        bait = bool(wins) and avg_loss > avg_win * p.bait_ratio

        consecutive = 0
        for t in reversed(recent):
            if not t.is_trap:
                break
            consecutive += 1

        score = 0.0
        if trap_rate > p.trap_rate:
            score += p.weight_trap_rate
        if big_trap_rate > p.big_trap_rate:
            score += p.weight_big_trap_rate
        if consistent_trap:
            score += p.weight_recent_traps
        if bait:
            score += p.weight_bait
        if consecutive >= p.consecutive_traps:
            score += p.weight_consecutive
        score = min(1.0, score)

        if score > 0.80:
            pattern_type = "AGGRESSIVE_BAIT"
        elif score > p.trigger_score:
            pattern_type = "MANIPULATION"
        else:
            pattern_type = "NORMAL"

        balance = order_balance(trades, p.window, p.obi_signal)
        details = {
            "completed": len(completed),
            "trap_rate": round(trap_rate, 4),
            "big_trap_rate": round(big_trap_rate, 4),
            "consecutive_traps": consecutive,
            "bait_pattern": bait,
            "obi": balance["obi"],
            "bias": balance["signal"],
            "pattern_type": pattern_type,
        }
        return DetectorVote(self.detector_id, score > p.trigger_score, score, False, details)

    def reset(self) -> None:
        self._trades = ()
        self._trap_patterns = ()


# ---------------------------
# Contextual features
# ---------------------------

def extract_features(window: Tuple[OutcomeEvent, ...]) -> Dict[str, Any]:
    vals = values_of(window)
    binary = [1 if v == "A" else 0 for v in vals]
    n = len(binary)
    changes = [abs(binary[i] - binary[i - 1]) for i in range(1, n)]
    if n >= 6:
        trend = sum(binary[-3:]) / 3.0 - sum(binary[:3]) / 3.0
    else:
        trend = 0.0
    newest = window[-1].timestamp_ms if window else 0
    when = datetime.datetime.fromtimestamp(newest / 1000.0, tz=datetime.timezone.utc)
    return {
        "freq_a": (vals.count("A") / n) if n else 0.0,
        "max_streak": _longest_run(vals) if n >= 2 else 1,
        "reversals": sum(changes),
        "volatility": _pstdev([float(c) for c in changes]) if n >= 2 else 0.0,
        "trend": trend,
        "time_of_day": when.hour,
        "day_of_week": when.weekday(),
    }


def feature_z_scores(features: Mapping[str, Any], policy: ContextualPolicy) -> Dict[str, float]:
    expected_max_streak = math.log2(policy.reference_n) + 1.0
    return {
        "freq_a": abs(features["freq_a"] - policy.expected_frequency) / policy.frequency_std,
        "max_streak": max(0.0, features["max_streak"] - expected_max_streak) / policy.max_run_scale,
        "volatility": abs(features["volatility"] - policy.expected_volatility) / policy.volatility_std,
    }


class ContextualFeatureDetector:
    """Feature z-scores for the most recent outcomes."""

    detector_id = CONTEXTUAL

    def __init__(self, policy: Optional[ContextualPolicy] = None):
        self.policy = policy or ContextualPolicy()
        self._trap_features: Tuple[Dict[str, Any], ...] = ()
        self._normal_features: Tuple[Dict[str, Any], ...] = ()

    @property
    def trap_features(self) -> Tuple[Dict[str, Any], ...]:
        return self._trap_features

    @property
    def normal_features(self) -> Tuple[Dict[str, Any], ...]:
        return self._normal_features

    def is_anomalous(self, features: Mapping[str, Any]) -> Tuple[bool, Dict[str, float]]:
        z = feature_z_scores(features, self.policy)
        return max(z.values()) > self.policy.trigger_z, z

    def evaluate(self, sequence: Tuple[OutcomeEvent, ...], context: Mapping[str, Any]) -> DetectorVote:
        p = self.policy
        if len(sequence) < p.min_history:
            raise insufficient_data(self.detector_id, len(sequence), p.min_history)

        features = extract_features(sequence[-p.window:])
        triggered, z = self.is_anomalous(features)
        max_z = max(z.values())
        details: Dict[str, Any] = {
            "features": {k: (round(v, 4) if isinstance(v, float) else v) for k, v in features.items()},
            "z_scores": {k: round(v, 4) for k, v in z.items()},
            "max_z": round(max_z, 4),
        }
        opaque = {k: v for k, v in (context or {}).items() if isinstance(v, (int, float)) and not isinstance(v, bool)}
        if opaque:
            details["context"] = opaque
        return DetectorVote(self.detector_id, triggered, min(1.0, max_z / (2.0 * p.trigger_z)), False, details)

    def label(self, window: Tuple[OutcomeEvent, ...], was_trap: bool) -> Tuple[bool, Dict[str, Any]]:
        """File the window's features into the trap or normal database."""
        features = extract_features(window)
        anomalous, _ = self.is_anomalous(features)
        is_trap = bool(was_trap) and anomalous
        if is_trap:
            self._trap_features = (self._trap_features + (features,))[-self.policy.max_trap_features:]
        else:
            self._normal_features = (self._normal_features + (features,))[-self.policy.max_normal_features:]
        return is_trap, features

    def reset(self) -> None:
        self._trap_features = ()
        self._normal_features = ()
