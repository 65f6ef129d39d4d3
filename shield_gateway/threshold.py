"""Adaptive trigger threshold driven by inversion success."""

from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from .config import ThresholdPolicy


class AdaptiveThresholdController:
    """Maintains the trigger threshold from recent inversion outcomes.

    The threshold only moves when `record_inversion()` is called (a learn()
    that followed an inversion) or on `bump()` after a confirmed manual
    reset. It always stays within [policy.floor, policy.ceiling].
    """

    def __init__(self, policy: Optional[ThresholdPolicy] = None):
        self.policy = policy or ThresholdPolicy()
        self._history: Tuple[int, ...] = ()
        self._threshold = self._clamp(self.policy.initial)

    def _clamp(self, value: float) -> float:
        return max(self.policy.floor, min(self.policy.ceiling, float(value)))

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def history(self) -> Tuple[int, ...]:
        return self._history

    def success_rate(self) -> float:
        p = self.policy
        if len(self._history) < p.min_history:
            return p.default_success_rate
        recent = self._history[-p.recent_window:]
        return sum(recent) / len(recent)

    def lifetime_success_rate(self) -> Optional[float]:
        if not self._history:
            return None
        return sum(self._history) / len(self._history)

    def record_inversion(self, success: bool) -> float:
        self._history = (self._history + (1 if success else 0,))[-self.policy.history_size:]
        return self.recompute()

    def recompute(self) -> float:
        p = self.policy
        self._threshold = self._clamp(p.base + p.span * (1.0 - self.success_rate()))
        return self._threshold

    def bump(self, amount: Optional[float] = None) -> float:
        step = self.policy.reset_bump if amount is None else float(amount)
        self._threshold = self._clamp(self._threshold + step)
        return self._threshold

    def restore(self, threshold: float, history: Iterable[int]) -> None:
        cleaned: List[int] = []
        for h in history or []:
            if isinstance(h, bool) or isinstance(h, (int, float)):
                cleaned.append(1 if h else 0)
        self._history = tuple(cleaned[-self.policy.history_size:])
        self._threshold = self._clamp(threshold)

    def reset(self) -> None:
        self._history = ()
        self._threshold = self._clamp(self.policy.initial)
