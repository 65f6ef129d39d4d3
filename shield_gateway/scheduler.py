"""Periodic recompute of derived statistics.

StatsScheduler runs pure, read-only functions over committed snapshots (the
tempo intervals and the trade log are tuples replaced on every update) and
publishes the result with a single reference swap. Readers call `latest()`
and never block on the recompute.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

from .detectors import MicrostructureBiasDetector, TempoAnomalyDetector, imbalance_trend, order_balance, tempo_summary
from .sequence import now_ms

logger = logging.getLogger("shield_gateway.scheduler")


class StatsScheduler:
    def __init__(
        self,
        tempo: TempoAnomalyDetector,
        microstructure: MicrostructureBiasDetector,
        interval_seconds: float = 5.0,
        clock_ms: Callable[[], int] = now_ms,
    ):
        self.tempo = tempo
        self.microstructure = microstructure
        self.interval_seconds = float(interval_seconds)
        self._clock_ms = clock_ms
        self._latest: Dict[str, Any] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def latest(self) -> Dict[str, Any]:
        return self._latest

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Dict[str, Any]:
        intervals = self.tempo.intervals
        trades = self.microstructure.trades
        mp = self.microstructure.policy
        summary = tempo_summary(intervals, self.tempo.policy)
        suspicious = bool(summary.get("robotic") or summary.get("erratic") or summary.get("too_fast"))
        balance = order_balance(trades, mp.window, mp.obi_signal)
        snap = {
            "computed_at_ms": self._clock_ms(),
            "tempo": summary,
            "tempo_status": "SUSPICIOUS" if suspicious else "NORMAL",
            "obi": balance,
            "imbalance_trend": imbalance_trend(trades),
            "trade_count": len(trades),
        }
        self._latest = snap
        return snap

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception as e:
                logger.warning("Stats recompute failed: %s", e)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self.run_once()
        self._thread = threading.Thread(target=self._loop, name="shield-stats", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
