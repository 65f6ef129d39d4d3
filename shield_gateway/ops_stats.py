"""Operational statistics for the shield.

Lightweight in-memory counters with a snapshot for `get_stats()` and
`/v1/stats`. Prometheus exposition lives in `metrics.py`.

Notes
-----
- Counters reset on process restart.
- Do not treat these as audit evidence. The audit ledger is the record.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    checks_total: int = 0
    decisions_by_recommendation: Dict[str, int] = field(default_factory=dict)

    # Detector health
    detector_errors_total: int = 0
    detector_errors_by_detector: Dict[str, int] = field(default_factory=dict)
    abstentions_by_detector: Dict[str, int] = field(default_factory=dict)

    # Lifecycle
    standby_entries_total: int = 0
    manual_resets_total: int = 0

    # Storage
    persistence_failures_total: int = 0
    persistence_suspended_total: int = 0


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_decision(self, recommendation: str) -> None:
        with self._lock:
            self._c.checks_total += 1
            self._inc_map(self._c.decisions_by_recommendation, recommendation or "unknown")

    def record_detector_error(self, detector_id: str) -> None:
        with self._lock:
            self._c.detector_errors_total += 1
            self._inc_map(self._c.detector_errors_by_detector, detector_id or "unknown")

    def record_abstention(self, detector_id: str) -> None:
        with self._lock:
            self._inc_map(self._c.abstentions_by_detector, detector_id or "unknown")

    def record_standby_entry(self) -> None:
        with self._lock:
            self._c.standby_entries_total += 1

    def record_manual_reset(self) -> None:
        with self._lock:
            self._c.manual_resets_total += 1

    def record_persistence_failure(self) -> None:
        with self._lock:
            self._c.persistence_failures_total += 1

    def record_persistence_suspended(self) -> None:
        with self._lock:
            self._c.persistence_suspended_total += 1

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "checks_total": c.checks_total,
                "decisions_by_recommendation": dict(c.decisions_by_recommendation),
                "detector_errors_total": c.detector_errors_total,
                "detector_errors_by_detector": dict(c.detector_errors_by_detector),
                "abstentions_by_detector": dict(c.abstentions_by_detector),
                "standby_entries_total": c.standby_entries_total,
                "manual_resets_total": c.manual_resets_total,
                "persistence_failures_total": c.persistence_failures_total,
                "persistence_suspended_total": c.persistence_suspended_total,
            }
        if extra:
            snap.update(extra)
        return snap
