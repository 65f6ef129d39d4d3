"""Durable storage for the shield state.

The persisted record is a JSON object (schema version 2):

    {schemaVersion, mode, inversionHistory, consecutiveTrapCount,
     adaptiveThreshold, totals{checks, trapsDetected, inversions,
     successfulInversions}, standbyTrigger, standbyHistory, learnedPatterns,
     timestamp}

`timestamp` is epoch milliseconds. A record is restored only if it is younger
than `max_state_age_days`. Version-less records (the flat version 1 layout)
are migrated on load; unknown future versions mean "no prior state".

Backends only move opaque text. `PersistenceGateway` owns encoding,
migration, freshness and the circuit breaker, and never raises into the
decision path. `PersistenceWriter` moves writes off the caller's thread and
always writes the newest snapshot it has been handed.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Protocol

from . import metrics
from .breaker import PersistenceCircuitBreaker, StorageSuspendedError
from .config import PersistencePolicy
from .errors import PersistenceFailure, persistence_failure
from .ops_stats import OpsStats
from .sequence import now_ms

logger = logging.getLogger("shield_gateway.persistence")

SCHEMA_VERSION = 2
STATE_KEY = "shield_state"
DAY_MS = 24 * 60 * 60 * 1000


class PersistenceBackend(Protocol):
    def read(self) -> Optional[str]:
        ...

    def write(self, text: str) -> None:
        ...

    def clear(self) -> None:
        ...


class InMemoryPersistence:
    """Process-local backend (tests, ephemeral deployments)."""

    def __init__(self, initial: Optional[str] = None):
        self._lock = threading.Lock()
        self._text = initial
        self.writes = 0

    def read(self) -> Optional[str]:
        with self._lock:
            return self._text

    def write(self, text: str) -> None:
        with self._lock:
            self._text = text
            self.writes += 1

    def clear(self) -> None:
        with self._lock:
            self._text = None


class JsonFilePersistence:
    """One JSON document on disk, replaced atomically (temp file + os.replace)."""

    def __init__(self, path: str):
        self.path = str(path)
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def read(self) -> Optional[str]:
        p = Path(self.path)
        if not p.exists():
            return None
        return p.read_text(encoding="utf-8")

    def write(self, text: str) -> None:
        p = Path(self.path)
        fd, tmp = tempfile.mkstemp(prefix=p.name + ".", suffix=".tmp", dir=str(p.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def clear(self) -> None:
        p = Path(self.path)
        if p.exists():
            p.unlink()


class SQLitePersistence:
    """Single-row key/value table in SQLite (WAL)."""

    def __init__(self, path: str, key: str = STATE_KEY, timeout_seconds: float = 5.0):
        self.path = str(path)
        self.key = key
        self.timeout_seconds = float(timeout_seconds)
        self._lock = threading.Lock()
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=self.timeout_seconds)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._lock, self._db() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS shield_metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL
                )
                """
            )

    def read(self) -> Optional[str]:
        with self._lock, self._db() as conn:
            row = conn.execute("SELECT value FROM shield_metadata WHERE key = ?", (self.key,)).fetchone()
            return row[0] if row else None

    def write(self, text: str) -> None:
        with self._lock, self._db() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO shield_metadata (key, value, updated_at_utc) VALUES (?, ?, ?)",
                (self.key, text, datetime.now(timezone.utc).isoformat()),
            )

    def clear(self) -> None:
        with self._lock, self._db() as conn:
            conn.execute("DELETE FROM shield_metadata WHERE key = ?", (self.key,))


def make_backend(policy: PersistencePolicy) -> PersistenceBackend:
    if policy.backend == "json":
        return JsonFilePersistence(policy.state_path)
    if policy.backend == "sqlite":
        return SQLitePersistence(policy.state_path)
    return InMemoryPersistence()


# ---------------------------
# Schema
# ---------------------------

def _migrate_trigger_v1(t: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(t, dict):
        return None
    details = t.get("details") if isinstance(t.get("details"), dict) else {}
    return {
        "reason": str(t.get("reason") or "unknown"),
        "confidence": float(t.get("confidenceAtTrigger", details.get("confidence", 0.0)) or 0.0),
        "votes": details.get("votes") if isinstance(details.get("votes"), dict) else {},
        "consecutiveTrapCount": int(t.get("consecutiveTrapsAtTrigger", 0) or 0),
        "threshold": float(t.get("thresholdAtTrigger", 0.0) or 0.0),
        "timestamp": int(t.get("timestamp", 0) or 0),
    }


def migrate_v1(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Translate the version-less flat layout to schema version 2."""
    standby = bool(raw.get("isStandby")) or bool(raw.get("requiresManualReset"))
    history = [h for h in (_migrate_trigger_v1(t) for t in raw.get("standbyHistory") or []) if h]
    trigger = _migrate_trigger_v1(raw.get("lastTriggerReason")) if standby else None
    if standby and trigger is None:
        trigger = {
            "reason": "migrated",
            "confidence": 0.0,
            "votes": {},
            "consecutiveTrapCount": int(raw.get("consecutiveTraps", 0) or 0),
            "threshold": float(raw.get("adaptiveThreshold", 0.0) or 0.0),
            "timestamp": int(raw.get("timestamp", 0) or 0),
        }
    return {
        "schemaVersion": SCHEMA_VERSION,
        "mode": "STANDBY" if standby else "ACTIVE",
        "inversionHistory": [1 if h else 0 for h in raw.get("inversionHistory") or []],
        "consecutiveTrapCount": int(raw.get("consecutiveTraps", 0) or 0),
        "adaptiveThreshold": raw.get("adaptiveThreshold"),
        "totals": {
            "checks": int(raw.get("totalChecks", 0) or 0),
            "trapsDetected": int(raw.get("totalTrapsDetected", 0) or 0),
            "inversions": int(raw.get("totalInversions", 0) or 0),
            "successfulInversions": int(raw.get("successfulInversions", 0) or 0),
        },
        "standbyTrigger": trigger,
        "standbyHistory": history,
        "learnedPatterns": list(raw.get("learnedPatterns") or []),
        "timestamp": int(raw.get("timestamp", 0) or 0),
    }


def upgrade_record(raw: Any) -> Optional[Dict[str, Any]]:
    """Return a schema-2 record, or None if `raw` cannot be used."""
    if not isinstance(raw, dict):
        return None
    version = raw.get("schemaVersion")
    if version is None:
        logger.info("Migrating version-less shield state to schema %d", SCHEMA_VERSION)
        return migrate_v1(raw)
    if version == SCHEMA_VERSION:
        return raw
    logger.warning("Unsupported shield state schemaVersion=%r; starting fresh", version)
    return None


def is_fresh(record: Dict[str, Any], now: int, max_age_days: float) -> bool:
    try:
        ts = int(record.get("timestamp") or 0)
    except (TypeError, ValueError):
        return False
    return (now - ts) < max_age_days * DAY_MS


class PersistenceGateway:
    """Load/save shield state records through a backend, guarded by a breaker."""

    def __init__(
        self,
        backend: Optional[PersistenceBackend] = None,
        policy: Optional[PersistencePolicy] = None,
        *,
        ops_stats: Optional[OpsStats] = None,
        breaker: Optional[PersistenceCircuitBreaker] = None,
        clock_ms: Callable[[], int] = now_ms,
    ):
        self.policy = policy or PersistencePolicy()
        self.backend = backend if backend is not None else make_backend(self.policy)
        self.ops_stats = ops_stats
        self.breaker = breaker or PersistenceCircuitBreaker(self.policy)
        self._clock_ms = clock_ms

    def _failed(self, operation: str, exc: BaseException) -> None:
        logger.warning("Shield state %s failed: %s", operation, exc)
        metrics.record_persistence_failure(operation)
        if self.ops_stats is not None:
            self.ops_stats.record_persistence_failure()

    def load(self) -> Optional[Dict[str, Any]]:
        """Return a fresh schema-2 record, or None ("no prior state")."""
        try:
            text = self.backend.read()
        except (OSError, sqlite3.Error, ValueError) as e:
            # ValueError covers undecodable bytes in a file backend.
            self._failed("load", e)
            return None
        if not text:
            return None
        try:
            record = upgrade_record(json.loads(text))
        except (TypeError, ValueError) as e:
            self._failed("load", persistence_failure("corrupt shield state", error=str(e)))
            return None
        if record is None:
            return None
        if not is_fresh(record, self._clock_ms(), self.policy.max_state_age_days):
            logger.info("Persisted shield state is older than %s days; ignoring", self.policy.max_state_age_days)
            return None
        return record

    def record_unusable(self, exc: BaseException) -> None:
        """Count a loaded record that could not be applied; the caller starts fresh."""
        self._failed("load", persistence_failure("unusable shield state", error=str(exc)))

    def save(self, record: Dict[str, Any]) -> bool:
        """Write a record. Failures are logged and counted, never raised."""
        try:
            self.breaker.raise_if_suspended()
        except StorageSuspendedError:
            if self.ops_stats is not None:
                self.ops_stats.record_persistence_suspended()
            logger.debug("Persistence suspended; dropping write")
            return False
        try:
            text = json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)
            self.backend.write(text)
        except (OSError, sqlite3.Error, TypeError, ValueError, PersistenceFailure) as e:
            self._failed("save", e)
            if self.breaker.record_failure():
                logger.warning(
                    "Persistence suspended for %ss after repeated failures",
                    self.policy.lockdown_seconds,
                )
            return False
        self.breaker.record_success()
        return True

    def clear(self) -> bool:
        try:
            self.backend.clear()
        except (OSError, sqlite3.Error) as e:
            self._failed("clear", e)
            return False
        return True


class PersistenceWriter:
    """Background writer that persists the latest submitted snapshot.

    Submissions coalesce: if several snapshots arrive while a write is in
    flight, only the newest one is written next.
    """

    def __init__(self, gateway: PersistenceGateway, name: str = "shield-persistence"):
        self.gateway = gateway
        self._cond = threading.Condition()
        self._pending: Optional[Dict[str, Any]] = None
        self._busy = False
        self._closed = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def submit(self, record: Dict[str, Any]) -> None:
        with self._cond:
            if self._closed:
                raise RuntimeError("PersistenceWriter is closed")
            self._pending = record
            self._cond.notify_all()

    def _run(self) -> None:
        while True:
            with self._cond:
                while self._pending is None and not self._closed:
                    self._cond.wait()
                if self._pending is None and self._closed:
                    return
                record, self._pending = self._pending, None
                self._busy = True
            try:
                self.gateway.save(record)
            except Exception:
                logger.exception("Persistence writer failed to save a snapshot; continuing")
            finally:
                with self._cond:
                    self._busy = False
                    self._cond.notify_all()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every submitted snapshot has been written (or dropped)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._pending is not None or self._busy:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def close(self, timeout: Optional[float] = 5.0) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self._thread.join(timeout)
