import json

import pytest

from shield_gateway.breaker import PersistenceCircuitBreaker, StorageSuspendedError
from shield_gateway.config import PersistencePolicy
from shield_gateway.ops_stats import OpsStats
from shield_gateway.persistence import (
    DAY_MS,
    InMemoryPersistence,
    JsonFilePersistence,
    PersistenceGateway,
    PersistenceWriter,
    SQLitePersistence,
    is_fresh,
    migrate_v1,
    upgrade_record,
)

NOW = 1_700_000_000_000


def _record(ts=NOW, **over):
    rec = {
        "schemaVersion": 2,
        "mode": "ACTIVE",
        "inversionHistory": [1, 0],
        "consecutiveTrapCount": 1,
        "adaptiveThreshold": 0.62,
        "totals": {"checks": 3, "trapsDetected": 1, "inversions": 1, "successfulInversions": 1},
        "standbyTrigger": None,
        "standbyHistory": [],
        "learnedPatterns": [],
        "timestamp": ts,
    }
    rec.update(over)
    return rec


V1_BLOB = {
    "inversionHistory": [1, 1, 0],
    "consecutiveTraps": 3,
    "adaptiveThreshold": 0.7,
    "totalChecks": 12,
    "totalTrapsDetected": 4,
    "totalInversions": 3,
    "successfulInversions": 2,
    "learnedPatterns": [["ABABABABAB", {"count": 2, "traps": 1}]],
    "isStandby": True,
    "requiresManualReset": True,
    "lastTriggerReason": {
        "reason": "critical trap",
        "details": {"confidence": 0.75, "votes": {"anomaly": 1}},
        "timestamp": NOW - 1000,
        "consecutiveTrapsAtTrigger": 3,
        "confidenceAtTrigger": 0.75,
        "thresholdAtTrigger": 0.7,
    },
    "standbyHistory": [],
    "timestamp": NOW - 500,
}


def test_json_file_backend_round_trip(tmp_path):
    b = JsonFilePersistence(str(tmp_path / "state" / "shield.json"))
    assert b.read() is None
    b.write('{"a":1}')
    b.write('{"a":2}')
    assert b.read() == '{"a":2}'
    # No temp files left behind.
    assert [p.name for p in (tmp_path / "state").iterdir()] == ["shield.json"]
    b.clear()
    assert b.read() is None


def test_sqlite_backend_round_trip(tmp_path):
    path = str(tmp_path / "shield.db")
    b = SQLitePersistence(path)
    assert b.read() is None
    b.write("one")
    b.write("two")
    assert SQLitePersistence(path).read() == "two"
    b.clear()
    assert b.read() is None


def test_v1_blob_is_migrated():
    rec = migrate_v1(V1_BLOB)
    assert rec["schemaVersion"] == 2
    assert rec["mode"] == "STANDBY"
    assert rec["consecutiveTrapCount"] == 3
    assert rec["totals"] == {"checks": 12, "trapsDetected": 4, "inversions": 3, "successfulInversions": 2}
    assert rec["standbyTrigger"]["reason"] == "critical trap"
    assert rec["standbyTrigger"]["confidence"] == 0.75
    assert rec["standbyTrigger"]["consecutiveTrapCount"] == 3
    assert rec["inversionHistory"] == [1, 1, 0]
    assert rec["learnedPatterns"] == V1_BLOB["learnedPatterns"]


def test_upgrade_record_versions():
    assert upgrade_record(_record())["schemaVersion"] == 2
    assert upgrade_record(V1_BLOB)["schemaVersion"] == 2
    assert upgrade_record(_record(schemaVersion=3)) is None
    assert upgrade_record([1, 2, 3]) is None


def test_freshness_window():
    assert is_fresh(_record(), NOW, 7)
    assert is_fresh(_record(ts=NOW - 7 * DAY_MS + 1), NOW, 7)
    assert not is_fresh(_record(ts=NOW - 7 * DAY_MS), NOW, 7)
    assert not is_fresh(_record(ts="soon"), NOW, 7)


def test_gateway_load_filters_stale_corrupt_and_future():
    stats = OpsStats()
    backend = InMemoryPersistence()
    gw = PersistenceGateway(backend, ops_stats=stats, clock_ms=lambda: NOW)
    assert gw.load() is None

    backend.write(json.dumps(_record()))
    assert gw.load()["adaptiveThreshold"] == 0.62

    backend.write(json.dumps(_record(ts=NOW - 8 * DAY_MS)))
    assert gw.load() is None

    backend.write(json.dumps(_record(schemaVersion=99)))
    assert gw.load() is None

    backend.write("{truncated")
    assert gw.load() is None
    assert stats.snapshot()["persistence_failures_total"] == 1


class _FailingBackend(InMemoryPersistence):
    def write(self, text):
        raise OSError("disk full")


def test_save_failures_trip_the_breaker_and_never_raise():
    now = [100.0]
    policy = PersistencePolicy(failure_threshold=2, lockdown_seconds=30)
    breaker = PersistenceCircuitBreaker(policy, monotonic=lambda: now[0])
    stats = OpsStats()
    gw = PersistenceGateway(_FailingBackend(), policy, ops_stats=stats, breaker=breaker)

    assert gw.save(_record()) is False
    assert not breaker.is_suspended()
    assert gw.save(_record()) is False
    assert breaker.is_suspended()
    with pytest.raises(StorageSuspendedError):
        breaker.raise_if_suspended()

    # Suspended: the backend is not touched.
    assert gw.save(_record()) is False
    snap = stats.snapshot()
    assert snap["persistence_failures_total"] == 2
    assert snap["persistence_suspended_total"] == 1

    now[0] += 31
    assert not breaker.is_suspended()


def test_writer_coalesces_and_flushes():
    backend = InMemoryPersistence()
    gw = PersistenceGateway(backend, clock_ms=lambda: NOW)
    writer = PersistenceWriter(gw)
    try:
        for i in range(20):
            writer.submit(_record(consecutiveTrapCount=i))
        assert writer.flush(timeout=5.0)
        assert json.loads(backend.read())["consecutiveTrapCount"] == 19
        assert 1 <= backend.writes <= 20
    finally:
        writer.close()
    with pytest.raises(RuntimeError):
        writer.submit(_record())


def test_undecodable_state_file_is_no_prior_state(tmp_path):
    path = tmp_path / "shield.json"
    path.write_bytes(b"\xff\xfe\x00garbage")
    stats = OpsStats()
    gw = PersistenceGateway(JsonFilePersistence(str(path)), ops_stats=stats, clock_ms=lambda: NOW)
    assert gw.load() is None
    assert stats.snapshot()["persistence_failures_total"] == 1


class _FlakyBackend(InMemoryPersistence):
    def __init__(self):
        super().__init__()
        self.fail_next = True

    def write(self, text):
        if self.fail_next:
            self.fail_next = False
            raise RuntimeError("driver bug")
        super().write(text)


def test_writer_survives_unexpected_save_errors():
    backend = _FlakyBackend()
    writer = PersistenceWriter(PersistenceGateway(backend, clock_ms=lambda: NOW))
    try:
        writer.submit(_record(consecutiveTrapCount=1))
        assert writer.flush(timeout=5.0)
        assert backend.read() is None

        writer.submit(_record(consecutiveTrapCount=7))
        assert writer.flush(timeout=5.0)
        assert json.loads(backend.read())["consecutiveTrapCount"] == 7
    finally:
        writer.close()
