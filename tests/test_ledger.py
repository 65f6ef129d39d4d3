import json

import pytest

from shield_gateway.ledger import GENESIS_DIGEST, AuditLedger, compute_digest


def _ledger(n=3, path=None):
    ts = iter(range(1000, 100000, 1000))
    led = AuditLedger(path=path, clock_ms=lambda: next(ts))
    for i in range(n):
        led.append({"event": "decision", "i": i})
    return led


def test_appends_chain_and_verify():
    led = _ledger(3)
    recs = led.records
    assert [r.index for r in recs] == [0, 1, 2]
    assert recs[0].previous_digest == GENESIS_DIGEST
    for prev, cur in zip(recs, recs[1:]):
        assert cur.previous_digest == prev.digest
    assert recs[1].digest == compute_digest(recs[0].digest, recs[1].timestamp_ms, {"event": "decision", "i": 1})
    assert led.head == recs[-1].digest
    assert led.verify()
    assert led.verify_detailed() == (True, "OK", -1)


def test_empty_ledger_verifies():
    assert AuditLedger().verify()


def test_payload_mutation_fails_at_that_record():
    led = _ledger(4)
    led.records[1].payload["i"] = 99
    assert led.verify() is False
    assert led.verify_detailed() == (False, "DIGEST_MISMATCH", 1)


def test_digest_mutation_fails_at_that_record():
    led = _ledger(4)
    led.records[2].digest = "f" * 64
    assert led.verify_detailed() == (False, "DIGEST_MISMATCH", 2)


def test_broken_link_is_detected():
    led = _ledger(4)
    led.records[3].previous_digest = "0" * 64
    assert led.verify_detailed() == (False, "CHAIN_BROKEN", 3)


def test_caller_payload_is_copied():
    led = AuditLedger()
    payload = {"event": "x", "nested": {"a": 1}}
    led.append(payload)
    payload["nested"]["a"] = 2
    assert led.verify()
    assert led.records[0].payload["nested"]["a"] == 1


def test_file_sink_verify_and_continue(tmp_path):
    path = str(tmp_path / "ledger.jsonl")
    led = _ledger(3, path=path)
    assert AuditLedger.verify_file(path) == (True, "OK", 3)

    # Restart: the chain continues from the file's head.
    led2 = AuditLedger(path=path)
    assert led2.head == led.head
    rec = led2.append({"event": "after_restart"})
    assert rec.index == 3
    assert rec.previous_digest == led.head
    assert AuditLedger.verify_file(path) == (True, "OK", 4)


def test_file_tampering_detected(tmp_path):
    path = tmp_path / "ledger.jsonl"
    _ledger(3, path=str(path))
    lines = path.read_text(encoding="utf-8").splitlines()
    rec = json.loads(lines[1])
    rec["payload"]["i"] = 42
    lines[1] = json.dumps(rec)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    assert AuditLedger.verify_file(str(path)) == (False, "DIGEST_MISMATCH", 2)


def test_file_garbage_and_missing(tmp_path):
    assert AuditLedger.verify_file(str(tmp_path / "nope.jsonl")) == (True, "NO_FILE", 0)
    bad = tmp_path / "bad.jsonl"
    bad.write_text("{not json}\n", encoding="utf-8")
    assert AuditLedger.verify_file(str(bad)) == (False, "PARSE_ERROR", 1)


def test_memory_tail_is_bounded_and_file_keeps_full_chain(tmp_path):
    path = tmp_path / "ledger.jsonl"
    led = AuditLedger(path=str(path), max_records=3)
    for i in range(10):
        led.append({"event": "decision", "i": i})
    assert len(led) == 3
    assert [r.index for r in led.records] == [7, 8, 9]
    assert led.total_records == 10
    assert led.verify()
    assert AuditLedger.verify_file(str(path)) == (True, "OK", 10)

    led.records[0].payload["i"] = 0
    assert led.verify_detailed() == (False, "DIGEST_MISMATCH", 7)


def test_max_records_must_be_positive():
    with pytest.raises(ValueError):
        AuditLedger(max_records=0)
