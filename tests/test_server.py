import dataclasses

import pytest
from fastapi.testclient import TestClient

from shield_gateway.aggregator import AggregateResult
from shield_gateway.config import ShieldConfig
from shield_gateway.detectors import DetectorVote
from shield_gateway.persistence import InMemoryPersistence
from shield_gateway.server import create_app
from shield_gateway.shield import Shield


class _AlwaysTrap:
    def evaluate(self, sequence, context=None):
        return AggregateResult(1.0, tuple(DetectorVote(f"d{i}", True) for i in range(4)))


@pytest.fixture
def shield():
    cfg = ShieldConfig()
    cfg = dataclasses.replace(cfg, persistence=dataclasses.replace(cfg.persistence, persist_async=False))
    s = Shield(cfg, backend=InMemoryPersistence())
    yield s
    s.close()


@pytest.fixture
def client(shield):
    return TestClient(create_app(shield))


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy", "mode": "ACTIVE", "persistence_suspended": False}


def test_outcomes_then_check(client):
    for _ in range(16):
        r = client.post("/v1/outcomes", json={"value": "A"})
        assert r.status_code == 200
    assert r.json()["sequence_length"] == 16

    r = client.post("/v1/check", json={"candidate": "A", "context": {"momentum": 0.4}})
    assert r.status_code == 200
    body = r.json()
    assert body["recommendation"] == "PROCEED"
    assert body["can_proceed"] is True
    assert body["votes"]["frequency"] is True
    assert body["confidence"] == pytest.approx(0.25)


def test_bad_direction_is_validation_envelope(client):
    r = client.post("/v1/check", json={"candidate": "C"})
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "SHIELD_E_VALIDATION"
    assert body["retryable"] is False
    assert body["details"]["field"] == "candidate"


def test_malformed_body_is_validation_envelope(client):
    r = client.post("/v1/trades", json={"direction": "A"})
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "SHIELD_E_VALIDATION"
    assert body["details"]["errors"]

    r = client.post("/v1/trades", json={"direction": "A", "stake": -5})
    assert r.status_code == 400
    assert r.json()["code"] == "SHIELD_E_VALIDATION"


def test_standby_and_reset_flow(client, shield):
    r = client.post("/v1/reset", json={"confirmed": True})
    assert r.json()["already_active"] is True

    shield.machine.aggregator = _AlwaysTrap()
    r = client.post("/v1/check", json={"candidate": "B"})
    assert r.json()["recommendation"] == "STANDBY"
    assert r.json()["can_proceed"] is False

    status = client.get("/v1/standby").json()
    assert status["is_standby"] is True
    assert status["standby_count"] == 1

    r = client.post("/v1/reset", json={})
    assert r.json()["needs_confirmation"] is True
    assert client.get("/v1/health").json()["mode"] == "STANDBY"

    r = client.post("/v1/reset", json={"confirmed": True})
    assert r.json()["success"] is True
    assert client.get("/v1/standby").json() == {"is_standby": False, "can_operate": True}


def test_learn_and_stats(client):
    client.post("/v1/trades", json={"direction": "A", "stake": 10})
    r = client.post("/v1/learn", json={"original": "A", "actual": "B", "was_inverted": True})
    assert r.status_code == 200
    assert r.json()["ok"] is True

    stats = client.get("/v1/stats").json()
    assert stats["totals"]["successful_inversions"] == 1
    assert stats["inversion_history_length"] == 1
    assert "ops" in stats


def test_ledger_verify(client, shield):
    client.post("/v1/check", json={"candidate": "A"})
    body = client.get("/v1/ledger/verify").json()
    assert body == {"ok": True, "reason": "OK", "index": -1, "records": 1}

    shield.ledger.records[0].payload["confidence"] = 0.99
    body = client.get("/v1/ledger/verify").json()
    assert body["ok"] is False
    assert body["reason"] == "DIGEST_MISMATCH"
    assert body["index"] == 0


def test_metrics_endpoint(client):
    client.post("/v1/check", json={"candidate": "A"})
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "shield_decisions_total" in r.text
    assert "shield_detector_votes_total" in r.text


@pytest.mark.parametrize("value", ["yes", 1, "true"])
def test_reset_requires_a_real_boolean(client, shield, value):
    shield.machine.aggregator = _AlwaysTrap()
    client.post("/v1/check", json={"candidate": "B"})
    assert shield.is_standby

    r = client.post("/v1/reset", json={"confirmed": value})
    assert r.status_code == 400
    assert r.json()["code"] == "SHIELD_E_VALIDATION"
    assert shield.is_standby


def test_learn_requires_a_real_boolean(client, shield):
    r = client.post("/v1/learn", json={"original": "A", "actual": "B", "was_inverted": "yes"})
    assert r.status_code == 400
    assert r.json()["code"] == "SHIELD_E_VALIDATION"
    assert shield.threshold.history == ()
    assert shield.frequency.learned_patterns == {}
