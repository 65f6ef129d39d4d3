import dataclasses

import pytest

from shield_gateway.config import ShieldConfig, ThresholdPolicy
from shield_gateway.errors import SHIELD_E_CONFIG, ShieldError


def test_defaults_are_valid():
    cfg = ShieldConfig()
    assert cfg.validate() == []
    assert cfg.threshold.initial == 0.60
    assert cfg.standby.invert_max_consecutive_traps == 2
    assert cfg.contextual.min_history == 20


def test_invalid_threshold_bounds_are_reported():
    cfg = dataclasses.replace(ShieldConfig(), threshold=ThresholdPolicy(initial=0.9))
    errs = cfg.validate()
    assert any("initial" in e for e in errs)
    with pytest.raises(ShieldError) as ei:
        cfg.raise_if_invalid()
    assert ei.value.code == SHIELD_E_CONFIG


def test_from_dict_rejects_unknown_keys():
    cfg = ShieldConfig.from_dict({"standby": {"standby_confidence": 0.9}})
    assert cfg.standby.standby_confidence == 0.9
    with pytest.raises(ShieldError):
        ShieldConfig.from_dict({"nope": {}})
    with pytest.raises(ShieldError):
        ShieldConfig.from_dict({"standby": {"typo": 1}})


def test_from_env_overrides_and_clamps(monkeypatch):
    monkeypatch.setenv("SHIELD_INITIAL_THRESHOLD", "0.99")
    monkeypatch.setenv("SHIELD_STATE_BACKEND", "SQLite")
    monkeypatch.setenv("SHIELD_STATE_PATH", "/tmp/shield.db")
    monkeypatch.setenv("SHIELD_PERSIST_ASYNC", "0")
    monkeypatch.setenv("SHIELD_DB_FAILURE_THRESHOLD", "not-a-number")
    cfg = ShieldConfig.from_env()
    assert cfg.threshold.initial == 0.75
    assert cfg.persistence.backend == "sqlite"
    assert cfg.persistence.state_path == "/tmp/shield.db"
    assert cfg.persistence.persist_async is False
    assert cfg.persistence.failure_threshold == 3


def test_from_env_keeps_base_sections(monkeypatch):
    monkeypatch.delenv("SHIELD_INITIAL_THRESHOLD", raising=False)
    base = ShieldConfig.from_dict({"frequency": {"trigger_score": 0.7}, "threshold": {"initial": 0.5}})
    cfg = ShieldConfig.from_env(base)
    assert cfg.frequency.trigger_score == 0.7
    assert cfg.threshold.initial == 0.5


def test_ledger_tail_size_must_be_positive():
    cfg = ShieldConfig()
    cfg = dataclasses.replace(cfg, persistence=dataclasses.replace(cfg.persistence, ledger_max_records=0))
    assert any("ledger_max_records" in e for e in cfg.validate())
