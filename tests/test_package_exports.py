import importlib

import pytest


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    import shield_gateway

    # Access via attribute (lazy import)
    assert hasattr(shield_gateway, "Shield")
    assert hasattr(shield_gateway, "create_app")

    from shield_gateway import Direction, Recommendation, Shield, ShieldConfig  # noqa: F401
    from shield_gateway import AuditLedger, ShieldError, VotingAggregator  # noqa: F401

    assert Direction.A.opposite is Direction.B
    importlib.reload(shield_gateway)


def test_unknown_attribute_raises():
    import shield_gateway

    with pytest.raises(AttributeError):
        shield_gateway.NoSuchThing


def test_version_export_matches_pyproject():
    import shield_gateway

    assert hasattr(shield_gateway, "__version__")
    assert shield_gateway.__version__ == _read_pyproject_version()
