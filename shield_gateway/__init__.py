"""Shield Gateway package.

A decision gate for binary (A/B) actions:

- Four independent statistical detectors (frequency, tempo, microstructure,
  contextual features) over the recent resolved outcomes
- Unweighted voting with an adaptively tuned trigger threshold
- PROCEED / INVERT / BLOCK / STANDBY decisions, with STANDBY held until a
  confirmed manual reset
- Hash-chained audit ledger and durable state across restarts

Convenience imports
------------------
The package avoids heavy import-time side effects (FastAPI, uvicorn). These
are available as top-level imports and are loaded lazily:

    from shield_gateway import Shield, ShieldConfig, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    We avoid adding runtime TOML dependencies. The project version is a simple
    `version = "..."` field in `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "1.0.0"

# Public symbols we want to make available at the package root.
__all__ = [
    "__version__",
    "Shield",
    "ShieldConfig",
    "ShieldError",
    "Direction",
    "EnsembleDecision",
    "Recommendation",
    "ResetResult",
    "AuditLedger",
    "VotingAggregator",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "Shield": ("shield_gateway.shield", "Shield"),
    "ShieldConfig": ("shield_gateway.config", "ShieldConfig"),
    "ShieldError": ("shield_gateway.errors", "ShieldError"),
    "Direction": ("shield_gateway.sequence", "Direction"),
    "EnsembleDecision": ("shield_gateway.state_machine", "EnsembleDecision"),
    "Recommendation": ("shield_gateway.state_machine", "Recommendation"),
    "ResetResult": ("shield_gateway.state_machine", "ResetResult"),
    "AuditLedger": ("shield_gateway.ledger", "AuditLedger"),
    "VotingAggregator": ("shield_gateway.aggregator", "VotingAggregator"),
    "create_app": ("shield_gateway.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'shield_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    # Include lazy exports for IDE/autocomplete.
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
