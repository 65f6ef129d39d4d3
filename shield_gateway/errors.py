"""Stable error taxonomy for the shield.

This module defines machine-readable error codes and a single exception type
used across the shield core, persistence layer, HTTP API, and CLI.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Input validation
SHIELD_E_VALIDATION = "SHIELD_E_VALIDATION"

# Detectors
SHIELD_E_INSUFFICIENT_DATA = "SHIELD_E_INSUFFICIENT_DATA"

# Persistence
SHIELD_E_PERSISTENCE = "SHIELD_E_PERSISTENCE"
SHIELD_E_STORAGE_SUSPENDED = "SHIELD_E_STORAGE_SUSPENDED"

# Configuration
SHIELD_E_CONFIG = "SHIELD_E_CONFIG"


@dataclass
class ShieldError(Exception):
    """Base shield exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(ShieldError):
    """Malformed direction, stake, or payload. Raised before any mutation."""


class InsufficientDataError(ShieldError):
    """A detector's window is too small; the aggregator turns it into an abstention."""


class PersistenceFailure(ShieldError):
    """Durable store unavailable or unreadable. Logged, never propagated to check()."""


def shield_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> ShieldError:
    return ShieldError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def validation_error(message: str, **details: Any) -> ValidationError:
    return ValidationError(code=SHIELD_E_VALIDATION, message=message, http_status=400, details=details)


def insufficient_data(detector_id: str, have: int, need: int) -> InsufficientDataError:
    return InsufficientDataError(
        code=SHIELD_E_INSUFFICIENT_DATA,
        message=f"{detector_id}: need {need} samples, have {have}",
        details={"detector_id": detector_id, "have": int(have), "need": int(need)},
    )


def persistence_failure(message: str, *, retryable: bool = True, **details: Any) -> PersistenceFailure:
    return PersistenceFailure(
        code=SHIELD_E_PERSISTENCE,
        message=message,
        retryable=retryable,
        http_status=503,
        details=details,
    )
