"""Hash-chained, append-only audit ledger.

Each record carries:
- previous_digest: digest of the prior record (64 zeros for the first one)
- digest: SHA256 over a length-prefixed encoding of
  (previous_digest, timestamp_ms, canonical JSON of the payload)

Changing any field of any record breaks the chain at that record. The digest
is for tamper-evidence and debugging only; there are no signatures here.

Records can optionally be mirrored to a JSONL file, one record per line.
`AuditLedger.verify_file` re-walks such a file and `AuditLedger.load`
continues the chain from it after a restart.

Only the most recent `max_records` records are kept in memory. `verify()`
checks that tail; the file sink, when present, holds the full chain.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .sequence import now_ms

logger = logging.getLogger("shield_gateway.ledger")

GENESIS_DIGEST = "0" * 64
LEDGER_VERSION = "SHIELD_LEDGER_V1"


def canonical_json_dumps(obj: Any) -> str:
    """Canonical JSON for stable hashing.

    - sort_keys: deterministic key order
    - separators: no whitespace ambiguity
    - ensure_ascii=False: preserve unicode deterministically (UTF-8)
    - default=str: avoid crashes on enums/datetimes while keeping determinism
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _sha256_hex(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def _safe_hash_encode(components: List[str]) -> bytes:
    """Unambiguous encoding: each component is <8-byte big-endian length><UTF-8 bytes>."""
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        result += len(encoded).to_bytes(8, byteorder="big") + encoded
    return result


def compute_digest(previous_digest: str, timestamp_ms: int, payload: Dict[str, Any]) -> str:
    return _sha256_hex(_safe_hash_encode([previous_digest, str(int(timestamp_ms)), canonical_json_dumps(payload)]))


@dataclass
class LedgerRecord:
    index: int
    timestamp_ms: int
    digest: str
    previous_digest: str
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": LEDGER_VERSION,
            "index": self.index,
            "timestamp_ms": self.timestamp_ms,
            "digest": self.digest,
            "previous_digest": self.previous_digest,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=False, default=str)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LedgerRecord":
        payload = d.get("payload")
        if not isinstance(payload, dict):
            raise ValueError("payload must be an object")
        return cls(
            index=int(d["index"]),
            timestamp_ms=int(d["timestamp_ms"]),
            digest=str(d["digest"]),
            previous_digest=str(d["previous_digest"]),
            payload=payload,
        )


class AuditLedger:
    """Append-only chain of decision and state-transition records."""

    def __init__(
        self,
        path: Optional[str] = None,
        clock_ms: Callable[[], int] = now_ms,
        max_records: int = 10_000,
    ):
        if max_records < 1:
            raise ValueError("max_records must be positive")
        self.path = str(path) if path else None
        self.max_records = int(max_records)
        self._clock_ms = clock_ms
        self._lock = threading.Lock()
        self._records: List[LedgerRecord] = []
        self._head = GENESIS_DIGEST
        self._next_index = 0
        if self.path:
            p = Path(self.path)
            p.parent.mkdir(parents=True, exist_ok=True)
            try:
                head = self.load(self.path)
            except (ValueError, KeyError, TypeError) as e:
                # Corrupt sink: restart at genesis; verify_file will report the damage.
                logger.warning("Ledger file %s unreadable, chain restarts at genesis: %s", self.path, e)
                head = None
            if head is not None:
                self._next_index, self._head = head

    def append(self, payload: Dict[str, Any], timestamp_ms: Optional[int] = None) -> LedgerRecord:
        ts = int(self._clock_ms() if timestamp_ms is None else timestamp_ms)
        # Freeze the payload as plain JSON so later mutation of the caller's dict is not recorded.
        frozen = json.loads(canonical_json_dumps(payload))
        with self._lock:
            rec = LedgerRecord(
                index=self._next_index,
                timestamp_ms=ts,
                digest=compute_digest(self._head, ts, frozen),
                previous_digest=self._head,
                payload=frozen,
            )
            if self.path:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(rec.to_json() + "\n")
            self._records.append(rec)
            if len(self._records) > self.max_records:
                del self._records[: len(self._records) - self.max_records]
            self._head = rec.digest
            self._next_index += 1
        return rec

    @property
    def head(self) -> str:
        return self._head

    @property
    def records(self) -> List[LedgerRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def verify(self) -> bool:
        ok, reason, index = self.verify_detailed()
        return ok

    def verify_detailed(self) -> Tuple[bool, str, int]:
        """Returns (ok, reason, index of the first bad record or -1)."""
        with self._lock:
            records = list(self._records)
        if not records:
            return True, "EMPTY", -1
        prev = records[0].previous_digest
        if records[0].index == 0 and prev != GENESIS_DIGEST:
            logger.error("Ledger genesis link broken at index 0")
            return False, "CHAIN_BROKEN", 0
        for i, rec in enumerate(records):
            if i > 0 and rec.previous_digest != prev:
                logger.error("Ledger chain broken at record %d", rec.index)
                return False, "CHAIN_BROKEN", rec.index
            expected = compute_digest(rec.previous_digest, rec.timestamp_ms, rec.payload)
            if expected != rec.digest:
                logger.error("Ledger digest mismatch at record %d", rec.index)
                return False, "DIGEST_MISMATCH", rec.index
            prev = rec.digest
        return True, "OK", -1

    @property
    def total_records(self) -> int:
        """Records appended over the chain's lifetime, including trimmed ones."""
        return self._next_index

    @staticmethod
    def load(path: str) -> Optional[Tuple[int, str]]:
        """Return (next_index, head_digest) of an existing ledger file, or None."""
        p = Path(path)
        if not p.exists() or p.stat().st_size == 0:
            return None
        last: Optional[Dict[str, Any]] = None
        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    last = json.loads(line)
        if last is None:
            return None
        return int(last["index"]) + 1, str(last["digest"])

    @staticmethod
    def verify_file(path: str) -> Tuple[bool, str, int]:
        """Verify a ledger JSONL file. Returns (ok, reason, count)."""
        p = Path(path)
        if not p.exists():
            return True, "NO_FILE", 0

        prev = GENESIS_DIGEST
        count = 0
        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                count += 1
                try:
                    raw = json.loads(line)
                    version = raw.get("version")
                    if version != LEDGER_VERSION:
                        return False, f"BAD_VERSION:{version}", count
                    rec = LedgerRecord.from_dict(raw)
                except (ValueError, KeyError, TypeError, AttributeError):
                    return False, "PARSE_ERROR", count
                if rec.previous_digest != prev:
                    return False, "CHAIN_BROKEN", count
                if compute_digest(rec.previous_digest, rec.timestamp_ms, rec.payload) != rec.digest:
                    return False, "DIGEST_MISMATCH", count
                prev = rec.digest
        return True, "OK", count
