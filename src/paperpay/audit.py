"""
Audit trail for grant negotiation, spend and bundle events.

Events are append-only JSONL entries with an HMAC hash chain so
tampering is detected during reads. The CLI can walk the whole chain
with `paperpay audit --verify`.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from .storage import ensure_private_dir, ensure_private_file, load_or_create_key


DEFAULT_AUDIT_PATH = Path.home() / ".paperpay" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".paperpay-secrets" / "audit_hmac.key"
AUDIT_KEY_ENV = "PAPERPAY_AUDIT_HMAC_KEY"
_CHAIN_FIELDS = {"prev_hash", "event_hash"}


class EventType(str, Enum):
    GRANT_REQUESTED = "grant_requested"
    GRANT_CONTINUED = "grant_continued"
    GRANT_EXPIRED = "grant_expired"
    GRANT_SUSPENDED = "grant_suspended"
    INTERACTION_VERIFIED = "interaction_verified"
    INTERACTION_REJECTED = "interaction_rejected"
    TOKEN_ROTATED = "token_rotated"
    SPEND_RECORDED = "spend_recorded"
    SPEND_DENIED = "spend_denied"
    SPEND_REVERSED = "spend_reversed"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    BUNDLE_ISSUED = "bundle_issued"
    BUNDLE_REJECTED = "bundle_rejected"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    grant_id: Optional[str] = None
    customer_id: Optional[str] = None
    vendor_id: Optional[str] = None
    wallet_address: Optional[str] = None
    amount: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditChainError(RuntimeError):
    """A line of the trail does not match the hash chain."""

    def __init__(self, line_number: int, reason: str):
        self.line_number = line_number
        super().__init__(f"Audit chain broken at line {line_number}: {reason}")


class AuditTrail:
    """Tamper-evident append-only audit log.

    Each event's hash is an HMAC over the previous hash and the event's
    canonical JSON, so editing, dropping or reordering a line breaks every
    hash after it.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        self._clock = clock

        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)

        self._lock = threading.Lock()
        self._hmac_key = self._load_key()
        self._last_hash = self._tail_hash()

    def _load_key(self) -> bytes:
        env_key = os.getenv(AUDIT_KEY_ENV)
        if env_key:
            return env_key.encode()
        return load_or_create_key(self.key_path)

    def _tail_hash(self) -> str:
        last = ""
        for raw in self._raw_lines():
            last = raw.get("event_hash", "")
        return last

    def _raw_lines(self) -> Iterator[dict]:
        if not self.path.exists():
            return
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if line:
                    yield json.loads(line)

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def _verified(self) -> Iterator[dict]:
        """Yield each stored event after checking it against the chain."""
        expected_prev = ""
        for number, raw in enumerate(self._raw_lines(), start=1):
            prev_hash = raw.get("prev_hash") or ""
            event_hash = raw.get("event_hash") or ""
            if prev_hash != expected_prev:
                raise AuditChainError(number, "previous hash mismatch")
            payload = {k: v for k, v in raw.items() if k not in _CHAIN_FIELDS}
            if not hmac.compare_digest(self._event_hash(payload, prev_hash), event_hash):
                raise AuditChainError(number, "event hash mismatch")
            expected_prev = event_hash
            yield raw

    def log(
        self,
        event_type: EventType,
        grant_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        vendor_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
        amount: Optional[Any] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        fields = {
            "event_type": event_type.value,
            "timestamp": self._clock(),
            "grant_id": grant_id,
            "customer_id": customer_id,
            "vendor_id": vendor_id,
            "wallet_address": wallet_address,
            "amount": None if amount is None else str(amount),
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in fields.items() if v is not None}

        with self._lock:
            prev_hash = self._last_hash
            event = AuditEvent(
                **payload,
                prev_hash=prev_hash or None,
                event_hash=self._event_hash(payload, prev_hash),
            )
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._last_hash = event.event_hash
        return event

    def verify_chain(self) -> int:
        """Walk the whole trail; returns the number of events checked."""
        return sum(1 for _ in self._verified())

    def read_events(
        self,
        grant_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Matching events, newest last. Raises AuditChainError on tampering."""
        events = [
            AuditEvent(**{k: v for k, v in raw.items() if k in AuditEvent.__dataclass_fields__})
            for raw in self._verified()
            if (not grant_id or raw.get("grant_id") == grant_id)
            and (not event_type or raw.get("event_type") == event_type.value)
        ]
        return events[-limit:]

    def summary(self, grant_id: Optional[str] = None) -> dict:
        events = self.read_events(grant_id=grant_id, limit=10000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": sum(1 for e in events if not e.success),
            "last_event": events[-1].to_json() if events else None,
        }
