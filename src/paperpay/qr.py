"""
Signed QR bundles.

A bundle lists a customer's active, approved vendor grants so a vendor
terminal can authenticate the customer from a printed or displayed QR
code. The signature is HMAC-SHA256 over the canonical JSON of every other
field; a bundle is either trusted whole or rejected.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .audit import AuditTrail, EventType
from .errors import ValidationError
from .ledger import CustomerGrantStatus, GrantLedger

logger = logging.getLogger(__name__)


def canonical_json_bytes(value: Any) -> bytes:
    """Serialize JSON using deterministic ordering and no insignificant whitespace."""
    normalized = _normalize_for_canonical_json(value)
    return json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def _normalize_for_canonical_json(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _normalize_for_canonical_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_canonical_json(item) for item in value]
    if isinstance(value, float):
        raise ValueError("Floats are not allowed in signed bundles")
    if isinstance(value, (str, int, bool)) or value is None:
        return value
    raise ValueError(f"Unsupported JSON canonicalization value type: {type(value).__name__}")


@dataclass(frozen=True)
class GrantSummary:
    grant_id: str
    vendor_id: str
    vendor_name: str
    daily_limit: str
    expires_at: int

    def to_dict(self) -> dict:
        return {
            "grant_id": self.grant_id,
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "daily_limit": self.daily_limit,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GrantSummary":
        expires_at = data["expires_at"]
        if not isinstance(expires_at, int) or isinstance(expires_at, bool):
            raise ValidationError("Bundle grant expires_at must be an integer timestamp")
        for name in ("grant_id", "vendor_id", "vendor_name", "daily_limit"):
            if not isinstance(data[name], str):
                raise ValidationError(f"Bundle grant {name} must be a string")
        return cls(
            grant_id=data["grant_id"],
            vendor_id=data["vendor_id"],
            vendor_name=data["vendor_name"],
            daily_limit=data["daily_limit"],
            expires_at=expires_at,
        )


@dataclass
class QRBundle:
    customer_id: str
    grants: list[GrantSummary] = field(default_factory=list)
    generated_at: int = 0
    signature: str = ""

    def signing_payload(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "grants": [g.to_dict() for g in self.grants],
            "generated_at": self.generated_at,
        }

    def to_dict(self) -> dict:
        return {**self.signing_payload(), "signature": self.signature}

    def to_json(self) -> str:
        """Text a QR renderer encodes."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Any) -> "QRBundle":
        if not isinstance(data, dict):
            raise ValidationError("Bundle must be a JSON object")
        try:
            generated_at = data["generated_at"]
            if not isinstance(generated_at, int) or isinstance(generated_at, bool):
                raise ValidationError("Bundle generated_at must be an integer timestamp")
            return cls(
                customer_id=str(data["customer_id"]),
                grants=[GrantSummary.from_dict(g) for g in data["grants"]],
                generated_at=generated_at,
                signature=str(data.get("signature", "")),
            )
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Malformed bundle: {e}") from e

    @classmethod
    def from_json(cls, text: str) -> "QRBundle":
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ValidationError("Bundle is not valid JSON") from e
        return cls.from_dict(data)


class QRBundler:
    def __init__(
        self,
        ledger: GrantLedger,
        secret: bytes,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("QR signing secret must not be empty")
        self.ledger = ledger
        self._secret = secret
        self.audit = audit
        self._clock = clock

    def sign(self, bundle: QRBundle) -> str:
        payload = canonical_json_bytes(bundle.signing_payload())
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def build_bundle(self, customer_id: str) -> QRBundle:
        """Sign every active, unexpired, approved grant the customer holds."""
        now = self._clock()
        eligible = [
            g
            for g in self.ledger.list_for_customer(customer_id, status=CustomerGrantStatus.ACTIVE)
            if g.interaction_completed and not g.is_expired(now)
        ]
        if not eligible:
            raise ValidationError(f"Customer {customer_id} has no active approved grants")

        summaries = sorted(
            (
                GrantSummary(
                    grant_id=g.id,
                    vendor_id=g.vendor_id,
                    vendor_name=g.vendor_name,
                    daily_limit=str(g.daily_limit),
                    expires_at=int(g.expires_at),
                )
                for g in eligible
            ),
            key=lambda s: s.grant_id,
        )
        bundle = QRBundle(customer_id=customer_id, grants=summaries, generated_at=int(now))
        bundle.signature = self.sign(bundle)

        logger.info("Issued QR bundle for %s with %d grant(s)", customer_id, len(summaries))
        if self.audit:
            self.audit.log(
                EventType.BUNDLE_ISSUED,
                customer_id=customer_id,
                details={"grants": [s.grant_id for s in summaries]},
            )
        return bundle

    def verify_bundle(self, bundle: QRBundle) -> bool:
        try:
            expected = self.sign(bundle)
        except ValueError:
            expected = ""
        valid = bool(bundle.signature) and hmac.compare_digest(expected, bundle.signature)
        if not valid:
            logger.warning("Rejected QR bundle for customer %s", bundle.customer_id)
            if self.audit:
                self.audit.log(
                    EventType.BUNDLE_REJECTED,
                    customer_id=bundle.customer_id,
                    success=False,
                    reason="signature mismatch",
                )
        return valid
