"""
Customer grant ledger.

Durable record of customer -> vendor authorizations and their daily
spend. ``record_spend`` is the only way ``spent_today`` grows and it runs
as one store transaction, so concurrent spends against the same grant
can never push it past ``daily_limit``.

A spend is reserved before the transfer runs; when the transfer fails
the caller hands the receipt back to ``reverse_spend``.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .errors import (
    DuplicateGrantError,
    GrantExpiredError,
    GrantNotFoundError,
    GrantPendingError,
    GrantSuspendedError,
    ValidationError,
)
from .grants import Grant, GrantStatus
from .kvstore import KeyValueStore, KeyValueTransaction
from .money import quantize, to_decimal

logger = logging.getLogger(__name__)

GRANT_PREFIX = "customer-grant:"
PAIR_PREFIX = "customer-grant-pair:"
IDENTIFIER_PREFIX = "customer-grant-identifier:"

SECONDS_PER_DAY = 86400
DEFAULT_INTERACTION_TTL = 300


def ledger_date(timestamp: float) -> str:
    """UTC calendar date used for daily rollover."""
    return time.strftime("%Y-%m-%d", time.gmtime(timestamp))


def _mark_expired(record: "CustomerGrant") -> None:
    record.status = CustomerGrantStatus.EXPIRED
    if record.grant is not None and record.grant.status in (
        GrantStatus.ACTIVE,
        GrantStatus.PENDING_INTERACTION,
    ):
        record.grant.transition(GrantStatus.EXPIRED)
    logger.info("Customer grant %s expired", record.id)


class CustomerGrantStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    SUSPENDED = "suspended"


@dataclass
class CustomerGrant:
    id: str
    customer_id: str
    vendor_id: str
    vendor_name: str
    daily_limit: Decimal
    spent_today: Decimal
    asset_code: str
    asset_scale: int
    last_reset_date: str
    expires_at: float
    created_at: float
    status: CustomerGrantStatus = CustomerGrantStatus.ACTIVE
    grant: Optional[Grant] = None

    @property
    def remaining(self) -> Decimal:
        return max(Decimal(0), self.daily_limit - self.spent_today)

    @property
    def interaction_completed(self) -> bool:
        return self.grant is not None and self.grant.status == GrantStatus.ACTIVE

    def is_expired(self, now: float) -> bool:
        return self.status == CustomerGrantStatus.EXPIRED or now > self.expires_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "daily_limit": str(self.daily_limit),
            "spent_today": str(self.spent_today),
            "asset_code": self.asset_code,
            "asset_scale": self.asset_scale,
            "last_reset_date": self.last_reset_date,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
            "status": self.status.value,
            "grant": self.grant.to_dict() if self.grant else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CustomerGrant":
        grant = data.get("grant")
        return cls(
            id=data["id"],
            customer_id=data["customer_id"],
            vendor_id=data["vendor_id"],
            vendor_name=data.get("vendor_name", ""),
            daily_limit=Decimal(data["daily_limit"]),
            spent_today=Decimal(data.get("spent_today", "0")),
            asset_code=data["asset_code"],
            asset_scale=int(data["asset_scale"]),
            last_reset_date=data.get("last_reset_date", ""),
            expires_at=float(data["expires_at"]),
            created_at=float(data.get("created_at", 0)),
            status=CustomerGrantStatus(data.get("status", "active")),
            grant=Grant.from_dict(grant) if grant else None,
        )

    def to_public_dict(self) -> dict:
        """View for API callers: no tokens, nonces or continuation data."""
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "daily_limit": str(self.daily_limit),
            "spent_today": str(self.spent_today),
            "remaining_today": str(self.remaining),
            "asset_code": self.asset_code,
            "asset_scale": self.asset_scale,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
            "status": self.status.value,
            "interaction_completed": self.interaction_completed,
        }


@dataclass(frozen=True)
class SpendReceipt:
    """Proof of a reservation, needed to reverse it."""

    grant_id: str
    amount: Decimal
    ledger_date: str


@dataclass
class SpendResult:
    accepted: bool
    spent_today: Decimal
    remaining: Decimal
    reason: Optional[str] = None
    receipt: Optional[SpendReceipt] = None

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "spent_today": str(self.spent_today),
            "remaining": str(self.remaining),
            "reason": self.reason,
        }


class GrantLedger:
    def __init__(
        self,
        store: KeyValueStore,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
        interaction_ttl_seconds: int = DEFAULT_INTERACTION_TTL,
    ):
        self.store = store
        self.audit = audit
        self._clock = clock
        self.interaction_ttl_seconds = interaction_ttl_seconds

    # ── internal ──────────────────────────────────────────────────

    def _refresh(self, record: CustomerGrant, now: float) -> bool:
        """Apply daily rollover and lazy expiry. Returns True if the record changed."""
        changed = False
        today = ledger_date(now)
        if record.last_reset_date != today:
            record.spent_today = quantize(0, record.asset_scale)
            record.last_reset_date = today
            changed = True
        if record.status == CustomerGrantStatus.ACTIVE and now > record.expires_at:
            _mark_expired(record)
            changed = True
        if self._interaction_abandoned(record, now):
            logger.info("Customer grant %s was never approved at the wallet", record.id)
            _mark_expired(record)
            changed = True
        return changed

    def _interaction_abandoned(self, record: CustomerGrant, now: float) -> bool:
        """An approval that never came back within the interaction TTL."""
        return (
            record.status == CustomerGrantStatus.ACTIVE
            and record.grant is not None
            and record.grant.status == GrantStatus.PENDING_INTERACTION
            and now > record.created_at + self.interaction_ttl_seconds
        )

    def _load(self, txn: KeyValueTransaction, grant_id: str, now: float) -> CustomerGrant:
        raw = txn.get(GRANT_PREFIX + grant_id)
        if raw is None:
            raise GrantNotFoundError(f"Grant not found: {grant_id}")
        record = CustomerGrant.from_dict(raw)
        if self._refresh(record, now):
            txn.set(GRANT_PREFIX + record.id, record.to_dict())
        return record

    # ── authorization ─────────────────────────────────────────────

    def authorize(
        self,
        customer_id: str,
        vendor_id: str,
        daily_limit: Decimal | str | int | float,
        expiration_days: int = 30,
        *,
        vendor_name: str = "",
        asset_code: str,
        asset_scale: int,
        grant: Optional[Grant] = None,
    ) -> CustomerGrant:
        """
        Record a new customer -> vendor authorization.

        Only one live grant may exist per (customer, vendor) pair; the
        existence check and the insert commit together.
        """
        limit = quantize(daily_limit, asset_scale)
        if limit <= 0:
            raise ValidationError("Daily limit must be positive")
        if expiration_days <= 0:
            raise ValidationError("Expiration must be at least one day")

        now = self._clock()
        record = CustomerGrant(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            vendor_id=vendor_id,
            vendor_name=vendor_name,
            daily_limit=limit,
            spent_today=quantize(0, asset_scale),
            asset_code=asset_code,
            asset_scale=asset_scale,
            last_reset_date=ledger_date(now),
            expires_at=now + expiration_days * SECONDS_PER_DAY,
            created_at=now,
            grant=grant,
        )

        pair_key = f"{PAIR_PREFIX}{customer_id}:{vendor_id}"
        with self.store.transaction() as txn:
            existing_ref = txn.get(pair_key)
            if existing_ref is not None:
                try:
                    existing = self._load(txn, existing_ref["grant_id"], now)
                except GrantNotFoundError:
                    existing = None
                if existing is not None and existing.status == CustomerGrantStatus.ACTIVE:
                    raise DuplicateGrantError(
                        f"Customer {customer_id} already has an active grant for vendor {vendor_id}"
                    )
            txn.set(GRANT_PREFIX + record.id, record.to_dict())
            txn.set(pair_key, {"grant_id": record.id})
            if grant is not None:
                txn.set(IDENTIFIER_PREFIX + grant.identifier, {"grant_id": record.id})

        logger.info(
            "Authorized grant %s: customer %s -> vendor %s, %s %s/day",
            record.id, customer_id, vendor_id, limit, asset_code,
        )
        return record

    def find_active(self, customer_id: str, vendor_id: str) -> Optional[CustomerGrant]:
        now = self._clock()
        with self.store.transaction() as txn:
            ref = txn.get(f"{PAIR_PREFIX}{customer_id}:{vendor_id}")
            if ref is None:
                return None
            try:
                record = self._load(txn, ref["grant_id"], now)
            except GrantNotFoundError:
                return None
        return record if record.status == CustomerGrantStatus.ACTIVE else None

    # ── spend ─────────────────────────────────────────────────────

    def record_spend(self, grant_id: str, amount: Decimal | str | int | float) -> SpendResult:
        """
        Atomically check and increment today's spend.

        Returns a rejected ``SpendResult`` (state untouched) when the amount
        would exceed the daily limit.

        Raises:
            ValidationError: amount is not positive
            GrantNotFoundError: unknown grant
            GrantExpiredError: grant is past ``expires_at`` (now marked expired)
            GrantSuspendedError: grant was suspended
            GrantPendingError: grant has not completed interaction
        """
        if to_decimal(amount) <= 0:
            raise ValidationError(f"Spend amount must be positive, got {amount}")

        now = self._clock()
        failure: Optional[Exception] = None
        result: Optional[SpendResult] = None
        record: Optional[CustomerGrant] = None

        with self.store.transaction() as txn:
            record = self._load(txn, grant_id, now)
            value = quantize(amount, record.asset_scale)

            if record.status == CustomerGrantStatus.EXPIRED:
                failure = GrantExpiredError(f"Grant {grant_id} has expired")
            elif record.status == CustomerGrantStatus.SUSPENDED:
                failure = GrantSuspendedError(f"Grant {grant_id} is suspended")
            elif not record.interaction_completed:
                failure = GrantPendingError(f"Grant {grant_id} has not been approved by the customer")
            elif value <= 0:
                failure = ValidationError(f"Spend amount {amount} rounds to zero")
            elif record.spent_today + value > record.daily_limit:
                result = SpendResult(
                    accepted=False,
                    spent_today=record.spent_today,
                    remaining=record.remaining,
                    reason=(
                        f"Daily limit {record.daily_limit} {record.asset_code} exceeded: "
                        f"{record.spent_today} spent, {value} requested"
                    ),
                )
            else:
                record.spent_today += value
                txn.set(GRANT_PREFIX + record.id, record.to_dict())
                result = SpendResult(
                    accepted=True,
                    spent_today=record.spent_today,
                    remaining=record.remaining,
                    receipt=SpendReceipt(grant_id=record.id, amount=value, ledger_date=record.last_reset_date),
                )

        if failure is not None:
            if isinstance(failure, GrantExpiredError) and self.audit:
                self.audit.log(
                    EventType.GRANT_EXPIRED,
                    grant_id=grant_id,
                    customer_id=record.customer_id,
                    vendor_id=record.vendor_id,
                    success=False,
                    reason="spend attempted after expiry",
                )
            raise failure

        assert result is not None
        if self.audit:
            self.audit.log(
                EventType.SPEND_RECORDED if result.accepted else EventType.SPEND_DENIED,
                grant_id=grant_id,
                customer_id=record.customer_id,
                vendor_id=record.vendor_id,
                amount=amount,
                success=result.accepted,
                reason=result.reason,
            )
        if not result.accepted:
            logger.info("Spend of %s on grant %s denied: %s", amount, grant_id, result.reason)
        return result

    def reverse_spend(self, receipt: SpendReceipt) -> CustomerGrant:
        """Give back a reservation whose transfer failed.

        A reservation from an earlier ledger day is already gone through
        rollover, so it is left alone.
        """
        now = self._clock()
        with self.store.transaction() as txn:
            record = self._load(txn, receipt.grant_id, now)
            if record.last_reset_date != receipt.ledger_date:
                logger.info(
                    "Not reversing %s on grant %s: reservation was made on %s",
                    receipt.amount, receipt.grant_id, receipt.ledger_date,
                )
                return record
            record.spent_today = max(quantize(0, record.asset_scale), record.spent_today - receipt.amount)
            txn.set(GRANT_PREFIX + record.id, record.to_dict())

        if self.audit:
            self.audit.log(
                EventType.SPEND_REVERSED,
                grant_id=record.id,
                customer_id=record.customer_id,
                vendor_id=record.vendor_id,
                amount=receipt.amount,
            )
        return record

    # ── lifecycle ─────────────────────────────────────────────────

    def expire_sweep(self, now: Optional[float] = None) -> int:
        """Mark every active grant with ``expires_at < now`` as expired."""
        now = self._clock() if now is None else now
        expired: list[CustomerGrant] = []
        with self.store.transaction() as txn:
            for key, raw in txn.scan(GRANT_PREFIX):
                record = CustomerGrant.from_dict(raw)
                if record.status != CustomerGrantStatus.ACTIVE:
                    continue
                if record.expires_at >= now and not self._interaction_abandoned(record, now):
                    continue
                _mark_expired(record)
                txn.set(key, record.to_dict())
                expired.append(record)

        if self.audit:
            for record in expired:
                self.audit.log(
                    EventType.GRANT_EXPIRED,
                    grant_id=record.id,
                    customer_id=record.customer_id,
                    vendor_id=record.vendor_id,
                )
        if expired:
            logger.info("Expiry sweep marked %d grant(s) expired", len(expired))
        return len(expired)

    def suspend(self, grant_id: str) -> CustomerGrant:
        now = self._clock()
        with self.store.transaction() as txn:
            record = self._load(txn, grant_id, now)
            if record.status == CustomerGrantStatus.SUSPENDED:
                return record
            if record.status == CustomerGrantStatus.EXPIRED:
                raise GrantExpiredError(f"Grant {grant_id} has already expired")
            record.status = CustomerGrantStatus.SUSPENDED
            txn.set(GRANT_PREFIX + record.id, record.to_dict())

        logger.info("Grant %s suspended", grant_id)
        if self.audit:
            self.audit.log(
                EventType.GRANT_SUSPENDED,
                grant_id=grant_id,
                customer_id=record.customer_id,
                vendor_id=record.vendor_id,
            )
        return record

    def attach_tokens(self, grant_id: str, grant: Grant) -> CustomerGrant:
        """Persist a continued or rotated ``Grant`` on its customer grant."""
        now = self._clock()
        with self.store.transaction() as txn:
            record = self._load(txn, grant_id, now)
            if record.status == CustomerGrantStatus.EXPIRED:
                raise GrantExpiredError(f"Grant {grant_id} has expired")
            record.grant = grant
            txn.set(GRANT_PREFIX + record.id, record.to_dict())
            txn.set(IDENTIFIER_PREFIX + grant.identifier, {"grant_id": record.id})
        return record

    # ── queries ───────────────────────────────────────────────────

    def get(self, grant_id: str) -> CustomerGrant:
        now = self._clock()
        with self.store.transaction() as txn:
            return self._load(txn, grant_id, now)

    def find_by_identifier(self, identifier: str) -> Optional[CustomerGrant]:
        now = self._clock()
        with self.store.transaction() as txn:
            ref = txn.get(IDENTIFIER_PREFIX + identifier)
            if ref is None:
                return None
            try:
                return self._load(txn, ref["grant_id"], now)
            except GrantNotFoundError:
                return None

    def list_all(self) -> list[CustomerGrant]:
        now = self._clock()
        records = []
        with self.store.transaction() as txn:
            for key, raw in txn.scan(GRANT_PREFIX):
                record = CustomerGrant.from_dict(raw)
                if self._refresh(record, now):
                    txn.set(key, record.to_dict())
                records.append(record)
        records.sort(key=lambda r: r.created_at)
        return records

    def list_for_customer(
        self,
        customer_id: str,
        status: Optional[CustomerGrantStatus] = None,
    ) -> list[CustomerGrant]:
        return [
            r
            for r in self.list_all()
            if r.customer_id == customer_id and (status is None or r.status == status)
        ]
