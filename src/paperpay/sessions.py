"""
Short-lived correlation state.

``SessionCache`` ties a client-chosen session id to the quote and pending
outgoing-payment grant of a checkout until the customer approves it.
``PendingGrantCache`` holds interactive instant-pay grants until the
customer returns from the authorization server.

Entries stay in the store for ``ttl + grace`` so an expired entry can be
reported as expired rather than unknown. Taking an entry is a single
atomic pop: at most one caller ever receives it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import SessionExpiredError, SessionNotFoundError, ValidationError
from .grants import Grant
from .kvstore import KeyValueStore
from .open_payments import QuoteRecord

logger = logging.getLogger(__name__)

SESSION_PREFIX = "payment-session:"
PENDING_GRANT_PREFIX = "pending-grant:"
DEFAULT_SESSION_TTL = 180
DEFAULT_INTERACTION_TTL = 300
DEFAULT_GRACE = 60


@dataclass
class PaymentSession:
    session_id: str
    quote: QuoteRecord
    incoming_payment_url: str
    sender_wallet: str
    receiver_wallet: str
    grant: Grant
    amount: str = ""
    description: str = ""
    created_at: float = 0.0
    expires_at: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def seconds_remaining(self, now: float) -> int:
        return max(0, int(self.expires_at - now))

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "quote": self.quote.to_dict(),
            "incoming_payment_url": self.incoming_payment_url,
            "sender_wallet": self.sender_wallet,
            "receiver_wallet": self.receiver_wallet,
            "grant": self.grant.to_dict(),
            "amount": self.amount,
            "description": self.description,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentSession":
        return cls(
            session_id=data["session_id"],
            quote=QuoteRecord.from_dict(data["quote"]),
            incoming_payment_url=data["incoming_payment_url"],
            sender_wallet=data["sender_wallet"],
            receiver_wallet=data["receiver_wallet"],
            grant=Grant.from_dict(data["grant"]),
            amount=data.get("amount", ""),
            description=data.get("description", ""),
            created_at=data.get("created_at", 0.0),
            expires_at=data.get("expires_at", 0.0),
        )


class SessionCache:
    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = DEFAULT_SESSION_TTL,
        grace_seconds: int = DEFAULT_GRACE,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.grace_seconds = grace_seconds
        self._clock = clock

    def open(self, session: PaymentSession) -> PaymentSession:
        if not session.session_id:
            raise ValidationError("Session id is required")
        now = self._clock()
        session.created_at = now
        session.expires_at = now + self.ttl_seconds
        key = SESSION_PREFIX + session.session_id

        def _insert(current: Optional[dict]) -> dict:
            if current is not None and not PaymentSession.from_dict(current).is_expired(now):
                raise ValidationError(f"Session {session.session_id} is already in progress")
            return session.to_dict()

        self.store.update(key, _insert, ttl_seconds=self.ttl_seconds + self.grace_seconds)
        logger.debug("Opened payment session %s", session.session_id)
        return session

    def peek(self, session_id: str) -> PaymentSession:
        raw = self.store.get(SESSION_PREFIX + session_id)
        if raw is None:
            raise SessionNotFoundError(f"Payment session not found: {session_id}")
        session = PaymentSession.from_dict(raw)
        if session.is_expired(self._clock()):
            raise SessionExpiredError(f"Payment session expired: {session_id}")
        return session

    def consume(self, session_id: str) -> PaymentSession:
        """Take the session out of the cache. A second call raises SessionNotFoundError."""
        raw = self.store.pop(SESSION_PREFIX + session_id)
        if raw is None:
            raise SessionNotFoundError(f"Payment session not found: {session_id}")
        session = PaymentSession.from_dict(raw)
        if session.is_expired(self._clock()):
            raise SessionExpiredError(f"Payment session expired: {session_id}")
        return session

    def discard(self, session_id: str) -> bool:
        return self.store.delete(SESSION_PREFIX + session_id)


@dataclass
class PendingGrantEntry:
    grant: Grant
    expires_at: float
    context: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"grant": self.grant.to_dict(), "expires_at": self.expires_at, "context": self.context}

    @classmethod
    def from_dict(cls, data: dict) -> "PendingGrantEntry":
        return cls(
            grant=Grant.from_dict(data["grant"]),
            expires_at=data["expires_at"],
            context=data.get("context") or {},
        )


class PendingGrantCache:
    """Pending interactive grants keyed by the client-generated identifier."""

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = DEFAULT_INTERACTION_TTL,
        grace_seconds: int = DEFAULT_GRACE,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.grace_seconds = grace_seconds
        self._clock = clock

    def put(self, grant: Grant, ttl: Optional[int] = None, context: Optional[dict] = None) -> PendingGrantEntry:
        ttl = self.ttl_seconds if ttl is None else ttl
        entry = PendingGrantEntry(grant=grant, expires_at=self._clock() + ttl, context=context or {})
        self.store.set(PENDING_GRANT_PREFIX + grant.identifier, entry.to_dict(), ttl + self.grace_seconds)
        return entry

    def _check(self, identifier: str, raw: Optional[dict]) -> PendingGrantEntry:
        if raw is None:
            raise SessionNotFoundError(f"No pending grant for {identifier}")
        entry = PendingGrantEntry.from_dict(raw)
        if self._clock() >= entry.expires_at:
            raise SessionExpiredError(f"Pending grant {identifier} expired before approval")
        return entry

    def get(self, identifier: str) -> PendingGrantEntry:
        return self._check(identifier, self.store.get(PENDING_GRANT_PREFIX + identifier))

    def take(self, identifier: str) -> PendingGrantEntry:
        return self._check(identifier, self.store.pop(PENDING_GRANT_PREFIX + identifier))
