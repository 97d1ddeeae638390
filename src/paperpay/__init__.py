"""
PaperPay: Open Payments grants for paper-based checkout.

Customers approve vendors once at their wallet:
Grant negotiated → Daily limit enforced on every spend → Signed QR bundle at the till.
"""

__version__ = "0.1.0"

from .errors import (
    AuthenticationError,
    DownstreamError,
    DuplicateGrantError,
    GrantExpiredError,
    GrantNotFoundError,
    GrantPendingError,
    GrantSuspendedError,
    LimitExceededError,
    PaperPayError,
    ProtocolError,
    SessionExpiredError,
    SessionNotFoundError,
    ValidationError,
)
from .grants import Grant, GrantNegotiator, GrantStatus
from .ledger import CustomerGrant, CustomerGrantStatus, GrantLedger, SpendResult
from .pipeline import PaymentPipeline, TransferResult
from .qr import QRBundle, QRBundler
from .sessions import PaymentSession, PendingGrantCache, SessionCache
from .wallet import WalletAddress, WalletDirectory
from .kvstore import InMemoryKeyValueStore, SQLiteKeyValueStore
from .audit import AuditTrail, EventType

__all__ = [
    "PaperPayError", "ValidationError", "ProtocolError", "GrantPendingError",
    "AuthenticationError", "LimitExceededError", "GrantNotFoundError",
    "SessionNotFoundError", "SessionExpiredError", "DuplicateGrantError",
    "GrantExpiredError", "GrantSuspendedError", "DownstreamError",
    "Grant", "GrantNegotiator", "GrantStatus",
    "CustomerGrant", "CustomerGrantStatus", "GrantLedger", "SpendResult",
    "PaymentPipeline", "TransferResult", "QRBundle", "QRBundler",
    "PaymentSession", "PendingGrantCache", "SessionCache",
    "WalletAddress", "WalletDirectory",
    "InMemoryKeyValueStore", "SQLiteKeyValueStore",
    "AuditTrail", "EventType",
]
