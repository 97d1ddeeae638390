"""
PaperPay error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (fix input, re-authorize, restart, alert).
"""

from __future__ import annotations

from typing import Optional


class PaperPayError(Exception):
    """Base error for all PaperPay operations."""
    pass


class ValidationError(PaperPayError):
    """Missing or malformed input. Caller-fixable, never retried."""
    pass


# Protocol errors
class ProtocolError(PaperPayError):
    """Authorization server response contradicts the requested grant mode."""
    pass


class GrantPendingError(ProtocolError):
    """Grant has not completed interaction, so it carries no access token."""
    pass


class AuthenticationError(PaperPayError):
    """Interaction hash mismatch. Negotiation must be restarted."""
    pass


# Spend errors
class LimitExceededError(PaperPayError):
    """Spend rejected by the ledger or by the wallet's grant limits."""
    def __init__(self, message: str, remaining: Optional[str] = None):
        self.remaining = remaining
        super().__init__(message)


# Lookup errors
class NotFoundError(PaperPayError):
    """Base error for missing entities."""
    pass


class CustomerNotFoundError(NotFoundError):
    pass


class VendorNotFoundError(NotFoundError):
    pass


class GrantNotFoundError(NotFoundError):
    pass


# Session errors
class SessionError(PaperPayError):
    """Base error for payment session issues."""
    pass


class SessionNotFoundError(SessionError, NotFoundError):
    """Session id unknown or already consumed."""
    pass


class SessionExpiredError(SessionError):
    """Session TTL lapsed; the caller must start a new session."""
    pass


# Ledger errors
class LedgerError(PaperPayError):
    """Base error for customer grant lifecycle issues."""
    pass


class DuplicateGrantError(LedgerError):
    """An active grant already exists for this customer and vendor."""
    pass


class GrantExpiredError(LedgerError):
    """Customer grant is past its expiry."""
    pass


class GrantSuspendedError(LedgerError):
    """Customer grant was suspended."""
    pass


# Network errors
class DownstreamError(PaperPayError):
    """Wallet, authorization or resource server failure.

    ``detail`` keeps the raw downstream body for logs; it must not be
    returned to API callers.
    """
    def __init__(
        self,
        operation: str,
        message: str,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        self.operation = operation
        self.status_code = status_code
        self.detail = detail
        prefix = f"{operation} failed"
        if status_code is not None:
            prefix += f" ({status_code})"
        super().__init__(f"{prefix}: {message}")
