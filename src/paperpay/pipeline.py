"""
Payment execution pipeline.

A transfer runs three steps in fixed order:

1. incoming payment at the receiver (the settlement target)
2. quote at the sender for that incoming payment
3. outgoing payment at the sender against the quote

Nothing is retried here. A failed step aborts the transfer; callers that
retry must start again from step 1. An incoming payment left behind by a
failed transfer simply expires unpaid.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from .errors import DownstreamError, LimitExceededError, ValidationError
from .grants import GrantNegotiator
from .money import to_decimal, to_scaled
from .open_payments import (
    AccessSpec,
    AccessType,
    Amount,
    IncomingPaymentRecord,
    OutgoingPaymentRecord,
    QuoteRecord,
    ResourceServerClient,
    isoformat_utc,
)
from .wallet import WalletAddress

logger = logging.getLogger(__name__)

DEFAULT_INCOMING_PAYMENT_TTL = 30 * 60
LIMIT_REJECTION_STATUSES = (400, 403)
LIMIT_EXCEEDED_MESSAGE = (
    "Outgoing payment rejected by the sender's wallet; the grant's spending limit "
    "is likely exhausted. Authorize again or reduce the amount."
)


@dataclass
class TransferResult:
    incoming_payment: IncomingPaymentRecord
    quote: QuoteRecord
    outgoing_payment: OutgoingPaymentRecord

    def to_dict(self) -> dict:
        return {
            "incoming_payment": self.incoming_payment.to_dict(),
            "quote": self.quote.to_dict(),
            "outgoing_payment": self.outgoing_payment.to_dict(),
        }


def scaled_amount(amount: Decimal | str | int | float, wallet: WalletAddress) -> Amount:
    value = to_decimal(amount)
    if value <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}")
    scaled = to_scaled(value, wallet.asset_scale)
    if scaled <= 0:
        raise ValidationError(f"Amount {amount} rounds to zero at scale {wallet.asset_scale}")
    return Amount(value=str(scaled), asset_code=wallet.asset_code, asset_scale=wallet.asset_scale)


class PaymentPipeline:
    def __init__(
        self,
        negotiator: GrantNegotiator,
        resources: ResourceServerClient,
        incoming_payment_ttl_seconds: int = DEFAULT_INCOMING_PAYMENT_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.negotiator = negotiator
        self.resources = resources
        self.incoming_payment_ttl_seconds = incoming_payment_ttl_seconds
        self._clock = clock

    def create_incoming_payment(
        self,
        receiver: WalletAddress,
        amount: Decimal | str | int | float,
        description: Optional[str] = None,
    ) -> IncomingPaymentRecord:
        incoming_amount = scaled_amount(amount, receiver)
        grant = self.negotiator.request_grant(
            receiver,
            AccessSpec(AccessType.INCOMING_PAYMENT, ["read", "create", "complete"]),
            interactive=False,
        )
        metadata = {"description": description} if description else None
        record = self.resources.create_incoming_payment(
            receiver.resource_server,
            grant.access_token,
            receiver.id,
            incoming_amount=incoming_amount,
            expires_at=isoformat_utc(self._clock() + self.incoming_payment_ttl_seconds),
            metadata=metadata,
        )
        logger.info("Incoming payment %s created for %s", record.id, receiver.id)
        return record

    def create_quote(
        self,
        sender: WalletAddress,
        incoming_payment_url: str,
        debit_amount: Optional[Amount] = None,
    ) -> QuoteRecord:
        if not incoming_payment_url:
            raise ValidationError("Incoming payment URL is required for a quote")
        grant = self.negotiator.request_grant(
            sender,
            AccessSpec(AccessType.QUOTE, ["create", "read"]),
            interactive=False,
        )
        quote = self.resources.create_quote(
            sender.resource_server,
            grant.access_token,
            sender.id,
            receiver=incoming_payment_url,
            method="ilp",
            debit_amount=debit_amount,
        )
        logger.info("Quote %s created for %s", quote.id, sender.id)
        return quote

    def pay_quote(
        self,
        sender: WalletAddress,
        quote_id: str,
        sender_token: str,
        description: Optional[str] = None,
        payment_type: str = "payment",
    ) -> OutgoingPaymentRecord:
        metadata = {"type": payment_type}
        if description:
            metadata["description"] = description
        try:
            payment = self.resources.create_outgoing_payment(
                sender.resource_server,
                sender_token,
                sender.id,
                quote_id=quote_id,
                metadata=metadata,
            )
        except DownstreamError as e:
            if _is_limit_rejection(e):
                raise LimitExceededError(LIMIT_EXCEEDED_MESSAGE) from e
            raise
        logger.info("Outgoing payment %s created for quote %s", payment.id, quote_id)
        return payment

    def pay_incoming_payment(
        self,
        sender: WalletAddress,
        incoming_payment_url: str,
        amount: Decimal | str | int | float,
        sender_token: str,
        description: Optional[str] = None,
    ) -> OutgoingPaymentRecord:
        """Pay an incoming payment directly with a fixed debit amount, without a quote."""
        debit = scaled_amount(amount, sender)
        metadata = {"type": "instant"}
        if description:
            metadata["description"] = description
        try:
            payment = self.resources.create_outgoing_payment(
                sender.resource_server,
                sender_token,
                sender.id,
                incoming_payment=incoming_payment_url,
                debit_amount=debit,
                metadata=metadata,
            )
        except DownstreamError as e:
            if _is_limit_rejection(e):
                raise LimitExceededError(LIMIT_EXCEEDED_MESSAGE) from e
            raise
        logger.info("Outgoing payment %s paid %s directly", payment.id, incoming_payment_url)
        return payment

    def execute_transfer(
        self,
        sender: WalletAddress,
        receiver: WalletAddress,
        amount: Decimal | str | int | float,
        description: Optional[str],
        sender_token: str,
        *,
        debit_amount: Optional[Decimal | str] = None,
    ) -> TransferResult:
        """
        Run incoming payment -> quote -> outgoing payment.

        Raises:
            ValidationError: non-positive amount
            LimitExceededError: sender's wallet refused the debit (4xx)
            DownstreamError: any server failure, timeout or 5xx
        """
        if not sender_token:
            raise ValidationError("Sender access token is required")

        incoming = self.create_incoming_payment(receiver, amount, description)
        fixed_debit = scaled_amount(debit_amount, sender) if debit_amount is not None else None
        quote = self.create_quote(sender, incoming.id, debit_amount=fixed_debit)
        outgoing = self.pay_quote(sender, quote.id, sender_token, description)
        return TransferResult(incoming_payment=incoming, quote=quote, outgoing_payment=outgoing)


def _is_limit_rejection(error: DownstreamError) -> bool:
    if error.status_code in LIMIT_REJECTION_STATUSES:
        logger.warning("Outgoing payment refused (%s): %s", error.status_code, error.detail)
        return True
    return False
