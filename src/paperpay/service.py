"""
PaperPay application service.

Flows:
- Checkout: incoming payment -> quote -> interactive outgoing grant,
  then approval verifies the interaction, consumes the session once,
  continues the grant and pays the quote.
- Vendor grants: interactive outgoing grant with a daily debit window,
  recorded in the ledger; payments reserve spend, rotate the token, run
  the pipeline and give the reservation back if the transfer fails.
- Instant pay and subscriptions: token holders pay without a ledger.
- QR bundles: signed lists of a customer's approved vendor grants.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional
from urllib.parse import urlencode

import httpx

from .accounts import AccountRegistry
from .audit import AuditTrail, EventType
from .config import PaperPayConfig
from .errors import (
    AuthenticationError,
    DuplicateGrantError,
    GrantExpiredError,
    GrantNotFoundError,
    GrantSuspendedError,
    LimitExceededError,
    ProtocolError,
    SessionNotFoundError,
    ValidationError,
)
from .grants import GrantNegotiator
from .kvstore import KeyedLocks, KeyValueStore, SQLiteKeyValueStore
from .ledger import CustomerGrant, CustomerGrantStatus, GrantLedger, SpendResult
from .money import from_scaled, quantize, to_decimal
from .open_payments import (
    AccessLimits,
    AccessSpec,
    AccessTokenInfo,
    AccessType,
    AuthServerClient,
    IncomingPaymentRecord,
    OutgoingPaymentRecord,
    QuoteRecord,
    ResourceServerClient,
    create_signed_client,
    repeating_interval,
)
from .pipeline import PaymentPipeline, TransferResult, scaled_amount
from .qr import QRBundle, QRBundler
from .sessions import PaymentSession, PendingGrantCache, SessionCache
from .wallet import WalletDirectory, normalize_wallet_url

logger = logging.getLogger(__name__)

OUTGOING_ACTIONS = ["create", "read", "list"]
DAILY_WINDOW = "P1D"
SUBSCRIPTION_PERIOD = "PT10M"


@dataclass
class VendorAuthorization:
    grant: CustomerGrant
    authorization_url: str

    def to_dict(self) -> dict:
        return {
            "grant": self.grant.to_public_dict(),
            "authorization_url": self.authorization_url,
        }


@dataclass
class GrantPayment:
    grant: CustomerGrant
    spend: SpendResult
    transfer: TransferResult

    def to_dict(self) -> dict:
        return {
            "grant": self.grant.to_public_dict(),
            "spend": self.spend.to_dict(),
            "transfer": self.transfer.to_dict(),
        }


@dataclass
class InstantPaySetup:
    identifier: str
    redirect_url: str
    expires_at: float

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "redirect_url": self.redirect_url,
            "expires_at": self.expires_at,
        }


@dataclass
class SubscriptionSetup:
    identifier: str
    redirect_url: str
    expires_at: float
    interval: str

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "redirect_url": self.redirect_url,
            "expires_at": self.expires_at,
            "interval": self.interval,
        }


@dataclass
class InstantPayment:
    incoming_payment: IncomingPaymentRecord
    outgoing_payment: OutgoingPaymentRecord
    token: AccessTokenInfo

    def to_dict(self) -> dict:
        return {
            "incoming_payment": self.incoming_payment.to_dict(),
            "outgoing_payment": self.outgoing_payment.to_dict(),
            "access_token": self.token.value,
            "manage_url": self.token.manage_url,
        }


@dataclass
class SubscriptionPayment:
    transfer: TransferResult
    token: AccessTokenInfo

    def to_dict(self) -> dict:
        return {
            **self.transfer.to_dict(),
            "access_token": self.token.value,
            "manage_url": self.token.manage_url,
        }


def finish_uri_template(redirect_url: str) -> str:
    """Make sure a caller's redirect carries the grant identifier back."""
    if "{identifier}" in redirect_url:
        return redirect_url
    separator = "&" if "?" in redirect_url else "?"
    return f"{redirect_url}{separator}identifier={{identifier}}"


class PaperPayService:
    def __init__(
        self,
        config: PaperPayConfig,
        wallets: WalletDirectory,
        negotiator: GrantNegotiator,
        pipeline: PaymentPipeline,
        ledger: GrantLedger,
        sessions: SessionCache,
        pending_grants: PendingGrantCache,
        accounts: AccountRegistry,
        bundler: QRBundler,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.wallets = wallets
        self.negotiator = negotiator
        self.pipeline = pipeline
        self.ledger = ledger
        self.sessions = sessions
        self.pending_grants = pending_grants
        self.accounts = accounts
        self.bundler = bundler
        self.audit = audit
        self._clock = clock
        self._locks = KeyedLocks()
        self._started_at = clock()

    def health(self) -> dict:
        now = self._clock()
        return {"status": "healthy", "timestamp": now, "uptime": now - self._started_at}

    # ── Checkout sessions ─────────────────────────────────────────

    def start_payment_session(
        self,
        session_id: str,
        sender_wallet: str,
        receiver_wallet: str,
        amount: Decimal | str | float,
        description: Optional[str] = None,
        redirect_url: Optional[str] = None,
    ) -> PaymentSession:
        """Create the incoming payment and quote, then ask the sender to approve the debit."""
        if not session_id:
            raise ValidationError("Session id is required")
        sender = self.wallets.resolve(sender_wallet)
        receiver = self.wallets.resolve(receiver_wallet)

        incoming = self.pipeline.create_incoming_payment(receiver, amount, description)
        quote = self.pipeline.create_quote(sender, incoming.id)

        access = AccessSpec(
            AccessType.OUTGOING_PAYMENT,
            ["create", "read"],
            identifier=sender.id,
            limits=AccessLimits(debit_amount=quote.debit_amount, receive_amount=quote.receive_amount),
        )
        finish = finish_uri_template(
            redirect_url or f"{self.config.frontend_url.rstrip('/')}/checkout/finish?{urlencode({'session': session_id})}"
        )
        grant = self.negotiator.request_grant(sender, access, interactive=True, finish_uri=finish)

        session = self.sessions.open(
            PaymentSession(
                session_id=session_id,
                quote=quote,
                incoming_payment_url=incoming.id,
                sender_wallet=sender.id,
                receiver_wallet=receiver.id,
                grant=grant,
                amount=str(to_decimal(amount)),
                description=description or "",
            )
        )
        logger.info("Payment session %s started: %s -> %s", session_id, sender.id, receiver.id)
        return session

    def approve_payment(self, session_id: str, interact_ref: str, hash: Optional[str]) -> OutgoingPaymentRecord:
        """
        Approve a checkout after the sender returns from their wallet.

        A bad hash leaves the session in place; a verified approval takes the
        session out of the cache before the grant is continued, so a second
        approval raises SessionNotFoundError.
        """
        with self._locks.hold(f"session:{session_id}"):
            session = self.sessions.peek(session_id)
            self.negotiator.verify_interaction(session.grant, interact_ref, hash)
            session = self.sessions.consume(session_id)

            grant = self.negotiator.complete_interaction(session.grant, interact_ref, hash)
            sender = self.wallets.resolve(session.sender_wallet)
            try:
                payment = self.pipeline.pay_quote(
                    sender,
                    session.quote.id,
                    grant.access_token,
                    session.description or None,
                    payment_type="checkout",
                )
            except Exception as e:
                self._audit_payment(
                    EventType.PAYMENT_FAILED,
                    grant_id=grant.identifier,
                    wallet_address=sender.id,
                    amount=session.amount,
                    success=False,
                    reason=str(e),
                )
                raise

        self._audit_payment(
            EventType.PAYMENT_COMPLETED,
            grant_id=grant.identifier,
            wallet_address=sender.id,
            amount=session.amount,
            details={"outgoing_payment": payment.id, "session_id": session_id},
        )
        return payment

    def create_incoming_payment(
        self,
        receiver_wallet: str,
        amount: Decimal | str | float,
        description: Optional[str] = None,
    ) -> IncomingPaymentRecord:
        receiver = self.wallets.resolve(receiver_wallet)
        return self.pipeline.create_incoming_payment(receiver, amount, description)

    def create_quote(self, sender_wallet: str, incoming_payment_url: str) -> QuoteRecord:
        sender = self.wallets.resolve(sender_wallet)
        return self.pipeline.create_quote(sender, incoming_payment_url)

    # ── Customers and vendor grants ───────────────────────────────

    def customer_view(self, customer_id: str) -> dict:
        customer = self.accounts.get_customer(customer_id)
        grants = self.ledger.list_for_customer(customer_id, status=CustomerGrantStatus.ACTIVE)
        return {
            "customer": customer.to_public_dict(),
            "grants": [g.to_public_dict() for g in grants],
        }

    def authorize_vendor(
        self,
        customer_id: str,
        vendor_id: str,
        daily_limit: Decimal | str | float,
        expiration_days: Optional[int] = None,
    ) -> VendorAuthorization:
        """Ask the customer to approve a daily spending window for a vendor."""
        customer = self.accounts.get_customer(customer_id)
        vendor = self.accounts.get_vendor(vendor_id)
        if self.ledger.find_active(customer_id, vendor_id) is not None:
            raise DuplicateGrantError(
                f"Customer {customer_id} already has an active grant for vendor {vendor_id}"
            )

        wallet = self.wallets.resolve(customer.wallet_address)
        limit = quantize(daily_limit, wallet.asset_scale)
        access = AccessSpec(
            AccessType.OUTGOING_PAYMENT,
            OUTGOING_ACTIONS,
            identifier=wallet.id,
            limits=AccessLimits(
                debit_amount=scaled_amount(limit, wallet),
                interval=repeating_interval(self._clock(), DAILY_WINDOW),
            ),
        )
        grant = self.negotiator.request_grant(
            wallet,
            access,
            interactive=True,
            finish_uri=self.config.grant_callback_uri,
        )
        record = self.ledger.authorize(
            customer_id,
            vendor_id,
            limit,
            expiration_days or self.config.grant_expiration_days,
            vendor_name=vendor.name,
            asset_code=wallet.asset_code,
            asset_scale=wallet.asset_scale,
            grant=grant,
        )
        return VendorAuthorization(grant=record, authorization_url=grant.redirect_url or "")

    def complete_grant_authorization(
        self,
        identifier: str,
        interact_ref: Optional[str],
        hash: Optional[str],
        result: Optional[str] = None,
    ) -> CustomerGrant:
        """Handle the authorization server's redirect for a vendor grant."""
        record = self.ledger.find_by_identifier(identifier)
        if record is None:
            raise GrantNotFoundError(f"No grant awaiting authorization for {identifier}")

        with self._locks.hold(record.id):
            record = self.ledger.get(record.id)
            if record.status == CustomerGrantStatus.EXPIRED:
                raise GrantExpiredError(f"Grant {record.id} has expired")
            if record.status == CustomerGrantStatus.SUSPENDED:
                raise GrantSuspendedError(f"Grant {record.id} is suspended")
            if record.grant is None:
                raise ProtocolError(f"Grant {record.id} has no negotiation state")

            if result and result != "grant_approved" and not interact_ref:
                logger.info("Customer declined grant %s (%s)", record.id, result)
                return self.ledger.suspend(record.id)

            grant = self.negotiator.complete_interaction(record.grant, interact_ref or "", hash)
            return self.ledger.attach_tokens(record.id, grant)

    def process_payment(
        self,
        grant_id: str,
        amount: Decimal | str | float,
        description: Optional[str] = None,
    ) -> GrantPayment:
        """
        Pay a vendor against a customer grant.

        Raises:
            LimitExceededError: daily limit or wallet-side limit hit
            GrantExpiredError / GrantSuspendedError / GrantPendingError
            DownstreamError: transfer failed (the reservation is reversed)
        """
        with self._locks.hold(grant_id):
            record = self.ledger.get(grant_id)
            customer = self.accounts.get_customer(record.customer_id)
            vendor = self.accounts.get_vendor(record.vendor_id)

            spend = self.ledger.record_spend(grant_id, amount)
            if not spend.accepted:
                raise LimitExceededError(spend.reason or "Daily limit exceeded", remaining=str(spend.remaining))
            assert spend.receipt is not None

            try:
                sender = self.wallets.resolve(customer.wallet_address)
                receiver = self.wallets.resolve(vendor.wallet_address)
                grant = self.negotiator.rotate_grant(record.grant)
                record = self.ledger.attach_tokens(grant_id, grant)
                transfer = self.pipeline.execute_transfer(
                    sender, receiver, spend.receipt.amount, description, grant.access_token
                )
            except Exception as e:
                self.ledger.reverse_spend(spend.receipt)
                self._audit_payment(
                    EventType.PAYMENT_FAILED,
                    grant_id=grant_id,
                    customer_id=record.customer_id,
                    vendor_id=record.vendor_id,
                    amount=spend.receipt.amount,
                    success=False,
                    reason=str(e),
                )
                raise

            record = self.ledger.get(grant_id)

        self._audit_payment(
            EventType.PAYMENT_COMPLETED,
            grant_id=grant_id,
            customer_id=record.customer_id,
            vendor_id=record.vendor_id,
            amount=spend.receipt.amount,
            details={"outgoing_payment": transfer.outgoing_payment.id},
        )
        return GrantPayment(grant=record, spend=spend, transfer=transfer)

    def suspend_grant(self, grant_id: str) -> CustomerGrant:
        with self._locks.hold(grant_id):
            return self.ledger.suspend(grant_id)

    def sweep_expired(self) -> int:
        return self.ledger.expire_sweep()

    # ── Instant pay ───────────────────────────────────────────────

    def setup_instant_pay(
        self,
        wallet_address: str,
        max_amount: Decimal | str | float,
        redirect_url: Optional[str] = None,
    ) -> InstantPaySetup:
        wallet = self.wallets.resolve(wallet_address)
        access = AccessSpec(
            AccessType.OUTGOING_PAYMENT,
            OUTGOING_ACTIONS,
            identifier=wallet.id,
            limits=AccessLimits(debit_amount=scaled_amount(max_amount, wallet)),
        )
        finish = finish_uri_template(redirect_url) if redirect_url else self.config.instant_pay_finish_uri
        grant = self.negotiator.request_grant(wallet, access, interactive=True, finish_uri=finish)
        entry = self.pending_grants.put(grant, context={"kind": "instant-pay", "max_amount": str(to_decimal(max_amount))})
        return InstantPaySetup(
            identifier=grant.identifier,
            redirect_url=grant.redirect_url or "",
            expires_at=entry.expires_at,
        )

    def complete_instant_pay_setup(self, identifier: str, interact_ref: str, hash: Optional[str]) -> AccessTokenInfo:
        return self._complete_pending_setup("instant-pay", identifier, interact_ref, hash)

    def _complete_pending_setup(
        self, kind: str, identifier: str, interact_ref: str, hash: Optional[str]
    ) -> AccessTokenInfo:
        with self._locks.hold(f"pending:{identifier}"):
            entry = self.pending_grants.get(identifier)
            if entry.context.get("kind") != kind:
                raise SessionNotFoundError(f"No pending {kind} setup for {identifier}")
            self.negotiator.verify_interaction(entry.grant, interact_ref, hash)
            entry = self.pending_grants.take(identifier)
            grant = self.negotiator.complete_interaction(entry.grant, interact_ref, hash)
        return grant.token_info()

    def make_instant_payment(
        self,
        access_token: str,
        manage_url: str,
        vendor_wallet: str,
        sender_wallet: str,
        amount: Decimal | str | float,
        description: Optional[str] = None,
    ) -> InstantPayment:
        """Pay a vendor with a stored instant-pay token; returns the rotated token."""
        if not access_token or not manage_url:
            raise ValidationError("access_token and manage_url are required")
        sender = self.wallets.resolve(sender_wallet)
        vendor = self.wallets.resolve(vendor_wallet)

        with self._locks.hold(f"token:{manage_url}"):
            incoming = self.pipeline.create_incoming_payment(vendor, amount, description)
            token = self.negotiator.rotate_token(manage_url, access_token)
            try:
                outgoing = self.pipeline.pay_incoming_payment(
                    sender, incoming.id, amount, token.value, description
                )
            except LimitExceededError as e:
                raise LimitExceededError(
                    "One click buy spending limit exceeded. Please set up one click buy again."
                ) from e

        self._audit_payment(
            EventType.PAYMENT_COMPLETED,
            wallet_address=sender.id,
            amount=amount,
            details={"outgoing_payment": outgoing.id, "type": "instant"},
        )
        return InstantPayment(incoming_payment=incoming, outgoing_payment=outgoing, token=token)

    # ── Subscriptions ─────────────────────────────────────────────

    def setup_subscription(
        self,
        wallet_address: str,
        debit_amount: Decimal | str | float | None = None,
        receive_amount: Decimal | str | float | None = None,
        payments: Optional[int] = None,
        duration: Optional[str] = None,
        redirect_url: Optional[str] = None,
    ) -> SubscriptionSetup:
        """Request a recurring outgoing-payment grant the customer approves once.

        The grant allows ``payments`` repetitions of ``duration`` (unbounded
        when ``payments`` is None), each capped by the given amounts.
        """
        if debit_amount is None and receive_amount is None:
            raise ValidationError("A subscription needs a debit_amount or a receive_amount")
        period = duration or SUBSCRIPTION_PERIOD
        if not period.startswith("P"):
            raise ValidationError(f"Subscription duration must be an ISO 8601 duration, got {period}")

        wallet = self.wallets.resolve(wallet_address)
        interval = repeating_interval(self._clock(), period, payments)
        access = AccessSpec(
            AccessType.OUTGOING_PAYMENT,
            OUTGOING_ACTIONS,
            identifier=wallet.id,
            limits=AccessLimits(
                debit_amount=scaled_amount(debit_amount, wallet) if debit_amount is not None else None,
                receive_amount=scaled_amount(receive_amount, wallet) if receive_amount is not None else None,
                interval=interval,
            ),
        )
        finish = finish_uri_template(redirect_url) if redirect_url else self.config.subscription_finish_uri
        grant = self.negotiator.request_grant(wallet, access, interactive=True, finish_uri=finish)
        entry = self.pending_grants.put(grant, context={"kind": "subscription", "interval": interval})
        logger.info("Subscription grant %s requested for %s (%s)", grant.identifier, wallet.id, interval)
        return SubscriptionSetup(
            identifier=grant.identifier,
            redirect_url=grant.redirect_url or "",
            expires_at=entry.expires_at,
            interval=interval,
        )

    def complete_subscription_setup(self, identifier: str, interact_ref: str, hash: Optional[str]) -> AccessTokenInfo:
        """Continue an approved subscription grant; the token feeds process_subscription_payment."""
        return self._complete_pending_setup("subscription", identifier, interact_ref, hash)

    def process_subscription_payment(
        self,
        receiver_wallet: str,
        manage_url: str,
        previous_token: str,
    ) -> SubscriptionPayment:
        """Rotate a subscription token and pay its receive amount to ``receiver_wallet``."""
        if not manage_url or not previous_token:
            raise ValidationError("manage_url and previous_token are required")
        receiver_url = normalize_wallet_url(receiver_wallet)

        with self._locks.hold(f"token:{manage_url}"):
            token = self.negotiator.rotate_token(manage_url, previous_token)
            access = next(
                (a for a in token.access if a.type == AccessType.OUTGOING_PAYMENT),
                None,
            )
            if access is None or not access.identifier:
                raise ProtocolError("Rotated token carries no outgoing-payment access")
            if access.limits is None or access.limits.receive_amount is None:
                raise ValidationError("Subscription grant has no receive amount limit")

            receive = access.limits.receive_amount
            amount = from_scaled(receive.value, receive.asset_scale)
            sender = self.wallets.resolve(access.identifier)
            receiver = self.wallets.resolve(receiver_url)
            transfer = self.pipeline.execute_transfer(sender, receiver, amount, "subscription", token.value)

        self._audit_payment(
            EventType.PAYMENT_COMPLETED,
            wallet_address=sender.id,
            amount=amount,
            details={"outgoing_payment": transfer.outgoing_payment.id, "type": "subscription"},
        )
        return SubscriptionPayment(transfer=transfer, token=token)

    # ── QR bundles ────────────────────────────────────────────────

    def issue_qr_bundle(self, customer_id: str) -> QRBundle:
        self.accounts.get_customer(customer_id)
        return self.bundler.build_bundle(customer_id)

    def verify_qr_bundle(self, bundle: QRBundle) -> dict:
        """Authenticate a scanned bundle. Invalid signatures raise AuthenticationError."""
        if not self.bundler.verify_bundle(bundle):
            raise AuthenticationError("QR bundle signature is invalid")
        customer = self.accounts.get_customer(bundle.customer_id)
        return {
            "valid": True,
            "customer": customer.to_public_dict(),
            "grants": [g.to_dict() for g in bundle.grants],
            "generated_at": bundle.generated_at,
        }

    def _audit_payment(self, event_type: EventType, **kwargs) -> None:
        if self.audit:
            self.audit.log(event_type, **kwargs)


def build_service(
    config: PaperPayConfig,
    store: Optional[KeyValueStore] = None,
    audit: Optional[AuditTrail] = None,
) -> PaperPayService:
    """Wire a service against live Open Payments servers."""
    credentials = config.require_credentials()
    store = store or SQLiteKeyValueStore(config.store_path)
    if audit is None:
        audit = AuditTrail(config.audit_path)

    signed = create_signed_client(credentials.key_id, credentials.private_key_path, config.http_timeout_seconds)
    wallets = WalletDirectory(httpx.Client(timeout=config.http_timeout_seconds), cache_ttl=60)
    client_wallet = normalize_wallet_url(credentials.client_address)

    negotiator = GrantNegotiator(AuthServerClient(signed, client_wallet), audit=audit)
    pipeline = PaymentPipeline(
        negotiator,
        ResourceServerClient(signed),
        incoming_payment_ttl_seconds=config.incoming_payment_ttl_seconds,
    )
    ledger = GrantLedger(store, audit=audit, interaction_ttl_seconds=config.interaction_ttl_seconds)
    accounts = AccountRegistry(store)
    accounts.seed_defaults()

    return PaperPayService(
        config=config,
        wallets=wallets,
        negotiator=negotiator,
        pipeline=pipeline,
        ledger=ledger,
        sessions=SessionCache(store, ttl_seconds=config.session_ttl_seconds),
        pending_grants=PendingGrantCache(store, ttl_seconds=config.interaction_ttl_seconds),
        accounts=accounts,
        bundler=QRBundler(ledger, config.qr_signing_secret, audit=audit),
        audit=audit,
    )
