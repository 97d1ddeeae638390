"""
Open Payments wire clients.

Authorization servers negotiate GNAP grants; resource servers hold the
incoming payments, quotes and outgoing payments those grants cover. Both
clients take an ``httpx.Client`` so callers decide timeouts, signing and
(in tests) transports.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

import httpx

from .errors import DownstreamError, ProtocolError, ValidationError
from .http_signatures import HttpMessageSigner, load_private_key_file

logger = logging.getLogger(__name__)


def isoformat_utc(timestamp: float) -> str:
    """Epoch seconds to the ``2024-01-01T00:00:00.000Z`` form Open Payments expects."""
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ── Access rights ─────────────────────────────────────────────────


class AccessType(str, Enum):
    INCOMING_PAYMENT = "incoming-payment"
    OUTGOING_PAYMENT = "outgoing-payment"
    QUOTE = "quote"


@dataclass(frozen=True)
class Amount:
    """A scaled integer amount as carried on the wire."""

    value: str
    asset_code: str
    asset_scale: int

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "assetCode": self.asset_code,
            "assetScale": self.asset_scale,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Amount":
        return cls(
            value=str(data["value"]),
            asset_code=data["assetCode"],
            asset_scale=int(data["assetScale"]),
        )


@dataclass
class AccessLimits:
    debit_amount: Optional[Amount] = None
    receive_amount: Optional[Amount] = None
    interval: Optional[str] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {}
        if self.debit_amount is not None:
            d["debitAmount"] = self.debit_amount.to_dict()
        if self.receive_amount is not None:
            d["receiveAmount"] = self.receive_amount.to_dict()
        if self.interval is not None:
            d["interval"] = self.interval
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "AccessLimits":
        debit = data.get("debitAmount")
        receive = data.get("receiveAmount")
        return cls(
            debit_amount=Amount.from_dict(debit) if debit else None,
            receive_amount=Amount.from_dict(receive) if receive else None,
            interval=data.get("interval"),
        )


@dataclass
class AccessSpec:
    type: AccessType
    actions: list[str]
    identifier: Optional[str] = None
    limits: Optional[AccessLimits] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"type": self.type.value, "actions": list(self.actions)}
        if self.identifier is not None:
            d["identifier"] = self.identifier
        if self.limits is not None:
            d["limits"] = self.limits.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "AccessSpec":
        try:
            access_type = AccessType(data["type"])
        except (KeyError, ValueError) as e:
            raise ProtocolError(f"Unknown access type in grant: {data.get('type')!r}") from e
        limits = data.get("limits")
        return cls(
            type=access_type,
            actions=list(data.get("actions", [])),
            identifier=data.get("identifier"),
            limits=AccessLimits.from_dict(limits) if limits else None,
        )


def repeating_interval(start: float, duration: str, repetitions: Optional[int] = None) -> str:
    """ISO 8601 repeating interval ``R<n>/<start>/<duration>``; no count repeats forever."""
    if repetitions is not None and repetitions <= 0:
        raise ValidationError("Repeating interval needs at least one repetition")
    count = "" if repetitions is None else str(repetitions)
    return f"R{count}/{isoformat_utc(start)}/{duration}"


# ── Negotiation responses ─────────────────────────────────────────


@dataclass
class Continuation:
    uri: str
    access_token: str
    wait: Optional[int] = None

    def to_dict(self) -> dict:
        return {"uri": self.uri, "access_token": self.access_token, "wait": self.wait}

    @classmethod
    def from_wire(cls, data: dict) -> "Continuation":
        try:
            return cls(
                uri=data["uri"],
                access_token=data["access_token"]["value"],
                wait=data.get("wait"),
            )
        except (KeyError, TypeError) as e:
            raise ProtocolError("Grant continuation is missing uri or token") from e


@dataclass
class AccessTokenInfo:
    value: str
    manage_url: str
    access: list[AccessSpec] = field(default_factory=list)
    expires_in: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "manage": self.manage_url,
            "access": [a.to_dict() for a in self.access],
            "expires_in": self.expires_in,
        }

    @classmethod
    def from_wire(cls, data: dict) -> "AccessTokenInfo":
        if isinstance(data, list):
            # GNAP allows several tokens; Open Payments issues one.
            if not data:
                raise ProtocolError("Grant response carries an empty access_token list")
            data = data[0]
        try:
            return cls(
                value=data["value"],
                manage_url=data["manage"],
                access=[AccessSpec.from_dict(a) for a in data.get("access", [])],
                expires_in=data.get("expires_in"),
            )
        except (KeyError, TypeError) as e:
            raise ProtocolError("Access token is missing value or manage url") from e


@dataclass
class PendingInteraction:
    """The authorization server wants the user to approve at ``redirect_url``."""

    redirect_url: str
    interact_nonce: str
    continuation: Continuation


@dataclass
class ActiveAccess:
    """The authorization server issued a token directly."""

    token: AccessTokenInfo
    continuation: Optional[Continuation] = None

    @property
    def access_token(self) -> str:
        return self.token.value

    @property
    def manage_url(self) -> str:
        return self.token.manage_url

    @property
    def access(self) -> list[AccessSpec]:
        return self.token.access


GrantResponse = Union[PendingInteraction, ActiveAccess]


def parse_grant_response(data: Any) -> GrantResponse:
    """Discriminate a grant response into one of its two variants."""
    if not isinstance(data, dict):
        raise ProtocolError("Grant response is not a JSON object")

    interact = data.get("interact")
    token = data.get("access_token")
    if interact and token:
        raise ProtocolError("Grant response carries both an interaction and a token")

    if interact:
        if "continue" not in data:
            raise ProtocolError("Pending grant response has no continuation")
        try:
            redirect_url = interact["redirect"]
            interact_nonce = interact["finish"]
        except (KeyError, TypeError) as e:
            raise ProtocolError("Pending grant response is missing redirect or finish nonce") from e
        return PendingInteraction(
            redirect_url=redirect_url,
            interact_nonce=interact_nonce,
            continuation=Continuation.from_wire(data["continue"]),
        )

    if token:
        cont = data.get("continue")
        return ActiveAccess(
            token=AccessTokenInfo.from_wire(token),
            continuation=Continuation.from_wire(cont) if cont else None,
        )

    raise ProtocolError("Grant response has neither an interaction nor an access token")


# ── Resource records ──────────────────────────────────────────────


@dataclass
class IncomingPaymentRecord:
    id: str
    wallet_address: str
    incoming_amount: Optional[Amount] = None
    expires_at: Optional[str] = None
    completed: bool = False
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "walletAddress": self.wallet_address,
            "incomingAmount": self.incoming_amount.to_dict() if self.incoming_amount else None,
            "expiresAt": self.expires_at,
            "completed": self.completed,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IncomingPaymentRecord":
        amount = data.get("incomingAmount")
        return cls(
            id=data["id"],
            wallet_address=data["walletAddress"],
            incoming_amount=Amount.from_dict(amount) if amount else None,
            expires_at=data.get("expiresAt"),
            completed=bool(data.get("completed", False)),
            metadata=data.get("metadata") or {},
        )


@dataclass
class QuoteRecord:
    id: str
    wallet_address: str
    receiver: str
    debit_amount: Amount
    receive_amount: Amount
    expires_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "walletAddress": self.wallet_address,
            "receiver": self.receiver,
            "debitAmount": self.debit_amount.to_dict(),
            "receiveAmount": self.receive_amount.to_dict(),
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QuoteRecord":
        return cls(
            id=data["id"],
            wallet_address=data["walletAddress"],
            receiver=data["receiver"],
            debit_amount=Amount.from_dict(data["debitAmount"]),
            receive_amount=Amount.from_dict(data["receiveAmount"]),
            expires_at=data.get("expiresAt"),
        )


@dataclass
class OutgoingPaymentRecord:
    id: str
    wallet_address: str
    receiver: Optional[str] = None
    quote_id: Optional[str] = None
    debit_amount: Optional[Amount] = None
    sent_amount: Optional[Amount] = None
    failed: bool = False
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "walletAddress": self.wallet_address,
            "receiver": self.receiver,
            "quoteId": self.quote_id,
            "debitAmount": self.debit_amount.to_dict() if self.debit_amount else None,
            "sentAmount": self.sent_amount.to_dict() if self.sent_amount else None,
            "failed": self.failed,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OutgoingPaymentRecord":
        debit = data.get("debitAmount")
        sent = data.get("sentAmount")
        return cls(
            id=data["id"],
            wallet_address=data["walletAddress"],
            receiver=data.get("receiver"),
            quote_id=data.get("quoteId"),
            debit_amount=Amount.from_dict(debit) if debit else None,
            sent_amount=Amount.from_dict(sent) if sent else None,
            failed=bool(data.get("failed", False)),
            metadata=data.get("metadata") or {},
        )


# ── HTTP plumbing ─────────────────────────────────────────────────


class _OpenPaymentsHttp:
    def __init__(self, client: httpx.Client):
        self._client = client

    def _send(
        self,
        operation: str,
        method: str,
        url: str,
        body: Optional[dict] = None,
        token: Optional[str] = None,
    ) -> Optional[dict]:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"GNAP {token}"
        try:
            response = self._client.request(method, url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("%s timed out: %s", operation, url)
            raise DownstreamError(operation, "request timed out") from e
        except httpx.HTTPError as e:
            logger.warning("%s transport failure: %s", operation, e)
            raise DownstreamError(operation, "transport failure") from e

        if response.status_code >= 400:
            logger.warning(
                "%s rejected with %s: %s", operation, response.status_code, response.text[:500]
            )
            raise DownstreamError(
                operation,
                "server rejected the request",
                status_code=response.status_code,
                detail=response.text,
            )
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise DownstreamError(operation, "response is not JSON") from e

    def _record(self, operation: str, data: Optional[dict], parser):
        if data is None:
            raise DownstreamError(operation, "empty response")
        try:
            return parser(data)
        except (KeyError, TypeError, ValueError) as e:
            raise DownstreamError(operation, f"malformed response: {e}") from e


class AuthServerClient(_OpenPaymentsHttp):
    """GNAP grant negotiation on behalf of ``client_wallet``."""

    def __init__(self, client: httpx.Client, client_wallet: str):
        super().__init__(client)
        self.client_wallet = client_wallet

    def request_grant(
        self,
        auth_server: str,
        access: list[AccessSpec],
        interact: Optional[dict] = None,
    ) -> GrantResponse:
        body: dict[str, Any] = {
            "access_token": {"access": [a.to_dict() for a in access]},
            "client": self.client_wallet,
        }
        if interact is not None:
            body["interact"] = interact
        data = self._send("grant request", "POST", auth_server, body)
        return parse_grant_response(data)

    def continue_grant(self, continue_uri: str, continue_token: str, interact_ref: str) -> ActiveAccess:
        data = self._send(
            "grant continuation",
            "POST",
            continue_uri,
            {"interact_ref": interact_ref},
            token=continue_token,
        )
        response = parse_grant_response(data)
        if isinstance(response, ActiveAccess):
            return response
        elif isinstance(response, PendingInteraction):
            raise ProtocolError("Grant continuation returned another interaction")
        else:
            raise ProtocolError(f"Unexpected grant response variant: {type(response).__name__}")

    def rotate_token(self, manage_url: str, access_token: str) -> AccessTokenInfo:
        data = self._send("token rotation", "POST", manage_url, token=access_token)
        if not data or "access_token" not in data:
            raise ProtocolError("Token rotation response has no access_token")
        return AccessTokenInfo.from_wire(data["access_token"])

    def revoke_grant(self, continue_uri: str, continue_token: str) -> None:
        self._send("grant revocation", "DELETE", continue_uri, token=continue_token)


class ResourceServerClient(_OpenPaymentsHttp):
    """Incoming payments, quotes and outgoing payments."""

    def create_incoming_payment(
        self,
        resource_server: str,
        token: str,
        wallet_address: str,
        incoming_amount: Optional[Amount] = None,
        expires_at: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> IncomingPaymentRecord:
        body: dict[str, Any] = {"walletAddress": wallet_address}
        if incoming_amount is not None:
            body["incomingAmount"] = incoming_amount.to_dict()
        if expires_at is not None:
            body["expiresAt"] = expires_at
        if metadata:
            body["metadata"] = metadata
        data = self._send(
            "incoming payment", "POST", _join(resource_server, "incoming-payments"), body, token
        )
        return self._record("incoming payment", data, IncomingPaymentRecord.from_dict)

    def create_quote(
        self,
        resource_server: str,
        token: str,
        wallet_address: str,
        receiver: str,
        method: str = "ilp",
        debit_amount: Optional[Amount] = None,
    ) -> QuoteRecord:
        body: dict[str, Any] = {
            "walletAddress": wallet_address,
            "receiver": receiver,
            "method": method,
        }
        if debit_amount is not None:
            body["debitAmount"] = debit_amount.to_dict()
        data = self._send("quote", "POST", _join(resource_server, "quotes"), body, token)
        return self._record("quote", data, QuoteRecord.from_dict)

    def create_outgoing_payment(
        self,
        resource_server: str,
        token: str,
        wallet_address: str,
        *,
        quote_id: Optional[str] = None,
        incoming_payment: Optional[str] = None,
        debit_amount: Optional[Amount] = None,
        metadata: Optional[dict] = None,
    ) -> OutgoingPaymentRecord:
        if (quote_id is None) == (incoming_payment is None):
            raise ValidationError("Outgoing payment needs exactly one of quote_id or incoming_payment")
        body: dict[str, Any] = {"walletAddress": wallet_address}
        if quote_id is not None:
            body["quoteId"] = quote_id
        else:
            if debit_amount is None:
                raise ValidationError("Paying an incoming payment directly requires debit_amount")
            body["incomingPayment"] = incoming_payment
            body["debitAmount"] = debit_amount.to_dict()
        if metadata:
            body["metadata"] = metadata
        data = self._send(
            "outgoing payment", "POST", _join(resource_server, "outgoing-payments"), body, token
        )
        return self._record("outgoing payment", data, OutgoingPaymentRecord.from_dict)


def _join(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path}"


def create_signed_client(key_id: str, private_key_path: Path, timeout_seconds: float) -> httpx.Client:
    """An httpx client that signs every request with the configured Ed25519 key."""
    signer = HttpMessageSigner(key_id, load_private_key_file(private_key_path))
    return httpx.Client(auth=signer, timeout=timeout_seconds)
