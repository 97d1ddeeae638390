"""
GNAP grant negotiation.

A ``Grant`` tracks one authorization lifecycle against a wallet's
authorization server:

    REQUESTED -> PENDING_INTERACTION -> ACTIVE -> EXPIRED | REVOKED
    REQUESTED -> ACTIVE                        (non-interactive)
    PENDING_INTERACTION -> EXPIRED | REVOKED

The final token of an interactive grant is only ever obtained through
``GrantNegotiator.complete_interaction``, which checks the interaction
hash before continuing.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence, Union

from . import interaction
from .audit import AuditTrail, EventType
from .errors import AuthenticationError, GrantPendingError, ProtocolError, ValidationError
from .open_payments import (
    AccessSpec,
    AccessTokenInfo,
    ActiveAccess,
    AuthServerClient,
    Continuation,
    PendingInteraction,
)
from .wallet import WalletAddress

logger = logging.getLogger(__name__)


class GrantStatus(str, Enum):
    REQUESTED = "requested"
    PENDING_INTERACTION = "pending_interaction"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


_TRANSITIONS: dict[GrantStatus, set[GrantStatus]] = {
    GrantStatus.REQUESTED: {GrantStatus.PENDING_INTERACTION, GrantStatus.ACTIVE},
    GrantStatus.PENDING_INTERACTION: {
        GrantStatus.ACTIVE,
        GrantStatus.EXPIRED,
        GrantStatus.REVOKED,
    },
    GrantStatus.ACTIVE: {GrantStatus.EXPIRED, GrantStatus.REVOKED},
    GrantStatus.EXPIRED: set(),
    GrantStatus.REVOKED: set(),
}


@dataclass
class Grant:
    identifier: str
    wallet_address: str
    auth_server: str
    access: list[AccessSpec]
    interactive: bool = False
    client_nonce: Optional[str] = None
    interact_nonce: Optional[str] = None
    redirect_url: Optional[str] = None
    continue_uri: Optional[str] = None
    continue_token: Optional[str] = None
    access_token: Optional[str] = None
    manage_url: Optional[str] = None
    status: GrantStatus = GrantStatus.REQUESTED
    created_at: float = field(default_factory=time.time)

    def transition(self, new_status: GrantStatus) -> None:
        if new_status not in _TRANSITIONS[self.status]:
            raise ProtocolError(
                f"Grant {self.identifier} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def token_info(self) -> AccessTokenInfo:
        if self.status == GrantStatus.PENDING_INTERACTION or not self.access_token:
            raise GrantPendingError(f"Grant {self.identifier} has no access token yet")
        return AccessTokenInfo(
            value=self.access_token,
            manage_url=self.manage_url or "",
            access=list(self.access),
        )

    def apply_token(self, token: AccessTokenInfo) -> None:
        self.access_token = token.value
        self.manage_url = token.manage_url
        if token.access:
            self.access = list(token.access)

    def apply_continuation(self, continuation: Optional[Continuation]) -> None:
        if continuation is not None:
            self.continue_uri = continuation.uri
            self.continue_token = continuation.access_token

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "wallet_address": self.wallet_address,
            "auth_server": self.auth_server,
            "access": [a.to_dict() for a in self.access],
            "interactive": self.interactive,
            "client_nonce": self.client_nonce,
            "interact_nonce": self.interact_nonce,
            "redirect_url": self.redirect_url,
            "continue_uri": self.continue_uri,
            "continue_token": self.continue_token,
            "access_token": self.access_token,
            "manage_url": self.manage_url,
            "status": self.status.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Grant":
        return cls(
            identifier=data["identifier"],
            wallet_address=data["wallet_address"],
            auth_server=data["auth_server"],
            access=[AccessSpec.from_dict(a) for a in data.get("access", [])],
            interactive=data.get("interactive", False),
            client_nonce=data.get("client_nonce"),
            interact_nonce=data.get("interact_nonce"),
            redirect_url=data.get("redirect_url"),
            continue_uri=data.get("continue_uri"),
            continue_token=data.get("continue_token"),
            access_token=data.get("access_token"),
            manage_url=data.get("manage_url"),
            status=GrantStatus(data.get("status", GrantStatus.REQUESTED.value)),
            created_at=data.get("created_at", 0.0),
        )


class GrantNegotiator:
    """Drives grant requests, continuation and token rotation."""

    def __init__(
        self,
        auth_client: AuthServerClient,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.auth_client = auth_client
        self.audit = audit
        self._clock = clock

    def request_grant(
        self,
        wallet: WalletAddress,
        access: Union[AccessSpec, Sequence[AccessSpec]],
        interactive: bool,
        finish_uri: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> Grant:
        """
        Request a grant from ``wallet``'s authorization server.

        For interactive grants ``finish_uri`` is a template where
        ``{identifier}`` is replaced with the grant's identifier, so the
        redirect back can be matched to this exact request.

        Raises:
            ValidationError: interactive grant without a finish URI
            ProtocolError: response variant contradicts ``interactive``
            DownstreamError: authorization server unreachable or rejected
        """
        specs = [access] if isinstance(access, AccessSpec) else list(access)
        if not specs:
            raise ValidationError("At least one access right is required")

        grant = Grant(
            identifier=identifier or str(uuid.uuid4()),
            wallet_address=wallet.id,
            auth_server=wallet.auth_server,
            access=specs,
            interactive=interactive,
            created_at=self._clock(),
        )

        interact = None
        if interactive:
            if not finish_uri:
                raise ValidationError("Interactive grants need a finish URI")
            grant.client_nonce = str(uuid.uuid4())
            interact = {
                "start": ["redirect"],
                "finish": {
                    "method": "redirect",
                    "uri": finish_uri.replace("{identifier}", grant.identifier),
                    "nonce": grant.client_nonce,
                },
            }

        response = self.auth_client.request_grant(wallet.auth_server, specs, interact)

        if isinstance(response, PendingInteraction):
            if not interactive:
                raise ProtocolError("Expected a direct token but the server asked for interaction")
            grant.interact_nonce = response.interact_nonce
            grant.redirect_url = response.redirect_url
            grant.apply_continuation(response.continuation)
            grant.transition(GrantStatus.PENDING_INTERACTION)
        elif isinstance(response, ActiveAccess):
            if interactive:
                raise ProtocolError("Expected an interactive grant but the server issued a token")
            grant.apply_token(response.token)
            grant.apply_continuation(response.continuation)
            grant.transition(GrantStatus.ACTIVE)
        else:
            raise ProtocolError(f"Unexpected grant response variant: {type(response).__name__}")

        logger.info(
            "Grant %s requested (%s) on %s -> %s",
            grant.identifier,
            ",".join(a.type.value for a in specs),
            grant.auth_server,
            grant.status.value,
        )
        if self.audit and interactive:
            self.audit.log(
                EventType.GRANT_REQUESTED,
                grant_id=grant.identifier,
                wallet_address=grant.wallet_address,
                details={"interactive": interactive, "status": grant.status.value},
            )
        return grant

    def continue_grant(self, continue_uri: str, continue_token: str, interact_ref: str) -> AccessTokenInfo:
        """Exchange an interaction reference for the final token.

        Callers must have verified the interaction hash first; grant-level
        code goes through ``complete_interaction``.
        """
        return self.auth_client.continue_grant(continue_uri, continue_token, interact_ref).token

    def verify_interaction(self, grant: Grant, interact_ref: str, received_hash: Optional[str]) -> None:
        """Check the redirect's hash against the grant without touching the server.

        Raises AuthenticationError on mismatch; the grant stays pending.
        """
        if grant.status != GrantStatus.PENDING_INTERACTION:
            raise ProtocolError(
                f"Grant {grant.identifier} is {grant.status.value}, not awaiting interaction"
            )
        if not interact_ref:
            raise ValidationError("interact_ref is required")
        if not (grant.client_nonce and grant.interact_nonce and grant.continue_uri and grant.continue_token):
            raise ProtocolError(f"Grant {grant.identifier} is missing its negotiation state")

        try:
            interaction.verify_or_raise(
                received_hash,
                grant.client_nonce,
                grant.interact_nonce,
                interact_ref,
                grant.auth_server,
                grant_identifier=grant.identifier,
            )
        except AuthenticationError:
            if self.audit:
                self.audit.log(
                    EventType.INTERACTION_REJECTED,
                    grant_id=grant.identifier,
                    wallet_address=grant.wallet_address,
                    success=False,
                    reason="hash mismatch",
                )
            raise

    def complete_interaction(self, grant: Grant, interact_ref: str, received_hash: Optional[str]) -> Grant:
        """Verify the interaction hash, then continue the grant to ACTIVE."""
        self.verify_interaction(grant, interact_ref, received_hash)
        if self.audit:
            self.audit.log(
                EventType.INTERACTION_VERIFIED,
                grant_id=grant.identifier,
                wallet_address=grant.wallet_address,
            )

        active = self.auth_client.continue_grant(grant.continue_uri, grant.continue_token, interact_ref)
        grant.apply_token(active.token)
        grant.apply_continuation(active.continuation)
        grant.transition(GrantStatus.ACTIVE)

        logger.info("Grant %s continued", grant.identifier)
        if self.audit:
            self.audit.log(
                EventType.GRANT_CONTINUED,
                grant_id=grant.identifier,
                wallet_address=grant.wallet_address,
            )
        return grant

    def rotate_token(self, manage_url: str, access_token: str) -> AccessTokenInfo:
        """Fresh token for the same rights. Failures propagate and are not retried."""
        token = self.auth_client.rotate_token(manage_url, access_token)
        logger.debug("Rotated token at %s", manage_url)
        return token

    def rotate_grant(self, grant: Grant) -> Grant:
        if grant.status == GrantStatus.PENDING_INTERACTION:
            raise GrantPendingError(f"Grant {grant.identifier} has not completed interaction")
        if grant.status != GrantStatus.ACTIVE or not grant.access_token or not grant.manage_url:
            raise ProtocolError(f"Grant {grant.identifier} is {grant.status.value} and cannot rotate")

        token = self.rotate_token(grant.manage_url, grant.access_token)
        grant.apply_token(token)
        if self.audit:
            self.audit.log(
                EventType.TOKEN_ROTATED,
                grant_id=grant.identifier,
                wallet_address=grant.wallet_address,
            )
        return grant

    def revoke(self, grant: Grant) -> Grant:
        """Revoke at the authorization server, then locally."""
        if GrantStatus.REVOKED not in _TRANSITIONS[grant.status]:
            raise ProtocolError(f"Grant {grant.identifier} is {grant.status.value} and cannot be revoked")
        if grant.continue_uri and grant.continue_token:
            self.auth_client.revoke_grant(grant.continue_uri, grant.continue_token)
        grant.transition(GrantStatus.REVOKED)
        logger.info("Grant %s revoked", grant.identifier)
        return grant

    def expire(self, grant: Grant) -> Grant:
        grant.transition(GrantStatus.EXPIRED)
        return grant
