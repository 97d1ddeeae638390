"""
Interaction hash verification.

When the user finishes at the authorization server they are redirected
back with ``interact_ref`` and ``hash``. The hash binds the reference to
the nonces exchanged when the grant was requested, and only this client
knows its own nonce, so a matching hash proves the redirect belongs to
our request.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Optional

from .errors import AuthenticationError

logger = logging.getLogger(__name__)


def compute_hash(
    client_nonce: str,
    interact_nonce: str,
    interact_ref: str,
    auth_server_url: str,
) -> str:
    """SHA-256 over the nonces, the reference and the auth server URL plus "/", base64."""
    data = f"{client_nonce}\n{interact_nonce}\n{interact_ref}\n{auth_server_url}/"
    return base64.b64encode(hashlib.sha256(data.encode("utf-8")).digest()).decode("ascii")


def verify(
    received: Optional[str],
    client_nonce: str,
    interact_nonce: str,
    interact_ref: str,
    auth_server_url: str,
) -> bool:
    if not received:
        return False
    expected = compute_hash(client_nonce, interact_nonce, interact_ref, auth_server_url)
    return hmac.compare_digest(expected.encode("ascii"), received.encode("utf-8"))


def verify_or_raise(
    received: Optional[str],
    client_nonce: str,
    interact_nonce: str,
    interact_ref: str,
    auth_server_url: str,
    grant_identifier: Optional[str] = None,
) -> None:
    if verify(received, client_nonce, interact_nonce, interact_ref, auth_server_url):
        return
    logger.warning(
        "Interaction hash mismatch for grant %s (possible tamper or replay)",
        grant_identifier or "<unknown>",
    )
    raise AuthenticationError("Interaction hash mismatch; restart the authorization")
