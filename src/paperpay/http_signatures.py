"""
HTTP message signatures for Open Payments requests.

Authorization and resource servers identify the client by an Ed25519 key
registered on its wallet address. Each request carries a Content-Digest
over the body and a Signature / Signature-Input pair covering the method,
target URI and the security-relevant headers.
"""

from __future__ import annotations

import base64
import hashlib
import time
from pathlib import Path
from typing import Callable, Generator, Optional

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519


SIGNATURE_LABEL = "sig1"


def load_private_key(key_data: str | bytes) -> ed25519.Ed25519PrivateKey:
    """Load an Ed25519 key from PEM, base64-encoded PEM, or a base64 raw seed."""
    if isinstance(key_data, bytes):
        key_data = key_data.decode("utf-8")
    # Handle literal '\n' sequences often present in unquoted env vars.
    if "\\n" in key_data:
        key_data = key_data.replace("\\n", "\n")
    key_data = key_data.strip()

    candidates = [key_data]
    if "BEGIN" not in key_data:
        try:
            decoded = base64.b64decode(key_data, validate=True)
        except ValueError:
            decoded = b""
        if decoded.startswith(b"-----BEGIN"):
            candidates.append(decoded.decode("utf-8"))
        elif len(decoded) in (32, 64):
            return ed25519.Ed25519PrivateKey.from_private_bytes(decoded[:32])

    for candidate in candidates:
        if "BEGIN" not in candidate:
            continue
        try:
            key = serialization.load_pem_private_key(candidate.encode("utf-8"), password=None)
        except ValueError:
            continue
        if isinstance(key, ed25519.Ed25519PrivateKey):
            return key

    raise ValueError("Open Payments private key must be an Ed25519 PEM or base64 key")


def load_private_key_file(path: Path) -> ed25519.Ed25519PrivateKey:
    return load_private_key(path.read_text())


def content_digest(body: bytes) -> str:
    digest = base64.b64encode(hashlib.sha512(body).digest()).decode("ascii")
    return f"sha-512=:{digest}:"


class HttpMessageSigner(httpx.Auth):
    """httpx auth flow that signs every outgoing request."""

    requires_request_body = True

    def __init__(
        self,
        key_id: str,
        private_key: ed25519.Ed25519PrivateKey,
        clock: Callable[[], float] = time.time,
    ):
        if not key_id:
            raise ValueError("Key id is required for request signing")
        self.key_id = key_id
        self._private_key = private_key
        self._clock = clock

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers.update(self.signature_headers(request))
        yield request

    def signature_headers(self, request: httpx.Request) -> dict[str, str]:
        headers: dict[str, str] = {}
        components = ["@method", "@target-uri"]
        body = request.content
        if body:
            headers["Content-Digest"] = content_digest(body)
            headers.setdefault("Content-Length", str(len(body)))
            components += ["content-digest", "content-length", "content-type"]
        if "authorization" in request.headers:
            components.append("authorization")

        params = self._signature_params(components)
        base = self._signature_base(request, headers, components, params)
        signature = base64.b64encode(self._private_key.sign(base.encode("utf-8"))).decode("ascii")

        headers["Signature-Input"] = f"{SIGNATURE_LABEL}={params}"
        headers["Signature"] = f"{SIGNATURE_LABEL}=:{signature}:"
        return headers

    def _signature_params(self, components: list[str]) -> str:
        quoted = " ".join(f'"{c}"' for c in components)
        return f'({quoted});keyid="{self.key_id}";created={int(self._clock())}'

    def _signature_base(
        self,
        request: httpx.Request,
        extra_headers: dict[str, str],
        components: list[str],
        params: str,
    ) -> str:
        lines = []
        for component in components:
            if component == "@method":
                value = request.method.upper()
            elif component == "@target-uri":
                value = str(request.url)
            else:
                value = _header_lookup(extra_headers, component) or request.headers.get(component, "")
            lines.append(f'"{component}": {value}')
        lines.append(f'"@signature-params": {params}')
        return "\n".join(lines)


def verify_signature(
    public_key: ed25519.Ed25519PublicKey,
    request: httpx.Request,
) -> bool:
    """Check a signed request against the signer's public key (used by tests and tooling)."""
    sig_input = request.headers.get("Signature-Input", "")
    sig_header = request.headers.get("Signature", "")
    prefix = f"{SIGNATURE_LABEL}="
    if not sig_input.startswith(prefix) or not sig_header.startswith(prefix + ":"):
        return False
    params = sig_input[len(prefix):]
    components = [c.strip('"') for c in params[1:params.index(")")].split()]
    lines = []
    for component in components:
        if component == "@method":
            value = request.method.upper()
        elif component == "@target-uri":
            value = str(request.url)
        else:
            value = request.headers.get(component, "")
        lines.append(f'"{component}": {value}')
    lines.append(f'"@signature-params": {params}')
    signature = base64.b64decode(sig_header[len(prefix) + 1:-1])
    try:
        public_key.verify(signature, "\n".join(lines).encode("utf-8"))
    except InvalidSignature:
        return False
    return True


def _header_lookup(headers: dict[str, str], name: str) -> Optional[str]:
    target = name.lower()
    for k, v in headers.items():
        if k.lower() == target:
            return v
    return None
