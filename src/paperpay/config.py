"""
PaperPay configuration.

Settings come from environment variables; anything secret that is not
provided is generated once and persisted with private file permissions.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .storage import load_or_create_key


CLIENT_ADDRESS_ENV = "OPEN_PAYMENTS_CLIENT_ADDRESS"
KEY_ID_ENV = "OPEN_PAYMENTS_KEY_ID"
PRIVATE_KEY_PATH_ENV = "OPEN_PAYMENTS_SECRET_KEY_PATH"

BASE_URL_ENV = "PAPERPAY_BASE_URL"
FRONTEND_URL_ENV = "PAPERPAY_FRONTEND_URL"
DATA_DIR_ENV = "PAPERPAY_DATA_DIR"
QR_SECRET_ENV = "PAPERPAY_QR_SIGNING_SECRET"
HTTP_TIMEOUT_ENV = "PAPERPAY_HTTP_TIMEOUT"
SESSION_TTL_ENV = "PAPERPAY_SESSION_TTL"
INTERACTION_TTL_ENV = "PAPERPAY_INTERACTION_TTL"
GRANT_EXPIRATION_DAYS_ENV = "PAPERPAY_GRANT_EXPIRATION_DAYS"
PORT_ENV = "PORT"

DEFAULT_BASE_URL = "http://localhost:3001"
DEFAULT_DATA_DIR = Path.home() / ".paperpay"
DEFAULT_QR_KEY_PATH = Path.home() / ".paperpay-secrets" / "qr_hmac.key"


@dataclass
class OpenPaymentsCredentials:
    client_address: str
    key_id: str
    private_key_path: Path


@dataclass
class PaperPayConfig:
    base_url: str = DEFAULT_BASE_URL
    frontend_url: str = DEFAULT_BASE_URL
    data_dir: Path = DEFAULT_DATA_DIR
    http_timeout_seconds: float = 30.0
    session_ttl_seconds: int = 180
    interaction_ttl_seconds: int = 300
    incoming_payment_ttl_seconds: int = 30 * 60
    grant_expiration_days: int = 30
    port: int = 3001
    credentials: Optional[OpenPaymentsCredentials] = None
    qr_signing_secret: bytes = field(default=b"", repr=False)

    @property
    def grant_callback_uri(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/grants/callback?identifier={{identifier}}"

    @property
    def instant_pay_finish_uri(self) -> str:
        return f"{self.frontend_url.rstrip('/')}/instant-pay/finish?identifier={{identifier}}"

    @property
    def subscription_finish_uri(self) -> str:
        return f"{self.frontend_url.rstrip('/')}/subscriptions/finish?identifier={{identifier}}"

    @property
    def store_path(self) -> Path:
        return self.data_dir / "paperpay.sqlite3"

    @property
    def audit_path(self) -> Path:
        return self.data_dir / "audit.jsonl"

    def require_credentials(self) -> OpenPaymentsCredentials:
        if self.credentials is None:
            raise ValueError(
                "Open Payments credentials not found. Set OPEN_PAYMENTS_CLIENT_ADDRESS, "
                "OPEN_PAYMENTS_KEY_ID and OPEN_PAYMENTS_SECRET_KEY_PATH."
            )
        return self.credentials


def load_config(qr_key_path: Optional[Path] = None) -> PaperPayConfig:
    """Build configuration from the environment."""
    base_url = os.getenv(BASE_URL_ENV, DEFAULT_BASE_URL)
    data_dir = Path(os.getenv(DATA_DIR_ENV, str(DEFAULT_DATA_DIR))).expanduser()

    secret = os.getenv(QR_SECRET_ENV)
    if secret:
        qr_secret = secret.encode()
    else:
        qr_secret = load_or_create_key(qr_key_path or DEFAULT_QR_KEY_PATH)

    return PaperPayConfig(
        base_url=base_url,
        frontend_url=os.getenv(FRONTEND_URL_ENV, base_url),
        data_dir=data_dir,
        http_timeout_seconds=_float_env(HTTP_TIMEOUT_ENV, 30.0),
        session_ttl_seconds=_int_env(SESSION_TTL_ENV, 180),
        interaction_ttl_seconds=_int_env(INTERACTION_TTL_ENV, 300),
        grant_expiration_days=_int_env(GRANT_EXPIRATION_DAYS_ENV, 30),
        port=_int_env(PORT_ENV, 3001),
        credentials=_load_credentials(),
        qr_signing_secret=qr_secret,
    )


def _load_credentials() -> Optional[OpenPaymentsCredentials]:
    client_address = os.getenv(CLIENT_ADDRESS_ENV)
    key_id = os.getenv(KEY_ID_ENV)
    key_path = os.getenv(PRIVATE_KEY_PATH_ENV)
    if not (client_address and key_id and key_path):
        return None
    return OpenPaymentsCredentials(
        client_address=client_address,
        key_id=key_id,
        private_key_path=Path(key_path).expanduser(),
    )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
