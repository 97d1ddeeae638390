"""Customer and vendor registry."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import CustomerNotFoundError, ValidationError, VendorNotFoundError
from .kvstore import KeyValueStore
from .wallet import normalize_wallet_url

logger = logging.getLogger(__name__)

CUSTOMER_PREFIX = "customer:"
VENDOR_PREFIX = "vendor:"

SAMPLE_VENDORS = [
    ("vendor1", "ShopA Market", "https://ilp.interledger-test.dev/shop-a"),
    ("vendor2", "MarketB Fresh", "https://ilp.interledger-test.dev/market-b"),
    ("vendor3", "FoodStall C", "https://ilp.interledger-test.dev/food-c"),
]


@dataclass
class Customer:
    id: str
    name: str
    wallet_address: str
    phone: Optional[str] = None
    email: Optional[str] = None
    created_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "wallet_address": self.wallet_address,
            "phone": self.phone,
            "email": self.email,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Customer":
        return cls(
            id=data["id"],
            name=data["name"],
            wallet_address=data["wallet_address"],
            phone=data.get("phone"),
            email=data.get("email"),
            created_at=data.get("created_at", 0.0),
        )

    def to_public_dict(self) -> dict:
        d = self.to_dict()
        d.pop("wallet_address")
        return d


@dataclass
class Vendor:
    id: str
    name: str
    wallet_address: str
    created_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "wallet_address": self.wallet_address,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Vendor":
        return cls(
            id=data["id"],
            name=data["name"],
            wallet_address=data["wallet_address"],
            created_at=data.get("created_at", 0.0),
        )


class AccountRegistry:
    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    def create_customer(
        self,
        name: str,
        wallet_address: str,
        phone: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Customer:
        if not name or not name.strip():
            raise ValidationError("Customer name is required")
        customer = Customer(
            id=str(uuid.uuid4()),
            name=name.strip(),
            wallet_address=normalize_wallet_url(wallet_address),
            phone=phone,
            email=email,
            created_at=self._clock(),
        )
        self.store.set(CUSTOMER_PREFIX + customer.id, customer.to_dict())
        logger.info("Created customer %s", customer.id)
        return customer

    def get_customer(self, customer_id: str) -> Customer:
        raw = self.store.get(CUSTOMER_PREFIX + customer_id)
        if raw is None:
            raise CustomerNotFoundError(f"Customer not found: {customer_id}")
        return Customer.from_dict(raw)

    def list_customers(self) -> list[Customer]:
        customers = [Customer.from_dict(raw) for _, raw in self.store.scan(CUSTOMER_PREFIX)]
        return sorted(customers, key=lambda c: c.created_at)

    def create_vendor(self, name: str, wallet_address: str, vendor_id: Optional[str] = None) -> Vendor:
        if not name or not name.strip():
            raise ValidationError("Vendor name is required")
        vendor = Vendor(
            id=vendor_id or str(uuid.uuid4()),
            name=name.strip(),
            wallet_address=normalize_wallet_url(wallet_address),
            created_at=self._clock(),
        )
        self.store.set(VENDOR_PREFIX + vendor.id, vendor.to_dict())
        logger.info("Registered vendor %s (%s)", vendor.id, vendor.name)
        return vendor

    def get_vendor(self, vendor_id: str) -> Vendor:
        raw = self.store.get(VENDOR_PREFIX + vendor_id)
        if raw is None:
            raise VendorNotFoundError(f"Vendor not found: {vendor_id}")
        return Vendor.from_dict(raw)

    def list_vendors(self) -> list[Vendor]:
        vendors = [Vendor.from_dict(raw) for _, raw in self.store.scan(VENDOR_PREFIX)]
        return sorted(vendors, key=lambda v: (v.created_at, v.id))

    def seed_defaults(self) -> int:
        """Register the sample vendors that are not present yet."""
        added = 0
        for vendor_id, name, wallet in SAMPLE_VENDORS:
            if self.store.get(VENDOR_PREFIX + vendor_id) is None:
                self.create_vendor(name, wallet, vendor_id=vendor_id)
                added += 1
        return added
