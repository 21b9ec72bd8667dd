"""
domain.py — Core Types of Order Reconciliation

Plain immutable value types shared by the ledger, the cart reader, the order
store and the engine. Request/response payloads of the HTTP API live in
`models.py`; these types never leave the process.

Types:
    - OwnerIdentity: AuthenticatedOwner | GuestOwner, who a cart / order belongs to.
    - CartLine, CartSnapshot: priced cart contents at order-creation time.
    - PaymentReference: the provider's view of a payment intent.
    - Order, OrderItem: the durable result.
    - OrderStatus: order lifecycle with its allowed transitions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional, Union


# --- Owner identity ---

@dataclass(frozen=True)
class GuestContact:
    """Shipping contact collected from a guest at checkout."""
    email: str
    name: str
    address: str
    city: str
    state: str
    zip_code: str
    country: str = "US"

    def address_json(self) -> dict:
        return {
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "zipCode": self.zip_code,
            "country": self.country,
        }


@dataclass(frozen=True)
class AuthenticatedOwner:
    user_id: str

    def describe(self) -> str:
        return f"user {self.user_id}"


@dataclass(frozen=True)
class GuestOwner:
    session_token: str
    contact: GuestContact

    def describe(self) -> str:
        return f"guest session {self.session_token}"


OwnerIdentity = Union[AuthenticatedOwner, GuestOwner]

_GUEST_CONTACT_KEYS = {
    "email": "guestEmail",
    "name": "guestName",
    "address": "guestAddress",
    "city": "guestCity",
    "state": "guestState",
    "zip_code": "guestZipCode",
}


def owner_to_metadata(owner: OwnerIdentity) -> dict:
    """Flattens an owner into string-only payment metadata."""
    if isinstance(owner, AuthenticatedOwner):
        return {"ownerType": "user", "userId": owner.user_id}
    metadata = {"ownerType": "guest", "guestSessionToken": owner.session_token}
    for attr, key in _GUEST_CONTACT_KEYS.items():
        metadata[key] = getattr(owner.contact, attr)
    metadata["guestCountry"] = owner.contact.country
    return metadata


def owner_from_metadata(metadata: Mapping[str, Any]) -> Optional[OwnerIdentity]:
    """
    Rebuilds the owner from payment metadata.

    Returns None when the metadata does not identify an owner unambiguously
    (unknown owner type, missing user id, missing session token or contact field).
    """
    owner_type = metadata.get("ownerType")
    if owner_type == "user":
        user_id = metadata.get("userId")
        return AuthenticatedOwner(user_id) if user_id else None
    if owner_type == "guest":
        token = metadata.get("guestSessionToken")
        values = {attr: metadata.get(key) for attr, key in _GUEST_CONTACT_KEYS.items()}
        if not token or not all(values.values()):
            return None
        return GuestOwner(token, GuestContact(country=metadata.get("guestCountry") or "US", **values))
    return None


def owner_as_json(owner: OwnerIdentity) -> dict:
    if isinstance(owner, AuthenticatedOwner):
        return {"type": "user", "userId": owner.user_id}
    return {
        "type": "guest",
        "sessionToken": owner.session_token,
        "email": owner.contact.email,
        "name": owner.contact.name,
        **owner.contact.address_json(),
    }


# --- Cart ---

@dataclass(frozen=True)
class CartLine:
    line_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    customizations: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError(f"Cart line {self.line_id} has non-positive quantity {self.quantity}")

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def as_json(self) -> dict:
        return {
            "productId": self.product_id,
            "quantity": self.quantity,
            "price": str(self.unit_price),
            "customizations": dict(self.customizations),
        }


@dataclass(frozen=True)
class CartSnapshot:
    owner: OwnerIdentity
    cart_id: str
    lines: tuple

    def __post_init__(self):
        if not self.lines:
            raise ValueError("A cart snapshot must contain at least one line")

    @property
    def line_ids(self) -> tuple:
        return tuple(line.line_id for line in self.lines)


# --- Payment reference ---

class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass(frozen=True)
class PaymentReference:
    external_id: str
    amount: int
    currency: str
    status: PaymentStatus
    metadata: Mapping[str, Any] = field(default_factory=dict)
    client_secret: Optional[str] = None

    @classmethod
    def from_provider(cls, payload: Mapping[str, Any]) -> "PaymentReference":
        """Builds a reference from a provider PaymentIntent object (API response or webhook `data.object`)."""
        raw_status = payload.get("status")
        if raw_status == "succeeded":
            status = PaymentStatus.SUCCEEDED
        elif raw_status == "canceled":
            status = PaymentStatus.CANCELED
        elif raw_status == "requires_payment_method" and payload.get("last_payment_error"):
            status = PaymentStatus.FAILED
        else:
            status = PaymentStatus.PENDING
        return cls(
            external_id=payload["id"],
            amount=int(payload.get("amount") or 0),
            currency=payload.get("currency") or "usd",
            status=status,
            metadata=dict(payload.get("metadata") or {}),
            client_secret=payload.get("client_secret"),
        )


# --- Orders ---

class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    def can_transition_to(self, target: "OrderStatus") -> bool:
        if target == self:
            return True
        if self.is_terminal:
            return False
        if target == OrderStatus.CANCELLED:
            return True
        return _NEXT_STATUS.get(self) == target


_NEXT_STATUS = {
    OrderStatus.PENDING: OrderStatus.PROCESSING,
    OrderStatus.PROCESSING: OrderStatus.SHIPPED,
    OrderStatus.SHIPPED: OrderStatus.DELIVERED,
}


@dataclass(frozen=True)
class OrderItem:
    id: str
    order_id: str
    product_id: str
    quantity: int
    price: Decimal
    customizations: Mapping[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class Order:
    id: str
    user_id: Optional[str]
    total: Decimal
    status: OrderStatus
    stripe_payment_intent_id: str
    guest_email: Optional[str]
    guest_name: Optional[str]
    guest_address: Optional[Mapping[str, Any]]
    created_at: datetime
    updated_at: datetime
    items: tuple = ()

    @property
    def is_guest(self) -> bool:
        return self.user_id is None
