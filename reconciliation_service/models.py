"""
models.py — Request and Response Models of the HTTP API

Pydantic models for the payloads exchanged with the storefront. Field names are
camelCase because that is what the storefront sends and expects.

Models:
    - GuestInfo: Shipping contact of a guest checkout.
    - CreateIntentRequest: Body of POST /payments/intent.
    - PaymentIntentIdRequest: Body of POST /payments/confirm and /payments/complete.
    - StatusUpdateRequest: Body of PUT /orders/{orderId}/status.
    - OrderResponse / OrderItemResponse: Serialized orders.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .domain import GuestContact, Order, OrderItem


class GuestInfo(BaseModel):
    """
    Shipping contact collected from a guest.

    All fields are optional at the schema level so the endpoint can answer with
    a single readable message listing what is missing.
    """
    email: Optional[str] = None
    name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zipCode: Optional[str] = None
    country: Optional[str] = "US"

    def missing_fields(self) -> List[str]:
        required = ("email", "name", "address", "city", "state", "zipCode")
        return [name for name in required if not (getattr(self, name) or "").strip()]

    def to_contact(self) -> GuestContact:
        return GuestContact(
            email=self.email.strip(),
            name=self.name.strip(),
            address=self.address.strip(),
            city=self.city.strip(),
            state=self.state.strip(),
            zip_code=self.zipCode.strip(),
            country=(self.country or "US").strip() or "US",
        )


class CreateIntentRequest(BaseModel):
    """
    Attributes:
        amount (Optional[int]): Amount in cents; required for guests, ignored for authenticated users.
        guestInfo (Optional[GuestInfo]): Required for guests.
    """
    amount: Optional[int] = None
    guestInfo: Optional[GuestInfo] = None


class PaymentIntentIdRequest(BaseModel):
    paymentIntentId: str = Field(..., min_length=1)


class StatusUpdateRequest(BaseModel):
    status: str


class OrderItemResponse(BaseModel):
    id: str
    productId: str
    quantity: int
    price: str
    customizations: Dict[str, Any] = {}
    createdAt: datetime

    @classmethod
    def from_item(cls, item: OrderItem) -> "OrderItemResponse":
        return cls(
            id=item.id,
            productId=item.product_id,
            quantity=item.quantity,
            price=str(item.price),
            customizations=dict(item.customizations),
            createdAt=item.created_at,
        )


class OrderResponse(BaseModel):
    """An order as returned to the storefront. Money is a decimal string (e.g. "19.00")."""
    id: str
    userId: Optional[str] = None
    total: str
    status: str
    stripePaymentIntentId: str
    guestEmail: Optional[str] = None
    guestName: Optional[str] = None
    guestAddress: Optional[Dict[str, Any]] = None
    createdAt: datetime
    updatedAt: datetime
    items: List[OrderItemResponse] = []

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            id=order.id,
            userId=order.user_id,
            total=str(order.total),
            status=order.status.value,
            stripePaymentIntentId=order.stripe_payment_intent_id,
            guestEmail=order.guest_email,
            guestName=order.guest_name,
            guestAddress=dict(order.guest_address) if order.guest_address else None,
            createdAt=order.created_at,
            updatedAt=order.updated_at,
            items=[OrderItemResponse.from_item(item) for item in order.items],
        )
