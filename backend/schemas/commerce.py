# schemas/commerce.py
# ============================================================================
# BEAN CHECKOUT BACKEND — COMMERCE SCHEMAS
# ============================================================================
# Catalog, cart, order and payment-event models shared by the stores,
# the webhook pipeline and the HTTP layer.
# ============================================================================

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

# Column limit for prices and quantities (Postgres INTEGER)
INT32_MAX = 2_147_483_647

MAX_PRICE = 10_000_000
MAX_QUANTITY_PER_REQUEST = 999


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentEventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"


# ============================================================================
# SECTION 2: CATALOG
# ============================================================================

class BeanInput(BaseModel):
    """Create/update payload. The owner never comes from here."""
    name: str = Field(..., min_length=1, max_length=200)
    origin: str = Field(..., min_length=1, max_length=200)
    price: int = Field(..., ge=0, le=MAX_PRICE)
    process: str = Field(default="", max_length=100)
    roast_profile: str = Field(default="", max_length=100)

    @field_validator("name", "origin")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("process", "roast_profile")
    @classmethod
    def lower(cls, v: str) -> str:
        return v.lower()


class Bean(BaseModel):
    id: int
    name: str
    origin: str
    price: int
    process: str
    roast_profile: str
    user_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# ============================================================================
# SECTION 3: CART
# ============================================================================

class AddCartItemRequest(BaseModel):
    bean_id: int = Field(..., gt=0, le=INT32_MAX)
    quantity: int = Field(..., gt=0, le=MAX_QUANTITY_PER_REQUEST)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., gt=0, le=MAX_QUANTITY_PER_REQUEST)


class CartItem(BaseModel):
    id: str
    cart_id: str
    bean_id: int
    quantity: int
    created_at: datetime
    updated_at: datetime


class CartItemDetail(BaseModel):
    """Cart line joined with catalog detail"""
    id: str
    bean_id: int
    name: str
    price: int
    quantity: int
    process: str
    roast_profile: str

    @property
    def line_total(self) -> int:
        return self.price * self.quantity


class CartView(BaseModel):
    items: List[CartItemDetail] = Field(default_factory=list)
    total_amount: int = 0


def cart_total(items: List[CartItemDetail]) -> int:
    """Amount owed for a cart, in minor currency units."""
    return sum(item.line_total for item in items)


# ============================================================================
# SECTION 4: ORDERS
# ============================================================================

class OrderDraft(BaseModel):
    """Order row about to be inserted"""
    user_id: str
    status: OrderStatus
    total_amount: int
    currency: str
    payment_method_type: str
    payment_reference: str


class Order(BaseModel):
    id: int
    user_id: str
    status: OrderStatus
    total_amount: int
    currency: str
    payment_method_type: str
    payment_reference: str
    created_at: datetime
    updated_at: datetime


class OrderItem(BaseModel):
    id: int
    order_id: int
    bean_id: int
    price_at_purchase: int
    quantity: int


class OrderDetail(Order):
    """Order with its snapshotted line items"""
    items: List[OrderItem] = Field(default_factory=list)


class MaterializationResult(BaseModel):
    """Outcome of turning a payment event into order state"""
    status: Literal["created", "promoted", "recorded", "already_processed"]
    order: Optional[Order] = None
    items: List[OrderItem] = Field(default_factory=list)
    computed_total: Optional[int] = None


# ============================================================================
# SECTION 5: PAYMENT EVENTS (processor notifications)
# ============================================================================

class PaymentEvent(BaseModel):
    """
    A verified processor notification, flattened.

    Only payment-intent events populate the payment fields; other event
    types parse with defaults so that they can be acknowledged and ignored.
    """
    event_id: str
    type: str
    payment_reference: Optional[str] = None
    amount: int = 0
    currency: str = ""
    payment_method_kind: str = ""
    owner_id: Optional[str] = None
    failure_message: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "PaymentEvent":
        obj = (data.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        method_types = obj.get("payment_method_types") or []
        last_error = obj.get("last_payment_error") or {}
        return cls(
            event_id=data["id"],
            type=data["type"],
            payment_reference=obj.get("id"),
            amount=obj.get("amount") or 0,
            currency=obj.get("currency") or "",
            payment_method_kind=method_types[0] if method_types else "",
            owner_id=metadata.get("user_id") or None,
            failure_message=last_error.get("message"),
        )


class WebhookAck(BaseModel):
    """What the processor gets back on a 2xx"""
    status: Literal["created", "promoted", "recorded", "already_processed", "ignored"]
    event_id: str
    event_type: str
    order_id: Optional[int] = None


# ============================================================================
# SECTION 6: CHECKOUT
# ============================================================================

class CheckoutQuote(BaseModel):
    amount: int
    currency: str
    item_count: int


class CheckoutSession(BaseModel):
    client_secret: str
    payment_reference: str
    amount: int
    currency: str


# ============================================================================
# SECTION 7: AUDIT
# ============================================================================

class AuditEventType(str, Enum):
    WEBHOOK_RECEIVED = "webhook.received"
    WEBHOOK_IGNORED = "webhook.ignored"
    ORDER_MATERIALIZED = "order.materialized"
    ORDER_FAILURE_RECORDED = "order.failure_recorded"
    ORDER_PROMOTED = "order.promoted"
    DUPLICATE_IGNORED = "order.duplicate_ignored"
    STATUS_CONFLICT = "order.status_conflict"
    ATTRIBUTION_FAILED = "webhook.attribution_failed"
    AMOUNT_MISMATCH = "order.amount_mismatch"


Severity = Literal["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    event_type: AuditEventType
    payment_reference: Optional[str] = None
    owner_hint: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    severity: Severity = "INFO"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# SECTION 8: PROFILES + SELLER ONBOARDING
# ============================================================================

class SellerAccountStatus(str, Enum):
    ENABLED = "enabled"
    RESTRICTED = "restricted"


class ProfileInput(BaseModel):
    """Create/update payload. The identity comes from the bearer token."""
    display_name: str = Field(..., min_length=1, max_length=100)
    icon_url: str = Field(default="", max_length=2048)
    post_code: str = Field(default="", max_length=16)
    address: str = Field(default="", max_length=500)
    about_me: str = Field(default="", max_length=2000)

    @field_validator("display_name")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class Profile(BaseModel):
    user_id: str
    display_name: str
    icon_url: str
    post_code: str
    address: str
    about_me: str
    stripe_account_id: Optional[str] = None
    stripe_account_status: Optional[SellerAccountStatus] = None
    created_at: datetime
    updated_at: datetime


class AccountLinkResponse(BaseModel):
    url: str
