# schemas/__init__.py
from schemas.commerce import (
    AccountLinkResponse,
    AuditEventType,
    AuditLogEntry,
    Bean,
    BeanInput,
    CartItem,
    CartItemDetail,
    CartView,
    CheckoutQuote,
    CheckoutSession,
    MaterializationResult,
    Order,
    OrderDetail,
    OrderDraft,
    OrderItem,
    OrderStatus,
    PaymentEvent,
    PaymentEventType,
    Profile,
    ProfileInput,
    SellerAccountStatus,
    WebhookAck,
    cart_total,
)

__all__ = [
    "AccountLinkResponse",
    "AuditEventType",
    "AuditLogEntry",
    "Bean",
    "BeanInput",
    "CartItem",
    "CartItemDetail",
    "CartView",
    "CheckoutQuote",
    "CheckoutSession",
    "MaterializationResult",
    "Order",
    "OrderDetail",
    "OrderDraft",
    "OrderItem",
    "OrderStatus",
    "PaymentEvent",
    "PaymentEventType",
    "Profile",
    "ProfileInput",
    "SellerAccountStatus",
    "WebhookAck",
    "cart_total",
]
