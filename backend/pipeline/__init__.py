# pipeline/__init__.py
# ============================================================================
# BEAN CHECKOUT BACKEND — WEBHOOK PIPELINE
# ============================================================================

from pipeline.audit import emit_audit
from pipeline.event_router import WebhookRouter
from pipeline.order_materializer import OrderMaterializer
from pipeline.payment_gateway import PaymentGateway
from pipeline.webhook_verifier import WebhookVerifier, sign_payload

__all__ = [
    "emit_audit",
    "WebhookRouter",
    "OrderMaterializer",
    "PaymentGateway",
    "WebhookVerifier",
    "sign_payload",
]
