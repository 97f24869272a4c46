# pipeline/payment_gateway.py
# ============================================================================
# BEAN CHECKOUT BACKEND — PAYMENT GATEWAY
# ============================================================================
# Entry point for processor webhooks:
#
#   verify signature -> parse -> route by type -> materialize / record
#
# Runs inline: the acknowledgement is only returned once the order state
# for the event is committed, so a 2xx always means "done".
# ============================================================================

from typing import Optional

import structlog

from config import short_id
from errors import AttributionError, MalformedEventError
from pipeline.audit import emit_audit
from pipeline.event_router import WebhookRouter
from pipeline.order_materializer import OrderMaterializer
from pipeline.webhook_verifier import WebhookVerifier
from schemas.commerce import (
    AuditEventType,
    MaterializationResult,
    PaymentEvent,
    PaymentEventType,
    WebhookAck,
)
from storage.interfaces import IAuditLog


class PaymentGateway:
    """
    Webhook processing for payment-intent events.

    Example:
        gateway = PaymentGateway(verifier, materializer, audit_log)
        ack = await gateway.process_webhook(raw_body, request.headers.get("Stripe-Signature"))
    """

    def __init__(
        self,
        verifier: WebhookVerifier,
        materializer: OrderMaterializer,
        audit_log: IAuditLog,
    ):
        self.verifier = verifier
        self.materializer = materializer
        self.audit = audit_log

        self.router = WebhookRouter()
        self._register_handlers()

        self._logger = structlog.get_logger().bind(component="payment_gateway")

    # =========================================================================
    # WEBHOOK PROCESSING
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookAck:
        """
        Verify, parse and apply one webhook delivery.

        Raises AuthenticityError, MalformedEventError or AttributionError for
        deliveries that must be rejected, and TransientStoreError when the
        store could not be reached in time.
        """
        event = self.verifier.verify(payload, signature)

        log = self._logger.bind(event_id=event.event_id, event_type=event.type)
        log.info("webhook_received", payment_reference=event.payment_reference)

        await emit_audit(
            self.audit,
            AuditEventType.WEBHOOK_RECEIVED,
            payment_reference=event.payment_reference,
            owner_id=event.owner_id,
            payload={"event_id": event.event_id, "event_type": event.type},
        )

        ack = await self.router.dispatch(event)

        if ack.status == "ignored":
            await emit_audit(
                self.audit,
                AuditEventType.WEBHOOK_IGNORED,
                payment_reference=event.payment_reference,
                payload={"event_id": event.event_id, "event_type": event.type},
                severity="DEBUG",
            )

        log.info("webhook_processed", status=ack.status, order_id=ack.order_id)
        return ack

    # =========================================================================
    # WEBHOOK HANDLERS (Registered with Router)
    # =========================================================================

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register(PaymentEventType.PAYMENT_SUCCEEDED.value)
        async def handle_payment_succeeded(event: PaymentEvent) -> WebhookAck:
            return await self._on_payment_succeeded(event)

        @self.router.register(PaymentEventType.PAYMENT_FAILED.value)
        async def handle_payment_failed(event: PaymentEvent) -> WebhookAck:
            return await self._on_payment_failed(event)

    async def _on_payment_succeeded(self, event: PaymentEvent) -> WebhookAck:
        owner_id = await self._require_owner(event)
        result = await self.materializer.materialize(
            owner_id=owner_id,
            payment_reference=event.payment_reference,
            amount=event.amount,
            currency=event.currency,
            payment_method_kind=event.payment_method_kind,
        )
        return self._ack(event, result)

    async def _on_payment_failed(self, event: PaymentEvent) -> WebhookAck:
        owner_id = await self._require_owner(event)
        self._logger.info(
            "payment_failed",
            payment_reference=event.payment_reference,
            user=short_id(owner_id),
            reason=event.failure_message,
        )
        result = await self.materializer.record_failure(
            owner_id=owner_id,
            payment_reference=event.payment_reference,
            amount=event.amount,
            currency=event.currency,
            payment_method_kind=event.payment_method_kind,
            failure_message=event.failure_message,
        )
        return self._ack(event, result)

    async def _require_owner(self, event: PaymentEvent) -> str:
        if not event.payment_reference:
            self._logger.warning("payment_reference_missing", event_id=event.event_id)
            raise MalformedEventError("Payment intent id missing from event")

        if not event.owner_id:
            self._logger.error(
                "user_id_missing_from_metadata",
                event_id=event.event_id,
                payment_reference=event.payment_reference,
            )
            await emit_audit(
                self.audit,
                AuditEventType.ATTRIBUTION_FAILED,
                payment_reference=event.payment_reference,
                payload={"event_id": event.event_id, "event_type": event.type},
                severity="ERROR",
            )
            raise AttributionError(event.payment_reference)

        return event.owner_id

    @staticmethod
    def _ack(event: PaymentEvent, result: MaterializationResult) -> WebhookAck:
        return WebhookAck(
            status=result.status,
            event_id=event.event_id,
            event_type=event.type,
            order_id=result.order.id if result.order else None,
        )
