# pipeline/order_materializer.py
# ============================================================================
# BEAN CHECKOUT BACKEND — ORDER MATERIALIZATION
# ============================================================================
# Turns a confirmed payment into order state in one bounded unit of work:
#
#   lock cart lines -> lock any order for the reference
#   -> insert order (payment_reference UNIQUE) or promote a failed one
#   -> snapshot line items -> clear cart -> commit
#
# Redeliveries land either on an empty cart or on an existing succeeded
# order. Both are reported as "already_processed" rather than as errors.
# A success for a reference that so far only has a failed attempt is a
# retry that went through, and turns the failed order into the paid one.
# ============================================================================

import asyncio
from typing import List, Optional

import structlog

from config import short_id
from errors import DuplicateEffectError, TransientStoreError
from pipeline.audit import emit_audit
from schemas.commerce import (
    AuditEventType,
    MaterializationResult,
    OrderDraft,
    OrderItem,
    OrderStatus,
    cart_total,
)
from storage.interfaces import IAuditLog, IOrderStore

DEFAULT_TIMEOUT_SECONDS = 10.0


def _items_total(items: List[OrderItem]) -> int:
    return sum(i.price_at_purchase * i.quantity for i in items)


class OrderMaterializer:
    """Idempotent payment -> order conversion"""

    def __init__(
        self,
        store: IOrderStore,
        audit_log: IAuditLog,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.audit = audit_log
        self.timeout = timeout
        self._logger = structlog.get_logger().bind(component="order_materializer")

    async def materialize(
        self,
        owner_id: str,
        payment_reference: str,
        amount: int,
        currency: str,
        payment_method_kind: str,
    ) -> MaterializationResult:
        """Create the order for a succeeded payment and empty the cart."""
        log = self._logger.bind(payment_reference=payment_reference, user=short_id(owner_id))
        draft = OrderDraft(
            user_id=owner_id,
            status=OrderStatus.SUCCEEDED,
            total_amount=amount,
            currency=currency,
            payment_method_type=payment_method_kind,
            payment_reference=payment_reference,
        )

        try:
            async with asyncio.timeout(self.timeout):
                async with self.store.transaction(timeout=self.timeout) as tx:
                    lines = await tx.load_cart_for_update(owner_id)
                    existing = await tx.get_order_for_update(payment_reference)

                    if existing is not None and existing.status == OrderStatus.SUCCEEDED:
                        raise DuplicateEffectError(payment_reference, "orders_payment_reference_key")

                    if existing is not None:
                        previous_status = existing.status
                        order = await tx.update_order(existing.id, draft)
                        if lines:
                            items = await tx.replace_order_items(order.id, lines)
                        else:
                            # Cart already gone; the failed attempt's snapshot stands
                            items = await tx.list_order_items(order.id)
                    elif not lines:
                        log.info("cart_empty_possibly_already_processed")
                        return MaterializationResult(status="already_processed")
                    else:
                        previous_status = None
                        order = await tx.insert_order(draft)
                        items = await tx.insert_order_items(order.id, lines)

                    cleared = await tx.clear_cart(owner_id)
        except DuplicateEffectError:
            return await self._already_processed(payment_reference, owner_id, OrderStatus.SUCCEEDED)
        except TimeoutError as e:
            log.error("order_transaction_timeout", timeout=self.timeout)
            raise TransientStoreError("Order transaction timed out") from e

        computed = cart_total(lines) if lines else _items_total(items)
        promoted = previous_status is not None

        if promoted:
            log.warning(
                "failed_order_promoted",
                order_id=order.id,
                previous_status=previous_status.value,
                total_amount=order.total_amount,
                items=len(items),
                cleared=cleared,
            )
        else:
            log.info(
                "order_created",
                order_id=order.id,
                total_amount=order.total_amount,
                items=len(items),
                cleared=cleared,
            )

        if computed != amount:
            await self._flag_amount_mismatch(payment_reference, owner_id, amount, computed, order.id)

        await emit_audit(
            self.audit,
            AuditEventType.ORDER_PROMOTED if promoted else AuditEventType.ORDER_MATERIALIZED,
            payment_reference=payment_reference,
            owner_id=owner_id,
            payload={
                "order_id": order.id,
                "total_amount": order.total_amount,
                "currency": order.currency,
                "item_count": len(items),
            },
            severity="WARN" if promoted else "INFO",
        )
        return MaterializationResult(
            status="promoted" if promoted else "created",
            order=order,
            items=items,
            computed_total=computed,
        )

    async def record_failure(
        self,
        owner_id: str,
        payment_reference: str,
        amount: int,
        currency: str,
        payment_method_kind: str,
        failure_message: Optional[str] = None,
    ) -> MaterializationResult:
        """Record a failed payment against the current cart. The cart is kept."""
        log = self._logger.bind(payment_reference=payment_reference, user=short_id(owner_id))

        try:
            async with asyncio.timeout(self.timeout):
                async with self.store.transaction(timeout=self.timeout) as tx:
                    lines = await tx.load_cart_for_update(owner_id)
                    order = await tx.insert_order(OrderDraft(
                        user_id=owner_id,
                        status=OrderStatus.FAILED,
                        total_amount=amount,
                        currency=currency,
                        payment_method_type=payment_method_kind,
                        payment_reference=payment_reference,
                    ))
                    items = await tx.insert_order_items(order.id, lines)
        except DuplicateEffectError:
            return await self._already_processed(payment_reference, owner_id, OrderStatus.FAILED)
        except TimeoutError as e:
            log.error("order_transaction_timeout", timeout=self.timeout)
            raise TransientStoreError("Order transaction timed out") from e

        log.info("failed_order_recorded", order_id=order.id, reason=failure_message)
        await emit_audit(
            self.audit,
            AuditEventType.ORDER_FAILURE_RECORDED,
            payment_reference=payment_reference,
            owner_id=owner_id,
            payload={"order_id": order.id, "reason": failure_message, "item_count": len(items)},
            severity="WARN",
        )
        return MaterializationResult(
            status="recorded", order=order, items=items, computed_total=cart_total(lines)
        )

    async def _already_processed(
        self, payment_reference: str, owner_id: str, wanted: OrderStatus
    ) -> MaterializationResult:
        existing = await self.store.get_order_by_payment_reference(payment_reference)

        if (
            existing is not None
            and wanted == OrderStatus.SUCCEEDED
            and existing.status == OrderStatus.FAILED
        ):
            # A concurrent failure record won the insert. The payment went
            # through, so refuse the ack and let the redelivery promote it.
            self._logger.error(
                "succeeded_payment_lost_insert_race",
                payment_reference=payment_reference,
                user=short_id(owner_id),
                order_id=existing.id,
            )
            await emit_audit(
                self.audit,
                AuditEventType.STATUS_CONFLICT,
                payment_reference=payment_reference,
                owner_id=owner_id,
                payload={"order_id": existing.id, "existing": existing.status.value, "wanted": wanted.value},
                severity="ERROR",
            )
            raise TransientStoreError("Order status conflict, retry delivery")

        self._logger.info(
            "duplicate_payment_ignored",
            payment_reference=payment_reference,
            user=short_id(owner_id),
            order_id=existing.id if existing else None,
        )
        await emit_audit(
            self.audit,
            AuditEventType.DUPLICATE_IGNORED,
            payment_reference=payment_reference,
            owner_id=owner_id,
            payload={"order_id": existing.id if existing else None},
        )
        return MaterializationResult(status="already_processed", order=existing)

    async def _flag_amount_mismatch(
        self,
        payment_reference: str,
        owner_id: str,
        charged: int,
        computed: int,
        order_id: int,
    ):
        # The charged amount stays on the order; the discrepancy goes to
        # manual review.
        self._logger.error(
            "amount_mismatch",
            payment_reference=payment_reference,
            user=short_id(owner_id),
            charged=charged,
            computed=computed,
            order_id=order_id,
        )
        await emit_audit(
            self.audit,
            AuditEventType.AMOUNT_MISMATCH,
            payment_reference=payment_reference,
            owner_id=owner_id,
            payload={"charged": charged, "computed": computed, "order_id": order_id},
            severity="ERROR",
        )
