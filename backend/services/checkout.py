# services/checkout.py
# ============================================================================
# BEAN CHECKOUT BACKEND — CHECKOUT SERVICE
# ============================================================================
# Prices the caller's cart and opens a payment intent for it. The order
# itself is only created later, by the payment_intent.succeeded webhook.
# ============================================================================

import hashlib
from typing import List

import structlog

from config import short_id
from errors import EmptyCartError
from schemas.commerce import CartItemDetail, CheckoutQuote, CheckoutSession, cart_total
from services.payment_processor import PaymentProcessor
from storage.interfaces import ICartStore


def checkout_idempotency_key(owner_id: str, items: List[CartItemDetail]) -> str:
    """
    Same cart contents, same key: a double-submitted checkout reuses the
    first intent. Line ids are new after a purchase clears the cart, so a
    later identical cart gets a fresh intent.
    """
    digest = hashlib.sha256(owner_id.encode("utf-8"))
    for item in sorted(items, key=lambda i: i.id):
        digest.update(f"|{item.id}:{item.bean_id}:{item.price}:{item.quantity}".encode("utf-8"))
    return f"checkout-{digest.hexdigest()[:48]}"


class CheckoutService:

    def __init__(self, store: ICartStore, processor: PaymentProcessor, currency: str = "jpy"):
        self.store = store
        self.processor = processor
        self.currency = currency
        self._logger = structlog.get_logger().bind(component="checkout")

    async def quote(self, owner_id: str) -> CheckoutQuote:
        """Amount owed for the caller's cart, in minor units"""
        return self._price(await self.store.list_items(owner_id))

    def _price(self, items: List[CartItemDetail]) -> CheckoutQuote:
        return CheckoutQuote(
            amount=cart_total(items),
            currency=self.currency,
            item_count=sum(item.quantity for item in items),
        )

    async def start_checkout(self, owner_id: str) -> CheckoutSession:
        items = await self.store.list_items(owner_id)
        quote = self._price(items)
        if quote.item_count == 0:
            self._logger.info("checkout_rejected_empty_cart", user=short_id(owner_id))
            raise EmptyCartError()

        self._logger.info(
            "checkout_initiated",
            user=short_id(owner_id),
            amount=quote.amount,
            currency=quote.currency,
        )
        intent = await self.processor.create_payment_intent(
            amount=quote.amount,
            currency=quote.currency,
            owner_id=owner_id,
            idempotency_key=checkout_idempotency_key(owner_id, items),
        )
        return CheckoutSession(
            client_secret=intent.client_secret,
            payment_reference=intent.payment_reference,
            amount=quote.amount,
            currency=quote.currency,
        )
