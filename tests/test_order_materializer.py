"""Tests for turning payments into orders."""

import asyncio

import pytest

from errors import TransientStoreError
from pipeline.order_materializer import OrderMaterializer
from schemas.commerce import AuditEventType, BeanInput, OrderStatus
from storage.memory import InMemoryOrderTransaction
from tests.conftest import BUYER, OTHER_BUYER, SELLER

REF = "pi_3Ptest000000000001"


async def _materialize(materializer, reference=REF, amount=3500, owner=BUYER):
    return await materializer.materialize(
        owner_id=owner,
        payment_reference=reference,
        amount=amount,
        currency="jpy",
        payment_method_kind="card",
    )


class TestMaterialize:
    async def test_creates_order_with_price_snapshots(self, materializer, store, filled_cart):
        ethiopia, brazil = filled_cart

        result = await _materialize(materializer)

        assert result.status == "created"
        assert result.computed_total == 3500
        assert result.order.total_amount == 3500
        assert result.order.status == OrderStatus.SUCCEEDED
        assert result.order.user_id == BUYER
        assert result.order.payment_reference == REF
        snapshot = {(i.bean_id, i.price_at_purchase, i.quantity) for i in result.items}
        assert snapshot == {(ethiopia.id, 1000, 2), (brazil.id, 500, 3)}
        assert await store.list_items(BUYER) == []

    async def test_later_price_change_does_not_touch_order(self, materializer, store, filled_cart):
        ethiopia, _ = filled_cart
        result = await _materialize(materializer)

        await store.update_bean(ethiopia.id, SELLER, BeanInput(
            name=ethiopia.name, origin=ethiopia.origin, price=4000,
        ))

        items = await store.list_order_items(result.order.id)
        assert {i.price_at_purchase for i in items} == {1000, 500}

    async def test_other_carts_are_untouched(self, materializer, store, filled_cart):
        ethiopia, _ = filled_cart
        await store.add_or_merge(OTHER_BUYER, ethiopia.id, 1)

        await _materialize(materializer)

        assert len(await store.list_items(OTHER_BUYER)) == 1

    async def test_concurrent_deliveries_create_one_order(self, materializer, store, filled_cart):
        results = await asyncio.gather(*[_materialize(materializer) for _ in range(5)])

        statuses = sorted(r.status for r in results)
        assert statuses == ["already_processed"] * 4 + ["created"]
        assert len(await store.list_orders(BUYER)) == 1
        assert await store.list_items(BUYER) == []

    async def test_redelivery_after_success_is_acknowledged(self, materializer, store, filled_cart):
        await _materialize(materializer)

        again = await _materialize(materializer)

        assert again.status == "already_processed"
        assert len(await store.list_orders(BUYER)) == 1

    async def test_duplicate_reference_with_refilled_cart(self, materializer, store, audit_log, filled_cart):
        ethiopia, _ = filled_cart
        first = await _materialize(materializer)
        await store.add_or_merge(BUYER, ethiopia.id, 1)

        again = await _materialize(materializer)

        assert again.status == "already_processed"
        assert again.order.id == first.order.id
        assert len(await store.list_items(BUYER)) == 1
        assert len(await store.list_orders(BUYER)) == 1
        trail = await audit_log.get_by_payment_reference(REF)
        assert AuditEventType.DUPLICATE_IGNORED in [e.event_type for e in trail]

    async def test_empty_cart_creates_nothing(self, materializer, store, beans):
        result = await _materialize(materializer)

        assert result.status == "already_processed"
        assert result.order is None
        assert await store.list_orders(BUYER) == []


class TestAtomicity:
    async def test_failure_mid_transaction_rolls_back(self, materializer, store, filled_cart, monkeypatch):
        async def broken_clear(self, user_id):
            raise RuntimeError("connection reset while deleting")

        monkeypatch.setattr(InMemoryOrderTransaction, "clear_cart", broken_clear)

        with pytest.raises(RuntimeError):
            await _materialize(materializer)

        assert await store.list_orders(BUYER) == []
        assert await store.get_order_by_payment_reference(REF) is None
        assert len(await store.list_items(BUYER)) == 2

    async def test_retry_after_rollback_succeeds(self, materializer, store, filled_cart, monkeypatch):
        async def broken_items(self, order_id, lines):
            raise RuntimeError("boom")

        monkeypatch.setattr(InMemoryOrderTransaction, "insert_order_items", broken_items)
        with pytest.raises(RuntimeError):
            await _materialize(materializer)
        monkeypatch.undo()

        result = await _materialize(materializer)

        assert result.status == "created"
        assert len(result.items) == 2

    async def test_timeout_is_transient_and_rolls_back(self, store, audit_log, filled_cart, monkeypatch):
        async def slow_items(self, order_id, lines):
            await asyncio.sleep(5)

        monkeypatch.setattr(InMemoryOrderTransaction, "insert_order_items", slow_items)
        materializer = OrderMaterializer(store, audit_log, timeout=0.05)

        with pytest.raises(TransientStoreError):
            await _materialize(materializer)

        assert await store.list_orders(BUYER) == []
        assert len(await store.list_items(BUYER)) == 2


class TestAmountMismatch:
    async def test_mismatch_is_audited_and_order_keeps_charged_amount(self, materializer, audit_log, filled_cart):
        result = await _materialize(materializer, amount=9999)

        assert result.status == "created"
        assert result.order.total_amount == 9999
        assert result.computed_total == 3500
        flagged = [e for e in audit_log.entries if e.event_type == AuditEventType.AMOUNT_MISMATCH]
        assert len(flagged) == 1
        assert flagged[0].severity == "ERROR"
        assert flagged[0].payload["charged"] == 9999
        assert flagged[0].payload["computed"] == 3500

    async def test_matching_amount_is_not_flagged(self, materializer, audit_log, filled_cart):
        await _materialize(materializer)

        assert AuditEventType.AMOUNT_MISMATCH not in [e.event_type for e in audit_log.entries]


class TestRecordFailure:
    async def test_failed_payment_keeps_cart(self, materializer, store, filled_cart):
        result = await materializer.record_failure(
            owner_id=BUYER,
            payment_reference="pi_failed_1",
            amount=3500,
            currency="jpy",
            payment_method_kind="card",
            failure_message="Your card was declined.",
        )

        assert result.status == "recorded"
        assert result.order.status == OrderStatus.FAILED
        assert len(result.items) == 2
        assert len(await store.list_items(BUYER)) == 2

    async def test_failed_payment_with_empty_cart(self, materializer, store):
        result = await materializer.record_failure(
            owner_id=BUYER,
            payment_reference="pi_failed_2",
            amount=0,
            currency="jpy",
            payment_method_kind="card",
        )

        assert result.status == "recorded"
        assert result.items == []

    async def test_failure_redelivery_collapses(self, materializer, store, filled_cart):
        kwargs = dict(
            owner_id=BUYER, payment_reference="pi_failed_3", amount=3500,
            currency="jpy", payment_method_kind="card",
        )
        await materializer.record_failure(**kwargs)

        again = await materializer.record_failure(**kwargs)

        assert again.status == "already_processed"
        assert len(await store.list_orders(BUYER)) == 1


class TestAuditTrail:
    async def test_owner_is_truncated_in_audit(self, materializer, audit_log, filled_cart):
        await _materialize(materializer)

        entry = next(e for e in audit_log.entries if e.event_type == AuditEventType.ORDER_MATERIALIZED)
        assert entry.owner_hint == BUYER[:8]
        assert entry.payload["item_count"] == 2


class TestFailedThenSucceeded:
    RETRY_REF = "pi_retry_same_intent"

    async def _fail(self, materializer, amount=3500):
        return await materializer.record_failure(
            owner_id=BUYER,
            payment_reference=self.RETRY_REF,
            amount=amount,
            currency="jpy",
            payment_method_kind="card",
            failure_message="Your card was declined.",
        )

    async def test_success_promotes_failed_order(self, materializer, store, audit_log, filled_cart):
        failed = await self._fail(materializer)

        result = await _materialize(materializer, reference=self.RETRY_REF)

        assert result.status == "promoted"
        assert result.order.id == failed.order.id
        assert result.order.status == OrderStatus.SUCCEEDED
        assert result.computed_total == 3500
        assert await store.list_items(BUYER) == []
        orders = await store.list_orders(BUYER)
        assert [o.status for o in orders] == [OrderStatus.SUCCEEDED]
        stored = await store.get_order_by_payment_reference(self.RETRY_REF)
        assert stored.status == OrderStatus.SUCCEEDED
        promoted = [e for e in audit_log.entries if e.event_type == AuditEventType.ORDER_PROMOTED]
        assert len(promoted) == 1
        assert promoted[0].severity == "WARN"

    async def test_promotion_snapshots_current_cart(self, materializer, store, filled_cart):
        ethiopia, _ = filled_cart
        await self._fail(materializer)
        line = next(i for i in await store.list_items(BUYER) if i.bean_id == ethiopia.id)
        await store.set_quantity(line.id, BUYER, 1)

        result = await _materialize(materializer, reference=self.RETRY_REF, amount=2500)

        assert result.status == "promoted"
        assert result.computed_total == 2500
        items = await store.list_order_items(result.order.id)
        assert sum(i.price_at_purchase * i.quantity for i in items) == 2500

    async def test_promotion_with_empty_cart_keeps_failed_snapshot(self, materializer, store, filled_cart):
        failed = await self._fail(materializer)
        for line in await store.list_items(BUYER):
            await store.remove_item(line.id, BUYER)

        result = await _materialize(materializer, reference=self.RETRY_REF)

        assert result.status == "promoted"
        assert result.order.status == OrderStatus.SUCCEEDED
        assert len(result.items) == len(failed.items) == 2
        assert result.computed_total == 3500

    async def test_redelivered_success_after_promotion(self, materializer, store, filled_cart):
        await self._fail(materializer)
        await _materialize(materializer, reference=self.RETRY_REF)

        again = await _materialize(materializer, reference=self.RETRY_REF)

        assert again.status == "already_processed"
        assert again.order.status == OrderStatus.SUCCEEDED
        assert len(await store.list_orders(BUYER)) == 1

    async def test_failure_after_success_does_not_demote(self, materializer, store, filled_cart):
        await _materialize(materializer, reference=self.RETRY_REF)

        late = await self._fail(materializer)

        assert late.status == "already_processed"
        stored = await store.get_order_by_payment_reference(self.RETRY_REF)
        assert stored.status == OrderStatus.SUCCEEDED

    async def test_lost_insert_race_is_retryable(self, materializer, store, audit_log, filled_cart, monkeypatch):
        await self._fail(materializer)

        async def missed_lookup(self, payment_reference):
            return None

        monkeypatch.setattr(InMemoryOrderTransaction, "get_order_for_update", missed_lookup)

        with pytest.raises(TransientStoreError):
            await _materialize(materializer, reference=self.RETRY_REF)

        assert len(await store.list_items(BUYER)) == 2
        stored = await store.get_order_by_payment_reference(self.RETRY_REF)
        assert stored.status == OrderStatus.FAILED
        conflicts = [e for e in audit_log.entries if e.event_type == AuditEventType.STATUS_CONFLICT]
        assert len(conflicts) == 1
        assert conflicts[0].severity == "ERROR"
