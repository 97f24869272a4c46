"""PostgresStore against a real database: constraints, scoping and concurrency."""

import asyncio
import uuid

import pytest

from errors import InvalidQuantityError, NotFoundError, ProfileExistsError, TransientStoreError
from pipeline.order_materializer import OrderMaterializer
from schemas.commerce import (
    INT32_MAX,
    AuditEventType,
    AuditLogEntry,
    BeanInput,
    OrderStatus,
    ProfileInput,
    SellerAccountStatus,
)
from tests.conftest import BUYER, OTHER_BUYER, SELLER

pytestmark = pytest.mark.integration

REF = "pi_3Pintegration00001"


class TestCartStore:
    async def test_merge_is_one_row(self, store, filled_cart):
        ethiopia, _ = filled_cart

        line = await store.add_or_merge(BUYER, ethiopia.id, 4)

        assert line.quantity == 6
        assert len(await store.list_items(BUYER)) == 2

    async def test_concurrent_first_adds(self, store, beans):
        ethiopia, _ = beans

        await asyncio.gather(*[store.add_or_merge(OTHER_BUYER, ethiopia.id, 1) for _ in range(8)])

        items = await store.list_items(OTHER_BUYER)
        assert len(items) == 1
        assert items[0].quantity == 8

    async def test_unknown_bean(self, store, beans):
        with pytest.raises(NotFoundError):
            await store.add_or_merge(BUYER, 987654, 1)

    async def test_foreign_and_missing_ids(self, store, filled_cart):
        line = (await store.list_items(BUYER))[0]

        with pytest.raises(NotFoundError) as foreign:
            await store.set_quantity(line.id, OTHER_BUYER, 9)
        with pytest.raises(NotFoundError) as missing:
            await store.remove_item(str(uuid.uuid4()), BUYER)
        with pytest.raises(NotFoundError):
            await store.remove_item("not-a-uuid", BUYER)

        assert str(foreign.value) == str(missing.value)
        assert (await store.list_items(BUYER))[0].quantity == line.quantity

    async def test_merge_overflow_is_invalid_quantity(self, store, beans):
        ethiopia, _ = beans
        await store.add_or_merge(BUYER, ethiopia.id, INT32_MAX)

        with pytest.raises(InvalidQuantityError):
            await store.add_or_merge(BUYER, ethiopia.id, 1)

        assert (await store.list_items(BUYER))[0].quantity == INT32_MAX


class TestCatalogStore:
    async def test_owner_scoped_delete(self, store):
        bean = await store.create_bean(SELLER, BeanInput(name="Kenya AA", origin="Kenya", price=1500))

        with pytest.raises(NotFoundError):
            await store.delete_bean(bean.id, BUYER)
        assert (await store.get_bean(bean.id)).id == bean.id

        await store.delete_bean(bean.id, SELLER)
        with pytest.raises(NotFoundError):
            await store.get_bean(bean.id)


class TestMaterialization:
    async def test_creates_order_and_clears_cart(self, store, audit_log, filled_cart):
        materializer = OrderMaterializer(store, audit_log, timeout=5.0)

        result = await materializer.materialize(BUYER, REF, 3500, "jpy", "card")

        assert result.status == "created"
        assert {(i.price_at_purchase, i.quantity) for i in result.items} == {(1000, 2), (500, 3)}
        assert await store.list_items(BUYER) == []
        assert (await store.get_order_by_payment_reference(REF)).status == OrderStatus.SUCCEEDED

    async def test_concurrent_deliveries_one_order(self, store, audit_log, filled_cart):
        materializer = OrderMaterializer(store, audit_log, timeout=5.0)

        results = await asyncio.gather(*[
            materializer.materialize(BUYER, REF, 3500, "jpy", "card") for _ in range(5)
        ])

        assert [r.status for r in results].count("created") == 1
        assert len(await store.list_orders(BUYER)) == 1

    async def test_duplicate_reference_rolls_back(self, store, audit_log, filled_cart):
        ethiopia, _ = filled_cart
        materializer = OrderMaterializer(store, audit_log, timeout=5.0)
        await materializer.materialize(BUYER, REF, 3500, "jpy", "card")
        await store.add_or_merge(BUYER, ethiopia.id, 1)

        again = await materializer.materialize(BUYER, REF, 1000, "jpy", "card")

        assert again.status == "already_processed"
        assert len(await store.list_items(BUYER)) == 1

    async def test_failed_then_succeeded_is_promoted(self, store, audit_log, filled_cart):
        materializer = OrderMaterializer(store, audit_log, timeout=5.0)
        failed = await materializer.record_failure(BUYER, "pi_retry_same_intent", 3500, "jpy", "card")

        result = await materializer.materialize(BUYER, "pi_retry_same_intent", 3500, "jpy", "card")

        assert result.status == "promoted"
        assert result.order.id == failed.order.id
        assert len(await store.list_order_items(result.order.id)) == 2
        assert (await store.get_order_by_payment_reference("pi_retry_same_intent")).status == OrderStatus.SUCCEEDED
        assert await store.list_items(BUYER) == []

    async def test_statement_timeout_is_transient(self, store, filled_cart):
        with pytest.raises(TransientStoreError):
            async with store.transaction(timeout=0.05) as tx:
                await tx.load_cart_for_update(BUYER)
                await tx._conn.execute("SELECT pg_sleep(1)")

        assert len(await store.list_items(BUYER)) == 2


class TestProfileStore:
    async def test_create_update_and_connect(self, store):
        created = await store.create_profile(SELLER, ProfileInput(display_name="Hinata Roasters"))
        assert created.stripe_account_status is None

        updated = await store.update_profile(SELLER, ProfileInput(display_name="Hinata", address="Naha"))
        connected = await store.update_stripe_account(SELLER, "acct_1", SellerAccountStatus.RESTRICTED)

        assert updated.address == "Naha"
        assert connected.display_name == "Hinata"
        assert connected.stripe_account_status == SellerAccountStatus.RESTRICTED
        assert (await store.get_profile(SELLER)).stripe_account_id == "acct_1"

    async def test_duplicate_and_missing(self, store):
        await store.create_profile(SELLER, ProfileInput(display_name="Hinata"))

        with pytest.raises(ProfileExistsError):
            await store.create_profile(SELLER, ProfileInput(display_name="Again"))
        with pytest.raises(NotFoundError):
            await store.get_profile(BUYER)
        with pytest.raises(NotFoundError):
            await store.update_stripe_account(BUYER, "acct_2", SellerAccountStatus.ENABLED)

class TestAuditLog:
    async def test_round_trip(self, audit_log):
        await audit_log.append(AuditLogEntry(
            event_type=AuditEventType.AMOUNT_MISMATCH,
            payment_reference=REF,
            owner_hint=BUYER[:8],
            payload={"charged": 9999, "computed": 3500},
            severity="ERROR",
        ))

        trail = await audit_log.get_by_payment_reference(REF)

        assert len(trail) == 1
        assert trail[0].payload == {"charged": 9999, "computed": 3500}
        assert trail[0].severity == "ERROR"
