# storage/postgres.py
# ============================================================================
# BEAN CHECKOUT BACKEND — POSTGRES STORE
# ============================================================================
# Production backend over database.Database.
#
# Ownership is always part of the WHERE clause of the mutating statement,
# never a separate read. Cart creation and line merges are single upserts
# so concurrent first adds converge on one cart and one line.
# ============================================================================

import json
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import asyncpg
import structlog

from database import Database, affected_rows
from errors import (
    DuplicateEffectError,
    InvalidQuantityError,
    NotFoundError,
    ProfileExistsError,
    TransientStoreError,
)
from schemas.commerce import (
    INT32_MAX,
    AuditLogEntry,
    Bean,
    BeanInput,
    CartItem,
    CartItemDetail,
    Order,
    OrderDraft,
    OrderItem,
    Profile,
    ProfileInput,
    SellerAccountStatus,
)
from storage.interfaces import IAuditLog, IOrderTransaction, IStore

logger = structlog.get_logger(component="postgres_store")


# Failures worth retrying: the operation may succeed against a healthy store
TRANSIENT_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.QueryCanceledError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    OSError,
)

BEAN_COLUMNS = "id, name, origin, price, process, roast_profile, user_id, created_at, updated_at"
CART_ITEM_COLUMNS = (
    "ci.id::text AS id, ci.cart_id::text AS cart_id, ci.bean_id, ci.quantity, "
    "ci.created_at, ci.updated_at"
)
CART_DETAIL_QUERY = """
    SELECT ci.id::text AS id, ci.bean_id, b.name, b.price, ci.quantity,
           b.process, b.roast_profile
    FROM cart_items ci
    JOIN carts c ON c.id = ci.cart_id
    JOIN beans b ON b.id = ci.bean_id
    WHERE c.user_id = $1
    ORDER BY ci.created_at DESC
"""
ORDER_COLUMNS = (
    "id, user_id, status, total_amount, currency, payment_method_type, "
    "payment_reference, created_at, updated_at"
)
ORDER_ITEM_COLUMNS = "id, order_id, bean_id, price_at_purchase, quantity"
PROFILE_COLUMNS = (
    "user_id, display_name, icon_url, post_code, address, about_me, "
    "stripe_account_id, stripe_account_status, created_at, updated_at"
)


def _parse_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


@asynccontextmanager
async def _store_errors(operation: str) -> AsyncIterator[None]:
    """Translate driver connectivity failures into TransientStoreError"""
    try:
        yield
    except TRANSIENT_ERRORS as e:
        logger.warning("store_transient_error", operation=operation, error=str(e))
        raise TransientStoreError() from e


class PostgresOrderTransaction(IOrderTransaction):
    """Statements bound to one connection inside one transaction"""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def load_cart_for_update(self, user_id: str) -> List[CartItemDetail]:
        # Lock the cart row first so concurrent units of work on the same
        # cart queue here instead of racing on the lines.
        cart = await self._conn.fetchrow(
            "SELECT id FROM carts WHERE user_id = $1 FOR UPDATE",
            user_id,
        )
        if cart is None:
            return []
        rows = await self._conn.fetch(
            """
            SELECT ci.id::text AS id, ci.bean_id, b.name, b.price, ci.quantity,
                   b.process, b.roast_profile
            FROM cart_items ci
            JOIN beans b ON b.id = ci.bean_id
            WHERE ci.cart_id = $1
            ORDER BY ci.created_at DESC
            FOR UPDATE OF ci
            """,
            cart["id"],
        )
        return [CartItemDetail(**dict(r)) for r in rows]

    async def get_order_for_update(self, payment_reference: str) -> Optional[Order]:
        row = await self._conn.fetchrow(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE payment_reference = $1 FOR UPDATE",
            payment_reference,
        )
        return Order(**dict(row)) if row else None

    async def insert_order(self, draft: OrderDraft) -> Order:
        try:
            row = await self._conn.fetchrow(
                f"""
                INSERT INTO orders
                (user_id, status, total_amount, currency, payment_method_type, payment_reference)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING {ORDER_COLUMNS}
                """,
                draft.user_id,
                draft.status.value,
                draft.total_amount,
                draft.currency,
                draft.payment_method_type,
                draft.payment_reference,
            )
        except asyncpg.exceptions.UniqueViolationError as e:
            raise DuplicateEffectError(draft.payment_reference, e.constraint_name) from e
        return Order(**dict(row))

    async def update_order(self, order_id: int, draft: OrderDraft) -> Order:
        row = await self._conn.fetchrow(
            f"""
            UPDATE orders
            SET status = $1, total_amount = $2, currency = $3,
                payment_method_type = $4, updated_at = NOW()
            WHERE id = $5
            RETURNING {ORDER_COLUMNS}
            """,
            draft.status.value,
            draft.total_amount,
            draft.currency,
            draft.payment_method_type,
            order_id,
        )
        return Order(**dict(row))

    async def insert_order_items(
        self, order_id: int, lines: List[CartItemDetail]
    ) -> List[OrderItem]:
        if not lines:
            return []
        rows = await self._conn.fetch(
            f"""
            INSERT INTO order_items (order_id, bean_id, price_at_purchase, quantity)
            SELECT $1, u.bean_id, u.price, u.quantity
            FROM unnest($2::int[], $3::int[], $4::int[]) AS u(bean_id, price, quantity)
            RETURNING {ORDER_ITEM_COLUMNS}
            """,
            order_id,
            [line.bean_id for line in lines],
            [line.price for line in lines],
            [line.quantity for line in lines],
        )
        return [OrderItem(**dict(r)) for r in rows]

    async def replace_order_items(
        self, order_id: int, lines: List[CartItemDetail]
    ) -> List[OrderItem]:
        await self._conn.execute("DELETE FROM order_items WHERE order_id = $1", order_id)
        return await self.insert_order_items(order_id, lines)

    async def list_order_items(self, order_id: int) -> List[OrderItem]:
        rows = await self._conn.fetch(
            f"SELECT {ORDER_ITEM_COLUMNS} FROM order_items WHERE order_id = $1 ORDER BY id",
            order_id,
        )
        return [OrderItem(**dict(r)) for r in rows]

    async def clear_cart(self, user_id: str) -> int:
        status = await self._conn.execute(
            """
            DELETE FROM cart_items ci
            USING carts c
            WHERE ci.cart_id = c.id AND c.user_id = $1
            """,
            user_id,
        )
        return affected_rows(status)


class PostgresStore(IStore):
    """IStore over an asyncpg pool"""

    def __init__(self, db: Database):
        self.db = db

    async def close(self) -> None:
        await self.db.close()

    # =========================================================================
    # CATALOG
    # =========================================================================

    async def create_bean(self, user_id: str, data: BeanInput) -> Bean:
        async with _store_errors("create_bean"):
            row = await self.db.fetch_one(
                f"""
                INSERT INTO beans (name, origin, price, process, roast_profile, user_id)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING {BEAN_COLUMNS}
                """,
                data.name, data.origin, data.price, data.process, data.roast_profile, user_id,
            )
        return Bean(**dict(row))

    async def get_bean(self, bean_id: int) -> Bean:
        async with _store_errors("get_bean"):
            row = await self.db.fetch_one(
                f"SELECT {BEAN_COLUMNS} FROM beans WHERE id = $1", bean_id
            )
        if row is None:
            raise NotFoundError("Bean not found")
        return Bean(**dict(row))

    async def list_beans(self) -> List[Bean]:
        async with _store_errors("list_beans"):
            rows = await self.db.fetch_all(f"SELECT {BEAN_COLUMNS} FROM beans ORDER BY id DESC")
        return [Bean(**dict(r)) for r in rows]

    async def list_beans_by_owner(self, user_id: str) -> List[Bean]:
        async with _store_errors("list_beans_by_owner"):
            rows = await self.db.fetch_all(
                f"SELECT {BEAN_COLUMNS} FROM beans WHERE user_id = $1 ORDER BY id DESC",
                user_id,
            )
        return [Bean(**dict(r)) for r in rows]

    async def update_bean(self, bean_id: int, user_id: str, data: BeanInput) -> Bean:
        async with _store_errors("update_bean"):
            row = await self.db.fetch_one(
                f"""
                UPDATE beans
                SET name = $1, origin = $2, price = $3, process = $4,
                    roast_profile = $5, updated_at = NOW()
                WHERE id = $6 AND user_id = $7
                RETURNING {BEAN_COLUMNS}
                """,
                data.name, data.origin, data.price, data.process, data.roast_profile,
                bean_id, user_id,
            )
        if row is None:
            raise NotFoundError("Bean not found")
        return Bean(**dict(row))

    async def delete_bean(self, bean_id: int, user_id: str) -> None:
        async with _store_errors("delete_bean"):
            status = await self.db.execute(
                "DELETE FROM beans WHERE id = $1 AND user_id = $2", bean_id, user_id
            )
        if affected_rows(status) == 0:
            raise NotFoundError("Bean not found")

    # =========================================================================
    # CART
    # =========================================================================

    async def add_or_merge(self, user_id: str, bean_id: int, quantity: int) -> CartItem:
        if quantity < 1:
            raise InvalidQuantityError()
        if quantity > INT32_MAX:
            raise InvalidQuantityError("Quantity out of range")
        async with _store_errors("add_or_merge"):
            async with self.db.acquire() as conn:
                async with conn.transaction():
                    # Upsert instead of read-then-insert: two first adds for
                    # the same user both land on the one cart row.
                    cart_id = await conn.fetchval(
                        """
                        INSERT INTO carts (user_id) VALUES ($1)
                        ON CONFLICT (user_id) DO UPDATE SET updated_at = NOW()
                        RETURNING id
                        """,
                        user_id,
                    )
                    try:
                        row = await conn.fetchrow(
                            f"""
                            INSERT INTO cart_items AS ci (cart_id, bean_id, quantity)
                            VALUES ($1, $2, $3)
                            ON CONFLICT (cart_id, bean_id) DO UPDATE
                            SET quantity = ci.quantity + EXCLUDED.quantity,
                                updated_at = NOW()
                            RETURNING {CART_ITEM_COLUMNS}
                            """,
                            cart_id, bean_id, quantity,
                        )
                    except asyncpg.exceptions.ForeignKeyViolationError as e:
                        raise NotFoundError("Bean not found") from e
                    except asyncpg.exceptions.NumericValueOutOfRangeError as e:
                        # Merged quantity overflowed the column
                        raise InvalidQuantityError("Quantity out of range") from e
        return CartItem(**dict(row))

    async def list_items(self, user_id: str) -> List[CartItemDetail]:
        async with _store_errors("list_items"):
            rows = await self.db.fetch_all(CART_DETAIL_QUERY, user_id)
        return [CartItemDetail(**dict(r)) for r in rows]

    async def set_quantity(self, cart_item_id: str, user_id: str, quantity: int) -> CartItem:
        if quantity < 1:
            raise InvalidQuantityError()
        if quantity > INT32_MAX:
            raise InvalidQuantityError("Quantity out of range")
        item_id = _parse_uuid(cart_item_id)
        if item_id is None:
            raise NotFoundError("Cart item not found")
        async with _store_errors("set_quantity"):
            try:
                row = await self.db.fetch_one(
                    f"""
                    UPDATE cart_items ci
                    SET quantity = $1, updated_at = NOW()
                    FROM carts c
                    WHERE ci.id = $2 AND ci.cart_id = c.id AND c.user_id = $3
                    RETURNING {CART_ITEM_COLUMNS}
                    """,
                    quantity, item_id, user_id,
                )
            except asyncpg.exceptions.NumericValueOutOfRangeError as e:
                raise InvalidQuantityError("Quantity out of range") from e
        if row is None:
            raise NotFoundError("Cart item not found")
        return CartItem(**dict(row))

    async def remove_item(self, cart_item_id: str, user_id: str) -> None:
        item_id = _parse_uuid(cart_item_id)
        if item_id is None:
            raise NotFoundError("Cart item not found")
        async with _store_errors("remove_item"):
            status = await self.db.execute(
                """
                DELETE FROM cart_items ci
                USING carts c
                WHERE ci.id = $1 AND ci.cart_id = c.id AND c.user_id = $2
                """,
                item_id, user_id,
            )
        if affected_rows(status) == 0:
            raise NotFoundError("Cart item not found")

    # =========================================================================
    # ORDERS
    # =========================================================================

    @asynccontextmanager
    async def transaction(self, timeout: Optional[float] = None) -> AsyncIterator[PostgresOrderTransaction]:
        async with _store_errors("order_transaction"):
            async with self.db.acquire() as conn:
                async with conn.transaction():
                    if timeout:
                        # Server-side bound as well, so a cancelled client
                        # does not leave the statement running.
                        await conn.execute(
                            "SELECT set_config('statement_timeout', $1, true)",
                            str(int(timeout * 1000)),
                        )
                    yield PostgresOrderTransaction(conn)

    async def get_order_by_payment_reference(self, payment_reference: str) -> Optional[Order]:
        async with _store_errors("get_order_by_payment_reference"):
            row = await self.db.fetch_one(
                f"SELECT {ORDER_COLUMNS} FROM orders WHERE payment_reference = $1",
                payment_reference,
            )
        return Order(**dict(row)) if row else None

    async def list_orders(self, user_id: str) -> List[Order]:
        async with _store_errors("list_orders"):
            rows = await self.db.fetch_all(
                f"SELECT {ORDER_COLUMNS} FROM orders WHERE user_id = $1 ORDER BY id DESC",
                user_id,
            )
        return [Order(**dict(r)) for r in rows]

    async def list_order_items(self, order_id: int) -> List[OrderItem]:
        async with _store_errors("list_order_items"):
            rows = await self.db.fetch_all(
                f"SELECT {ORDER_ITEM_COLUMNS} FROM order_items WHERE order_id = $1 ORDER BY id",
                order_id,
            )
        return [OrderItem(**dict(r)) for r in rows]

    # =========================================================================
    # PROFILES
    # =========================================================================

    async def create_profile(self, user_id: str, data: ProfileInput) -> Profile:
        async with _store_errors("create_profile"):
            try:
                row = await self.db.fetch_one(
                    f"""
                    INSERT INTO profiles
                    (user_id, display_name, icon_url, post_code, address, about_me)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    RETURNING {PROFILE_COLUMNS}
                    """,
                    user_id, data.display_name, data.icon_url, data.post_code,
                    data.address, data.about_me,
                )
            except asyncpg.exceptions.UniqueViolationError as e:
                raise ProfileExistsError() from e
        return Profile(**dict(row))

    async def get_profile(self, user_id: str) -> Profile:
        async with _store_errors("get_profile"):
            row = await self.db.fetch_one(
                f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE user_id = $1", user_id
            )
        if row is None:
            raise NotFoundError("Profile not found")
        return Profile(**dict(row))

    async def update_profile(self, user_id: str, data: ProfileInput) -> Profile:
        async with _store_errors("update_profile"):
            row = await self.db.fetch_one(
                f"""
                UPDATE profiles
                SET display_name = $1, icon_url = $2, post_code = $3, address = $4,
                    about_me = $5, updated_at = NOW()
                WHERE user_id = $6
                RETURNING {PROFILE_COLUMNS}
                """,
                data.display_name, data.icon_url, data.post_code, data.address,
                data.about_me, user_id,
            )
        if row is None:
            raise NotFoundError("Profile not found")
        return Profile(**dict(row))

    async def update_stripe_account(
        self, user_id: str, account_id: str, status: SellerAccountStatus
    ) -> Profile:
        async with _store_errors("update_stripe_account"):
            row = await self.db.fetch_one(
                f"""
                UPDATE profiles
                SET stripe_account_id = $1, stripe_account_status = $2, updated_at = NOW()
                WHERE user_id = $3
                RETURNING {PROFILE_COLUMNS}
                """,
                account_id, status.value, user_id,
            )
        if row is None:
            raise NotFoundError("Profile not found")
        return Profile(**dict(row))


class PostgresAuditLog(IAuditLog):
    """Audit entries persisted to system_events"""

    def __init__(self, db: Database):
        self.db = db

    async def append(self, entry: AuditLogEntry) -> None:
        await self.db.execute(
            """
            INSERT INTO system_events
            (timestamp, event_type, payment_reference, owner_hint, payload, severity)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6)
            """,
            entry.timestamp,
            entry.event_type.value,
            entry.payment_reference,
            entry.owner_hint,
            json.dumps(entry.payload, default=str),
            entry.severity,
        )

    async def get_by_payment_reference(self, payment_reference: str) -> List[AuditLogEntry]:
        rows = await self.db.fetch_all(
            """
            SELECT timestamp, event_type, payment_reference, owner_hint, payload, severity
            FROM system_events
            WHERE payment_reference = $1
            ORDER BY timestamp
            """,
            payment_reference,
        )
        entries = []
        for row in rows:
            data = dict(row)
            if isinstance(data["payload"], str):
                data["payload"] = json.loads(data["payload"])
            entries.append(AuditLogEntry(**data))
        return entries
