# storage/memory.py
# ============================================================================
# BEAN CHECKOUT BACKEND — IN-MEMORY STORE
# ============================================================================
# Same contract as PostgresStore, for tests and local development.
#
# One asyncio.Lock plays the part of the database: every call holds it for
# its whole duration, so operations are serializable. A unit of work runs
# against a copy of the tables and only swaps the copy in when the block
# exits cleanly, which gives the same all-or-nothing outcome as a rolled
# back transaction.
# ============================================================================

import asyncio
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional

from errors import (
    DuplicateEffectError,
    InvalidQuantityError,
    NotFoundError,
    ProfileExistsError,
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


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Tables:
    beans: Dict[int, Bean] = field(default_factory=dict)
    carts: Dict[str, str] = field(default_factory=dict)          # user_id -> cart_id
    cart_items: Dict[str, CartItem] = field(default_factory=dict)
    orders: Dict[int, Order] = field(default_factory=dict)
    order_refs: Dict[str, int] = field(default_factory=dict)     # payment_reference -> order id
    order_items: Dict[int, OrderItem] = field(default_factory=dict)
    profiles: Dict[str, Profile] = field(default_factory=dict)
    bean_seq: int = 0
    order_seq: int = 0
    order_item_seq: int = 0

    def copy(self) -> "_Tables":
        # Rows are immutable pydantic models (updates use model_copy), so
        # copying the dicts is enough to isolate a unit of work.
        return replace(
            self,
            beans=dict(self.beans),
            carts=dict(self.carts),
            cart_items=dict(self.cart_items),
            orders=dict(self.orders),
            order_refs=dict(self.order_refs),
            order_items=dict(self.order_items),
            profiles=dict(self.profiles),
        )

    def cart_lines(self, user_id: str) -> List[CartItemDetail]:
        cart_id = self.carts.get(user_id)
        if cart_id is None:
            return []
        lines = [ci for ci in self.cart_items.values() if ci.cart_id == cart_id]
        lines.sort(key=lambda ci: ci.created_at)
        lines.reverse()
        details = []
        for ci in lines:
            bean = self.beans[ci.bean_id]
            details.append(CartItemDetail(
                id=ci.id,
                bean_id=ci.bean_id,
                name=bean.name,
                price=bean.price,
                quantity=ci.quantity,
                process=bean.process,
                roast_profile=bean.roast_profile,
            ))
        return details

    def owned_cart_item(self, cart_item_id: str, user_id: str) -> Optional[CartItem]:
        item = self.cart_items.get(cart_item_id)
        if item is None or self.carts.get(user_id) != item.cart_id:
            return None
        return item


class InMemoryOrderTransaction(IOrderTransaction):
    """Writes go to the unit of work's private copy of the tables"""

    def __init__(self, tables: _Tables):
        self._t = tables

    async def load_cart_for_update(self, user_id: str) -> List[CartItemDetail]:
        return self._t.cart_lines(user_id)

    async def get_order_for_update(self, payment_reference: str) -> Optional[Order]:
        order_id = self._t.order_refs.get(payment_reference)
        return self._t.orders.get(order_id) if order_id is not None else None

    async def insert_order(self, draft: OrderDraft) -> Order:
        if draft.payment_reference in self._t.order_refs:
            raise DuplicateEffectError(draft.payment_reference, "orders_payment_reference_key")
        self._t.order_seq += 1
        now = _now()
        order = Order(id=self._t.order_seq, created_at=now, updated_at=now, **draft.model_dump())
        self._t.orders[order.id] = order
        self._t.order_refs[order.payment_reference] = order.id
        return order

    async def update_order(self, order_id: int, draft: OrderDraft) -> Order:
        updated = self._t.orders[order_id].model_copy(update={
            "status": draft.status,
            "total_amount": draft.total_amount,
            "currency": draft.currency,
            "payment_method_type": draft.payment_method_type,
            "updated_at": _now(),
        })
        self._t.orders[order_id] = updated
        return updated

    async def insert_order_items(
        self, order_id: int, lines: List[CartItemDetail]
    ) -> List[OrderItem]:
        items = []
        for line in lines:
            self._t.order_item_seq += 1
            item = OrderItem(
                id=self._t.order_item_seq,
                order_id=order_id,
                bean_id=line.bean_id,
                price_at_purchase=line.price,
                quantity=line.quantity,
            )
            self._t.order_items[item.id] = item
            items.append(item)
        return items

    async def replace_order_items(
        self, order_id: int, lines: List[CartItemDetail]
    ) -> List[OrderItem]:
        for k in [k for k, i in self._t.order_items.items() if i.order_id == order_id]:
            del self._t.order_items[k]
        return await self.insert_order_items(order_id, lines)

    async def list_order_items(self, order_id: int) -> List[OrderItem]:
        return [i for i in self._t.order_items.values() if i.order_id == order_id]

    async def clear_cart(self, user_id: str) -> int:
        cart_id = self._t.carts.get(user_id)
        if cart_id is None:
            return 0
        doomed = [k for k, ci in self._t.cart_items.items() if ci.cart_id == cart_id]
        for k in doomed:
            del self._t.cart_items[k]
        return len(doomed)


class InMemoryStore(IStore):
    """Thread-unsafe, loop-safe in-memory backend"""

    def __init__(self):
        self._tables = _Tables()
        self._lock = asyncio.Lock()

    # =========================================================================
    # CATALOG
    # =========================================================================

    async def create_bean(self, user_id: str, data: BeanInput) -> Bean:
        async with self._lock:
            self._tables.bean_seq += 1
            now = _now()
            bean = Bean(
                id=self._tables.bean_seq,
                user_id=user_id,
                created_at=now,
                updated_at=now,
                **data.model_dump(),
            )
            self._tables.beans[bean.id] = bean
            return bean

    async def get_bean(self, bean_id: int) -> Bean:
        async with self._lock:
            bean = self._tables.beans.get(bean_id)
            if bean is None:
                raise NotFoundError("Bean not found")
            return bean

    async def list_beans(self) -> List[Bean]:
        async with self._lock:
            return sorted(self._tables.beans.values(), key=lambda b: b.id, reverse=True)

    async def list_beans_by_owner(self, user_id: str) -> List[Bean]:
        async with self._lock:
            beans = [b for b in self._tables.beans.values() if b.user_id == user_id]
            return sorted(beans, key=lambda b: b.id, reverse=True)

    async def update_bean(self, bean_id: int, user_id: str, data: BeanInput) -> Bean:
        async with self._lock:
            bean = self._tables.beans.get(bean_id)
            if bean is None or bean.user_id != user_id:
                raise NotFoundError("Bean not found")
            updated = bean.model_copy(update={**data.model_dump(), "updated_at": _now()})
            self._tables.beans[bean_id] = updated
            return updated

    async def delete_bean(self, bean_id: int, user_id: str) -> None:
        async with self._lock:
            bean = self._tables.beans.get(bean_id)
            if bean is None or bean.user_id != user_id:
                raise NotFoundError("Bean not found")
            del self._tables.beans[bean_id]
            # cart_items.bean_id ON DELETE CASCADE
            for k in [k for k, ci in self._tables.cart_items.items() if ci.bean_id == bean_id]:
                del self._tables.cart_items[k]

    # =========================================================================
    # CART
    # =========================================================================

    async def add_or_merge(self, user_id: str, bean_id: int, quantity: int) -> CartItem:
        if quantity < 1:
            raise InvalidQuantityError()
        if quantity > INT32_MAX:
            raise InvalidQuantityError("Quantity out of range")
        async with self._lock:
            t = self._tables
            if bean_id not in t.beans:
                raise NotFoundError("Bean not found")
            cart_id = t.carts.setdefault(user_id, str(uuid.uuid4()))
            now = _now()
            existing = next(
                (ci for ci in t.cart_items.values()
                 if ci.cart_id == cart_id and ci.bean_id == bean_id),
                None,
            )
            if existing is None:
                item = CartItem(
                    id=str(uuid.uuid4()),
                    cart_id=cart_id,
                    bean_id=bean_id,
                    quantity=quantity,
                    created_at=now,
                    updated_at=now,
                )
            else:
                if existing.quantity + quantity > INT32_MAX:
                    raise InvalidQuantityError("Quantity out of range")
                item = existing.model_copy(update={
                    "quantity": existing.quantity + quantity,
                    "updated_at": now,
                })
            t.cart_items[item.id] = item
            return item

    async def list_items(self, user_id: str) -> List[CartItemDetail]:
        async with self._lock:
            return self._tables.cart_lines(user_id)

    async def set_quantity(self, cart_item_id: str, user_id: str, quantity: int) -> CartItem:
        if quantity < 1:
            raise InvalidQuantityError()
        if quantity > INT32_MAX:
            raise InvalidQuantityError("Quantity out of range")
        async with self._lock:
            item = self._tables.owned_cart_item(cart_item_id, user_id)
            if item is None:
                raise NotFoundError("Cart item not found")
            updated = item.model_copy(update={"quantity": quantity, "updated_at": _now()})
            self._tables.cart_items[item.id] = updated
            return updated

    async def remove_item(self, cart_item_id: str, user_id: str) -> None:
        async with self._lock:
            item = self._tables.owned_cart_item(cart_item_id, user_id)
            if item is None:
                raise NotFoundError("Cart item not found")
            del self._tables.cart_items[item.id]

    # =========================================================================
    # ORDERS
    # =========================================================================

    @asynccontextmanager
    async def transaction(self, timeout: Optional[float] = None) -> AsyncIterator[InMemoryOrderTransaction]:
        async with self._lock:
            work = self._tables.copy()
            yield InMemoryOrderTransaction(work)
            # Only reached when the block raised nothing
            self._tables = work

    async def get_order_by_payment_reference(self, payment_reference: str) -> Optional[Order]:
        async with self._lock:
            order_id = self._tables.order_refs.get(payment_reference)
            return self._tables.orders.get(order_id) if order_id is not None else None

    async def list_orders(self, user_id: str) -> List[Order]:
        async with self._lock:
            orders = [o for o in self._tables.orders.values() if o.user_id == user_id]
            return sorted(orders, key=lambda o: o.id, reverse=True)

    async def list_order_items(self, order_id: int) -> List[OrderItem]:
        async with self._lock:
            return [i for i in self._tables.order_items.values() if i.order_id == order_id]

    # =========================================================================
    # PROFILES
    # =========================================================================

    async def create_profile(self, user_id: str, data: ProfileInput) -> Profile:
        async with self._lock:
            if user_id in self._tables.profiles:
                raise ProfileExistsError()
            now = _now()
            profile = Profile(user_id=user_id, created_at=now, updated_at=now, **data.model_dump())
            self._tables.profiles[user_id] = profile
            return profile

    async def get_profile(self, user_id: str) -> Profile:
        async with self._lock:
            profile = self._tables.profiles.get(user_id)
            if profile is None:
                raise NotFoundError("Profile not found")
            return profile

    async def update_profile(self, user_id: str, data: ProfileInput) -> Profile:
        return await self._update_profile(user_id, data.model_dump())

    async def update_stripe_account(
        self, user_id: str, account_id: str, status: SellerAccountStatus
    ) -> Profile:
        return await self._update_profile(
            user_id, {"stripe_account_id": account_id, "stripe_account_status": status}
        )

    async def _update_profile(self, user_id: str, changes: Dict) -> Profile:
        async with self._lock:
            profile = self._tables.profiles.get(user_id)
            if profile is None:
                raise NotFoundError("Profile not found")
            updated = profile.model_copy(update={**changes, "updated_at": _now()})
            self._tables.profiles[user_id] = updated
            return updated


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: List[AuditLogEntry] = []
        self._by_reference: Dict[str, List[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            if entry.payment_reference:
                self._by_reference[entry.payment_reference].append(entry)

    async def get_by_payment_reference(self, payment_reference: str) -> List[AuditLogEntry]:
        async with self._lock:
            return list(self._by_reference.get(payment_reference, []))

    @property
    def entries(self) -> List[AuditLogEntry]:
        return list(self._logs)
