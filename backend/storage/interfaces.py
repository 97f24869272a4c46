# storage/interfaces.py
# ============================================================================
# BEAN CHECKOUT BACKEND — PERSISTENCE INTERFACES
# ============================================================================
# Abstractions the pipeline and the HTTP layer are written against.
# PostgresStore is the production backend, InMemoryStore backs tests and
# local development. Every mutating call takes the caller's identity
# explicitly; ownership is checked inside the store, in the same atomic
# step as the mutation.
# ============================================================================

from abc import ABC, abstractmethod
from typing import AsyncContextManager, List, Optional

from schemas.commerce import (
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


class ICatalogStore(ABC):
    """Beans: public reads, owner-scoped writes"""

    @abstractmethod
    async def create_bean(self, user_id: str, data: BeanInput) -> Bean:
        pass

    @abstractmethod
    async def get_bean(self, bean_id: int) -> Bean:
        """Raises NotFoundError."""
        pass

    @abstractmethod
    async def list_beans(self) -> List[Bean]:
        pass

    @abstractmethod
    async def list_beans_by_owner(self, user_id: str) -> List[Bean]:
        pass

    @abstractmethod
    async def update_bean(self, bean_id: int, user_id: str, data: BeanInput) -> Bean:
        """Raises NotFoundError when the bean is missing or not owned by user_id."""
        pass

    @abstractmethod
    async def delete_bean(self, bean_id: int, user_id: str) -> None:
        """Raises NotFoundError when the bean is missing or not owned by user_id."""
        pass


class ICartStore(ABC):
    """One cart per user, one line per (cart, bean)"""

    @abstractmethod
    async def add_or_merge(self, user_id: str, bean_id: int, quantity: int) -> CartItem:
        """
        Create the cart if needed and add quantity to the bean's line.

        Raises InvalidQuantityError for quantity < 1 and NotFoundError for
        an unknown bean.
        """
        pass

    @abstractmethod
    async def list_items(self, user_id: str) -> List[CartItemDetail]:
        pass

    @abstractmethod
    async def set_quantity(self, cart_item_id: str, user_id: str, quantity: int) -> CartItem:
        pass

    @abstractmethod
    async def remove_item(self, cart_item_id: str, user_id: str) -> None:
        pass


class IOrderTransaction(ABC):
    """Operations available inside one atomic unit of work"""

    @abstractmethod
    async def load_cart_for_update(self, user_id: str) -> List[CartItemDetail]:
        """Current cart lines with catalog detail, locked until commit."""
        pass

    @abstractmethod
    async def get_order_for_update(self, payment_reference: str) -> Optional[Order]:
        """The order for payment_reference, locked until commit."""
        pass

    @abstractmethod
    async def insert_order(self, draft: OrderDraft) -> Order:
        """Raises DuplicateEffectError if the payment reference already exists."""
        pass

    @abstractmethod
    async def update_order(self, order_id: int, draft: OrderDraft) -> Order:
        """Overwrite status, amount, currency and method of an existing order."""
        pass

    @abstractmethod
    async def insert_order_items(
        self, order_id: int, lines: List[CartItemDetail]
    ) -> List[OrderItem]:
        pass

    @abstractmethod
    async def replace_order_items(
        self, order_id: int, lines: List[CartItemDetail]
    ) -> List[OrderItem]:
        pass

    @abstractmethod
    async def list_order_items(self, order_id: int) -> List[OrderItem]:
        pass

    @abstractmethod
    async def clear_cart(self, user_id: str) -> int:
        """Delete every line of the user's cart. Returns the number removed."""
        pass


class IOrderStore(ABC):

    @abstractmethod
    def transaction(self, timeout: Optional[float] = None) -> AsyncContextManager[IOrderTransaction]:
        """
        Open a unit of work. Leaving the block normally commits; leaving it
        with an exception rolls every write back.
        """
        pass

    @abstractmethod
    async def get_order_by_payment_reference(self, payment_reference: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_orders(self, user_id: str) -> List[Order]:
        pass

    @abstractmethod
    async def list_order_items(self, order_id: int) -> List[OrderItem]:
        pass


class IProfileStore(ABC):
    """One profile per identity, keyed by the bearer token's subject"""

    @abstractmethod
    async def create_profile(self, user_id: str, data: ProfileInput) -> Profile:
        """Raises ProfileExistsError when user_id already has a profile."""
        pass

    @abstractmethod
    async def get_profile(self, user_id: str) -> Profile:
        """Raises NotFoundError."""
        pass

    @abstractmethod
    async def update_profile(self, user_id: str, data: ProfileInput) -> Profile:
        """Raises NotFoundError."""
        pass

    @abstractmethod
    async def update_stripe_account(
        self, user_id: str, account_id: str, status: SellerAccountStatus
    ) -> Profile:
        """Record the seller's connected account. Raises NotFoundError."""
        pass


class IStore(ICatalogStore, ICartStore, IOrderStore, IProfileStore):
    """Everything the service needs from one backend"""

    async def close(self) -> None:
        pass


class IAuditLog(ABC):
    """Append-only audit log"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_payment_reference(self, payment_reference: str) -> List[AuditLogEntry]:
        pass
