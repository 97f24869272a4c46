# storage/__init__.py
# ============================================================================
# BEAN CHECKOUT BACKEND — STORAGE MODULE
# ============================================================================
# Store interfaces with Postgres and in-memory backends
# ============================================================================

from storage.interfaces import (
    IAuditLog,
    ICartStore,
    ICatalogStore,
    IOrderStore,
    IOrderTransaction,
    IProfileStore,
    IStore,
)
from storage.memory import InMemoryAuditLog, InMemoryStore
from storage.postgres import PostgresAuditLog, PostgresStore

__all__ = [
    "IAuditLog",
    "ICartStore",
    "ICatalogStore",
    "IOrderStore",
    "IOrderTransaction",
    "IProfileStore",
    "IStore",
    "InMemoryAuditLog",
    "InMemoryStore",
    "PostgresAuditLog",
    "PostgresStore",
]
