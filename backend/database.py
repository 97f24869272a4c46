"""
Database Module
===============
AsyncPG connection pool and schema for the bean marketplace.

This module provides:
- An injectable connection pool (one per application instance)
- Schema migrations run on startup
- Thin execute / fetch helpers used by storage.postgres

pip install asyncpg
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import asyncpg
import structlog

logger = structlog.get_logger(component="database")


# =============================================================================
# SCHEMA
# =============================================================================

MIGRATIONS = [
    # Catalog
    """
    CREATE TABLE IF NOT EXISTS beans (
        id SERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        origin TEXT NOT NULL,
        price INTEGER NOT NULL CHECK (price >= 0),
        process VARCHAR(100) NOT NULL DEFAULT '',
        roast_profile VARCHAR(100) NOT NULL DEFAULT '',
        user_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # One cart per user
    """
    CREATE TABLE IF NOT EXISTS carts (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # One line per (cart, bean)
    """
    CREATE TABLE IF NOT EXISTS cart_items (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        cart_id UUID NOT NULL REFERENCES carts(id) ON DELETE CASCADE,
        bean_id INTEGER NOT NULL REFERENCES beans(id) ON DELETE CASCADE,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (cart_id, bean_id)
    )
    """,

    # At most one order per payment reference
    """
    CREATE TABLE IF NOT EXISTS orders (
        id SERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        status VARCHAR(20) NOT NULL CHECK (status IN ('succeeded', 'failed')),
        total_amount INTEGER NOT NULL,
        currency VARCHAR(10) NOT NULL,
        payment_method_type VARCHAR(50) NOT NULL DEFAULT '',
        payment_reference VARCHAR(255) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT orders_payment_reference_key UNIQUE (payment_reference)
    )
    """,

    # Price snapshot at purchase time; no FK to beans so history survives deletes
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id SERIAL PRIMARY KEY,
        order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        bean_id INTEGER NOT NULL,
        price_at_purchase INTEGER NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity > 0)
    )
    """,

    # Buyer/seller profile, keyed by the token subject
    """
    CREATE TABLE IF NOT EXISTS profiles (
        user_id TEXT PRIMARY KEY,
        display_name VARCHAR(100) NOT NULL,
        icon_url TEXT NOT NULL DEFAULT '',
        post_code VARCHAR(16) NOT NULL DEFAULT '',
        address TEXT NOT NULL DEFAULT '',
        about_me TEXT NOT NULL DEFAULT '',
        stripe_account_id VARCHAR(255),
        stripe_account_status VARCHAR(20),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Audit trail
    """
    CREATE TABLE IF NOT EXISTS system_events (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        event_type VARCHAR(50) NOT NULL,
        payment_reference VARCHAR(255),
        owner_hint VARCHAR(16),
        payload JSONB NOT NULL DEFAULT '{}',
        severity VARCHAR(10) NOT NULL DEFAULT 'INFO'
    )
    """,

    "CREATE INDEX IF NOT EXISTS idx_beans_user ON beans(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_cart_items_cart ON cart_items(cart_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_reference ON system_events(payment_reference)",
    "CREATE INDEX IF NOT EXISTS idx_events_timestamp ON system_events(timestamp DESC)",
]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self, migrate: bool = True):
        """Open the pool and bring the schema up to date"""
        if self._pool is not None:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
            )
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise
        logger.info("database_pool_initialized", min_size=self.min_size, max_size=self.max_size)

        if migrate:
            await self._run_migrations()

    async def close(self):
        """Close the connection pool"""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection from the pool"""
        if self._pool is None:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args) -> str:
        """Execute a query, returning the command status ("DELETE 1")"""
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _run_migrations(self):
        async with self.acquire() as conn:
            for migration in MIGRATIONS:
                try:
                    await conn.execute(migration)
                except asyncpg.exceptions.DuplicateObjectError as e:
                    # Concurrent startups racing on CREATE ... IF NOT EXISTS
                    logger.warning("migration_skipped", error=str(e))

        logger.info("database_migrations_complete", count=len(MIGRATIONS))


def affected_rows(status: str) -> int:
    """Row count from a command status string such as 'DELETE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0
