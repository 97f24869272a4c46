"""Postgres fixtures. Skipped unless TEST_DATABASE_URL points at a scratch database."""

import os

import pytest

from database import Database
from storage.postgres import PostgresAuditLog, PostgresStore

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


def pytest_collection_modifyitems(config, items):
    if TEST_DATABASE_URL:
        return
    skip = pytest.mark.skip(reason="TEST_DATABASE_URL not set")
    for item in items:
        if "tests/integration/" in item.nodeid:
            item.add_marker(skip)


@pytest.fixture
async def db():
    database = Database(TEST_DATABASE_URL, min_size=1, max_size=10)
    await database.initialize()
    await database.execute(
        "TRUNCATE order_items, orders, cart_items, carts, beans, profiles, system_events "
        "RESTART IDENTITY CASCADE"
    )
    yield database
    await database.close()


@pytest.fixture
def store(db):
    return PostgresStore(db)


@pytest.fixture
def audit_log(db):
    return PostgresAuditLog(db)
