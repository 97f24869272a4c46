"""Shared fixtures: in-memory backends, signed webhook payloads, seeded catalog."""

import json
import time

import pytest

from pipeline.order_materializer import OrderMaterializer
from pipeline.payment_gateway import PaymentGateway
from pipeline.webhook_verifier import WebhookVerifier, sign_payload
from schemas.commerce import BeanInput
from storage.memory import InMemoryAuditLog, InMemoryStore

WEBHOOK_SECRET = "whsec_test_0123456789abcdef"
JWT_SECRET = "jwt-test-secret-0123456789abcdef0123456789"

BUYER = "b1f3c2d4-0000-4000-8000-000000000001"
OTHER_BUYER = "c9e8d7f6-0000-4000-8000-000000000002"
SELLER = "a0a0a0a0-0000-4000-8000-000000000003"


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def verifier():
    return WebhookVerifier(WEBHOOK_SECRET)


@pytest.fixture
def materializer(store, audit_log):
    return OrderMaterializer(store, audit_log, timeout=2.0)


@pytest.fixture
def gateway(verifier, materializer, audit_log):
    return PaymentGateway(verifier, materializer, audit_log)


@pytest.fixture
async def beans(store):
    """Two beans from one seller: 1000 and 500 yen."""
    ethiopia = await store.create_bean(SELLER, BeanInput(
        name="Yirgacheffe Kochere", origin="Ethiopia", price=1000,
        process="Washed", roast_profile="Light",
    ))
    brazil = await store.create_bean(SELLER, BeanInput(
        name="Cerrado Mineiro", origin="Brazil", price=500,
        process="Natural", roast_profile="Medium",
    ))
    return ethiopia, brazil


@pytest.fixture
async def filled_cart(store, beans):
    """BUYER's cart: 2 x 1000 + 3 x 500 = 3500."""
    ethiopia, brazil = beans
    await store.add_or_merge(BUYER, ethiopia.id, 2)
    await store.add_or_merge(BUYER, brazil.id, 3)
    return beans


@pytest.fixture
def make_event():
    def _make(
        event_type="payment_intent.succeeded",
        payment_reference="pi_3Ptest000000000001",
        owner_id=BUYER,
        amount=3500,
        currency="jpy",
        event_id="evt_test_000001",
        failure_message=None,
    ):
        intent = {
            "id": payment_reference,
            "object": "payment_intent",
            "amount": amount,
            "currency": currency,
            "payment_method_types": ["card"],
            "metadata": {"user_id": owner_id} if owner_id else {},
        }
        if failure_message:
            intent["last_payment_error"] = {"message": failure_message}
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": intent},
        }
    return _make


@pytest.fixture
def sign():
    """Serialize an event and return (body, Stripe-Signature header)."""
    def _sign(event, secret=WEBHOOK_SECRET, timestamp=None):
        body = event if isinstance(event, bytes) else json.dumps(event).encode("utf-8")
        ts = int(time.time()) if timestamp is None else timestamp
        return body, sign_payload(body, secret, ts)
    return _sign
