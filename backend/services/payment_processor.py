# services/payment_processor.py
# ============================================================================
# BEAN CHECKOUT BACKEND — PAYMENT PROCESSOR CLIENT
# ============================================================================
# Creates payment intents and onboards sellers as connected accounts. The
# Stripe client owns its API key; nothing in this module touches the SDK's
# global configuration.
# ============================================================================

import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import stripe
import structlog
from pydantic import BaseModel

from config import short_id
from errors import PaymentProcessorError


class PaymentIntentResult(BaseModel):
    payment_reference: str
    client_secret: str


class ConnectedAccount(BaseModel):
    account_id: str
    charges_enabled: bool


class PaymentProcessor(ABC):
    """Abstract processor client"""

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        owner_id: str,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentResult:
        pass

    @abstractmethod
    async def create_connected_account(self, owner_id: str, country: str) -> ConnectedAccount:
        pass

    @abstractmethod
    async def create_account_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        """Hosted onboarding URL for account_id"""
        pass

    @abstractmethod
    async def refresh_account_status(self, account_id: str) -> ConnectedAccount:
        pass


class StripePaymentProcessor(PaymentProcessor):
    """Stripe PaymentIntents with automatic payment methods, Express accounts for sellers"""

    def __init__(self, api_key: str):
        self._api_key = api_key
        self._logger = structlog.get_logger().bind(component="stripe_processor")

    async def _call(self, operation: str, fn, **params):
        """Run a blocking SDK call off the event loop, translating StripeError"""
        try:
            return await asyncio.to_thread(fn, api_key=self._api_key, **params)
        except stripe.StripeError as e:
            self._logger.error(
                f"{operation}_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PaymentProcessorError() from e

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        owner_id: str,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentResult:
        params = {
            "amount": amount,
            "currency": currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": {"user_id": owner_id},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        intent = await self._call("payment_intent", stripe.PaymentIntent.create, **params)

        self._logger.info(
            "payment_intent_created",
            payment_reference=intent.id,
            user=short_id(owner_id),
            amount=amount,
            currency=currency,
        )
        return PaymentIntentResult(payment_reference=intent.id, client_secret=intent.client_secret)

    async def create_connected_account(self, owner_id: str, country: str) -> ConnectedAccount:
        account = await self._call(
            "connected_account",
            stripe.Account.create,
            type="express",
            country=country,
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            metadata={"user_id": owner_id},
        )
        self._logger.info("connected_account_created", account_id=account.id, user=short_id(owner_id))
        return ConnectedAccount(account_id=account.id, charges_enabled=bool(account.charges_enabled))

    async def create_account_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        link = await self._call(
            "account_link",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        return link.url

    async def refresh_account_status(self, account_id: str) -> ConnectedAccount:
        account = await self._call("account_retrieve", stripe.Account.retrieve, id=account_id)
        return ConnectedAccount(account_id=account.id, charges_enabled=bool(account.charges_enabled))


class FakePaymentProcessor(PaymentProcessor):
    """In-process stand-in for tests and local development"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[Dict] = []
        self.accounts: Dict[str, ConnectedAccount] = {}
        self._by_key: Dict[str, PaymentIntentResult] = {}

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        owner_id: str,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentResult:
        if self.fail:
            raise PaymentProcessorError()
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]

        reference = f"pi_fake_{uuid.uuid4().hex[:16]}"
        self.calls.append({
            "amount": amount,
            "currency": currency,
            "metadata": {"user_id": owner_id},
            "payment_reference": reference,
            "idempotency_key": idempotency_key,
        })
        result = PaymentIntentResult(
            payment_reference=reference,
            client_secret=f"{reference}_secret_{uuid.uuid4().hex[:8]}",
        )
        if idempotency_key:
            self._by_key[idempotency_key] = result
        return result

    async def create_connected_account(self, owner_id: str, country: str) -> ConnectedAccount:
        if self.fail:
            raise PaymentProcessorError()
        account = ConnectedAccount(account_id=f"acct_fake_{uuid.uuid4().hex[:12]}", charges_enabled=False)
        self.accounts[account.account_id] = account
        return account

    async def create_account_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        if self.fail:
            raise PaymentProcessorError()
        return f"https://connect.example.test/setup/{account_id}"

    async def refresh_account_status(self, account_id: str) -> ConnectedAccount:
        if self.fail or account_id not in self.accounts:
            raise PaymentProcessorError()
        return self.accounts[account_id]

    def enable_charges(self, account_id: str) -> None:
        """Simulate the seller finishing hosted onboarding"""
        self.accounts[account_id] = ConnectedAccount(account_id=account_id, charges_enabled=True)
