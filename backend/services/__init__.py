# services/__init__.py
# ============================================================================
# BEAN CHECKOUT BACKEND — SERVICES MODULE
# ============================================================================
# Checkout, seller onboarding and the payment processor client
# ============================================================================

from services.checkout import CheckoutService, checkout_idempotency_key
from services.payment_processor import (
    ConnectedAccount,
    FakePaymentProcessor,
    PaymentIntentResult,
    PaymentProcessor,
    StripePaymentProcessor,
)
from services.seller_onboarding import SellerOnboardingService

__all__ = [
    "CheckoutService",
    "checkout_idempotency_key",
    "ConnectedAccount",
    "FakePaymentProcessor",
    "PaymentIntentResult",
    "PaymentProcessor",
    "SellerOnboardingService",
    "StripePaymentProcessor",
]
