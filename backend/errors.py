# errors.py
# ============================================================================
# BEAN CHECKOUT BACKEND — ERROR TAXONOMY
# ============================================================================
# Every failure the core can report. The HTTP layer maps these to statuses
# in one place (api/server.py).
# ============================================================================

from typing import Optional


class CheckoutError(Exception):
    """Base class for all domain errors"""

    status_code = 500
    message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class AuthenticityError(CheckoutError):
    """Webhook signature missing, malformed, stale or wrong"""

    status_code = 400
    message = "Webhook signature verification failed"


class MalformedEventError(CheckoutError):
    """Authentic webhook body that does not parse into a payment event"""

    status_code = 400
    message = "Failed to parse webhook data"


class AttributionError(CheckoutError):
    """Verified event carries no owner identity in its metadata"""

    status_code = 400
    message = "User ID not found in metadata"

    def __init__(self, payment_reference: Optional[str] = None):
        super().__init__()
        self.payment_reference = payment_reference


class DuplicateEffectError(CheckoutError):
    """
    A uniqueness constraint fired: the effect already happened.

    Never reaches the HTTP caller; the materializer turns it into an
    "already processed" acknowledgement.
    """

    status_code = 200
    message = "Already processed"

    def __init__(self, key: str, constraint: Optional[str] = None):
        super().__init__(f"Duplicate effect for {key}")
        self.key = key
        self.constraint = constraint


class NotFoundError(CheckoutError):
    """Missing or not owned by the caller. The two cases are never told apart."""

    status_code = 404
    message = "Not found"


class InvalidQuantityError(CheckoutError):
    status_code = 400
    message = "Quantity must be positive"


class EmptyCartError(CheckoutError):
    status_code = 400
    message = "Cart is empty"


class TransientStoreError(CheckoutError):
    """Connectivity or timeout against the store; the caller should retry"""

    status_code = 503
    message = "Store temporarily unavailable"


class PaymentProcessorError(CheckoutError):
    status_code = 502
    message = "Payment processor request failed"


class AuthenticationError(CheckoutError):
    """Missing or invalid bearer token"""

    status_code = 401
    message = "Invalid or missing token"


class ProfileExistsError(CheckoutError):
    status_code = 409
    message = "Profile already exists"


class SellerAccountMissingError(CheckoutError):
    """Onboarding return for a user who never started onboarding"""

    status_code = 400
    message = "Stripe account not set up"
