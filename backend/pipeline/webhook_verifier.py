# pipeline/webhook_verifier.py
# ============================================================================
# BEAN CHECKOUT BACKEND — SIGNED EVENT VERIFIER
# ============================================================================
# Authenticates processor notifications before anything reads them.
#
# Header format: t=<unix seconds>,v1=<hex>[,v1=<hex>...]
# Each v1 is HMAC-SHA256 over "<t>.<raw body>" keyed with the endpoint
# secret. The comparison itself is delegated to the stripe SDK.
# ============================================================================

import hashlib
import hmac
import json
import time
from typing import Optional

import stripe
import structlog

from errors import AuthenticityError, MalformedEventError
from schemas.commerce import PaymentEvent

logger = structlog.get_logger(component="webhook_verifier")

DEFAULT_TOLERANCE_SECONDS = 300


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a valid signature header for payload. Used by tests and local tooling."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


class WebhookVerifier:
    """Holds the endpoint secret; verify() has no side effects"""

    def __init__(self, secret: str, tolerance: int = DEFAULT_TOLERANCE_SECONDS):
        if not secret:
            logger.warning("webhook_secret_missing")
        self._secret = secret
        self.tolerance = tolerance

    def verify(self, payload: bytes, signature_header: Optional[str]) -> PaymentEvent:
        """
        Authenticate payload and parse it into a PaymentEvent.

        Raises AuthenticityError when the header is missing, malformed, stale
        or does not match, and MalformedEventError when an authentic body is
        not a usable event.
        """
        if not self._secret:
            raise AuthenticityError("Webhook secret not configured")
        if not signature_header:
            logger.warning("webhook_signature_missing")
            raise AuthenticityError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.warning("webhook_body_not_utf8")
            raise AuthenticityError() from e

        # CRITICAL: verify against the exact received bytes BEFORE parsing
        try:
            stripe.WebhookSignature.verify_header(
                body, signature_header, self._secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise AuthenticityError() from e

        try:
            event = PaymentEvent.from_payload(json.loads(body))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("webhook_parse_error", error=str(e))
            raise MalformedEventError() from e

        logger.debug("webhook_verified", event_id=event.event_id, event_type=event.type)
        return event
