"""
Webhook ingress for payment provider events.

Authenticates and decodes inbound webhook bodies, hands them to the
payment processor and maps the outcome to an HTTP status code:

- 200: processed, ignored or duplicate delivery
- 400: malformed event, never retried
- 401: signature mismatch
- 503: ledger unavailable, the provider should redeliver
- 500: unexpected integration error

Toss bodies are signed with a hex HMAC-SHA256 of the raw body. Stripe
bodies carry Stripe's timestamped signature header.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import stripe

from .errors import LifecycleError, PersistenceError, SignatureError, ValidationError
from .payments import PaymentEventProcessor
from .stripe_events import StripeEventProcessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookResponse:
    """Status code and JSON body returned to the provider."""
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def should_retry(self) -> bool:
        return self.status_code >= 500


def compute_signature(secret: str, raw_body: bytes) -> str:
    """HMAC-SHA256 hex digest of a webhook body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


class WebhookIngress:
    """Validates inbound webhook requests and forwards them for processing."""

    def __init__(self, processor: PaymentEventProcessor, signing_secret: Optional[str] = None):
        self.processor = processor
        self.signing_secret = signing_secret

    def handle(self, raw_body: Union[bytes, str, Dict[str, Any]],
               signature: Optional[str] = None) -> WebhookResponse:
        """Handle one webhook delivery.

        Args:
            raw_body: Request body as received, or an already decoded mapping
                when no signing secret is configured
            signature: Value of the provider signature header

        Returns:
            WebhookResponse for the provider
        """
        try:
            payload = self._decode(raw_body, signature)
            result = self.processor.process_payload(payload)
        except SignatureError as e:
            logger.error("Webhook signature verification failed: %s", e)
            return WebhookResponse(401, {"error": "Webhook verification failed"})
        except ValidationError as e:
            logger.error("Rejected webhook: %s", e)
            return WebhookResponse(400, {"error": str(e)})
        except PersistenceError as e:
            return WebhookResponse(503, {"error": "Webhook handler error", "detail": str(e)})
        except LifecycleError as e:
            logger.exception("Webhook handler error")
            return WebhookResponse(500, {"error": "Webhook handler error", "detail": str(e)})

        return WebhookResponse(200, {
            "received": True,
            "eventType": result.event_type,
            "status": result.status,
            "outcome": result.outcome.value,
        })

    def _decode(self, raw_body: Union[bytes, str, Dict[str, Any]],
                signature: Optional[str]) -> Any:
        if isinstance(raw_body, dict):
            if self.signing_secret:
                raise SignatureError("Signed webhooks must be verified against the raw body")
            return raw_body

        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")

        if self.signing_secret:
            if not signature:
                raise SignatureError("Missing signature")
            self._verify(raw_body, signature)

        try:
            return json.loads(raw_body)
        except ValueError as e:
            raise ValidationError(f"Webhook body is not valid JSON: {e}") from e

    def _verify(self, raw_body: bytes, signature: str) -> None:
        expected = compute_signature(self.signing_secret, raw_body)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise SignatureError("Signature mismatch")


class StripeWebhookIngress(WebhookIngress):
    """Ingress for Stripe events, verified against the Stripe-Signature header."""

    def __init__(self, processor: StripeEventProcessor, signing_secret: Optional[str] = None,
                 tolerance_seconds: int = 300):
        super().__init__(processor, signing_secret)
        self.tolerance_seconds = tolerance_seconds

    def _verify(self, raw_body: bytes, signature: str) -> None:
        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError(f"Webhook body is not valid UTF-8: {e}") from e
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self.signing_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureError(str(e)) from e
