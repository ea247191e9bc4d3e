from __future__ import annotations

import logging
from typing import Optional

import stripe
from pydantic import ValidationError

from billing_reconciler.core.errors import AuthenticationError, MalformedEvent
from billing_reconciler.core.settings import Settings
from billing_reconciler.models import WebhookEvent

logger = logging.getLogger(__name__)


class ProcessorClient:
    """Verifies webhook deliveries for one app instance.

    Only the webhook signing secret is held. Built explicitly and injected;
    nothing here touches `stripe.api_key` or any other process-wide state.
    """

    def __init__(self, webhook_secret: str, *, tolerance: int = 300) -> None:
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProcessorClient":
        return cls(
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_signature_tolerance_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self.webhook_secret)

    def verify_event(self, payload: bytes, sig_header: Optional[str]) -> WebhookEvent:
        # The signature covers the exact bytes received, so nothing is parsed until it checks out.
        if not self.webhook_secret:
            raise AuthenticationError("webhook secret not configured")
        if not sig_header:
            raise AuthenticationError("missing signature header")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise AuthenticationError("payload is not valid utf-8") from exc
        try:
            stripe.WebhookSignature.verify_header(text, sig_header, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise AuthenticationError("signature verification failed") from exc
        try:
            return WebhookEvent.model_validate_json(payload)
        except ValidationError as exc:
            logger.warning("Signed webhook body is not an event envelope: %s", exc.errors()[:3])
            raise MalformedEvent("malformed event envelope") from exc
