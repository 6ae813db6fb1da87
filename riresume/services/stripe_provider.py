"""
Stripe Payment Provider - webhook verification and event mapping.

NO DICTIONARIES - Verified events are returned as PaymentEvent dataclasses.
"""

from typing import Any

import stripe
from structlog import get_logger

from riresume.exceptions import WebhookVerificationError
from riresume.models.domain import PaymentEvent

logger = get_logger(__name__)

# Event types that represent a completed token purchase
CREDITING_EVENT_TYPES = frozenset({"checkout.session.completed", "payment_intent.succeeded"})


class StripeProvider:
    """
    Stripe webhook intake.

    Purchases carry their crediting details in the object metadata:
    uid (user id), tokens (token amount) and packageId (optional).
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.api_key = api_key

    def verify_webhook(self, payload: bytes, signature: str) -> PaymentEvent | None:
        """
        Verify a Stripe webhook and map it to a PaymentEvent.

        Args:
            payload: Raw webhook body
            signature: Stripe-Signature header value

        Returns:
            PaymentEvent for crediting events, None for events to acknowledge and ignore

        Raises:
            WebhookVerificationError: Signature invalid or body malformed
        """
        if not self.webhook_secret:
            raise WebhookVerificationError("Stripe webhook secret is not configured")

        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)

        if event.type not in CREDITING_EVENT_TYPES:
            logger.info("stripe_webhook_ignored", event_id=event.id, event_type=event.type)
            return None

        return self._to_payment_event(event.type, event.data.object)

    def _to_payment_event(self, event_type: str, obj: Any) -> PaymentEvent | None:
        """
        Map a checkout session / payment intent object to a PaymentEvent.

        Events whose metadata cannot be credited are acknowledged and ignored:
        their signature is valid, so redelivery would never succeed.
        """
        metadata = obj.get("metadata") or {}
        user_id = metadata.get("uid")
        tokens = metadata.get("tokens")
        object_id = obj.get("id")

        if not user_id or not tokens or not object_id:
            logger.warning(
                "stripe_webhook_missing_metadata",
                object_id=object_id,
                has_uid=bool(user_id),
                has_tokens=bool(tokens),
            )
            return None

        try:
            token_amount = int(tokens)
        except (TypeError, ValueError):
            logger.warning("stripe_webhook_invalid_tokens", object_id=object_id, tokens=tokens)
            return None

        return PaymentEvent(
            external_event_id=object_id,
            user_id=user_id,
            token_amount=token_amount,
            package_id=metadata.get("packageId"),
            event_type=event_type,
        )
