"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles webhook signature verification and event parsing.
"""
import json
from typing import Dict, Any, Optional
import stripe

from eclipse_backend.core.config import settings
from eclipse_backend.core.errors import ProviderError, SignatureInvalidError
from eclipse_backend.features.billing.provider import ProviderEvent


USER_ID_METADATA_KEY = "user_id"

# Stripe's own default for construct_event
SIGNATURE_TOLERANCE_SECONDS = 300


def verify_and_parse(
    body: bytes,
    signature: Optional[str],
    secret: Optional[str],
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
) -> ProviderEvent:
    """
    Verify a Stripe-Signature header against the raw body, then parse it.

    Nothing in the body is looked at before the signature checks out.
    """
    if not secret:
        raise SignatureInvalidError("Webhook secret not configured")
    if not signature:
        raise SignatureInvalidError("Missing stripe-signature header")

    try:
        payload = body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SignatureInvalidError(f"Invalid payload: {e}")

    try:
        stripe.WebhookSignature.verify_header(payload, signature, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise SignatureInvalidError(f"Invalid signature: {e}")

    try:
        event = json.loads(payload)
        return ProviderEvent(
            id=str(event["id"]),
            type=str(event["type"]),
            created=int(event.get("created") or 0),
            data=dict(event.get("data", {}).get("object") or {}),
        )
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise SignatureInvalidError(f"Invalid payload: {e}")


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET setting)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise ProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def create_customer(self, user_id: str, idempotency_key: Optional[str] = None) -> str:
        """Create a Stripe customer tagged with the user id."""
        params: Dict[str, Any] = {"metadata": {USER_ID_METADATA_KEY: user_id}}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            customer = stripe.Customer.create(**params)
            return customer.id
        except stripe.StripeError as e:
            raise ProviderError(f"Stripe customer creation failed: {e}")

    def get_customer_user_id(self, customer_id: str) -> Optional[str]:
        """Read the user id tag back from a Stripe customer."""
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.InvalidRequestError:
            # Unknown or foreign customer id
            return None
        except stripe.StripeError as e:
            raise ProviderError(f"Stripe customer lookup failed: {e}")

        if customer.get("deleted"):
            return None
        metadata = customer.get("metadata") or {}
        return metadata.get(USER_ID_METADATA_KEY) or None

    def create_checkout_session(
        self,
        customer_id: str,
        user_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """Create Stripe checkout session."""
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                client_reference_id=user_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={USER_ID_METADATA_KEY: user_id},
                subscription_data={"metadata": {USER_ID_METADATA_KEY: user_id}},
            )
            return session.url
        except stripe.StripeError as e:
            raise ProviderError(f"Stripe checkout session creation failed: {e}")

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise ProviderError(f"Stripe portal session creation failed: {e}")

    def construct_event(self, body: bytes, signature: Optional[str]) -> ProviderEvent:
        """Verify Stripe webhook signature and parse event."""
        return verify_and_parse(body, signature, self.webhook_secret)
