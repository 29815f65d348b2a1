"""
Billing service orchestrator.

Coordinates:
- Customer provisioning and checkout/portal sessions
- Webhook processing (verify -> normalize -> reconcile)
- The entitlement read path

All Stripe-specific code is in stripe_provider.py.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from eclipse_backend.core.config import settings
from eclipse_backend.core.errors import (
    BillingDisabledError,
    MissingIdentifierError,
    NotFoundError,
    UnknownCustomerError,
)
from eclipse_backend.core.locks import KeyedLocks
from eclipse_backend.core.logging import log_event
from eclipse_backend.core.metrics import billing_webhooks_total
from eclipse_backend.features.billing.identity import IdentityResolver
from eclipse_backend.features.billing.normalizer import normalize
from eclipse_backend.features.billing.provider import BillingProvider
from eclipse_backend.features.billing.reconciler import ReconciliationEngine
from eclipse_backend.features.billing.stripe_provider import StripeProvider
from eclipse_backend.features.entitlements.models import utc_now
from eclipse_backend.features.entitlements.store import get_store

logger = logging.getLogger("eclipse")

# Shared by provisioning and reconciliation so both serialize on the same user
_user_locks = KeyedLocks()

IGNORED = "ignored"
UNKNOWN_CUSTOMER = "unknown_customer"


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    status: str  # applied | duplicate | rejected | ignored | unknown_customer
    user_id: Optional[str] = None
    reason: Optional[str] = None


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    return StripeProvider()


def _require_provider() -> BillingProvider:
    provider = get_provider()
    if provider is None:
        raise BillingDisabledError("Billing disabled: STRIPE_SECRET_KEY is not set")
    return provider


def _resolver(provider: Optional[BillingProvider]) -> IdentityResolver:
    return IdentityResolver(get_store(), provider, _user_locks)


def _require_user(user_id: Optional[str]) -> str:
    if not user_id or not user_id.strip():
        raise MissingIdentifierError("user_id is required")
    return user_id.strip()


def start_checkout(user_id: Optional[str]) -> str:
    """
    Start a subscription checkout for the user.

    Provisions the billing customer on first use. Nothing about entitlement
    changes here; premium is granted only once the provider's event arrives.

    Returns:
        Checkout URL

    Raises:
        MissingIdentifierError: blank user id
        BillingDisabledError: Stripe or the price is not configured
        ProviderError: Stripe call failed
    """
    user_id = _require_user(user_id)
    provider = _require_provider()
    if not settings.STRIPE_PRICE_ID:
        raise BillingDisabledError("Billing disabled: STRIPE_PRICE_ID is not set")

    customer_id = _resolver(provider).resolve_or_create_customer(user_id)
    url = provider.create_checkout_session(
        customer_id=customer_id,
        user_id=user_id,
        price_id=settings.STRIPE_PRICE_ID,
        success_url=settings.CHECKOUT_SUCCESS_URL,
        cancel_url=settings.CHECKOUT_CANCEL_URL,
    )
    log_event("info", "billing.checkout.created", user_id=user_id)
    return url


def start_portal(user_id: Optional[str]) -> str:
    """
    Start a billing portal session for customer self-service.

    Raises:
        NotFoundError: the user has no billing customer on record
    """
    user_id = _require_user(user_id)
    provider = _require_provider()

    record = get_store().get(user_id)
    if record is None or not record.billing_customer_id:
        raise NotFoundError("No subscription found.")

    return provider.create_portal_session(
        customer_id=record.billing_customer_id,
        return_url=settings.PORTAL_RETURN_URL,
    )


def process_webhook_event(body: bytes, signature: Optional[str]) -> WebhookOutcome:
    """
    Verify, normalize and reconcile one webhook delivery.

    Ignored events and unknown customers are acknowledged; the provider
    would otherwise redeliver something that can never apply.

    Raises:
        BillingDisabledError: Stripe not configured
        SignatureInvalidError: bad signature or payload (nothing changed)
        ProviderError: customer lookup at Stripe failed (redelivery retries)
        StoreWriteError: change could not be persisted (redelivery retries)
    """
    provider = _require_provider()
    event = provider.construct_event(body, signature)

    intent = normalize(event)
    if intent is None:
        billing_webhooks_total.inc(labels={"event_type": event.type, "outcome": IGNORED})
        log_event(
            "info",
            "billing.webhook.ignored",
            event_id=event.id,
            event_type=event.type,
        )
        return WebhookOutcome(event.id, event.type, IGNORED)

    resolver = _resolver(provider)
    engine = ReconciliationEngine(resolver.store, resolver, _user_locks)
    try:
        result = engine.apply(intent)
    except UnknownCustomerError as e:
        billing_webhooks_total.inc(labels={"event_type": event.type, "outcome": UNKNOWN_CUSTOMER})
        logger.warning(
            "billing.webhook.unknown_customer",
            extra={
                "event_id": event.id,
                "event_type": event.type,
                "error_code": e.code,
                "customer_id": e.customer_id,
            },
        )
        return WebhookOutcome(event.id, event.type, UNKNOWN_CUSTOMER)
    except Exception as e:
        billing_webhooks_total.inc(labels={"event_type": event.type, "outcome": "error"})
        logger.error(
            "billing.webhook.failed",
            extra={
                "event_id": event.id,
                "event_type": event.type,
                "error_code": getattr(e, "code", "internal_error"),
            },
        )
        raise

    billing_webhooks_total.inc(
        labels={"event_type": event.type, "outcome": result.outcome.value}
    )
    return WebhookOutcome(
        event_id=event.id,
        event_type=event.type,
        status=result.outcome.value,
        user_id=result.user_id,
        reason=result.reason,
    )


def is_premium(user_id: Optional[str] = None) -> bool:
    """
    Current entitlement for a user. Never raises.

    Falls back to SINGLE_TENANT_USER_ID when no user is given; anything that
    goes wrong reads as not premium.
    """
    user_id = (user_id or "").strip() or settings.SINGLE_TENANT_USER_ID
    if not user_id:
        return False
    try:
        record = get_store().get(user_id)
    except Exception as e:
        logger.warning(
            "entitlement.read_failed",
            extra={"user_id": user_id, "error_code": type(e).__name__},
        )
        return False
    return bool(record and record.is_premium)


def prune_processed_events(
    now: Optional[datetime] = None,
    retention_days: Optional[int] = None,
) -> int:
    """Drop processed event ids older than the retention window."""
    days = retention_days if retention_days is not None else settings.PROCESSED_EVENT_RETENTION_DAYS
    cutoff = (now or utc_now()) - timedelta(days=days)
    removed = get_store().prune_events(cutoff)
    log_event(
        "info",
        "billing.events.pruned",
        extra={"removed": removed, "cutoff": cutoff.isoformat()},
    )
    return removed
