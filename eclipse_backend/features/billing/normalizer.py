"""
Provider event normalization.

Turns a verified Stripe event into one of three intents, or None when the
event has no bearing on entitlement (acknowledged without side effects).

| event type                                   | intent     |
|----------------------------------------------|------------|
| checkout.session.completed                   | ACTIVATE   |
| invoice.paid                                 | RENEW      |
| customer.subscription.deleted                | DEACTIVATE |
| customer.subscription.updated (ended status) | DEACTIVATE |
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from eclipse_backend.features.billing.provider import ProviderEvent

logger = logging.getLogger("eclipse")

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.paid"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"

# Subscription statuses after which access ends
ENDED_SUBSCRIPTION_STATUSES = frozenset({"canceled", "unpaid", "incomplete_expired"})


class IntentKind(str, Enum):
    ACTIVATE = "activate"
    RENEW = "renew"
    DEACTIVATE = "deactivate"


@dataclass(frozen=True)
class Intent:
    kind: IntentKind
    event_id: str
    event_type: str
    customer_id: str
    occurred_at: int  # event creation time, epoch seconds
    subscription_id: Optional[str] = None  # grants only; deactivation is per customer
    paid_at: Optional[datetime] = None

    @property
    def grants_premium(self) -> bool:
        return self.kind in (IntentKind.ACTIVATE, IntentKind.RENEW)


def _ref_id(value: Any) -> Optional[str]:
    """Stripe references are ids, or whole objects when expanded."""
    if isinstance(value, Mapping):
        value = value.get("id")
    return str(value) if value else None


def _epoch(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc)


def _invoice_subscription(invoice: Mapping[str, Any]) -> Optional[str]:
    # Newer API versions move the subscription under parent.subscription_details
    sub = _ref_id(invoice.get("subscription"))
    if sub:
        return sub
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _ref_id(details.get("subscription"))


def normalize(event: ProviderEvent) -> Optional[Intent]:
    """Map a provider event to an Intent; None means ignore."""
    obj = event.data or {}
    customer_id = _ref_id(obj.get("customer"))

    if event.type == CHECKOUT_COMPLETED:
        if obj.get("mode") not in (None, "subscription"):
            return None
        if obj.get("payment_status") == "unpaid":
            # Delayed payment methods; invoice.paid activates later
            return None
        subscription_id = _ref_id(obj.get("subscription"))
        if not customer_id or not subscription_id:
            logger.warning(
                "billing.normalize.incomplete",
                extra={"event_id": event.id, "event_type": event.type},
            )
            return None
        return Intent(
            kind=IntentKind.ACTIVATE,
            event_id=event.id,
            event_type=event.type,
            customer_id=customer_id,
            occurred_at=event.created,
            subscription_id=subscription_id,
            paid_at=_epoch(event.created),
        )

    if event.type == INVOICE_PAID:
        subscription_id = _invoice_subscription(obj)
        if not customer_id or not subscription_id:
            # One-off invoices carry no subscription and grant nothing
            return None
        transitions = obj.get("status_transitions") or {}
        return Intent(
            kind=IntentKind.RENEW,
            event_id=event.id,
            event_type=event.type,
            customer_id=customer_id,
            occurred_at=event.created,
            subscription_id=subscription_id,
            paid_at=_epoch(transitions.get("paid_at")) or _epoch(event.created),
        )

    if event.type == SUBSCRIPTION_DELETED or (
        event.type == SUBSCRIPTION_UPDATED
        and obj.get("status") in ENDED_SUBSCRIPTION_STATUSES
    ):
        if not customer_id:
            return None
        return Intent(
            kind=IntentKind.DEACTIVATE,
            event_id=event.id,
            event_type=event.type,
            customer_id=customer_id,
            occurred_at=event.created,
        )

    return None
