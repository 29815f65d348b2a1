"""
Entitlement reconciliation engine.

Applies normalized intents to the entitlement store so that duplicated,
reordered and concurrent webhook deliveries converge on one record per user.

Per intent:
1. Resolve the customer to a user (UnknownCustomerError if impossible).
2. Idempotency: an event id seen before is a DUPLICATE, nothing changes.
3. Ordering: an intent older than the record's event_version is REJECTED
   as stale. Ties apply, so the later arrival wins within one second.
4. Merge only the fields the intent defines and move event_version to the
   intent's timestamp.

Steps 2-4 run as one unit: the store records the event id and applies the
merge in a single write guarded by the event_version read in step 3. A lost
guard means another writer got in between; the record is re-read and the
intent re-evaluated. The event id is only recorded together with the
outcome, so a crash before the commit leaves nothing behind and the
provider's redelivery applies the event normally.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from eclipse_backend.core.errors import DuplicateEventError, StoreWriteError
from eclipse_backend.core.locks import KeyedLocks
from eclipse_backend.core.logging import log_event
from eclipse_backend.features.billing.identity import IdentityResolver
from eclipse_backend.features.billing.normalizer import Intent
from eclipse_backend.features.entitlements.models import EntitlementRecord
from eclipse_backend.features.entitlements.store import EntitlementStore

logger = logging.getLogger("eclipse")

MAX_APPLY_ATTEMPTS = 5

STALE = "stale"


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ApplyResult:
    outcome: ApplyOutcome
    user_id: str
    reason: Optional[str] = None


def merge_changes(intent: Intent) -> Dict[str, Any]:
    """The partial update an intent makes. billing_customer_id is never touched."""
    if intent.grants_premium:
        return {
            "is_premium": True,
            "billing_subscription_id": intent.subscription_id,
            "last_paid_at": intent.paid_at,
            "event_version": intent.occurred_at,
        }
    return {
        "is_premium": False,
        "billing_subscription_id": None,
        "event_version": intent.occurred_at,
    }


def is_stale(intent: Intent, record: EntitlementRecord) -> bool:
    return intent.occurred_at < record.event_version


class ReconciliationEngine:
    def __init__(
        self,
        store: EntitlementStore,
        resolver: IdentityResolver,
        locks: Optional[KeyedLocks] = None,
    ):
        self.store = store
        self.resolver = resolver
        self._locks = locks or KeyedLocks()

    def apply(self, intent: Intent) -> ApplyResult:
        user_id = self.resolver.customer_to_user(intent.customer_id)

        with self._locks.hold(user_id):
            for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
                result = self._attempt(intent, user_id)
                if result is not None:
                    self._log(intent, result)
                    return result
                logger.info(
                    "billing.reconcile.version_conflict",
                    extra={"event_id": intent.event_id, "user_id": user_id, "outcome": f"retry_{attempt}"},
                )

        raise StoreWriteError(
            f"Could not apply event {intent.event_id} after {MAX_APPLY_ATTEMPTS} attempts"
        )

    def _attempt(self, intent: Intent, user_id: str) -> Optional[ApplyResult]:
        if self.store.has_event(intent.event_id):
            return ApplyResult(ApplyOutcome.DUPLICATE, user_id)

        record = self.store.ensure(user_id)
        if is_stale(intent, record):
            changes: Dict[str, Any] = {}
            result = ApplyResult(ApplyOutcome.REJECTED, user_id, reason=STALE)
        else:
            changes = merge_changes(intent)
            result = ApplyResult(ApplyOutcome.APPLIED, user_id)

        try:
            committed = self.store.commit_event(
                user_id=user_id,
                event_id=intent.event_id,
                event_type=intent.event_type,
                expected_version=record.event_version,
                changes=changes,
                outcome=result.outcome.value,
            )
        except DuplicateEventError:
            return ApplyResult(ApplyOutcome.DUPLICATE, user_id)

        return result if committed else None

    def _log(self, intent: Intent, result: ApplyResult) -> None:
        log_event(
            "info",
            "billing.reconcile",
            user_id=result.user_id,
            event_id=intent.event_id,
            event_type=intent.event_type,
            extra={
                "intent": intent.kind.value,
                "outcome": result.outcome.value,
                "reason": result.reason,
                "occurred_at": intent.occurred_at,
            },
        )
