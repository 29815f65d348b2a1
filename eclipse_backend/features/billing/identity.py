"""
Identity resolution between internal users and billing customers.

The provider's events only name a customer; the user id travels as a
metadata tag on that customer, set when the customer is created here.
"""
from __future__ import annotations

import logging
from typing import Optional

from eclipse_backend.core.errors import (
    BillingDisabledError,
    MissingIdentifierError,
    UnknownCustomerError,
)
from eclipse_backend.core.locks import KeyedLocks
from eclipse_backend.core.logging import log_event
from eclipse_backend.core.metrics import billing_customers_created_total
from eclipse_backend.features.billing.provider import BillingProvider
from eclipse_backend.features.entitlements.store import EntitlementStore

logger = logging.getLogger("eclipse")


def customer_idempotency_key(user_id: str) -> str:
    return f"eclipse-customer-{user_id}"


class IdentityResolver:
    def __init__(
        self,
        store: EntitlementStore,
        provider: Optional[BillingProvider],
        locks: Optional[KeyedLocks] = None,
    ):
        self.store = store
        self.provider = provider
        self._locks = locks or KeyedLocks()

    def resolve_or_create_customer(self, user_id: str) -> str:
        """
        Return the user's billing customer id, provisioning one if needed.

        Concurrent calls for one user in this process are serialized; across
        processes the provider idempotency key and the store's write-once
        assignment make every caller observe the same customer id.
        """
        if not user_id or not user_id.strip():
            raise MissingIdentifierError("user_id is required")

        record = self.store.get(user_id)
        if record and record.billing_customer_id:
            return record.billing_customer_id

        with self._locks.hold(user_id):
            record = self.store.ensure(user_id)
            if record.billing_customer_id:
                return record.billing_customer_id

            if self.provider is None:
                raise BillingDisabledError("Billing disabled")

            created = self.provider.create_customer(
                user_id, idempotency_key=customer_idempotency_key(user_id)
            )
            billing_customers_created_total.inc()
            stored = self.store.assign_customer(user_id, created)
            if stored != created:
                logger.warning(
                    "billing.customer.assign_lost",
                    extra={"user_id": user_id, "outcome": "kept_existing"},
                )
            else:
                log_event("info", "billing.customer.created", user_id=user_id)
            return stored

    def customer_to_user(self, customer_id: Optional[str]) -> str:
        """
        Inverse lookup: billing customer id -> user id.

        Tries the store first, then the customer's metadata tag at the
        provider; a tag found that way is written back to the record.

        Raises:
            UnknownCustomerError: neither source knows the customer
            ProviderError: the provider could not be asked
        """
        if not customer_id:
            raise UnknownCustomerError(customer_id)

        record = self.store.find_by_customer(customer_id)
        if record:
            return record.user_id

        user_id = None
        if self.provider is not None:
            user_id = self.provider.get_customer_user_id(customer_id)
        if not user_id:
            raise UnknownCustomerError(customer_id)

        with self._locks.hold(user_id):
            stored = self.store.assign_customer(user_id, customer_id)
        if stored != customer_id:
            # The user already has another customer; the tag still attributes this one
            logger.info(
                "billing.customer.secondary",
                extra={"user_id": user_id, "outcome": "tag_only"},
            )
        return user_id
