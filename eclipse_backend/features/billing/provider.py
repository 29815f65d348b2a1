"""
Billing provider protocol.

Defines the interface the entitlement core needs from the payment provider
(Stripe, etc.). This allows swapping providers without changing business logic.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ProviderEvent:
    """A verified provider event. `data` is the event's object payload, left uninterpreted."""
    id: str
    type: str
    created: int  # epoch seconds, provider clock
    data: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation, tagged with the internal user id
    - Reading that tag back for a customer
    - Checkout and portal session creation
    - Webhook signature verification and parsing
    """

    def create_customer(self, user_id: str, idempotency_key: Optional[str] = None) -> str:
        """
        Create a billing customer whose metadata carries `user_id`.

        Returns:
            Provider customer ID (e.g., Stripe customer ID)

        Raises:
            ProviderError: If customer creation fails
        """
        ...

    def get_customer_user_id(self, customer_id: str) -> Optional[str]:
        """
        Return the user id tagged on a customer, or None if there is no tag
        (or the customer no longer exists).

        Raises:
            ProviderError: If the provider could not be reached
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        user_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """
        Create a subscription checkout session.

        Returns:
            Checkout session URL

        Raises:
            ProviderError: If session creation fails
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL

        Raises:
            ProviderError: If portal session creation fails
        """
        ...

    def construct_event(self, body: bytes, signature: Optional[str]) -> ProviderEvent:
        """
        Verify the webhook signature, then parse the payload.

        Raises:
            SignatureInvalidError: If the signature or payload is invalid
        """
        ...
