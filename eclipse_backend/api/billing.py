"""
Billing API routes.

Minimal surface:
- POST /api/billing/checkout: Create checkout session
- POST /api/billing/portal: Create portal session
- POST /api/billing/webhook: Handle Stripe webhooks

The desktop client and existing Stripe dashboards still call the old
root paths (/create-checkout-session, /manage-subscription, /webhook);
`legacy_router` serves those through the same service calls. Legacy callers
that send no user id act for SINGLE_TENANT_USER_ID.
"""
from typing import Optional

from fastapi import APIRouter, Header, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from eclipse_backend.core.config import settings
from eclipse_backend.features.billing.service import (
    process_webhook_event,
    start_checkout,
    start_portal,
)


router = APIRouter(prefix="/billing", tags=["billing"])
legacy_router = APIRouter(tags=["billing-legacy"])


class UserRequest(BaseModel):
    """Caller identification; the X-User-Id header works too."""
    user_id: Optional[str] = None


class UrlResponse(BaseModel):
    """Response with a redirect URL."""
    url: str


class WebhookResponse(BaseModel):
    received: bool
    status: str
    event_id: str


def _caller(request: Optional[UserRequest], header_user_id: Optional[str]) -> Optional[str]:
    if request is not None and request.user_id:
        return request.user_id
    return header_user_id


@router.post("/checkout", response_model=UrlResponse)
async def create_checkout(
    request: Optional[UserRequest] = None,
    x_user_id: Optional[str] = Header(None),
):
    """
    Create Stripe checkout session for the premium subscription.

    Returns:
        {"url": "https://checkout.stripe.com/..."}

    Errors:
        400: No user id
        503: Billing disabled (STRIPE_SECRET_KEY or STRIPE_PRICE_ID not set)
        502: Stripe API error
    """
    url = await run_in_threadpool(start_checkout, _caller(request, x_user_id))
    return {"url": url}


@router.post("/portal", response_model=UrlResponse)
async def create_portal(
    request: Optional[UserRequest] = None,
    x_user_id: Optional[str] = Header(None),
):
    """
    Create Stripe billing portal session.

    Errors:
        404: No billing customer on record ("No subscription found.")
        503: Billing disabled
        502: Stripe API error
    """
    url = await run_in_threadpool(start_portal, _caller(request, x_user_id))
    return {"url": url}


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    """
    Handle Stripe webhook events.

    The raw body is verified against Stripe-Signature before anything is
    parsed. Events that can never apply (unhandled types, unknown
    customers) are still acknowledged so Stripe stops redelivering.

    Errors:
        400: Invalid signature or payload
        500: Store failure (Stripe redelivers)
        502: Stripe customer lookup failed (Stripe redelivers)
        503: Billing disabled
    """
    body = await request.body()
    outcome = await run_in_threadpool(process_webhook_event, body, stripe_signature)
    return {"received": True, "status": outcome.status, "event_id": outcome.event_id}


@legacy_router.post("/create-checkout-session", response_model=UrlResponse)
async def legacy_create_checkout(
    request: Optional[UserRequest] = None,
    x_user_id: Optional[str] = Header(None),
):
    user_id = _caller(request, x_user_id) or settings.SINGLE_TENANT_USER_ID
    url = await run_in_threadpool(start_checkout, user_id)
    return {"url": url}


@legacy_router.post("/manage-subscription", response_model=UrlResponse)
async def legacy_create_portal(
    request: Optional[UserRequest] = None,
    x_user_id: Optional[str] = Header(None),
):
    user_id = _caller(request, x_user_id) or settings.SINGLE_TENANT_USER_ID
    url = await run_in_threadpool(start_portal, user_id)
    return {"url": url}


legacy_router.add_api_route(
    "/webhook", handle_webhook, methods=["POST"], response_model=WebhookResponse
)
