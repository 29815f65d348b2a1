"""Entitlement read path: GET /api/entitlement."""
from typing import Optional

from fastapi import APIRouter, Header, Query
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from eclipse_backend.features.billing.service import is_premium


router = APIRouter(tags=["entitlement"])


class EntitlementResponse(BaseModel):
    isPremium: bool


@router.get("/entitlement", response_model=EntitlementResponse)
async def get_entitlement(
    user_id: Optional[str] = Query(None),
    x_user_id: Optional[str] = Header(None),
):
    """
    Whether the caller currently holds premium.

    Always 200; a missing record or an unreachable store answers false.
    """
    premium = await run_in_threadpool(is_premium, user_id or x_user_id)
    return {"isPremium": premium}
