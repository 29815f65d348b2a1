"""
Entitlement record: the single premium flag per user plus the billing ids
and the ordering marker used to reconcile provider events.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Fields a reconciliation write may touch. billing_customer_id is not one of them.
MERGEABLE_FIELDS = frozenset({
    "is_premium",
    "billing_subscription_id",
    "last_paid_at",
    "event_version",
})


@dataclass(frozen=True)
class EntitlementRecord:
    user_id: str
    billing_customer_id: Optional[str] = None
    billing_subscription_id: Optional[str] = None
    is_premium: bool = False
    last_paid_at: Optional[datetime] = None
    event_version: int = 0
    created_at: Optional[datetime] = field(default=None, compare=False)
    updated_at: Optional[datetime] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("last_paid_at", "created_at", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntitlementRecord":
        def _dt(value):
            if value is None or isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value)

        return cls(
            user_id=data["user_id"],
            billing_customer_id=data.get("billing_customer_id"),
            billing_subscription_id=data.get("billing_subscription_id"),
            is_premium=bool(data.get("is_premium", False)),
            last_paid_at=_dt(data.get("last_paid_at")),
            event_version=int(data.get("event_version") or 0),
            created_at=_dt(data.get("created_at")),
            updated_at=_dt(data.get("updated_at")),
        )


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)
