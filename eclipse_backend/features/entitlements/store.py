"""
Entitlement store backends.

One durable record per user plus the set of processed provider event ids.
Both backends expose the same operations; the reconciliation logic never
knows which one it talks to.

- SqlEntitlementStore: SQLAlchemy Core over PostgreSQL (or SQLite). Partial
  merges are guarded by event_version (compare-and-set) and recorded in the
  same transaction as the processed event id.
- FileEntitlementStore: a single JSON document rewritten atomically under a
  process-wide lock. Single-process deployments only.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

from sqlalchemy import select, insert, update, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from eclipse_backend.core.config import settings
from eclipse_backend.core.database import (
    get_db_session,
    user_entitlements,
    processed_billing_events,
)
from eclipse_backend.core.errors import DuplicateEventError, StoreWriteError
from eclipse_backend.features.entitlements.models import (
    EntitlementRecord,
    MERGEABLE_FIELDS,
    utc_now,
)

logger = logging.getLogger("eclipse")


class EntitlementStore(Protocol):
    """Durable keyed entitlement state."""

    def get(self, user_id: str) -> Optional[EntitlementRecord]:
        ...

    def ensure(self, user_id: str) -> EntitlementRecord:
        """Return the user's record, creating it (not premium) if missing."""
        ...

    def find_by_customer(self, customer_id: str) -> Optional[EntitlementRecord]:
        ...

    def assign_customer(self, user_id: str, customer_id: str) -> str:
        """
        Write-once assignment of the billing customer id.

        Returns the customer id stored after the call: the given one if the
        slot was empty, otherwise the value that was already there.
        """
        ...

    def has_event(self, event_id: str) -> bool:
        ...

    def commit_event(
        self,
        user_id: str,
        event_id: str,
        event_type: str,
        expected_version: int,
        changes: Mapping[str, Any],
        outcome: str,
    ) -> bool:
        """
        Record event_id and apply `changes` as one atomic unit.

        Returns False, writing nothing, when the record's event_version is no
        longer `expected_version`.

        Raises:
            DuplicateEventError: event_id was already recorded
            StoreWriteError: the write could not be persisted
        """
        ...

    def prune_events(self, older_than: datetime) -> int:
        ...

    def ping(self) -> bool:
        ...


def _check_changes(changes: Mapping[str, Any]) -> None:
    unknown = set(changes) - MERGEABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not mergeable by events: {sorted(unknown)}")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlEntitlementStore:
    """SQLAlchemy-backed store (PostgreSQL in production, SQLite in dev/tests)."""

    def _row_to_record(self, row) -> EntitlementRecord:
        return EntitlementRecord(
            user_id=row.user_id,
            billing_customer_id=row.billing_customer_id,
            billing_subscription_id=row.billing_subscription_id,
            is_premium=bool(row.is_premium),
            last_paid_at=_as_utc(row.last_paid_at),
            event_version=int(row.event_version or 0),
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    def get(self, user_id: str) -> Optional[EntitlementRecord]:
        with get_db_session() as session:
            row = session.execute(
                select(user_entitlements).where(user_entitlements.c.user_id == user_id)
            ).fetchone()
            return self._row_to_record(row) if row else None

    def ensure(self, user_id: str) -> EntitlementRecord:
        record = self.get(user_id)
        if record:
            return record

        try:
            with get_db_session() as session:
                session.execute(
                    insert(user_entitlements).values(
                        user_id=user_id,
                        is_premium=False,
                        event_version=0,
                    )
                )
        except IntegrityError:
            # Race condition: another request created the record first
            pass
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Failed to create entitlement record: {e}") from e

        record = self.get(user_id)
        if record is None:
            raise StoreWriteError(f"Entitlement record for {user_id} missing after create")
        return record

    def find_by_customer(self, customer_id: str) -> Optional[EntitlementRecord]:
        with get_db_session() as session:
            row = session.execute(
                select(user_entitlements).where(
                    user_entitlements.c.billing_customer_id == customer_id
                )
            ).fetchone()
            return self._row_to_record(row) if row else None

    def assign_customer(self, user_id: str, customer_id: str) -> str:
        self.ensure(user_id)
        try:
            with get_db_session() as session:
                session.execute(
                    update(user_entitlements)
                    .where(user_entitlements.c.user_id == user_id)
                    .where(user_entitlements.c.billing_customer_id.is_(None))
                    .values(billing_customer_id=customer_id, updated_at=utc_now())
                )
        except IntegrityError as e:
            raise StoreWriteError(
                f"Billing customer {customer_id} is already assigned to another user"
            ) from e
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Failed to assign billing customer: {e}") from e

        record = self.get(user_id)
        return record.billing_customer_id

    def has_event(self, event_id: str) -> bool:
        with get_db_session() as session:
            row = session.execute(
                select(processed_billing_events.c.event_id).where(
                    processed_billing_events.c.event_id == event_id
                )
            ).first()
            return row is not None

    def commit_event(
        self,
        user_id: str,
        event_id: str,
        event_type: str,
        expected_version: int,
        changes: Mapping[str, Any],
        outcome: str,
    ) -> bool:
        _check_changes(changes)
        try:
            with get_db_session() as session:
                session.execute(
                    insert(processed_billing_events).values(
                        event_id=event_id,
                        event_type=event_type,
                        user_id=user_id,
                        outcome=outcome,
                        processed_at=utc_now(),
                    )
                )
                if changes:
                    result = session.execute(
                        update(user_entitlements)
                        .where(user_entitlements.c.user_id == user_id)
                        .where(user_entitlements.c.event_version == expected_version)
                        .values(updated_at=utc_now(), **changes)
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        return False
        except IntegrityError as e:
            raise DuplicateEventError(event_id) from e
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Failed to apply event {event_id}: {e}") from e
        return True

    def prune_events(self, older_than: datetime) -> int:
        try:
            with get_db_session() as session:
                result = session.execute(
                    delete(processed_billing_events).where(
                        processed_billing_events.c.processed_at < older_than
                    )
                )
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Failed to prune processed events: {e}") from e

    def ping(self) -> bool:
        from eclipse_backend.core.database import check_connection
        return check_connection()


# Marks a document loaded from an ownerless legacy file
_UNOWNED_LEGACY = "_unowned_legacy"


class FileEntitlementStore:
    """
    JSON-file store: {"users": {user_id: record}, "events": {event_id: info}}.

    Every operation reads the file, and every mutation rewrites it through a
    temp file and os.replace, all under one lock, so no request ever works
    from a stale in-memory copy.
    """

    def __init__(self, path, legacy_user_id: Optional[str] = None):
        self.path = Path(path)
        self.legacy_user_id = legacy_user_id
        self._lock = threading.RLock()

    def _empty(self) -> Dict[str, Dict[str, Any]]:
        return {"users": {}, "events": {}}

    def _from_legacy(self, data: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        """
        Convert the old single-record premium.json layout.

        Without an owner the record cannot be attributed: it reads as empty
        and the file is never rewritten, so the paid subscription survives
        until SINGLE_TENANT_USER_ID is set.
        """
        doc = self._empty()
        if not self.legacy_user_id:
            logger.warning("Ignoring legacy entitlement file: SINGLE_TENANT_USER_ID not set")
            doc[_UNOWNED_LEGACY] = True
            return doc
        last_paid = data.get("lastPaid")
        record = EntitlementRecord(
            user_id=self.legacy_user_id,
            billing_customer_id=data.get("customerId"),
            billing_subscription_id=data.get("subscriptionId"),
            is_premium=data.get("isPremium") is True,
            last_paid_at=(
                datetime.fromtimestamp(last_paid / 1000, timezone.utc) if last_paid else None
            ),
        )
        doc["users"][record.user_id] = record.to_dict()
        return doc

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return self._empty()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as e:
            raise StoreWriteError(f"Entitlement file unreadable: {e}") from e
        if "users" not in data and "isPremium" in data:
            return self._from_legacy(data)
        data.setdefault("users", {})
        data.setdefault("events", {})
        return data

    def _save(self, doc: Dict[str, Dict[str, Any]]) -> None:
        if doc.get(_UNOWNED_LEGACY):
            raise StoreWriteError(
                f"{self.path} holds a legacy single-user record; "
                "set SINGLE_TENANT_USER_ID before writing to it"
            )
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            if self.path.parent and not self.path.parent.exists():
                self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(doc, indent=2, default=str), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreWriteError(f"Failed to write entitlement file: {e}") from e

    def _record(self, doc, user_id: str) -> Optional[EntitlementRecord]:
        raw = doc["users"].get(user_id)
        return EntitlementRecord.from_dict(raw) if raw else None

    def get(self, user_id: str) -> Optional[EntitlementRecord]:
        with self._lock:
            return self._record(self._load(), user_id)

    def ensure(self, user_id: str) -> EntitlementRecord:
        with self._lock:
            doc = self._load()
            record = self._record(doc, user_id)
            if record:
                return record
            now = utc_now()
            record = EntitlementRecord(user_id=user_id, created_at=now, updated_at=now)
            doc["users"][user_id] = record.to_dict()
            self._save(doc)
            return record

    def find_by_customer(self, customer_id: str) -> Optional[EntitlementRecord]:
        with self._lock:
            for raw in self._load()["users"].values():
                if raw.get("billing_customer_id") == customer_id:
                    return EntitlementRecord.from_dict(raw)
            return None

    def assign_customer(self, user_id: str, customer_id: str) -> str:
        with self._lock:
            self.ensure(user_id)
            doc = self._load()
            raw = doc["users"][user_id]
            if raw.get("billing_customer_id"):
                return raw["billing_customer_id"]
            for other_id, other in doc["users"].items():
                if other_id != user_id and other.get("billing_customer_id") == customer_id:
                    raise StoreWriteError(
                        f"Billing customer {customer_id} is already assigned to another user"
                    )
            raw["billing_customer_id"] = customer_id
            raw["updated_at"] = utc_now().isoformat()
            self._save(doc)
            return customer_id

    def has_event(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._load()["events"]

    def commit_event(
        self,
        user_id: str,
        event_id: str,
        event_type: str,
        expected_version: int,
        changes: Mapping[str, Any],
        outcome: str,
    ) -> bool:
        _check_changes(changes)
        with self._lock:
            doc = self._load()
            if event_id in doc["events"]:
                raise DuplicateEventError(event_id)
            if changes:
                current = self._record(doc, user_id)
                if current is None or current.event_version != expected_version:
                    return False
                raw = dict(doc["users"][user_id])
                for key, value in changes.items():
                    raw[key] = value.isoformat() if isinstance(value, datetime) else value
                raw["updated_at"] = utc_now().isoformat()
                doc["users"][user_id] = raw
            doc["events"][event_id] = {
                "event_type": event_type,
                "user_id": user_id,
                "outcome": outcome,
                "processed_at": utc_now().isoformat(),
            }
            self._save(doc)
            return True

    def prune_events(self, older_than: datetime) -> int:
        with self._lock:
            doc = self._load()
            stale = [
                event_id
                for event_id, info in doc["events"].items()
                if datetime.fromisoformat(info["processed_at"]) < older_than
            ]
            for event_id in stale:
                del doc["events"][event_id]
            if stale:
                self._save(doc)
            return len(stale)

    def ping(self) -> bool:
        try:
            with self._lock:
                self._load()
            return True
        except StoreWriteError:
            return False


_store: Optional[EntitlementStore] = None
_store_lock = threading.Lock()


def build_store(backend: Optional[str] = None) -> EntitlementStore:
    """Construct the store selected by STORE_BACKEND."""
    name = (backend or settings.STORE_BACKEND or "sql").lower()
    if name == "file":
        return FileEntitlementStore(
            settings.ENTITLEMENT_FILE,
            legacy_user_id=settings.SINGLE_TENANT_USER_ID,
        )
    if name == "sql":
        return SqlEntitlementStore()
    raise ValueError(f"Unknown STORE_BACKEND: {name}")


def get_store() -> EntitlementStore:
    """Process-wide store instance."""
    global _store
    with _store_lock:
        if _store is None:
            _store = build_store()
        return _store


def set_store(store: Optional[EntitlementStore]) -> None:
    """Replace (or with None, forget) the process-wide store."""
    global _store
    with _store_lock:
        _store = store
