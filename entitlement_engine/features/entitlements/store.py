"""
entitlement_engine/features/entitlements/store.py

Entitlement Store: durable per-owner subscription state.

All mutations go through compare_and_swap, a single
`UPDATE ... WHERE owner_id = :owner AND version = :expected` statement.
The webhook ledger insert and the access-code redemption bookkeeping ride in
the same transaction as the swap so a crash can never separate them.

Two implementations share the contract:
- SqlEntitlementStore (SQLAlchemy Core; production)
- InMemoryEntitlementStore (lock-guarded dicts; tests and local runs)
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple
from uuid import uuid4

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError

from entitlement_engine.core.database import (
    access_code_redemptions,
    access_codes,
    entitlements,
    get_session_factory,
    webhook_event_log,
)
from entitlement_engine.core.errors import (
    DuplicateEventError,
    InvalidAccessCodeError,
    NotFoundError,
    ValidationError,
    VersionConflictError,
)
from entitlement_engine.core.timeutil import ensure_utc, normalize_now
from entitlement_engine.models.access_code import AccessCode, normalize_code
from entitlement_engine.models.entitlement import EntitlementRecord, PlanTier, SubscriptionStatus


# Fields a caller may change through compare_and_swap. Identity, version and
# timestamps are owned by the store.
MUTABLE_FIELDS = frozenset(
    name
    for name in EntitlementRecord.model_fields
    if name not in {"id", "owner_id", "version", "created_at", "updated_at"}
)

_DATETIME_FIELDS = frozenset(
    name
    for name, info in EntitlementRecord.model_fields.items()
    if "datetime" in str(info.annotation)
)


@dataclass(frozen=True)
class WebhookLogEntry:
    event_id: str
    event_type: str
    outcome: str
    processed_at: datetime
    owner_id: Optional[str] = None
    occurred_at: Optional[datetime] = None


class EntitlementStore(Protocol):
    def get(self, owner_id: str) -> EntitlementRecord: ...

    def create_default(self, owner_id: str, *, now: Optional[datetime] = None) -> EntitlementRecord: ...

    def get_or_create(self, owner_id: str, *, now: Optional[datetime] = None) -> EntitlementRecord: ...

    def compare_and_swap(
        self,
        owner_id: str,
        expected_version: int,
        changes: Dict[str, Any],
        *,
        now: Optional[datetime] = None,
        webhook_event: Optional[WebhookLogEntry] = None,
    ) -> EntitlementRecord: ...

    def find_owner_by_subscription_ref(self, subscription_ref: str) -> Optional[str]: ...

    def find_owner_by_customer_ref(self, customer_ref: str) -> Optional[str]: ...

    def iter_records(self, status: Optional[SubscriptionStatus] = None) -> Iterator[EntitlementRecord]: ...

    def has_webhook_event(self, event_id: str) -> bool: ...

    def record_webhook_event(self, entry: WebhookLogEntry) -> bool: ...

    def count_webhook_events_before(self, before: datetime) -> int: ...

    def prune_webhook_events(self, before: datetime) -> int: ...

    def create_access_code(self, access_code: AccessCode) -> AccessCode: ...

    def get_access_code(self, code: str) -> Optional[AccessCode]: ...

    def has_redeemed(self, code: str, owner_id: str) -> bool: ...

    def redeem_access_code(
        self,
        code: str,
        owner_id: str,
        expected_version: int,
        changes: Dict[str, Any],
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[EntitlementRecord, AccessCode]: ...


def _check_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unsupported entitlement fields: {', '.join(sorted(unknown))}")
    return dict(changes)


def _to_column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _default_record(owner_id: str, ts: datetime) -> EntitlementRecord:
    return EntitlementRecord(
        id=str(uuid4()),
        owner_id=owner_id,
        status=SubscriptionStatus.NONE,
        plan_tier=PlanTier.NONE,
        version=1,
        created_at=ts,
        updated_at=ts,
    )


def _exhausted_error() -> InvalidAccessCodeError:
    return InvalidAccessCodeError("This access code has reached its maximum uses", reason="exhausted")


def _already_redeemed_error() -> InvalidAccessCodeError:
    return InvalidAccessCodeError("You have already redeemed this access code", reason="already_redeemed")


class SqlEntitlementStore:
    """SQLAlchemy Core implementation. Holds no locks across I/O."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        factory = self._session_factory or get_session_factory()
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _row_to_record(row) -> EntitlementRecord:
        data = dict(row)
        for name in _DATETIME_FIELDS:
            data[name] = ensure_utc(data.get(name))
        data["cancel_at_period_end"] = bool(data.get("cancel_at_period_end"))
        return EntitlementRecord(**data)

    @staticmethod
    def _row_to_code(row) -> AccessCode:
        data = dict(row)
        data["expires_at"] = ensure_utc(data.get("expires_at"))
        data["created_at"] = ensure_utc(data.get("created_at"))
        data["is_active"] = bool(data.get("is_active"))
        return AccessCode(**data)

    def _select_record(self, session, owner_id: str):
        return session.execute(
            select(entitlements).where(entitlements.c.owner_id == owner_id)
        ).mappings().first()

    def get(self, owner_id: str) -> EntitlementRecord:
        with self._session() as session:
            row = self._select_record(session, owner_id)
        if row is None:
            raise NotFoundError(f"No entitlement record for owner {owner_id}")
        return self._row_to_record(row)

    def create_default(self, owner_id: str, *, now: Optional[datetime] = None) -> EntitlementRecord:
        record = _default_record(owner_id, normalize_now(now))
        try:
            with self._session() as session:
                session.execute(
                    insert(entitlements).values(
                        id=record.id,
                        owner_id=owner_id,
                        status=record.status.value,
                        plan_tier=record.plan_tier.value,
                        cancel_at_period_end=False,
                        version=1,
                        created_at=record.created_at,
                        updated_at=record.updated_at,
                    )
                )
        except IntegrityError:
            # Lost a concurrent create; the winner's row is authoritative.
            return self.get(owner_id)
        return record

    def get_or_create(self, owner_id: str, *, now: Optional[datetime] = None) -> EntitlementRecord:
        try:
            return self.get(owner_id)
        except NotFoundError:
            return self.create_default(owner_id, now=now)

    def _swap(self, session, owner_id: str, expected_version: int, changes: Dict[str, Any], ts: datetime):
        values = {key: _to_column_value(value) for key, value in changes.items()}
        values["version"] = entitlements.c.version + 1
        values["updated_at"] = ts
        result = session.execute(
            update(entitlements)
            .where(entitlements.c.owner_id == owner_id)
            .where(entitlements.c.version == expected_version)
            .values(**values)
        )
        if result.rowcount != 1:
            raise VersionConflictError(owner_id, expected_version)

    def compare_and_swap(
        self,
        owner_id: str,
        expected_version: int,
        changes: Dict[str, Any],
        *,
        now: Optional[datetime] = None,
        webhook_event: Optional[WebhookLogEntry] = None,
    ) -> EntitlementRecord:
        checked = _check_changes(changes)
        ts = normalize_now(now)
        with self._session() as session:
            self._swap(session, owner_id, expected_version, checked, ts)
            if webhook_event is not None:
                try:
                    session.execute(insert(webhook_event_log).values(**self._log_values(webhook_event)))
                except IntegrityError:
                    raise DuplicateEventError(webhook_event.event_id) from None
            row = self._select_record(session, owner_id)
        return self._row_to_record(row)

    def find_owner_by_subscription_ref(self, subscription_ref: str) -> Optional[str]:
        with self._session() as session:
            return session.execute(
                select(entitlements.c.owner_id).where(entitlements.c.billing_subscription_ref == subscription_ref)
            ).scalar()

    def find_owner_by_customer_ref(self, customer_ref: str) -> Optional[str]:
        with self._session() as session:
            return session.execute(
                select(entitlements.c.owner_id).where(entitlements.c.billing_customer_ref == customer_ref)
            ).scalar()

    def iter_records(self, status: Optional[SubscriptionStatus] = None) -> Iterator[EntitlementRecord]:
        stmt = select(entitlements).order_by(entitlements.c.owner_id)
        if status is not None:
            stmt = stmt.where(entitlements.c.status == SubscriptionStatus(status).value)
        with self._session() as session:
            rows = session.execute(stmt).mappings().all()
        for row in rows:
            yield self._row_to_record(row)

    @staticmethod
    def _log_values(entry: WebhookLogEntry) -> Dict[str, Any]:
        return {
            "event_id": entry.event_id,
            "event_type": entry.event_type,
            "owner_id": entry.owner_id,
            "outcome": entry.outcome,
            "occurred_at": entry.occurred_at,
            "processed_at": entry.processed_at,
        }

    def has_webhook_event(self, event_id: str) -> bool:
        with self._session() as session:
            row = session.execute(
                select(webhook_event_log.c.id).where(webhook_event_log.c.event_id == event_id)
            ).first()
        return row is not None

    def record_webhook_event(self, entry: WebhookLogEntry) -> bool:
        try:
            with self._session() as session:
                session.execute(insert(webhook_event_log).values(**self._log_values(entry)))
        except IntegrityError:
            return False
        return True

    def count_webhook_events_before(self, before: datetime) -> int:
        with self._session() as session:
            return session.execute(
                select(func.count()).select_from(webhook_event_log).where(webhook_event_log.c.processed_at < before)
            ).scalar() or 0

    def prune_webhook_events(self, before: datetime) -> int:
        with self._session() as session:
            result = session.execute(
                delete(webhook_event_log).where(webhook_event_log.c.processed_at < before)
            )
            return result.rowcount or 0

    def create_access_code(self, access_code: AccessCode) -> AccessCode:
        code = access_code.model_copy(update={"code": normalize_code(access_code.code)})
        try:
            with self._session() as session:
                session.execute(
                    insert(access_codes).values(
                        code=code.code,
                        days_granted=code.days_granted,
                        max_redemptions=code.max_redemptions,
                        redemption_count=code.redemption_count,
                        expires_at=code.expires_at,
                        is_active=code.is_active,
                        description=code.description,
                        created_at=normalize_now(code.created_at),
                    )
                )
        except IntegrityError:
            raise ValidationError(f"Access code {code.code} already exists") from None
        return self.get_access_code(code.code)

    def get_access_code(self, code: str) -> Optional[AccessCode]:
        with self._session() as session:
            row = session.execute(
                select(access_codes).where(access_codes.c.code == normalize_code(code))
            ).mappings().first()
        return self._row_to_code(row) if row else None

    def has_redeemed(self, code: str, owner_id: str) -> bool:
        with self._session() as session:
            row = session.execute(
                select(access_code_redemptions.c.id)
                .where(access_code_redemptions.c.code == normalize_code(code))
                .where(access_code_redemptions.c.owner_id == owner_id)
            ).first()
        return row is not None

    def redeem_access_code(
        self,
        code: str,
        owner_id: str,
        expected_version: int,
        changes: Dict[str, Any],
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[EntitlementRecord, AccessCode]:
        checked = _check_changes(changes)
        normalized = normalize_code(code)
        ts = normalize_now(now)
        with self._session() as session:
            bumped = session.execute(
                update(access_codes)
                .where(access_codes.c.code == normalized)
                .where(access_codes.c.is_active.is_(True))
                .where(
                    or_(
                        access_codes.c.max_redemptions.is_(None),
                        access_codes.c.redemption_count < access_codes.c.max_redemptions,
                    )
                )
                .values(redemption_count=access_codes.c.redemption_count + 1)
            )
            if bumped.rowcount != 1:
                raise _exhausted_error()
            try:
                session.execute(
                    insert(access_code_redemptions).values(code=normalized, owner_id=owner_id, redeemed_at=ts)
                )
            except IntegrityError:
                raise _already_redeemed_error() from None
            self._swap(session, owner_id, expected_version, checked, ts)
            record_row = self._select_record(session, owner_id)
            code_row = session.execute(
                select(access_codes).where(access_codes.c.code == normalized)
            ).mappings().first()
        return self._row_to_record(record_row), self._row_to_code(code_row)


class InMemoryEntitlementStore:
    """
    Process-local store with the same contract.

    A single lock makes each operation atomic; nothing here blocks on I/O.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._records: Dict[str, EntitlementRecord] = {}
        self._events: Dict[str, WebhookLogEntry] = {}
        self._codes: Dict[str, AccessCode] = {}
        self._redemptions: Dict[Tuple[str, str], datetime] = {}

    def get(self, owner_id: str) -> EntitlementRecord:
        with self._lock:
            record = self._records.get(owner_id)
        if record is None:
            raise NotFoundError(f"No entitlement record for owner {owner_id}")
        return record

    def create_default(self, owner_id: str, *, now: Optional[datetime] = None) -> EntitlementRecord:
        with self._lock:
            existing = self._records.get(owner_id)
            if existing is not None:
                return existing
            record = _default_record(owner_id, normalize_now(now))
            self._records[owner_id] = record
            return record

    def get_or_create(self, owner_id: str, *, now: Optional[datetime] = None) -> EntitlementRecord:
        return self.create_default(owner_id, now=now)

    def _swap(self, owner_id: str, expected_version: int, changes: Dict[str, Any], ts: datetime) -> EntitlementRecord:
        current = self._records.get(owner_id)
        if current is None or current.version != expected_version:
            raise VersionConflictError(owner_id, expected_version)
        update_fields = dict(changes)
        update_fields["version"] = current.version + 1
        update_fields["updated_at"] = ts
        # Round-trip through validation so enum strings and datetimes are normalized.
        return EntitlementRecord(**{**current.model_dump(), **update_fields})

    def compare_and_swap(
        self,
        owner_id: str,
        expected_version: int,
        changes: Dict[str, Any],
        *,
        now: Optional[datetime] = None,
        webhook_event: Optional[WebhookLogEntry] = None,
    ) -> EntitlementRecord:
        checked = _check_changes(changes)
        ts = normalize_now(now)
        with self._lock:
            updated = self._swap(owner_id, expected_version, checked, ts)
            if webhook_event is not None and webhook_event.event_id in self._events:
                raise DuplicateEventError(webhook_event.event_id)
            self._records[owner_id] = updated
            if webhook_event is not None:
                self._events[webhook_event.event_id] = webhook_event
            return updated

    def find_owner_by_subscription_ref(self, subscription_ref: str) -> Optional[str]:
        with self._lock:
            for record in self._records.values():
                if record.billing_subscription_ref == subscription_ref:
                    return record.owner_id
        return None

    def find_owner_by_customer_ref(self, customer_ref: str) -> Optional[str]:
        with self._lock:
            for record in self._records.values():
                if record.billing_customer_ref == customer_ref:
                    return record.owner_id
        return None

    def iter_records(self, status: Optional[SubscriptionStatus] = None) -> Iterator[EntitlementRecord]:
        with self._lock:
            records: List[EntitlementRecord] = sorted(self._records.values(), key=lambda r: r.owner_id)
        for record in records:
            if status is None or record.status == SubscriptionStatus(status):
                yield record

    def has_webhook_event(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._events

    def record_webhook_event(self, entry: WebhookLogEntry) -> bool:
        with self._lock:
            if entry.event_id in self._events:
                return False
            self._events[entry.event_id] = entry
            return True

    def webhook_events(self) -> List[WebhookLogEntry]:
        with self._lock:
            return list(self._events.values())

    def count_webhook_events_before(self, before: datetime) -> int:
        with self._lock:
            return sum(1 for entry in self._events.values() if entry.processed_at < before)

    def prune_webhook_events(self, before: datetime) -> int:
        with self._lock:
            stale = [event_id for event_id, entry in self._events.items() if entry.processed_at < before]
            for event_id in stale:
                del self._events[event_id]
            return len(stale)

    def create_access_code(self, access_code: AccessCode) -> AccessCode:
        code = access_code.model_copy(
            update={"code": normalize_code(access_code.code), "created_at": normalize_now(access_code.created_at)}
        )
        with self._lock:
            if code.code in self._codes:
                raise ValidationError(f"Access code {code.code} already exists")
            self._codes[code.code] = code
        return code

    def get_access_code(self, code: str) -> Optional[AccessCode]:
        with self._lock:
            return self._codes.get(normalize_code(code))

    def has_redeemed(self, code: str, owner_id: str) -> bool:
        with self._lock:
            return (normalize_code(code), owner_id) in self._redemptions

    def redeem_access_code(
        self,
        code: str,
        owner_id: str,
        expected_version: int,
        changes: Dict[str, Any],
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[EntitlementRecord, AccessCode]:
        checked = _check_changes(changes)
        normalized = normalize_code(code)
        ts = normalize_now(now)
        with self._lock:
            access_code = self._codes.get(normalized)
            if access_code is None or not access_code.is_active or access_code.is_exhausted:
                raise _exhausted_error()
            if (normalized, owner_id) in self._redemptions:
                raise _already_redeemed_error()
            updated = self._swap(owner_id, expected_version, checked, ts)
            bumped = access_code.model_copy(update={"redemption_count": access_code.redemption_count + 1})
            self._records[owner_id] = updated
            self._codes[normalized] = bumped
            self._redemptions[(normalized, owner_id)] = ts
            return updated, bumped
