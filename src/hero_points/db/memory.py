from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date, datetime
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from .base import BaseDBManager, DuplicateRecordError
from ..models.audit import AuditEvent, ProcessedWebhookEvent
from ..models.base import utcnow
from ..models.ledger import LedgerEntry, LedgerReason
from ..models.payment import CharityPayout, PaymentKind, PaymentRecord
from ..models.profile import Profile, Subscription


UndoLog = List[Callable[[], None]]

# Undo actions of the transaction running in the current task.
_undo_log: ContextVar[Optional[UndoLog]] = ContextVar("hp_memory_undo_log", default=None)


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Transactions keep an undo log so a failing unit of work leaves no
    partial writes. Balance mutations serialize on one asyncio.Lock per
    user id; there is no global lock.
    """

    def __init__(self) -> None:
        self._profiles: Dict[str, Profile] = {}
        self._ledger: List[LedgerEntry] = []
        self._ledger_keys: Dict[Tuple[str, str, str], LedgerEntry] = {}
        self._payments: List[PaymentRecord] = []
        self._payment_keys: Dict[Tuple[str, str, str], PaymentRecord] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._payouts: Dict[date, CharityPayout] = {}
        self._webhook_events: Dict[str, ProcessedWebhookEvent] = {}
        self._audit: List[AuditEvent] = []
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @staticmethod
    def _on_rollback(action: Callable[[], None]) -> None:
        log = _undo_log.get()
        if log is not None:
            log.append(action)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _undo_log.get() is not None:
            # Nested: participate in the outer transaction.
            yield
            return
        log: UndoLog = []
        token = _undo_log.set(log)
        async with self._collect_after_commit():
            try:
                yield
            except BaseException:
                for action in reversed(log):
                    action()
                raise
            finally:
                _undo_log.reset(token)

    @asynccontextmanager
    async def user_lock(self, user_id: str) -> AsyncIterator[None]:
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                # Nobody holds or waits on it any more.
                del self._lock_users[user_id]
                del self._user_locks[user_id]

    # Profiles
    async def get_profile(self, user_id: str) -> Optional[Profile]:
        profile = self._profiles.get(user_id)
        return profile.model_copy() if profile else None

    async def ensure_profile(self, user_id: str) -> Profile:
        if user_id not in self._profiles:
            self._profiles[user_id] = Profile(id=user_id)
            self._on_rollback(lambda: self._profiles.pop(user_id, None))
        return self._profiles[user_id].model_copy()

    async def get_profile_by_customer(self, customer_id: str) -> Optional[Profile]:
        for profile in self._profiles.values():
            if profile.stripe_customer_id == customer_id:
                return profile.model_copy()
        return None

    def _replace_profile(self, user_id: str, **changes: object) -> Profile:
        if user_id not in self._profiles:
            self._profiles[user_id] = Profile(id=user_id)
            self._on_rollback(lambda: self._profiles.pop(user_id, None))
        previous = self._profiles[user_id]
        updated = previous.model_copy(update={**changes, "updated_at": utcnow()})
        self._profiles[user_id] = updated
        self._on_rollback(lambda: self._profiles.__setitem__(user_id, previous))
        return updated.model_copy()

    async def link_stripe_customer(self, user_id: str, customer_id: str) -> Profile:
        return self._replace_profile(user_id, stripe_customer_id=customer_id)

    async def set_premium_status(
        self,
        user_id: str,
        is_premium: bool,
        premium_since: Optional[datetime],
        premium_until: Optional[datetime],
    ) -> Profile:
        return self._replace_profile(
            user_id,
            is_premium=is_premium,
            premium_since=premium_since,
            premium_until=premium_until,
        )

    async def apply_balance_delta(
        self, user_id: str, delta: int, floor: Optional[int] = None
    ) -> Optional[int]:
        current = self._profiles.get(user_id)
        balance = current.hp_balance if current else 0
        new_balance = balance + delta
        if floor is not None and new_balance < floor:
            return None
        self._replace_profile(user_id, hp_balance=new_balance)
        return new_balance

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        key = None
        if entry.dedup_key is not None:
            key = (entry.user_id, entry.reason.value, entry.dedup_key)
            if key in self._ledger_keys:
                raise DuplicateRecordError(
                    LedgerEntry.collection_name,
                    {"user_id": entry.user_id, "reason": entry.reason.value, "dedup_key": entry.dedup_key},
                )
        entry = entry.model_copy(update={"id": entry.id or self._next_id()})
        self._ledger.append(entry)
        if key is not None:
            self._ledger_keys[key] = entry

        def _undo() -> None:
            self._ledger.remove(entry)
            if key is not None:
                self._ledger_keys.pop(key, None)

        self._on_rollback(_undo)
        return entry

    async def find_ledger_entry(
        self, user_id: str, reason: LedgerReason, dedup_key: str
    ) -> Optional[LedgerEntry]:
        return self._ledger_keys.get((user_id, LedgerReason(reason).value, dedup_key))

    def _user_entries(self, user_id: str, reason: LedgerReason) -> List[LedgerEntry]:
        return [e for e in self._ledger if e.user_id == user_id and e.reason == reason]

    async def count_ledger_entries(
        self, user_id: str, reason: LedgerReason, since: datetime
    ) -> int:
        return sum(1 for e in self._user_entries(user_id, reason) if e.created_at > since)

    async def earliest_ledger_entry_time(
        self, user_id: str, reason: LedgerReason, since: datetime
    ) -> Optional[datetime]:
        times = [e.created_at for e in self._user_entries(user_id, reason) if e.created_at > since]
        return min(times) if times else None

    async def get_ledger_entries(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[LedgerEntry]:
        # Insertion order breaks created_at ties.
        entries = [e for e in self._ledger if e.user_id == user_id]
        entries.reverse()
        entries = entries[offset:]
        return entries[:limit] if limit is not None else entries

    async def sum_ledger_deltas(
        self, user_id: str, until: Optional[datetime] = None
    ) -> int:
        return sum(
            e.delta
            for e in self._ledger
            if e.user_id == user_id and (until is None or e.created_at <= until)
        )

    # Payments
    async def add_payment_record(self, record: PaymentRecord) -> PaymentRecord:
        key = (record.kind.value, record.provider, record.provider_ref)
        if key in self._payment_keys:
            raise DuplicateRecordError(
                PaymentRecord.collection_name,
                {"kind": key[0], "provider": key[1], "provider_ref": key[2]},
            )
        record = record.model_copy(update={"id": record.id or self._next_id()})
        self._payments.append(record)
        self._payment_keys[key] = record

        def _undo() -> None:
            self._payments.remove(record)
            self._payment_keys.pop(key, None)

        self._on_rollback(_undo)
        return record

    async def find_payment_record(
        self, kind: PaymentKind, provider: str, provider_ref: str
    ) -> Optional[PaymentRecord]:
        return self._payment_keys.get((PaymentKind(kind).value, provider, provider_ref))

    async def sum_net_cents_by_kind(
        self, start: datetime, end: datetime
    ) -> Dict[PaymentKind, int]:
        totals: Dict[PaymentKind, int] = {kind: 0 for kind in PaymentKind}
        for record in self._payments:
            if start <= record.created_at < end:
                totals[record.kind] += record.net_cents
        return totals

    # Subscriptions
    async def upsert_subscription(self, subscription: Subscription) -> Subscription:
        previous = self._subscriptions.get(subscription.user_id)
        if subscription.id is None:
            subscription = subscription.model_copy(
                update={"id": previous.id if previous else self._next_id()}
            )
        self._subscriptions[subscription.user_id] = subscription

        def _undo() -> None:
            if previous is None:
                self._subscriptions.pop(subscription.user_id, None)
            else:
                self._subscriptions[subscription.user_id] = previous

        self._on_rollback(_undo)
        return subscription

    async def get_subscription(self, user_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(user_id)

    # Settlement
    async def get_charity_payout(self, month: date) -> Optional[CharityPayout]:
        return self._payouts.get(month)

    async def add_charity_payout(self, payout: CharityPayout) -> CharityPayout:
        if payout.month in self._payouts:
            raise DuplicateRecordError(
                CharityPayout.collection_name, {"month": payout.month.isoformat()}
            )
        payout = payout.model_copy(update={"id": payout.id or self._next_id()})
        self._payouts[payout.month] = payout
        self._on_rollback(lambda: self._payouts.pop(payout.month, None))
        return payout

    # Webhooks
    async def is_webhook_event_processed(self, event_id: str) -> bool:
        return event_id in self._webhook_events

    async def add_processed_webhook_event(
        self, marker: ProcessedWebhookEvent
    ) -> ProcessedWebhookEvent:
        if marker.event_id in self._webhook_events:
            raise DuplicateRecordError(
                ProcessedWebhookEvent.collection_name, {"event_id": marker.event_id}
            )
        self._webhook_events[marker.event_id] = marker
        self._on_rollback(lambda: self._webhook_events.pop(marker.event_id, None))
        return marker

    # Audit
    async def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        if event.id is None:
            event.id = self._next_id()
        self._audit.append(event)
        self._on_rollback(lambda: self._audit.remove(event))
        return event
