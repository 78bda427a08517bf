from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date, datetime
from typing import AsyncIterator, Callable, Dict, List, Optional

from ..models.audit import AuditEvent, ProcessedWebhookEvent
from ..models.ledger import LedgerEntry, LedgerReason
from ..models.payment import CharityPayout, PaymentKind, PaymentRecord
from ..models.profile import Profile, Subscription


# Actions deferred until the outermost transaction of the current task commits.
_after_commit: ContextVar[Optional[List[Callable[[], None]]]] = ContextVar(
    "hp_after_commit", default=None
)


class DuplicateRecordError(Exception):
    """
    Raised by a backend when an insert violates a unique key.

    Services treat this as "someone else already applied this event".
    """

    def __init__(self, collection: str, key: Dict[str, object]) -> None:
        super().__init__(f"duplicate record in {collection}: {key}")
        self.collection = collection
        self.key = key


class TransientStoreError(Exception):
    """
    A write conflict or transient transaction failure; the whole unit of
    work may be retried.
    """


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (in-memory, MongoDB, ...) implement these
    methods. Multi-row effects of one event are grouped with
    `transaction()`; per-user balance mutations are additionally wrapped in
    `user_lock()` so they serialize per user while different users proceed
    in parallel.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context.
        Should rollback on exception and commit on success.
        """
        yield

    @abstractmethod
    @asynccontextmanager
    async def user_lock(self, user_id: str) -> AsyncIterator[None]:
        """
        Per-user serialization point for balance mutations.
        """
        yield

    def after_commit(self, action: Callable[[], None]) -> None:
        """Run `action` once the enclosing transaction commits, or now if there is none."""
        pending = _after_commit.get()
        if pending is None:
            action()
        else:
            pending.append(action)

    @asynccontextmanager
    async def _collect_after_commit(self) -> AsyncIterator[None]:
        pending: List[Callable[[], None]] = []
        token = _after_commit.set(pending)
        try:
            yield
        finally:
            _after_commit.reset(token)
        for action in pending:
            action()

    # Profiles
    @abstractmethod
    async def get_profile(self, user_id: str) -> Optional[Profile]: ...

    @abstractmethod
    async def ensure_profile(self, user_id: str) -> Profile: ...

    @abstractmethod
    async def get_profile_by_customer(self, customer_id: str) -> Optional[Profile]: ...

    @abstractmethod
    async def link_stripe_customer(self, user_id: str, customer_id: str) -> Profile: ...

    @abstractmethod
    async def set_premium_status(
        self,
        user_id: str,
        is_premium: bool,
        premium_since: Optional[datetime],
        premium_until: Optional[datetime],
    ) -> Profile: ...

    @abstractmethod
    async def apply_balance_delta(
        self, user_id: str, delta: int, floor: Optional[int] = None
    ) -> Optional[int]:
        """
        Atomically add `delta` to the cached balance.

        With a `floor`, the update only happens if the resulting balance
        stays >= floor; otherwise nothing changes and None is returned.
        Returns the new balance.
        """
        ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Insert an entry. Raises DuplicateRecordError when
        (user_id, reason, dedup_key) already exists.
        """
        ...

    @abstractmethod
    async def find_ledger_entry(
        self, user_id: str, reason: LedgerReason, dedup_key: str
    ) -> Optional[LedgerEntry]: ...

    @abstractmethod
    async def count_ledger_entries(
        self, user_id: str, reason: LedgerReason, since: datetime
    ) -> int:
        """Entries for (user, reason) with created_at strictly after `since`."""
        ...

    @abstractmethod
    async def earliest_ledger_entry_time(
        self, user_id: str, reason: LedgerReason, since: datetime
    ) -> Optional[datetime]: ...

    @abstractmethod
    async def get_ledger_entries(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[LedgerEntry]:
        """Newest first."""
        ...

    @abstractmethod
    async def sum_ledger_deltas(
        self, user_id: str, until: Optional[datetime] = None
    ) -> int: ...

    # Payments
    @abstractmethod
    async def add_payment_record(self, record: PaymentRecord) -> PaymentRecord:
        """
        Insert a payment. Raises DuplicateRecordError when
        (kind, provider, provider_ref) already exists.
        """
        ...

    @abstractmethod
    async def find_payment_record(
        self, kind: PaymentKind, provider: str, provider_ref: str
    ) -> Optional[PaymentRecord]: ...

    @abstractmethod
    async def sum_net_cents_by_kind(
        self, start: datetime, end: datetime
    ) -> Dict[PaymentKind, int]:
        """Sum of net_cents per kind for start <= created_at < end."""
        ...

    # Subscriptions
    @abstractmethod
    async def upsert_subscription(self, subscription: Subscription) -> Subscription: ...

    @abstractmethod
    async def get_subscription(self, user_id: str) -> Optional[Subscription]: ...

    # Settlement
    @abstractmethod
    async def get_charity_payout(self, month: date) -> Optional[CharityPayout]: ...

    @abstractmethod
    async def add_charity_payout(self, payout: CharityPayout) -> CharityPayout:
        """Raises DuplicateRecordError when a payout for the month exists."""
        ...

    # Webhooks
    @abstractmethod
    async def is_webhook_event_processed(self, event_id: str) -> bool: ...

    @abstractmethod
    async def add_processed_webhook_event(
        self, marker: ProcessedWebhookEvent
    ) -> ProcessedWebhookEvent: ...

    # Audit
    @abstractmethod
    async def add_audit_event(self, event: AuditEvent) -> AuditEvent: ...
