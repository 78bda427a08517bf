from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date, datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseDBManager, DuplicateRecordError, TransientStoreError
from ..errors import StoreUnavailable
from ..models.audit import AuditEvent, ProcessedWebhookEvent
from ..models.base import DBSerializableModel, utcnow
from ..models.ledger import LedgerEntry, LedgerReason
from ..models.payment import CharityPayout, PaymentKind, PaymentRecord
from ..models.profile import Profile, Subscription


TModel = TypeVar("TModel", bound=DBSerializableModel)

_TRANSIENT_LABELS = ("TransientTransactionError", "UnknownTransactionCommitResult")

# Session of the transaction running in the current task.
_current_session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
    "hp_mongo_session", default=None
)


def _to_bson(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _to_bson(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_bson(v) for v in value]
    return value


def _translate(exc: PyMongoError) -> Exception:
    if isinstance(exc, DuplicateKeyError):
        return DuplicateRecordError("unknown", dict(exc.details or {}).get("keyValue", {}))
    if any(exc.has_error_label(label) for label in _TRANSIENT_LABELS):
        return TransientStoreError(str(exc))
    return StoreUnavailable(f"store error: {exc}")


class MongoDBManager(BaseDBManager):
    """
    Motor-backed store for production.

    Every document keeps its string key in both `_id` and `id`; services
    only ever see the pydantic model.

    `transaction()` opens a multi-document transaction (replica set or
    sharded cluster required). Per-user serialization comes from document
    level write conflicts on the profile inside those transactions, so
    `user_lock()` holds no lock of its own; conflicting writers surface as
    TransientStoreError and are retried by the service.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database
        self._client: AsyncIOMotorClient = database.client

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        ledger = self._db[LedgerEntry.collection_name]
        await ledger.create_index(
            [("user_id", ASCENDING), ("reason", ASCENDING), ("dedup_key", ASCENDING)],
            unique=True,
            partialFilterExpression={"dedup_key": {"$type": "string"}},
            name="uniq_user_reason_dedup",
        )
        await ledger.create_index(
            [("user_id", ASCENDING), ("reason", ASCENDING), ("created_at", DESCENDING)],
            name="user_reason_created",
        )
        payments = self._db[PaymentRecord.collection_name]
        await payments.create_index(
            [("kind", ASCENDING), ("provider", ASCENDING), ("provider_ref", ASCENDING)],
            unique=True,
            name="uniq_kind_provider_ref",
        )
        await payments.create_index([("created_at", ASCENDING)], name="created")
        await self._db[CharityPayout.collection_name].create_index(
            [("month", ASCENDING)], unique=True, name="uniq_month"
        )
        await self._db[Subscription.collection_name].create_index(
            [("user_id", ASCENDING)], unique=True, name="uniq_user"
        )
        await self._db[Profile.collection_name].create_index(
            [("stripe_customer_id", ASCENDING)], sparse=True, name="stripe_customer"
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _current_session.get() is not None:
            yield
            return
        async with self._collect_after_commit():
            try:
                async with await self._client.start_session() as session:
                    async with session.start_transaction():
                        token = _current_session.set(session)
                        try:
                            yield
                        finally:
                            _current_session.reset(token)
            except PyMongoError as exc:
                raise _translate(exc) from exc

    @asynccontextmanager
    async def user_lock(self, user_id: str) -> AsyncIterator[None]:
        yield

    # Encoding
    @staticmethod
    def _session() -> Optional[AsyncIOMotorClientSession]:
        return _current_session.get()

    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = _to_bson(model.serialize_for_db())
        pk = model.primary_key or "id"
        model_id = getattr(model, pk, None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, pk, model_id)
            data[pk] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        pk = model_cls.primary_key or "id"
        if "_id" in data and pk not in data:
            data[pk] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    async def _insert(self, model: TModel) -> TModel:
        col = self._db[model.collection_name]
        data = self._prepare_insert(model)
        try:
            await col.insert_one(data, session=self._session())
        except DuplicateKeyError as exc:
            raise DuplicateRecordError(
                model.collection_name, dict(exc.details or {}).get("keyValue", {})
            ) from exc
        except PyMongoError as exc:
            raise _translate(exc) from exc
        return model

    # Profiles
    async def get_profile(self, user_id: str) -> Optional[Profile]:
        col = self._db[Profile.collection_name]
        doc = await col.find_one({"_id": user_id}, session=self._session())
        return self._decode(Profile, doc)

    async def ensure_profile(self, user_id: str) -> Profile:
        col = self._db[Profile.collection_name]
        fresh = _to_bson(Profile(id=user_id).serialize_for_db())
        doc = await col.find_one_and_update(
            {"_id": user_id},
            {"$setOnInsert": fresh},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self._session(),
        )
        return self._decode(Profile, doc)  # type: ignore[return-value]

    async def get_profile_by_customer(self, customer_id: str) -> Optional[Profile]:
        col = self._db[Profile.collection_name]
        doc = await col.find_one({"stripe_customer_id": customer_id}, session=self._session())
        return self._decode(Profile, doc)

    async def _update_profile(self, user_id: str, changes: Dict[str, Any]) -> Profile:
        col = self._db[Profile.collection_name]
        changes = {**changes, "updated_at": utcnow()}
        on_insert = {
            k: v
            for k, v in _to_bson(Profile(id=user_id).serialize_for_db()).items()
            if k not in changes
        }
        doc = await col.find_one_and_update(
            {"_id": user_id},
            {"$set": changes, "$setOnInsert": on_insert},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self._session(),
        )
        return self._decode(Profile, doc)  # type: ignore[return-value]

    async def link_stripe_customer(self, user_id: str, customer_id: str) -> Profile:
        return await self._update_profile(user_id, {"stripe_customer_id": customer_id})

    async def set_premium_status(
        self,
        user_id: str,
        is_premium: bool,
        premium_since: Optional[datetime],
        premium_until: Optional[datetime],
    ) -> Profile:
        return await self._update_profile(
            user_id,
            {
                "is_premium": is_premium,
                "premium_since": premium_since,
                "premium_until": premium_until,
            },
        )

    async def apply_balance_delta(
        self, user_id: str, delta: int, floor: Optional[int] = None
    ) -> Optional[int]:
        col = self._db[Profile.collection_name]
        query: Dict[str, Any] = {"_id": user_id}
        if floor is not None:
            # Conditional increment: only matches when the result stays >= floor.
            query["hp_balance"] = {"$gte": floor - delta}
        on_insert = {
            k: v
            for k, v in _to_bson(Profile(id=user_id).serialize_for_db()).items()
            if k not in ("hp_balance", "updated_at")
        }
        try:
            doc = await col.find_one_and_update(
                query,
                {
                    "$inc": {"hp_balance": delta},
                    "$set": {"updated_at": utcnow()},
                    "$setOnInsert": on_insert,
                },
                upsert=floor is None,
                return_document=ReturnDocument.AFTER,
                session=self._session(),
            )
        except PyMongoError as exc:
            raise _translate(exc) from exc
        if doc is None:
            return None
        return int(doc["hp_balance"])

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        return await self._insert(entry)

    async def find_ledger_entry(
        self, user_id: str, reason: LedgerReason, dedup_key: str
    ) -> Optional[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        doc = await col.find_one(
            {"user_id": user_id, "reason": LedgerReason(reason).value, "dedup_key": dedup_key},
            session=self._session(),
        )
        return self._decode(LedgerEntry, doc)

    async def count_ledger_entries(
        self, user_id: str, reason: LedgerReason, since: datetime
    ) -> int:
        col = self._db[LedgerEntry.collection_name]
        return await col.count_documents(
            {
                "user_id": user_id,
                "reason": LedgerReason(reason).value,
                "created_at": {"$gt": since},
            },
            session=self._session(),
        )

    async def earliest_ledger_entry_time(
        self, user_id: str, reason: LedgerReason, since: datetime
    ) -> Optional[datetime]:
        col = self._db[LedgerEntry.collection_name]
        doc = await col.find_one(
            {
                "user_id": user_id,
                "reason": LedgerReason(reason).value,
                "created_at": {"$gt": since},
            },
            sort=[("created_at", ASCENDING)],
            session=self._session(),
        )
        return doc["created_at"] if doc else None

    async def get_ledger_entries(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        cursor = (
            col.find({"user_id": user_id}, session=self._session())
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip(offset)
        )
        if limit is not None:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=None)
        return [self._decode(LedgerEntry, d) for d in docs if d is not None]  # type: ignore[misc]

    async def sum_ledger_deltas(
        self, user_id: str, until: Optional[datetime] = None
    ) -> int:
        col = self._db[LedgerEntry.collection_name]
        match: Dict[str, Any] = {"user_id": user_id}
        if until is not None:
            match["created_at"] = {"$lte": until}
        cursor = col.aggregate(
            [{"$match": match}, {"$group": {"_id": None, "total": {"$sum": "$delta"}}}],
            session=self._session(),
        )
        rows = await cursor.to_list(length=1)
        return int(rows[0]["total"]) if rows else 0

    # Payments
    async def add_payment_record(self, record: PaymentRecord) -> PaymentRecord:
        return await self._insert(record)

    async def find_payment_record(
        self, kind: PaymentKind, provider: str, provider_ref: str
    ) -> Optional[PaymentRecord]:
        col = self._db[PaymentRecord.collection_name]
        doc = await col.find_one(
            {"kind": PaymentKind(kind).value, "provider": provider, "provider_ref": provider_ref},
            session=self._session(),
        )
        return self._decode(PaymentRecord, doc)

    async def sum_net_cents_by_kind(
        self, start: datetime, end: datetime
    ) -> Dict[PaymentKind, int]:
        col = self._db[PaymentRecord.collection_name]
        cursor = col.aggregate(
            [
                {"$match": {"created_at": {"$gte": start, "$lt": end}}},
                {"$group": {"_id": "$kind", "total": {"$sum": "$net_cents"}}},
            ],
            session=self._session(),
        )
        totals: Dict[PaymentKind, int] = {kind: 0 for kind in PaymentKind}
        for row in await cursor.to_list(length=None):
            totals[PaymentKind(row["_id"])] = int(row["total"])
        return totals

    # Subscriptions
    async def upsert_subscription(self, subscription: Subscription) -> Subscription:
        col = self._db[Subscription.collection_name]
        data = _to_bson(subscription.serialize_for_db())
        data.pop("id", None)
        doc = await col.find_one_and_update(
            {"user_id": subscription.user_id},
            {"$set": data, "$setOnInsert": {"_id": uuid4().hex}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self._session(),
        )
        return self._decode(Subscription, doc)  # type: ignore[return-value]

    async def get_subscription(self, user_id: str) -> Optional[Subscription]:
        col = self._db[Subscription.collection_name]
        doc = await col.find_one({"user_id": user_id}, session=self._session())
        return self._decode(Subscription, doc)

    # Settlement
    async def get_charity_payout(self, month: date) -> Optional[CharityPayout]:
        col = self._db[CharityPayout.collection_name]
        doc = await col.find_one({"month": month.isoformat()}, session=self._session())
        return self._decode(CharityPayout, doc)

    async def add_charity_payout(self, payout: CharityPayout) -> CharityPayout:
        return await self._insert(payout)

    # Webhooks
    async def is_webhook_event_processed(self, event_id: str) -> bool:
        col = self._db[ProcessedWebhookEvent.collection_name]
        doc = await col.find_one({"_id": event_id}, session=self._session())
        return doc is not None

    async def add_processed_webhook_event(
        self, marker: ProcessedWebhookEvent
    ) -> ProcessedWebhookEvent:
        return await self._insert(marker)

    # Audit
    async def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        return await self._insert(event)
