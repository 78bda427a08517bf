from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from ..db.base import BaseDBManager, DuplicateRecordError
from ..errors import VerificationFailed
from ..logging.audit_logger import AuditLogger
from ..models.audit import ProcessedWebhookEvent
from ..models.base import utcnow
from ..verifiers.stripe_api import SubscriptionFetcher, stripe_field
from ..verifiers.stripe_webhook import StripeWebhookVerifier, WebhookEvent
from .payment_recorder import PaymentRecorder
from .subscription_service import SubscriptionService, SubscriptionSnapshot


logger = logging.getLogger(__name__)

# Effects of one event, applied inside the event's transaction.
Apply = Callable[[], Awaitable[None]]
Handler = Callable[[WebhookEvent], Awaitable[Optional[Apply]]]


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    duplicate: bool = False
    handled: bool = False


class PaymentWebhookService:
    """
    Applies verified payment-processor events exactly once.

    Handlers do their remote reads first and return a callable with the
    store writes; those writes and the processed-event marker then commit
    in one transaction, so a retried delivery either finds the marker or
    redoes the whole event.
    """

    def __init__(
        self,
        db: BaseDBManager,
        audit: AuditLogger,
        verifier: StripeWebhookVerifier,
        subscriptions: SubscriptionService,
        payments: PaymentRecorder,
        fetch_subscription: SubscriptionFetcher,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._audit = audit
        self._verifier = verifier
        self._subscriptions = subscriptions
        self._payments = payments
        self._fetch_subscription = fetch_subscription
        self._clock = clock
        self._handlers: Dict[str, Handler] = {
            "checkout.session.completed": self._on_checkout_completed,
            "invoice.paid": self._on_invoice_paid,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_changed,
        }

    async def handle(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        result = await self._verifier.verify(payload, signature)
        if not result.valid or result.event is None:
            message = result.failure_reason or "Invalid signature"
            await self._audit.log_rejection(
                message="Webhook rejected",
                details={"failure_reason": message},
            )
            raise VerificationFailed(message)
        event = result.event

        if await self._db.is_webhook_event_processed(event.id):
            logger.info("webhook event %s already processed", event.id)
            return WebhookOutcome(event.id, event.type, duplicate=True)

        handler = self._handlers.get(event.type)
        apply = await handler(event) if handler is not None else None

        try:
            async with self._db.transaction():
                if apply is not None:
                    await apply()
                await self._db.add_processed_webhook_event(
                    ProcessedWebhookEvent(
                        event_id=event.id,
                        event_type=event.type,
                        processed_at=self._clock(),
                    )
                )
        except DuplicateRecordError:
            logger.info("webhook event %s processed concurrently", event.id)
            return WebhookOutcome(event.id, event.type, duplicate=True)

        if handler is None:
            logger.info("unhandled webhook event type: %s", event.type)
        return WebhookOutcome(event.id, event.type, handled=handler is not None)

    async def _snapshot(self, subscription_id: Optional[str]) -> Optional[SubscriptionSnapshot]:
        if not subscription_id:
            return None
        return SubscriptionSnapshot.from_stripe(await self._fetch_subscription(subscription_id))

    async def _on_checkout_completed(self, event: WebhookEvent) -> Optional[Apply]:
        session = event.data_object
        if session.get("mode") != "subscription":
            return None
        user_id = session.get("client_reference_id")
        customer_id = stripe_field(session, "customer")
        snapshot = await self._snapshot(session.get("subscription"))

        async def apply() -> None:
            if user_id and customer_id:
                await self._subscriptions.link_customer(user_id, customer_id)
            if snapshot is not None:
                await self._subscriptions.sync(snapshot, correlation_id=event.id)

        return apply

    async def _on_invoice_paid(self, event: WebhookEvent) -> Optional[Apply]:
        invoice = event.data_object
        subscription_id = invoice.get("subscription") or stripe_field(
            invoice, "parent", "subscription_details", "subscription"
        )
        snapshot = await self._snapshot(subscription_id)
        customer_id = stripe_field(invoice, "customer")

        async def apply() -> None:
            if snapshot is not None:
                await self._subscriptions.sync(snapshot, correlation_id=event.id)
            user_id = await self._subscriptions.resolve_user(customer_id)
            if user_id is None:
                await self._audit.log_error(
                    message="Invoice paid for unknown customer",
                    details={"customer_id": customer_id, "invoice_id": invoice.get("id")},
                    correlation_id=event.id,
                )
            await self._payments.record_subscription_invoice(
                user_id,
                amount_paid_cents=int(invoice.get("amount_paid") or 0),
                fee_cents=int(invoice.get("application_fee_amount") or 0),
                invoice_id=str(invoice.get("id")),
                correlation_id=event.id,
            )

        return apply

    async def _on_subscription_changed(self, event: WebhookEvent) -> Optional[Apply]:
        snapshot = SubscriptionSnapshot.from_stripe(event.data_object)

        async def apply() -> None:
            await self._subscriptions.sync(snapshot, correlation_id=event.id)

        return apply
