"""
Thin async wrappers over the Stripe SDK calls the verifiers need.

Stripe's SDK is synchronous, so calls run in a worker thread. Both
fetchers are injectable so tests and other processors can swap them.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping, Optional

import stripe

from ..errors import ConfigurationError, StoreUnavailable


SubscriptionFetcher = Callable[[str], Awaitable[Any]]
PaymentIntentFetcher = Callable[[str], Awaitable[Optional[Any]]]


def stripe_field(obj: Any, *path: str) -> Any:
    """
    Walk `path` through Stripe objects or plain dicts, returning None as
    soon as a hop is missing.
    """
    current = obj
    for key in path:
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(key)
        else:
            current = getattr(current, key, None)
    return current


def first_item(obj: Any, *path: str) -> Any:
    data = stripe_field(obj, *path, "data")
    if not data:
        return None
    return data[0]


class StripeSubscriptionFetcher:
    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    async def __call__(self, subscription_id: str) -> Any:
        if not self._api_key:
            raise ConfigurationError("STRIPE_SECRET is not configured")
        try:
            return await asyncio.to_thread(
                stripe.Subscription.retrieve, subscription_id, api_key=self._api_key
            )
        except stripe.StripeError as exc:
            raise StoreUnavailable(f"could not fetch subscription {subscription_id}") from exc


class StripePaymentIntentFetcher:
    """Returns None when Stripe does not know the PaymentIntent."""

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    async def __call__(self, intent_id: str) -> Optional[Any]:
        if not self._api_key:
            raise ConfigurationError("STRIPE_SECRET is not configured")
        try:
            return await asyncio.to_thread(
                stripe.PaymentIntent.retrieve, intent_id, api_key=self._api_key
            )
        except stripe.InvalidRequestError:
            return None
        except stripe.StripeError as exc:
            raise StoreUnavailable(f"could not fetch payment intent {intent_id}") from exc
