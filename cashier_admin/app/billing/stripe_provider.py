"""Stripe implementation of the payment provider adapter."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import stripe

from .exceptions import ProviderError, ProviderLookupError

logger = logging.getLogger("billing.stripe")

# Stripe caps list pages at 100 objects.
MAX_PAGE_SIZE = 100


def _to_plain(value: Any) -> Any:
    """Convert Stripe objects into plain containers."""

    if isinstance(value, stripe.StripeObject):
        return _to_plain(value.to_dict())
    if isinstance(value, dict):
        return {key: _to_plain(item) for key, item in dict.items(value)}
    if isinstance(value, list):
        return [_to_plain(item) for item in value]
    return value


class StripePaymentProvider:
    """Calls the Stripe API with per-request credentials.

    The API key is passed with every request instead of being assigned to the
    module-level ``stripe.api_key``. Reads are retried on connection errors;
    mutations are sent exactly once.
    """

    name = "stripe"

    def __init__(
        self,
        *,
        api_key: str,
        api_version: Optional[str] = None,
        read_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ) -> None:
        if not api_key:
            raise ValueError("A Stripe secret key is required")
        self._api_key = api_key
        self._api_version = api_version
        self._read_attempts = max(1, read_attempts)
        self._backoff_seconds = max(0.0, backoff_seconds)

    def _options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"api_key": self._api_key}
        if self._api_version:
            options["stripe_version"] = self._api_version
        return options

    def _read(self, description: str, fetch: Callable[[Dict[str, Any]], Any]) -> Any:
        for attempt in range(1, self._read_attempts + 1):
            try:
                return _to_plain(fetch(self._options()))
            except stripe.APIConnectionError as exc:
                logger.warning(
                    "Stripe %s connection failure",
                    description,
                    extra={"stripe_attempt": attempt, "stripe_attempts": self._read_attempts},
                )
                if attempt >= self._read_attempts:
                    raise self._translate(exc, description) from exc
                if self._backoff_seconds > 0:
                    time.sleep(self._backoff_seconds * attempt)
            except stripe.StripeError as exc:
                raise self._translate(exc, description) from exc
        raise ProviderError(f"Stripe {description} did not complete")  # pragma: no cover

    def _write(self, description: str, send: Callable[[Dict[str, Any]], Any]) -> Any:
        try:
            return _to_plain(send(self._options()))
        except stripe.StripeError as exc:
            raise self._translate(exc, description) from exc

    def _translate(self, exc: stripe.StripeError, description: str) -> ProviderError:
        body = exc.json_body if isinstance(exc.json_body, dict) else {}
        payload: Dict[str, Any] = {
            "http_status": exc.http_status,
            "code": exc.code,
            "message": exc.user_message or str(exc),
        }
        if body.get("error"):
            payload["error"] = body["error"]

        logger.error(
            "Stripe %s failed: %s",
            description,
            payload["message"],
            extra={"stripe_error": payload},
        )
        message = f"Stripe {description} failed: {payload['message']}"
        if exc.code == "resource_missing" or exc.http_status == 404:
            return ProviderLookupError(message, detail={"provider": self.name}, provider_payload=payload)
        return ProviderError(message, detail={"provider": self.name}, provider_payload=payload)

    def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._read(
            "subscription lookup",
            lambda options: stripe.Subscription.retrieve(subscription_id, **options),
        )

    def list_subscription_items(self, subscription_id: str) -> Sequence[Dict[str, Any]]:
        return self._read(
            "subscription item listing",
            lambda options: list(
                stripe.SubscriptionItem.list(
                    subscription=subscription_id,
                    limit=MAX_PAGE_SIZE,
                    **options,
                ).auto_paging_iter()
            ),
        )

    def cancel_subscription(self, subscription_id: str, *, immediate: bool) -> Dict[str, Any]:
        if immediate:
            return self._write(
                "subscription cancellation",
                lambda options: stripe.Subscription.cancel(subscription_id, **options),
            )
        return self._write(
            "subscription cancellation at period end",
            lambda options: stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=True,
                **options,
            ),
        )

    def update_subscription_plan(
        self,
        subscription_id: str,
        *,
        item_id: str,
        plan_id: str,
    ) -> Dict[str, Any]:
        return self._write(
            "subscription plan update",
            lambda options: stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=False,
                items=[{"id": item_id, "plan": plan_id}],
                **options,
            ),
        )

    def list_payment_methods(self, customer_id: str) -> Sequence[Dict[str, Any]]:
        return self._read(
            "payment method listing",
            lambda options: list(
                stripe.PaymentMethod.list(
                    customer=customer_id,
                    type="card",
                    limit=MAX_PAGE_SIZE,
                    **options,
                ).auto_paging_iter()
            ),
        )

    def list_invoices(self, customer_id: str, *, limit: int) -> Sequence[Dict[str, Any]]:
        listing = self._read(
            "invoice listing",
            lambda options: stripe.Invoice.list(
                customer=customer_id,
                limit=min(max(1, limit), MAX_PAGE_SIZE),
                **options,
            ),
        )
        return listing.get("data") or []

    def list_charges(self, customer_id: str) -> Sequence[Dict[str, Any]]:
        listing = self._read(
            "charge listing",
            lambda options: stripe.Charge.list(customer=customer_id, limit=MAX_PAGE_SIZE, **options),
        )
        return listing.get("data") or []

    def get_dispute(self, dispute_id: str) -> Dict[str, Any]:
        return self._read(
            "dispute lookup",
            lambda options: stripe.Dispute.retrieve(dispute_id, **options),
        )

    def create_refund(
        self,
        charge_id: str,
        *,
        amount: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"charge": charge_id}
        if amount is not None:
            params["amount"] = amount
        if metadata:
            params["metadata"] = metadata
        return self._write(
            "refund",
            lambda options: stripe.Refund.create(**params, **options),
        )

    def list_plans(self, *, limit: int) -> Sequence[Dict[str, Any]]:
        listing = self._read(
            "plan listing",
            lambda options: stripe.Plan.list(limit=min(max(1, limit), MAX_PAGE_SIZE), **options),
        )
        plans: List[Dict[str, Any]] = listing.get("data") or []
        return plans


__all__ = ["MAX_PAGE_SIZE", "StripePaymentProvider"]
