"""Shared in-memory collaborators for the cashier administration tests."""
from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from cashier_admin.app.billing import (
    AddonPlanCatalog,
    AddonSubscription,
    BillableAccount,
    BillableKind,
    BillingEventSink,
    LocalSubscription,
    PaymentProvider,
    ProviderAddonLifecycle,
    ProviderError,
    ProviderLookupError,
    SubscriptionCommandHandler,
    SubscriptionEvent,
    SubscriptionReconciler,
    SubscriptionRepository,
    TaskDispatcher,
)

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)
PERIOD_START = NOW - timedelta(days=10)
PERIOD_END = NOW + timedelta(days=20)

PLANS: Dict[str, Dict[str, Any]] = {
    "plan_basic": {"id": "plan_basic", "amount": 1000, "currency": "usd", "interval": "month", "interval_count": 1},
    "plan_pro": {"id": "plan_pro", "amount": 2500, "currency": "usd", "interval": "month", "interval_count": 1},
    "addon_storage": {"id": "addon_storage", "amount": 300, "currency": "usd", "interval": "month", "interval_count": 1},
}


def epoch(value: datetime) -> int:
    return int(value.timestamp())


def make_item(item_id: str, plan_id: str, *, quantity: int = 1) -> Dict[str, Any]:
    return {"id": item_id, "object": "subscription_item", "plan": dict(PLANS[plan_id]), "quantity": quantity}


def make_subscription_payload(
    subscription_id: str,
    items: Sequence[Dict[str, Any]],
    *,
    status: str = "active",
    has_more: bool = False,
) -> Dict[str, Any]:
    return {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "collection_method": "charge_automatically",
        "billing_cycle_anchor": epoch(PERIOD_START - timedelta(days=60)),
        "current_period_start": epoch(PERIOD_START),
        "current_period_end": epoch(PERIOD_END),
        "cancel_at_period_end": False,
        "canceled_at": None,
        "ended_at": None,
        "days_until_due": None,
        "items": {"object": "list", "data": list(items), "has_more": has_more},
    }


class InMemorySubscriptionRepository(SubscriptionRepository):
    def __init__(self) -> None:
        self.accounts: Dict[str, BillableAccount] = {}
        self.subscriptions: Dict[Tuple[str, str], LocalSubscription] = {}
        self.addons: Dict[str, AddonSubscription] = {}
        self.persisted: List[LocalSubscription] = []
        self.fail_persist = False
        self.account_lookups = 0

    def find_account(self, account_id: str) -> Optional[BillableAccount]:
        self.account_lookups += 1
        return self.accounts.get(account_id)

    def find_by_account(self, account_id: str, name: str) -> Optional[LocalSubscription]:
        return self.subscriptions.get((account_id, name))

    def find_addon_by_account_and_id(self, account_id: str, addon_id: str) -> Optional[AddonSubscription]:
        addon = self.addons.get(addon_id)
        if addon is None or addon.account_id != account_id:
            return None
        return addon

    def list_addons_to_settle(self, account_id: str) -> Sequence[AddonSubscription]:
        return [
            addon
            for addon in self.addons.values()
            if addon.account_id == account_id and (addon.ends_at is None or addon.ends_at > NOW)
        ]

    def persist(self, subscription: LocalSubscription) -> LocalSubscription:
        if self.fail_persist:
            raise RuntimeError("database unavailable")
        self.subscriptions[(subscription.account_id, subscription.name)] = subscription
        self.persisted.append(subscription)
        return subscription

    def persist_addon(self, addon: AddonSubscription) -> AddonSubscription:
        self.addons[addon.id] = addon
        return addon


class FakeStripeProvider(PaymentProvider):
    """Keeps provider objects in dictionaries and mimics the Stripe state machine."""

    def __init__(self) -> None:
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.extra_items: Dict[str, List[Dict[str, Any]]] = {}
        self.payment_methods: Dict[str, List[Dict[str, Any]]] = {}
        self.invoices: Dict[str, List[Dict[str, Any]]] = {}
        self.charges: Dict[str, List[Dict[str, Any]]] = {}
        self.disputes: Dict[str, Dict[str, Any]] = {}
        self.plans: List[Dict[str, Any]] = [dict(plan) for plan in PLANS.values()]
        self.refunds: List[Dict[str, Any]] = []
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.failures: Dict[str, Exception] = {}

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        failure = self.failures.get(method)
        if failure is not None:
            raise failure

    def called(self, method: str) -> List[Tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def _subscription(self, subscription_id: str) -> Dict[str, Any]:
        payload = self.subscriptions.get(subscription_id)
        if payload is None:
            raise ProviderLookupError(f"No such subscription: {subscription_id}")
        return payload

    def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self._record("get_subscription", subscription_id)
        return copy.deepcopy(self._subscription(subscription_id))

    def list_subscription_items(self, subscription_id: str) -> Sequence[Dict[str, Any]]:
        self._record("list_subscription_items", subscription_id)
        payload = self._subscription(subscription_id)
        return copy.deepcopy(payload["items"]["data"] + self.extra_items.get(subscription_id, []))

    def cancel_subscription(self, subscription_id: str, *, immediate: bool) -> Dict[str, Any]:
        self._record("cancel_subscription", subscription_id, immediate)
        payload = self._subscription(subscription_id)
        if immediate:
            payload["status"] = "canceled"
            payload["ended_at"] = epoch(NOW)
            payload["canceled_at"] = epoch(NOW)
        else:
            payload["cancel_at_period_end"] = True
            payload["canceled_at"] = epoch(NOW)
        return copy.deepcopy(payload)

    def update_subscription_plan(self, subscription_id: str, *, item_id: str, plan_id: str) -> Dict[str, Any]:
        self._record("update_subscription_plan", subscription_id, item_id, plan_id)
        payload = self._subscription(subscription_id)
        for item in payload["items"]["data"]:
            if item["id"] == item_id:
                item["plan"] = dict(PLANS[plan_id])
                break
        else:
            raise ProviderError(f"No such subscription item: {item_id}")
        payload["cancel_at_period_end"] = False
        payload["canceled_at"] = None
        return copy.deepcopy(payload)

    def list_payment_methods(self, customer_id: str) -> Sequence[Dict[str, Any]]:
        self._record("list_payment_methods", customer_id)
        return copy.deepcopy(self.payment_methods.get(customer_id, []))

    def list_invoices(self, customer_id: str, *, limit: int) -> Sequence[Dict[str, Any]]:
        self._record("list_invoices", customer_id, limit)
        return copy.deepcopy(self.invoices.get(customer_id, [])[:limit])

    def list_charges(self, customer_id: str) -> Sequence[Dict[str, Any]]:
        self._record("list_charges", customer_id)
        return copy.deepcopy(self.charges.get(customer_id, []))

    def get_dispute(self, dispute_id: str) -> Dict[str, Any]:
        self._record("get_dispute", dispute_id)
        if dispute_id not in self.disputes:
            raise ProviderLookupError(f"No such dispute: {dispute_id}")
        return copy.deepcopy(self.disputes[dispute_id])

    def create_refund(
        self,
        charge_id: str,
        *,
        amount: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        self._record("create_refund", charge_id, amount, metadata)
        charge = next(
            (row for rows in self.charges.values() for row in rows if row["id"] == charge_id),
            None,
        )
        if charge is None:
            raise ProviderLookupError(f"No such charge: {charge_id}")

        refundable = charge["amount"] - charge.get("amount_refunded", 0)
        refunded = refundable if amount is None else amount
        charge["amount_refunded"] = charge.get("amount_refunded", 0) + refunded
        refund = {
            "id": f"re_{len(self.refunds) + 1}",
            "object": "refund",
            "charge": charge_id,
            "amount": refunded,
            "currency": charge.get("currency"),
            "status": "succeeded",
            "metadata": dict(metadata or {}),
        }
        self.refunds.append(refund)
        return copy.deepcopy(refund)

    def list_plans(self, *, limit: int) -> Sequence[Dict[str, Any]]:
        self._record("list_plans", limit)
        return copy.deepcopy(self.plans[:limit])


class RecordingEventSink(BillingEventSink):
    def __init__(self) -> None:
        self.events: List[SubscriptionEvent] = []
        self.failure: Optional[Exception] = None

    def emit(self, event: SubscriptionEvent) -> None:
        if self.failure is not None:
            raise self.failure
        self.events.append(event)


class RecordingDispatcher(TaskDispatcher):
    def __init__(self) -> None:
        self.submitted: List[Tuple[Callable[..., Any], Tuple[Any, ...]]] = []

    def submit(self, func: Callable[..., Any], *args: Any) -> None:
        self.submitted.append((func, args))


def _seed(repository: InMemorySubscriptionRepository, provider: FakeStripeProvider) -> None:
    repository.accounts["acct_1"] = BillableAccount(
        id="acct_1",
        kind=BillableKind.USER,
        name="Ada Lovelace",
        email="ada@example.com",
        provider_customer_id="cus_1",
        default_payment_method_id="pm_1",
    )
    repository.accounts["acct_empty"] = BillableAccount(
        id="acct_empty",
        kind=BillableKind.USER,
        name="No Plan",
        email="none@example.com",
    )
    repository.subscriptions[("acct_1", "default")] = LocalSubscription(
        id="1",
        account_id="acct_1",
        name="default",
        provider_id="sub_1",
        provider_item_id="si_1",
        provider_plan="plan_basic",
        quantity=1,
        created_at=PERIOD_START - timedelta(days=60),
        updated_at=PERIOD_START,
    )
    repository.addons["10"] = AddonSubscription(
        id="10",
        account_id="acct_1",
        name="Extra storage",
        provider_id="sub_addon_1",
        provider_item_id="si_addon_1",
        provider_plan="addon_storage",
        quantity=1,
        created_at=PERIOD_START - timedelta(days=30),
    )

    provider.subscriptions["sub_1"] = make_subscription_payload("sub_1", [make_item("si_1", "plan_basic")])
    provider.subscriptions["sub_addon_1"] = make_subscription_payload(
        "sub_addon_1", [make_item("si_addon_1", "addon_storage")]
    )
    provider.payment_methods["cus_1"] = [
        {
            "id": "pm_1",
            "object": "payment_method",
            "billing_details": {"name": "Ada Lovelace"},
            "card": {"brand": "visa", "last4": "4242", "country": "US", "exp_month": 12, "exp_year": 2030},
        },
        {
            "id": "pm_2",
            "object": "payment_method",
            "billing_details": {"name": None},
            "card": {"brand": "mastercard", "last4": "4444", "country": "GB", "exp_month": 1, "exp_year": 2027},
        },
    ]
    provider.invoices["cus_1"] = [
        {
            "id": "in_1",
            "total": 1000,
            "attempted": True,
            "charge": "ch_1",
            "currency": "usd",
            "status": "paid",
            "period_start": epoch(PERIOD_START),
            "period_end": epoch(PERIOD_END),
        }
    ]
    provider.charges["cus_1"] = [
        {
            "id": "ch_1",
            "amount": 1000,
            "amount_refunded": 0,
            "captured": True,
            "paid": True,
            "status": "succeeded",
            "currency": "usd",
            "dispute": "dp_1",
            "failure_code": None,
            "failure_message": None,
            "created": epoch(PERIOD_START),
        },
        {
            "id": "ch_2",
            "amount": 2500,
            "amount_refunded": 0,
            "captured": True,
            "paid": True,
            "status": "succeeded",
            "currency": "usd",
            "dispute": None,
            "failure_code": None,
            "failure_message": None,
            "created": epoch(PERIOD_START - timedelta(days=30)),
        },
    ]
    provider.disputes["dp_1"] = {"id": "dp_1", "amount": 1000, "reason": "fraudulent", "status": "needs_response"}


@pytest.fixture
def billing_env():
    repository = InMemorySubscriptionRepository()
    provider = FakeStripeProvider()
    _seed(repository, provider)

    events = RecordingEventSink()
    dispatcher = RecordingDispatcher()
    clock = lambda: NOW  # noqa: E731
    reconciler = SubscriptionReconciler(
        repository=repository,
        provider=provider,
        plan_limit=100,
        invoice_limit=24,
        max_workers=4,
        clock=clock,
    )
    catalog = AddonPlanCatalog.from_definitions(
        [
            {
                "id": "addon_storage",
                "name": "Extra storage",
                "price": 300,
                "interval": "monthly",
                "on_cancel": "log_addon_change",
                "on_resume": "log_addon_change",
            }
        ]
    )
    handler = SubscriptionCommandHandler(
        reconciler=reconciler,
        event_sink=events,
        addon_lifecycle=ProviderAddonLifecycle(provider=provider, repository=repository, clock=clock),
        addon_catalog=catalog,
        dispatcher=dispatcher,
        account_kind=BillableKind.USER,
    )
    return SimpleNamespace(
        repository=repository,
        provider=provider,
        reconciler=reconciler,
        handler=handler,
        events=events,
        dispatcher=dispatcher,
        catalog=catalog,
        now=NOW,
        period_end=PERIOD_END,
        epoch=epoch,
        make_item=make_item,
        make_subscription=make_subscription_payload,
    )
