"""Collaborator protocols and the subscription read path."""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from .exceptions import NotFoundError, PlanResolutionError, ProviderLookupError
from .formatters import (
    dispute_ids,
    format_cards,
    format_charges,
    format_invoices,
    format_plans,
    format_subscription,
)
from .models import (
    AddonPlan,
    AddonSubscription,
    AddonSubscriptionView,
    BillableAccount,
    BillingOverview,
    LocalSubscription,
    NormalizedSubscriptionView,
    RemoteSubscription,
    RemoteSubscriptionItem,
    SubscriptionEvent,
    SubscriptionStatusFlags,
)
from .status import addon_flags, detect_drift, subscription_flags

logger = logging.getLogger("billing.reconciler")


class PaymentProvider(Protocol):
    """Client adapter over the remote payment provider."""

    def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        ...

    def list_subscription_items(self, subscription_id: str) -> Sequence[Dict[str, Any]]:
        ...

    def cancel_subscription(self, subscription_id: str, *, immediate: bool) -> Dict[str, Any]:
        ...

    def update_subscription_plan(
        self,
        subscription_id: str,
        *,
        item_id: str,
        plan_id: str,
    ) -> Dict[str, Any]:
        ...

    def list_payment_methods(self, customer_id: str) -> Sequence[Dict[str, Any]]:
        ...

    def list_invoices(self, customer_id: str, *, limit: int) -> Sequence[Dict[str, Any]]:
        ...

    def list_charges(self, customer_id: str) -> Sequence[Dict[str, Any]]:
        ...

    def get_dispute(self, dispute_id: str) -> Dict[str, Any]:
        ...

    def create_refund(
        self,
        charge_id: str,
        *,
        amount: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        ...

    def list_plans(self, *, limit: int) -> Sequence[Dict[str, Any]]:
        ...


class SubscriptionRepository(Protocol):
    """Local store for billable accounts and their subscription records."""

    def find_account(self, account_id: str) -> Optional[BillableAccount]:
        ...

    def find_by_account(self, account_id: str, name: str) -> Optional[LocalSubscription]:
        ...

    def find_addon_by_account_and_id(self, account_id: str, addon_id: str) -> Optional[AddonSubscription]:
        ...

    def list_addons_to_settle(self, account_id: str) -> Sequence[AddonSubscription]:
        ...

    def persist(self, subscription: LocalSubscription) -> LocalSubscription:
        ...

    def persist_addon(self, addon: AddonSubscription) -> AddonSubscription:
        ...


class BillingEventSink(Protocol):
    """Receives lifecycle notifications after successful commands."""

    def emit(self, event: SubscriptionEvent) -> None:
        ...


class AddonLifecycle(Protocol):
    """Owns the billing rules for cancelling and resuming add-ons."""

    def cancel(self, addon: AddonSubscription, plan: AddonPlan) -> AddonSubscription:
        ...

    def resume(self, addon: AddonSubscription, plan: AddonPlan) -> AddonSubscription:
        ...


class TaskDispatcher(Protocol):
    """Fire-and-forget task submission."""

    def submit(self, func: Callable[..., Any], *args: Any) -> None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReconciledSubscription:
    """Local record paired with its provider subscription and derived facts."""

    local: LocalSubscription
    remote: RemoteSubscription
    item: RemoteSubscriptionItem
    flags: SubscriptionStatusFlags

    def to_view(self) -> NormalizedSubscriptionView:
        return format_subscription(self.local, self.remote, self.item, self.flags)


@dataclass(slots=True)
class SubscriptionReconciler:
    """Builds the merged billing read model for a billable account."""

    repository: SubscriptionRepository
    provider: PaymentProvider
    subscription_name: str = "default"
    plan_limit: int = 100
    invoice_limit: int = 24
    max_workers: int = 8
    clock: Callable[[], datetime] = _utcnow

    def require_account(self, account_id: str) -> BillableAccount:
        account = self.repository.find_account(account_id)
        if account is None:
            raise NotFoundError(f"Billable account {account_id} not found")
        return account

    def find_local(self, account: BillableAccount) -> Optional[LocalSubscription]:
        return self.repository.find_by_account(account.id, self.subscription_name)

    def reconcile(self, local: LocalSubscription) -> ReconciledSubscription:
        """Fetch the provider subscription and merge it with ``local``."""

        try:
            payload = self.provider.get_subscription(local.provider_id)
        except ProviderLookupError:
            logger.error(
                "Provider subscription referenced by local record is missing",
                extra={"subscription_id": local.id, "provider_id": local.provider_id},
            )
            raise

        remote = RemoteSubscription.from_provider(payload)
        item = self._resolve_item(local, remote)
        now = self.clock()
        flags = subscription_flags(local, remote, now=now, item=item)

        drift = detect_drift(local, remote, now=now)
        if drift:
            logger.warning(
                "Subscription drift detected for %s: %s",
                local.id,
                "; ".join(drift),
                extra={"subscription_id": local.id, "provider_id": local.provider_id},
            )
        return ReconciledSubscription(local=local, remote=remote, item=item, flags=flags)

    def overview(self, account_id: str, *, brief: bool = False) -> BillingOverview:
        account = self.require_account(account_id)
        local = self.find_local(account)
        if local is None:
            return BillingOverview(subscription=None)

        if brief:
            return BillingOverview(account=account, subscription=self.reconcile(local).to_view())

        customer_id = account.provider_customer_id
        with ThreadPoolExecutor(max_workers=max(1, self.max_workers)) as executor:
            subscription_future = executor.submit(self.reconcile, local)
            plans_future = executor.submit(self.provider.list_plans, limit=self.plan_limit)
            cards_future: Optional[Future] = None
            invoices_future: Optional[Future] = None
            charges_future: Optional[Future] = None
            if customer_id:
                cards_future = executor.submit(self.provider.list_payment_methods, customer_id)
                invoices_future = executor.submit(
                    self.provider.list_invoices, customer_id, limit=self.invoice_limit
                )
                charges_future = executor.submit(self.provider.list_charges, customer_id)

            addons = self.addon_views(account)

            charges = list(charges_future.result()) if charges_future else []
            dispute_futures = {
                charge_id: executor.submit(self.provider.get_dispute, dispute_id)
                for charge_id, dispute_id in dispute_ids(charges).items()
            }

            reconciled = subscription_future.result()
            plans = plans_future.result()
            cards = cards_future.result() if cards_future else []
            invoices = invoices_future.result() if invoices_future else []
            disputes: Dict[str, Mapping[str, Any]] = {
                charge_id: future.result() for charge_id, future in dispute_futures.items()
            }

        return BillingOverview(
            account=account,
            subscription=reconciled.to_view(),
            cards=format_cards(cards, account.default_payment_method_id),
            invoices=format_invoices(invoices),
            charges=format_charges(charges, disputes),
            addon_subscriptions=addons,
            plans=format_plans(list(plans)[: self.plan_limit]),
        )

    def addon_view(self, addon: AddonSubscription) -> AddonSubscriptionView:
        flags = addon_flags(addon, now=self.clock())
        return AddonSubscriptionView(
            **addon.model_dump(exclude={"provider_item_id"}),
            **flags.model_dump(),
        )

    def addon_views(self, account: BillableAccount) -> List[AddonSubscriptionView]:
        return [self.addon_view(addon) for addon in self.repository.list_addons_to_settle(account.id)]

    def _resolve_item(self, local: LocalSubscription, remote: RemoteSubscription) -> RemoteSubscriptionItem:
        item = remote.find_item(local.provider_item_id)
        if item is None and remote.items_truncated:
            for row in self.provider.list_subscription_items(remote.id):
                candidate = RemoteSubscriptionItem.from_provider(row)
                if candidate.id == local.provider_item_id:
                    item = candidate
                    break

        if item is None:
            logger.error(
                "Subscription item %s not found on provider subscription %s",
                local.provider_item_id,
                remote.id,
                extra={"subscription_id": local.id, "provider_id": remote.id},
            )
            raise PlanResolutionError(
                f"Subscription item {local.provider_item_id} is not part of provider subscription {remote.id}",
                detail={"subscription_id": local.id, "provider_item_id": local.provider_item_id},
            )
        return item


__all__ = [
    "AddonLifecycle",
    "BillingEventSink",
    "PaymentProvider",
    "ReconciledSubscription",
    "SubscriptionReconciler",
    "SubscriptionRepository",
    "TaskDispatcher",
]
