"""Lifecycle commands for primary and add-on subscriptions."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .addons import AddonPlanCatalog, get_addon_handler
from .exceptions import InvalidStateError, LocalPersistenceError, NotFoundError
from .formatters import format_refund
from .models import (
    AddonPlan,
    AddonSubscription,
    AddonSubscriptionView,
    BillableAccount,
    BillableKind,
    LocalSubscription,
    RefundRequest,
    RefundView,
    RemoteSubscription,
    SubscriptionEvent,
    SubscriptionEventType,
)
from .service import (
    AddonLifecycle,
    BillingEventSink,
    PaymentProvider,
    SubscriptionReconciler,
    SubscriptionRepository,
    TaskDispatcher,
)
from .status import current_period_bounds, ensure_utc, epoch_to_datetime

logger = logging.getLogger("billing.commands")


@dataclass(slots=True)
class SubscriptionCommandHandler:
    """Executes remote-first lifecycle transitions.

    Each transition calls the provider first and only then persists the local
    record, so a provider failure leaves local state untouched. Writes for the
    same account must be serialized by the caller.
    """

    reconciler: SubscriptionReconciler
    event_sink: BillingEventSink
    addon_lifecycle: AddonLifecycle
    addon_catalog: AddonPlanCatalog
    dispatcher: TaskDispatcher
    account_kind: BillableKind = BillableKind.USER

    @property
    def repository(self) -> SubscriptionRepository:
        return self.reconciler.repository

    @property
    def provider(self) -> PaymentProvider:
        return self.reconciler.provider

    def _now(self) -> datetime:
        return self.reconciler.clock()

    def cancel(self, account_id: str, *, immediate: bool = False) -> LocalSubscription:
        account, local = self._load(account_id)
        payload = self.provider.cancel_subscription(local.provider_id, immediate=immediate)
        now = self._now()

        if immediate:
            ends_at: Optional[datetime] = now
        elif local.trial_ends_at is not None and ensure_utc(local.trial_ends_at) > now:
            ends_at = local.trial_ends_at
        else:
            remote = RemoteSubscription.from_provider(payload)
            _, period_end = current_period_bounds(remote, remote.find_item(local.provider_item_id))
            ends_at = epoch_to_datetime(period_end)
            if ends_at is None:
                logger.warning(
                    "Provider reported no period end for cancelled subscription %s; local end date left unset",
                    local.id,
                    extra={"subscription_id": local.id, "provider_id": local.provider_id},
                )

        updated = self._persist(local, {"ends_at": ends_at}, operation="cancel")
        logger.info(
            "Cancelled subscription %s immediate=%s ends_at=%s",
            updated.id,
            immediate,
            updated.ends_at,
            extra={"account_id": account.id, "provider_id": updated.provider_id},
        )
        self._emit(SubscriptionEventType.SUBSCRIPTION_CANCELLED, account, updated)
        return updated

    def resume(self, account_id: str) -> LocalSubscription:
        account, local = self._load(account_id)
        state = self.reconciler.reconcile(local)
        if state.flags.ended:
            raise InvalidStateError(
                f"Subscription {local.id} has ended and can no longer be resumed",
                detail={"subscription_id": local.id},
            )

        self.provider.update_subscription_plan(
            local.provider_id,
            item_id=local.provider_item_id,
            plan_id=local.provider_plan,
        )
        updated = self._persist(local, {"ends_at": None}, operation="resume")
        logger.info(
            "Resumed subscription %s on plan %s",
            updated.id,
            updated.provider_plan,
            extra={"account_id": account.id, "provider_id": updated.provider_id},
        )
        self._emit(SubscriptionEventType.SUBSCRIPTION_UPDATED, account, updated)
        return updated

    def swap(self, account_id: str, plan_id: str) -> LocalSubscription:
        if not plan_id:
            raise InvalidStateError("A plan is required to swap subscriptions")

        account, local = self._load(account_id)
        state = self.reconciler.reconcile(local)
        if state.flags.ended:
            raise InvalidStateError(
                f"Subscription {local.id} has ended; start a new subscription instead of swapping",
                detail={"subscription_id": local.id},
            )

        self.provider.update_subscription_plan(
            local.provider_id,
            item_id=local.provider_item_id,
            plan_id=plan_id,
        )
        updated = self._persist(
            local,
            {"provider_plan": plan_id, "ends_at": None},
            operation="swap",
        )
        logger.info(
            "Swapped subscription %s from %s to %s",
            updated.id,
            local.provider_plan,
            plan_id,
            extra={"account_id": account.id, "provider_id": updated.provider_id},
        )
        self._emit(SubscriptionEventType.SUBSCRIPTION_UPDATED, account, updated)
        return updated

    def cancel_addon(
        self,
        account_id: str,
        addon_id: str,
        *,
        dispatcher: Optional[TaskDispatcher] = None,
    ) -> AddonSubscriptionView:
        account, addon, plan = self._load_addon(account_id, addon_id)
        updated = self.addon_lifecycle.cancel(addon, plan)
        self._dispatch(plan.on_cancel, account, updated, dispatcher)
        return self.reconciler.addon_view(updated)

    def resume_addon(
        self,
        account_id: str,
        addon_id: str,
        *,
        dispatcher: Optional[TaskDispatcher] = None,
    ) -> AddonSubscriptionView:
        account, addon, plan = self._load_addon(account_id, addon_id)
        updated = self.addon_lifecycle.resume(addon, plan)
        self._dispatch(plan.on_resume, account, updated, dispatcher)
        return self.reconciler.addon_view(updated)

    def refund(self, request: RefundRequest) -> RefundView:
        metadata = {"notes": request.note} if request.note else None
        payload = self.provider.create_refund(
            request.charge_id,
            amount=request.amount,
            metadata=metadata,
        )
        refund = format_refund(payload)
        logger.info(
            "Refunded charge %s amount=%s",
            request.charge_id,
            refund.amount,
            extra={"refund_id": refund.id, "partial": request.amount is not None},
        )
        return refund

    def _load(self, account_id: str) -> Tuple[BillableAccount, LocalSubscription]:
        account = self.reconciler.require_account(account_id)
        local = self.reconciler.find_local(account)
        if local is None:
            raise NotFoundError(
                f"Account {account_id} has no {self.reconciler.subscription_name!r} subscription"
            )
        return account, local

    def _load_addon(
        self,
        account_id: str,
        addon_id: str,
    ) -> Tuple[BillableAccount, AddonSubscription, AddonPlan]:
        account = self.reconciler.require_account(account_id)
        addon = self.repository.find_addon_by_account_and_id(account.id, addon_id)
        if addon is None:
            raise NotFoundError(f"Add-on subscription {addon_id} not found for account {account_id}")

        plan = self.addon_catalog.find_plan(addon.provider_plan)
        if plan is None:
            raise NotFoundError(
                f"Add-on plan {addon.provider_plan} is not defined",
                detail={"addon_id": addon.id},
            )
        return account, addon, plan

    def _persist(
        self,
        local: LocalSubscription,
        changes: Dict[str, Any],
        *,
        operation: str,
    ) -> LocalSubscription:
        updated = local.model_copy(update={**changes, "updated_at": self._now()})
        try:
            return self.repository.persist(updated)
        except Exception as exc:
            logger.critical(
                "Provider %s succeeded but local subscription %s was not saved; local and remote state diverge",
                operation,
                local.id,
                extra={"provider_id": local.provider_id, "changes": {k: str(v) for k, v in changes.items()}},
            )
            raise LocalPersistenceError(
                f"Subscription {local.id} was updated at the provider but could not be saved locally",
                detail={"subscription_id": local.id, "operation": operation},
            ) from exc

    def _emit(
        self,
        event_type: SubscriptionEventType,
        account: BillableAccount,
        subscription: LocalSubscription,
    ) -> None:
        try:
            refreshed = self.repository.find_account(account.id) or account
            self.event_sink.emit(
                SubscriptionEvent(
                    event_type=event_type,
                    account_kind=self.account_kind,
                    account=refreshed,
                    subscription_id=subscription.id,
                    occurred_at=self._now(),
                )
            )
        except Exception:
            logger.exception(
                "Failed to emit %s event",
                event_type.value,
                extra={"account_id": account.id, "subscription_id": subscription.id},
            )

    def _dispatch(
        self,
        handler_key: Optional[str],
        account: BillableAccount,
        addon: AddonSubscription,
        dispatcher: Optional[TaskDispatcher],
    ) -> None:
        handler = get_addon_handler(handler_key)
        if handler is None:
            return
        (dispatcher or self.dispatcher).submit(handler, account, addon)


__all__ = ["SubscriptionCommandHandler"]
