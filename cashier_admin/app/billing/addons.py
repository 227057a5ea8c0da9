"""Add-on plan catalog, side-effect dispatch and default add-on lifecycle."""
from __future__ import annotations

import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from fastapi import BackgroundTasks

from .exceptions import InvalidStateError, PlanResolutionError
from .models import AddonPlan, AddonSubscription, BillableAccount, RemoteSubscription
from .service import PaymentProvider, SubscriptionRepository
from .status import addon_flags, current_period_bounds, epoch_to_datetime

logger = logging.getLogger("billing.addons")

AddonHandler = Callable[[BillableAccount, AddonSubscription], None]

_HANDLERS: Dict[str, AddonHandler] = {}


def register_addon_handler(key: str) -> Callable[[AddonHandler], AddonHandler]:
    """Register a side-effect handler that add-on plans can reference by key."""

    def decorator(func: AddonHandler) -> AddonHandler:
        if key in _HANDLERS and _HANDLERS[key] is not func:
            raise ValueError(f"Add-on handler {key!r} is already registered")
        _HANDLERS[key] = func
        return func

    return decorator


def get_addon_handler(key: Optional[str]) -> Optional[AddonHandler]:
    if not key:
        return None
    handler = _HANDLERS.get(key)
    if handler is None:
        logger.warning("Add-on plan references unknown handler %s", key)
    return handler


@register_addon_handler("log_addon_change")
def log_addon_change(account: BillableAccount, addon: AddonSubscription) -> None:
    logger.info(
        "Add-on subscription %s changed for account %s",
        addon.id,
        account.id,
        extra={"addon_plan": addon.provider_plan, "account_kind": account.kind.value},
    )


class AddonPlanCatalog:
    """Static table of add-on plans keyed by provider plan id."""

    def __init__(self, plans: Iterable[AddonPlan] = ()) -> None:
        self._plans: Dict[str, AddonPlan] = {plan.id: plan for plan in plans}

    @classmethod
    def from_definitions(cls, definitions: Iterable[Mapping[str, Any]]) -> "AddonPlanCatalog":
        return cls(AddonPlan.model_validate(dict(definition)) for definition in definitions)

    def find_plan(self, plan_id: str) -> Optional[AddonPlan]:
        return self._plans.get(plan_id)

    def __len__(self) -> int:
        return len(self._plans)


def _run_side_effect(func: AddonHandler, account: BillableAccount, addon: AddonSubscription) -> None:
    try:
        func(account, addon)
    except Exception:
        logger.exception(
            "Add-on side effect failed",
            extra={"account_id": account.id, "addon_id": addon.id},
        )


class BackgroundTaskDispatcher:
    """Runs side effects after the response using FastAPI background tasks."""

    def __init__(self, background_tasks: BackgroundTasks) -> None:
        self._background_tasks = background_tasks

    def submit(self, func: Callable[..., Any], *args: Any) -> None:
        self._background_tasks.add_task(_run_side_effect, func, *args)


class ExecutorTaskDispatcher:
    """Runs side effects on a shared executor outside the request cycle."""

    def __init__(self, executor: Executor) -> None:
        self._executor = executor

    def submit(self, func: Callable[..., Any], *args: Any) -> None:
        self._executor.submit(_run_side_effect, func, *args)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ProviderAddonLifecycle:
    """Cancels and resumes add-ons directly against their provider subscription."""

    provider: PaymentProvider
    repository: SubscriptionRepository
    clock: Callable[[], datetime] = _utcnow

    def cancel(self, addon: AddonSubscription, plan: AddonPlan) -> AddonSubscription:
        payload = self.provider.cancel_subscription(addon.provider_id, immediate=False)
        remote = RemoteSubscription.from_provider(payload)
        now = self.clock()

        if addon_flags(addon, now=now).on_trial:
            ends_at = addon.trial_ends_at
        else:
            item = remote.find_item(addon.provider_item_id) if addon.provider_item_id else None
            _, period_end = current_period_bounds(remote, item)
            ends_at = epoch_to_datetime(period_end)
            if ends_at is None:
                logger.warning(
                    "Provider reported no period end for cancelled add-on %s; local end date left unset",
                    addon.id,
                    extra={"addon_id": addon.id, "provider_id": addon.provider_id},
                )

        updated = addon.model_copy(update={"ends_at": ends_at})
        return self.repository.persist_addon(updated)

    def resume(self, addon: AddonSubscription, plan: AddonPlan) -> AddonSubscription:
        if addon_flags(addon, now=self.clock()).ended:
            raise InvalidStateError(
                f"Add-on subscription {addon.id} has ended and cannot be resumed",
                detail={"addon_id": addon.id},
            )

        item_id = addon.provider_item_id or self._find_item_id(addon)
        self.provider.update_subscription_plan(addon.provider_id, item_id=item_id, plan_id=plan.id)
        updated = addon.model_copy(update={"ends_at": None})
        return self.repository.persist_addon(updated)

    def _find_item_id(self, addon: AddonSubscription) -> str:
        remote = RemoteSubscription.from_provider(self.provider.get_subscription(addon.provider_id))
        for item in remote.items:
            if item.plan.id == addon.provider_plan:
                return item.id
        raise PlanResolutionError(
            f"Add-on plan {addon.provider_plan} is not part of provider subscription {remote.id}",
            detail={"addon_id": addon.id},
        )


__all__ = [
    "AddonHandler",
    "AddonPlanCatalog",
    "BackgroundTaskDispatcher",
    "ExecutorTaskDispatcher",
    "ProviderAddonLifecycle",
    "get_addon_handler",
    "log_addon_change",
    "register_addon_handler",
]
