"""Application wiring for the cashier administration services."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache

from ..billing import (
    AddonPlanCatalog,
    BillingEventSink,
    ExecutorTaskDispatcher,
    ProviderAddonLifecycle,
    SubscriptionCommandHandler,
    SubscriptionEvent,
    SubscriptionReconciler,
)
from ..billing.repository import PostgresSubscriptionRepository
from ..billing.stripe_provider import StripePaymentProvider

try:
    from cashier_admin.config import CashierConfig, load_cashier_config
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "cashier_admin":
        raise
    from ...config import CashierConfig, load_cashier_config  # type: ignore[no-redef]


logger = logging.getLogger("billing")


class LoggingBillingEventSink(BillingEventSink):
    """Event sink forwarding subscription lifecycle events to logging."""

    def emit(self, event: SubscriptionEvent) -> None:
        logger.info(
            "Billing event %s account=%s kind=%s subscription=%s",
            event.event_type.value,
            event.account.id,
            event.account_kind.value,
            event.subscription_id,
            extra={"account_email": event.account.email},
        )


@lru_cache(maxsize=1)
def get_cashier_config() -> CashierConfig:
    return load_cashier_config()


@lru_cache(maxsize=1)
def get_payment_provider() -> StripePaymentProvider:
    config = get_cashier_config()
    if not config.stripe_secret:
        raise RuntimeError("STRIPE_SECRET must be configured to reach the payment provider")
    return StripePaymentProvider(
        api_key=config.stripe_secret,
        api_version=config.stripe_api_version,
        read_attempts=config.read_attempts,
        backoff_seconds=config.retry_backoff,
    )


@lru_cache(maxsize=1)
def get_subscription_repository() -> PostgresSubscriptionRepository:
    return PostgresSubscriptionRepository(kind=get_cashier_config().billable_kind)


@lru_cache(maxsize=1)
def get_side_effect_executor() -> ThreadPoolExecutor:
    return ThreadPoolExecutor(max_workers=2, thread_name_prefix="addon-side-effects")


@lru_cache(maxsize=1)
def get_reconciler() -> SubscriptionReconciler:
    config = get_cashier_config()
    return SubscriptionReconciler(
        repository=get_subscription_repository(),
        provider=get_payment_provider(),
        subscription_name=config.subscription_name,
        plan_limit=config.plan_limit,
        invoice_limit=config.invoice_limit,
        max_workers=config.read_workers,
    )


@lru_cache(maxsize=1)
def get_command_handler() -> SubscriptionCommandHandler:
    config = get_cashier_config()
    reconciler = get_reconciler()
    handler = SubscriptionCommandHandler(
        reconciler=reconciler,
        event_sink=LoggingBillingEventSink(),
        addon_lifecycle=ProviderAddonLifecycle(
            provider=reconciler.provider,
            repository=reconciler.repository,
            clock=reconciler.clock,
        ),
        addon_catalog=AddonPlanCatalog.from_definitions(config.addon_plans),
        dispatcher=ExecutorTaskDispatcher(get_side_effect_executor()),
        account_kind=config.billable_kind,
    )
    return handler


__all__ = [
    "LoggingBillingEventSink",
    "get_cashier_config",
    "get_command_handler",
    "get_payment_provider",
    "get_reconciler",
    "get_subscription_repository",
]
