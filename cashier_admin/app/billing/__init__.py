"""Billing domain package for inspecting and managing provider subscriptions."""

from .exceptions import (
    BillingAdminError,
    InvalidStateError,
    LocalPersistenceError,
    NotFoundError,
    PlanResolutionError,
    ProviderError,
    ProviderLookupError,
)
from .models import (
    AddonPlan,
    AddonSubscription,
    AddonSubscriptionView,
    BillableAccount,
    BillableKind,
    BillingOverview,
    CardView,
    ChargeView,
    InvoiceView,
    LocalSubscription,
    NormalizedSubscriptionView,
    PlanView,
    RefundRequest,
    RefundView,
    RemoteSubscription,
    RemoteSubscriptionItem,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatusFlags,
)
from .service import (
    AddonLifecycle,
    BillingEventSink,
    PaymentProvider,
    ReconciledSubscription,
    SubscriptionReconciler,
    SubscriptionRepository,
    TaskDispatcher,
)
from .addons import (
    AddonPlanCatalog,
    BackgroundTaskDispatcher,
    ExecutorTaskDispatcher,
    ProviderAddonLifecycle,
    register_addon_handler,
)
from .commands import SubscriptionCommandHandler

__all__ = [
    "AddonLifecycle",
    "AddonPlan",
    "AddonPlanCatalog",
    "AddonSubscription",
    "AddonSubscriptionView",
    "BackgroundTaskDispatcher",
    "BillableAccount",
    "BillableKind",
    "BillingAdminError",
    "BillingEventSink",
    "BillingOverview",
    "CardView",
    "ChargeView",
    "ExecutorTaskDispatcher",
    "InvalidStateError",
    "InvoiceView",
    "LocalPersistenceError",
    "LocalSubscription",
    "NormalizedSubscriptionView",
    "NotFoundError",
    "PaymentProvider",
    "PlanResolutionError",
    "PlanView",
    "ProviderAddonLifecycle",
    "ProviderError",
    "ProviderLookupError",
    "ReconciledSubscription",
    "RefundRequest",
    "RefundView",
    "RemoteSubscription",
    "RemoteSubscriptionItem",
    "SubscriptionCommandHandler",
    "SubscriptionEvent",
    "SubscriptionEventType",
    "SubscriptionReconciler",
    "SubscriptionRepository",
    "SubscriptionStatusFlags",
    "TaskDispatcher",
    "register_addon_handler",
]
