"""Domain models for the cashier administration layer."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Provider statuses after which a subscription can no longer be billed or resumed.
TERMINAL_STATUSES = frozenset({"canceled", "incomplete_expired"})


class BillableKind(str, Enum):
    """Entity type that owns subscriptions in the host application."""

    USER = "user"
    TEAM = "team"


class SubscriptionEventType(str, Enum):
    """Notification events emitted after lifecycle transitions."""

    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_UPDATED = "subscription_updated"


class BillableAccount(BaseModel):
    """Customer or team record owned by the host application."""

    id: str
    kind: BillableKind = BillableKind.USER
    name: Optional[str] = None
    email: Optional[str] = None
    provider_customer_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class LocalSubscription(BaseModel):
    """Subscription record persisted next to the billable account."""

    id: str
    account_id: str
    name: str = "default"
    provider_id: str
    provider_item_id: str
    provider_plan: str
    quantity: int = Field(default=1, ge=1)
    trial_ends_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class RemotePlan(BaseModel):
    """Plan attached to a provider subscription item."""

    id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    interval: Optional[str] = None
    interval_count: int = 1

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class RemoteSubscriptionItem(BaseModel):
    """Single line of a provider subscription."""

    id: str
    plan: RemotePlan
    quantity: int = 1
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def from_provider(cls, payload: Dict[str, Any]) -> "RemoteSubscriptionItem":
        # Price objects replace plans on newer API versions.
        plan_payload = payload.get("plan") or payload.get("price") or {}
        recurring = plan_payload.get("recurring") or {}
        amount = plan_payload.get("amount")
        if amount is None:
            amount = plan_payload.get("unit_amount")
        plan = RemotePlan(
            id=str(plan_payload.get("id") or ""),
            amount=amount,
            currency=plan_payload.get("currency"),
            interval=plan_payload.get("interval") or recurring.get("interval"),
            interval_count=int(plan_payload.get("interval_count") or recurring.get("interval_count") or 1),
        )
        return cls(
            id=str(payload["id"]),
            plan=plan,
            quantity=int(payload.get("quantity") or 1),
            current_period_start=payload.get("current_period_start"),
            current_period_end=payload.get("current_period_end"),
        )


class RemoteSubscription(BaseModel):
    """Live subscription object as returned by the payment provider.

    Timestamps stay as epoch seconds; they are only converted when the
    subscription is formatted for the wire.
    """

    id: str
    status: Optional[str] = None
    collection_method: Optional[str] = None
    billing_cycle_anchor: Optional[int] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    ended_at: Optional[int] = None
    days_until_due: Optional[int] = None
    items: List[RemoteSubscriptionItem] = Field(default_factory=list)
    items_truncated: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def from_provider(cls, payload: Dict[str, Any]) -> "RemoteSubscription":
        items_payload = payload.get("items") or {}
        if isinstance(items_payload, dict):
            item_rows = items_payload.get("data") or []
            truncated = bool(items_payload.get("has_more"))
        else:
            item_rows = list(items_payload)
            truncated = False

        return cls(
            id=str(payload["id"]),
            status=payload.get("status"),
            # API versions before 2019-10-17 call the collection method ``billing``.
            collection_method=payload.get("collection_method") or payload.get("billing"),
            billing_cycle_anchor=payload.get("billing_cycle_anchor"),
            current_period_start=payload.get("current_period_start"),
            current_period_end=payload.get("current_period_end"),
            cancel_at_period_end=bool(payload.get("cancel_at_period_end")),
            canceled_at=payload.get("canceled_at"),
            ended_at=payload.get("ended_at"),
            days_until_due=payload.get("days_until_due"),
            items=[RemoteSubscriptionItem.from_provider(row) for row in item_rows],
            items_truncated=truncated,
        )

    def find_item(self, item_id: str) -> Optional[RemoteSubscriptionItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    @property
    def is_terminated(self) -> bool:
        return self.status in TERMINAL_STATUSES or self.ended_at is not None


class SubscriptionStatusFlags(BaseModel):
    """Derived lifecycle facts shared by primary and add-on subscriptions."""

    ended: bool
    cancelled: bool
    active: bool
    on_trial: bool
    on_grace_period: bool

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class NormalizedSubscriptionView(BaseModel):
    """Merged read model of the local record and the provider subscription."""

    id: str
    account_id: str
    name: str
    provider_id: str
    provider_item_id: str
    quantity: int
    trial_ends_at: Optional[str] = None
    ends_at: Optional[str] = None
    updated_at: Optional[str] = None
    plan: str
    provider_plan: str
    plan_amount: Optional[int] = None
    plan_interval: Optional[str] = None
    plan_currency: Optional[str] = None
    ended: bool
    cancelled: bool
    active: bool
    on_trial: bool
    on_grace_period: bool
    charges_automatically: bool
    created_at: Optional[str] = None
    ended_at: Optional[str] = None
    current_period_start: Optional[str] = None
    current_period_end: Optional[str] = None
    days_until_due: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class AddonSubscription(BaseModel):
    """Secondary subscription purchased alongside the primary plan."""

    id: str
    account_id: str
    name: Optional[str] = None
    provider_id: str
    provider_item_id: Optional[str] = None
    provider_plan: str
    quantity: int = Field(default=1, ge=1)
    trial_ends_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class AddonSubscriptionView(BaseModel):
    """Add-on subscription annotated with its own derived facts."""

    id: str
    account_id: str
    name: Optional[str] = None
    provider_id: str
    provider_plan: str
    quantity: int
    trial_ends_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    created_at: datetime
    ended: bool
    cancelled: bool
    active: bool
    on_trial: bool
    on_grace_period: bool

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class AddonPlan(BaseModel):
    """Add-on plan definition with optional lifecycle side-effect handlers."""

    id: str
    name: str
    price: int = Field(default=0, ge=0)
    interval: str = "monthly"
    on_cancel: Optional[str] = None
    on_resume: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class RefundRequest(BaseModel):
    """Refund instruction for a single provider charge."""

    charge_id: str = Field(min_length=1)
    amount: Optional[int] = Field(default=None, gt=0)
    note: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("note")
    @classmethod
    def _blank_note_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None


class CardView(BaseModel):
    id: str
    is_default: bool
    name: Optional[str] = None
    last4: Optional[str] = None
    country: Optional[str] = None
    brand: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class InvoiceView(BaseModel):
    id: str
    total: Optional[int] = None
    attempted: bool = False
    charge_id: Optional[str] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ChargeView(BaseModel):
    id: str
    amount: Optional[int] = None
    amount_refunded: int = 0
    captured: bool = False
    paid: bool = False
    status: Optional[str] = None
    currency: Optional[str] = None
    dispute: Optional[Dict[str, Any]] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    created: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PlanView(BaseModel):
    id: str
    price: Optional[int] = None
    interval: Optional[str] = None
    currency: Optional[str] = None
    interval_count: int = 1

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class RefundView(BaseModel):
    id: str
    charge_id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingOverview(BaseModel):
    """Aggregated billing state returned by the account read endpoint."""

    account: Optional[BillableAccount] = None
    subscription: Optional[NormalizedSubscriptionView] = None
    cards: List[CardView] = Field(default_factory=list)
    invoices: List[InvoiceView] = Field(default_factory=list)
    charges: List[ChargeView] = Field(default_factory=list)
    addon_subscriptions: List[AddonSubscriptionView] = Field(default_factory=list)
    plans: List[PlanView] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionEvent(BaseModel):
    """Notification payload carrying a refreshed account snapshot."""

    event_type: SubscriptionEventType
    account_kind: BillableKind
    account: BillableAccount
    subscription_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)
