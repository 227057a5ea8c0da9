"""Pure mappings from provider payloads to normalized wire records."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .models import (
    CardView,
    ChargeView,
    InvoiceView,
    LocalSubscription,
    NormalizedSubscriptionView,
    PlanView,
    RefundView,
    RemoteSubscription,
    RemoteSubscriptionItem,
    SubscriptionStatusFlags,
)
from .status import current_period_bounds

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"


def format_datetime(value: Optional[int]) -> Optional[str]:
    """Render epoch seconds as a UTC date-time string."""

    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).strftime(DATETIME_FORMAT)


def format_date(value: Optional[int]) -> Optional[str]:
    """Render epoch seconds as a UTC date string."""

    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).strftime(DATE_FORMAT)


def _format_local_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    aware = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return aware.astimezone(timezone.utc).strftime(DATETIME_FORMAT)


def format_card(card: Mapping[str, Any], default_card_id: Optional[str] = None) -> CardView:
    # Payment methods nest card details under ``card``; legacy sources are flat.
    details: Mapping[str, Any] = card.get("card") or card
    billing_details = card.get("billing_details") or {}
    return CardView(
        id=str(card["id"]),
        is_default=default_card_id is not None and card["id"] == default_card_id,
        name=card.get("name") or billing_details.get("name"),
        last4=details.get("last4"),
        country=details.get("country"),
        brand=details.get("brand"),
        exp_month=details.get("exp_month"),
        exp_year=details.get("exp_year"),
    )


def format_cards(
    cards: Iterable[Mapping[str, Any]],
    default_card_id: Optional[str] = None,
) -> List[CardView]:
    return [format_card(card, default_card_id) for card in cards]


def format_invoice(invoice: Mapping[str, Any]) -> InvoiceView:
    return InvoiceView(
        id=str(invoice["id"]),
        total=invoice.get("total"),
        attempted=bool(invoice.get("attempted")),
        charge_id=invoice.get("charge"),
        currency=invoice.get("currency"),
        status=invoice.get("status"),
        period_start=format_date(invoice.get("period_start")),
        period_end=format_date(invoice.get("period_end")),
    )


def format_invoices(invoices: Iterable[Mapping[str, Any]]) -> List[InvoiceView]:
    return [format_invoice(invoice) for invoice in invoices]


def format_charge(
    charge: Mapping[str, Any],
    dispute: Optional[Mapping[str, Any]] = None,
) -> ChargeView:
    """Map a charge; ``dispute`` is the resolved dispute record, if any."""

    return ChargeView(
        id=str(charge["id"]),
        amount=charge.get("amount"),
        amount_refunded=int(charge.get("amount_refunded") or 0),
        captured=bool(charge.get("captured")),
        paid=bool(charge.get("paid")),
        status=charge.get("status"),
        currency=charge.get("currency"),
        dispute=dict(dispute) if dispute is not None else None,
        failure_code=charge.get("failure_code"),
        failure_message=charge.get("failure_message"),
        created=format_datetime(charge.get("created")),
    )


def format_charges(
    charges: Iterable[Mapping[str, Any]],
    disputes: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> List[ChargeView]:
    resolved = disputes or {}
    views: List[ChargeView] = []
    for charge in charges:
        dispute = resolved.get(str(charge["id"]))
        if dispute is None and isinstance(charge.get("dispute"), Mapping):
            dispute = charge["dispute"]
        views.append(format_charge(charge, dispute))
    return views


def format_plan(plan: Mapping[str, Any]) -> PlanView:
    return PlanView(
        id=str(plan["id"]),
        price=plan.get("amount"),
        interval=plan.get("interval"),
        currency=plan.get("currency"),
        interval_count=int(plan.get("interval_count") or 1),
    )


def format_plans(plans: Iterable[Mapping[str, Any]]) -> List[PlanView]:
    return [format_plan(plan) for plan in plans]


def format_refund(refund: Mapping[str, Any]) -> RefundView:
    metadata = refund.get("metadata") or {}
    return RefundView(
        id=str(refund["id"]),
        charge_id=str(refund.get("charge") or ""),
        amount=refund.get("amount"),
        currency=refund.get("currency"),
        status=refund.get("status"),
        metadata={str(key): str(value) for key, value in metadata.items()},
    )


def format_subscription(
    local: LocalSubscription,
    remote: RemoteSubscription,
    item: RemoteSubscriptionItem,
    flags: SubscriptionStatusFlags,
) -> NormalizedSubscriptionView:
    """Merge the local record, the matched remote item and derived facts."""

    period_start, period_end = current_period_bounds(remote, item)
    return NormalizedSubscriptionView(
        id=local.id,
        account_id=local.account_id,
        name=local.name,
        provider_id=local.provider_id,
        provider_item_id=local.provider_item_id,
        quantity=local.quantity,
        trial_ends_at=_format_local_datetime(local.trial_ends_at),
        ends_at=_format_local_datetime(local.ends_at),
        updated_at=_format_local_datetime(local.updated_at),
        plan=local.provider_plan,
        provider_plan=item.plan.id,
        plan_amount=item.plan.amount,
        plan_interval=item.plan.interval,
        plan_currency=item.plan.currency,
        ended=flags.ended,
        cancelled=flags.cancelled,
        active=flags.active,
        on_trial=flags.on_trial,
        on_grace_period=flags.on_grace_period,
        charges_automatically=remote.collection_method == "charge_automatically",
        created_at=format_datetime(remote.billing_cycle_anchor),
        ended_at=format_datetime(remote.ended_at),
        current_period_start=format_date(period_start),
        current_period_end=format_date(period_end),
        days_until_due=remote.days_until_due,
        cancel_at_period_end=remote.cancel_at_period_end,
        canceled_at=format_datetime(remote.canceled_at),
    )


def dispute_ids(charges: Iterable[Mapping[str, Any]]) -> Dict[str, str]:
    """Map charge id to dispute id for charges that reference a dispute."""

    mapping: Dict[str, str] = {}
    for charge in charges:
        dispute = charge.get("dispute")
        if isinstance(dispute, str) and dispute:
            mapping[str(charge["id"])] = dispute
    return mapping


__all__ = [
    "DATE_FORMAT",
    "DATETIME_FORMAT",
    "dispute_ids",
    "format_card",
    "format_cards",
    "format_charge",
    "format_charges",
    "format_date",
    "format_datetime",
    "format_invoice",
    "format_invoices",
    "format_plan",
    "format_plans",
    "format_refund",
    "format_subscription",
]
