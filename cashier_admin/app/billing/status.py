"""Derived lifecycle facts for primary and add-on subscriptions."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from .models import (
    AddonSubscription,
    LocalSubscription,
    RemoteSubscription,
    RemoteSubscriptionItem,
    SubscriptionStatusFlags,
)


def epoch_to_datetime(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def current_period_bounds(
    remote: RemoteSubscription,
    item: Optional[RemoteSubscriptionItem] = None,
) -> tuple[Optional[int], Optional[int]]:
    """Return the current period as epoch seconds.

    Newer provider API versions report the period on each subscription item
    rather than on the subscription itself, so the matched item is used as a
    fallback.
    """

    start = remote.current_period_start
    end = remote.current_period_end
    if item is not None:
        if start is None:
            start = item.current_period_start
        if end is None:
            end = item.current_period_end
    return start, end


def subscription_flags(
    local: LocalSubscription,
    remote: RemoteSubscription,
    *,
    now: datetime,
    item: Optional[RemoteSubscriptionItem] = None,
) -> SubscriptionStatusFlags:
    ends_at = ensure_utc(local.ends_at)
    trial_ends_at = ensure_utc(local.trial_ends_at)
    _, period_end_ts = current_period_bounds(remote, item)
    period_end = epoch_to_datetime(period_end_ts)

    ended = (ends_at is not None and ends_at <= now) or remote.is_terminated
    cancelled = remote.cancel_at_period_end or ends_at is not None

    access_until = ends_at or period_end
    within_period = access_until is not None and access_until > now

    active = not ended and (not cancelled or within_period)
    on_trial = trial_ends_at is not None and trial_ends_at > now
    on_grace_period = cancelled and not ended and within_period

    return SubscriptionStatusFlags(
        ended=ended,
        cancelled=cancelled,
        active=active,
        on_trial=on_trial,
        on_grace_period=on_grace_period,
    )


def addon_flags(addon: AddonSubscription, *, now: datetime) -> SubscriptionStatusFlags:
    ends_at = ensure_utc(addon.ends_at)
    trial_ends_at = ensure_utc(addon.trial_ends_at)

    cancelled = ends_at is not None
    on_grace_period = ends_at is not None and ends_at > now
    on_trial = trial_ends_at is not None and trial_ends_at > now
    ended = cancelled and not on_grace_period
    active = ends_at is None or on_trial or on_grace_period

    return SubscriptionStatusFlags(
        ended=ended,
        cancelled=cancelled,
        active=active and not ended,
        on_trial=on_trial,
        on_grace_period=on_grace_period,
    )


def detect_drift(
    local: LocalSubscription,
    remote: RemoteSubscription,
    *,
    now: datetime,
) -> List[str]:
    """List disagreements between the local record and the provider state."""

    reasons: List[str] = []
    ends_at = ensure_utc(local.ends_at)
    local_live = ends_at is None or ends_at > now

    if local_live and remote.is_terminated:
        reasons.append("provider subscription is terminated but local record is live")
    if not local_live and not remote.is_terminated:
        reasons.append("local record has ended but provider subscription is still live")
    if remote.cancel_at_period_end and ends_at is None:
        reasons.append("provider cancels at period end but local ends_at is unset")
    if local.provider_plan and (item := remote.find_item(local.provider_item_id)) is not None:
        if item.plan.id != local.provider_plan:
            reasons.append("local plan differs from provider item plan")
    return reasons


__all__ = [
    "addon_flags",
    "current_period_bounds",
    "detect_drift",
    "ensure_utc",
    "epoch_to_datetime",
    "subscription_flags",
]
