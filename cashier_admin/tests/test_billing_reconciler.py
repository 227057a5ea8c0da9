"""Tests for the merged subscription read path."""
from __future__ import annotations

import logging
from datetime import timedelta

import pytest

from cashier_admin.app.billing import (
    AddonSubscription,
    LocalSubscription,
    NotFoundError,
    PlanResolutionError,
    ProviderError,
    ProviderLookupError,
)
from cashier_admin.app.billing.formatters import DATE_FORMAT


def test_account_without_subscription_returns_empty_overview(billing_env):
    overview = billing_env.reconciler.overview("acct_empty")

    assert overview.subscription is None
    assert overview.cards == []
    assert overview.plans == []
    assert billing_env.provider.calls == []


def test_unknown_account_raises_not_found(billing_env):
    with pytest.raises(NotFoundError) as excinfo:
        billing_env.reconciler.overview("acct_missing")

    assert excinfo.value.status_code == 404
    assert billing_env.provider.calls == []


def test_overview_merges_subscription_and_companion_lists(billing_env):
    overview = billing_env.reconciler.overview("acct_1")

    subscription = overview.subscription
    assert subscription is not None
    assert subscription.id == "1"
    assert subscription.plan == "plan_basic"
    assert subscription.provider_plan == "plan_basic"
    assert subscription.plan_amount == 1000
    assert subscription.plan_interval == "month"
    assert subscription.active is True
    assert subscription.ended is False
    assert subscription.cancelled is False
    assert subscription.on_trial is False
    assert subscription.on_grace_period is False
    assert subscription.charges_automatically is True
    assert subscription.current_period_end == billing_env.period_end.strftime(DATE_FORMAT)

    assert overview.account is not None and overview.account.id == "acct_1"
    assert [card.id for card in overview.cards] == ["pm_1", "pm_2"]
    assert [card.is_default for card in overview.cards] == [True, False]
    assert overview.cards[0].name == "Ada Lovelace"
    assert overview.invoices[0].charge_id == "ch_1"
    assert len(overview.plans) == 3

    charges = {charge.id: charge for charge in overview.charges}
    assert charges["ch_1"].dispute == {
        "id": "dp_1",
        "amount": 1000,
        "reason": "fraudulent",
        "status": "needs_response",
    }
    assert charges["ch_2"].dispute is None
    assert billing_env.provider.called("get_dispute") == [("dp_1",)]

    assert [addon.id for addon in overview.addon_subscriptions] == ["10"]
    assert overview.addon_subscriptions[0].active is True


def test_plan_pricing_comes_from_item_matching_local_item_id(billing_env):
    env = billing_env
    env.provider.subscriptions["sub_1"] = env.make_subscription(
        "sub_1",
        [env.make_item("si_other", "plan_pro"), env.make_item("si_1", "plan_basic")],
    )

    view = env.reconciler.overview("acct_1", brief=True).subscription

    assert view.provider_item_id == "si_1"
    assert view.provider_plan == "plan_basic"
    assert view.plan_amount == 1000


def test_truncated_item_list_is_paged_to_find_local_item(billing_env):
    env = billing_env
    env.provider.subscriptions["sub_1"] = env.make_subscription(
        "sub_1",
        [env.make_item("si_other", "plan_pro")],
        has_more=True,
    )
    env.provider.extra_items["sub_1"] = [env.make_item("si_1", "plan_basic")]

    view = env.reconciler.overview("acct_1", brief=True).subscription

    assert view.plan_amount == 1000
    assert env.provider.called("list_subscription_items") == [("sub_1",)]


def test_missing_item_raises_plan_resolution_error(billing_env, caplog):
    env = billing_env
    env.provider.subscriptions["sub_1"] = env.make_subscription("sub_1", [env.make_item("si_other", "plan_pro")])
    caplog.set_level(logging.ERROR, logger="billing.reconciler")

    with pytest.raises(PlanResolutionError) as excinfo:
        env.reconciler.overview("acct_1", brief=True)

    assert excinfo.value.status_code == 409
    assert "si_1" in caplog.text


def test_missing_provider_subscription_raises_lookup_error(billing_env):
    del billing_env.provider.subscriptions["sub_1"]

    with pytest.raises(ProviderLookupError):
        billing_env.reconciler.overview("acct_1")


def test_brief_mode_skips_companion_lookups(billing_env):
    overview = billing_env.reconciler.overview("acct_1", brief=True)

    assert overview.subscription is not None
    assert overview.cards == []
    assert overview.invoices == []
    assert overview.charges == []
    assert overview.plans == []
    assert overview.addon_subscriptions == []
    assert [name for name, _ in billing_env.provider.calls] == ["get_subscription"]


def test_account_without_customer_skips_customer_lists(billing_env):
    env = billing_env
    env.repository.subscriptions[("acct_empty", "default")] = LocalSubscription(
        id="2",
        account_id="acct_empty",
        provider_id="sub_1",
        provider_item_id="si_1",
        provider_plan="plan_basic",
    )

    overview = env.reconciler.overview("acct_empty")

    assert overview.subscription is not None
    assert overview.cards == []
    assert overview.charges == []
    assert env.provider.called("list_charges") == []
    assert len(overview.plans) == 3


def test_plan_list_is_capped_by_limit(billing_env):
    billing_env.reconciler.plan_limit = 2

    overview = billing_env.reconciler.overview("acct_1")

    assert len(overview.plans) == 2


def test_terminated_remote_subscription_is_ended_and_logged_as_drift(billing_env, caplog):
    env = billing_env
    env.provider.subscriptions["sub_1"]["status"] = "canceled"
    env.provider.subscriptions["sub_1"]["ended_at"] = env.epoch(env.now - timedelta(days=1))
    caplog.set_level(logging.WARNING, logger="billing.reconciler")

    view = env.reconciler.overview("acct_1", brief=True).subscription

    assert view.ended is True
    assert view.active is False
    assert "drift" in caplog.text


def test_scheduled_cancellation_in_grace_period(billing_env):
    env = billing_env
    env.provider.subscriptions["sub_1"]["cancel_at_period_end"] = True
    local = env.repository.subscriptions[("acct_1", "default")]
    env.repository.subscriptions[("acct_1", "default")] = local.model_copy(update={"ends_at": env.period_end})

    view = env.reconciler.overview("acct_1", brief=True).subscription

    assert view.cancelled is True
    assert view.on_grace_period is True
    assert view.active is True
    assert view.ended is False


def test_ended_addons_are_not_listed(billing_env):
    env = billing_env
    env.repository.addons["11"] = AddonSubscription(
        id="11",
        account_id="acct_1",
        provider_id="sub_addon_2",
        provider_plan="addon_storage",
        ends_at=env.now - timedelta(days=2),
    )

    views = env.reconciler.addon_views(env.repository.accounts["acct_1"])

    assert [view.id for view in views] == ["10"]


@pytest.mark.parametrize(
    "method",
    ["list_payment_methods", "list_invoices", "list_charges", "list_plans", "get_dispute"],
)
def test_companion_lookup_failure_fails_whole_read(billing_env, method):
    billing_env.provider.failures[method] = ProviderError(f"{method} unavailable")

    with pytest.raises(ProviderError):
        billing_env.reconciler.overview("acct_1")


def test_missing_dispute_fails_whole_read(billing_env):
    del billing_env.provider.disputes["dp_1"]

    with pytest.raises(ProviderLookupError):
        billing_env.reconciler.overview("acct_1")


def test_incomplete_expired_remote_subscription_is_ended(billing_env):
    billing_env.provider.subscriptions["sub_1"]["status"] = "incomplete_expired"

    view = billing_env.reconciler.overview("acct_1", brief=True).subscription

    assert view.ended is True
    assert view.active is False
