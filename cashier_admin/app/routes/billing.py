"""API routes exposing cashier administration functionality."""
from __future__ import annotations

import os
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Cookie, Depends, Query

from ..billing import BackgroundTaskDispatcher, BillingAdminError, BillingOverview
from ..schemas.billing import (
    AddonSubscriptionResponse,
    CancelSubscriptionRequest,
    RefundChargeRequest,
    RefundResponse,
    SubscriptionResponse,
    SwapSubscriptionRequest,
)
from ..services.billing import get_command_handler, get_reconciler

try:
    from cashier_admin import app_context
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "cashier_admin":
        raise
    from ... import app_context  # type: ignore[no-redef]


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_admin(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_admin(session_token=session_token)


router = APIRouter(prefix="/api/cashier", tags=["cashier"])


@router.get("/accounts/{account_id}/billing", response_model=BillingOverview)
def read_billing_overview(
    account_id: str,
    brief: bool = Query(False),
    *,
    current_admin=Depends(_get_current_admin),
) -> BillingOverview:
    reconciler = get_reconciler()
    try:
        return reconciler.overview(account_id, brief=brief)
    except BillingAdminError as exc:
        raise exc.to_http_exception() from exc


@router.post("/accounts/{account_id}/subscription/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    account_id: str,
    payload: Optional[CancelSubscriptionRequest] = None,
    *,
    current_admin=Depends(_get_current_admin),
) -> SubscriptionResponse:
    handler = get_command_handler()
    immediate = bool(payload and payload.now)
    try:
        subscription = handler.cancel(account_id, immediate=immediate)
    except BillingAdminError as exc:
        raise exc.to_http_exception() from exc
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/accounts/{account_id}/subscription/swap", response_model=SubscriptionResponse)
def swap_subscription(
    account_id: str,
    payload: SwapSubscriptionRequest,
    *,
    current_admin=Depends(_get_current_admin),
) -> SubscriptionResponse:
    handler = get_command_handler()
    try:
        subscription = handler.swap(account_id, payload.plan)
    except BillingAdminError as exc:
        raise exc.to_http_exception() from exc
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/accounts/{account_id}/subscription/resume", response_model=SubscriptionResponse)
def resume_subscription(
    account_id: str,
    *,
    current_admin=Depends(_get_current_admin),
) -> SubscriptionResponse:
    handler = get_command_handler()
    try:
        subscription = handler.resume(account_id)
    except BillingAdminError as exc:
        raise exc.to_http_exception() from exc
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/accounts/{account_id}/addons/{addon_id}/cancel", response_model=AddonSubscriptionResponse)
def cancel_addon(
    account_id: str,
    addon_id: str,
    background_tasks: BackgroundTasks,
    *,
    current_admin=Depends(_get_current_admin),
) -> AddonSubscriptionResponse:
    handler = get_command_handler()
    try:
        view = handler.cancel_addon(
            account_id,
            addon_id,
            dispatcher=BackgroundTaskDispatcher(background_tasks),
        )
    except BillingAdminError as exc:
        raise exc.to_http_exception() from exc
    return AddonSubscriptionResponse.from_view(view)


@router.post("/accounts/{account_id}/addons/{addon_id}/resume", response_model=AddonSubscriptionResponse)
def resume_addon(
    account_id: str,
    addon_id: str,
    background_tasks: BackgroundTasks,
    *,
    current_admin=Depends(_get_current_admin),
) -> AddonSubscriptionResponse:
    handler = get_command_handler()
    try:
        view = handler.resume_addon(
            account_id,
            addon_id,
            dispatcher=BackgroundTaskDispatcher(background_tasks),
        )
    except BillingAdminError as exc:
        raise exc.to_http_exception() from exc
    return AddonSubscriptionResponse.from_view(view)


@router.post("/charges/{charge_id}/refund", response_model=RefundResponse)
def refund_charge(
    charge_id: str,
    payload: Optional[RefundChargeRequest] = None,
    *,
    current_admin=Depends(_get_current_admin),
) -> RefundResponse:
    handler = get_command_handler()
    request = (payload or RefundChargeRequest()).to_refund_request(charge_id)
    try:
        refund = handler.refund(request)
    except BillingAdminError as exc:
        raise exc.to_http_exception() from exc
    return RefundResponse.from_refund(refund)
