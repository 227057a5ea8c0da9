"""API schemas for cashier administration endpoints."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    AddonSubscriptionView,
    LocalSubscription,
    RefundRequest,
    RefundView,
)


class CancelSubscriptionRequest(BaseModel):
    now: bool = False

    model_config = ConfigDict(populate_by_name=True)


class SwapSubscriptionRequest(BaseModel):
    plan: str = Field(min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class RefundChargeRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)
    notes: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    def to_refund_request(self, charge_id: str) -> RefundRequest:
        return RefundRequest(charge_id=charge_id, amount=self.amount, note=self.notes)


class SubscriptionResponse(BaseModel):
    subscription: LocalSubscription

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: LocalSubscription) -> "SubscriptionResponse":
        return cls(subscription=subscription)


class AddonSubscriptionResponse(BaseModel):
    addon: AddonSubscriptionView

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_view(cls, view: AddonSubscriptionView) -> "AddonSubscriptionResponse":
        return cls(addon=view)


class RefundResponse(BaseModel):
    refund: RefundView

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_refund(cls, refund: RefundView) -> "RefundResponse":
        return cls(refund=refund)
