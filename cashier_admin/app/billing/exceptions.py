"""Error taxonomy surfaced by the cashier administration layer."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingAdminError(Exception):
    """Base error carrying an API-facing code and status."""

    message: str
    code: str = "billing_error"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass
class NotFoundError(BillingAdminError):
    """Account, subscription, add-on or plan does not exist for the caller."""

    code: str = "not_found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass
class ProviderError(BillingAdminError):
    """The payment provider rejected a call or returned an unexpected state."""

    code: str = "provider_error"
    status_code: int = status.HTTP_502_BAD_GATEWAY
    provider_payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderLookupError(ProviderError):
    """A provider object referenced by local state could not be found."""

    code: str = "provider_lookup_failed"


@dataclass
class PlanResolutionError(BillingAdminError):
    """The stored subscription item is missing from the provider subscription."""

    code: str = "plan_resolution_failed"
    status_code: int = status.HTTP_409_CONFLICT


@dataclass
class InvalidStateError(BillingAdminError):
    """Requested transition is not valid from the current subscription state."""

    code: str = "invalid_state"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class LocalPersistenceError(BillingAdminError):
    """Local write failed after the provider already applied the change."""

    code: str = "local_persistence_failed"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR


__all__ = [
    "BillingAdminError",
    "InvalidStateError",
    "LocalPersistenceError",
    "NotFoundError",
    "PlanResolutionError",
    "ProviderError",
    "ProviderLookupError",
]
