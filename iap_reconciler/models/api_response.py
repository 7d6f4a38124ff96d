"""API response models for the inbound endpoints."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .purchase import PurchaseRecord


def millis_to_datetime(millis: Optional[int]) -> Optional[datetime]:
    """Convert Unix millis to an aware UTC datetime."""
    if millis is None:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


class VerifyResponse(BaseModel):
    """Result of POST /verify."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "isValid": True,
                "expiryDate": "2024-01-01T00:00:00Z",
                "subscriptionType": "premium_monthly",
                "autoRenewing": True,
                "state": "ACTIVE",
                "lineageId": "lin_3f2b8c0e9d7a4e1f8a6b5c4d3e2f1a0b",
            }
        },
    )

    is_valid: bool = Field(..., alias="isValid")
    expiry_date: Optional[datetime] = Field(None, alias="expiryDate")
    subscription_type: Optional[str] = Field(None, alias="subscriptionType")
    auto_renewing: Optional[bool] = Field(None, alias="autoRenewing")
    state: Optional[str] = Field(None, description="Entitlement state name")
    lineage_id: Optional[str] = Field(None, alias="lineageId")
    outcome: Optional[str] = Field(None, description="What the reconciler did with this verification")


class SubscriptionStatusResponse(BaseModel):
    """Result of GET /subscription-status."""

    model_config = ConfigDict(populate_by_name=True)

    is_active: bool = Field(..., alias="isActive")
    expiry_date: Optional[datetime] = Field(None, alias="expiryDate")
    subscription_type: Optional[str] = Field(None, alias="subscriptionType")
    state: Optional[str] = None
    lineage_id: Optional[str] = Field(None, alias="lineageId")


class PurchaseRecordResponse(BaseModel):
    """Operator view of a purchase record."""

    record: PurchaseRecord
    entitled: bool


class UserEntitlementsResponse(BaseModel):
    """All records owned by a user."""

    user_id: str
    records: list[PurchaseRecordResponse]


class SweepResponse(BaseModel):
    """Result of a manual expiry sweep."""

    signals_emitted: int
    refreshed: int = 0
    skipped: int = 0
    ledger_entries_pruned: int
    outcomes: dict[str, int] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[dict] = Field(None, description="Additional error details")
