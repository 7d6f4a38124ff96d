"""Response shapes of the verification authority (Android Publisher API v3).

Only the fields the reconciler reads are declared; unknown fields are ignored.
Numeric values arrive as strings, as in the real API.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ProductPurchase(BaseModel):
    """GET .../purchases/products/{productId}/tokens/{token}"""

    model_config = ConfigDict(extra="ignore")

    kind: str = Field(default="androidpublisher#productPurchase", description="Resource type")
    purchaseTimeMillis: Optional[str] = Field(None, description="Purchase time (Unix millis as string)")
    purchaseState: int = Field(..., description="Purchase state (0=purchased, 1=canceled, 2=pending)")
    consumptionState: int = Field(default=0, description="Consumption state (0=not consumed, 1=consumed)")
    orderId: Optional[str] = Field(None, description="Unique order ID")
    acknowledgementState: int = Field(default=0, description="Acknowledgement state (0=not acked, 1=acked)")
    purchaseToken: Optional[str] = Field(None, description="Purchase token")
    productId: Optional[str] = Field(None, description="Product SKU/ID")
    purchaseType: Optional[int] = Field(None, description="Purchase type (0=test, 1=promo, 2=rewarded)")


class SubscriptionPurchase(BaseModel):
    """GET .../purchases/subscriptions/{subscriptionId}/tokens/{token}"""

    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "example": {
                "kind": "androidpublisher#subscriptionPurchase",
                "startTimeMillis": "1700000000000",
                "expiryTimeMillis": "1702592000000",
                "autoRenewing": True,
                "paymentState": 1,
                "orderId": "GPA.1234-5678-9012-34567",
                "acknowledgementState": 0,
            }
        },
    )

    kind: str = Field(default="androidpublisher#subscriptionPurchase", description="Resource type")
    startTimeMillis: Optional[str] = Field(None, description="Subscription start time (Unix millis as string)")
    expiryTimeMillis: str = Field(..., description="Subscription expiry time (Unix millis as string)")
    autoResumeTimeMillis: Optional[str] = Field(None, description="Auto-resume time for paused subscriptions")
    autoRenewing: bool = Field(default=False, description="Whether subscription will auto-renew")
    paymentState: Optional[int] = Field(
        None, description="Payment state (0=pending, 1=received, 2=trial, 3=deferred)"
    )
    cancelReason: Optional[int] = Field(None, description="Cancel reason (0=user, 1=system, 2=replaced, 3=developer)")
    userCancellationTimeMillis: Optional[str] = Field(None, description="User cancellation time")
    orderId: Optional[str] = Field(None, description="Unique order ID")
    linkedPurchaseToken: Optional[str] = Field(None, description="Token of the purchase this one replaces")
    purchaseType: Optional[int] = Field(None, description="Purchase type (0=test, 1=promo, 2=rewarded)")
    acknowledgementState: int = Field(default=0, description="Acknowledgement state (0=not acked, 1=acked)")


class AuthorityErrorBody(BaseModel):
    """Error envelope returned by Google APIs."""

    model_config = ConfigDict(extra="ignore")

    code: Optional[int] = None
    message: Optional[str] = None
    status: Optional[str] = None
