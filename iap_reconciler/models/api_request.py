"""API request models for the inbound endpoints."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .purchase import PurchaseKind


class VerifyRequest(BaseModel):
    """Client request to verify a purchase token."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "token": "opaque-purchase-token",
                "productId": "premium_monthly",
                "orderId": "GPA.1234-5678-9012-34567",
                "packageName": "com.example.app",
            }
        },
    )

    token: str = Field(..., min_length=1, description="Purchase token from the purchase client")
    product_id: str = Field(..., alias="productId", min_length=1, description="Catalog product ID")
    order_id: Optional[str] = Field(None, alias="orderId", description="Order ID reported by the client")
    package_name: str = Field(..., alias="packageName", min_length=1, description="Android package name")
    user_id: Optional[str] = Field(None, alias="userId", description="Owner; the X-User-Id header takes precedence")
    purchase_type: Optional[PurchaseKind] = Field(
        None, alias="purchaseType", description="Override subscription/one-time routing"
    )
    nonce: Optional[str] = Field(None, description="Idempotency nonce for this verification request")
