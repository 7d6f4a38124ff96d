"""Lifecycle notification models.

Wire shapes of the push envelope and the Real-time Developer Notification
it carries, plus the decoded lifecycle events handed to the reconciler.
"""

from enum import IntEnum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class NotificationType(IntEnum):
    """RTDN subscription notification types matching Google Play values."""

    SUBSCRIPTION_RECOVERED = 1  # Subscription recovered from account hold
    SUBSCRIPTION_RENEWED = 2  # Subscription renewed
    SUBSCRIPTION_CANCELED = 3  # Subscription voluntarily canceled
    SUBSCRIPTION_PURCHASED = 4  # New subscription purchased
    SUBSCRIPTION_ON_HOLD = 5  # Entered account hold (payment failed)
    SUBSCRIPTION_IN_GRACE_PERIOD = 6  # In grace period (payment failed)
    SUBSCRIPTION_RESTARTED = 7  # Subscription restarted after pause or cancel
    SUBSCRIPTION_PRICE_CHANGE_CONFIRMED = 8  # User confirmed price change
    SUBSCRIPTION_DEFERRED = 9  # Subscription renewal deferred
    SUBSCRIPTION_PAUSED = 10  # Subscription paused by user
    SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED = 11  # Pause schedule changed
    SUBSCRIPTION_REVOKED = 12  # Subscription revoked before expiry
    SUBSCRIPTION_EXPIRED = 13  # Subscription expired


# Wire models accept both the camelCase keys Google publishes and snake_case.
_WIRE_CONFIG = ConfigDict(populate_by_name=True, extra="ignore")


class SubscriptionNotification(BaseModel):
    """Subscription notification payload within DeveloperNotification."""

    model_config = _WIRE_CONFIG

    version: str = Field(default="1.0", description="Notification version")
    notification_type: int = Field(..., alias="notificationType", description="Type of notification (1-13)")
    purchase_token: str = Field(..., alias="purchaseToken", min_length=1, description="Purchase token")
    subscription_id: str = Field(..., alias="subscriptionId", min_length=1, description="Subscription product ID")
    new_expiry_time_millis: Optional[int] = Field(
        None, alias="newExpiryTimeMillis", description="New expiry for deferred renewals"
    )
    auto_resume_time_millis: Optional[int] = Field(
        None, alias="autoResumeTimeMillis", description="Scheduled resume time for pauses"
    )


class OneTimeProductNotification(BaseModel):
    """One-time product notification payload within DeveloperNotification."""

    model_config = _WIRE_CONFIG

    version: str = Field(default="1.0", description="Notification version")
    notification_type: int = Field(..., alias="notificationType", description="Type of notification (1-2)")
    purchase_token: str = Field(..., alias="purchaseToken", description="Purchase token for the product")
    sku: str = Field(..., description="Product SKU/ID")


class TestNotification(BaseModel):
    """Test notification sent when the RTDN topic is configured."""

    model_config = _WIRE_CONFIG

    version: str = Field(default="1.0", description="Notification version")


class DeveloperNotification(BaseModel):
    """Root RTDN message carried base64-encoded in the push envelope."""

    model_config = _WIRE_CONFIG

    version: str = Field(default="1.0", description="Notification version")
    package_name: str = Field(..., alias="packageName", min_length=1, description="Android package name")
    event_time_millis: int = Field(..., alias="eventTimeMillis", ge=0, description="Event timestamp (Unix millis)")

    # Only one of these will be populated per notification
    subscription_notification: Optional[SubscriptionNotification] = Field(None, alias="subscriptionNotification")
    one_time_product_notification: Optional[OneTimeProductNotification] = Field(
        None, alias="oneTimeProductNotification"
    )
    test_notification: Optional[TestNotification] = Field(None, alias="testNotification")


class PushMessage(BaseModel):
    """Pub/Sub push message."""

    model_config = _WIRE_CONFIG

    data: str = Field(..., min_length=1, description="Base64 of the JSON DeveloperNotification")
    message_id: str = Field(..., alias="messageId", min_length=1, description="Pub/Sub message ID")
    publish_time: Optional[str] = Field(None, alias="publishTime", description="RFC 3339 publish time")
    attributes: dict[str, str] = Field(default_factory=dict)


class PushEnvelope(BaseModel):
    """Body of a Pub/Sub push request."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        json_schema_extra={
            "example": {
                "message": {
                    "data": "eyJwYWNrYWdlTmFtZSI6ICJjb20uZXhhbXBsZS5hcHAiLCAuLi59",
                    "messageId": "2070443601311540",
                    "publishTime": "2024-01-01T00:00:00.000Z",
                },
                "subscription": "projects/example/subscriptions/play-rtdn-push",
            }
        },
    )

    message: PushMessage
    subscription: Optional[str] = Field(None, description="Full subscription path")


class SubscriptionLifecycleEvent(BaseModel):
    """A decoded subscription lifecycle event of a known kind."""

    variant: Literal["lifecycle"] = "lifecycle"
    notification_type: NotificationType
    lineage_token: str = Field(..., description="Purchase token the event is about")
    product_id: str
    package_name: str
    event_time_millis: int
    message_id: str
    new_expiry_time_millis: Optional[int] = None
    auto_resume_time_millis: Optional[int] = None


class UnknownLifecycleEvent(BaseModel):
    """A subscription notification whose kind code is not recognized.

    Forwarded to the reconciler so new platform event types are logged
    instead of silently disappearing.
    """

    variant: Literal["unknown"] = "unknown"
    raw_notification_type: int
    lineage_token: str
    product_id: str
    package_name: str
    event_time_millis: int
    message_id: str


LifecycleEvent = Annotated[
    Union[SubscriptionLifecycleEvent, UnknownLifecycleEvent],
    Field(discriminator="variant"),
]
