"""Pydantic models for configuration, records, signals and the HTTP API."""

# Configuration models
from .settings import (
    AcknowledgmentConfig,
    ApplicationConfig,
    AuthorityConfig,
    DownstreamConfig,
    LifecyclePolicy,
    ReconcilerSettings,
    ReconcilerTuning,
    WebhookConfig,
)

# Purchase record models
from .purchase import (
    ENTITLED_STATES,
    EntitlementState,
    PaymentState,
    ProductChange,
    PurchaseKind,
    PurchaseRecord,
    TokenChapter,
)

# Lifecycle notification models
from .events import (
    DeveloperNotification,
    LifecycleEvent,
    NotificationType,
    OneTimeProductNotification,
    PushEnvelope,
    PushMessage,
    SubscriptionLifecycleEvent,
    SubscriptionNotification,
    TestNotification,
    UnknownLifecycleEvent,
)

# Signals and transitions
from .signals import (
    NotificationSignal,
    ReconcileOutcome,
    Signal,
    SignalSource,
    SweepReason,
    SweeperSignal,
    Transition,
    VerificationResult,
    VerificationSignal,
)

# Verification authority responses
from .authority import ProductPurchase, SubscriptionPurchase

# HTTP API models
from .api_request import VerifyRequest
from .api_response import (
    ErrorResponse,
    PurchaseRecordResponse,
    SubscriptionStatusResponse,
    SweepResponse,
    UserEntitlementsResponse,
    VerifyResponse,
)

__all__ = [
    # Configuration
    "AcknowledgmentConfig",
    "ApplicationConfig",
    "AuthorityConfig",
    "DownstreamConfig",
    "LifecyclePolicy",
    "ReconcilerSettings",
    "ReconcilerTuning",
    "WebhookConfig",
    # Purchase records
    "ENTITLED_STATES",
    "EntitlementState",
    "PaymentState",
    "ProductChange",
    "PurchaseKind",
    "PurchaseRecord",
    "TokenChapter",
    # Notifications
    "DeveloperNotification",
    "LifecycleEvent",
    "NotificationType",
    "OneTimeProductNotification",
    "PushEnvelope",
    "PushMessage",
    "SubscriptionLifecycleEvent",
    "SubscriptionNotification",
    "TestNotification",
    "UnknownLifecycleEvent",
    # Signals
    "NotificationSignal",
    "ReconcileOutcome",
    "Signal",
    "SignalSource",
    "SweepReason",
    "SweeperSignal",
    "Transition",
    "VerificationResult",
    "VerificationSignal",
    # Authority
    "ProductPurchase",
    "SubscriptionPurchase",
    # API
    "VerifyRequest",
    "VerifyResponse",
    "SubscriptionStatusResponse",
    "PurchaseRecordResponse",
    "UserEntitlementsResponse",
    "SweepResponse",
    "ErrorResponse",
]
