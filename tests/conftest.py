"""Shared fixtures: a manual clock, a fresh store and reconciler, and signal builders."""

import base64
import json

import pytest

from iap_reconciler.models import (
    EntitlementState,
    NotificationSignal,
    NotificationType,
    PaymentState,
    PurchaseKind,
    PurchaseRecord,
    ReconcilerSettings,
    SubscriptionLifecycleEvent,
    VerificationResult,
)
from iap_reconciler.repositories.entitlement_store import EntitlementStore
from iap_reconciler.repositories.idempotency_ledger import IdempotencyLedger
from iap_reconciler.services.clock import ManualClock
from iap_reconciler.services.reconciler import Reconciler
from iap_reconciler.utils.durations import MILLIS_PER_DAY

START_MILLIS = 1_700_000_000_000
PACKAGE_NAME = "com.example.app"


@pytest.fixture
def clock():
    """Manual clock starting at a fixed instant."""
    return ManualClock(start_millis=START_MILLIS)


@pytest.fixture
def store():
    return EntitlementStore(IdempotencyLedger(8 * MILLIS_PER_DAY))


@pytest.fixture
def reconciler(store, clock):
    return Reconciler(store, clock, max_cas_retries=3)


@pytest.fixture
def make_result(clock):
    """Build a VerificationResult relative to the clock."""

    def _make(
        is_valid=True,
        expiry_in_days=30,
        auto_renewing=True,
        payment_state=PaymentState.RECEIVED,
        purchase_kind=PurchaseKind.SUBSCRIPTION,
        **overrides,
    ):
        now = clock.now_millis()
        fields = dict(
            is_valid=is_valid,
            purchase_kind=purchase_kind,
            expiry_time_millis=None if expiry_in_days is None else now + expiry_in_days * MILLIS_PER_DAY,
            auto_renewing=auto_renewing,
            payment_state=payment_state,
            order_id="GPA.1234-5678-9012-34567",
            verified_at_millis=now,
        )
        fields.update(overrides)
        return VerificationResult(**fields)

    return _make


@pytest.fixture
def verification(make_result):
    """Build a VerificationSignal; the result defaults to a valid 30-day subscription."""
    counter = {"n": 0}

    def _make(token="token-1", user_id="user-1", product_id="premium_monthly", result=None, signal_id=None):
        counter["n"] += 1
        result = result or make_result()
        return result.to_signal(
            signal_id=signal_id or f"nonce-{counter['n']}",
            token=token,
            product_id=product_id,
            package_name=PACKAGE_NAME,
            user_id=user_id,
        )

    return _make


@pytest.fixture
def notification():
    """Build a NotificationSignal for a subscription lifecycle event."""

    def _make(token, kind, event_time_millis, message_id, product_id="premium_monthly", **fields):
        event = SubscriptionLifecycleEvent(
            notification_type=kind,
            lineage_token=token,
            product_id=product_id,
            package_name=PACKAGE_NAME,
            event_time_millis=event_time_millis,
            message_id=message_id,
            **fields,
        )
        return NotificationSignal(
            signal_id=message_id,
            event_time_millis=event_time_millis,
            token=token,
            event=event,
        )

    return _make


@pytest.fixture
def make_record():
    """Build a PurchaseRecord directly (store tests)."""

    def _make(lineage_id="lin_test", token="token-1", user_id="user-1", state=EntitlementState.ACTIVE, **fields):
        values = dict(
            lineage_id=lineage_id,
            user_id=user_id,
            product_id="premium_monthly",
            package_name=PACKAGE_NAME,
            current_token=token,
            linked_tokens=[token],
            state=state,
            payment_state=PaymentState.RECEIVED,
            expiry_time_millis=START_MILLIS + 30 * MILLIS_PER_DAY,
            auto_renewing=True,
            created_millis=START_MILLIS,
            last_event_time_millis=START_MILLIS,
            state_entered_millis=START_MILLIS,
        )
        values.update(fields)
        return PurchaseRecord(**values)

    return _make


@pytest.fixture
def settings():
    """Settings for an in-process reconciler with fast retries."""
    return ReconcilerSettings(
        application={"package_name": PACKAGE_NAME, "one_time_products": ["lifetime_unlock"]},
        authority={
            "base_url": "https://authority.test",
            "access_token": "test-access-token",
            "reconnect_backoff_seconds": 0,
        },
        acknowledgment={"max_attempts": 5, "backoff_multiplier_seconds": 0, "deadline_seconds": 5},
        webhook={"verification_token": "push-secret", "workers": 1, "queue_size": 10},
        lifecycle={"pending_timeout": "P3D", "grace_period": "P3D", "account_hold": "P30D"},
    )


@pytest.fixture
def push_body():
    """Encode a developer notification into a push envelope body."""

    def _make(
        token="token-1",
        kind=NotificationType.SUBSCRIPTION_CANCELED,
        event_time_millis=START_MILLIS,
        message_id="msg-1",
        package_name=PACKAGE_NAME,
        subscription_id="premium_monthly",
        notification=None,
    ):
        if notification is None:
            notification = {
                "version": "1.0",
                "packageName": package_name,
                "eventTimeMillis": str(event_time_millis),
                "subscriptionNotification": {
                    "version": "1.0",
                    "notificationType": int(kind),
                    "purchaseToken": token,
                    "subscriptionId": subscription_id,
                },
            }
        data = base64.b64encode(json.dumps(notification).encode()).decode()
        return {
            "message": {"data": data, "messageId": message_id, "publishTime": "2023-11-14T22:13:20Z"},
            "subscription": "projects/example/subscriptions/play-rtdn-push",
        }

    return _make
