"""Tests for entitlement state change logging."""

from unittest.mock import Mock

import pytest

from iap_reconciler import state_logger
from iap_reconciler.models import EntitlementState, NotificationType
from iap_reconciler.utils.durations import MILLIS_PER_DAY


@pytest.fixture
def log(monkeypatch):
    """Replace the module logger with a mock."""
    mock = Mock()
    monkeypatch.setattr(state_logger, "logger", mock)
    return mock


class TestStateLoggerFunctions:
    def test_state_change(self, log):
        state_logger.log_entitlement_state_change(
            "token-1", "lin_1", EntitlementState.ACTIVE, EntitlementState.CANCELED, reason="cancel_requested"
        )

        event, = log.info.call_args[0]
        fields = log.info.call_args[1]
        assert event == "entitlement_state_changed"
        assert fields["lineage_id"] == "lin_1"
        assert fields["old_state"] == str(EntitlementState.ACTIVE)
        assert fields["reason"] == "cancel_requested"

    def test_expiry_change_reports_extension(self, log):
        old = 1_700_000_000_000
        state_logger.log_expiry_change("token-1", "lin_1", old, old + 30 * MILLIS_PER_DAY, reason="renewal")

        fields = log.info.call_args[1]
        assert fields["extension_days"] == 30
        assert fields["old_expiry"].startswith("2023-11-14T22:13:20")

    def test_expiry_change_for_lifetime_purchase(self, log):
        state_logger.log_expiry_change("token-1", "lin_1", None, None, reason="one_time")

        fields = log.info.call_args[1]
        assert fields["extension_days"] is None
        assert fields["new_expiry"] is None

    def test_auto_renew_change(self, log):
        state_logger.log_auto_renew_change("token-1", "lin_1", True, False, reason="cancel_requested")

        assert log.info.call_args[0] == ("auto_renew_changed",)
        assert log.info.call_args[1]["new_value"] is False

    def test_acknowledgment(self, log):
        state_logger.log_acknowledgment_change("token-1", "lin_1", attempts=2)

        assert log.info.call_args[1] == {"token": "token-1", "lineage_id": "lin_1", "attempts": 2}

    def test_discarded_signal(self, log):
        state_logger.log_signal_discarded("duplicate", "notification", "msg-1", reason="already processed")

        assert log.info.call_args[0] == ("signal_discarded",)

    def test_anomaly_is_a_warning(self, log):
        state_logger.log_transition_anomaly("lin_1", EntitlementState.EXPIRED, "renewal_confirmed", "verification", "n1")

        log.warning.assert_called_once()
        assert log.warning.call_args[0] == ("transition_anomaly",)


class TestReconcilerLogsTransitions:
    """The reconciler reports transitions and discards through the state logger."""

    def test_cancel_logs_state_change(self, log, reconciler, verification, notification, clock):
        reconciler.reconcile(verification())
        reconciler.reconcile(notification("token-1", NotificationType.SUBSCRIPTION_CANCELED, clock.now_millis(), "m1"))

        events = [c[0][0] for c in log.info.call_args_list]
        assert "entitlement_state_changed" in events
        assert "auto_renew_changed" in events

    def test_duplicate_logs_discard(self, log, reconciler, verification, notification, clock):
        reconciler.reconcile(verification())
        signal = notification("token-1", NotificationType.SUBSCRIPTION_CANCELED, clock.now_millis(), "m1")
        reconciler.reconcile(signal)
        reconciler.reconcile(signal)

        discards = [c for c in log.info.call_args_list if c[0][0] == "signal_discarded"]
        assert discards[-1][1]["outcome"] == "duplicate"
