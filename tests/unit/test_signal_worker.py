"""Tests for the SignalWorker queue."""

from unittest.mock import Mock

import pytest

from iap_reconciler.models import EntitlementState, NotificationType
from iap_reconciler.services.reconciler import ReconcileConflict
from iap_reconciler.services.signal_worker import QueueFull, SignalWorker


class TestSignalWorker:
    async def test_processes_queued_signals(self, reconciler, verification, notification, clock):
        record = reconciler.reconcile(verification()).record
        worker = SignalWorker(reconciler, maxsize=10, workers=2)

        worker.enqueue(notification("token-1", NotificationType.SUBSCRIPTION_CANCELED, clock.now_millis(), "m1"))
        await worker.start()
        await worker.drain()
        await worker.stop()

        assert worker.processed == 1
        assert reconciler.store.get_by_lineage(record.lineage_id).state == EntitlementState.CANCELED
        assert not worker.running

    def test_full_queue_is_reported(self, reconciler, notification):
        worker = SignalWorker(reconciler, maxsize=1)
        worker.enqueue(notification("token-1", NotificationType.SUBSCRIPTION_CANCELED, 1, "m1"))

        with pytest.raises(QueueFull) as exc_info:
            worker.enqueue(notification("token-1", NotificationType.SUBSCRIPTION_CANCELED, 1, "m2"))
        assert exc_info.value.retryable
        assert worker.qsize() == 1

    def test_conflicts_are_counted_not_raised(self, notification):
        reconciler = Mock()
        reconciler.reconcile.side_effect = ReconcileConflict("lin_1", 5)
        worker = SignalWorker(reconciler)

        worker.process(notification("token-1", NotificationType.SUBSCRIPTION_CANCELED, 1, "m1"))

        assert worker.failed == 1
        assert worker.processed == 0

    def test_unexpected_errors_are_counted_not_raised(self, notification):
        reconciler = Mock()
        reconciler.reconcile.side_effect = RuntimeError("bug")
        worker = SignalWorker(reconciler)

        worker.process(notification("token-1", NotificationType.SUBSCRIPTION_CANCELED, 1, "m1"))

        assert worker.failed == 1
