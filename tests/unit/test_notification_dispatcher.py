"""Unit tests for NotificationDispatcher."""

import json
from unittest.mock import Mock, patch

import pytest

from iap_reconciler.models import DownstreamConfig, EntitlementState, PurchaseKind, SignalSource, Transition
from iap_reconciler.services.notification_dispatcher import NotificationDispatcher

TOPIC_PATH = "projects/example-project/topics/entitlement-transitions"


def _transition(**overrides):
    values = dict(
        lineage_id="lin_1",
        user_id="user-1",
        product_id="premium_monthly",
        package_name="com.example.app",
        purchase_kind=PurchaseKind.SUBSCRIPTION,
        token="token-1",
        old_state=EntitlementState.ACTIVE,
        new_state=EntitlementState.CANCELED,
        expiry_time_millis=1_702_592_000_000,
        acknowledged=True,
        source=SignalSource.NOTIFICATION,
        signal_id="msg-1",
        event_time_millis=1_700_000_000_000,
        reason="cancel_requested",
    )
    values.update(overrides)
    return Transition(**values)


def _enabled_config():
    return DownstreamConfig(enabled=True, project_id="example-project", topic="entitlement-transitions")


@pytest.fixture
def mock_publisher():
    publisher = Mock()
    publisher.topic_path.return_value = TOPIC_PATH
    publisher.publish.return_value = Mock()
    return publisher


class TestDispatcherInitialization:
    """Test NotificationDispatcher initialization and configuration."""

    def test_disabled_by_default(self):
        dispatcher = NotificationDispatcher(DownstreamConfig())

        assert not dispatcher.is_enabled()

    def test_enabled_with_publisher(self, mock_publisher):
        dispatcher = NotificationDispatcher(_enabled_config(), publisher=mock_publisher)

        assert dispatcher.is_enabled()
        mock_publisher.topic_path.assert_called_once_with("example-project", "entitlement-transitions")
        mock_publisher.get_topic.assert_called_once_with(request={"topic": TOPIC_PATH})

    @patch("iap_reconciler.services.notification_dispatcher.pubsub_v1.PublisherClient")
    def test_creates_client_from_config(self, mock_publisher_class, mock_publisher):
        mock_publisher_class.return_value = mock_publisher

        dispatcher = NotificationDispatcher(_enabled_config())

        assert dispatcher.is_enabled()
        mock_publisher_class.assert_called_once()

    def test_missing_topic_creates_it(self, mock_publisher):
        mock_publisher.get_topic.side_effect = Exception("NotFound")
        mock_publisher.create_topic.return_value.name = TOPIC_PATH

        dispatcher = NotificationDispatcher(_enabled_config(), publisher=mock_publisher)

        assert dispatcher.is_enabled()
        mock_publisher.create_topic.assert_called_once_with(request={"name": TOPIC_PATH})

    def test_init_failure_disables_publishing(self, mock_publisher):
        mock_publisher.topic_path.side_effect = Exception("no credentials")

        dispatcher = NotificationDispatcher(_enabled_config(), publisher=mock_publisher)

        assert not dispatcher.is_enabled()

    def test_misconfigured_stays_disabled(self, mock_publisher):
        dispatcher = NotificationDispatcher(DownstreamConfig(enabled=True), publisher=mock_publisher)

        assert not dispatcher.is_enabled()
        mock_publisher.topic_path.assert_not_called()


class TestDispatch:
    """Test transition fan-out."""

    def test_publishes_transition_json_with_attributes(self, mock_publisher):
        dispatcher = NotificationDispatcher(_enabled_config(), publisher=mock_publisher)

        dispatcher.dispatch(_transition())

        args, kwargs = mock_publisher.publish.call_args
        assert args[0] == TOPIC_PATH
        payload = json.loads(args[1].decode("utf-8"))
        assert payload["lineage_id"] == "lin_1"
        assert payload["new_state"] == int(EntitlementState.CANCELED)
        assert kwargs == {"new_state": "CANCELED", "package_name": "com.example.app", "lineage_id": "lin_1"}
        mock_publisher.publish.return_value.add_done_callback.assert_called_once()
        assert dispatcher.dispatched == 1

    def test_subscribers_receive_transitions_when_pubsub_disabled(self):
        dispatcher = NotificationDispatcher(DownstreamConfig())
        received = []
        dispatcher.subscribe(received.append)

        transition = _transition()
        dispatcher.dispatch(transition)

        assert received == [transition]

    def test_unsubscribe(self):
        dispatcher = NotificationDispatcher(DownstreamConfig())
        received = []
        dispatcher.subscribe(received.append)
        dispatcher.unsubscribe(received.append)

        dispatcher.dispatch(_transition())

        assert received == []

    def test_publish_exception_is_contained(self, mock_publisher):
        mock_publisher.publish.side_effect = Exception("Pub/Sub error")
        dispatcher = NotificationDispatcher(_enabled_config(), publisher=mock_publisher)

        dispatcher.dispatch(_transition())

        assert dispatcher.dispatched == 1

    def test_failed_publish_future_is_logged_not_raised(self, mock_publisher):
        dispatcher = NotificationDispatcher(_enabled_config(), publisher=mock_publisher)
        dispatcher.dispatch(_transition())
        callback = mock_publisher.publish.return_value.add_done_callback.call_args[0][0]

        failed = Mock()
        failed.result.side_effect = Exception("deadline exceeded")
        callback(failed)

    def test_subscriber_exception_is_contained(self):
        dispatcher = NotificationDispatcher(DownstreamConfig())
        received = []
        dispatcher.subscribe(Mock(side_effect=RuntimeError("boom")))
        dispatcher.subscribe(received.append)

        dispatcher.dispatch(_transition())

        assert len(received) == 1


class TestShutdown:
    def test_shutdown_stops_publisher(self, mock_publisher):
        dispatcher = NotificationDispatcher(_enabled_config(), publisher=mock_publisher)

        dispatcher.shutdown()

        mock_publisher.stop.assert_called_once()
        assert not dispatcher.is_enabled()

    def test_shutdown_when_disabled(self):
        NotificationDispatcher(DownstreamConfig()).shutdown()
