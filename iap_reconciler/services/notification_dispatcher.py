"""Entitlement transition fan-out.

Responsibilities:
- Deliver every committed Transition to in-process subscribers
- Publish transitions as JSON to a Google Cloud Pub/Sub topic (optional)
- Manage the Pub/Sub client lifecycle

Delivery is best-effort: subscriber and publish failures are logged and
never reach the reconciler.
"""

from threading import RLock
from typing import Callable, List, Optional

from google.cloud import pubsub_v1

from iap_reconciler.logging_config import get_logger
from iap_reconciler.models.settings import DownstreamConfig
from iap_reconciler.models.signals import Transition
from iap_reconciler.utils.identifiers import mask_token

logger = get_logger(__name__)

TransitionSubscriber = Callable[[Transition], None]


class NotificationDispatcher:
    """Dispatches entitlement transitions to subscribers and Pub/Sub.

    Thread-safe.
    """

    def __init__(self, config: DownstreamConfig, publisher: Optional[pubsub_v1.PublisherClient] = None):
        """Initialize the dispatcher.

        Args:
            config: Downstream topic settings
            publisher: Pub/Sub publisher (created from config when enabled and not given)
        """
        self._lock = RLock()
        self._config = config
        self._subscribers: List[TransitionSubscriber] = []
        self._publisher: Optional[pubsub_v1.PublisherClient] = None
        self._topic_path: Optional[str] = None
        self._enabled = False
        self.dispatched = 0

        if config.enabled:
            self._initialize(publisher)
        else:
            logger.info("notification_dispatcher_pubsub_disabled")

    def _initialize(self, publisher: Optional[pubsub_v1.PublisherClient]) -> None:
        """Init Pub/Sub publisher from config."""
        if not self._config.project_id or not self._config.topic:
            logger.error("notification_dispatcher_misconfigured", message="project_id and topic are required")
            return

        try:
            self._publisher = publisher or pubsub_v1.PublisherClient()
            self._topic_path = self._publisher.topic_path(self._config.project_id, self._config.topic)
            self._ensure_topic_exists()
            self._enabled = True
            logger.info(
                "notification_dispatcher_initialized",
                project_id=self._config.project_id,
                topic=self._config.topic,
                topic_path=self._topic_path,
            )
        except Exception as e:
            logger.error(
                "notification_dispatcher_init_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            # Subscribers still receive transitions
            self._publisher = None
            self._enabled = False

    def _ensure_topic_exists(self) -> None:
        """Ensure the Pub/Sub topic exists, create it if it doesn't."""
        try:
            self._publisher.get_topic(request={"topic": self._topic_path})
            logger.info("pubsub_topic_exists", topic_path=self._topic_path)
        except Exception:
            topic = self._publisher.create_topic(request={"name": self._topic_path})
            logger.info("pubsub_topic_created", topic_path=topic.name)

    def is_enabled(self) -> bool:
        """Check whether Pub/Sub publishing is active."""
        return self._enabled and self._publisher is not None

    def subscribe(self, subscriber: TransitionSubscriber) -> None:
        """Register an in-process subscriber."""
        with self._lock:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: TransitionSubscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def dispatch(self, transition: Transition) -> None:
        """Fan a transition out. Never raises."""
        with self._lock:
            subscribers = list(self._subscribers)
            self.dispatched += 1

        for subscriber in subscribers:
            try:
                subscriber(transition)
            except Exception as e:
                logger.error(
                    "transition_subscriber_failed",
                    lineage_id=transition.lineage_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

        if self.is_enabled():
            self._publish(transition)

        logger.debug(
            "transition_dispatched",
            lineage_id=transition.lineage_id,
            old_state=transition.old_state.name if transition.old_state is not None else None,
            new_state=transition.new_state.name,
            subscribers=len(subscribers),
        )

    def _publish(self, transition: Transition) -> None:
        """Publish without waiting; the outcome is logged from the future callback."""
        message_data = transition.model_dump_json().encode("utf-8")
        try:
            future = self._publisher.publish(
                self._topic_path,
                message_data,
                # Attributes for subscription filters
                new_state=transition.new_state.name,
                package_name=transition.package_name,
                lineage_id=transition.lineage_id,
            )
        except Exception as e:
            logger.error(
                "transition_publish_failed",
                lineage_id=transition.lineage_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return

        lineage_id = transition.lineage_id
        token = mask_token(transition.token)

        def _on_published(done) -> None:
            try:
                message_id = done.result(timeout=self._config.publish_timeout_seconds)
                logger.debug("transition_published", lineage_id=lineage_id, message_id=message_id)
            except Exception as e:
                logger.error(
                    "transition_publish_failed",
                    lineage_id=lineage_id,
                    token=token,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        future.add_done_callback(_on_published)

    def shutdown(self) -> None:
        """Flush pending publishes and drop the publisher."""
        with self._lock:
            if self._publisher:
                logger.info("notification_dispatcher_shutting_down")
                try:
                    self._publisher.stop()
                except Exception as e:
                    logger.warning("notification_dispatcher_stop_failed", error=str(e))
                self._publisher = None
                self._topic_path = None
                self._enabled = False
                logger.info("notification_dispatcher_shutdown_complete")
