"""Acknowledgment scheduler.

Every transition into ACTIVE with an unacknowledged token schedules an
acknowledgment call. Calls are retried with exponential backoff (tenacity)
inside a wall-clock deadline; on success the record is marked acknowledged
through the reconciler. When attempts or the deadline run out an
AcknowledgmentOverdue alert is raised to the configured hooks and logged at
CRITICAL, since the platform refunds purchases that stay unacknowledged.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from iap_reconciler.logging_config import get_logger
from iap_reconciler.models.purchase import PurchaseKind
from iap_reconciler.models.settings import AcknowledgmentConfig
from iap_reconciler.models.signals import Transition
from iap_reconciler.repositories.entitlement_store import RecordNotFoundError
from iap_reconciler.services.publisher_api import PublisherApiClient, PublisherApiError
from iap_reconciler.services.reconciler import ReconcileConflict, Reconciler
from iap_reconciler.utils.identifiers import mask_token

logger = get_logger(__name__)


class AcknowledgmentOverdue(Exception):
    """Alert raised when a token could not be acknowledged in time.

    Passed to alert hooks rather than raised; the record keeps
    acknowledged = False.
    """

    retryable = False

    def __init__(
        self,
        lineage_id: str,
        token: str,
        product_id: str,
        attempts: int,
        last_error: Optional[str] = None,
        deadline_exceeded: bool = False,
    ):
        super().__init__(f"Acknowledgment for lineage {lineage_id} overdue after {attempts} attempt(s)")
        self.lineage_id = lineage_id
        self.token = token
        self.product_id = product_id
        self.attempts = attempts
        self.last_error = last_error
        self.deadline_exceeded = deadline_exceeded


AlertHook = Callable[[AcknowledgmentOverdue], None]


def _is_retryable(error: BaseException) -> bool:
    return bool(getattr(error, "retryable", False))


@dataclass
class _AckJob:
    lineage_id: str
    token: str
    product_id: str
    package_name: str
    purchase_kind: PurchaseKind


class AcknowledgmentScheduler:
    """Schedules and retries platform acknowledgments."""

    def __init__(
        self,
        api: PublisherApiClient,
        reconciler: Reconciler,
        config: AcknowledgmentConfig,
        alert_hooks: Optional[List[AlertHook]] = None,
    ):
        """Initialize the scheduler.

        Args:
            api: Client exposing acknowledge()
            reconciler: Used to mark records acknowledged
            config: Retry and deadline policy
            alert_hooks: Callables receiving AcknowledgmentOverdue alerts
        """
        self._api = api
        self._reconciler = reconciler
        self._config = config
        self._alert_hooks: List[AlertHook] = list(alert_hooks or [])
        self._in_flight: Dict[Tuple[str, str], asyncio.Task] = {}
        self._backlog: List[_AckJob] = []
        self._attempts: Dict[Tuple[str, str], int] = {}
        self.overdue: List[AcknowledgmentOverdue] = []

    def add_alert_hook(self, hook: AlertHook) -> None:
        self._alert_hooks.append(hook)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def on_transition(self, transition: Transition) -> None:
        """Reconciler listener: schedule acknowledgment when a transition needs one."""
        if transition.requires_acknowledgment:
            self.schedule_ack(
                transition.lineage_id,
                transition.token,
                product_id=transition.product_id,
                package_name=transition.package_name,
                purchase_kind=transition.purchase_kind,
            )

    def schedule_ack(
        self,
        lineage_id: str,
        token: str,
        product_id: str,
        package_name: str,
        purchase_kind: PurchaseKind = PurchaseKind.SUBSCRIPTION,
    ) -> bool:
        """Schedule an acknowledgment.

        Called from synchronous code. Without a running event loop the job
        waits in a backlog until start() is called.

        Returns:
            False if an acknowledgment for the token is already in flight
        """
        key = (lineage_id, token)
        if key in self._in_flight or any((j.lineage_id, j.token) == key for j in self._backlog):
            logger.debug("acknowledgment_coalesced", lineage_id=lineage_id, token=mask_token(token))
            return False

        job = _AckJob(lineage_id, token, product_id, package_name, purchase_kind)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._backlog.append(job)
            logger.info("acknowledgment_deferred", lineage_id=lineage_id, token=mask_token(token))
            return True

        self._start_job(loop, job)
        return True

    async def start(self) -> None:
        """Start jobs that were scheduled before the event loop was running."""
        loop = asyncio.get_running_loop()
        backlog, self._backlog = self._backlog, []
        for job in backlog:
            self._start_job(loop, job)

    def _start_job(self, loop: asyncio.AbstractEventLoop, job: _AckJob) -> None:
        key = (job.lineage_id, job.token)
        task = loop.create_task(self._run(job))
        self._in_flight[key] = task
        task.add_done_callback(lambda _: self._in_flight.pop(key, None))
        logger.info("acknowledgment_scheduled", lineage_id=job.lineage_id, token=mask_token(job.token))

    async def _run(self, job: _AckJob) -> None:
        key = (job.lineage_id, job.token)
        self._attempts[key] = 0
        last_error: Optional[BaseException] = None
        deadline_exceeded = False

        try:
            await asyncio.wait_for(self._acknowledge_with_retry(job), timeout=self._config.deadline_seconds)
        except asyncio.TimeoutError:
            deadline_exceeded = True
        except Exception as e:
            last_error = e
        else:
            self._mark_acknowledged(job)
            return
        finally:
            attempts = self._attempts.pop(key, 0)

        self._raise_overdue(
            AcknowledgmentOverdue(
                lineage_id=job.lineage_id,
                token=job.token,
                product_id=job.product_id,
                attempts=attempts,
                last_error=str(last_error) if last_error else None,
                deadline_exceeded=deadline_exceeded,
            )
        )

    async def _acknowledge_with_retry(self, job: _AckJob) -> None:
        key = (job.lineage_id, job.token)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=wait_exponential(
                multiplier=self._config.backoff_multiplier_seconds,
                max=self._config.backoff_max_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                self._attempts[key] += 1
                try:
                    await self._api.acknowledge(job.package_name, job.product_id, job.token, job.purchase_kind)
                except PublisherApiError as e:
                    logger.warning(
                        "acknowledgment_attempt_failed",
                        lineage_id=job.lineage_id,
                        token=mask_token(job.token),
                        attempt=self._attempts[key],
                        status_code=e.status_code,
                        retryable=e.retryable,
                        error=e.message,
                    )
                    raise

    def _mark_acknowledged(self, job: _AckJob) -> None:
        try:
            self._reconciler.mark_acknowledged(job.lineage_id, job.token)
        except (RecordNotFoundError, ReconcileConflict) as e:
            # The platform side is done; the next transition reschedules and is accepted again
            logger.error(
                "acknowledgment_not_recorded",
                lineage_id=job.lineage_id,
                token=mask_token(job.token),
                error=str(e),
            )

    def _raise_overdue(self, alert: AcknowledgmentOverdue) -> None:
        self.overdue.append(alert)
        logger.critical(
            "acknowledgment_overdue",
            lineage_id=alert.lineage_id,
            token=mask_token(alert.token),
            product_id=alert.product_id,
            attempts=alert.attempts,
            deadline_exceeded=alert.deadline_exceeded,
            last_error=alert.last_error,
        )
        for hook in list(self._alert_hooks):
            try:
                hook(alert)
            except Exception as e:
                logger.error("acknowledgment_alert_hook_failed", error=str(e), exc_info=True)

    async def wait_idle(self) -> None:
        """Wait until every in-flight acknowledgment finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight acknowledgments.

        Records keep acknowledged = False; the next transition reschedules them.
        """
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
        if tasks or self._backlog:
            logger.info("acknowledgment_scheduler_stopped", cancelled=len(tasks), backlog=len(self._backlog))
