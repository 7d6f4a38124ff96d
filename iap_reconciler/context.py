"""Application context - the explicitly wired set of reconciler components.

One ReconcilerContext is built per application (and per test) from the
settings; nothing below holds module-level state.
"""

from dataclasses import dataclass
from typing import List, Optional

import httpx
from google.cloud import pubsub_v1

from iap_reconciler.logging_config import get_logger
from iap_reconciler.models.purchase import MAX_GRACE_PERIOD_MILLIS, PurchaseRecord
from iap_reconciler.models.settings import ReconcilerSettings
from iap_reconciler.repositories.entitlement_store import EntitlementStore
from iap_reconciler.repositories.idempotency_ledger import IdempotencyLedger
from iap_reconciler.services.ack_scheduler import AcknowledgmentScheduler, AlertHook
from iap_reconciler.services.authority_session import AuthoritySession
from iap_reconciler.services.clock import Clock
from iap_reconciler.services.expiry_sweeper import ExpirySweeper
from iap_reconciler.services.notification_decoder import NotificationDecoder, OidcVerifier, PushAuthenticator
from iap_reconciler.services.notification_dispatcher import NotificationDispatcher
from iap_reconciler.services.publisher_api import PublisherApiClient
from iap_reconciler.services.reconciler import Reconciler
from iap_reconciler.services.signal_worker import SignalWorker
from iap_reconciler.services.token_verifier import TokenVerifier
from iap_reconciler.utils.durations import parse_duration, parse_optional_duration

logger = get_logger(__name__)


@dataclass
class ReconcilerContext:
    """Every component of a running reconciler."""

    settings: ReconcilerSettings
    clock: Clock
    store: EntitlementStore
    reconciler: Reconciler
    session: AuthoritySession
    api: PublisherApiClient
    verifier: TokenVerifier
    decoder: NotificationDecoder
    scheduler: AcknowledgmentScheduler
    dispatcher: NotificationDispatcher
    worker: SignalWorker
    sweeper: ExpirySweeper

    @property
    def grace_period_millis(self) -> int:
        """Configured grace period, or the platform maximum when unset."""
        configured = parse_optional_duration(self.settings.lifecycle.grace_period)
        return MAX_GRACE_PERIOD_MILLIS if configured is None else configured

    def is_entitled(self, record: PurchaseRecord) -> bool:
        """Whether a record grants access now."""
        return record.is_entitled(self.clock.now_millis(), self.grace_period_millis)

    async def start(self, run_sweeper: bool = True) -> None:
        """Start background work (signal consumers, pending acks, sweep loop)."""
        await self.worker.start()
        await self.scheduler.start()
        if run_sweeper:
            self.sweeper.start()
        logger.info("reconciler_context_started", sweeper=run_sweeper)

    async def stop(self) -> None:
        """Stop background work and release the authority connection."""
        await self.sweeper.stop()
        await self.worker.stop()
        await self.scheduler.shutdown()
        self.dispatcher.shutdown()
        await self.session.close()
        logger.info("reconciler_context_stopped")


def build_context(
    settings: ReconcilerSettings,
    clock: Optional[Clock] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    publisher: Optional[pubsub_v1.PublisherClient] = None,
    oidc_verifier: Optional[OidcVerifier] = None,
    alert_hooks: Optional[List[AlertHook]] = None,
) -> ReconcilerContext:
    """Wire the components from settings.

    Args:
        settings: Validated configuration
        clock: Time source (system clock by default)
        transport: httpx transport for the authority (tests use httpx.MockTransport)
        publisher: Pub/Sub publisher for downstream transitions
        oidc_verifier: Replacement for google-auth OIDC verification
        alert_hooks: Receivers of AcknowledgmentOverdue alerts

    Returns:
        ReconcilerContext with listeners registered
    """
    clock = clock or Clock()

    ledger = IdempotencyLedger(parse_duration(settings.reconciler.ledger_retention))
    store = EntitlementStore(ledger)
    reconciler = Reconciler(store, clock, max_cas_retries=settings.reconciler.max_cas_retries)

    session = AuthoritySession(settings.authority, transport=transport)
    api = PublisherApiClient(session)
    verifier = TokenVerifier(api, clock, settings.application)

    authenticator = PushAuthenticator(settings.webhook, oidc_verifier=oidc_verifier)
    decoder = NotificationDecoder(settings.application.package_name, authenticator)

    scheduler = AcknowledgmentScheduler(api, reconciler, settings.acknowledgment, alert_hooks=alert_hooks)
    dispatcher = NotificationDispatcher(settings.downstream, publisher=publisher)
    reconciler.add_listener(scheduler.on_transition)
    reconciler.add_listener(dispatcher.dispatch)

    worker = SignalWorker(reconciler, maxsize=settings.webhook.queue_size, workers=settings.webhook.workers)
    sweeper = ExpirySweeper(reconciler, clock, settings.lifecycle, verifier=verifier)

    if settings.webhook.allow_unauthenticated:
        logger.warning("webhook_authentication_disabled")

    logger.info(
        "reconciler_context_built",
        package_name=settings.application.package_name,
        authority=settings.authority.base_url,
        downstream_enabled=settings.downstream.enabled,
    )
    return ReconcilerContext(
        settings=settings,
        clock=clock,
        store=store,
        reconciler=reconciler,
        session=session,
        api=api,
        verifier=verifier,
        decoder=decoder,
        scheduler=scheduler,
        dispatcher=dispatcher,
        worker=worker,
        sweeper=sweeper,
    )
