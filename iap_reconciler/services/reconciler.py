"""Reconciler - merges every signal into the entitlement store.

The reconciler is the only writer of purchase records. Each signal is
checked against the idempotency ledger, rejected if it is older than the
record, resolved through the transition table and written with a
compare-and-set on the record version. Committed changes are emitted as
Transitions to registered listeners (acknowledgment scheduler, dispatcher).

Signals for the same lineage are serialized by a per-lineage lock; the CAS
loop covers writers that reach the same record through a different token.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from iap_reconciler.logging_config import get_logger
from iap_reconciler.models.events import NotificationType, SubscriptionLifecycleEvent, UnknownLifecycleEvent
from iap_reconciler.models.purchase import EntitlementState, PaymentState, PurchaseRecord
from iap_reconciler.models.signals import (
    NotificationSignal,
    ReconcileOutcome,
    Signal,
    SweepReason,
    SweeperSignal,
    Transition,
    VerificationResult,
    VerificationSignal,
)
from iap_reconciler.repositories.entitlement_store import (
    ConcurrentModification,
    EntitlementStore,
)
from iap_reconciler.repositories.idempotency_ledger import LedgerKey
from iap_reconciler.services.clock import Clock
from iap_reconciler.services.lifecycle import Edge, resolve
from iap_reconciler.state_logger import (
    log_acknowledgment_change,
    log_auto_renew_change,
    log_entitlement_state_change,
    log_expiry_change,
    log_signal_discarded,
    log_transition_anomaly,
)
from iap_reconciler.utils.identifiers import generate_lineage_id, mask_token

logger = get_logger(__name__)

TransitionListener = Callable[[Transition], None]
RecordUpdate = Callable[[PurchaseRecord], None]

SWEEP_EDGES: Dict[SweepReason, Edge] = {
    SweepReason.EXPIRY_REACHED: Edge.EXPIRY_REACHED,
    SweepReason.PENDING_TIMEOUT: Edge.PAYMENT_ABANDONED,
    SweepReason.GRACE_EXHAUSTED: Edge.GRACE_EXHAUSTED,
    SweepReason.HOLD_EXHAUSTED: Edge.HOLD_EXHAUSTED,
}


class ReconcileConflict(Exception):
    """Raised when a write kept losing the compare-and-set race."""

    retryable = True

    def __init__(self, lineage_key: str, attempts: int):
        super().__init__(f"Gave up reconciling {lineage_key} after {attempts} conflicting writes")
        self.lineage_key = lineage_key
        self.attempts = attempts


@dataclass
class ReconcileResult:
    """What happened to a signal."""

    outcome: ReconcileOutcome
    record: Optional[PurchaseRecord] = None
    transition: Optional[Transition] = None
    reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome in (ReconcileOutcome.CREATED, ReconcileOutcome.APPLIED)


def notification_edge(state: EntitlementState, kind: NotificationType) -> Edge:
    """Map a lifecycle notification kind to a transition edge from a state."""
    if kind == NotificationType.SUBSCRIPTION_RECOVERED:
        return Edge.PAYMENT_RECOVERED
    if kind == NotificationType.SUBSCRIPTION_RENEWED:
        if state == EntitlementState.PENDING:
            return Edge.PAYMENT_RECEIVED
        if state in (EntitlementState.GRACE_PERIOD, EntitlementState.ON_HOLD):
            return Edge.PAYMENT_RECOVERED
        return Edge.RENEWAL_CONFIRMED
    if kind == NotificationType.SUBSCRIPTION_CANCELED:
        return Edge.CANCEL_REQUESTED
    if kind == NotificationType.SUBSCRIPTION_PURCHASED:
        return Edge.PAYMENT_RECEIVED if state == EntitlementState.PENDING else Edge.METADATA
    if kind == NotificationType.SUBSCRIPTION_ON_HOLD:
        return Edge.GRACE_EXHAUSTED
    if kind == NotificationType.SUBSCRIPTION_IN_GRACE_PERIOD:
        return Edge.PAYMENT_FAILED
    if kind == NotificationType.SUBSCRIPTION_RESTARTED:
        return Edge.RESTARTED if state == EntitlementState.CANCELED else Edge.RESUMED
    if kind == NotificationType.SUBSCRIPTION_PAUSED:
        return Edge.PAUSED
    if kind == NotificationType.SUBSCRIPTION_REVOKED:
        return Edge.REVOKED
    if kind == NotificationType.SUBSCRIPTION_EXPIRED:
        return Edge.EXPIRY_REACHED
    # Price change confirmed, pause schedule changed, deferred
    return Edge.METADATA


def verification_edge(record: PurchaseRecord, result: VerificationResult) -> Edge:
    """Map what the authority reports to a transition edge from the record's state."""
    state = record.state
    if not result.is_valid:
        if result.is_canceled_upstream:
            return Edge.REVOKED
        if result.will_renew:
            return _lapsed_edge(state, result)
        return Edge.EXPIRY_REACHED

    if not result.payment_state.grants_access:
        return Edge.PAYMENT_FAILED if state == EntitlementState.ACTIVE else Edge.METADATA

    if state == EntitlementState.PENDING:
        return Edge.PAYMENT_RECEIVED
    if state == EntitlementState.ACTIVE:
        if _extends(record.expiry_time_millis, result.expiry_time_millis):
            return Edge.RENEWAL_CONFIRMED
        if not result.auto_renewing and result.cancel_reason is not None:
            return Edge.CANCEL_REQUESTED
        return Edge.METADATA
    if state in (EntitlementState.GRACE_PERIOD, EntitlementState.ON_HOLD):
        return Edge.PAYMENT_RECOVERED
    if state == EntitlementState.PAUSED:
        return Edge.RESUMED
    if state == EntitlementState.CANCELED:
        return Edge.RESTARTED if result.auto_renewing else Edge.METADATA
    # Terminal: a valid answer never revives the closed token
    return Edge.METADATA


def _lapsed_edge(state: EntitlementState, result: VerificationResult) -> Edge:
    """Edge for a subscription past its expiry that is still set to renew.

    The platform reports the lapsed expiry during account hold and pause;
    only a later answer or notification decides whether it comes back.
    """
    if state in (EntitlementState.ON_HOLD, EntitlementState.PAUSED):
        return Edge.METADATA
    if state == EntitlementState.ACTIVE and result.auto_resume_time_millis is not None:
        return Edge.PAUSED
    if state in (EntitlementState.ACTIVE, EntitlementState.GRACE_PERIOD):
        return Edge.GRACE_EXHAUSTED
    return Edge.METADATA


def _extends(old_expiry: Optional[int], new_expiry: Optional[int]) -> bool:
    return old_expiry is not None and new_expiry is not None and new_expiry > old_expiry


def _initial_state(result: VerificationResult) -> EntitlementState:
    return EntitlementState.ACTIVE if result.payment_state.grants_access else EntitlementState.PENDING


class Reconciler:
    """Single writer of the entitlement store."""

    def __init__(self, store: EntitlementStore, clock: Clock, max_cas_retries: int = 5):
        """Initialize the reconciler.

        Args:
            store: Entitlement store (owns the idempotency ledger)
            clock: Time source for ledger and creation timestamps
            max_cas_retries: Write attempts before ReconcileConflict is raised
        """
        if max_cas_retries < 1:
            raise ValueError("max_cas_retries must be at least 1")
        self._store = store
        self._clock = clock
        self._max_cas_retries = max_cas_retries
        self._listeners: List[TransitionListener] = []
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

        logger.info("reconciler_initialized", max_cas_retries=max_cas_retries)

    @property
    def store(self) -> EntitlementStore:
        return self._store

    def add_listener(self, listener: TransitionListener) -> None:
        """Register a callable invoked with every committed Transition."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Signal merge
    # ------------------------------------------------------------------

    def reconcile(self, signal: Signal) -> ReconcileResult:
        """Merge one signal into the store.

        Args:
            signal: Verification, notification or sweeper signal

        Returns:
            ReconcileResult describing the outcome

        Raises:
            ReconcileConflict: If every write attempt lost a CAS race
            TypeError: If the signal variant is not handled
        """
        ledger_key: LedgerKey = (signal.source, signal.signal_id)
        lineage_key = self._lineage_key(signal)

        with self._lineage_lock(lineage_key):
            for attempt in range(1, self._max_cas_retries + 1):
                try:
                    result = self._reconcile_once(signal, ledger_key)
                    break
                except ConcurrentModification as e:
                    logger.info(
                        "reconcile_cas_retry",
                        lineage_key=lineage_key,
                        attempt=attempt,
                        source=signal.source.value,
                        signal_id=signal.signal_id,
                        error=str(e),
                    )
            else:
                logger.error(
                    "reconcile_conflict",
                    lineage_key=lineage_key,
                    attempts=self._max_cas_retries,
                    source=signal.source.value,
                    signal_id=signal.signal_id,
                )
                raise ReconcileConflict(lineage_key, self._max_cas_retries)

        logger.info(
            "signal_reconciled",
            outcome=result.outcome.value,
            source=signal.source.value,
            signal_id=signal.signal_id,
            lineage_id=result.record.lineage_id if result.record else None,
            state=result.record.state.name if result.record else None,
        )
        if result.transition is not None:
            self._emit(result.transition)
        return result

    def _reconcile_once(self, signal: Signal, ledger_key: LedgerKey) -> ReconcileResult:
        if self._store.has_processed(ledger_key):
            log_signal_discarded(
                ReconcileOutcome.DUPLICATE.value, signal.source.value, signal.signal_id, "already_processed"
            )
            return ReconcileResult(
                ReconcileOutcome.DUPLICATE, record=self._store.find_by_token(signal.token), reason="already_processed"
            )

        if isinstance(signal, VerificationSignal):
            return self._apply_verification(signal, ledger_key)
        if isinstance(signal, NotificationSignal):
            return self._apply_notification(signal, ledger_key)
        if isinstance(signal, SweeperSignal):
            return self._apply_sweep(signal, ledger_key)
        raise TypeError(f"Unhandled signal variant: {type(signal).__name__}")

    def _apply_verification(self, signal: VerificationSignal, ledger_key: LedgerKey) -> ReconcileResult:
        result = signal.result
        record = self._store.find_by_token(signal.token)

        if record is None and result.linked_purchase_token:
            previous = self._store.find_by_token(result.linked_purchase_token)
            if previous is not None:
                return self._continue_lineage(previous, signal, ledger_key)

        if record is None:
            return self._create(signal, ledger_key)

        if record.user_id != signal.user_id:
            return self._reject_owner(record, signal)

        rejected = self._check_current(record, signal, ledger_key)
        if rejected is not None:
            return rejected

        edge = verification_edge(record, result)

        def update(r: PurchaseRecord) -> None:
            r.expiry_time_millis = result.expiry_time_millis
            r.auto_renewing = result.auto_renewing
            r.payment_state = result.payment_state
            if result.order_id:
                r.order_id = result.order_id
            if result.acknowledged_upstream:
                r.mark_acknowledged()

        return self._apply_edge(record, edge, signal, ledger_key, update)

    def _apply_notification(self, signal: NotificationSignal, ledger_key: LedgerKey) -> ReconcileResult:
        event = signal.event
        record = self._store.find_by_token(signal.token)
        if record is None:
            # Not ledgered: a redelivery after the first verification still applies
            log_signal_discarded(
                ReconcileOutcome.UNKNOWN_LINEAGE.value,
                signal.source.value,
                signal.signal_id,
                "no_record_for_token",
                token=mask_token(signal.token),
            )
            return ReconcileResult(ReconcileOutcome.UNKNOWN_LINEAGE, reason="no_record_for_token")

        rejected = self._check_current(record, signal, ledger_key)
        if rejected is not None:
            return rejected

        if isinstance(event, UnknownLifecycleEvent):
            self._store.record_signal(ledger_key, self._clock.now_millis())
            logger.warning(
                "unknown_notification_type",
                raw_notification_type=event.raw_notification_type,
                lineage_id=record.lineage_id,
                signal_id=signal.signal_id,
            )
            return ReconcileResult(ReconcileOutcome.NO_OP, record=record, reason="unknown_notification_type")
        if not isinstance(event, SubscriptionLifecycleEvent):
            raise TypeError(f"Unhandled lifecycle event variant: {type(event).__name__}")

        kind = event.notification_type
        edge = notification_edge(record.state, kind)

        def update(r: PurchaseRecord) -> None:
            if kind == NotificationType.SUBSCRIPTION_CANCELED:
                r.auto_renewing = False
            elif kind in (
                NotificationType.SUBSCRIPTION_RENEWED,
                NotificationType.SUBSCRIPTION_RECOVERED,
                NotificationType.SUBSCRIPTION_RESTARTED,
            ):
                r.auto_renewing = True
            elif kind == NotificationType.SUBSCRIPTION_DEFERRED and event.new_expiry_time_millis is not None:
                r.expiry_time_millis = event.new_expiry_time_millis
            if edge == Edge.PAYMENT_RECEIVED:
                r.payment_state = PaymentState.RECEIVED

        return self._apply_edge(record, edge, signal, ledger_key, update)

    def _apply_sweep(self, signal: SweeperSignal, ledger_key: LedgerKey) -> ReconcileResult:
        record = self._store.find_by_lineage(signal.lineage_id)
        if record is None:
            log_signal_discarded(
                ReconcileOutcome.UNKNOWN_LINEAGE.value, signal.source.value, signal.signal_id, "no_record_for_lineage"
            )
            return ReconcileResult(ReconcileOutcome.UNKNOWN_LINEAGE, reason="no_record_for_lineage")

        rejected = self._check_current(record, signal, ledger_key)
        if rejected is not None:
            return rejected

        return self._apply_edge(record, SWEEP_EDGES[signal.reason], signal, ledger_key)

    def _check_current(
        self, record: PurchaseRecord, signal: Signal, ledger_key: LedgerKey
    ) -> Optional[ReconcileResult]:
        """Reject signals about a superseded token or older than the record."""
        if record.current_token != signal.token:
            reason = "superseded_token"
        elif signal.event_time_millis < record.last_event_time_millis:
            reason = "older_than_record"
        else:
            return None

        self._store.record_signal(ledger_key, self._clock.now_millis())
        log_signal_discarded(
            ReconcileOutcome.STALE.value,
            signal.source.value,
            signal.signal_id,
            reason,
            lineage_id=record.lineage_id,
            event_time_millis=signal.event_time_millis,
            last_event_time_millis=record.last_event_time_millis,
        )
        return ReconcileResult(ReconcileOutcome.STALE, record=record, reason=reason)

    def _reject_owner(self, record: PurchaseRecord, signal: VerificationSignal) -> ReconcileResult:
        log_transition_anomaly(
            lineage_id=record.lineage_id,
            current_state=record.state.name,
            edge="owner_mismatch",
            source=signal.source.value,
            signal_id=signal.signal_id,
            owner=record.user_id,
            claimed_by=signal.user_id,
        )
        return ReconcileResult(ReconcileOutcome.REJECTED, record=record, reason="owner_mismatch")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _create(self, signal: VerificationSignal, ledger_key: LedgerKey) -> ReconcileResult:
        result = signal.result
        if not result.is_valid:
            log_signal_discarded(
                ReconcileOutcome.REJECTED.value,
                signal.source.value,
                signal.signal_id,
                "invalid_purchase",
                token=mask_token(signal.token),
            )
            return ReconcileResult(ReconcileOutcome.REJECTED, reason="invalid_purchase")

        now = self._clock.now_millis()
        state = _initial_state(result)
        record = PurchaseRecord(
            lineage_id=generate_lineage_id(),
            user_id=signal.user_id,
            product_id=signal.product_id,
            package_name=signal.package_name,
            purchase_kind=result.purchase_kind,
            current_token=signal.token,
            linked_tokens=[signal.token],
            state=state,
            payment_state=result.payment_state,
            expiry_time_millis=result.expiry_time_millis,
            auto_renewing=result.auto_renewing,
            acknowledged=result.acknowledged_upstream,
            order_id=result.order_id,
            created_millis=now,
            last_event_time_millis=signal.event_time_millis,
            state_entered_millis=signal.event_time_millis,
        )
        stored = self._store.insert(record, ledger_key, now)

        log_entitlement_state_change(
            token=mask_token(stored.current_token),
            lineage_id=stored.lineage_id,
            old_state=None,
            new_state=stored.state.name,
            reason="created",
            user_id=stored.user_id,
            product_id=stored.product_id,
        )
        transition = self._transition(stored, None, signal, "created")
        return ReconcileResult(ReconcileOutcome.CREATED, record=stored, transition=transition)

    def _continue_lineage(
        self, previous: PurchaseRecord, signal: VerificationSignal, ledger_key: LedgerKey
    ) -> ReconcileResult:
        """Open a new chapter for a token that replaces a known one."""
        result = signal.result
        if previous.user_id != signal.user_id:
            return self._reject_owner(previous, signal)
        if not result.is_valid:
            log_signal_discarded(
                ReconcileOutcome.REJECTED.value,
                signal.source.value,
                signal.signal_id,
                "invalid_purchase",
                lineage_id=previous.lineage_id,
            )
            return ReconcileResult(ReconcileOutcome.REJECTED, record=previous, reason="invalid_purchase")
        if signal.event_time_millis < previous.last_event_time_millis:
            self._store.record_signal(ledger_key, self._clock.now_millis())
            log_signal_discarded(
                ReconcileOutcome.STALE.value,
                signal.source.value,
                signal.signal_id,
                "older_than_record",
                lineage_id=previous.lineage_id,
            )
            return ReconcileResult(ReconcileOutcome.STALE, record=previous, reason="older_than_record")

        updated = previous.model_copy(deep=True)
        updated.open_chapter(signal.token, signal.product_id, signal.event_time_millis, reason="linked_purchase")
        updated.purchase_kind = result.purchase_kind
        updated.payment_state = result.payment_state
        updated.expiry_time_millis = result.expiry_time_millis
        updated.auto_renewing = result.auto_renewing
        updated.order_id = result.order_id or updated.order_id
        updated.acknowledged = result.acknowledged_upstream
        updated.state = _initial_state(result)
        updated.state_entered_millis = signal.event_time_millis
        updated.last_event_time_millis = signal.event_time_millis

        stored = self._store.compare_and_set(updated, previous.version, self._clock.now_millis(), ledger_key)

        logger.info(
            "lineage_continued",
            lineage_id=stored.lineage_id,
            closed_token=mask_token(previous.current_token),
            new_token=mask_token(stored.current_token),
            old_product_id=previous.product_id,
            new_product_id=stored.product_id,
        )
        self._log_changes(previous, stored, "linked_purchase")
        transition = self._transition(stored, previous.state, signal, "linked_purchase")
        return ReconcileResult(ReconcileOutcome.APPLIED, record=stored, transition=transition)

    def _apply_edge(
        self,
        record: PurchaseRecord,
        edge: Edge,
        signal: Signal,
        ledger_key: LedgerKey,
        update: Optional[RecordUpdate] = None,
    ) -> ReconcileResult:
        resolution = resolve(record.state, edge)
        if not resolution.legal:
            self._store.record_signal(ledger_key, self._clock.now_millis())
            log_transition_anomaly(
                lineage_id=record.lineage_id,
                current_state=record.state.name,
                edge=edge.value,
                source=signal.source.value,
                signal_id=signal.signal_id,
            )
            return ReconcileResult(ReconcileOutcome.ANOMALY, record=record, reason=f"illegal_{edge.value}")

        updated = record.model_copy(deep=True)
        if update is not None:
            update(updated)
        updated.set_state(resolution.target, signal.event_time_millis)
        updated.last_event_time_millis = signal.event_time_millis

        stored = self._store.compare_and_set(updated, record.version, self._clock.now_millis(), ledger_key)

        changed = self._log_changes(record, stored, edge.value)
        transition = self._transition(stored, record.state, signal, edge.value) if changed else None
        return ReconcileResult(ReconcileOutcome.APPLIED, record=stored, transition=transition, reason=edge.value)

    # ------------------------------------------------------------------
    # Acknowledgment
    # ------------------------------------------------------------------

    def mark_acknowledged(self, lineage_id: str, token: str) -> PurchaseRecord:
        """Record that a token was acknowledged with the platform.

        The only write that is not driven by a signal. It changes neither the
        state nor last_event_time_millis. Acknowledging a superseded token is
        logged and leaves the record as is.

        Raises:
            RecordNotFoundError: If the lineage is unknown
            ReconcileConflict: If every write attempt lost a CAS race
        """
        with self._lineage_lock(lineage_id):
            for attempt in range(1, self._max_cas_retries + 1):
                record = self._store.get_by_lineage(lineage_id)
                if record.current_token != token:
                    logger.warning(
                        "acknowledgment_for_superseded_token",
                        lineage_id=lineage_id,
                        token=mask_token(token),
                    )
                    return record
                if record.acknowledged:
                    return record

                updated = record.model_copy(deep=True)
                updated.mark_acknowledged()
                try:
                    stored = self._store.compare_and_set(updated, record.version, self._clock.now_millis())
                except ConcurrentModification:
                    logger.info("acknowledgment_cas_retry", lineage_id=lineage_id, attempt=attempt)
                    continue
                log_acknowledgment_change(token=mask_token(token), lineage_id=lineage_id, user_id=stored.user_id)
                return stored

        raise ReconcileConflict(lineage_id, self._max_cas_retries)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lineage_key(self, signal: Signal) -> str:
        if isinstance(signal, SweeperSignal):
            return signal.lineage_id
        record = self._store.find_by_token(signal.token)
        return record.lineage_id if record is not None else signal.token

    @contextmanager
    def _lineage_lock(self, key: str) -> Iterator[None]:
        with self._locks_guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                lock, users = self._locks[key]
                if users == 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def _log_changes(self, before: PurchaseRecord, after: PurchaseRecord, reason: str) -> bool:
        """Log committed field changes; returns whether anything besides bookkeeping changed."""
        token = mask_token(after.current_token)
        changed = False
        if before.state != after.state:
            log_entitlement_state_change(
                token=token,
                lineage_id=after.lineage_id,
                old_state=before.state.name,
                new_state=after.state.name,
                reason=reason,
                user_id=after.user_id,
            )
            changed = True
        if before.expiry_time_millis != after.expiry_time_millis:
            log_expiry_change(token, after.lineage_id, before.expiry_time_millis, after.expiry_time_millis, reason)
            changed = True
        if before.auto_renewing != after.auto_renewing:
            log_auto_renew_change(token, after.lineage_id, before.auto_renewing, after.auto_renewing, reason)
            changed = True
        if before.acknowledged != after.acknowledged and after.acknowledged:
            log_acknowledgment_change(token, after.lineage_id, reason=reason)
            changed = True
        if before.current_token != after.current_token or before.payment_state != after.payment_state:
            changed = True
        return changed

    def _transition(
        self, record: PurchaseRecord, old_state: Optional[EntitlementState], signal: Signal, reason: str
    ) -> Transition:
        return Transition(
            lineage_id=record.lineage_id,
            user_id=record.user_id,
            product_id=record.product_id,
            package_name=record.package_name,
            purchase_kind=record.purchase_kind,
            token=record.current_token,
            old_state=old_state,
            new_state=record.state,
            expiry_time_millis=record.expiry_time_millis,
            acknowledged=record.acknowledged,
            source=signal.source,
            signal_id=signal.signal_id,
            event_time_millis=signal.event_time_millis,
            reason=reason,
        )

    def _emit(self, transition: Transition) -> None:
        for listener in list(self._listeners):
            try:
                listener(transition)
            except Exception as e:
                logger.error(
                    "transition_listener_failed",
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    lineage_id=transition.lineage_id,
                    error=str(e),
                    exc_info=True,
                )
