"""Expiry sweeper - time-driven transitions.

Notifications are not guaranteed to arrive, so the sweeper periodically
walks the non-terminal records and raises sweeper signals for deadlines
that passed: expiry, pending payment timeout, the end of the grace period
(the platform maximum unless configured) and, when configured, the end of
the account hold. Each deadline maps to a deterministic signal ID, so
repeated sweeps are deduplicated by the ledger.

An auto-renewing subscription whose expiry passed has usually just renewed
(renewal notifications carry no expiry), so it is re-verified with the
authority instead of being expired blindly. Records in grace, on hold or
paused past their expiry are re-verified once per sweep interval too, so a
lost notification cannot hold them in place.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from iap_reconciler.logging_config import get_logger
from iap_reconciler.models.purchase import MAX_GRACE_PERIOD_MILLIS, EntitlementState, PurchaseRecord
from iap_reconciler.models.settings import LifecyclePolicy
from iap_reconciler.models.signals import Signal, SweepReason, SweeperSignal
from iap_reconciler.services.clock import Clock
from iap_reconciler.services.reconciler import ReconcileConflict, Reconciler
from iap_reconciler.services.token_verifier import TokenNotFound, TokenVerifier, VerificationError
from iap_reconciler.utils.durations import parse_optional_duration
from iap_reconciler.utils.identifiers import sweeper_signal_id

logger = get_logger(__name__)

# States whose access ends when the expiry passes. GRACE_PERIOD ends by the
# grace duration or a platform signal instead.
EXPIRING_STATES = frozenset({EntitlementState.ACTIVE, EntitlementState.CANCELED})

# Past their expiry these states still await the platform's verdict
LAPSED_STATES = frozenset({EntitlementState.GRACE_PERIOD, EntitlementState.ON_HOLD, EntitlementState.PAUSED})


@dataclass
class SweepReport:
    """Result of one sweep."""

    signals_emitted: int = 0
    refreshed: int = 0
    skipped: int = 0
    ledger_entries_pruned: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)


class ExpirySweeper:
    """Raises time-driven signals and prunes the idempotency ledger."""

    def __init__(
        self,
        reconciler: Reconciler,
        clock: Clock,
        policy: LifecyclePolicy,
        verifier: Optional[TokenVerifier] = None,
    ):
        """Initialize the sweeper.

        Args:
            reconciler: Reconciler that receives the signals
            clock: Time source
            policy: Pending timeout, grace and hold durations, sweep interval
            verifier: Used to re-verify auto-renewing subscriptions past expiry
        """
        self._reconciler = reconciler
        self._store = reconciler.store
        self._clock = clock
        self._policy = policy
        self._verifier = verifier
        self._pending_timeout = parse_optional_duration(policy.pending_timeout)
        grace_period = parse_optional_duration(policy.grace_period)
        self._grace_period = MAX_GRACE_PERIOD_MILLIS if grace_period is None else grace_period
        self._account_hold = parse_optional_duration(policy.account_hold)
        self._task: Optional[asyncio.Task] = None

    def due(self, record: PurchaseRecord, now_millis: int) -> Optional[Tuple[SweepReason, int]]:
        """Return the first deadline of a record that has passed, with its due time."""
        entered = record.state_entered_millis
        state = record.state

        if state == EntitlementState.PENDING and self._pending_timeout is not None:
            due = entered + self._pending_timeout
            if now_millis >= due:
                return SweepReason.PENDING_TIMEOUT, due
        if state == EntitlementState.GRACE_PERIOD:
            due = entered + self._grace_period
            if now_millis >= due:
                return SweepReason.GRACE_EXHAUSTED, due
        if state == EntitlementState.ON_HOLD and self._account_hold is not None:
            due = entered + self._account_hold
            if now_millis >= due:
                return SweepReason.HOLD_EXHAUSTED, due
        if state in EXPIRING_STATES and record.expiry_time_millis is not None:
            if now_millis >= record.expiry_time_millis:
                return SweepReason.EXPIRY_REACHED, record.expiry_time_millis
        return None

    async def sweep(self, now_millis: Optional[int] = None) -> SweepReport:
        """Run one sweep over the non-terminal records.

        Args:
            now_millis: Sweep time, defaults to the clock

        Returns:
            SweepReport with counts per outcome
        """
        now = self._clock.now_millis() if now_millis is None else now_millis
        report = SweepReport()
        outcomes: Counter = Counter()

        for record in self._store.get_non_terminal():
            found = self.due(record, now)
            deadline = found is not None and found[0] != SweepReason.EXPIRY_REACHED

            if not deadline and self._should_refresh(record, now):
                refreshed = await self._refresh(record, now, outcomes)
                if refreshed is None:
                    report.skipped += 1
                    continue
                if refreshed:
                    report.refreshed += 1
                    continue
                found = SweepReason.EXPIRY_REACHED, record.expiry_time_millis

            if found is None:
                continue
            reason, due_millis = found
            signal_id = sweeper_signal_id(record.lineage_id, reason.value, due_millis)

            signal = SweeperSignal(
                signal_id=signal_id,
                event_time_millis=now,
                token=record.current_token,
                lineage_id=record.lineage_id,
                reason=reason,
            )
            self._reconcile(signal, outcomes)
            report.signals_emitted += 1

        report.ledger_entries_pruned = self._store.prune_ledger(now)
        report.outcomes = dict(outcomes)

        if report.signals_emitted or report.refreshed or report.ledger_entries_pruned:
            logger.info(
                "sweep_completed",
                signals_emitted=report.signals_emitted,
                refreshed=report.refreshed,
                skipped=report.skipped,
                ledger_entries_pruned=report.ledger_entries_pruned,
                outcomes=report.outcomes,
            )
        return report

    def _should_refresh(self, record: PurchaseRecord, now_millis: int) -> bool:
        if self._verifier is None or record.expiry_time_millis is None or now_millis < record.expiry_time_millis:
            return False
        if record.state == EntitlementState.ACTIVE:
            return record.auto_renewing
        return record.state in LAPSED_STATES

    def _refresh_signal_id(self, record: PurchaseRecord, now_millis: int) -> str:
        """One refresh per lineage and sweep interval, so an unchanged answer is retried next interval."""
        interval_millis = max(1, int(self._policy.sweep_interval_seconds * 1000))
        bucket = now_millis // interval_millis
        return f"{sweeper_signal_id(record.lineage_id, 'refresh', record.expiry_time_millis)}:{bucket}"

    async def _refresh(self, record: PurchaseRecord, now_millis: int, outcomes: Counter) -> Optional[bool]:
        """Re-verify a subscription past its expiry.

        Returns:
            True if the authority's answer was reconciled, False if the token
            is gone and the record should expire, None if the authority could
            not be asked (try again next sweep)
        """
        try:
            result = await self._verifier.verify(
                record.current_token, record.product_id, record.package_name, record.purchase_kind
            )
        except TokenNotFound:
            return False
        except VerificationError as e:
            logger.warning(
                "sweep_refresh_failed",
                lineage_id=record.lineage_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        signal = result.to_signal(
            signal_id=self._refresh_signal_id(record, now_millis),
            token=record.current_token,
            product_id=record.product_id,
            package_name=record.package_name,
            user_id=record.user_id,
        )
        self._reconcile(signal, outcomes)
        return True

    def _reconcile(self, signal: Signal, outcomes: Counter) -> None:
        try:
            result = self._reconciler.reconcile(signal)
        except ReconcileConflict as e:
            outcomes["conflict"] += 1
            logger.error("sweep_reconcile_conflict", signal_id=signal.signal_id, error=str(e))
            return
        outcomes[result.outcome.value] += 1

    async def run(self, interval_seconds: Optional[float] = None) -> None:
        """Sweep forever at a fixed interval."""
        interval = interval_seconds or self._policy.sweep_interval_seconds
        logger.info("expiry_sweeper_started", interval_seconds=interval)
        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.error("sweep_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            await asyncio.sleep(interval)

    def start(self) -> None:
        """Start the sweep loop as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
            logger.info("expiry_sweeper_stopped")
