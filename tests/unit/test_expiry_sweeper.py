"""Tests for the ExpirySweeper time-driven transitions."""

import pytest

from iap_reconciler.models import EntitlementState, LifecyclePolicy, NotificationType, PaymentState, SweepReason
from iap_reconciler.models.purchase import MAX_GRACE_PERIOD_MILLIS
from iap_reconciler.services.expiry_sweeper import ExpirySweeper
from iap_reconciler.services.token_verifier import AuthorityUnreachable, TokenNotFound
from iap_reconciler.utils.durations import MILLIS_PER_DAY

S = EntitlementState


class FakeVerifier:
    """Answers refresh verifications with a prepared result or error."""

    def __init__(self, answer):
        self.answer = answer
        self.calls = []

    async def verify(self, token, product_id, package_name, kind=None):
        self.calls.append(token)
        if isinstance(self.answer, Exception):
            raise self.answer
        return self.answer()


@pytest.fixture
def policy():
    return LifecyclePolicy(pending_timeout="P3D", grace_period="P3D", account_hold="P30D")


@pytest.fixture
def sweeper(reconciler, clock, policy):
    return ExpirySweeper(reconciler, clock, policy)


class TestDue:
    def test_nothing_due_before_expiry(self, sweeper, make_record, clock):
        assert sweeper.due(make_record(), clock.now_millis()) is None

    def test_expiry_due(self, sweeper, make_record):
        record = make_record()

        assert sweeper.due(record, record.expiry_time_millis) == (SweepReason.EXPIRY_REACHED, record.expiry_time_millis)

    def test_hold_and_paused_are_not_expired_by_time(self, reconciler, clock, make_record):
        sweeper = ExpirySweeper(reconciler, clock, LifecyclePolicy(account_hold=None))

        for state in (S.ON_HOLD, S.PAUSED):
            record = make_record(state=state)
            assert sweeper.due(record, record.expiry_time_millis + 365 * MILLIS_PER_DAY) is None

    def test_unconfigured_grace_ends_at_platform_maximum(self, reconciler, clock, make_record):
        sweeper = ExpirySweeper(reconciler, clock, LifecyclePolicy())
        record = make_record(state=S.GRACE_PERIOD)
        entered = record.state_entered_millis

        assert sweeper.due(record, entered + 29 * MILLIS_PER_DAY) is None
        assert sweeper.due(record, entered + 30 * MILLIS_PER_DAY) == (
            SweepReason.GRACE_EXHAUSTED,
            entered + MAX_GRACE_PERIOD_MILLIS,
        )

    def test_pending_timeout(self, sweeper, make_record):
        record = make_record(state=S.PENDING)

        reason, due = sweeper.due(record, record.state_entered_millis + 3 * MILLIS_PER_DAY)

        assert reason == SweepReason.PENDING_TIMEOUT
        assert due == record.state_entered_millis + 3 * MILLIS_PER_DAY


class TestSweep:
    """Test sweeps against the reconciler."""

    async def test_canceled_subscription_expires(self, reconciler, sweeper, verification, notification, clock):
        record = reconciler.reconcile(verification()).record
        reconciler.reconcile(notification("token-1", NotificationType.SUBSCRIPTION_CANCELED, clock.now_millis(), "m1"))

        clock.advance(days=31)
        report = await sweeper.sweep()

        assert report.signals_emitted == 1
        assert report.outcomes == {"applied": 1}
        assert reconciler.store.get_by_lineage(record.lineage_id).state == S.EXPIRED

    async def test_repeated_sweeps_are_idempotent(self, reconciler, sweeper, verification, make_result, clock):
        record = reconciler.reconcile(verification(result=make_result(auto_renewing=False))).record

        clock.advance(days=31)
        await sweeper.sweep()
        second = await sweeper.sweep()

        assert second.signals_emitted == 0
        assert reconciler.store.get_by_lineage(record.lineage_id).state == S.EXPIRED

    async def test_pending_payment_is_abandoned(self, reconciler, sweeper, verification, make_result, clock):
        record = reconciler.reconcile(verification(result=make_result(payment_state=PaymentState.PENDING))).record

        clock.advance(days=3)
        await sweeper.sweep()

        assert reconciler.store.get_by_lineage(record.lineage_id).state == S.EXPIRED

    async def test_grace_then_hold_then_revoked(self, reconciler, sweeper, verification, notification, clock):
        record = reconciler.reconcile(verification()).record
        reconciler.reconcile(
            notification("token-1", NotificationType.SUBSCRIPTION_IN_GRACE_PERIOD, clock.now_millis(), "m1")
        )

        clock.advance(days=3)
        await sweeper.sweep()
        assert reconciler.store.get_by_lineage(record.lineage_id).state == S.ON_HOLD

        clock.advance(days=30)
        await sweeper.sweep()
        assert reconciler.store.get_by_lineage(record.lineage_id).state == S.REVOKED

    async def test_ledger_is_pruned(self, reconciler, sweeper, verification, make_result, clock):
        reconciler.reconcile(verification(result=make_result(expiry_in_days=365)))

        clock.advance(days=9)
        report = await sweeper.sweep()

        assert report.ledger_entries_pruned == 1
        assert reconciler.store.ledger_size() == 0


class TestRefresh:
    """Auto-renewing subscriptions are re-verified before they expire."""

    async def test_renewed_subscription_stays_active(self, reconciler, clock, policy, verification, make_result):
        record = reconciler.reconcile(verification()).record
        verifier = FakeVerifier(lambda: make_result(expiry_in_days=30))
        sweeper = ExpirySweeper(reconciler, clock, policy, verifier=verifier)

        clock.advance(days=30)
        report = await sweeper.sweep()

        stored = reconciler.store.get_by_lineage(record.lineage_id)
        assert report.refreshed == 1
        assert report.signals_emitted == 0
        assert verifier.calls == ["token-1"]
        assert stored.state == S.ACTIVE
        assert stored.expiry_time_millis > record.expiry_time_millis

    async def test_lapsed_subscription_expires_after_refresh(self, reconciler, clock, policy, verification, make_result):
        record = reconciler.reconcile(verification()).record
        verifier = FakeVerifier(
            lambda: make_result(is_valid=False, auto_renewing=False, expiry_time_millis=record.expiry_time_millis)
        )
        sweeper = ExpirySweeper(reconciler, clock, policy, verifier=verifier)

        clock.advance(days=30)
        await sweeper.sweep()

        assert reconciler.store.get_by_lineage(record.lineage_id).state == S.EXPIRED

    async def test_unknown_token_expires(self, reconciler, clock, policy, verification):
        record = reconciler.reconcile(verification()).record
        sweeper = ExpirySweeper(reconciler, clock, policy, verifier=FakeVerifier(TokenNotFound("gone")))

        clock.advance(days=30)
        report = await sweeper.sweep()

        assert report.signals_emitted == 1
        assert reconciler.store.get_by_lineage(record.lineage_id).state == S.EXPIRED

    async def test_unreachable_authority_skips_record(self, reconciler, clock, policy, verification):
        record = reconciler.reconcile(verification()).record
        sweeper = ExpirySweeper(reconciler, clock, policy, verifier=FakeVerifier(AuthorityUnreachable("down")))

        clock.advance(days=30)
        report = await sweeper.sweep()

        assert report.skipped == 1
        assert reconciler.store.get_by_lineage(record.lineage_id).state == S.ACTIVE

    async def test_hold_answer_keeps_record_recoverable(
        self, reconciler, clock, policy, verification, notification, make_result
    ):
        record = reconciler.reconcile(verification()).record
        verifier = FakeVerifier(
            lambda: make_result(
                is_valid=False,
                payment_state=PaymentState.PENDING,
                expiry_time_millis=record.expiry_time_millis,
            )
        )
        sweeper = ExpirySweeper(reconciler, clock, policy, verifier=verifier)

        clock.advance(days=30)
        await sweeper.sweep()
        assert reconciler.store.get_by_lineage(record.lineage_id).state == S.ON_HOLD

        clock.advance(days=2)
        reconciler.reconcile(
            notification("token-1", NotificationType.SUBSCRIPTION_RECOVERED, clock.now_millis(), "m-recovered")
        )
        assert reconciler.store.get_by_lineage(record.lineage_id).state == S.ACTIVE

    async def test_unchanged_answer_is_asked_again_next_interval(
        self, reconciler, clock, verification, make_result
    ):
        record = reconciler.reconcile(verification()).record
        answers = iter(
            [
                dict(is_valid=False, payment_state=PaymentState.PENDING, expiry_time_millis=record.expiry_time_millis),
                dict(expiry_in_days=30),
            ]
        )
        verifier = FakeVerifier(lambda: make_result(**next(answers)))
        sweeper = ExpirySweeper(reconciler, clock, LifecyclePolicy(sweep_interval_seconds=60), verifier=verifier)

        clock.advance(days=30)
        await sweeper.sweep()
        clock.advance(minutes=1)
        report = await sweeper.sweep()

        stored = reconciler.store.get_by_lineage(record.lineage_id)
        assert len(verifier.calls) == 2
        assert report.outcomes == {"applied": 1}
        assert stored.state == S.ACTIVE
        assert stored.is_entitled(clock.now_millis())


class TestLapsedRecords:
    """Grace, hold and pause past the expiry are settled by the authority, or by time."""

    async def test_grace_without_configuration_ends_a_year_later(self, reconciler, clock, verification, notification):
        sweeper = ExpirySweeper(reconciler, clock, LifecyclePolicy())
        record = reconciler.reconcile(verification()).record
        clock.advance(days=30)
        reconciler.reconcile(
            notification("token-1", NotificationType.SUBSCRIPTION_IN_GRACE_PERIOD, clock.now_millis(), "m-grace")
        )

        clock.advance(days=365)
        await sweeper.sweep()

        stored = reconciler.store.get_by_lineage(record.lineage_id)
        assert stored.state == S.ON_HOLD
        assert not stored.is_entitled(clock.now_millis())

    async def test_grace_is_reverified_past_expiry(self, reconciler, clock, verification, notification, make_result):
        record = reconciler.reconcile(verification()).record
        verifier = FakeVerifier(lambda: make_result(auto_renewing=False, is_valid=False, cancel_reason=1))
        sweeper = ExpirySweeper(reconciler, clock, LifecyclePolicy(), verifier=verifier)
        clock.advance(days=30)
        reconciler.reconcile(
            notification("token-1", NotificationType.SUBSCRIPTION_IN_GRACE_PERIOD, clock.now_millis(), "m-grace")
        )

        clock.advance(days=1)
        report = await sweeper.sweep()

        assert verifier.calls == ["token-1"]
        assert report.refreshed == 1
        assert reconciler.store.get_by_lineage(record.lineage_id).state == S.EXPIRED

    async def test_hold_recovers_through_reverification(
        self, reconciler, clock, verification, notification, make_result
    ):
        record = reconciler.reconcile(verification()).record
        verifier = FakeVerifier(lambda: make_result(expiry_in_days=30))
        sweeper = ExpirySweeper(reconciler, clock, LifecyclePolicy(), verifier=verifier)
        clock.advance(days=30)
        reconciler.reconcile(
            notification("token-1", NotificationType.SUBSCRIPTION_ON_HOLD, clock.now_millis(), "m-hold")
        )

        clock.advance(days=2)
        await sweeper.sweep()

        stored = reconciler.store.get_by_lineage(record.lineage_id)
        assert stored.state == S.ACTIVE
        assert stored.is_entitled(clock.now_millis())

    async def test_gone_token_in_grace_expires(self, reconciler, clock, verification, notification):
        record = reconciler.reconcile(verification()).record
        sweeper = ExpirySweeper(reconciler, clock, LifecyclePolicy(), verifier=FakeVerifier(TokenNotFound("gone")))
        clock.advance(days=30)
        reconciler.reconcile(
            notification("token-1", NotificationType.SUBSCRIPTION_IN_GRACE_PERIOD, clock.now_millis(), "m-grace")
        )

        clock.advance(days=1)
        report = await sweeper.sweep()

        assert report.signals_emitted == 1
        assert reconciler.store.get_by_lineage(record.lineage_id).state == S.EXPIRED
