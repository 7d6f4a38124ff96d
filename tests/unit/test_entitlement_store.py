"""Tests for EntitlementStore and the idempotency ledger."""

import pytest

from iap_reconciler.models import EntitlementState, SignalSource
from iap_reconciler.repositories.entitlement_store import (
    ConcurrentModification,
    DuplicateLineage,
    RecordNotFoundError,
    TokenConflict,
)
from iap_reconciler.repositories.idempotency_ledger import IdempotencyLedger

KEY = (SignalSource.VERIFICATION, "nonce-1")


class TestIdempotencyLedger:
    """Test ledger recording and retention."""

    def test_record_and_contains(self):
        ledger = IdempotencyLedger(1000)
        assert ledger.record(KEY, 10) is True
        assert KEY in ledger
        assert ledger.recorded_at(KEY) == 10

    def test_record_twice_returns_false(self):
        ledger = IdempotencyLedger(1000)
        ledger.record(KEY, 10)
        assert ledger.record(KEY, 20) is False
        assert ledger.recorded_at(KEY) == 10

    def test_same_id_from_different_sources_is_distinct(self):
        ledger = IdempotencyLedger(1000)
        ledger.record((SignalSource.VERIFICATION, "x"), 0)
        assert (SignalSource.NOTIFICATION, "x") not in ledger

    def test_prune_drops_entries_past_retention(self):
        ledger = IdempotencyLedger(1000)
        ledger.record((SignalSource.NOTIFICATION, "old"), 0)
        ledger.record((SignalSource.NOTIFICATION, "new"), 900)

        assert ledger.prune(1500) == 1
        assert len(ledger) == 1
        assert (SignalSource.NOTIFICATION, "new") in ledger

    def test_retention_must_be_positive(self):
        with pytest.raises(ValueError):
            IdempotencyLedger(0)


class TestInsert:
    """Test creating records."""

    def test_insert_sets_version_and_records_signal(self, store, make_record):
        stored = store.insert(make_record(), KEY, 100)

        assert stored.version == 1
        assert store.has_processed(KEY)
        assert store.count() == 1

    def test_insert_duplicate_lineage(self, store, make_record):
        store.insert(make_record(), KEY, 100)

        with pytest.raises(DuplicateLineage):
            store.insert(make_record(token="token-2"), (SignalSource.VERIFICATION, "nonce-2"), 100)

    def test_insert_token_owned_by_other_lineage(self, store, make_record):
        store.insert(make_record(), KEY, 100)

        with pytest.raises(TokenConflict) as exc_info:
            store.insert(make_record(lineage_id="lin_other"), (SignalSource.VERIFICATION, "nonce-2"), 100)
        assert exc_info.value.retryable

    def test_returned_records_are_copies(self, store, make_record):
        store.insert(make_record(), KEY, 100)

        record = store.get_by_lineage("lin_test")
        record.state = EntitlementState.REVOKED

        assert store.get_by_lineage("lin_test").state == EntitlementState.ACTIVE


class TestCompareAndSet:
    """Test optimistic concurrency on writes."""

    def test_write_at_expected_version(self, store, make_record):
        stored = store.insert(make_record(), KEY, 100)
        stored.state = EntitlementState.CANCELED
        stored.last_event_time_millis += 1

        key = (SignalSource.NOTIFICATION, "msg-1")
        updated = store.compare_and_set(stored, 1, 200, key)

        assert updated.version == 2
        assert updated.state == EntitlementState.CANCELED
        assert store.has_processed(key)

    def test_stale_version_rejected(self, store, make_record):
        stored = store.insert(make_record(), KEY, 100)
        store.compare_and_set(stored.model_copy(deep=True), 1, 200)

        key = (SignalSource.NOTIFICATION, "msg-1")
        with pytest.raises(ConcurrentModification):
            store.compare_and_set(stored, 1, 200, key)
        # Ledger entry is written only with the record
        assert not store.has_processed(key)

    def test_last_event_time_cannot_move_backwards(self, store, make_record):
        stored = store.insert(make_record(), KEY, 100)
        stored.last_event_time_millis -= 1

        with pytest.raises(ValueError):
            store.compare_and_set(stored, 1, 200)

    def test_owner_is_immutable(self, store, make_record):
        stored = store.insert(make_record(), KEY, 100)
        stored.user_id = "someone-else"

        with pytest.raises(ValueError):
            store.compare_and_set(stored, 1, 200)

    def test_missing_lineage(self, store, make_record):
        with pytest.raises(RecordNotFoundError):
            store.compare_and_set(make_record(), 1, 200)

    def test_new_token_is_indexed_and_old_token_still_resolves(self, store, make_record):
        stored = store.insert(make_record(), KEY, 100)
        stored.open_chapter("token-2", "premium_yearly", stored.last_event_time_millis, reason="linked_purchase")
        store.compare_and_set(stored, 1, 200)

        assert store.find_by_current_token("token-1") is None
        assert store.find_by_current_token("token-2").lineage_id == "lin_test"
        assert store.get_by_token("token-1").lineage_id == "lin_test"


class TestQueries:
    """Test read-only queries."""

    def test_get_by_token_unknown(self, store):
        with pytest.raises(RecordNotFoundError):
            store.get_by_token("nope")
        assert store.find_by_token("nope") is None

    def test_get_by_user_newest_first(self, store, make_record):
        store.insert(make_record(lineage_id="lin_a", token="a", created_millis=1), (SignalSource.VERIFICATION, "1"), 0)
        store.insert(make_record(lineage_id="lin_b", token="b", created_millis=2), (SignalSource.VERIFICATION, "2"), 0)
        store.insert(make_record(lineage_id="lin_c", token="c", user_id="user-2"), (SignalSource.VERIFICATION, "3"), 0)

        records = store.get_by_user("user-1")

        assert [r.lineage_id for r in records] == ["lin_b", "lin_a"]

    def test_get_expiring_skips_terminal_and_lifetime(self, store, make_record):
        store.insert(make_record(lineage_id="lin_a", token="a", expiry_time_millis=50), (SignalSource.VERIFICATION, "1"), 0)
        store.insert(
            make_record(lineage_id="lin_b", token="b", expiry_time_millis=50, state=EntitlementState.EXPIRED),
            (SignalSource.VERIFICATION, "2"),
            0,
        )
        store.insert(make_record(lineage_id="lin_c", token="c", expiry_time_millis=None), (SignalSource.VERIFICATION, "3"), 0)

        assert [r.lineage_id for r in store.get_expiring(100)] == ["lin_a"]

    def test_statistics(self, store, make_record):
        store.insert(make_record(), KEY, 100)

        stats = store.get_statistics()

        assert stats["total_records"] == 1
        assert stats["unique_users"] == 1
        assert stats["ledger_entries"] == 1
        assert stats["unacknowledged_active"] == 1
        assert stats["active"] == 1

    def test_clear(self, store, make_record):
        store.insert(make_record(), KEY, 100)
        store.clear()

        assert store.count() == 0
        assert store.ledger_size() == 0
        assert store.find_by_token("token-1") is None
