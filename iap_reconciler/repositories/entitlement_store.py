"""Entitlement store - in-memory storage for purchase records.

One record per lineage, with secondary indices on the current token
(unique), on every token the lineage has used, and on the owning user.
Writes are compare-and-set on the record version; the idempotency ledger
lives in the same consistency domain and is written in the same critical
section as the record.
"""

import threading
from typing import Dict, List, Optional, Set

from iap_reconciler.models.purchase import EntitlementState, PurchaseRecord
from iap_reconciler.repositories.idempotency_ledger import IdempotencyLedger, LedgerKey


class StoreError(Exception):
    """Base class for entitlement store errors."""

    retryable = False


class RecordNotFoundError(StoreError):
    """Raised when a purchase record is not found in the store."""

    pass


class DuplicateLineage(StoreError, ValueError):
    """Raised when inserting a lineage that already exists."""

    pass


class ConcurrentModification(StoreError):
    """Raised when a write is predicated on a version that is no longer current.

    The caller re-reads the record and re-derives its write.
    """

    retryable = True

    def __init__(self, message: str, lineage_id: Optional[str] = None):
        super().__init__(message)
        self.lineage_id = lineage_id


class TokenConflict(ConcurrentModification):
    """Raised when a token is already indexed to another lineage."""

    def __init__(self, token: str, owner_lineage_id: str):
        super().__init__(f"Token is already owned by lineage {owner_lineage_id}", owner_lineage_id)
        self.token = token
        self.owner_lineage_id = owner_lineage_id


class EntitlementStore:
    """In-memory, thread-safe storage for purchase records.

    Only the Reconciler writes; everything else uses the read-only query
    methods, which return copies.
    """

    def __init__(self, ledger: IdempotencyLedger):
        """Initialize an empty store.

        Args:
            ledger: Idempotency ledger written together with records
        """
        self._records: Dict[str, PurchaseRecord] = {}
        self._current_tokens: Dict[str, str] = {}
        self._lineage_tokens: Dict[str, str] = {}
        self._by_user: Dict[str, Set[str]] = {}
        self._ledger = ledger
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Writes (Reconciler only)
    # ------------------------------------------------------------------

    def insert(self, record: PurchaseRecord, ledger_key: LedgerKey, at_millis: int) -> PurchaseRecord:
        """Store a new lineage record and record the signal that created it.

        Args:
            record: New record (its version is ignored and set to 1)
            ledger_key: Signal that created the record
            at_millis: Ledger timestamp

        Returns:
            Copy of the stored record

        Raises:
            DuplicateLineage: If the lineage already exists
            TokenConflict: If the record's token is already indexed
        """
        with self._lock:
            if record.lineage_id in self._records:
                raise DuplicateLineage(f"Lineage '{record.lineage_id}' already exists")
            owner = self._lineage_tokens.get(record.current_token)
            if owner is not None:
                raise TokenConflict(record.current_token, owner)

            stored = record.model_copy(deep=True)
            stored.version = 1
            if stored.current_token not in stored.linked_tokens:
                stored.linked_tokens.append(stored.current_token)

            self._records[stored.lineage_id] = stored
            self._index(stored)
            self._ledger.record(ledger_key, at_millis)
            return stored.model_copy(deep=True)

    def compare_and_set(
        self,
        record: PurchaseRecord,
        expected_version: int,
        at_millis: int,
        ledger_key: Optional[LedgerKey] = None,
    ) -> PurchaseRecord:
        """Replace a record if it is still at the expected version.

        Args:
            record: Updated record
            expected_version: Version the update was derived from
            at_millis: Ledger timestamp
            ledger_key: Signal that caused the write, recorded atomically

        Returns:
            Copy of the stored record (version incremented)

        Raises:
            RecordNotFoundError: If the lineage does not exist
            ConcurrentModification: If the stored version moved on
            TokenConflict: If the new current token belongs to another lineage
            ValueError: If the write would move last_event_time backwards
                or change the owner
        """
        with self._lock:
            current = self._records.get(record.lineage_id)
            if current is None:
                raise RecordNotFoundError(f"Purchase record not found for lineage: {record.lineage_id}")
            if current.version != expected_version:
                raise ConcurrentModification(
                    f"Record {record.lineage_id} is at version {current.version}, "
                    f"write expected {expected_version}",
                    record.lineage_id,
                )
            if record.last_event_time_millis < current.last_event_time_millis:
                raise ValueError(
                    f"last_event_time_millis of {record.lineage_id} cannot move backwards "
                    f"({current.last_event_time_millis} -> {record.last_event_time_millis})"
                )
            if record.user_id != current.user_id:
                raise ValueError(f"Owner of lineage {record.lineage_id} is immutable")
            owner = self._lineage_tokens.get(record.current_token)
            if owner is not None and owner != record.lineage_id:
                raise TokenConflict(record.current_token, owner)

            stored = record.model_copy(deep=True)
            stored.version = current.version + 1
            if stored.current_token not in stored.linked_tokens:
                stored.linked_tokens.append(stored.current_token)

            self._unindex(current)
            self._records[stored.lineage_id] = stored
            self._index(stored)
            if ledger_key is not None:
                self._ledger.record(ledger_key, at_millis)
            return stored.model_copy(deep=True)

    def record_signal(self, ledger_key: LedgerKey, at_millis: int) -> bool:
        """Record a signal that was processed without a record write.

        Returns:
            False if the key was already recorded
        """
        with self._lock:
            return self._ledger.record(ledger_key, at_millis)

    def has_processed(self, ledger_key: LedgerKey) -> bool:
        """Check the idempotency ledger for a signal."""
        with self._lock:
            return self._ledger.contains(ledger_key)

    def prune_ledger(self, now_millis: int) -> int:
        """Drop ledger entries past the retention window."""
        with self._lock:
            return self._ledger.prune(now_millis)

    def _index(self, record: PurchaseRecord) -> None:
        self._current_tokens[record.current_token] = record.lineage_id
        for token in record.linked_tokens:
            self._lineage_tokens[token] = record.lineage_id
        self._by_user.setdefault(record.user_id, set()).add(record.lineage_id)

    def _unindex(self, record: PurchaseRecord) -> None:
        if self._current_tokens.get(record.current_token) == record.lineage_id:
            del self._current_tokens[record.current_token]

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    def get_by_lineage(self, lineage_id: str) -> PurchaseRecord:
        """Get record by lineage ID.

        Raises:
            RecordNotFoundError: If the lineage is unknown
        """
        record = self.find_by_lineage(lineage_id)
        if record is None:
            raise RecordNotFoundError(f"Purchase record not found for lineage: {lineage_id}")
        return record

    def find_by_lineage(self, lineage_id: str) -> Optional[PurchaseRecord]:
        with self._lock:
            record = self._records.get(lineage_id)
            return record.model_copy(deep=True) if record else None

    def get_by_token(self, token: str) -> PurchaseRecord:
        """Get the record of the lineage a token belongs to.

        Matches the current token and every earlier token of the lineage.

        Raises:
            RecordNotFoundError: If no lineage has used the token
        """
        record = self.find_by_token(token)
        if record is None:
            raise RecordNotFoundError("Purchase record not found for token")
        return record

    def find_by_token(self, token: str) -> Optional[PurchaseRecord]:
        with self._lock:
            lineage_id = self._lineage_tokens.get(token)
            if lineage_id is None:
                return None
            return self._records[lineage_id].model_copy(deep=True)

    def find_by_current_token(self, token: str) -> Optional[PurchaseRecord]:
        with self._lock:
            lineage_id = self._current_tokens.get(token)
            if lineage_id is None:
                return None
            return self._records[lineage_id].model_copy(deep=True)

    def get_by_user(self, user_id: str) -> List[PurchaseRecord]:
        """Get all records owned by a user, most recently created first."""
        with self._lock:
            records = [self._records[lineage_id] for lineage_id in self._by_user.get(user_id, ())]
            records.sort(key=lambda r: r.created_millis, reverse=True)
            return [r.model_copy(deep=True) for r in records]

    def get_by_state(self, state: EntitlementState) -> List[PurchaseRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values() if r.state == state]

    def get_expiring(self, before_millis: int) -> List[PurchaseRecord]:
        """Non-terminal records whose expiry is at or before a time."""
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._records.values()
                if not r.state.is_terminal
                and r.expiry_time_millis is not None
                and r.expiry_time_millis <= before_millis
            ]

    def get_non_terminal(self) -> List[PurchaseRecord]:
        """Records whose current token can still change state over time."""
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values() if not r.state.is_terminal]

    def get_all(self) -> List[PurchaseRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values()]

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def ledger_size(self) -> int:
        with self._lock:
            return len(self._ledger)

    def get_statistics(self) -> Dict[str, int]:
        """Get store statistics.

        Returns:
            Dictionary with total records, unique users, ledger size,
            unacknowledged active records and a count per state
        """
        with self._lock:
            records = list(self._records.values())
            stats = {
                "total_records": len(records),
                "unique_users": len(self._by_user),
                "ledger_entries": len(self._ledger),
                "unacknowledged_active": sum(
                    1 for r in records if r.state == EntitlementState.ACTIVE and not r.acknowledged
                ),
            }
            for state in EntitlementState:
                stats[state.name.lower()] = sum(1 for r in records if r.state == state)
            return stats

    def clear(self) -> None:
        """Clear all records and the ledger.

        Warning: This removes all data. Use with caution.
        """
        with self._lock:
            self._records.clear()
            self._current_tokens.clear()
            self._lineage_tokens.clear()
            self._by_user.clear()
            self._ledger.clear()

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, lineage_id: str) -> bool:
        with self._lock:
            return lineage_id in self._records

    def __repr__(self) -> str:
        return f"EntitlementStore(records={self.count()})"
