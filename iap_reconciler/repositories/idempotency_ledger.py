"""Idempotency ledger - processed (source, signal_id) pairs with retention.

The ledger is owned by the EntitlementStore and written under the store's
lock, so a signal is recorded in the same critical section as the state
write it caused.
"""

from typing import Dict, Tuple

from iap_reconciler.models.signals import SignalSource

LedgerKey = Tuple[SignalSource, str]


class IdempotencyLedger:
    """Set of processed signal keys with the time each was recorded.

    Not thread-safe on its own; callers hold the owning store's lock.
    """

    def __init__(self, retention_millis: int):
        """Initialize an empty ledger.

        Args:
            retention_millis: Entries older than this may be pruned. Must
                exceed the upstream transport's maximum redelivery window.
        """
        if retention_millis <= 0:
            raise ValueError("Ledger retention must be positive")
        self._retention_millis = retention_millis
        self._entries: Dict[LedgerKey, int] = {}

    @property
    def retention_millis(self) -> int:
        return self._retention_millis

    def contains(self, key: LedgerKey) -> bool:
        return key in self._entries

    def record(self, key: LedgerKey, at_millis: int) -> bool:
        """Record a key. Returns False if it was already present."""
        if key in self._entries:
            return False
        self._entries[key] = at_millis
        return True

    def recorded_at(self, key: LedgerKey) -> int:
        """Return when a key was recorded.

        Raises:
            KeyError: If the key is not in the ledger
        """
        return self._entries[key]

    def prune(self, now_millis: int) -> int:
        """Drop entries older than the retention window.

        Returns:
            Number of entries removed
        """
        cutoff = now_millis - self._retention_millis
        expired = [key for key, at in self._entries.items() if at < cutoff]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: LedgerKey) -> bool:
        return self.contains(key)

    def __repr__(self) -> str:
        return f"IdempotencyLedger(entries={len(self._entries)}, retention_millis={self._retention_millis})"
