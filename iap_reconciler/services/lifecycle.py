"""Entitlement state machine.

The transition table is the only source of legal state changes. Revocation
and expiry are resolved before the table is consulted: they always win
(fail safe toward removing access). Everything else not in the table is an
anomaly that the reconciler logs and ignores.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from iap_reconciler.models.purchase import EntitlementState


class Edge(str, Enum):
    """Labels of the transition table."""

    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_ABANDONED = "payment_abandoned"
    CANCEL_REQUESTED = "cancel_requested"
    RENEWAL_CONFIRMED = "renewal_confirmed"
    PAYMENT_FAILED = "payment_failed"
    PAUSED = "paused"
    PAYMENT_RECOVERED = "payment_recovered"
    GRACE_EXHAUSTED = "grace_exhausted"
    HOLD_EXHAUSTED = "hold_exhausted"
    EXPIRY_REACHED = "expiry_reached"
    RESUMED = "resumed"
    RESTARTED = "restarted"
    REVOKED = "revoked"
    METADATA = "metadata"  # Field update only, state unchanged


S = EntitlementState

TRANSITIONS: Dict[Tuple[EntitlementState, Edge], EntitlementState] = {
    (S.PENDING, Edge.PAYMENT_RECEIVED): S.ACTIVE,
    (S.PENDING, Edge.PAYMENT_ABANDONED): S.EXPIRED,
    (S.ACTIVE, Edge.CANCEL_REQUESTED): S.CANCELED,
    (S.ACTIVE, Edge.RENEWAL_CONFIRMED): S.ACTIVE,
    (S.ACTIVE, Edge.PAYMENT_FAILED): S.GRACE_PERIOD,
    (S.ACTIVE, Edge.PAUSED): S.PAUSED,
    # Platforms without a grace period move straight to account hold
    (S.ACTIVE, Edge.GRACE_EXHAUSTED): S.ON_HOLD,
    (S.GRACE_PERIOD, Edge.PAYMENT_RECOVERED): S.ACTIVE,
    (S.GRACE_PERIOD, Edge.GRACE_EXHAUSTED): S.ON_HOLD,
    (S.GRACE_PERIOD, Edge.CANCEL_REQUESTED): S.CANCELED,
    (S.ON_HOLD, Edge.PAYMENT_RECOVERED): S.ACTIVE,
    (S.ON_HOLD, Edge.HOLD_EXHAUSTED): S.REVOKED,
    (S.ON_HOLD, Edge.CANCEL_REQUESTED): S.CANCELED,
    (S.CANCELED, Edge.EXPIRY_REACHED): S.EXPIRED,
    (S.CANCELED, Edge.RESTARTED): S.ACTIVE,
    (S.PAUSED, Edge.RESUMED): S.ACTIVE,
    (S.PAUSED, Edge.CANCEL_REQUESTED): S.CANCELED,
}

# Field-only updates are accepted from any state that can still change.
METADATA_STATES: FrozenSet[EntitlementState] = frozenset(s for s in EntitlementState if not s.is_terminal)


@dataclass(frozen=True)
class Resolution:
    """Outcome of looking up an edge from a state."""

    current: EntitlementState
    edge: Edge
    target: Optional[EntitlementState]

    @property
    def legal(self) -> bool:
        return self.target is not None

    @property
    def changes_state(self) -> bool:
        return self.target is not None and self.target != self.current


def resolve(current: EntitlementState, edge: Edge) -> Resolution:
    """Resolve the target state for an edge.

    Returns:
        Resolution whose target is None when the transition is not legal
    """
    if edge == Edge.REVOKED:
        return Resolution(current, edge, S.REVOKED)

    if edge == Edge.EXPIRY_REACHED:
        # Expiry never downgrades a revocation and never revives anything
        target = current if current.is_terminal else S.EXPIRED
        return Resolution(current, edge, target)

    if edge == Edge.METADATA:
        return Resolution(current, edge, current if current in METADATA_STATES else None)

    return Resolution(current, edge, TRANSITIONS.get((current, edge)))


def legal_edges(current: EntitlementState) -> FrozenSet[Edge]:
    """Edges that are legal from a state."""
    return frozenset(edge for edge in Edge if resolve(current, edge).legal)
