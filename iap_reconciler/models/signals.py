"""Signals, verification results and transitions.

A Signal is a normalized unit of truth about a purchase. Every signal,
whatever its source, is merged by the reconciler; the reconciler in turn
emits Transitions for the acknowledgment scheduler and the dispatcher.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from .events import LifecycleEvent
from .purchase import EntitlementState, PaymentState, PurchaseKind


class SignalSource(str, Enum):
    """Where a signal came from; part of the idempotency key."""

    VERIFICATION = "verification"
    NOTIFICATION = "notification"
    SWEEPER = "sweeper"


class SweepReason(str, Enum):
    """Time-driven transitions raised by the expiry sweeper."""

    EXPIRY_REACHED = "expiry_reached"
    PENDING_TIMEOUT = "pending_timeout"
    GRACE_EXHAUSTED = "grace_exhausted"
    HOLD_EXHAUSTED = "hold_exhausted"


class VerificationResult(BaseModel):
    """Normalized answer of the verification authority for one token."""

    is_valid: bool = Field(..., description="Whether the purchase currently grants access")
    purchase_kind: PurchaseKind
    expiry_time_millis: Optional[int] = Field(None, description="None for one-time purchases")
    auto_renewing: bool = False
    payment_state: PaymentState
    order_id: Optional[str] = None
    linked_purchase_token: Optional[str] = Field(None, description="Token this purchase replaces")
    acknowledged_upstream: bool = Field(default=False, description="Already acknowledged on the platform")
    start_time_millis: Optional[int] = None
    cancel_reason: Optional[int] = None
    auto_resume_time_millis: Optional[int] = Field(None, description="Set while a subscription is paused")
    purchase_state: Optional[int] = Field(None, description="One-time purchase state (0/1/2)")
    verified_at_millis: int = Field(..., description="When the authority answered (Unix millis)")

    @property
    def is_canceled_upstream(self) -> bool:
        return self.purchase_kind == PurchaseKind.ONE_TIME and self.purchase_state == 1

    @property
    def will_renew(self) -> bool:
        """Whether a lapsed subscription can still come back (account hold or pause)."""
        return self.purchase_kind == PurchaseKind.SUBSCRIPTION and self.auto_renewing and self.cancel_reason is None

    def to_signal(
        self, signal_id: str, token: str, product_id: str, package_name: str, user_id: str
    ) -> "VerificationSignal":
        """Wrap the result in a signal timed at the verification."""
        return VerificationSignal(
            signal_id=signal_id,
            event_time_millis=self.verified_at_millis,
            token=token,
            product_id=product_id,
            package_name=package_name,
            user_id=user_id,
            result=self,
        )


class VerificationSignal(BaseModel):
    """Result of a client-initiated verification."""

    source: Literal[SignalSource.VERIFICATION] = SignalSource.VERIFICATION
    signal_id: str = Field(..., description="Verification request nonce")
    event_time_millis: int
    token: str
    product_id: str
    package_name: str
    user_id: str
    result: VerificationResult


class NotificationSignal(BaseModel):
    """A decoded lifecycle notification."""

    source: Literal[SignalSource.NOTIFICATION] = SignalSource.NOTIFICATION
    signal_id: str = Field(..., description="Push message ID")
    event_time_millis: int
    token: str
    event: LifecycleEvent


class SweeperSignal(BaseModel):
    """A time-driven transition detected by the expiry sweeper."""

    source: Literal[SignalSource.SWEEPER] = SignalSource.SWEEPER
    signal_id: str
    event_time_millis: int
    token: str
    lineage_id: str
    reason: SweepReason


Signal = Annotated[
    Union[VerificationSignal, NotificationSignal, SweeperSignal],
    Field(discriminator="source"),
]


class ReconcileOutcome(str, Enum):
    """What the reconciler did with a signal."""

    CREATED = "created"  # New lineage record
    APPLIED = "applied"  # State or fields changed
    NO_OP = "no_op"  # Legal, nothing to change (e.g. unknown event kind)
    DUPLICATE = "duplicate"  # Already in the idempotency ledger
    STALE = "stale"  # Older than the record, or about a superseded token
    ANOMALY = "anomaly"  # Transition not in the table, ignored
    UNKNOWN_LINEAGE = "unknown_lineage"  # No record to apply it to
    REJECTED = "rejected"  # Invalid for this record (owner mismatch, invalid first purchase)


class Transition(BaseModel):
    """A committed change of a purchase record."""

    lineage_id: str
    user_id: str
    product_id: str
    package_name: str
    purchase_kind: PurchaseKind
    token: str
    old_state: Optional[EntitlementState] = Field(None, description="None when the record was created")
    new_state: EntitlementState
    expiry_time_millis: Optional[int] = None
    acknowledged: bool
    source: SignalSource
    signal_id: str
    event_time_millis: int
    reason: str

    @property
    def state_changed(self) -> bool:
        return self.old_state != self.new_state

    @property
    def requires_acknowledgment(self) -> bool:
        return self.new_state == EntitlementState.ACTIVE and not self.acknowledged
