"""Purchase record models - the entitlement state of one subscription lineage.

A lineage groups every purchase token of one subscription instance across
renewals, upgrades and resubscribes. The record keeps the current token and
its state; closed tokens are kept as history chapters.
"""

from enum import Enum, IntEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from iap_reconciler.utils.durations import MILLIS_PER_DAY


class EntitlementState(IntEnum):
    """Entitlement state of a purchase record."""

    PENDING = 0  # Purchase made, payment not settled
    ACTIVE = 1  # Paid (or free trial) and in good standing
    GRACE_PERIOD = 2  # Renewal payment failed, access retained
    ON_HOLD = 3  # Grace period exhausted, access suspended
    PAUSED = 4  # Paused by the user, access suspended
    CANCELED = 5  # Will not renew, access retained until expiry
    REVOKED = 6  # Revoked by the platform (refund, chargeback)
    EXPIRED = 7  # Lapsed

    @property
    def is_terminal(self) -> bool:
        """Terminal for the current token; the lineage may reopen with a new one."""
        return self in (EntitlementState.REVOKED, EntitlementState.EXPIRED)


# States that grant access while the expiry (if any) has not passed
ENTITLED_STATES = frozenset(
    {EntitlementState.ACTIVE, EntitlementState.GRACE_PERIOD, EntitlementState.CANCELED}
)

# Longest grace period the platform offers; bounds grace when none is configured
MAX_GRACE_PERIOD_MILLIS = 30 * MILLIS_PER_DAY


class PaymentState(IntEnum):
    """Payment state reported by the verification authority (Google Play values)."""

    PENDING = 0  # Payment pending
    RECEIVED = 1  # Payment received
    FREE_TRIAL = 2  # Free trial, no payment
    DEFERRED = 3  # Pending deferred upgrade/downgrade

    @property
    def grants_access(self) -> bool:
        return self != PaymentState.PENDING


class PurchaseKind(str, Enum):
    """Kind of purchase behind a token."""

    SUBSCRIPTION = "subscription"
    ONE_TIME = "one_time"


class TokenChapter(BaseModel):
    """A closed token of a lineage."""

    token: str = Field(..., description="Purchase token that was replaced")
    product_id: str = Field(..., description="Product the token was for")
    final_state: EntitlementState = Field(..., description="State when the token was closed")
    closed_millis: int = Field(..., description="When the token was superseded (Unix millis)")
    reason: str = Field(..., description="Why the chapter was closed")


class ProductChange(BaseModel):
    """A product change (upgrade or downgrade) within a lineage."""

    from_product_id: str
    to_product_id: str
    token: str = Field(..., description="Token that introduced the new product")
    changed_millis: int


class PurchaseRecord(BaseModel):
    """Authoritative entitlement record for one lineage."""

    lineage_id: str = Field(..., description="Stable identifier of the subscription instance")
    user_id: str = Field(..., description="Owner; immutable once set")
    product_id: str = Field(..., description="Current catalog product ID")
    package_name: str = Field(..., description="Android package name")
    purchase_kind: PurchaseKind = Field(default=PurchaseKind.SUBSCRIPTION)

    # Tokens
    current_token: str = Field(..., description="Most recent valid purchase token")
    linked_tokens: list[str] = Field(default_factory=list, description="Every token seen for this lineage")

    # State
    state: EntitlementState = Field(..., description="Current entitlement state")
    payment_state: Optional[PaymentState] = Field(None, description="Latest known payment state")
    expiry_time_millis: Optional[int] = Field(None, description="Expiry (Unix millis), None for lifetime purchases")
    auto_renewing: bool = Field(default=False, description="Latest known auto-renew flag")
    acknowledged: bool = Field(default=False, description="Platform acknowledgment completed")
    order_id: Optional[str] = Field(None, description="Latest order ID")

    # Timestamps
    created_millis: int = Field(..., description="Record creation time (Unix millis)")
    last_event_time_millis: int = Field(..., description="Event time of the latest applied signal")
    state_entered_millis: int = Field(..., description="When the current state was entered")

    # Optimistic concurrency
    version: int = Field(default=0, description="Incremented by every committed write")

    history: list[TokenChapter] = Field(default_factory=list)
    product_history: list[ProductChange] = Field(default_factory=list)

    def set_state(self, new_state: EntitlementState, at_millis: int) -> None:
        """Change entitlement state, stamping when the state was entered."""
        if self.state != new_state:
            self.state = new_state
            self.state_entered_millis = at_millis

    def mark_acknowledged(self) -> None:
        """Mark the current token as acknowledged. Idempotent."""
        if not self.acknowledged:
            self.acknowledged = True

    def open_chapter(self, new_token: str, product_id: str, at_millis: int, reason: str) -> None:
        """Close the current token and continue the lineage with a new one.

        The caller sets the state of the new chapter afterwards.
        """
        self.history.append(
            TokenChapter(
                token=self.current_token,
                product_id=self.product_id,
                final_state=self.state,
                closed_millis=at_millis,
                reason=reason,
            )
        )
        if product_id != self.product_id:
            self.product_history.append(
                ProductChange(
                    from_product_id=self.product_id,
                    to_product_id=product_id,
                    token=new_token,
                    changed_millis=at_millis,
                )
            )
            self.product_id = product_id
        self.current_token = new_token
        if new_token not in self.linked_tokens:
            self.linked_tokens.append(new_token)
        self.acknowledged = False

    def is_entitled(self, now_millis: int, grace_period_millis: int = MAX_GRACE_PERIOD_MILLIS) -> bool:
        """Whether the owner currently has access through this record.

        Args:
            now_millis: Current time (Unix millis)
            grace_period_millis: How long access outlives the expiry once grace started
        """
        if self.state not in ENTITLED_STATES:
            return False
        if self.expiry_time_millis is None or self.expiry_time_millis > now_millis:
            return True
        # Grace starts once the renewal payment failed at expiry
        if self.state == EntitlementState.GRACE_PERIOD:
            return now_millis < self.state_entered_millis + grace_period_millis
        return False

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "lineage_id": "lin_3f2b8c0e9d7a4e1f8a6b5c4d3e2f1a0b",
                "user_id": "user-123",
                "product_id": "premium_monthly",
                "package_name": "com.example.app",
                "purchase_kind": "subscription",
                "current_token": "opaque-token-abc123...",
                "linked_tokens": ["opaque-token-abc123..."],
                "state": EntitlementState.ACTIVE,
                "payment_state": PaymentState.RECEIVED,
                "expiry_time_millis": 1702592000000,
                "auto_renewing": True,
                "acknowledged": False,
                "order_id": "GPA.1234-5678-9012-34567",
                "created_millis": 1700000000000,
                "last_event_time_millis": 1700000000000,
                "state_entered_millis": 1700000000000,
                "version": 1,
            }
        }
    )
