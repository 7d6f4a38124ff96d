"""State change logging for purchase records and reconciliation decisions.

Tracks entitlement transitions with before/after values, and records why a
signal was discarded, for debugging and auditing.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from iap_reconciler.logging_config import get_logger

logger = get_logger(__name__)


def _iso(millis: Optional[int]) -> Optional[str]:
    if millis is None:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).isoformat()


def log_entitlement_state_change(
    token: str,
    lineage_id: str,
    old_state: Any,
    new_state: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log an entitlement state change.

    Args:
        token: Current purchase token of the lineage
        lineage_id: Lineage identifier
        old_state: Previous state value
        new_state: New state value
        reason: Reason for state change
        **extra_context: Additional context (user_id, signal_id, etc.)
    """
    logger.info(
        "entitlement_state_changed",
        token=token,
        lineage_id=lineage_id,
        old_state=str(old_state),
        new_state=str(new_state),
        reason=reason,
        **extra_context,
    )


def log_auto_renew_change(
    token: str,
    lineage_id: str,
    old_value: bool,
    new_value: bool,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log an auto-renew flag change."""
    logger.info(
        "auto_renew_changed",
        token=token,
        lineage_id=lineage_id,
        old_value=old_value,
        new_value=new_value,
        reason=reason,
        **extra_context,
    )


def log_expiry_change(
    token: str,
    lineage_id: str,
    old_expiry_millis: Optional[int],
    new_expiry_millis: Optional[int],
    reason: str,
    **extra_context: Any,
) -> None:
    """Log an expiry time change.

    Args:
        token: Current purchase token
        lineage_id: Lineage identifier
        old_expiry_millis: Previous expiry time, None for lifetime purchases
        new_expiry_millis: New expiry time
        reason: Reason for change (renewal, deferral, etc.)
        **extra_context: Additional context
    """
    extension_days = None
    if old_expiry_millis is not None and new_expiry_millis is not None:
        extension_days = (new_expiry_millis - old_expiry_millis) / (1000 * 86400)

    logger.info(
        "expiry_changed",
        token=token,
        lineage_id=lineage_id,
        old_expiry=_iso(old_expiry_millis),
        new_expiry=_iso(new_expiry_millis),
        extension_days=extension_days,
        reason=reason,
        **extra_context,
    )


def log_acknowledgment_change(token: str, lineage_id: str, **extra_context: Any) -> None:
    """Log that a token was acknowledged with the platform."""
    logger.info(
        "acknowledgment_recorded",
        token=token,
        lineage_id=lineage_id,
        **extra_context,
    )


def log_signal_discarded(
    outcome: str,
    source: str,
    signal_id: str,
    reason: str,
    **extra_context: Any,
) -> None:
    """Log a signal that was not applied (duplicate, stale, unknown lineage)."""
    logger.info(
        "signal_discarded",
        outcome=outcome,
        source=source,
        signal_id=signal_id,
        reason=reason,
        **extra_context,
    )


def log_transition_anomaly(
    lineage_id: str,
    current_state: Any,
    edge: str,
    source: str,
    signal_id: str,
    **extra_context: Any,
) -> None:
    """Log a transition that is not in the table and was ignored."""
    logger.warning(
        "transition_anomaly",
        lineage_id=lineage_id,
        current_state=str(current_state),
        edge=edge,
        source=source,
        signal_id=signal_id,
        **extra_context,
    )
