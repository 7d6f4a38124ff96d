"""Utility functions and helpers for the reconciler."""

from iap_reconciler.utils.durations import (
    MILLIS_PER_DAY,
    MILLIS_PER_HOUR,
    MILLIS_PER_SECOND,
    parse_duration,
    parse_optional_duration,
    validate_duration,
)
from iap_reconciler.utils.identifiers import (
    generate_lineage_id,
    generate_signal_id,
    is_lineage_id,
    mask_token,
    sweeper_signal_id,
)

__all__ = [
    # Durations
    "MILLIS_PER_SECOND",
    "MILLIS_PER_HOUR",
    "MILLIS_PER_DAY",
    "parse_duration",
    "parse_optional_duration",
    "validate_duration",
    # Identifiers
    "generate_lineage_id",
    "generate_signal_id",
    "is_lineage_id",
    "mask_token",
    "sweeper_signal_id",
]
