"""Identifier helpers for lineages, signals and log-safe tokens."""

import re
import uuid

LINEAGE_PREFIX = "lin"

_LINEAGE_PATTERN = re.compile(rf"^{LINEAGE_PREFIX}_[0-9a-f]{{32}}$")


def generate_lineage_id() -> str:
    """Generate a stable identifier for a new subscription lineage.

    Format: lin_{uuid hex}
    Example: lin_3f2b8c0e9d7a4e1f8a6b5c4d3e2f1a0b
    """
    return f"{LINEAGE_PREFIX}_{uuid.uuid4().hex}"


def is_lineage_id(value: str) -> bool:
    """Check whether a string looks like a generated lineage ID."""
    return bool(value) and bool(_LINEAGE_PATTERN.match(value))


def generate_signal_id() -> str:
    """Generate a nonce for a verification request that did not supply one."""
    return uuid.uuid4().hex


def sweeper_signal_id(lineage_id: str, reason: str, due_millis: int) -> str:
    """Deterministic ID for a time-driven signal.

    The same deadline on the same lineage always maps to the same ID, so
    repeated sweeps are deduplicated by the idempotency ledger.
    """
    return f"{lineage_id}:{reason}:{due_millis}"


def mask_token(token: str, visible: int = 20) -> str:
    """Shorten a purchase token for logs and error messages."""
    if len(token) <= visible:
        return token
    return token[:visible] + "..."
