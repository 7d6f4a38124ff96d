"""Tests for the entitlement transition table."""

import pytest

from iap_reconciler.models import EntitlementState
from iap_reconciler.services.lifecycle import METADATA_STATES, TRANSITIONS, Edge, legal_edges, resolve

S = EntitlementState
ALL_STATES = list(EntitlementState)


class TestTransitionTable:
    """Test the edges listed in the table."""

    @pytest.mark.parametrize("current,edge,target", [(c, e, t) for (c, e), t in TRANSITIONS.items()])
    def test_table_edges_resolve_to_target(self, current, edge, target):
        resolution = resolve(current, edge)
        assert resolution.legal
        assert resolution.target == target

    def test_core_lifecycle_edges(self):
        """The documented happy and unhappy paths are present."""
        assert resolve(S.PENDING, Edge.PAYMENT_RECEIVED).target == S.ACTIVE
        assert resolve(S.ACTIVE, Edge.CANCEL_REQUESTED).target == S.CANCELED
        assert resolve(S.ACTIVE, Edge.PAYMENT_FAILED).target == S.GRACE_PERIOD
        assert resolve(S.GRACE_PERIOD, Edge.GRACE_EXHAUSTED).target == S.ON_HOLD
        assert resolve(S.ON_HOLD, Edge.HOLD_EXHAUSTED).target == S.REVOKED
        assert resolve(S.PAUSED, Edge.RESUMED).target == S.ACTIVE
        assert resolve(S.CANCELED, Edge.EXPIRY_REACHED).target == S.EXPIRED

    def test_renewal_keeps_active(self):
        resolution = resolve(S.ACTIVE, Edge.RENEWAL_CONFIRMED)
        assert resolution.legal
        assert not resolution.changes_state


class TestFailSafeEdges:
    """Revocation and expiry win from any state."""

    @pytest.mark.parametrize("current", ALL_STATES)
    def test_revoked_from_any_state(self, current):
        assert resolve(current, Edge.REVOKED).target == S.REVOKED

    @pytest.mark.parametrize("current", [s for s in ALL_STATES if not s.is_terminal])
    def test_expiry_from_non_terminal_state(self, current):
        assert resolve(current, Edge.EXPIRY_REACHED).target == S.EXPIRED

    def test_expiry_never_downgrades_revocation(self):
        resolution = resolve(S.REVOKED, Edge.EXPIRY_REACHED)
        assert resolution.target == S.REVOKED
        assert not resolution.changes_state


class TestIllegalEdges:
    """Edges outside the table resolve to no target."""

    @pytest.mark.parametrize(
        "current,edge",
        [
            (S.EXPIRED, Edge.RENEWAL_CONFIRMED),
            (S.EXPIRED, Edge.PAYMENT_RECEIVED),
            (S.REVOKED, Edge.RESTARTED),
            (S.CANCELED, Edge.PAYMENT_FAILED),
            (S.PENDING, Edge.CANCEL_REQUESTED),
            (S.PAUSED, Edge.RENEWAL_CONFIRMED),
        ],
    )
    def test_illegal(self, current, edge):
        resolution = resolve(current, edge)
        assert not resolution.legal
        assert resolution.target is None

    @pytest.mark.parametrize("current", [S.EXPIRED, S.REVOKED])
    def test_metadata_rejected_in_terminal_states(self, current):
        assert not resolve(current, Edge.METADATA).legal

    @pytest.mark.parametrize("current", sorted(METADATA_STATES))
    def test_metadata_keeps_state(self, current):
        resolution = resolve(current, Edge.METADATA)
        assert resolution.target == current


class TestLegalEdges:
    def test_terminal_states_only_accept_fail_safe_edges(self):
        assert legal_edges(S.EXPIRED) == frozenset({Edge.REVOKED, Edge.EXPIRY_REACHED})

    def test_active_edges(self):
        edges = legal_edges(S.ACTIVE)
        assert Edge.CANCEL_REQUESTED in edges
        assert Edge.PAYMENT_RECEIVED not in edges
