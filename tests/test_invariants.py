"""
Tests for the scheduler invariants: slot stability, the minimum-churn
bound, and membership consistency.
"""

import pytest

from churncheck.harness import (
    CommandKind,
    InvariantViolation,
    ReferenceClusterModel,
    Replica,
    check_churn_bound,
    check_membership,
    check_slot_stability,
    create_log_entry,
    n_expected_reallocations,
    scheduler_invariants,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _slots(allocations: dict) -> dict:
    """Slot ids numbered by position within each task."""
    return {
        job_id: {
            task_id: {peer_id: i for i, peer_id in enumerate(peer_ids)}
            for task_id, peer_ids in tasks.items()
        }
        for job_id, tasks in allocations.items()
    }


def _replica(allocations: dict, groups: dict, slot_ids: dict | None = None, **kw) -> Replica:
    peers = {p for members in groups.values() for p in members}
    return Replica(
        peers=peers,
        groups=set(groups),
        groups_index=groups,
        groups_reverse_index={p: g for g, members in groups.items() for p in members},
        jobs=kw.pop("jobs", list(allocations)),
        allocations=allocations,
        task_slot_ids=slot_ids if slot_ids is not None else _slots(allocations),
        **kw,
    )


_GROUPS = {
    "g1": {"a3", "b1", "b2", "b3", "b4", "b5", "c1"},
    "g2": {"a1", "a2"},
}
_OLD_ALLOCATIONS = {
    "j1": {
        "t1": ("a1", "a2", "a3"),
        "t2": ("b1", "b2", "b3", "b4", "b5"),
        "t3": ("c1",),
    }
}
_REMAINING = {"g1": _GROUPS["g1"]}


def _group_leave():
    return create_log_entry(CommandKind.GROUP_LEAVE_CLUSTER, {"id": "g2"}).with_message_id(4)


# ===========================================================================
# Expected reallocation bound
# ===========================================================================


class TestExpectedReallocations:
    def test_group_leaving_task_with_minimum(self):
        """3/5/1 -> (1/5/1 after the leave) -> 3/3/1 allows 6 moves."""
        old = {"j1": {"t1": "abc", "t2": "defgh", "t3": "i"}}
        mid = {"j1": {"t1": "c", "t2": "defgh", "t3": "i"}}
        new = {"j1": {"t1": "cde", "t2": "fgh", "t3": "i"}}

        assert n_expected_reallocations(old, mid, new) == 6

    def test_single_peer_leaving(self):
        """1/2/1 -> (0/2/1) -> 1/1/1 allows 3 moves."""
        old = {"j1": {"t1": "a", "t2": "bc", "t3": "d"}}
        mid = {"j1": {"t1": "", "t2": "bc", "t3": "d"}}
        new = {"j1": {"t1": "b", "t2": "c", "t3": "d"}}

        assert n_expected_reallocations(old, mid, new) == 3

    def test_unchanged_allocations(self):
        allocations = {"j1": {"t1": ("a", "b")}}

        assert n_expected_reallocations(allocations, allocations, allocations) == 0

    def test_task_absent_from_old_allocations_counts_additions(self):
        old = {"j1": {"t1": ("a", "b")}}
        new = {"j1": {"t1": ("a",), "t2": ("b", "c")}}

        # t1: 0 + 1, t2: 0 + 2
        assert n_expected_reallocations(old, old, new) == 3


# ===========================================================================
# Churn bound
# ===========================================================================


class TestChurnBound:
    def test_minimal_rebalance_after_group_leave_passes(self):
        old = _replica(_OLD_ALLOCATIONS, _GROUPS)
        new = _replica(
            {"j1": {"t1": ("a3", "b4", "b5"), "t2": ("b1", "b2", "b3"), "t3": ("c1",)}},
            _REMAINING,
        )

        moves = check_churn_bound(old, new, _group_leave(), ReferenceClusterModel())

        assert moves == (6, 6)

    def test_excess_reallocation_is_rejected(self):
        old = _replica(_OLD_ALLOCATIONS, _GROUPS)
        new = _replica(
            {"j1": {"t1": ("b1", "b2", "b3"), "t2": ("a3", "b4", "b5"), "t3": ("c1",)}},
            _REMAINING,
        )

        with pytest.raises(InvariantViolation, match="Expected at most 6, actually performed 10") as excinfo:
            check_churn_bound(old, new, _group_leave(), ReferenceClusterModel())

        err = excinfo.value
        assert isinstance(err, AssertionError)
        assert err.old_replica is old
        assert err.new_replica is new
        assert err.entry.kind == CommandKind.GROUP_LEAVE_CLUSTER

    def test_non_leave_entry_uses_old_allocations_as_midpoint(self):
        groups = {"g1": {"p1", "p2", "p3"}}
        old = _replica({"j1": {"t1": ("p1", "p2"), "t2": ("p3",)}}, groups)
        # Swapping two peers costs 4 moves where 0 are needed.
        new = _replica({"j1": {"t1": ("p1", "p3"), "t2": ("p2",)}}, groups)
        entry = create_log_entry(CommandKind.GC).with_message_id(1)

        with pytest.raises(InvariantViolation):
            check_churn_bound(old, new, entry, ReferenceClusterModel())

    def test_skipped_when_allocated_jobs_differ(self):
        groups = {"g1": {"p1", "p2"}}
        old = _replica({"j1": {"t1": ("p1", "p2")}}, groups, jobs=["j1", "j2"])
        new = _replica({"j2": {"t1": ("p2", "p1")}}, groups, jobs=["j1", "j2"])
        entry = create_log_entry(CommandKind.GC).with_message_id(1)

        assert check_churn_bound(old, new, entry, ReferenceClusterModel()) is None

    def test_skipped_when_jobs_differ(self):
        groups = {"g1": {"p1", "p2", "p3"}}
        old = _replica({"j1": {"t1": ("p1", "p2"), "t2": ("p3",)}}, groups)
        new = _replica(
            {"j1": {"t1": ("p3",), "t2": ("p1", "p2")}}, groups, jobs=["j1", "j2"]
        )
        entry = create_log_entry(CommandKind.SUBMIT_JOB, {"job_id": "j2"}).with_message_id(1)

        assert check_churn_bound(old, new, entry, ReferenceClusterModel()) is None

    def test_skipped_when_any_job_has_required_tags(self):
        groups = {"g1": {"p1", "p2", "p3"}}
        old = _replica({"j1": {"t1": ("p1", "p2"), "t2": ("p3",)}}, groups)
        new = _replica(
            {"j1": {"t1": ("p1", "p3"), "t2": ("p2",)}},
            groups,
            required_tags={"j1": {"gpu"}},
        )
        entry = create_log_entry(CommandKind.GC).with_message_id(1)

        assert check_churn_bound(old, new, entry, ReferenceClusterModel()) is None


# ===========================================================================
# Slot stability
# ===========================================================================


class TestSlotStability:
    def test_retained_peer_keeps_slot(self):
        groups = {"g1": {"p1", "p2"}}
        old = _replica({"j1": {"t1": ("p1", "p2")}}, groups)
        new = _replica(
            {"j1": {"t1": ("p2",)}}, groups, slot_ids={"j1": {"t1": {"p2": 1}}}
        )
        entry = create_log_entry(CommandKind.GC).with_message_id(1)

        check_slot_stability(old, new, entry)

    def test_slot_change_on_same_task_is_rejected(self):
        groups = {"g1": {"p1", "p2"}}
        old = _replica({"j1": {"t1": ("p1", "p2")}}, groups)
        new = _replica(
            {"j1": {"t1": ("p1", "p2")}},
            groups,
            slot_ids={"j1": {"t1": {"p1": 1, "p2": 0}}},
        )
        entry = create_log_entry(CommandKind.GC).with_message_id(1)

        with pytest.raises(InvariantViolation, match="slot-id churn"):
            check_slot_stability(old, new, entry)

    def test_peer_moving_task_may_change_slot(self):
        groups = {"g1": {"p1", "p2"}}
        old = _replica({"j1": {"t1": ("p1", "p2")}}, groups)
        new = _replica(
            {"j1": {"t1": ("p1",), "t2": ("p2",)}},
            groups,
            slot_ids={"j1": {"t1": {"p1": 0}, "t2": {"p2": 0}}},
        )
        entry = create_log_entry(CommandKind.GC).with_message_id(1)

        check_slot_stability(old, new, entry)


# ===========================================================================
# Membership
# ===========================================================================


class TestMembership:
    def test_stray_allocated_peer_is_rejected(self):
        groups = {"g1": {"p1"}}
        old = _replica({"j1": {"t1": ("p1",)}}, groups)
        new = _replica({"j1": {"t1": ("p1", "ghost")}}, groups)
        entry = create_log_entry(CommandKind.GC).with_message_id(1)

        with pytest.raises(InvariantViolation, match="ghost"):
            check_membership(old, new, entry)

    def test_inconsistent_group_index_is_rejected(self):
        groups = {"g1": {"p1"}}
        old = _replica({}, groups)
        new = old.evolve(groups_reverse_index={"p1": "g2"})
        entry = create_log_entry(CommandKind.GC).with_message_id(1)

        with pytest.raises(InvariantViolation, match="disagree"):
            check_membership(old, new, entry)

    def test_scheduler_invariants_accepts_identity_transition(self):
        groups = {"g1": {"p1", "p2"}}
        old = _replica({"j1": {"t1": ("p1",), "t2": ("p2",)}}, groups)
        entry = create_log_entry(CommandKind.GC).with_message_id(1)

        scheduler_invariants(old, old.with_version(1), entry, ReferenceClusterModel())
