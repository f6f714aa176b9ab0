"""
Scheduler invariants checked on every committed transition.

Two properties must hold when the scheduler reacts to a change in the
cluster:

1. Slot stability. A peer that stays on the same (job, task) keeps its
   slot id.

2. Minimum churn. The number of peer position changes never exceeds a
   lower bound derived from task capacities.

The bound is computed from an N x 3 matrix, one row per task. The first
column is the task's peer count in the old replica, the last column its
count in the new replica, and the middle column its count after the peers
forced out by this entry (a leaving peer or group) are removed from the
old replica. For each row, ``old - mid`` is the exact number of forced
removals and ``|mid - new|`` the number of peers the scheduler must add
or remove to reach the new capacity. The absolute value covers a task the
scheduler drops to zero. Summing rows keeps forced departures and
rebalancing from being counted twice.

Example: three tasks at 3/5/1, a group of two leaves task 1, which must
keep at least 3 peers::

    [ 3 <-- +2 --> 1 <-- +2 --> 3 ]
    [ 5            5 <-- +2 --> 3 ]
    [ 1            1            1 ]

The scheduler ends at 3/3/1 and may perform at most 2 + 2 + 2 = 6 moves.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .entry import CommandKind, LogEntry
from .errors import InvariantViolation
from .replica import Allocations, Replica, allocations_to_peers, task_counts

if TYPE_CHECKING:
    from .model import ClusterModel

logger = logging.getLogger(__name__)

# Entries whose application forces peers off their tasks.
DEALLOCATING_KINDS = frozenset(
    {CommandKind.LEAVE_CLUSTER, CommandKind.GROUP_LEAVE_CLUSTER}
)


def same_slot_id(
    old: Replica, new: Replica, job_id: str, task_id: str, peer_id: str
) -> bool:
    return old.slot_id(job_id, task_id, peer_id) == new.slot_id(job_id, task_id, peer_id)


def n_expected_reallocations(
    old_allocations: Allocations,
    left_allocations: Allocations,
    new_allocations: Allocations,
) -> int:
    """Lower bound on peer moves for one transition.

    Args:
        old_allocations: Allocations before the entry.
        left_allocations: Old allocations minus peers the entry forced out.
        new_allocations: Allocations after the entry.

    Returns:
        Sum over tasks of ``(old - mid) + |mid - new|``.
    """
    old_counts = task_counts(old_allocations)
    mid_counts = task_counts(left_allocations)
    new_counts = task_counts(new_allocations)
    total = 0
    for key in old_counts.keys() | mid_counts.keys() | new_counts.keys():
        total += (old_counts[key] - mid_counts[key]) + abs(mid_counts[key] - new_counts[key])
    return total


def check_slot_stability(old: Replica, new: Replica, entry: LogEntry) -> None:
    """Raise if a peer kept on the same task changed slot id."""
    same_allocated = set(allocations_to_peers(old.allocations)) & set(
        allocations_to_peers(new.allocations)
    )
    churned = sorted(
        (peer_id, job_id, task_id)
        for peer_id, job_id, task_id in same_allocated
        if not same_slot_id(old, new, job_id, task_id, peer_id)
    )
    if churned:
        raise InvariantViolation(
            f"No slot-id churn allowed on peers allocated to the same task: {churned}",
            old,
            new,
            entry,
        )


def churn_check_applies(old: Replica, new: Replica) -> bool:
    """Whether the minimum-churn bound is meaningful for this transition.

    The bound does not hold when the set of allocated jobs or of submitted
    jobs changes, or when any submitted job carries placement tags (tag
    placement is solved separately and is not bound by capacity alone).
    """
    if old.allocated_jobs() != new.allocated_jobs():
        return False
    if set(old.jobs) != set(new.jobs):
        return False
    if any(job_id in new.required_tags for job_id in new.jobs):
        return False
    return True


def check_churn_bound(
    old: Replica, new: Replica, entry: LogEntry, model: ClusterModel
) -> tuple[int, int] | None:
    """Raise if the scheduler moved more peers than the lower bound allows.

    Returns:
        (actual, expected) moves, or None when the check does not apply.
    """
    if not churn_check_applies(old, new):
        return None

    prev_allocation = set(allocations_to_peers(old.allocations))
    new_allocation = set(allocations_to_peers(new.allocations))
    deallocated = prev_allocation - new_allocation
    newly_allocated = new_allocation - prev_allocation
    n_actual = len(newly_allocated) + len(deallocated)

    if entry.kind in DEALLOCATING_KINDS:
        left = model.deallocated_replica(entry, old)
    else:
        left = old
    n_expected = n_expected_reallocations(
        old.allocations, left.allocations, new.allocations
    )

    if n_actual > n_expected:
        raise InvariantViolation(
            f"Potentially bad reallocations. Expected at most {n_expected}, "
            f"actually performed {n_actual}",
            old,
            new,
            entry,
        )
    return n_actual, n_expected


def check_membership(old: Replica, new: Replica, entry: LogEntry) -> None:
    """Raise if the group index is inconsistent or a non-member is allocated."""
    if not new.index_is_consistent():
        raise InvariantViolation(
            "groups_index and groups_reverse_index disagree", old, new, entry
        )
    strays = sorted(
        {peer_id for peer_id, _, _ in allocations_to_peers(new.allocations)}
        - new.peers
    )
    if strays:
        raise InvariantViolation(
            f"Peers allocated without being joined: {strays}", old, new, entry
        )


def scheduler_invariants(
    old: Replica, new: Replica, entry: LogEntry, model: ClusterModel
) -> None:
    """Run every transition invariant; the first failure is raised."""
    check_membership(old, new, entry)
    check_slot_stability(old, new, entry)
    moves = check_churn_bound(old, new, entry, model)
    if moves is not None:
        logger.debug(
            "churn for %r: %d actual, %d allowed", entry, moves[0], moves[1]
        )
