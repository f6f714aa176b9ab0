"""
Immutable cluster snapshot for the log-replay harness.

A Replica is produced once per committed log entry and never mutated.
Nested containers are frozen on construction so that snapshots referenced
by earlier log records stay valid; ``evolve`` shares every unchanged field
with the snapshot it was derived from.
"""

from collections import Counter
from dataclasses import dataclass, field, fields, replace
from types import MappingProxyType
from typing import Any, Mapping

# job -> task -> ordered peers
Allocations = Mapping[str, Mapping[str, tuple[str, ...]]]
# job -> task -> peer -> slot id
SlotIds = Mapping[str, Mapping[str, Mapping[str, int]]]


def _freeze(value: Any) -> Any:
    """Recursively convert containers to their read-only counterparts.

    Read-only mappings and frozensets are assumed frozen already and are
    returned as is, which is what lets ``evolve`` share unchanged fields.
    """
    if isinstance(value, (MappingProxyType, frozenset)):
        return value
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, set):
        return frozenset(value)
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _empty() -> Mapping:
    return MappingProxyType({})


@dataclass(frozen=True)
class Replica:
    """Snapshot of the full cluster state after a log entry.

    Attributes:
        peers: Ids of joined peers.
        groups: Ids of joined groups.
        groups_index: Group id -> peer ids of that group.
        groups_reverse_index: Peer id -> owning group id.
        jobs: Submitted job ids, in submission order.
        tasks: Job id -> ordered task ids.
        allocations: Job id -> task id -> ordered peer ids.
        task_slot_ids: Job id -> task id -> peer id -> slot id.
        required_tags: Job id -> placement tags the job requires.
        prepared: Joining group -> observing group, after prepare.
        accepted: Joining group -> observing group, after accept.
        version: Message id of the last applied entry (-1 before any).
    """

    peers: frozenset[str] = frozenset()
    groups: frozenset[str] = frozenset()
    groups_index: Mapping[str, frozenset[str]] = field(default_factory=_empty)
    groups_reverse_index: Mapping[str, str] = field(default_factory=_empty)
    jobs: tuple[str, ...] = ()
    tasks: Mapping[str, tuple[str, ...]] = field(default_factory=_empty)
    allocations: Allocations = field(default_factory=_empty)
    task_slot_ids: SlotIds = field(default_factory=_empty)
    required_tags: Mapping[str, frozenset[str]] = field(default_factory=_empty)
    prepared: Mapping[str, str] = field(default_factory=_empty)
    accepted: Mapping[str, str] = field(default_factory=_empty)
    version: int = -1

    def __post_init__(self) -> None:
        for f in fields(self):
            object.__setattr__(self, f.name, _freeze(getattr(self, f.name)))

    def evolve(self, **changes: Any) -> "Replica":
        """Return a new snapshot with the given fields replaced."""
        return replace(self, **changes)

    def with_version(self, version: int) -> "Replica":
        return replace(self, version=version)

    def slot_id(self, job_id: str, task_id: str, peer_id: str) -> int | None:
        return (
            self.task_slot_ids.get(job_id, {}).get(task_id, {}).get(peer_id)
        )

    def allocated_jobs(self) -> frozenset[str]:
        return frozenset(self.allocations.keys())

    def index_is_consistent(self) -> bool:
        """Check that groups_index and groups_reverse_index mirror each other."""
        forward = {
            (peer_id, group_id)
            for group_id, peer_ids in self.groups_index.items()
            for peer_id in peer_ids
        }
        reverse = set(self.groups_reverse_index.items())
        return forward == reverse

    def __repr__(self) -> str:
        return (
            f"Replica(v{self.version}, groups={sorted(self.groups)}, "
            f"peers={sorted(self.peers)}, jobs={list(self.jobs)}, "
            f"allocations={_plain(self.allocations)})"
        )


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return list(value)
    return value


def allocations_to_peers(allocations: Allocations) -> list[tuple[str, str, str]]:
    """Flatten allocations into (peer, job, task) triples."""
    return [
        (peer_id, job_id, task_id)
        for job_id, tasks in allocations.items()
        for task_id, peer_ids in tasks.items()
        for peer_id in peer_ids
    ]


def task_counts(allocations: Allocations) -> Counter:
    """Count assigned peers per (job, task)."""
    return Counter(
        {
            (job_id, task_id): len(peer_ids)
            for job_id, tasks in allocations.items()
            for task_id, peer_ids in tasks.items()
        }
    )


def remove_peers(allocations: Allocations, peer_ids: set[str]) -> dict:
    """Drop the given peers from every task, keeping the others in order."""
    return {
        job_id: {
            task_id: tuple(p for p in assigned if p not in peer_ids)
            for task_id, assigned in tasks.items()
        }
        for job_id, tasks in allocations.items()
    }
