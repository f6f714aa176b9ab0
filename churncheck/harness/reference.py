"""
Reference cluster model for exercising the harness.

Implements a small but complete command set: a three-step group join
(prepare, accept, notify) driven by an observing group, virtual peers,
peer and group departures, and job submission and removal. After every
membership or job change, an even-spread scheduler places peers on tasks.

A group that still owes an accept or notify to a joiner cannot leave. Its
leave is a no-op and the group writes the leave again behind that pending
work, so it departs once the join it observes has completed.

The scheduler keeps the peers already on a task, trims tasks that are over
their target, and fills tasks that are under it from the free peers in id
order. A task is never both trimmed and filled in the same step, so every
transition performs exactly the minimum number of moves.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Sequence

from .actors import ActorState, ActorType
from .entry import CommandKind, LogEntry, create_log_entry
from .model import ClusterModel, ReactionTable
from .replica import Replica, remove_peers


def _without(mapping: Mapping[str, Any], *keys: str) -> dict[str, Any]:
    return {k: v for k, v in mapping.items() if k not in keys}


def _observes(replica: Replica, group_id: str) -> bool:
    """Whether a group still owes an accept or notify to some joiner."""
    return group_id in replica.prepared.values() or group_id in replica.accepted.values()


class ReferenceClusterModel(ClusterModel):
    """In-memory cluster with a minimum-churn scheduler.

    Subclasses can override ``schedule`` to put a different placement
    policy under test.
    """

    def __init__(self) -> None:
        self._transitions: dict[CommandKind, Callable[[Mapping, Replica], Replica]] = {
            CommandKind.PREPARE_JOIN_CLUSTER: self._prepare_join_cluster,
            CommandKind.ACCEPT_JOIN_CLUSTER: self._accept_join_cluster,
            CommandKind.NOTIFY_JOIN_CLUSTER: self._notify_join_cluster,
            CommandKind.ABORT_JOIN_CLUSTER: self._abort_join_cluster,
            CommandKind.ADD_VIRTUAL_PEER: self._add_virtual_peer,
            CommandKind.LEAVE_CLUSTER: self._leave_cluster,
            CommandKind.GROUP_LEAVE_CLUSTER: self._group_leave_cluster,
            CommandKind.SUBMIT_JOB: self._submit_job,
            CommandKind.KILL_JOB: self._kill_job,
            CommandKind.GC: self._gc,
        }
        self._reactions = ReactionTable()
        self._reactions.register(CommandKind.PREPARE_JOIN_CLUSTER, self._react_prepare)
        self._reactions.register(CommandKind.ACCEPT_JOIN_CLUSTER, self._react_accept)
        self._reactions.register(CommandKind.GROUP_LEAVE_CLUSTER, self._react_group_leave)

    # -- ClusterModel ----------------------------------------------------

    def apply_log_entry(self, entry: LogEntry, replica: Replica) -> Replica:
        transition = self._transitions.get(entry.kind)
        if transition is None:
            return replica
        return transition(entry.args, replica)

    def reactions(
        self,
        entry: LogEntry,
        old: Replica,
        new: Replica,
        diff: Any,
        actor: ActorState,
    ) -> Sequence[LogEntry]:
        if actor.actor_type != ActorType.GROUP:
            return []
        return self._reactions(entry, old, new, diff, actor)

    def replica_diff(self, entry: LogEntry, old: Replica, new: Replica) -> dict:
        return {
            "joined_groups": new.groups - old.groups,
            "left_groups": old.groups - new.groups,
            "joined_peers": new.peers - old.peers,
            "left_peers": old.peers - new.peers,
        }

    # -- scheduling ------------------------------------------------------

    def schedule(self, replica: Replica) -> Replica:
        """Spread joined peers evenly over every task of every job."""
        slots = [
            (job_id, task_id)
            for job_id in replica.jobs
            for task_id in replica.tasks.get(job_id, ())
        ]
        if not slots:
            return replica.evolve(allocations={}, task_slot_ids={})

        base, extra = divmod(len(replica.peers), len(slots))
        targets = [base + (1 if i < extra else 0) for i in range(len(slots))]

        kept: dict[tuple[str, str], list[str]] = {}
        for slot, target in zip(slots, targets):
            job_id, task_id = slot
            current = [
                p
                for p in replica.allocations.get(job_id, {}).get(task_id, ())
                if p in replica.peers
            ]
            kept[slot] = current[:target]
        placed = {p for peer_ids in kept.values() for p in peer_ids}
        free = [p for p in sorted(replica.peers) if p not in placed]

        allocations: dict[str, dict[str, tuple[str, ...]]] = {}
        slot_ids: dict[str, dict[str, dict[str, int]]] = {}
        for slot, target in zip(slots, targets):
            job_id, task_id = slot
            assigned = list(kept[slot])
            while len(assigned) < target and free:
                assigned.append(free.pop(0))
            if not assigned:
                continue

            previous = replica.task_slot_ids.get(job_id, {}).get(task_id, {})
            task_slots = {p: previous[p] for p in assigned if p in previous}
            used = set(task_slots.values())
            next_slot = 0
            for p in assigned:
                if p in task_slots:
                    continue
                while next_slot in used:
                    next_slot += 1
                task_slots[p] = next_slot
                used.add(next_slot)

            allocations.setdefault(job_id, {})[task_id] = tuple(assigned)
            slot_ids.setdefault(job_id, {})[task_id] = task_slots

        return replica.evolve(allocations=allocations, task_slot_ids=slot_ids)

    # -- membership transitions -------------------------------------------

    def _admit_group(self, replica: Replica, group_id: str) -> Replica:
        return replica.evolve(
            groups=replica.groups | {group_id},
            groups_index={**replica.groups_index, group_id: frozenset()},
            prepared=_without(replica.prepared, group_id),
            accepted=_without(replica.accepted, group_id),
        )

    def _prepare_join_cluster(self, args: Mapping, replica: Replica) -> Replica:
        joiner = args["joiner"]
        if (
            joiner in replica.groups
            or joiner in replica.prepared
            or joiner in replica.accepted
        ):
            return replica
        if not replica.groups:
            # The first group forms the cluster on its own.
            return self._admit_group(replica, joiner)
        return replica.evolve(prepared={**replica.prepared, joiner: min(replica.groups)})

    def _accept_join_cluster(self, args: Mapping, replica: Replica) -> Replica:
        joiner = args["accepted_joiner"]
        observer = args["accepted_observer"]
        if replica.prepared.get(joiner) != observer:
            return replica
        return replica.evolve(
            prepared=_without(replica.prepared, joiner),
            accepted={**replica.accepted, joiner: observer},
        )

    def _notify_join_cluster(self, args: Mapping, replica: Replica) -> Replica:
        joiner = args["joiner"]
        if joiner not in replica.accepted:
            return replica
        return self._admit_group(replica, joiner)

    def _abort_join_cluster(self, args: Mapping, replica: Replica) -> Replica:
        joiner = args["id"]
        return replica.evolve(
            prepared=_without(replica.prepared, joiner),
            accepted=_without(replica.accepted, joiner),
        )

    def _add_virtual_peer(self, args: Mapping, replica: Replica) -> Replica:
        peer_id = args["id"]
        group_id = args["group_id"]
        if group_id not in replica.groups or peer_id in replica.peers:
            return replica
        joined = replica.evolve(
            peers=replica.peers | {peer_id},
            groups_index={
                **replica.groups_index,
                group_id: replica.groups_index.get(group_id, frozenset()) | {peer_id},
            },
            groups_reverse_index={**replica.groups_reverse_index, peer_id: group_id},
        )
        return self.schedule(joined)

    def _remove_peers(self, replica: Replica, peer_ids: set[str]) -> Replica:
        groups_index = {
            group_id: members - peer_ids
            for group_id, members in replica.groups_index.items()
        }
        return replica.evolve(
            peers=replica.peers - peer_ids,
            groups_index=groups_index,
            groups_reverse_index=_without(replica.groups_reverse_index, *peer_ids),
            allocations=remove_peers(replica.allocations, peer_ids),
        )

    def _leave_cluster(self, args: Mapping, replica: Replica) -> Replica:
        peer_id = args["id"]
        if peer_id not in replica.peers:
            return replica
        return self.schedule(self._remove_peers(replica, {peer_id}))

    def _group_leave_cluster(self, args: Mapping, replica: Replica) -> Replica:
        group_id = args["id"]
        if group_id not in replica.groups or _observes(replica, group_id):
            return replica
        left = self._remove_peers(replica, set(replica.groups_index.get(group_id, ())))
        left = left.evolve(
            groups=left.groups - {group_id},
            groups_index=_without(left.groups_index, group_id),
        )
        return self.schedule(left)

    # -- job transitions ---------------------------------------------------

    def _submit_job(self, args: Mapping, replica: Replica) -> Replica:
        job_id = args["job_id"]
        if job_id in replica.jobs:
            return replica
        changes: dict[str, Any] = {
            "jobs": replica.jobs + (job_id,),
            "tasks": {**replica.tasks, job_id: tuple(args["tasks"])},
        }
        if args.get("required_tags"):
            changes["required_tags"] = {
                **replica.required_tags,
                job_id: frozenset(args["required_tags"]),
            }
        return self.schedule(replica.evolve(**changes))

    def _kill_job(self, args: Mapping, replica: Replica) -> Replica:
        job_id = args["job_id"]
        if job_id not in replica.jobs:
            return replica
        killed = replica.evolve(
            jobs=tuple(j for j in replica.jobs if j != job_id),
            tasks=_without(replica.tasks, job_id),
            allocations=_without(replica.allocations, job_id),
            task_slot_ids=_without(replica.task_slot_ids, job_id),
            required_tags=_without(replica.required_tags, job_id),
        )
        return self.schedule(killed)

    def _gc(self, args: Mapping, replica: Replica) -> Replica:
        return replica.evolve(
            prepared={
                j: o for j, o in replica.prepared.items() if j not in replica.groups
            },
            accepted={
                j: o for j, o in replica.accepted.items() if j not in replica.groups
            },
        )

    # -- reactions ---------------------------------------------------------

    def _accept_for(self, joiner: str, observer: str) -> LogEntry:
        return create_log_entry(
            CommandKind.ACCEPT_JOIN_CLUSTER,
            {"accepted_observer": observer, "accepted_joiner": joiner},
        )

    def _react_prepare(
        self, entry: LogEntry, old: Replica, new: Replica, diff: Any, actor: ActorState
    ) -> list[LogEntry]:
        joiner = entry.args["joiner"]
        if new.prepared.get(joiner) == actor.actor_id and joiner not in old.prepared:
            return [self._accept_for(joiner, actor.actor_id)]
        return []

    def _react_accept(
        self, entry: LogEntry, old: Replica, new: Replica, diff: Any, actor: ActorState
    ) -> list[LogEntry]:
        joiner = entry.args["accepted_joiner"]
        if new.accepted.get(joiner) == actor.actor_id and joiner not in old.accepted:
            return [
                create_log_entry(
                    CommandKind.NOTIFY_JOIN_CLUSTER,
                    {"observer": actor.actor_id, "joiner": joiner},
                )
            ]
        return []

    def _react_group_leave(
        self, entry: LogEntry, old: Replica, new: Replica, diff: Any, actor: ActorState
    ) -> list[LogEntry]:
        group_id = entry.args["id"]
        if actor.actor_id == group_id and group_id in new.groups:
            # Refused while observing; retry behind the pending accept/notify.
            return [create_log_entry(CommandKind.GROUP_LEAVE_CLUSTER, {"id": group_id})]
        return []
