"""
Seed builders: initial actor queues for an exploration.

A seed is a mapping of group ids to peer ids. Every group starts with a
queue holding its prepare-join-cluster entry, and every peer with a queue
holding its add-virtual-peer entry.
"""

from functools import partial
from typing import Any, Mapping

from .actors import PendingQueue
from .entry import CommandKind, LogEntry, create_log_entry
from .errors import DuplicateActorError
from .replica import Replica


def generate_group_and_peer_ids(
    n_groups: int,
    n_peers: int,
    groups_start: int = 1,
    peers_start: int = 1,
) -> dict[str, set[str]]:
    """Build group ids and the peer ids each group owns.

    Args:
        n_groups: Number of groups.
        n_peers: Number of peers per group.
        groups_start: Index of the first group.
        peers_start: Index of the first peer within each group.

    Returns:
        ``{"g1": {"g1-p1", ...}, ...}``.
    """
    result = {}
    for g in range(groups_start, groups_start + n_groups):
        group_id = f"g{g}"
        result[group_id] = {
            f"{group_id}-p{p}" for p in range(peers_start, peers_start + n_peers)
        }
    return result


def _always_admitted(replica: Replica, entry: LogEntry) -> bool:
    return True


def _group_joined(group_id: str, replica: Replica, entry: LogEntry) -> bool:
    return group_id in replica.groups


def _register(
    queues: dict[str, PendingQueue], queue_id: str, queue: PendingQueue
) -> None:
    if queue_id in queues:
        raise DuplicateActorError(queue_id)
    queues[queue_id] = queue


def build_add_vpeer_queues(
    queues: dict[str, PendingQueue],
    group_id: str,
    peer_ids: set[str],
    more_args: Mapping[str, Any] | None = None,
) -> dict[str, PendingQueue]:
    """Add one add-virtual-peer queue per peer, keyed ``"<peer>-join"``.

    A peer may only be added once its group has joined.
    """
    result = dict(queues)
    for peer_id in sorted(peer_ids):
        entry = create_log_entry(
            CommandKind.ADD_VIRTUAL_PEER,
            {"id": peer_id, "group_id": group_id, **(more_args or {})},
        )
        _register(
            result,
            f"{peer_id}-join",
            PendingQueue(
                owner=peer_id,
                entries=(entry,),
                admission=partial(_group_joined, group_id),
            ),
        )
    return result


def generate_join_queues(
    group_and_peer_ids: Mapping[str, set[str]],
    more_join_args: Mapping[str, Any] | None = None,
) -> dict[str, PendingQueue]:
    """Initial queues for a seed.

    Args:
        group_and_peer_ids: Group id -> peer ids, e.g. from
            ``generate_group_and_peer_ids``.
        more_join_args: Extra arguments merged into every join entry.

    Returns:
        Queue id -> queue.

    Raises:
        DuplicateActorError: Two queues would share an id.
    """
    queues: dict[str, PendingQueue] = {}
    for group_id, peer_ids in group_and_peer_ids.items():
        entry = create_log_entry(
            CommandKind.PREPARE_JOIN_CLUSTER,
            {"joiner": group_id, **(more_join_args or {})},
        )
        _register(
            queues,
            group_id,
            PendingQueue(owner=group_id, entries=(entry,), admission=_always_admitted),
        )
        queues = build_add_vpeer_queues(queues, group_id, peer_ids, more_join_args)
    return queues


def merge_queues(*queue_maps: Mapping[str, PendingQueue]) -> dict[str, PendingQueue]:
    """Combine seed queue maps.

    Raises:
        DuplicateActorError: The same queue id appears in two maps.
    """
    merged: dict[str, PendingQueue] = {}
    for queue_map in queue_maps:
        for queue_id, queue in queue_map.items():
            _register(merged, queue_id, queue)
    return merged


def one_group(replica: Replica) -> Replica:
    """Place every peer of a replica in a single group ``g1``."""
    return replica.evolve(
        groups=frozenset({"g1"}),
        groups_index={"g1": set(replica.peers)},
        groups_reverse_index={peer_id: "g1" for peer_id in replica.peers},
    )
