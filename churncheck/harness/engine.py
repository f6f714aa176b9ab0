"""
Transition engine for the log-replay harness.

Applies one committed entry to a replica through the cluster model, checks
the scheduler invariants, and enqueues the reactions of every actor that
observes the entry.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .actors import ActorState, ActorType, NullMessenger, PendingQueue, new_actor_state
from .entry import JOIN_PROTOCOL_KINDS, LogEntry
from .invariants import scheduler_invariants
from .model import ClusterModel
from .replica import Replica
from .state import TransitionDebug

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """Result of applying one entry.

    Attributes:
        entry: The committed entry.
        replica: Snapshot after the entry.
        diff: Model-supplied summary of the change.
        queues: Pending queues with reactions appended.
        debug: Actors consulted and reactions enqueued.
    """

    entry: LogEntry
    replica: Replica
    diff: Any
    queues: Mapping[str, PendingQueue]
    debug: TransitionDebug


def active_groups(replica: Replica, entry: LogEntry) -> list[str]:
    """Groups that may react to an entry.

    Joined groups and groups observing an open join proposal always react.
    For join and group-leave commands, groups named in the entry react as
    well, so a joiner sees its own admission and a leaver its own removal.
    """
    groups = set(replica.groups)
    groups.update(replica.prepared.values())
    groups.update(replica.accepted.values())
    if entry.kind in JOIN_PROTOCOL_KINDS:
        groups.update(entry.actor_args())
    return sorted(groups)


def active_peers(replica: Replica, entry: LogEntry) -> list[str]:
    return sorted(replica.peers)


class TransitionEngine:
    """Applies committed entries and collects reactions.

    Args:
        model: Cluster model under test.
        messenger: Messenger handed to actor states (no-op by default).
        check_invariants: Run the scheduler invariants on every transition.
    """

    def __init__(
        self,
        model: ClusterModel,
        messenger: NullMessenger | None = None,
        check_invariants: bool = True,
    ):
        self.model = model
        self.messenger = messenger
        self.check_invariants = check_invariants

    def actor_states(self, replica: Replica, entry: LogEntry) -> list[ActorState]:
        states = [
            new_actor_state(ActorType.GROUP, group_id, self.messenger)
            for group_id in active_groups(replica, entry)
        ]
        states.extend(
            new_actor_state(ActorType.PEER, peer_id, self.messenger)
            for peer_id in active_peers(replica, entry)
        )
        return states

    def collect_reactions(
        self,
        entry: LogEntry,
        old: Replica,
        new: Replica,
        diff: Any,
        actors: list[ActorState],
    ) -> list[tuple[str, tuple[LogEntry, ...]]]:
        """Ask each actor for reactions, then for side effects.

        Returns:
            (actor id, entries) pairs, skipping actors with nothing to write.
        """
        collected = []
        for actor in actors:
            reactions = tuple(self.model.reactions(entry, old, new, diff, actor))
            if reactions:
                collected.append((actor.actor_id, reactions))
        for actor in actors:
            effects = tuple(self.model.side_effects(entry, old, new, diff, actor))
            if effects:
                collected.append((actor.actor_id, effects))
        return collected

    def apply_entry(
        self,
        old_replica: Replica,
        queues: Mapping[str, PendingQueue],
        entry: LogEntry,
        message_id: int | None = None,
    ) -> Transition:
        """Commit an entry against a replica.

        Args:
            old_replica: Snapshot before the entry.
            queues: Pending queues (not modified).
            entry: Entry to apply.
            message_id: Message id to assign. Required unless the entry is
                already committed.

        Returns:
            The resulting Transition.

        Raises:
            InvariantViolation: The model broke a scheduler invariant.
        """
        if message_id is not None:
            entry = entry.with_message_id(message_id)
        if not entry.is_committed:
            raise ValueError(f"Entry has no message id: {entry!r}")

        new_replica = self.model.apply_log_entry(
            entry, old_replica.with_version(entry.message_id)
        )
        if self.check_invariants:
            scheduler_invariants(old_replica, new_replica, entry, self.model)

        diff = self.model.replica_diff(entry, old_replica, new_replica)
        actors = self.actor_states(new_replica, entry)
        reactions = self.collect_reactions(entry, old_replica, new_replica, diff, actors)

        # Reactions from different actors are interleaved later by the driver,
        # so enqueueing them together here does not fix their order.
        updated = dict(queues)
        for actor_id, entries in reactions:
            queue = updated.get(actor_id)
            if queue is None:
                queue = PendingQueue(owner=actor_id)
            updated[actor_id] = queue.extend(entries)

        logger.debug(
            "applied %r: %d actors, %d reacting",
            entry,
            len(actors),
            len(reactions),
        )
        return Transition(
            entry=entry,
            replica=new_replica,
            diff=diff,
            queues=updated,
            debug=TransitionDebug(
                actors=tuple(actor.actor_id for actor in actors),
                reactions=tuple(reactions),
            ),
        )
