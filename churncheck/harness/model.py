"""
Cluster model interface for the log-replay harness.

The harness does not know how commands change the cluster. A ClusterModel
supplies the transition function under test, the per-transition diff, and
the reactions each actor writes in response to a committed entry.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Sequence

from .actors import ActorState
from .entry import CommandKind, LogEntry
from .replica import Replica, remove_peers

# (entry, old, new, diff, actor) -> entries the actor writes next
ReactionHandler = Callable[
    [LogEntry, Replica, Replica, Any, ActorState], Sequence[LogEntry]
]


class ClusterModel(ABC):
    """Abstract base class for the system under test.

    Implementations must be deterministic: the same entry applied to the
    same replica always yields an equal replica.
    """

    @abstractmethod
    def apply_log_entry(self, entry: LogEntry, replica: Replica) -> Replica:
        """Apply one committed entry and return the next snapshot.

        Args:
            entry: Committed entry (message_id is set).
            replica: Snapshot whose version is already the entry's message id.

        Returns:
            A new Replica. The input must not be modified.
        """

    @abstractmethod
    def reactions(
        self,
        entry: LogEntry,
        old: Replica,
        new: Replica,
        diff: Any,
        actor: ActorState,
    ) -> Sequence[LogEntry]:
        """Entries an actor writes in response to a committed entry.

        Returns:
            Entries to append to the actor's queue, possibly empty.
        """

    def replica_diff(self, entry: LogEntry, old: Replica, new: Replica) -> Any:
        """Summarize a transition for reaction logic. Opaque to the harness."""
        return None

    def side_effects(
        self,
        entry: LogEntry,
        old: Replica,
        new: Replica,
        diff: Any,
        actor: ActorState,
    ) -> Sequence[LogEntry]:
        """Entries an actor's running process writes, e.g. readiness signals.

        Collected after reactions; none by default.
        """
        return []

    def deallocated_replica(self, entry: LogEntry, replica: Replica) -> Replica:
        """Replica with the peers forced out by a leave entry removed.

        Only the allocations change. Entries that do not remove peers return
        the replica unchanged.
        """
        if entry.kind == CommandKind.LEAVE_CLUSTER:
            leaving = {entry.args["id"]}
        elif entry.kind == CommandKind.GROUP_LEAVE_CLUSTER:
            leaving = set(replica.groups_index.get(entry.args["id"], ()))
        else:
            return replica
        return replica.evolve(allocations=remove_peers(replica.allocations, leaving))


class ReactionTable:
    """Reaction handlers registered per command kind.

    Kinds without a handler produce no reactions.
    """

    def __init__(self) -> None:
        self._handlers: dict[CommandKind, ReactionHandler] = {}

    def register(self, kind: CommandKind, handler: ReactionHandler) -> None:
        if not isinstance(kind, CommandKind):
            raise ValueError(f"Unknown command kind: {kind!r}")
        if kind in self._handlers:
            raise ValueError(f"Handler for {kind.value} is already registered")
        self._handlers[kind] = handler

    def on(self, kind: CommandKind) -> Callable[[ReactionHandler], ReactionHandler]:
        """Decorator form of ``register``."""

        def decorator(handler: ReactionHandler) -> ReactionHandler:
            self.register(kind, handler)
            return handler

        return decorator

    def __contains__(self, kind: CommandKind) -> bool:
        return kind in self._handlers

    def __call__(
        self,
        entry: LogEntry,
        old: Replica,
        new: Replica,
        diff: Any,
        actor: ActorState,
    ) -> list[LogEntry]:
        handler = self._handlers.get(entry.kind)
        if handler is None:
            return []
        return list(handler(entry, old, new, diff, actor))
