"""
Exploration state: the value threaded through every commit.

Each commit returns a new ExplorationState. Earlier states stay valid, so
independent branches of a search can share a prefix without copying.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from .actors import PendingQueue
from .entry import LogEntry
from .replica import Replica


@dataclass(frozen=True)
class TransitionDebug:
    """What the engine did for one committed entry.

    Attributes:
        actors: Ids of the actors asked to react, groups first.
        reactions: (actor id, entries) pairs that were enqueued.
    """

    actors: tuple[str, ...] = ()
    reactions: tuple[tuple[str, tuple[LogEntry, ...]], ...] = ()


@dataclass(frozen=True)
class LogRecord:
    """One committed entry with its diff and debug record."""

    entry: LogEntry
    diff: Any
    debug: TransitionDebug


@dataclass(frozen=True)
class ExplorationState:
    """Accumulated result of replaying a log.

    Attributes:
        replica: Snapshot after the last committed entry.
        message_id: Message id the next commit will receive.
        queues: Queue id -> pending entries. Drained queues are removed.
        log: Committed records, in commit order.
        peer_choices: Queue id serviced at each commit.
    """

    replica: Replica
    message_id: int = 0
    queues: Mapping[str, PendingQueue] = field(default_factory=dict)
    log: tuple[LogRecord, ...] = ()
    peer_choices: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "queues", MappingProxyType(dict(self.queues)))

    @property
    def is_drained(self) -> bool:
        return not self.queues

    def entries(self) -> list[LogEntry]:
        """Committed entries in log order."""
        return [record.entry for record in self.log]

    def __repr__(self) -> str:
        pending = {qid: len(queue) for qid, queue in self.queues.items()}
        return (
            f"ExplorationState(next_id={self.message_id}, "
            f"committed={len(self.log)}, pending={pending}, {self.replica!r})"
        )


def initial_state(
    queues: Mapping[str, PendingQueue],
    replica: Replica | None = None,
    message_id: int = 0,
) -> ExplorationState:
    """Start an exploration from seed queues.

    Args:
        queues: Queue id -> seed queue.
        replica: Starting snapshot (empty cluster if None).
        message_id: Message id assigned to the first commit.
    """
    return ExplorationState(
        replica=replica if replica is not None else Replica(),
        message_id=message_id,
        queues=queues,
    )
