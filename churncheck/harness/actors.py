"""
Actors and their pending-entry queues.

Every group and peer owns one FIFO queue of entries it intends to write.
The driver decides which queue's head is committed next; within a queue,
order is always preserved.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from .entry import LogEntry
from .replica import Replica

# (replica, head entry) -> whether the queue may be serviced
QueuePredicate = Callable[[Replica, LogEntry], bool]


class ActorType(Enum):
    """Kinds of actors that write to the log."""

    GROUP = "group"
    PEER = "peer"


class NullMessenger:
    """Messenger placeholder handed to actors.

    Reaction logic may read messenger options; nothing is ever sent.
    """

    opts: Mapping[str, Any] = MappingProxyType({"try_join_once": False})

    def send(self, *args: Any, **kwargs: Any) -> None:
        return None

    def __repr__(self) -> str:
        return "NullMessenger()"


NULL_MESSENGER = NullMessenger()


@dataclass(frozen=True)
class ActorState:
    """Placeholder state passed to reaction logic for one actor.

    Attributes:
        actor_type: Group or peer.
        actor_id: The actor's id.
        messenger: No-op messenger.
        opts: Options copied from the messenger.
    """

    actor_type: ActorType
    actor_id: str
    messenger: NullMessenger = NULL_MESSENGER
    opts: Mapping[str, Any] = field(default_factory=dict)


def new_actor_state(
    actor_type: ActorType, actor_id: str, messenger: NullMessenger | None = None
) -> ActorState:
    messenger = messenger or NULL_MESSENGER
    return ActorState(
        actor_type=actor_type,
        actor_id=actor_id,
        messenger=messenger,
        opts=MappingProxyType(
            {"try_join_once": messenger.opts.get("try_join_once", True)}
        ),
    )


def _always(replica: Replica, entry: LogEntry) -> bool:
    return True


@dataclass(frozen=True)
class PendingQueue:
    """FIFO queue of entries an actor has not yet had committed.

    Attributes:
        owner: Id of the actor that writes these entries.
        entries: Pending entries, head first.
        predicate: Extra gate for queues owned by joined peers.
            None means always eligible.
        admission: Gate that lets a not-yet-member write its head entry
            (bootstrap join queues). None means membership is required.
    """

    owner: str
    entries: tuple[LogEntry, ...] = ()
    predicate: QueuePredicate | None = None
    admission: QueuePredicate | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", tuple(self.entries))

    @property
    def head(self) -> LogEntry | None:
        return self.entries[0] if self.entries else None

    def __len__(self) -> int:
        return len(self.entries)

    def pop(self) -> tuple[LogEntry, "PendingQueue | None"]:
        """Split off the head entry.

        Returns:
            The head entry and the remaining queue, or None if it drained.
        """
        head, rest = self.entries[0], self.entries[1:]
        if not rest:
            return head, None
        return head, PendingQueue(self.owner, rest, self.predicate, self.admission)

    def extend(self, entries: Iterable[LogEntry]) -> "PendingQueue":
        return PendingQueue(
            self.owner,
            self.entries + tuple(entries),
            self.predicate,
            self.admission,
        )

    def is_peer_eligible(self, replica: Replica) -> bool:
        return (self.predicate or _always)(replica, self.head)

    def is_admitted(self, replica: Replica) -> bool:
        return self.admission is not None and self.admission(replica, self.head)
