"""
Log entries for the replicated command log.

A log entry is a command kind plus named arguments. Entries are written by
actors into their pending queues and receive a message id when the driver
commits them to the shared log.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class CommandKind(Enum):
    """Closed set of commands an actor can write to the log."""

    # Job lifecycle
    SUBMIT_JOB = "submit-job"
    KILL_JOB = "kill-job"
    GC = "gc"

    # Membership
    LEAVE_CLUSTER = "leave-cluster"
    GROUP_LEAVE_CLUSTER = "group-leave-cluster"
    PREPARE_JOIN_CLUSTER = "prepare-join-cluster"
    ACCEPT_JOIN_CLUSTER = "accept-join-cluster"
    NOTIFY_JOIN_CLUSTER = "notify-join-cluster"
    ABORT_JOIN_CLUSTER = "abort-join-cluster"
    ADD_VIRTUAL_PEER = "add-virtual-peer"

    # Task lifecycle
    SIGNAL_READY = "signal-ready"
    SEAL_OUTPUT = "seal-output"
    COMPLETE_TASK = "complete-task"


# Commands that can be written by an actor that is not a cluster member.
PEERLESS_KINDS = frozenset(
    {CommandKind.SUBMIT_JOB, CommandKind.KILL_JOB, CommandKind.GC}
)

# Commands whose arguments name actors that must react even though they
# may not (or no longer) be members.
JOIN_PROTOCOL_KINDS = frozenset(
    {
        CommandKind.PREPARE_JOIN_CLUSTER,
        CommandKind.ACCEPT_JOIN_CLUSTER,
        CommandKind.ABORT_JOIN_CLUSTER,
        CommandKind.NOTIFY_JOIN_CLUSTER,
        CommandKind.GROUP_LEAVE_CLUSTER,
    }
)

# Argument fields scanned for actor ids on join-protocol commands.
# TODO: key these by command kind so new join-protocol commands that use
# other field names are not silently skipped.
ACTOR_ARG_FIELDS = ("observer", "id", "accepted_observer", "accepted_joiner", "joiner")


@dataclass(frozen=True)
class LogEntry:
    """A command, optionally committed to the log.

    Attributes:
        kind: Which command this is.
        args: Command-specific named arguments (read-only).
        message_id: Position in the shared log, or None while still pending.
    """

    kind: CommandKind
    args: Mapping[str, Any] = field(default_factory=dict)
    message_id: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", MappingProxyType(dict(self.args)))

    @property
    def is_peerless(self) -> bool:
        return self.kind in PEERLESS_KINDS

    @property
    def is_committed(self) -> bool:
        return self.message_id is not None

    def with_message_id(self, message_id: int) -> "LogEntry":
        """Return a committed copy of this entry."""
        return replace(self, message_id=message_id)

    def actor_args(self) -> list[str]:
        """Actor ids named under the fixed role fields, in field order."""
        return [
            self.args[name]
            for name in ACTOR_ARG_FIELDS
            if self.args.get(name) is not None
        ]

    def __repr__(self) -> str:
        mid = "" if self.message_id is None else f"#{self.message_id} "
        return f"LogEntry({mid}{self.kind.value}, {dict(self.args)})"


def create_log_entry(
    kind: CommandKind | str, args: Mapping[str, Any] | None = None
) -> LogEntry:
    """Build a pending log entry.

    Args:
        kind: A CommandKind or its string value (e.g. "submit-job").
        args: Command arguments.

    Returns:
        An uncommitted LogEntry.
    """
    if not isinstance(kind, CommandKind):
        kind = CommandKind(kind)
    return LogEntry(kind=kind, args=args or {})
