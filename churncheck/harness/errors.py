"""
Fatal failures raised while exploring log interleavings.

None of these are retried: each one aborts the current run and carries
enough context (the state it was raised from and the choices that led
there) to reproduce it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .entry import LogEntry
    from .replica import Replica
    from .state import ExplorationState


class HarnessError(Exception):
    """Base class for fatal exploration failures.

    Attributes:
        state: Exploration state the failure was raised from, once known.
        choices: Queue ids chosen up to and including the failing commit.
    """

    def __init__(self, message: str, state: ExplorationState | None = None):
        super().__init__(message)
        self.state = state
        self.choices: tuple[str, ...] | None = None


class DeadlockError(HarnessError):
    """Queues remain but none of them can be serviced."""


class LogOverflowError(HarnessError, OverflowError):
    """The committed log outgrew the safety bound."""


class InvariantViolation(HarnessError, AssertionError):
    """A transition broke slot stability, the churn bound or membership."""

    def __init__(
        self,
        message: str,
        old_replica: Replica,
        new_replica: Replica,
        entry: LogEntry,
    ):
        super().__init__(
            f"{message}\n  entry: {entry!r}\n  old: {old_replica!r}\n  new: {new_replica!r}"
        )
        self.old_replica = old_replica
        self.new_replica = new_replica
        self.entry = entry


class DuplicateActorError(HarnessError, ValueError):
    """Two seed queues were registered under the same id."""

    def __init__(self, queue_id: str):
        super().__init__(f"Queue {queue_id!r} is already registered")
        self.queue_id = queue_id
