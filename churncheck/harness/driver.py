"""
Interleaving driver for the log-replay harness.

Each actor's queue is FIFO, but nothing orders writes across actors. The
driver repeatedly picks a selectable queue and commits its head, which is
one valid linearization of actors racing to append to a sequenced log.
Every legal order can be reached by some sequence of choices.
"""

from __future__ import annotations

import logging
from typing import Iterator

from .choice import ChoiceStrategy
from .engine import TransitionEngine
from .errors import DeadlockError, HarnessError, LogOverflowError
from .state import ExplorationState, LogRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_LOG_ENTRIES = 1000


def select_candidates(state: ExplorationState) -> list[str]:
    """Queue ids whose head entry may be committed next.

    A queue is selectable when its head is a peerless command, when its
    owner is a joined group, when its owner is a joined peer and the
    queue's predicate passes, or when the queue carries an admission gate
    that passes (bootstrap join queues).

    Returns:
        Sorted selectable queue ids.
    """
    replica = state.replica
    selectable = []
    for queue_id, queue in state.queues.items():
        if (
            queue.head.is_peerless
            or queue.owner in replica.groups
            or (queue.owner in replica.peers and queue.is_peer_eligible(replica))
            or queue.is_admitted(replica)
        ):
            selectable.append(queue_id)
    return sorted(selectable)


class InterleavingDriver:
    """Commits queue heads until every queue drains.

    Args:
        engine: Transition engine used for each commit.
        chooser: Picks the next queue among the selectable ones.
        max_log_entries: Abort once the committed log grows past this.
    """

    def __init__(
        self,
        engine: TransitionEngine,
        chooser: ChoiceStrategy,
        max_log_entries: int = DEFAULT_MAX_LOG_ENTRIES,
    ):
        if max_log_entries < 1:
            raise ValueError(f"max_log_entries must be >= 1, got {max_log_entries}")
        self.engine = engine
        self.chooser = chooser
        self.max_log_entries = max_log_entries

    def apply_queue_entry(
        self, state: ExplorationState, queue_id: str
    ) -> ExplorationState:
        """Commit the head of one queue.

        The entry is stamped with the state's next message id. A queue that
        drains is dropped from the map.

        Raises:
            HarnessError: Raised by the engine, annotated with ``state`` and
                the choices that reproduce it.
        """
        entry, rest = state.queues[queue_id].pop()
        queues = dict(state.queues)
        if rest is None:
            del queues[queue_id]
        else:
            queues[queue_id] = rest

        try:
            transition = self.engine.apply_entry(
                state.replica, queues, entry, message_id=state.message_id
            )
        except HarnessError as err:
            if err.state is None:
                err.state = state
            if err.choices is None:
                err.choices = state.peer_choices + (queue_id,)
            raise

        return ExplorationState(
            replica=transition.replica,
            message_id=state.message_id + 1,
            queues=transition.queues,
            log=state.log
            + (LogRecord(transition.entry, transition.diff, transition.debug),),
            peer_choices=state.peer_choices + (queue_id,),
        )

    def _check_bounds(self, state: ExplorationState) -> None:
        if len(state.log) > self.max_log_entries:
            err = LogOverflowError(
                f"Log entry generator overflow after {len(state.log)} entries. "
                "Likely an uncompletable reaction cascade.",
                state,
            )
            err.choices = state.peer_choices
            raise err

    def _candidates(self, state: ExplorationState) -> list[str]:
        candidates = select_candidates(state)
        if not candidates:
            err = DeadlockError(f"No playable log messages. State: {state!r}", state)
            err.choices = state.peer_choices
            raise err
        return candidates

    def choose_and_commit(self, state: ExplorationState) -> ExplorationState:
        """Pick one selectable queue and commit its head.

        Raises:
            DeadlockError: Queues remain but none is selectable.
        """
        queue_id = self.chooser.choose(self._candidates(state))
        return self.apply_queue_entry(state, queue_id)

    def drive(self, state: ExplorationState) -> ExplorationState:
        """Commit entries until every queue drains.

        Returns:
            The drained state: final replica, full log and choice history.

        Raises:
            DeadlockError: No queue can make progress.
            LogOverflowError: The log grew past ``max_log_entries``.
            InvariantViolation: A transition broke a scheduler invariant.
        """
        while True:
            self._check_bounds(state)
            if state.is_drained:
                logger.debug(
                    "drained after %d entries: %s",
                    len(state.log),
                    " ".join(state.peer_choices),
                )
                return state
            state = self.choose_and_commit(state)

    def explore_all(
        self, state: ExplorationState, limit: int | None = None
    ) -> Iterator[ExplorationState]:
        """Depth-first search over every interleaving.

        The worklist is explicit, so history length is bounded by
        ``max_log_entries`` rather than by recursion depth. The chooser is
        not consulted.

        Args:
            state: Starting state.
            limit: Stop after yielding this many drained states.

        Yields:
            Drained states, one per distinct choice sequence.
        """
        stack = [state]
        found = 0
        while stack:
            current = stack.pop()
            self._check_bounds(current)
            if current.is_drained:
                yield current
                found += 1
                if limit is not None and found >= limit:
                    return
                continue
            # Reversed so the lexicographically first branch is explored first.
            for queue_id in reversed(self._candidates(current)):
                stack.append(self.apply_queue_entry(current, queue_id))
