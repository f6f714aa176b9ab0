"""
Tests for the interleaving driver: candidate selection, commit
bookkeeping, termination bounds and exhaustive search.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from churncheck.harness import (
    ClusterModel,
    CommandKind,
    DeadlockError,
    DrawnChoice,
    InterleavingDriver,
    InvariantViolation,
    LogEntry,
    LogOverflowError,
    PendingQueue,
    ReferenceClusterModel,
    Replica,
    ScriptedChoice,
    TransitionEngine,
    create_log_entry,
    generate_group_and_peer_ids,
    generate_join_queues,
    initial_state,
    select_candidates,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _EchoModel(ClusterModel):
    """Every committed entry makes g1 write another gc."""

    def apply_log_entry(self, entry: LogEntry, replica: Replica) -> Replica:
        return replica

    def reactions(self, entry, old, new, diff, actor):
        if actor.actor_id == "g1":
            return [create_log_entry(CommandKind.GC)]
        return []


class _SlotShufflingModel(ClusterModel):
    def apply_log_entry(self, entry: LogEntry, replica: Replica) -> Replica:
        return replica.evolve(task_slot_ids={"j1": {"t1": {"p1": 1, "p2": 0}}})

    def reactions(self, entry, old, new, diff, actor):
        return []


def _queue(owner: str, kind: CommandKind, **kwargs) -> PendingQueue:
    return PendingQueue(owner=owner, entries=(create_log_entry(kind, {"id": owner}),), **kwargs)


def _driver(model=None, chooser=None, **kwargs) -> InterleavingDriver:
    engine = TransitionEngine(model or ReferenceClusterModel())
    return InterleavingDriver(engine, chooser or ScriptedChoice(()), **kwargs)


def _joined() -> Replica:
    return Replica(
        peers={"p1"},
        groups={"g1"},
        groups_index={"g1": {"p1"}},
        groups_reverse_index={"p1": "g1"},
    )


# ===========================================================================
# Candidate selection
# ===========================================================================


class TestSelectCandidates:
    def test_non_member_queue_is_never_selected(self):
        state = initial_state(
            {"stranger": _queue("stranger", CommandKind.LEAVE_CLUSTER)}, replica=_joined()
        )

        assert select_candidates(state) == []

    def test_peerless_head_is_selected_without_membership(self):
        queues = {
            "submitter": PendingQueue(
                owner="submitter",
                entries=(create_log_entry(CommandKind.SUBMIT_JOB, {"job_id": "j1"}),),
            )
        }

        assert select_candidates(initial_state(queues)) == ["submitter"]

    def test_joined_group_and_peer_queues_are_selected(self):
        queues = {
            "g1": _queue("g1", CommandKind.GROUP_LEAVE_CLUSTER),
            "p1": _queue("p1", CommandKind.LEAVE_CLUSTER),
            "p9": _queue("p9", CommandKind.LEAVE_CLUSTER),
        }

        assert select_candidates(initial_state(queues, replica=_joined())) == ["g1", "p1"]

    def test_peer_predicate_gates_selection(self):
        queues = {
            "blocked": _queue("p1", CommandKind.LEAVE_CLUSTER, predicate=lambda r, e: False),
            "open": _queue("p1", CommandKind.SIGNAL_READY, predicate=lambda r, e: True),
        }

        assert select_candidates(initial_state(queues, replica=_joined())) == ["open"]

    def test_admission_gate_admits_non_member(self):
        queues = {
            "g2": _queue("g2", CommandKind.PREPARE_JOIN_CLUSTER, admission=lambda r, e: True),
            "g3": _queue("g3", CommandKind.PREPARE_JOIN_CLUSTER, admission=lambda r, e: False),
        }

        assert select_candidates(initial_state(queues, replica=_joined())) == ["g2"]


# ===========================================================================
# Driving a seed to completion
# ===========================================================================


class TestDrive:
    def test_group_joins_before_its_peer(self):
        """A single group's prepare-join is committed first, with message id 0,
        and its peer's add-virtual-peer only becomes selectable afterwards."""
        seed = generate_group_and_peer_ids(1, 1)
        state = initial_state(generate_join_queues(seed))

        assert select_candidates(state) == ["g1"]

        final = _driver().drive(state)
        first, second = final.entries()

        assert first.kind == CommandKind.PREPARE_JOIN_CLUSTER
        assert first.args["joiner"] == "g1"
        assert first.message_id == 0
        assert second.kind == CommandKind.ADD_VIRTUAL_PEER
        assert final.peer_choices == ("g1", "g1-p1-join")
        assert final.replica.groups == {"g1"}
        assert final.replica.peers == {"g1-p1"}

    @given(st.data())
    @settings(max_examples=25, deadline=None)
    def test_message_ids_are_consecutive_from_initial_value(self, data):
        seed = generate_group_and_peer_ids(3, 2)
        state = initial_state(generate_join_queues(seed), message_id=100)

        final = _driver(chooser=DrawnChoice(data)).drive(state)

        ids = [entry.message_id for entry in final.entries()]
        assert ids == list(range(100, 100 + len(ids)))
        assert final.message_id == 100 + len(ids)
        assert final.replica.version == ids[-1]
        assert len(final.peer_choices) == len(ids)

    def test_starting_state_is_not_modified(self):
        state = initial_state(generate_join_queues(generate_group_and_peer_ids(2, 1)))

        _driver().drive(state)

        assert set(state.queues) == {"g1", "g1-p1-join", "g2", "g2-p1-join"}
        assert state.log == ()

    def test_deadlock(self):
        state = initial_state(
            {"stranger": _queue("stranger", CommandKind.LEAVE_CLUSTER)}, replica=_joined()
        )

        with pytest.raises(DeadlockError, match="No playable log messages") as excinfo:
            _driver().drive(state)

        assert excinfo.value.state is state
        assert excinfo.value.choices == ()

    def test_runaway_cascade_overflows(self):
        state = initial_state(
            {"g1": PendingQueue(owner="g1", entries=(create_log_entry(CommandKind.GC),))},
            replica=Replica(groups={"g1"}),
        )

        with pytest.raises(LogOverflowError) as excinfo:
            _driver(_EchoModel(), max_log_entries=50).drive(state)

        err = excinfo.value
        assert isinstance(err, OverflowError)
        assert len(err.state.log) == 51

    def test_invalid_bound_is_rejected(self):
        with pytest.raises(ValueError):
            _driver(max_log_entries=0)

    def test_violation_carries_state_and_choices(self):
        replica = Replica(
            peers={"p1", "p2"},
            groups={"g1"},
            groups_index={"g1": {"p1", "p2"}},
            groups_reverse_index={"p1": "g1", "p2": "g1"},
            jobs=["j1"],
            allocations={"j1": {"t1": ("p1", "p2")}},
            task_slot_ids={"j1": {"t1": {"p1": 0, "p2": 1}}},
        )
        state = initial_state(
            {"g1": PendingQueue(owner="g1", entries=(create_log_entry(CommandKind.GC),))},
            replica=replica,
        )

        with pytest.raises(InvariantViolation) as excinfo:
            _driver(_SlotShufflingModel()).drive(state)

        assert excinfo.value.state is state
        assert excinfo.value.choices == ("g1",)

    @given(st.data())
    @settings(max_examples=25, deadline=None)
    def test_scripted_choice_reproduces_history(self, data):
        state = initial_state(generate_join_queues(generate_group_and_peer_ids(2, 2)))
        original = _driver(chooser=DrawnChoice(data)).drive(state)

        engine = TransitionEngine(ReferenceClusterModel())
        chooser = ScriptedChoice(original.peer_choices)
        replayed = InterleavingDriver(engine, chooser).drive(state)

        assert replayed.peer_choices == original.peer_choices
        assert replayed.replica == original.replica
        assert chooser.deviations == 0


# ===========================================================================
# Exhaustive search
# ===========================================================================


class TestExploreAll:
    def test_every_interleaving_is_visited(self):
        state = initial_state(generate_join_queues(generate_group_and_peer_ids(1, 2)))

        finals = list(_driver().explore_all(state))

        assert sorted(f.peer_choices for f in finals) == [
            ("g1", "g1-p1-join", "g1-p2-join"),
            ("g1", "g1-p2-join", "g1-p1-join"),
        ]
        assert all(f.replica.peers == {"g1-p1", "g1-p2"} for f in finals)

    def test_limit(self):
        state = initial_state(generate_join_queues(generate_group_and_peer_ids(2, 2)))

        finals = list(_driver().explore_all(state, limit=3))

        assert len(finals) == 3
        assert len({f.peer_choices for f in finals}) == 3
