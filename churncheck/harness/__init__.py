"""
Log-replay harness for verifying cluster schedulers.

This package simulates actors racing to append commands to a single
sequenced log, replays every committed entry through a cluster model, and
checks slot stability and the minimum-churn bound on each transition.
"""

from .entry import (
    CommandKind,
    LogEntry,
    create_log_entry,
    PEERLESS_KINDS,
    JOIN_PROTOCOL_KINDS,
    ACTOR_ARG_FIELDS,
)
from .replica import Replica, allocations_to_peers, task_counts, remove_peers
from .actors import ActorType, ActorState, NullMessenger, PendingQueue, new_actor_state
from .errors import (
    HarnessError,
    DeadlockError,
    LogOverflowError,
    InvariantViolation,
    DuplicateActorError,
)
from .model import ClusterModel, ReactionTable
from .invariants import (
    same_slot_id,
    n_expected_reallocations,
    check_slot_stability,
    check_churn_bound,
    check_membership,
    scheduler_invariants,
)
from .state import ExplorationState, LogRecord, TransitionDebug, initial_state
from .engine import TransitionEngine, Transition, active_groups, active_peers
from .choice import ChoiceStrategy, DrawnChoice, ScriptedChoice
from .driver import InterleavingDriver, select_candidates, DEFAULT_MAX_LOG_ENTRIES
from .seeds import (
    generate_group_and_peer_ids,
    generate_join_queues,
    build_add_vpeer_queues,
    merge_queues,
    one_group,
)
from .reference import ReferenceClusterModel

__all__ = [
    # Entries
    "CommandKind",
    "LogEntry",
    "create_log_entry",
    "PEERLESS_KINDS",
    "JOIN_PROTOCOL_KINDS",
    "ACTOR_ARG_FIELDS",
    # Replica
    "Replica",
    "allocations_to_peers",
    "task_counts",
    "remove_peers",
    # Actors
    "ActorType",
    "ActorState",
    "NullMessenger",
    "PendingQueue",
    "new_actor_state",
    # Errors
    "HarnessError",
    "DeadlockError",
    "LogOverflowError",
    "InvariantViolation",
    "DuplicateActorError",
    # Model
    "ClusterModel",
    "ReactionTable",
    # Invariants
    "same_slot_id",
    "n_expected_reallocations",
    "check_slot_stability",
    "check_churn_bound",
    "check_membership",
    "scheduler_invariants",
    # State
    "ExplorationState",
    "LogRecord",
    "TransitionDebug",
    "initial_state",
    # Engine
    "TransitionEngine",
    "Transition",
    "active_groups",
    "active_peers",
    # Choice
    "ChoiceStrategy",
    "DrawnChoice",
    "ScriptedChoice",
    # Driver
    "InterleavingDriver",
    "select_candidates",
    "DEFAULT_MAX_LOG_ENTRIES",
    # Seeds
    "generate_group_and_peer_ids",
    "generate_join_queues",
    "build_add_vpeer_queues",
    "merge_queues",
    "one_group",
    # Reference model
    "ReferenceClusterModel",
]
