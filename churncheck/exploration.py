"""
Randomized exploration runner for the log-replay harness.

Searches the interleavings of one seed with hypothesis: every queue choice
is a hypothesis draw, so a failing history is shrunk by hypothesis toward
the shortest, simplest choice sequence that still fails before the error
is raised. Successful histories are aggregated into ExplorationResults.

Every run starts from a fresh seed state and a fresh model, so batches
share nothing and can be searched in parallel worker processes.
"""

import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np
from hypothesis import HealthCheck, Phase, Verbosity, given, settings
from hypothesis import seed as hypothesis_seed
from hypothesis import strategies as st

from .harness.choice import DrawnChoice, ScriptedChoice
from .harness.driver import DEFAULT_MAX_LOG_ENTRIES, InterleavingDriver
from .harness.engine import TransitionEngine
from .harness.errors import HarnessError
from .harness.model import ClusterModel
from .harness.state import ExplorationState

logger = logging.getLogger(__name__)

SeedFactory = Callable[[], ExplorationState]
ModelFactory = Callable[[], ClusterModel]


@dataclass
class ExplorationConfig:
    """Configuration for randomized exploration.

    Attributes:
        num_runs: Maximum number of interleavings to try (hypothesis
            ``max_examples``). Small seeds may exhaust sooner.
        base_seed: Hypothesis seed for reproducibility (batch i uses
            base_seed + i). None draws fresh entropy.
        max_log_entries: Per-run bound on the committed log.
        parallel_workers: Number of worker processes (1 = sequential).
        shrink: Let hypothesis shrink a failing history before raising.
        keep_states: Keep the final state of every run in the results.
    """

    num_runs: int
    base_seed: int | None = None
    max_log_entries: int = DEFAULT_MAX_LOG_ENTRIES
    parallel_workers: int = 1
    shrink: bool = True
    keep_states: bool = True

    def __post_init__(self) -> None:
        if self.num_runs < 1:
            raise ValueError(f"num_runs must be >= 1, got {self.num_runs}")
        if self.max_log_entries < 1:
            raise ValueError(
                f"max_log_entries must be >= 1, got {self.max_log_entries}"
            )
        if self.parallel_workers < 1:
            raise ValueError(
                f"parallel_workers must be >= 1, got {self.parallel_workers}"
            )


@dataclass
class BatchOutcome:
    """Picklable summary of one hypothesis search, as returned by workers.

    Attributes:
        batch_index: Position of the batch.
        histories: Choice sequences of the runs that drained.
        failed_choices: Choices of the shrunk failure, if the batch failed.
        error_type: Class name of the failure, if the batch failed.
        error_message: Failure message, if the batch failed.
    """

    batch_index: int
    histories: list[tuple[str, ...]] = field(default_factory=list)
    failed_choices: tuple[str, ...] | None = None
    error_type: str | None = None
    error_message: str | None = None

    @property
    def failed(self) -> bool:
        return self.error_type is not None


@dataclass
class ExplorationResults:
    """Aggregated results of successful explorations.

    Attributes:
        choice_histories: Choice sequence of each run.
        log_lengths: Committed log length of each run.
        final_states: Drained state of each run (if kept).
    """

    choice_histories: list[tuple[str, ...]] = field(default_factory=list)
    log_lengths: list[int] = field(default_factory=list)
    final_states: list[ExplorationState] = field(default_factory=list)

    def num_runs(self) -> int:
        return len(self.log_lengths)

    def mean_log_length(self) -> float:
        if not self.log_lengths:
            return 0.0
        return float(np.mean(self.log_lengths))

    def max_log_length(self) -> int:
        if not self.log_lengths:
            return 0
        return int(np.max(self.log_lengths))

    def distinct_histories(self) -> int:
        """Number of distinct interleavings seen."""
        return len(set(self.choice_histories))

    def summary(self) -> str:
        """Generate a text summary of results."""
        return "\n".join(
            [
                f"Exploration Results ({self.num_runs()} runs)",
                f"  Distinct interleavings: {self.distinct_histories()}",
                f"  Log length: mean={self.mean_log_length():.1f}, "
                f"max={self.max_log_length()}",
            ]
        )

    def __repr__(self) -> str:
        return (
            f"ExplorationResults(n={self.num_runs()}, "
            f"distinct={self.distinct_histories()})"
        )


def _build_driver(
    model_factory: ModelFactory, chooser, max_log_entries: int
) -> InterleavingDriver:
    return InterleavingDriver(
        TransitionEngine(model_factory()), chooser, max_log_entries=max_log_entries
    )


def _search_settings(num_runs: int, shrink: bool) -> settings:
    phases = [Phase.generate, Phase.shrink] if shrink else [Phase.generate]
    return settings(
        max_examples=num_runs,
        phases=phases,
        deadline=None,
        database=None,
        report_multiple_bugs=False,
        verbosity=Verbosity.quiet,
        suppress_health_check=[HealthCheck.too_slow, HealthCheck.data_too_large],
    )


def search_interleavings(
    seed_factory: SeedFactory,
    model_factory: ModelFactory,
    num_runs: int,
    seed: int | None = None,
    max_log_entries: int = DEFAULT_MAX_LOG_ENTRIES,
    shrink: bool = True,
) -> list[tuple[str, ...]]:
    """Drive one seed through hypothesis-chosen interleavings.

    Returns:
        Choice sequences of the runs that drained.

    Raises:
        HarnessError: The failure of the smallest failing history hypothesis
            found. Its ``choices`` reproduce it through ``replay``.
    """
    histories: list[tuple[str, ...]] = []

    @_search_settings(num_runs, shrink)
    @given(st.data())
    def drive_one(data):
        driver = _build_driver(model_factory, DrawnChoice(data), max_log_entries)
        histories.append(driver.drive(seed_factory()).peer_choices)

    if seed is not None:
        drive_one = hypothesis_seed(seed)(drive_one)
    drive_one()
    return histories


def replay(
    seed_factory: SeedFactory,
    model_factory: ModelFactory,
    choices: Sequence[str],
    max_log_entries: int = DEFAULT_MAX_LOG_ENTRIES,
) -> ExplorationState:
    """Re-run an exploration from a recorded choice sequence.

    Choices that are not selectable when their turn comes are replaced by
    the first selectable queue.
    """
    driver = _build_driver(model_factory, ScriptedChoice(choices), max_log_entries)
    return driver.drive(seed_factory())


def _run_exploration_batch(
    seed_factory: SeedFactory,
    model_factory: ModelFactory,
    batch_index: int,
    num_runs: int,
    seed: int | None,
    max_log_entries: int,
    shrink: bool,
) -> BatchOutcome:
    """Run one hypothesis search (used for parallel execution).

    This is a module-level function to support multiprocessing. Failures
    are reported in the outcome rather than raised, since harness states
    hold queue predicates that need not be picklable.
    """
    try:
        histories = search_interleavings(
            seed_factory, model_factory, num_runs, seed, max_log_entries, shrink
        )
    except HarnessError as err:
        return BatchOutcome(
            batch_index=batch_index,
            failed_choices=tuple(err.choices or ()),
            error_type=type(err).__name__,
            error_message=str(err),
        )
    return BatchOutcome(batch_index=batch_index, histories=histories)


class ExplorationRunner:
    """Runs hypothesis searches over interleavings and aggregates results.

    Supports parallel execution for faster results on multi-core systems.
    """

    def __init__(self, config: ExplorationConfig):
        """Initialize the runner.

        Args:
            config: Exploration configuration.
        """
        self.config = config

    def _seed_for(self, batch_index: int) -> int | None:
        if self.config.base_seed is None:
            return None
        return self.config.base_seed + batch_index

    def run(
        self,
        seed_factory: SeedFactory,
        model_factory: ModelFactory,
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> ExplorationResults:
        """Search the configured number of interleavings.

        Args:
            seed_factory: Callable that creates a fresh starting state.
            model_factory: Callable that creates a fresh cluster model.
            progress_callback: Optional callback(completed batches, total).

        Returns:
            Aggregated ExplorationResults.

        Raises:
            HarnessError: The first failing history, shrunk if configured.
        """
        if self.config.parallel_workers > 1:
            histories = self._run_parallel(seed_factory, model_factory, progress_callback)
        else:
            histories = self._run_sequential(seed_factory, model_factory, progress_callback)

        results = ExplorationResults()
        for choices in histories:
            state = None
            if self.config.keep_states:
                state = replay(
                    seed_factory, model_factory, choices, self.config.max_log_entries
                )
            self._collect(choices, state, results)
        logger.info(
            "explored %d runs, %d distinct interleavings",
            results.num_runs(),
            results.distinct_histories(),
        )
        return results

    def _run_sequential(
        self,
        seed_factory: SeedFactory,
        model_factory: ModelFactory,
        progress_callback: Callable[[int, int], None] | None,
    ) -> list[tuple[str, ...]]:
        """Run a single hypothesis search in this process."""
        try:
            histories = search_interleavings(
                seed_factory,
                model_factory,
                self.config.num_runs,
                self._seed_for(0),
                self.config.max_log_entries,
                self.config.shrink,
            )
        except HarnessError as err:
            logger.info(
                "exploration failed after %d choices: %s",
                len(err.choices or ()),
                type(err).__name__,
            )
            raise
        if progress_callback:
            progress_callback(1, 1)
        return histories

    def _batch_sizes(self) -> list[int]:
        workers = self.config.parallel_workers
        base, extra = divmod(self.config.num_runs, workers)
        sizes = [base + (1 if i < extra else 0) for i in range(workers)]
        return [size for size in sizes if size > 0]

    def _run_parallel(
        self,
        seed_factory: SeedFactory,
        model_factory: ModelFactory,
        progress_callback: Callable[[int, int], None] | None,
    ) -> list[tuple[str, ...]]:
        """Run one hypothesis search per worker using ProcessPoolExecutor."""
        sizes = self._batch_sizes()
        outcomes: list[BatchOutcome] = []
        completed = 0

        with ProcessPoolExecutor(max_workers=self.config.parallel_workers) as executor:
            futures = [
                executor.submit(
                    _run_exploration_batch,
                    seed_factory=seed_factory,
                    model_factory=model_factory,
                    batch_index=i,
                    num_runs=size,
                    seed=self._seed_for(i),
                    max_log_entries=self.config.max_log_entries,
                    shrink=self.config.shrink,
                )
                for i, size in enumerate(sizes)
            ]
            for future in as_completed(futures):
                outcomes.append(future.result())
                completed += 1
                if progress_callback:
                    progress_callback(completed, len(sizes))

        outcomes.sort(key=lambda o: o.batch_index)
        for outcome in outcomes:
            if outcome.failed:
                # Reproduce locally to recover the full error and state.
                logger.info(
                    "batch %d failed after %d choices: %s",
                    outcome.batch_index,
                    len(outcome.failed_choices),
                    outcome.error_type,
                )
                replay(
                    seed_factory,
                    model_factory,
                    outcome.failed_choices,
                    self.config.max_log_entries,
                )
                raise RuntimeError(
                    f"Batch {outcome.batch_index} failed with {outcome.error_type} "
                    f"but did not reproduce on replay: {outcome.error_message}"
                )

        return [history for outcome in outcomes for history in outcome.histories]

    def _collect(
        self,
        choices: tuple[str, ...],
        state: ExplorationState | None,
        results: ExplorationResults,
    ) -> None:
        results.choice_histories.append(tuple(choices))
        results.log_lengths.append(len(choices))
        if self.config.keep_states and state is not None:
            results.final_states.append(state)


def run_exploration(
    seed_factory: SeedFactory,
    model_factory: ModelFactory,
    num_runs: int,
    seed: int | None = None,
    max_log_entries: int = DEFAULT_MAX_LOG_ENTRIES,
    parallel_workers: int = 1,
    shrink: bool = True,
) -> ExplorationResults:
    """Convenience function to run randomized explorations.

    Args:
        seed_factory: Callable that creates a fresh starting state.
        model_factory: Callable that creates a fresh cluster model.
        num_runs: Maximum number of interleavings to try.
        seed: Base hypothesis seed.
        max_log_entries: Per-run bound on the committed log.
        parallel_workers: Number of parallel workers.
        shrink: Shrink failing histories before raising.

    Returns:
        ExplorationResults for the successful runs.
    """
    config = ExplorationConfig(
        num_runs=num_runs,
        base_seed=seed,
        max_log_entries=max_log_entries,
        parallel_workers=parallel_workers,
        shrink=shrink,
    )
    return ExplorationRunner(config).run(seed_factory, model_factory)
