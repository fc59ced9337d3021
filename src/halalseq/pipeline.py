"""
Multi-sample analysis pipeline.

The pipeline is an explicit state machine run on a dedicated worker thread.
Each sample passes through READING_INPUT, CLASSIFYING, RECONCILING and
GENERATING_REPORT; the caller observes progress through immutable RunStatus
snapshots (polled, or pushed to a callback) and may cancel cooperatively.
"""

import enum
import logging
import pathlib
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple, Union

from .abundance import AbundanceEstimator
from .classify import classify_reads
from .config import AnalysisConfig
from .database import ReferenceDatabase
from .exceptions import FileReadError, IllegalTransitionError, PipelineBusyError
from .index import ClassificationIndex, open_index
from .logging_config import StageTimer
from .reader import SequenceReader, check_memory_budget, estimate_memory
from .report import Report
from .samples import Sample
from .verdict import VerdictEngine

logger = logging.getLogger(__name__)


class PipelineState(str, enum.Enum):
    IDLE = "idle"
    LOADING_INDEX = "loading_index"
    READING_INPUT = "reading_input"
    CLASSIFYING = "classifying"
    RECONCILING = "reconciling"
    GENERATING_REPORT = "generating_report"
    DONE = "done"
    ERROR = "error"


_S = PipelineState
_RUNNING_STATES = frozenset(
    {_S.LOADING_INDEX, _S.READING_INPUT, _S.CLASSIFYING, _S.RECONCILING, _S.GENERATING_REPORT}
)

# Every allowed transition. Any running state may fall to ERROR, or back to
# IDLE on cancellation. READING_INPUT and CLASSIFYING may also move on to the
# next sample (or finish) when an unreadable sample is skipped.
TRANSITIONS: Dict[PipelineState, FrozenSet[PipelineState]] = {
    _S.IDLE: frozenset({_S.LOADING_INDEX}),
    _S.LOADING_INDEX: frozenset({_S.READING_INPUT, _S.DONE, _S.ERROR, _S.IDLE}),
    _S.READING_INPUT: frozenset(
        {_S.CLASSIFYING, _S.READING_INPUT, _S.DONE, _S.ERROR, _S.IDLE}
    ),
    _S.CLASSIFYING: frozenset({_S.RECONCILING, _S.READING_INPUT, _S.DONE, _S.ERROR, _S.IDLE}),
    _S.RECONCILING: frozenset({_S.GENERATING_REPORT, _S.ERROR, _S.IDLE}),
    _S.GENERATING_REPORT: frozenset({_S.READING_INPUT, _S.DONE, _S.ERROR, _S.IDLE}),
    _S.DONE: frozenset({_S.LOADING_INDEX}),
    _S.ERROR: frozenset({_S.LOADING_INDEX}),
}


def check_transition(current: PipelineState, target: PipelineState) -> None:
    """Raises IllegalTransitionError unless current -> target is in the table."""
    if target not in TRANSITIONS[current]:
        raise IllegalTransitionError(
            f"Illegal pipeline transition {current.name} -> {target.name}",
            {"from": current.value, "to": target.value},
        )


@dataclass(frozen=True)
class RunStatus:
    """Snapshot of a run, safe to hand to another thread."""

    state: PipelineState = PipelineState.IDLE
    sample_index: int = 0
    sample_count: int = 0
    sample_name: Optional[str] = None
    reads_processed: int = 0
    reports_completed: int = 0
    error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.state in _RUNNING_STATES

    @property
    def progress(self) -> Tuple[int, int]:
        return self.sample_index, self.reads_processed


ProgressCallback = Callable[[RunStatus], None]


class _Cancelled(Exception):
    """Internal signal used to unwind the worker after a cancel request."""


class AnalysisPipeline:
    """
    Runs an analysis over a list of samples on a background thread.

    Example:
        >>> pipeline = AnalysisPipeline()
        >>> pipeline.start(samples, "panel.hidx")
        >>> pipeline.wait()
        >>> for report in pipeline.reports:
        ...     print(report.verdict.kind)

    Only one run may be active at a time; the loaded index is cached and
    reused by later runs on the same index file.
    """

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.config = config or AnalysisConfig()
        self.on_progress = on_progress
        self._lock = threading.Lock()
        self._status = RunStatus()
        self._cancel_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._reports: List[Report] = []
        self._failures: List[FileReadError] = []
        self._error: Optional[BaseException] = None
        self._index_cache: Optional[Tuple[Tuple[pathlib.Path, int], ReferenceDatabase, ClassificationIndex]] = None

    # ------------------------------------------------------------------
    # Caller-facing API
    # ------------------------------------------------------------------
    def start(
        self,
        samples: Sequence[Sample],
        index_path: Union[str, pathlib.Path],
        config: Optional[AnalysisConfig] = None,
    ) -> None:
        """
        Starts a run on the worker thread and returns immediately.

        Args:
            samples: Samples to analyse, in report order.
            index_path: Path of the index container.
            config: Overrides the pipeline's configuration for this run.

        Raises:
            PipelineBusyError: If a run is already active.
        """
        run_config = config or self.config
        samples = list(samples)
        with self._lock:
            if self._status.is_running:
                raise PipelineBusyError(
                    "An analysis is already running", {"state": self._status.state.value}
                )
            check_transition(self._status.state, PipelineState.LOADING_INDEX)
            self._cancel_event.clear()
            self._reports = []
            self._failures = []
            self._error = None
            self._status = RunStatus(
                state=PipelineState.LOADING_INDEX, sample_count=len(samples)
            )
            snapshot = self._status
            self._thread = threading.Thread(
                target=self._run,
                args=(samples, pathlib.Path(index_path), run_config),
                name="halalseq-pipeline",
                daemon=True,
            )
            thread = self._thread
        self._notify(snapshot)
        thread.start()

    def run(
        self,
        samples: Sequence[Sample],
        index_path: Union[str, pathlib.Path],
        config: Optional[AnalysisConfig] = None,
    ) -> List[Report]:
        """Starts a run, waits for it and returns the reports."""
        self.start(samples, index_path, config)
        self.wait()
        return self.reports

    def cancel(self) -> None:
        """Requests cooperative cancellation; the run returns to IDLE."""
        if self._status.is_running:
            logger.info("Cancellation requested")
        self._cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until the current run finishes.

        Returns:
            True if no run is active any more, False on timeout.
        """
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            return not thread.is_alive()
        return True

    def status(self) -> RunStatus:
        with self._lock:
            return self._status

    @property
    def state(self) -> PipelineState:
        return self.status().state

    @property
    def reports(self) -> List[Report]:
        with self._lock:
            return list(self._reports)

    @property
    def failures(self) -> List[FileReadError]:
        """Samples skipped because of read errors (continue_on_file_error)."""
        with self._lock:
            return list(self._failures)

    @property
    def error(self) -> Optional[BaseException]:
        with self._lock:
            return self._error

    # ------------------------------------------------------------------
    # State handling
    # ------------------------------------------------------------------
    def _transition(self, target: PipelineState, **changes) -> None:
        with self._lock:
            check_transition(self._status.state, target)
            self._status = replace(self._status, state=target, **changes)
            snapshot = self._status
        logger.debug(f"Pipeline state -> {target.name}")
        self._notify(snapshot)

    def _set_reads_processed(self, reads: int) -> None:
        with self._lock:
            self._status = replace(self._status, reads_processed=reads)
            snapshot = self._status
        self._notify(snapshot)

    def _notify(self, snapshot: RunStatus) -> None:
        if self.on_progress is not None:
            self.on_progress(snapshot)

    def _check_cancel(self) -> None:
        if self._cancel_event.is_set():
            raise _Cancelled()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    def _run(self, samples: List[Sample], index_path: pathlib.Path, config: AnalysisConfig) -> None:
        try:
            with StageTimer(logger, "load_index", path=str(index_path)):
                database, index = self._load_index(index_path)
            self._check_cancel()

            for position, sample in enumerate(samples):
                self._check_cancel()
                self._transition(
                    PipelineState.READING_INPUT,
                    sample_index=position,
                    sample_name=sample.name,
                    reads_processed=0,
                )
                try:
                    report = self._process_sample(sample, database, index, config)
                except FileReadError as e:
                    if not config.continue_on_file_error:
                        raise
                    logger.error(f"Skipping sample {sample.name}: {e}")
                    with self._lock:
                        self._failures.append(e)
                    continue
                with self._lock:
                    self._reports.append(report)
                    self._status = replace(self._status, reports_completed=len(self._reports))

            self._transition(PipelineState.DONE)
            logger.info(f"Analysis finished: {len(self.reports)} report(s)")
        except _Cancelled:
            logger.info(f"Analysis cancelled with {len(self.reports)} completed report(s)")
            self._transition(PipelineState.IDLE)
        except Exception as e:
            # The worker thread is the boundary where failures become state.
            logger.error(f"Analysis failed: {e}")
            logger.debug("Pipeline failure details", exc_info=True)
            with self._lock:
                self._error = e
            self._transition(PipelineState.ERROR, error=str(e))

    def _load_index(self, path: pathlib.Path) -> Tuple[ReferenceDatabase, ClassificationIndex]:
        resolved = path.resolve()
        try:
            key = (resolved, resolved.stat().st_mtime_ns)
        except OSError:
            key = None
        if key is not None and self._index_cache is not None and self._index_cache[0] == key:
            logger.debug(f"Reusing loaded index {resolved}")
            return self._index_cache[1], self._index_cache[2]

        database, index = open_index(path)
        if key is not None:
            self._index_cache = (key, database, index)
        return database, index

    def _process_sample(
        self,
        sample: Sample,
        database: ReferenceDatabase,
        index: ClassificationIndex,
        config: AnalysisConfig,
    ) -> Report:
        warnings: List[str] = []
        memory = estimate_memory(sample)
        budget_warning = check_memory_budget(sample, memory, config.memory_budget_mb)
        if budget_warning is not None and not config.subsample:
            logger.warning(str(budget_warning))
            warnings.append(str(budget_warning))

        reader = SequenceReader(sample)
        reads_seen: Optional[int] = None
        if config.subsample:
            with StageTimer(logger, "read", sample=sample.name) as timer:
                reads, reads_seen = reader.subsampled(
                    config.subsample_cap,
                    config.subsample_seed,
                    should_stop=self._cancel_event.is_set,
                    on_progress=self._set_reads_processed,
                )
                timer.items = reads_seen
            self._check_cancel()
            source = reads
        else:
            source = reader

        self._transition(PipelineState.CLASSIFYING, reads_processed=0)
        with StageTimer(logger, "classify", sample=sample.name) as timer:
            counts = classify_reads(
                source,
                index,
                acceptance_threshold=config.acceptance_threshold,
                workers=config.workers,
                chunk_size=config.chunk_size,
                should_stop=self._cancel_event.is_set,
                on_progress=self._set_reads_processed,
            )
            timer.items = counts.total
        self._check_cancel()

        self._transition(PipelineState.RECONCILING)
        estimator = AbundanceEstimator(
            bootstrap_resamples=config.bootstrap_resamples,
            confidence_level=config.confidence_level,
            max_iterations=config.max_iterations,
            epsilon=config.convergence_epsilon,
            seed=config.bootstrap_seed,
        )
        with StageTimer(logger, "reconcile", sample=sample.name):
            estimate = estimator.estimate(counts, database)
        self._check_cancel()

        self._transition(PipelineState.GENERATING_REPORT)
        verdict = VerdictEngine(config.verdict).verdict(estimate, database)
        subsampled = reads_seen is not None and reads_seen > counts.total
        report = Report.from_estimate(
            sample.name,
            estimate,
            verdict,
            subsampled=subsampled,
            reads_seen=reads_seen,
            warnings=tuple(warnings),
        )
        logger.info(
            f"Sample {sample.name}: {verdict.kind.name} "
            f"({counts.matched}/{counts.total} reads classified)"
        )
        return report


@dataclass
class AnalysisContext:
    """
    What to analyse, plus the pipeline that analyses it.

    Attributes:
        samples: Samples in report order.
        index_path: Index container to classify against.
        config: Run configuration.
        on_progress: Optional callback receiving RunStatus snapshots.
        pipeline: Pipeline attached to this context (created on demand).
    """

    samples: List[Sample]
    index_path: Union[str, pathlib.Path]
    config: AnalysisConfig = field(default_factory=AnalysisConfig)
    on_progress: Optional[ProgressCallback] = None
    pipeline: Optional[AnalysisPipeline] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.pipeline is None:
            self.pipeline = AnalysisPipeline(self.config, self.on_progress)

    def status(self) -> RunStatus:
        return self.pipeline.status()

    @property
    def reports(self) -> List[Report]:
        return self.pipeline.reports

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.pipeline.wait(timeout)


def start(context: AnalysisContext) -> AnalysisPipeline:
    """Starts analysing `context.samples` in the background."""
    context.pipeline.start(context.samples, context.index_path, context.config)
    return context.pipeline


def cancel(context: AnalysisContext) -> None:
    """Requests cooperative cancellation of the context's run."""
    context.pipeline.cancel()
