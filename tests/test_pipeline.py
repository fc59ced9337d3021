import threading
from unittest import mock

import numpy as np
import pytest

from halalseq.config import AnalysisConfig
from halalseq.exceptions import FileReadError, IllegalTransitionError, IndexLoadError, PipelineBusyError
from halalseq.index import open_index
from halalseq.pipeline import (
    AnalysisContext,
    AnalysisPipeline,
    PipelineState,
    cancel,
    check_transition,
    start,
)
from halalseq.samples import Sample, detect_samples
from halalseq.verdict import VerdictKind

TIMEOUT = 60

# --- Fixtures ---


@pytest.fixture
def config():
    return AnalysisConfig(bootstrap_resamples=50)


@pytest.fixture
def pork_sample(tmp_path, make_reads, write_fastq):
    reads = make_reads("Sus_scrofa", "cytb", 100, seed=1) + make_reads("Sus_scrofa", "12S", 100, seed=2)
    return Sample("pork", (write_fastq(tmp_path / "pork.fastq", reads),))


@pytest.fixture
def beef_sample(tmp_path, make_reads, write_fastq):
    reads = (
        make_reads("Bos_taurus", "cytb", 100, seed=3)
        + make_reads("Bos_taurus", "12S", 100, seed=4)
        + make_reads("Sus_scrofa", "cytb", 1, seed=5)
    )
    return Sample("beef", (write_fastq(tmp_path / "beef.fastq.gz", reads),))


@pytest.fixture
def noise_sample(tmp_path, write_fastq):
    rng = np.random.default_rng(42)
    reads = ["".join(rng.choice(list("ACGT"), size=100)) for _ in range(100)]
    return Sample("noise", (write_fastq(tmp_path / "noise.fastq", reads),))


def _states(events):
    """Distinct consecutive states from a list of RunStatus snapshots."""
    states = []
    for status in events:
        if not states or states[-1] is not status.state:
            states.append(status.state)
    return states


# --- Scenarios ---


def test_pure_haram_sample_fails(index_path, pork_sample, config):
    pipeline = AnalysisPipeline(config)
    reports = pipeline.run([pork_sample], index_path)
    assert pipeline.state is PipelineState.DONE
    assert len(reports) == 1
    report = reports[0]
    assert report.verdict.kind is VerdictKind.FAIL
    assert report.species[0].species_id == "Sus_scrofa"
    assert report.species[0].weight_pct == pytest.approx(100.0, abs=1e-6)
    assert report.unmatched_reads == 0
    assert report.cross_marker_agreement == pytest.approx(1.0)


def test_trace_below_threshold_passes(index_path, beef_sample, config):
    report = AnalysisPipeline(config).run([beef_sample], index_path)[0]
    assert report.verdict.kind is VerdictKind.PASS
    assert report.species[0].species_id == "Bos_taurus"
    pork = report.get("Sus_scrofa")
    assert 0.0 < pork.weight_pct < 1.0


def test_unclassifiable_sample_is_inconclusive(index_path, noise_sample, config):
    report = AnalysisPipeline(config).run([noise_sample], index_path)[0]
    assert report.verdict.kind is VerdictKind.INCONCLUSIVE
    assert report.unmatched_pct == pytest.approx(100.0)
    assert all(r.weight_pct == pytest.approx(0.0) for r in report.species)


def test_paired_sample(tmp_path, index_path, make_reads, write_fastq, config):
    forward = make_reads("Gallus_gallus", "12S", 60, seed=8)
    reverse = make_reads("Gallus_gallus", "12S", 60, seed=9)
    write_fastq(tmp_path / "chicken_R1.fq", forward)
    write_fastq(tmp_path / "chicken_R2.fq", reverse)
    samples = detect_samples([tmp_path / "chicken_R1.fq", tmp_path / "chicken_R2.fq"])
    report = AnalysisPipeline(config).run(samples, index_path)[0]
    assert report.sample_name == "chicken"
    assert report.total_reads == 60
    assert report.species[0].species_id == "Gallus_gallus"


def test_subsampling_caps_reads(index_path, pork_sample):
    config = AnalysisConfig(bootstrap_resamples=0, subsample=True, subsample_cap=50)
    report = AnalysisPipeline(config).run([pork_sample], index_path)[0]
    assert report.subsampled
    assert report.total_reads == 50
    assert report.reads_seen == 200


def test_progress_rises_while_subsampling(index_path, pork_sample):
    config = AnalysisConfig(bootstrap_resamples=0, subsample=True, subsample_cap=50)
    events = []
    AnalysisPipeline(config, on_progress=events.append).run([pork_sample], index_path)
    reading = [e.reads_processed for e in events if e.state is PipelineState.READING_INPUT]
    classifying = [e.reads_processed for e in events if e.state is PipelineState.CLASSIFYING]
    assert max(reading) == 200
    assert classifying[0] == 0
    assert max(classifying) == 50


def test_memory_warning_is_attached_to_report(index_path, pork_sample):
    config = AnalysisConfig(bootstrap_resamples=0, memory_budget_mb=1.0)
    report = AnalysisPipeline(config).run([pork_sample], index_path)[0]
    assert any("enable subsampling" in w for w in report.warnings)


def test_results_are_reproducible(index_path, beef_sample, config):
    first = AnalysisPipeline(config).run([beef_sample], index_path)[0]
    second = AnalysisPipeline(config).run([beef_sample], index_path)[0]
    assert first.species == second.species


def test_reports_follow_sample_order(index_path, pork_sample, beef_sample, config):
    reports = AnalysisPipeline(config).run([beef_sample, pork_sample], index_path)
    assert [r.sample_name for r in reports] == ["beef", "pork"]


def test_empty_sample_list_finishes(index_path, config):
    pipeline = AnalysisPipeline(config)
    assert pipeline.run([], index_path) == []
    assert pipeline.state is PipelineState.DONE


# --- Errors ---


def test_index_load_error(tmp_path, pork_sample, config):
    pipeline = AnalysisPipeline(config)
    reports = pipeline.run([pork_sample], tmp_path / "missing.hidx")
    assert reports == []
    assert pipeline.state is PipelineState.ERROR
    assert isinstance(pipeline.error, IndexLoadError)
    assert "not found" in pipeline.status().error


def test_file_error_stops_run_and_keeps_prior_reports(tmp_path, index_path, pork_sample, beef_sample, config):
    missing = Sample("ghost", (tmp_path / "ghost.fastq",))
    pipeline = AnalysisPipeline(config)
    reports = pipeline.run([pork_sample, missing, beef_sample], index_path)
    assert pipeline.state is PipelineState.ERROR
    assert [r.sample_name for r in reports] == ["pork"]
    assert isinstance(pipeline.error, FileReadError)
    assert "ghost" in pipeline.status().error


def test_file_error_can_be_skipped(tmp_path, index_path, pork_sample, beef_sample):
    config = AnalysisConfig(bootstrap_resamples=0, continue_on_file_error=True)
    missing = Sample("ghost", (tmp_path / "ghost.fastq",))
    pipeline = AnalysisPipeline(config)
    reports = pipeline.run([pork_sample, missing, beef_sample], index_path)
    assert pipeline.state is PipelineState.DONE
    assert [r.sample_name for r in reports] == ["pork", "beef"]
    assert [f.sample for f in pipeline.failures] == ["ghost"]


# --- State machine ---


def test_state_sequence_is_reported(index_path, pork_sample, config):
    events = []
    AnalysisPipeline(config, on_progress=events.append).run([pork_sample], index_path)
    assert _states(events) == [
        PipelineState.LOADING_INDEX,
        PipelineState.READING_INPUT,
        PipelineState.CLASSIFYING,
        PipelineState.RECONCILING,
        PipelineState.GENERATING_REPORT,
        PipelineState.DONE,
    ]
    assert max(e.reads_processed for e in events) == 200


def test_illegal_transitions_are_rejected():
    check_transition(PipelineState.IDLE, PipelineState.LOADING_INDEX)
    with pytest.raises(IllegalTransitionError):
        check_transition(PipelineState.IDLE, PipelineState.DONE)
    with pytest.raises(IllegalTransitionError):
        check_transition(PipelineState.RECONCILING, PipelineState.CLASSIFYING)
    with pytest.raises(IllegalTransitionError):
        AnalysisPipeline()._transition(PipelineState.CLASSIFYING)


def test_start_while_running_is_rejected(index_path, pork_sample, config):
    release = threading.Event()

    def slow_open(path):
        release.wait(TIMEOUT)
        return open_index(path)

    pipeline = AnalysisPipeline(config)
    with mock.patch("halalseq.pipeline.open_index", side_effect=slow_open):
        pipeline.start([pork_sample], index_path)
        with pytest.raises(PipelineBusyError):
            pipeline.start([pork_sample], index_path)
        release.set()
        assert pipeline.wait(TIMEOUT)
    assert pipeline.state is PipelineState.DONE


def test_pipeline_can_run_again_and_reuses_index(index_path, pork_sample, config):
    pipeline = AnalysisPipeline(config)
    with mock.patch("halalseq.pipeline.open_index", wraps=open_index) as opener:
        pipeline.run([pork_sample], index_path)
        pipeline.run([pork_sample], index_path)
    assert opener.call_count == 1
    assert len(pipeline.reports) == 1
    assert pipeline.state is PipelineState.DONE


# --- Cancellation ---


def test_cancel_during_classification_returns_to_idle(index_path, pork_sample, config):
    pipeline = AnalysisPipeline(config)

    def on_progress(status):
        if status.state is PipelineState.CLASSIFYING:
            pipeline.cancel()

    pipeline.on_progress = on_progress
    reports = pipeline.run([pork_sample], index_path)
    assert reports == []
    assert pipeline.state is PipelineState.IDLE
    assert pipeline.error is None


def test_cancel_keeps_completed_reports(index_path, pork_sample, beef_sample, config):
    pipeline = AnalysisPipeline(config)

    def on_progress(status):
        if status.sample_index == 1 and status.state is PipelineState.READING_INPUT:
            pipeline.cancel()

    pipeline.on_progress = on_progress
    reports = pipeline.run([pork_sample, beef_sample], index_path)
    assert [r.sample_name for r in reports] == ["pork"]
    assert pipeline.state is PipelineState.IDLE


def test_context_start_and_cancel(index_path, pork_sample, config):
    release = threading.Event()

    def slow_open(path):
        release.wait(TIMEOUT)
        return open_index(path)

    context = AnalysisContext(samples=[pork_sample], index_path=index_path, config=config)
    with mock.patch("halalseq.pipeline.open_index", side_effect=slow_open):
        start(context)
        assert context.status().is_running
        cancel(context)
        release.set()
        assert context.wait(TIMEOUT)
    assert context.status().state is PipelineState.IDLE
    assert context.reports == []


def test_context_runs_to_completion(index_path, pork_sample, config):
    context = AnalysisContext(samples=[pork_sample], index_path=index_path, config=config)
    start(context)
    assert context.wait(TIMEOUT)
    assert context.status().state is PipelineState.DONE
    assert context.reports[0].verdict.kind is VerdictKind.FAIL
