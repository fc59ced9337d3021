"""
halalseq: species identification and halal verdicts from food DNA reads.

This package loads a precomputed reference index, streams and pairs raw
sequencing reads, classifies each read against (species, marker) buckets with
two-tier k-mer matching, estimates calibrated species abundances with
bootstrap confidence intervals, and derives a halal verdict per sample.
"""

__version__ = "0.1.0"

# Core classes and functions for easier access
from .abundance import AbundanceEstimate, AbundanceEstimator, SpeciesResult
from .classify import ClassificationCounts, Classifier, Matched, Unmatched
from .config import AnalysisConfig, VerdictPolicy
from .database import HalalStatus, ReferenceDatabase, load_database
from .index import ClassificationIndex, load_index, open_index, save_index
from .pipeline import AnalysisContext, AnalysisPipeline, PipelineState, RunStatus, cancel, start
from .reader import SequenceReader, estimate_memory
from .report import Report, format_report, write_report
from .samples import Sample, detect_samples
from .verdict import Verdict, VerdictEngine, VerdictKind

__all__ = [
    "AbundanceEstimate",
    "AbundanceEstimator",
    "AnalysisConfig",
    "AnalysisContext",
    "AnalysisPipeline",
    "ClassificationCounts",
    "ClassificationIndex",
    "Classifier",
    "HalalStatus",
    "Matched",
    "PipelineState",
    "ReferenceDatabase",
    "Report",
    "RunStatus",
    "Sample",
    "SequenceReader",
    "SpeciesResult",
    "Unmatched",
    "Verdict",
    "VerdictEngine",
    "VerdictKind",
    "VerdictPolicy",
    "cancel",
    "detect_samples",
    "estimate_memory",
    "format_report",
    "load_database",
    "load_index",
    "open_index",
    "save_index",
    "start",
    "write_report",
    "__version__",
]
