"""
Per-read classification against the two-tier index.

Each read is assigned to a single (species, marker) bucket or left
unmatched. Classification of one read never depends on another, so reads can
be classified in any order or in parallel; per-worker partial counts are
merged afterwards.
"""

import enum
import logging
import multiprocessing as mp
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .config import DEFAULT_ACCEPTANCE_THRESHOLD, DEFAULT_CHUNK_SIZE
from .database import ReferenceDatabase
from .genomic_types import CountMatrix, MarkerIndex, SpeciesIndex
from .index import ClassificationIndex
from .sequence import Read, read_kmer_set

logger = logging.getLogger(__name__)


class UnmatchedReason(str, enum.Enum):
    TOO_SHORT = "too_short"  # no valid k-mer in the read
    NO_CANDIDATES = "no_candidates"  # no coarse or fine hit at all
    BELOW_THRESHOLD = "below_threshold"
    TIED = "tied"  # two species share the top score


@dataclass(frozen=True, slots=True)
class Matched:
    species: SpeciesIndex
    marker: MarkerIndex
    score: float


@dataclass(frozen=True, slots=True)
class Unmatched:
    reason: UnmatchedReason
    best_score: float = 0.0


ClassificationOutcome = Union[Matched, Unmatched]


class ClassificationCounts:
    """
    Mutable per-sample accumulator of (species, marker) read counts.

    Attributes:
        counts: Integer matrix of shape (num_species, num_markers).
        unmatched: Reads that were not assigned.
        unmatched_reasons: Unmatched reads broken down by reason.
    """

    def __init__(self, num_species: int, num_markers: int) -> None:
        self.counts: CountMatrix = np.zeros((num_species, num_markers), dtype=np.int64)
        self.unmatched: int = 0
        self.unmatched_reasons: Dict[UnmatchedReason, int] = {r: 0 for r in UnmatchedReason}

    @classmethod
    def for_database(cls, database: ReferenceDatabase) -> "ClassificationCounts":
        return cls(database.num_species, database.num_markers)

    @classmethod
    def from_matrix(cls, counts: np.ndarray, unmatched: int = 0) -> "ClassificationCounts":
        """Builds counts from an existing matrix (used by tests and resampling)."""
        matrix = np.asarray(counts, dtype=np.int64)
        if matrix.ndim != 2:
            raise ValueError("counts must be a 2-dimensional (species x marker) matrix.")
        if (matrix < 0).any() or unmatched < 0:
            raise ValueError("counts must be non-negative.")
        result = cls(*matrix.shape)
        result.counts[:] = matrix
        result.unmatched = int(unmatched)
        return result

    @property
    def shape(self):
        return self.counts.shape

    @property
    def matched(self) -> int:
        return int(self.counts.sum())

    @property
    def total(self) -> int:
        return self.matched + self.unmatched

    def add(self, outcome: ClassificationOutcome) -> None:
        if isinstance(outcome, Matched):
            self.counts[outcome.species, outcome.marker] += 1
        else:
            self.unmatched += 1
            self.unmatched_reasons[outcome.reason] += 1

    def merge(self, other: "ClassificationCounts") -> "ClassificationCounts":
        """Adds another accumulator into this one and returns self."""
        if other.counts.shape != self.counts.shape:
            raise ValueError(
                f"Cannot merge counts of shape {other.counts.shape} into {self.counts.shape}"
            )
        self.counts += other.counts
        self.unmatched += other.unmatched
        for reason, n in other.unmatched_reasons.items():
            self.unmatched_reasons[reason] += n
        return self

    def species_totals(self) -> np.ndarray:
        return self.counts.sum(axis=1)

    def per_marker_totals(self) -> np.ndarray:
        return self.counts.sum(axis=0)

    def to_frame(self, database: ReferenceDatabase) -> pd.DataFrame:
        """Species x marker count table labelled with database identifiers."""
        return pd.DataFrame(
            self.counts, index=database.species_ids, columns=database.marker_ids
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ClassificationCounts):
            return NotImplemented
        return (
            np.array_equal(self.counts, other.counts)
            and self.unmatched == other.unmatched
        )

    def __repr__(self) -> str:
        return (
            f"ClassificationCounts(matched={self.matched}, unmatched={self.unmatched}, "
            f"shape={self.counts.shape})"
        )


class Classifier:
    """
    Assigns reads to (species, marker) buckets.

    For every read: take its distinct canonical k-mers (mate included), find
    candidate species with the coarse sketches, find candidate markers from
    primer k-mers (all markers when no primer is present, as primers are
    commonly trimmed), then score every candidate pair by the fraction of the
    read's k-mers confirmed by the exact (marker, species) set. The best pair
    is accepted when its score reaches the acceptance threshold and no other
    species reaches the same score.

    The classifier keeps no per-read state, so one instance may be used from
    several threads.
    """

    def __init__(
        self,
        index: ClassificationIndex,
        acceptance_threshold: float = DEFAULT_ACCEPTANCE_THRESHOLD,
    ) -> None:
        if not 0.0 < acceptance_threshold <= 1.0:
            raise ValueError("acceptance_threshold must be in (0, 1].")
        self.index = index
        self.acceptance_threshold = acceptance_threshold
        self._all_markers = tuple(range(index.num_markers))

    def candidate_markers(self, read: Read) -> Sequence[MarkerIndex]:
        found = self.index.locate_markers(read.sequence)
        if read.mate:
            found |= self.index.locate_markers(read.mate)
        return sorted(found) if found else self._all_markers

    def classify(self, read: Read) -> ClassificationOutcome:
        kmer_set = read_kmer_set(read, self.index.k)
        if not kmer_set:
            return Unmatched(UnmatchedReason.TOO_SHORT)

        kmers = sorted(kmer_set)
        hits = self.index.coarse_hits(kmers)  # species x kmers
        candidate_species = np.flatnonzero(hits.any(axis=1))
        if candidate_species.size == 0:
            return Unmatched(UnmatchedReason.NO_CANDIDATES)

        markers = self.candidate_markers(read)
        n_kmers = len(kmers)
        best_score = 0.0
        best: Optional[Matched] = None
        tied = False
        for species in candidate_species.tolist():
            coarse_kmers = [kmer for kmer, hit in zip(kmers, hits[species]) if hit]
            species_best = 0.0
            species_marker = -1
            for marker in markers:
                confirmed = self.index.fine_count(marker, species, coarse_kmers)
                score = confirmed / n_kmers
                if score > species_best:
                    species_best = score
                    species_marker = marker
            if species_marker < 0:
                continue
            if species_best > best_score:
                best_score = species_best
                best = Matched(species, species_marker, species_best)
                tied = False
            elif species_best == best_score:
                tied = True

        if best is None:
            return Unmatched(UnmatchedReason.NO_CANDIDATES)
        if best_score < self.acceptance_threshold:
            return Unmatched(UnmatchedReason.BELOW_THRESHOLD, best_score)
        if tied:
            return Unmatched(UnmatchedReason.TIED, best_score)
        return best

    def classify_many(self, reads: Iterable[Read]) -> ClassificationCounts:
        counts = ClassificationCounts(self.index.num_species, self.index.num_markers)
        for read in reads:
            counts.add(self.classify(read))
        return counts


# ----------------------------------------------------------------------
# Parallel classification
# ----------------------------------------------------------------------
_WORKER_CLASSIFIER: Optional[Classifier] = None


def _init_worker(index: ClassificationIndex, acceptance_threshold: float) -> None:
    global _WORKER_CLASSIFIER
    _WORKER_CLASSIFIER = Classifier(index, acceptance_threshold)


def _classify_chunk(reads: List[Read]) -> ClassificationCounts:
    if _WORKER_CLASSIFIER is None:
        raise RuntimeError("Worker classifier not initialised.")
    return _WORKER_CLASSIFIER.classify_many(reads)


def chunked(reads: Iterable[Read], chunk_size: int) -> Iterator[List[Read]]:
    """Groups a read stream into lists of at most `chunk_size` reads."""
    chunk: List[Read] = []
    for read in reads:
        chunk.append(read)
        if len(chunk) >= chunk_size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def classify_reads(
    reads: Iterable[Read],
    index: ClassificationIndex,
    acceptance_threshold: float = DEFAULT_ACCEPTANCE_THRESHOLD,
    workers: int = 1,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    should_stop: Optional[Callable[[], bool]] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> ClassificationCounts:
    """
    Classifies a read stream and returns the merged counts.

    With `workers > 1` chunks are classified on a process pool whose workers
    receive the index once through the pool initializer; the partial counts
    of every chunk are merged here, so the result does not depend on which
    worker saw which read.

    Args:
        reads: Read stream (consumed).
        index: Classification index.
        acceptance_threshold: Minimum score for an assignment.
        workers: Number of processes; 1 classifies in the calling thread.
        chunk_size: Reads per chunk (and per progress callback in parallel mode).
        should_stop: Polled between reads (serial) or chunks (parallel);
            returning True stops classification early.
        on_progress: Called with the running number of reads accounted for.

    Returns:
        The merged ClassificationCounts.
    """
    total = ClassificationCounts(index.num_species, index.num_markers)

    if workers <= 1:
        classifier = Classifier(index, acceptance_threshold)
        for read in reads:
            if should_stop is not None and should_stop():
                break
            total.add(classifier.classify(read))
            if on_progress is not None and total.total % 1000 == 0:
                on_progress(total.total)
        if on_progress is not None:
            on_progress(total.total)
        return total

    with mp.Pool(
        processes=workers, initializer=_init_worker, initargs=(index, acceptance_threshold)
    ) as pool:
        for partial in pool.imap_unordered(_classify_chunk, chunked(reads, chunk_size)):
            total.merge(partial)
            if on_progress is not None:
                on_progress(total.total)
            if should_stop is not None and should_stop():
                pool.terminate()
                break
    return total
