"""
Streaming of reads from sample files.

Handles plain and gzip-compressed FASTQ/FASTA, merges paired files into one
read stream, estimates memory cheaply from file sizes and caps large samples
with reservoir sampling.
"""

import gzip
import logging
import pathlib
import zlib
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, Optional, TextIO, Tuple

import numpy as np
from Bio import SeqIO
from Bio.SeqIO.QualityIO import FastqGeneralIterator

from .config import DEFAULT_SUBSAMPLE_CAP
from .exceptions import FileReadError, MemoryBudgetExceeded
from .samples import Sample
from .sequence import Read

logger = logging.getLogger(__name__)

# Average on-disk bytes per record, used for the size-based read estimate.
AVG_RECORD_BYTES = {"fastq": 250, "fasta": 150}
# Typical expansion of gzip-compressed sequence text.
GZIP_EXPANSION = 4.0
# Python-side bytes held per retained read (object, id, sequence, mate).
BYTES_PER_RETAINED_READ = 600
# Baseline process footprint (interpreter, numpy, index) in MB.
BASE_RAM_MB = 150.0
# Reads scanned between two progress callbacks while subsampling.
PROGRESS_INTERVAL = 1000

# Exceptions raised by gzip/zlib and the Biopython parsers on damaged input.
_READ_ERRORS = (ValueError, EOFError, OSError, zlib.error, UnicodeDecodeError)


@dataclass(frozen=True)
class MemoryEstimate:
    """Cheap, size-based estimate of what reading a sample will cost."""

    file_bytes: int
    estimated_reads: int
    estimated_ram_mb: float


def is_gzipped(path: pathlib.Path) -> bool:
    """Detects gzip by magic bytes, falling back to the extension for empty files."""
    try:
        with open(path, "rb") as fh:
            magic = fh.read(2)
    except OSError:
        return path.name.lower().endswith(".gz")
    if not magic:
        return path.name.lower().endswith(".gz")
    return magic == b"\x1f\x8b"


def open_sequence_file(path: pathlib.Path) -> TextIO:
    """Opens a file in text mode, handling gzip compression transparently."""
    if is_gzipped(path):
        return gzip.open(path, "rt")  # type: ignore[return-value]
    return open(path, "rt")


def detect_file_format(path: pathlib.Path) -> Optional[str]:
    """
    Detects sequence file format from the first non-blank character.

    Returns:
        "fastq", "fasta", or None for an empty file.

    Raises:
        ValueError: If the first record starts with anything else.
        OSError, EOFError: If the file cannot be read or decompressed.
    """
    with open_sequence_file(path) as fh:
        for line in fh:
            stripped = line.strip()
            if not stripped:
                continue
            if stripped.startswith("@"):
                return "fastq"
            if stripped.startswith(">"):
                return "fasta"
            raise ValueError(f"Unknown file format (first line starts with {stripped[:1]!r})")
    return None


def format_from_name(path: pathlib.Path) -> str:
    name = path.name.lower()
    if name.endswith(".gz"):
        name = name[:-3]
    return "fasta" if name.endswith((".fa", ".fasta", ".fna")) else "fastq"


def estimate_memory(sample: Sample) -> MemoryEstimate:
    """
    Estimates file size, read count and RAM for a sample without scanning it.

    Paired samples count one read per pair; the estimate is based on the
    larger of the two files.

    Args:
        sample: The sample to estimate.

    Returns:
        A MemoryEstimate. Missing files count as zero bytes.
    """
    file_bytes = 0
    read_estimates: List[int] = []
    for path in sample.paths:
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        file_bytes += size
        text_bytes = size * GZIP_EXPANSION if is_gzipped(path) else float(size)
        read_estimates.append(int(text_bytes / AVG_RECORD_BYTES[format_from_name(path)]))

    estimated_reads = max(read_estimates) if read_estimates else 0
    per_read = BYTES_PER_RETAINED_READ * (2 if sample.is_paired else 1)
    ram_mb = BASE_RAM_MB + estimated_reads * per_read / (1024 * 1024)
    return MemoryEstimate(
        file_bytes=file_bytes,
        estimated_reads=estimated_reads,
        estimated_ram_mb=round(ram_mb, 1),
    )


def check_memory_budget(
    sample: Sample, estimate: MemoryEstimate, budget_mb: float
) -> Optional[MemoryBudgetExceeded]:
    """Returns a warning when the estimate exceeds the budget, else None."""
    if estimate.estimated_ram_mb <= budget_mb:
        return None
    return MemoryBudgetExceeded(
        f"Sample {sample.name} may need ~{estimate.estimated_ram_mb:.0f} MB; "
        "enable subsampling to cap memory use",
        {
            "sample": sample.name,
            "estimated_ram_mb": estimate.estimated_ram_mb,
            "budget_mb": budget_mb,
        },
    )


def reservoir_sample(
    reads: Iterable[Read], capacity: int, rng: np.random.Generator
) -> Tuple[List[Read], int]:
    """
    Uniform fixed-size sample of a stream of unknown length (Algorithm R).

    After N items every item has been retained with probability
    min(1, capacity / N), independent of its position in the stream.

    Args:
        reads: The stream to sample.
        capacity: Maximum number of reads to keep.
        rng: Random generator; a seeded generator makes the result reproducible.

    Returns:
        Tuple of (retained reads, total number of reads seen).
    """
    if capacity <= 0:
        raise ValueError("capacity must be positive.")
    reservoir: List[Read] = []
    seen = 0
    for read in reads:
        seen += 1
        if len(reservoir) < capacity:
            reservoir.append(read)
            continue
        slot = int(rng.integers(0, seen))
        if slot < capacity:
            reservoir[slot] = read
    return reservoir, seen


class SequenceReader:
    """
    Lazy, single-pass stream of reads from a sample's file(s).

    Iterating yields `Read` objects one by one; paired samples yield one read
    per pair with the R2 sequence as `mate`. A reader can be iterated once.

    Example:
        >>> reader = SequenceReader(sample)
        >>> for read in reader:
        ...     classify(read)
    """

    def __init__(self, sample: Sample) -> None:
        self.sample = sample
        self.reads_yielded = 0
        self._consumed = False

    def __iter__(self) -> Iterator[Read]:
        if self._consumed:
            raise RuntimeError(f"SequenceReader for {self.sample.name} was already consumed.")
        self._consumed = True
        return self._generate()

    def subsampled(
        self,
        capacity: int = DEFAULT_SUBSAMPLE_CAP,
        seed: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        on_progress: Optional[Callable[[int], None]] = None,
        progress_interval: int = PROGRESS_INTERVAL,
    ) -> Tuple[List[Read], int]:
        """
        Consumes the stream and keeps a uniform sample of at most `capacity` reads.

        Args:
            capacity: Reads to keep.
            seed: Seed for the reservoir; None for a fresh random state.
            should_stop: Polled between reads; returning True ends the scan early.
            on_progress: Called with the number of reads scanned so far, every
                `progress_interval` reads and once at the end of the scan.
            progress_interval: Reads between two progress calls.

        Returns:
            Tuple of (retained reads, reads seen).
        """
        stream: Iterable[Read] = iter(self)
        if on_progress is not None:
            stream = _counted(stream, on_progress, progress_interval)
        if should_stop is not None:
            stream = _until(stream, should_stop)
        retained, seen = reservoir_sample(stream, capacity, np.random.default_rng(seed))
        if seen > capacity:
            logger.info(
                f"Subsampled {self.sample.name}: kept {len(retained)} of {seen} reads"
            )
        return retained, seen

    def _generate(self) -> Iterator[Read]:
        forward = self.sample.forward
        reverse = self.sample.reverse
        fwd_format = self._detect(forward)
        if fwd_format is None:
            logger.warning(f"Sample {self.sample.name}: {forward} contains no records")
            return
        if reverse is not None:
            rev_format = self._detect(reverse)
            if rev_format != fwd_format:
                raise FileReadError(
                    f"Mate files have different formats ({fwd_format} vs {rev_format})",
                    sample=self.sample.name,
                    path=str(reverse),
                )

        logger.debug(
            f"Reading {self.sample.name}: {forward}"
            + (f" + {reverse}" if reverse else "")
            + f" ({fwd_format})"
        )

        fwd_iter = self._records(forward, fwd_format)
        if reverse is None:
            for read_id, seq in fwd_iter:
                self.reads_yielded += 1
                yield Read(read_id=read_id, sequence=seq)
            return

        rev_iter = self._records(reverse, fwd_format)
        for fwd_record in fwd_iter:
            rev_record = next(rev_iter, None)
            if rev_record is None:
                raise FileReadError(
                    f"R2 file ended before R1 at read {fwd_record[0]}",
                    sample=self.sample.name,
                    path=str(reverse),
                )
            self.reads_yielded += 1
            yield Read(read_id=fwd_record[0], sequence=fwd_record[1], mate=rev_record[1])
        if next(rev_iter, None) is not None:
            raise FileReadError(
                "R2 file has more records than R1",
                sample=self.sample.name,
                path=str(reverse),
            )

    def _detect(self, path: pathlib.Path) -> Optional[str]:
        if not path.is_file():
            raise FileReadError("Sample file not found", sample=self.sample.name, path=str(path))
        try:
            return detect_file_format(path)
        except _READ_ERRORS as e:
            raise FileReadError(
                f"Cannot read sample file: {e}", sample=self.sample.name, path=str(path)
            ) from e

    def _records(self, path: pathlib.Path, file_format: str) -> Iterator[Tuple[str, bytes]]:
        """Yields (read_id, sequence bytes), translating parser errors to FileReadError."""
        try:
            with open_sequence_file(path) as fh:
                if file_format == "fastq":
                    for title, seq, _qual in FastqGeneralIterator(fh):
                        yield _first_word(title), seq.encode("ascii").upper()
                else:
                    for record in SeqIO.parse(fh, "fasta"):
                        yield record.id, bytes(record.seq).upper()
        except _READ_ERRORS as e:
            raise FileReadError(
                f"Malformed or truncated record: {e}", sample=self.sample.name, path=str(path)
            ) from e


def _first_word(title: str) -> str:
    return title.split(None, 1)[0] if title else ""


def _until(reads: Iterable[Read], should_stop: Callable[[], bool]) -> Iterator[Read]:
    for read in reads:
        if should_stop():
            return
        yield read


def _counted(
    reads: Iterable[Read], on_progress: Callable[[int], None], every: int
) -> Iterator[Read]:
    seen = 0
    for read in reads:
        seen += 1
        if seen % every == 0:
            on_progress(seen)
        yield read
    on_progress(seen)
