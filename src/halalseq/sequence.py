"""
Read representation and canonical k-mer extraction.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from .genomic_types import Kmer, ReadId

# Runs of unambiguous bases; k-mers spanning anything else (N, IUPAC codes) are skipped.
_ACGT_RUN = re.compile(rb"[ACGT]+")
_RC_TABLE = bytes.maketrans(b"ACGTacgt", b"TGCAtgca")


@dataclass(frozen=True, slots=True)
class Read:
    """
    A sequencing read, optionally carrying its mate for paired samples.

    Attributes:
        read_id: Identifier from the record header (first word).
        sequence: Nucleotides as upper-case ASCII bytes.
        mate: Nucleotides of the R2 mate, or None for single-end reads.
    """

    read_id: ReadId = field(compare=False)
    sequence: bytes
    mate: Optional[bytes] = None

    @property
    def is_paired(self) -> bool:
        return self.mate is not None

    def __len__(self) -> int:
        return len(self.sequence) + (len(self.mate) if self.mate else 0)


def reverse_complement(seq: bytes) -> bytes:
    """Efficient reverse complement for DNA as bytes."""
    return seq.translate(_RC_TABLE)[::-1]


def canonical_kmer(kmer: bytes) -> bytes:
    """Returns the lexicographically smaller of a k-mer and its reverse complement."""
    rc_kmer = reverse_complement(kmer)
    return kmer if kmer <= rc_kmer else rc_kmer


def extract_canonical_kmers(sequence: bytes, k: int) -> List[Kmer]:
    """
    Extracts canonical k-mers from a DNA sequence.

    The sequence is upper-cased first. K-mers that would contain a base other
    than A, C, G or T are skipped, so a read with an N only loses the k-mers
    that overlap it.

    Args:
        sequence: DNA sequence as bytes.
        k: K-mer length.

    Returns:
        Canonical k-mers in sequence order (duplicates kept).

    Raises:
        ValueError: If k is not positive.
    """
    if k <= 0:
        raise ValueError(f"k must be positive, got {k}.")
    if len(sequence) < k:
        return []

    kmers: List[Kmer] = []
    for run in _ACGT_RUN.finditer(sequence.upper()):
        segment = run.group()
        if len(segment) < k:
            continue
        rc_segment = reverse_complement(segment)
        n = len(segment)
        for i in range(n - k + 1):
            fwd = segment[i : i + k]
            # The reverse complement of segment[i:i+k] sits at rc[n-i-k:n-i].
            rev = rc_segment[n - i - k : n - i]
            kmers.append(fwd if fwd <= rev else rev)
    return kmers


def read_kmer_set(read: Read, k: int) -> Set[Kmer]:
    """Distinct canonical k-mers of a read and its mate."""
    kmers = set(extract_canonical_kmers(read.sequence, k))
    if read.mate:
        kmers.update(extract_canonical_kmers(read.mate, k))
    return kmers


def kmer_set_of(sequences: Iterable[bytes], k: int) -> Set[Kmer]:
    """Distinct canonical k-mers over several sequences."""
    kmers: Set[Kmer] = set()
    for seq in sequences:
        kmers.update(extract_canonical_kmers(seq, k))
    return kmers
