import gzip
import pathlib
from typing import Callable, Dict, List, Tuple

import numpy as np
import pytest

from halalseq.database import Amplicon, HalalStatus, Marker, ReferenceDatabase, Species
from halalseq.index import ClassificationIndex, save_index

AMPLICON_LENGTH = 300
READ_LENGTH = 100


def random_dna(rng: np.random.Generator, length: int) -> str:
    return "".join(rng.choice(list("ACGT"), size=length))


@pytest.fixture
def database() -> ReferenceDatabase:
    """Three species (one haram) x two markers."""
    species = (
        Species("Bos_taurus", "Cattle", HalalStatus.HALAL, 1.0),
        Species("Sus_scrofa", "Pig", HalalStatus.HARAM, 1.0),
        Species("Gallus_gallus", "Chicken", HalalStatus.HALAL, 1.0),
    )
    markers = (
        Marker("cytb", "CCATCCAACATCTCAGCATGATGAAA", "GCCCCTCAGAATGATATTTGTCCTCA"),
        Marker("12S", "CAAACTGGGATTAGATACCCCACTAT", "GAGGGTGACGGGCGGTGTGT"),
    )
    amplicons = {
        (s.species_id, m.marker_id): Amplicon(s.species_id, m.marker_id, AMPLICON_LENGTH)
        for s in species
        for m in markers
    }
    return ReferenceDatabase(species=species, markers=markers, amplicons=amplicons)


@pytest.fixture
def amplicon_sequences(database: ReferenceDatabase) -> Dict[Tuple[str, str], str]:
    rng = np.random.default_rng(7)
    return {key: random_dna(rng, AMPLICON_LENGTH) for key in sorted(database.amplicons)}


@pytest.fixture
def index(database, amplicon_sequences) -> ClassificationIndex:
    return ClassificationIndex.from_amplicons(database, amplicon_sequences, k=21, primer_k=12)


@pytest.fixture
def index_path(tmp_path: pathlib.Path, database, index) -> pathlib.Path:
    return save_index(tmp_path / "panel.hidx", database, index)


@pytest.fixture
def make_reads(amplicon_sequences) -> Callable[..., List[str]]:
    """Returns a factory drawing error-free reads from one reference amplicon."""

    def _make(species_id: str, marker_id: str, count: int, seed: int = 0) -> List[str]:
        rng = np.random.default_rng(seed)
        amplicon = amplicon_sequences[(species_id, marker_id)]
        starts = rng.integers(0, AMPLICON_LENGTH - READ_LENGTH + 1, size=count)
        return [amplicon[s:s + READ_LENGTH] for s in starts]

    return _make


def _open_for_write(path: pathlib.Path):
    if path.name.endswith(".gz"):
        return gzip.open(path, "wt")
    return open(path, "w")


@pytest.fixture
def write_fastq() -> Callable[..., pathlib.Path]:
    """Writes sequences as FASTQ (gzip when the name ends in .gz)."""

    def _write(path: pathlib.Path, sequences: List[str], prefix: str = "read") -> pathlib.Path:
        with _open_for_write(path) as fh:
            for i, seq in enumerate(sequences):
                fh.write(f"@{prefix}{i} extra\n{seq}\n+\n{'I' * len(seq)}\n")
        return path

    return _write


@pytest.fixture
def write_fasta() -> Callable[..., pathlib.Path]:
    def _write(path: pathlib.Path, sequences: List[str], prefix: str = "read") -> pathlib.Path:
        with _open_for_write(path) as fh:
            for i, seq in enumerate(sequences):
                fh.write(f">{prefix}{i}\n{seq}\n")
        return path

    return _write
