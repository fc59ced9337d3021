"""
Two-tier k-mer classification index.

The coarse tier is one Bloom filter per species over all of that species'
reference amplicon k-mers: membership tests never give false negatives and
give false positives at a bounded rate. The fine tier holds the exact
canonical k-mer set of every (marker, species) reference amplicon, used to
confirm coarse hits. A third structure maps primer k-mers to markers so a
read can be placed on its amplicon before confirmation.

All species share one Bloom width and hash schedule, so a k-mer is hashed
once (mmh3, 128 bit) and the same bit positions are probed in every sketch.
"""

import logging
import math
import pathlib
from typing import Dict, Iterable, List, Mapping, Sequence, Set, Tuple, Union

import mmh3
import numpy as np
import numpy.typing as npt

from .container import KIND_INDEX, read_container, write_container
from .database import ReferenceDatabase, database_from_metadata
from .exceptions import IndexLoadError
from .genomic_types import Kmer, MarkerIndex, SpeciesIndex
from .sequence import extract_canonical_kmers, kmer_set_of

logger = logging.getLogger(__name__)

DEFAULT_KMER_LENGTH = 21
DEFAULT_PRIMER_KMER_LENGTH = 12
DEFAULT_FALSE_POSITIVE_RATE = 0.01
_MIN_BLOOM_BITS = 64


def bloom_parameters(num_items: int, false_positive_rate: float) -> Tuple[int, int]:
    """
    Sizes a Bloom filter.

    Args:
        num_items: Expected number of inserted items.
        false_positive_rate: Target false-positive probability, in (0, 1).

    Returns:
        Tuple of (number of bits, number of hash functions).
    """
    if not 0.0 < false_positive_rate < 1.0:
        raise ValueError("false_positive_rate must be in (0, 1).")
    n = max(num_items, 1)
    num_bits = max(_MIN_BLOOM_BITS, math.ceil(-n * math.log(false_positive_rate) / math.log(2) ** 2))
    num_hashes = max(1, round(num_bits / n * math.log(2)))
    return num_bits, num_hashes


def _kmer_dtype(k: int) -> np.dtype:
    return np.dtype(f"S{k}")


class ClassificationIndex:
    """
    Read-only coarse/fine/primer k-mer structures for one reference database.

    Instances are built once (`from_amplicons` or `load_index`) and never
    modified; every query method is free of side effects, so a single index
    can be shared by any number of threads or forked worker processes.

    Attributes:
        k: K-mer length of the coarse and fine tiers.
        primer_k: K-mer length of the primer index.
        num_species: Number of species (rows of the coarse tier).
        num_markers: Number of markers.
        num_hashes: Hash functions per Bloom probe.
        bloom_bits: Bits per species sketch.
    """

    def __init__(
        self,
        k: int,
        primer_k: int,
        bloom: npt.NDArray[np.bool_],
        num_hashes: int,
        fine_sets: Sequence[Sequence[frozenset]],
        primer_sets: Sequence[frozenset],
        false_positive_rate: float = DEFAULT_FALSE_POSITIVE_RATE,
    ) -> None:
        if k <= 0 or primer_k <= 0:
            raise ValueError("k and primer_k must be positive.")
        if bloom.ndim != 2:
            raise ValueError("Bloom bit matrix must be 2-dimensional (species x bits).")
        num_species, num_bits = bloom.shape
        if len(primer_sets) != len(fine_sets):
            raise ValueError("Primer sets and fine sets disagree on the number of markers.")
        for marker_sets in fine_sets:
            if len(marker_sets) != num_species:
                raise ValueError("Every marker needs one fine set per species.")

        self.k = k
        self.primer_k = primer_k
        self.num_species = num_species
        self.num_markers = len(fine_sets)
        self.num_hashes = num_hashes
        self.bloom_bits = num_bits
        self.false_positive_rate = false_positive_rate

        bloom = np.ascontiguousarray(bloom, dtype=bool)
        bloom.setflags(write=False)
        self._bloom = bloom
        self._fine: Tuple[Tuple[frozenset, ...], ...] = tuple(
            tuple(species_sets) for species_sets in fine_sets
        )
        self._primer: Tuple[frozenset, ...] = tuple(primer_sets)
        lookup: Dict[Kmer, List[MarkerIndex]] = {}
        for marker_idx, kmers in enumerate(self._primer):
            for kmer in kmers:
                lookup.setdefault(kmer, []).append(marker_idx)
        self._primer_lookup = {kmer: tuple(markers) for kmer, markers in lookup.items()}

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def from_amplicons(
        cls,
        database: ReferenceDatabase,
        sequences: Mapping[Tuple[str, str], str],
        k: int = DEFAULT_KMER_LENGTH,
        primer_k: int = DEFAULT_PRIMER_KMER_LENGTH,
        false_positive_rate: float = DEFAULT_FALSE_POSITIVE_RATE,
    ) -> "ClassificationIndex":
        """
        Builds the index from reference amplicon sequences.

        Args:
            database: The reference database defining species and marker order.
            sequences: Mapping (species_id, marker_id) -> amplicon sequence.
            k: K-mer length of the coarse and fine tiers.
            primer_k: K-mer length of the primer index.
            false_positive_rate: Target Bloom false-positive rate.

        Returns:
            A new ClassificationIndex.
        """
        num_species = database.num_species
        fine_sets: List[List[frozenset]] = []
        species_union: List[Set[Kmer]] = [set() for _ in range(num_species)]

        for marker in database.markers:
            marker_sets: List[frozenset] = []
            for s_idx, species in enumerate(database.species):
                seq = sequences.get((species.species_id, marker.marker_id))
                kmers = frozenset(kmer_set_of([seq.encode("ascii")], k)) if seq else frozenset()
                marker_sets.append(kmers)
                species_union[s_idx].update(kmers)
            fine_sets.append(marker_sets)

        num_bits, num_hashes = bloom_parameters(
            max((len(u) for u in species_union), default=0), false_positive_rate
        )
        bloom = np.zeros((num_species, num_bits), dtype=bool)
        for s_idx, kmers in enumerate(species_union):
            for kmer in kmers:
                bloom[s_idx, _probe_positions(kmer, num_bits, num_hashes)] = True

        primer_sets: List[frozenset] = []
        for marker in database.markers:
            primers = [p.encode("ascii") for p in (marker.primer_forward, marker.primer_reverse) if p]
            if any(len(p) < primer_k for p in primers):
                logger.warning(
                    f"Marker {marker.marker_id} has a primer shorter than {primer_k} bp; "
                    "it will not contribute to amplicon detection."
                )
            primer_sets.append(frozenset(kmer_set_of(primers, primer_k)))

        logger.info(
            f"Built index: k={k}, {num_species} species x {database.num_markers} markers, "
            f"{num_bits} Bloom bits x {num_hashes} hashes per species"
        )
        return cls(k, primer_k, bloom, num_hashes, fine_sets, primer_sets, false_positive_rate)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def coarse_candidates(self, kmer: Kmer) -> Set[SpeciesIndex]:
        """Species whose sketch may contain `kmer`. Never misses a true member."""
        positions = _probe_positions(kmer, self.bloom_bits, self.num_hashes)
        present = self._bloom[:, positions].all(axis=1)
        return set(np.flatnonzero(present).tolist())

    def coarse_hits(self, kmers: Sequence[Kmer]) -> npt.NDArray[np.bool_]:
        """
        Batched coarse test.

        Returns:
            Boolean matrix (num_species x len(kmers)); entry [s, i] is True
            when species s may contain kmers[i].
        """
        if not kmers:
            return np.zeros((self.num_species, 0), dtype=bool)
        positions = np.array(
            [_probe_positions(kmer, self.bloom_bits, self.num_hashes) for kmer in kmers],
            dtype=np.int64,
        )
        return self._bloom[:, positions].all(axis=2)

    def fine_match(self, marker: MarkerIndex, species: SpeciesIndex, kmer: Kmer) -> bool:
        """Exact membership of `kmer` in the (marker, species) reference set."""
        return kmer in self._fine[marker][species]

    def fine_count(self, marker: MarkerIndex, species: SpeciesIndex, kmers: Iterable[Kmer]) -> int:
        """Number of `kmers` confirmed by the (marker, species) reference set."""
        fine = self._fine[marker][species]
        return sum(1 for kmer in kmers if kmer in fine)

    def fine_set_size(self, marker: MarkerIndex, species: SpeciesIndex) -> int:
        return len(self._fine[marker][species])

    def primer_markers(self, primer_kmers: Iterable[Kmer]) -> Set[MarkerIndex]:
        """Markers whose primer k-mers occur among `primer_kmers`."""
        found: Set[MarkerIndex] = set()
        for kmer in primer_kmers:
            found.update(self._primer_lookup.get(kmer, ()))
        return found

    def locate_markers(self, sequence: bytes) -> Set[MarkerIndex]:
        """Markers whose primers are found in `sequence`."""
        return self.primer_markers(extract_canonical_kmers(sequence, self.primer_k))

    def stats(self) -> Dict[str, object]:
        return {
            "k": self.k,
            "primer_k": self.primer_k,
            "num_species": self.num_species,
            "num_markers": self.num_markers,
            "bloom_bits": self.bloom_bits,
            "num_hashes": self.num_hashes,
            "fine_kmers": sum(len(s) for marker_sets in self._fine for s in marker_sets),
            "primer_kmers": len(self._primer_lookup),
        }

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------
    def to_arrays(self) -> Tuple[Dict[str, object], Dict[str, np.ndarray]]:
        metadata = {
            "k": self.k,
            "primer_k": self.primer_k,
            "num_species": self.num_species,
            "num_markers": self.num_markers,
            "bloom_bits": self.bloom_bits,
            "num_hashes": self.num_hashes,
            "false_positive_rate": self.false_positive_rate,
        }
        arrays: Dict[str, np.ndarray] = {"bloom": np.packbits(self._bloom, axis=1)}
        kmer_dtype = _kmer_dtype(self.k)
        for m_idx, marker_sets in enumerate(self._fine):
            for s_idx, kmers in enumerate(marker_sets):
                arrays[f"fine_{m_idx}_{s_idx}"] = np.array(sorted(kmers), dtype=kmer_dtype)
        primer_dtype = _kmer_dtype(self.primer_k)
        for m_idx, kmers in enumerate(self._primer):
            arrays[f"primer_{m_idx}"] = np.array(sorted(kmers), dtype=primer_dtype)
        return metadata, arrays

    @classmethod
    def from_arrays(
        cls, metadata: Mapping[str, object], arrays: Mapping[str, np.ndarray]
    ) -> "ClassificationIndex":
        """
        Rebuilds an index from container contents.

        Raises:
            KeyError, TypeError, ValueError: If a section is missing or malformed.
        """
        k = int(metadata["k"])  # type: ignore[arg-type]
        primer_k = int(metadata["primer_k"])  # type: ignore[arg-type]
        num_species = int(metadata["num_species"])  # type: ignore[arg-type]
        num_markers = int(metadata["num_markers"])  # type: ignore[arg-type]
        num_bits = int(metadata["bloom_bits"])  # type: ignore[arg-type]
        num_hashes = int(metadata["num_hashes"])  # type: ignore[arg-type]
        fpr = float(metadata.get("false_positive_rate", DEFAULT_FALSE_POSITIVE_RATE))  # type: ignore[arg-type]

        packed = arrays["bloom"]
        if packed.dtype != np.uint8 or packed.shape != (num_species, math.ceil(num_bits / 8)):
            raise ValueError(f"Bloom section has unexpected shape {packed.shape}")
        bloom = np.unpackbits(packed, axis=1, count=num_bits).astype(bool)

        fine_sets = [
            [_kmer_frozenset(arrays[f"fine_{m}_{s}"], k) for s in range(num_species)]
            for m in range(num_markers)
        ]
        primer_sets = [_kmer_frozenset(arrays[f"primer_{m}"], primer_k) for m in range(num_markers)]
        return cls(k, primer_k, bloom, num_hashes, fine_sets, primer_sets, fpr)


def _probe_positions(kmer: Kmer, num_bits: int, num_hashes: int) -> List[int]:
    """Bit positions probed for `kmer` (Kirsch-Mitzenmacher double hashing)."""
    h1, h2 = mmh3.hash64(kmer, 0, signed=False)
    h2 |= 1
    return [(h1 + i * h2) % num_bits for i in range(num_hashes)]


def _kmer_frozenset(array: np.ndarray, k: int) -> frozenset:
    if array.dtype.kind != "S" or (array.size and array.dtype.itemsize != k):
        raise ValueError(f"K-mer section has dtype {array.dtype}, expected S{k}")
    return frozenset(array.tolist())


def save_index(
    path: Union[str, pathlib.Path], database: ReferenceDatabase, index: ClassificationIndex
) -> pathlib.Path:
    """Writes database and index into one versioned container file."""
    if index.num_species != database.num_species or index.num_markers != database.num_markers:
        raise ValueError("Index dimensions do not match the reference database.")
    index_meta, arrays = index.to_arrays()
    return write_container(
        path, KIND_INDEX, {"database": database.to_dict(), "index": index_meta}, arrays
    )


def open_index(path: Union[str, pathlib.Path]) -> Tuple[ReferenceDatabase, ClassificationIndex]:
    """
    Reads an index file once and returns independently owned handles.

    Args:
        path: Index container written by `save_index` (or the external build step).

    Returns:
        Tuple of (ReferenceDatabase, ClassificationIndex).

    Raises:
        IndexLoadError: If the file is missing, corrupt, truncated, of another
            version, or its sections disagree with each other.
    """
    path = pathlib.Path(path)
    _, metadata, arrays = read_container(path, (KIND_INDEX,))
    database = database_from_metadata(metadata, path)
    try:
        index = ClassificationIndex.from_arrays(metadata["index"], arrays)
    except (KeyError, TypeError, ValueError) as e:
        raise IndexLoadError(f"Index section is invalid: {e}", {"path": str(path)}) from e

    if index.num_species != database.num_species or index.num_markers != database.num_markers:
        raise IndexLoadError(
            "Index dimensions do not match its reference database",
            {
                "path": str(path),
                "index_shape": (index.num_species, index.num_markers),
                "database_shape": (database.num_species, database.num_markers),
            },
        )
    logger.info(
        f"Loaded index {path.name}: k={index.k}, {index.num_species} species, "
        f"{index.num_markers} markers"
    )
    return database, index


def load_index(path: Union[str, pathlib.Path]) -> ClassificationIndex:
    """Loads only the classification index of an index file."""
    _, index = open_index(path)
    return index
