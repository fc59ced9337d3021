"""
Grouping of input files into logical samples.
"""

import pathlib
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .exceptions import InvalidSampleError

SEQUENCE_EXTENSIONS = (".fastq", ".fq", ".fasta", ".fa", ".fna")

# Mate indicator at the end of a stem: _R1 / .R1 / -R1 / _1, optionally followed
# by the Illumina lane chunk "_001".
_MATE_PATTERN = re.compile(r"^(?P<prefix>.+?)[._-](?:R(?P<rn>[12])|(?P<n>[12]))(?P<chunk>_\d{3})?$", re.IGNORECASE)


@dataclass(frozen=True)
class Sample:
    """
    A logical sample: one single-end file or an R1/R2 pair.

    Attributes:
        name: Sample name derived from the shared file prefix.
        paths: One path, or two paths ordered (R1, R2).
    """

    name: str
    paths: Tuple[pathlib.Path, ...]

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidSampleError("Sample name must be non-empty.")
        if not 1 <= len(self.paths) <= 2:
            raise InvalidSampleError(
                f"A sample needs 1 or 2 files, got {len(self.paths)}", {"sample": self.name}
            )
        object.__setattr__(self, "paths", tuple(pathlib.Path(p) for p in self.paths))

    @property
    def is_paired(self) -> bool:
        return len(self.paths) == 2

    @property
    def forward(self) -> pathlib.Path:
        return self.paths[0]

    @property
    def reverse(self) -> Optional[pathlib.Path]:
        return self.paths[1] if self.is_paired else None

    @property
    def label(self) -> str:
        return f"{self.name} (R1+R2)" if self.is_paired else self.name


def strip_sequence_extension(filename: str) -> str:
    """Removes a sequence-file extension (and a trailing .gz) from a file name."""
    name = filename
    if name.lower().endswith(".gz"):
        name = name[:-3]
    for suffix in SEQUENCE_EXTENSIONS:
        if name.lower().endswith(suffix):
            return name[: -len(suffix)]
    return name


def split_mate_suffix(stem: str) -> Tuple[str, Optional[int]]:
    """
    Splits a file stem into (sample prefix, mate number).

    Returns:
        (prefix, 1 or 2) when the stem ends in a mate indicator,
        otherwise (stem, None).
    """
    match = _MATE_PATTERN.match(stem)
    if not match:
        return stem, None
    mate = match.group("rn") or match.group("n")
    return match.group("prefix"), int(mate)


def detect_samples(paths: Iterable[Union[str, pathlib.Path]]) -> List[Sample]:
    """
    Groups input files into samples, pairing R1/R2 mates.

    Files sharing a directory and a prefix, one ending in an R1 indicator and
    the other in R2, become one paired sample. Every other file becomes a
    single-file sample named after its stem. Output order follows the first
    appearance of each sample's first file. Pure: the filesystem is not
    touched.

    Args:
        paths: Input file paths.

    Returns:
        List of samples.
    """
    unique_paths: List[pathlib.Path] = []
    seen = set()
    for raw in paths:
        path = pathlib.Path(raw)
        if path not in seen:
            seen.add(path)
            unique_paths.append(path)

    # (directory, prefix) -> {mate number: [paths]}
    mate_groups: Dict[Tuple[pathlib.Path, str], Dict[int, List[pathlib.Path]]] = {}
    parsed: List[Tuple[pathlib.Path, str, Optional[int]]] = []
    for path in unique_paths:
        stem = strip_sequence_extension(path.name)
        prefix, mate = split_mate_suffix(stem)
        parsed.append((path, prefix if mate else stem, mate))
        if mate is not None:
            mate_groups.setdefault((path.parent, prefix), {}).setdefault(mate, []).append(path)

    def is_pairable(path: pathlib.Path, prefix: str) -> bool:
        group = mate_groups.get((path.parent, prefix), {})
        return len(group.get(1, [])) == 1 and len(group.get(2, [])) == 1

    samples: List[Sample] = []
    emitted_pairs = set()
    for path, prefix, mate in parsed:
        if mate is not None and is_pairable(path, prefix):
            key = (path.parent, prefix)
            if key in emitted_pairs:
                continue
            emitted_pairs.add(key)
            group = mate_groups[key]
            samples.append(Sample(name=prefix, paths=(group[1][0], group[2][0])))
        else:
            samples.append(Sample(name=strip_sequence_extension(path.name), paths=(path,)))
    return samples
