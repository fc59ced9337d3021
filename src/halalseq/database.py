"""
Reference database: species, markers and reference amplicons.

The database is produced by an external build step and embedded in every
index file. It is read-only for the lifetime of the process.
"""

import enum
import logging
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .container import KIND_DATABASE, KIND_INDEX, read_container, write_container
from .exceptions import DatabaseLoadError, IndexLoadError
from .genomic_types import MarkerId, MarkerIndex, SpeciesId, SpeciesIndex

logger = logging.getLogger(__name__)


class HalalStatus(str, enum.Enum):
    """Static religious-dietary status of a species."""

    HALAL = "halal"
    HARAM = "haram"
    DOUBTFUL = "doubtful"  # mashbooh
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> "HalalStatus":
        """Parses a status tag, accepting 'mashbooh' as an alias of doubtful."""
        normalized = str(value).strip().lower()
        if normalized == "mashbooh":
            return cls.DOUBTFUL
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN

    @property
    def label(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True, slots=True)
class Species:
    """A reference species with its calibration weight."""

    species_id: SpeciesId
    common_name: str
    status: HalalStatus
    mito_copy_number: float

    def __post_init__(self) -> None:
        if not self.species_id:
            raise ValueError("species_id must be non-empty.")
        if not self.mito_copy_number > 0:
            raise ValueError(
                f"mito_copy_number for {self.species_id} must be positive, "
                f"got {self.mito_copy_number}."
            )


@dataclass(frozen=True, slots=True)
class Marker:
    """An amplicon marker defined by its primer pair."""

    marker_id: MarkerId
    primer_forward: str = ""
    primer_reverse: str = ""


@dataclass(frozen=True, slots=True)
class Amplicon:
    """Reference amplicon of one species for one marker."""

    species_id: SpeciesId
    marker_id: MarkerId
    seq_len: int


@dataclass(frozen=True)
class ReferenceDatabase:
    """
    Ordered species, markers and the (species, marker) -> amplicon mapping.

    Attributes:
        species: Species in database order. The order defines species indices.
        markers: Markers in database order. The order defines marker indices.
        amplicons: Mapping (species_id, marker_id) -> Amplicon.
        source_path: File the database was read from, if any.
    """

    species: Tuple[Species, ...]
    markers: Tuple[Marker, ...]
    amplicons: Mapping[Tuple[SpeciesId, MarkerId], Amplicon] = field(default_factory=dict)
    source_path: Optional[pathlib.Path] = None

    def __post_init__(self) -> None:
        if not self.species:
            raise ValueError("Reference database contains no species.")
        if not self.markers:
            raise ValueError("Reference database contains no markers.")
        species_ids = [s.species_id for s in self.species]
        marker_ids = [m.marker_id for m in self.markers]
        if len(set(species_ids)) != len(species_ids):
            raise ValueError("Species identifiers must be unique.")
        if len(set(marker_ids)) != len(marker_ids):
            raise ValueError("Marker identifiers must be unique.")
        for species_id, marker_id in self.amplicons:
            if species_id not in species_ids or marker_id not in marker_ids:
                raise ValueError(
                    f"Amplicon ({species_id}, {marker_id}) refers to an unknown species or marker."
                )
        object.__setattr__(
            self, "_species_pos", {sid: i for i, sid in enumerate(species_ids)}
        )
        object.__setattr__(
            self, "_marker_pos", {mid: i for i, mid in enumerate(marker_ids)}
        )

    @property
    def num_species(self) -> int:
        return len(self.species)

    @property
    def num_markers(self) -> int:
        return len(self.markers)

    @property
    def species_ids(self) -> List[SpeciesId]:
        return [s.species_id for s in self.species]

    @property
    def marker_ids(self) -> List[MarkerId]:
        return [m.marker_id for m in self.markers]

    def species_index(self, species_id: SpeciesId) -> SpeciesIndex:
        """Returns the position of a species. Raises KeyError if unknown."""
        return self._species_pos[species_id]  # type: ignore[attr-defined]

    def marker_index(self, marker_id: MarkerId) -> MarkerIndex:
        """Returns the position of a marker. Raises KeyError if unknown."""
        return self._marker_pos[marker_id]  # type: ignore[attr-defined]

    def get_species(self, species_id: SpeciesId) -> Species:
        return self.species[self.species_index(species_id)]

    def get_amplicon(self, species_id: SpeciesId, marker_id: MarkerId) -> Optional[Amplicon]:
        return self.amplicons.get((species_id, marker_id))

    def summary(self) -> Dict[str, int]:
        """Counts shown by the database viewer."""
        return {
            "species": self.num_species,
            "markers": self.num_markers,
            "references": len(self.amplicons),
        }

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serialisable form stored in container metadata."""
        return {
            "species": [
                {
                    "species_id": s.species_id,
                    "common_name": s.common_name,
                    "status": s.status.value,
                    "mito_copy_number": s.mito_copy_number,
                }
                for s in self.species
            ],
            "markers": [
                {
                    "marker_id": m.marker_id,
                    "primer_forward": m.primer_forward,
                    "primer_reverse": m.primer_reverse,
                }
                for m in self.markers
            ],
            "amplicons": [
                {"species_id": a.species_id, "marker_id": a.marker_id, "seq_len": a.seq_len}
                for a in self.amplicons.values()
            ],
        }

    @classmethod
    def from_dict(
        cls, data: Mapping[str, Any], source_path: Optional[pathlib.Path] = None
    ) -> "ReferenceDatabase":
        """
        Builds a database from its serialised form.

        Raises:
            KeyError, TypeError, ValueError: If the data is incomplete or invalid.
        """
        species = tuple(
            Species(
                species_id=str(rec["species_id"]),
                common_name=str(rec.get("common_name") or rec["species_id"]),
                status=HalalStatus.parse(rec.get("status", "unknown")),
                mito_copy_number=float(rec.get("mito_copy_number", 1.0)),
            )
            for rec in data["species"]
        )
        markers = tuple(
            Marker(
                marker_id=str(rec["marker_id"]),
                primer_forward=str(rec.get("primer_forward", "")).upper(),
                primer_reverse=str(rec.get("primer_reverse", "")).upper(),
            )
            for rec in data["markers"]
        )
        amplicons = {}
        for rec in data.get("amplicons", []):
            amplicon = Amplicon(
                species_id=str(rec["species_id"]),
                marker_id=str(rec["marker_id"]),
                seq_len=int(rec["seq_len"]),
            )
            amplicons[(amplicon.species_id, amplicon.marker_id)] = amplicon
        return cls(species=species, markers=markers, amplicons=amplicons, source_path=source_path)


def save_database(path: Union[str, pathlib.Path], database: ReferenceDatabase) -> pathlib.Path:
    """Writes a standalone reference database container."""
    return write_container(path, KIND_DATABASE, {"database": database.to_dict()}, {})


def database_from_metadata(
    metadata: Mapping[str, Any], path: pathlib.Path
) -> ReferenceDatabase:
    """Extracts the database section of container metadata."""
    if "database" not in metadata:
        raise DatabaseLoadError("Index contains no reference database section", {"path": str(path)})
    try:
        return ReferenceDatabase.from_dict(metadata["database"], source_path=path)
    except (KeyError, TypeError, ValueError) as e:
        raise DatabaseLoadError(
            f"Reference database section is invalid: {e}", {"path": str(path)}
        ) from e


def load_database(path: Union[str, pathlib.Path]) -> ReferenceDatabase:
    """
    Loads the reference database from a database or index container.

    Args:
        path: A standalone database file or an index file embedding one.

    Returns:
        The read-only ReferenceDatabase.

    Raises:
        DatabaseLoadError: If the file cannot be read or the section is invalid.
    """
    path = pathlib.Path(path)
    try:
        _, metadata, _ = read_container(path, (KIND_DATABASE, KIND_INDEX))
    except DatabaseLoadError:
        raise
    except IndexLoadError as e:
        raise DatabaseLoadError(e.message, e.details) from e
    database = database_from_metadata(metadata, path)
    logger.info(
        f"Loaded reference database from {path}: {database.num_species} species, "
        f"{database.num_markers} markers, {len(database.amplicons)} references"
    )
    return database
