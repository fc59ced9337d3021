"""
Type definitions for the halalseq package.

Common type aliases used across modules, kept in one place for consistency.
"""

import numpy as np
import numpy.typing as npt

Kmer = bytes  # A canonical k-mer as upper-case ASCII bytes.
SpeciesId = str  # Species identifier as stored in the reference database.
MarkerId = str  # Marker (amplicon) identifier.
SpeciesIndex = int  # Position of a species in ReferenceDatabase.species.
MarkerIndex = int  # Position of a marker in ReferenceDatabase.markers.
ReadId = str  # Read identifier taken from the FASTA/FASTQ header.
CountMatrix = npt.NDArray[np.int64]  # species x marker read counts.
