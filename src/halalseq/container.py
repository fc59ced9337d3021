"""
Versioned binary container shared by reference database and index files.

Layout (little endian)::

    magic        8 bytes   b"HALALIDX"
    version      uint16    FORMAT_VERSION
    kind         uint8     KIND_DATABASE or KIND_INDEX
    length       uint64    payload length in bytes
    crc32        uint32    zlib.crc32 of the payload
    payload      length    numpy .npz archive, written without pickling

The header lets readers reject foreign, truncated and incompatible files
before touching the payload.
"""

import io
import json
import logging
import pathlib
import struct
import zipfile
import zlib
from typing import Any, Dict, Tuple, Union

import numpy as np

from .exceptions import IndexLoadError

logger = logging.getLogger(__name__)

MAGIC = b"HALALIDX"
FORMAT_VERSION = 1
KIND_DATABASE = 1
KIND_INDEX = 2

_HEADER = struct.Struct("<8sHBQI")
METADATA_KEY = "metadata_json"

ArrayMap = Dict[str, np.ndarray]


def write_container(
    path: Union[str, pathlib.Path],
    kind: int,
    metadata: Dict[str, Any],
    arrays: ArrayMap,
) -> pathlib.Path:
    """
    Writes metadata and arrays into a container file.

    Args:
        path: Destination file; parent directories are created.
        kind: KIND_DATABASE or KIND_INDEX.
        metadata: JSON-serialisable metadata stored next to the arrays.
        arrays: Named numpy arrays. Object arrays are rejected.

    Returns:
        The path written.
    """
    path = pathlib.Path(path)
    if METADATA_KEY in arrays:
        raise ValueError(f"Array name '{METADATA_KEY}' is reserved.")

    buffer = io.BytesIO()
    payload_arrays = dict(arrays)
    payload_arrays[METADATA_KEY] = np.frombuffer(
        json.dumps(metadata, sort_keys=True).encode("utf-8"), dtype=np.uint8
    )
    np.savez_compressed(buffer, **payload_arrays)
    payload = buffer.getvalue()

    header = _HEADER.pack(MAGIC, FORMAT_VERSION, kind, len(payload), zlib.crc32(payload))
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(header)
        fh.write(payload)
    logger.debug(f"Wrote container {path} (kind={kind}, {len(payload)} payload bytes)")
    return path


def read_container(
    path: Union[str, pathlib.Path], accepted_kinds: Tuple[int, ...]
) -> Tuple[int, Dict[str, Any], ArrayMap]:
    """
    Reads and validates a container file.

    Args:
        path: Container file.
        accepted_kinds: Payload kinds the caller can handle.

    Returns:
        Tuple of (kind, metadata, arrays).

    Raises:
        IndexLoadError: If the file is missing, not a container, truncated,
            corrupt, of another format version or of an unexpected kind.
    """
    path = pathlib.Path(path)
    details = {"path": str(path)}
    if not path.is_file():
        raise IndexLoadError(f"Index file not found: {path}", details)

    try:
        raw = path.read_bytes()
    except OSError as e:
        raise IndexLoadError(f"Could not read index file: {e}", details) from e

    if len(raw) < _HEADER.size:
        raise IndexLoadError("Index file is truncated (incomplete header)", details)

    magic, version, kind, length, crc = _HEADER.unpack_from(raw, 0)
    if magic != MAGIC:
        raise IndexLoadError("Not a halalseq index file (bad magic)", details)
    if version != FORMAT_VERSION:
        raise IndexLoadError(
            f"Unsupported index format version {version} (expected {FORMAT_VERSION})",
            {**details, "version": version},
        )
    if kind not in accepted_kinds:
        raise IndexLoadError(
            f"Unexpected container kind {kind}", {**details, "accepted": accepted_kinds}
        )

    payload = raw[_HEADER.size :]
    if len(payload) < length:
        raise IndexLoadError(
            "Index file is truncated",
            {**details, "expected_bytes": length, "found_bytes": len(payload)},
        )
    payload = payload[:length]
    if zlib.crc32(payload) != crc:
        raise IndexLoadError("Index file is corrupt (checksum mismatch)", details)

    try:
        with np.load(io.BytesIO(payload), allow_pickle=False) as archive:
            arrays = {name: archive[name] for name in archive.files}
    except (ValueError, OSError, zipfile.BadZipFile, EOFError) as e:
        raise IndexLoadError(f"Index payload could not be decoded: {e}", details) from e

    if METADATA_KEY not in arrays:
        raise IndexLoadError("Index payload has no metadata block", details)
    try:
        metadata = json.loads(arrays.pop(METADATA_KEY).tobytes().decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise IndexLoadError(f"Index metadata is not valid JSON: {e}", details) from e

    return kind, metadata, arrays
