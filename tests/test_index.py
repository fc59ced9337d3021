import struct

import numpy as np

import pytest

from halalseq.container import FORMAT_VERSION, KIND_DATABASE, MAGIC, read_container, write_container
from halalseq.database import HalalStatus, load_database, save_database
from halalseq.exceptions import DatabaseLoadError, IndexLoadError
from halalseq.index import ClassificationIndex, bloom_parameters, load_index, open_index
from halalseq.sequence import extract_canonical_kmers

# --- Construction and queries ---


def test_bloom_parameters_scale_with_items():
    small_bits, small_hashes = bloom_parameters(100, 0.01)
    large_bits, _ = bloom_parameters(10_000, 0.01)
    assert small_bits >= 64
    assert large_bits > small_bits
    assert small_hashes >= 1


def test_bloom_parameters_rejects_bad_rate():
    with pytest.raises(ValueError):
        bloom_parameters(10, 1.5)


def test_coarse_tier_has_no_false_negatives(index, database, amplicon_sequences):
    for (species_id, _marker_id), seq in amplicon_sequences.items():
        s_idx = database.species_index(species_id)
        for kmer in extract_canonical_kmers(seq.encode(), index.k):
            assert s_idx in index.coarse_candidates(kmer)


def test_coarse_hits_matches_single_lookups(index, amplicon_sequences):
    seq = amplicon_sequences[("Sus_scrofa", "cytb")].encode()
    kmers = extract_canonical_kmers(seq, index.k)[:10]
    hits = index.coarse_hits(kmers)
    assert hits.shape == (index.num_species, len(kmers))
    for j, kmer in enumerate(kmers):
        assert set(hits[:, j].nonzero()[0].tolist()) == index.coarse_candidates(kmer)


def test_fine_tier_is_exact(index, database, amplicon_sequences):
    seq = amplicon_sequences[("Bos_taurus", "12S")].encode()
    kmer = extract_canonical_kmers(seq, index.k)[0]
    s_idx = database.species_index("Bos_taurus")
    m_idx = database.marker_index("12S")
    assert index.fine_match(m_idx, s_idx, kmer)
    assert not index.fine_match(database.marker_index("cytb"), s_idx, kmer)
    assert index.fine_set_size(m_idx, s_idx) == len(set(extract_canonical_kmers(seq, index.k)))


def test_locate_markers_from_primer(index, database):
    primer = database.markers[1].primer_forward.encode()
    assert index.locate_markers(b"TT" + primer + b"GG") == {1}
    assert index.locate_markers(b"ACGT" * 5) == set()


def test_index_sketches_are_read_only(index):
    with pytest.raises(ValueError):
        index._bloom[0, 0] = True


# --- Persistence ---


def test_open_index_roundtrip(index_path, database, index):
    loaded_db, loaded_index = open_index(index_path)
    assert loaded_db.species_ids == database.species_ids
    assert loaded_db.marker_ids == database.marker_ids
    assert loaded_db.get_species("Sus_scrofa").status is HalalStatus.HARAM
    assert loaded_index.k == index.k
    assert loaded_index.stats() == index.stats()
    for m in range(index.num_markers):
        for s in range(index.num_species):
            assert loaded_index.fine_set_size(m, s) == index.fine_set_size(m, s)


def test_load_index_and_load_database_share_a_file(index_path, database):
    assert isinstance(load_index(index_path), ClassificationIndex)
    assert load_database(index_path).summary() == database.summary()


def test_standalone_database_roundtrip(tmp_path, database):
    path = save_database(tmp_path / "ref.hdb", database)
    loaded = load_database(path)
    assert loaded.species_ids == database.species_ids
    assert loaded.get_amplicon("Gallus_gallus", "cytb").seq_len == 300


def test_database_file_is_not_an_index(tmp_path, database):
    path = save_database(tmp_path / "ref.hdb", database)
    with pytest.raises(IndexLoadError, match="kind"):
        open_index(path)


# --- Load errors ---


def test_missing_index_file(tmp_path):
    with pytest.raises(IndexLoadError, match="not found"):
        load_index(tmp_path / "absent.hidx")


def test_missing_database_file_raises_database_error(tmp_path):
    with pytest.raises(DatabaseLoadError):
        load_database(tmp_path / "absent.hdb")


def test_bad_magic(tmp_path):
    path = tmp_path / "bad.hidx"
    path.write_bytes(b"NOTANIDX" + b"\x00" * 40)
    with pytest.raises(IndexLoadError, match="magic"):
        load_index(path)


def test_truncated_header(tmp_path):
    path = tmp_path / "short.hidx"
    path.write_bytes(MAGIC[:4])
    with pytest.raises(IndexLoadError, match="truncated"):
        load_index(path)


def test_truncated_payload(index_path):
    raw = index_path.read_bytes()
    index_path.write_bytes(raw[: len(raw) - 50])
    with pytest.raises(IndexLoadError, match="truncated"):
        load_index(index_path)


def test_corrupt_payload(index_path):
    raw = bytearray(index_path.read_bytes())
    raw[-10] ^= 0xFF
    index_path.write_bytes(bytes(raw))
    with pytest.raises(IndexLoadError, match="checksum"):
        load_index(index_path)


def test_unsupported_version(index_path):
    raw = bytearray(index_path.read_bytes())
    struct.pack_into("<H", raw, 8, FORMAT_VERSION + 1)
    index_path.write_bytes(bytes(raw))
    with pytest.raises(IndexLoadError, match="version"):
        load_index(index_path)


def test_container_rejects_reserved_array_name(tmp_path):
    with pytest.raises(ValueError):
        write_container(tmp_path / "x", KIND_DATABASE, {}, {"metadata_json": np.zeros(1)})


def test_container_roundtrip_metadata(tmp_path):
    path = write_container(tmp_path / "x.bin", KIND_DATABASE, {"a": 1}, {"v": np.arange(3)})
    kind, metadata, arrays = read_container(path, (KIND_DATABASE,))
    assert kind == KIND_DATABASE
    assert metadata == {"a": 1}
    assert arrays["v"].tolist() == [0, 1, 2]
