import pytest

from halalseq.database import Amplicon, HalalStatus, Marker, ReferenceDatabase, Species


@pytest.mark.parametrize(
    "tag, status",
    [
        ("halal", HalalStatus.HALAL),
        ("HARAM", HalalStatus.HARAM),
        ("mashbooh", HalalStatus.DOUBTFUL),
        ("doubtful", HalalStatus.DOUBTFUL),
        ("whatever", HalalStatus.UNKNOWN),
    ],
)
def test_status_parse(tag, status):
    assert HalalStatus.parse(tag) is status


def test_status_label():
    assert HalalStatus.DOUBTFUL.label == "Doubtful"


def test_lookups(database):
    assert database.num_species == 3
    assert database.num_markers == 2
    assert database.species_index("Sus_scrofa") == 1
    assert database.marker_index("12S") == 1
    assert database.get_species("Gallus_gallus").common_name == "Chicken"
    assert database.get_amplicon("Bos_taurus", "cytb") == Amplicon("Bos_taurus", "cytb", 300)
    assert database.summary() == {"species": 3, "markers": 2, "references": 6}


def test_unknown_species_lookup(database):
    with pytest.raises(KeyError):
        database.species_index("Canis_lupus")


def test_dict_roundtrip(database):
    restored = ReferenceDatabase.from_dict(database.to_dict())
    assert restored.species == database.species
    assert restored.markers == database.markers
    assert dict(restored.amplicons) == dict(database.amplicons)


def test_copy_number_must_be_positive():
    with pytest.raises(ValueError):
        Species("x", "x", HalalStatus.HALAL, 0.0)


def test_duplicate_species_rejected():
    species = Species("x", "x", HalalStatus.HALAL, 1.0)
    with pytest.raises(ValueError):
        ReferenceDatabase(species=(species, species), markers=(Marker("m"),))


def test_amplicon_must_reference_known_ids():
    with pytest.raises(ValueError):
        ReferenceDatabase(
            species=(Species("x", "x", HalalStatus.HALAL, 1.0),),
            markers=(Marker("m"),),
            amplicons={("y", "m"): Amplicon("y", "m", 100)},
        )
