import pytest

from halalseq.abundance import AbundanceEstimate, SpeciesResult
from halalseq.config import VerdictPolicy
from halalseq.database import HalalStatus
from halalseq.verdict import VerdictEngine, VerdictKind, confidence_label


def _result(species_id, status, weight):
    return SpeciesResult(species_id, species_id, status, weight, weight, weight, weight, 0)


def _estimate(species, total=1000, matched=950, agreement=0.95, converged=True):
    unmatched_pct = (total - matched) / total * 100 if total else 100.0
    return AbundanceEstimate(
        species=species,
        total_reads=total,
        matched_reads=matched,
        unmatched_pct=unmatched_pct,
        cross_marker_agreement=agreement,
        converged=converged,
        iterations=5,
    )


@pytest.fixture
def engine():
    return VerdictEngine()


def test_clean_sample_passes(engine):
    verdict = engine.verdict(
        _estimate([_result("Bos_taurus", HalalStatus.HALAL, 95.0)])
    )
    assert verdict.kind is VerdictKind.PASS
    assert verdict.passed


def test_haram_above_threshold_fails(engine):
    verdict = engine.verdict(
        _estimate([
            _result("Bos_taurus", HalalStatus.HALAL, 93.0),
            _result("Sus_scrofa", HalalStatus.HARAM, 2.0),
        ])
    )
    assert verdict.kind is VerdictKind.FAIL
    assert verdict.flagged_species == ("Sus_scrofa",)
    assert "Sus_scrofa" in verdict.reasons[0]


def test_haram_at_threshold_does_not_fail(engine):
    verdict = engine.verdict(
        _estimate([
            _result("Bos_taurus", HalalStatus.HALAL, 94.0),
            _result("Sus_scrofa", HalalStatus.HARAM, 1.0),
        ])
    )
    assert verdict.kind is VerdictKind.PASS


def test_fail_wins_over_weak_evidence(engine):
    verdict = engine.verdict(
        _estimate([_result("Sus_scrofa", HalalStatus.HARAM, 4.0)], matched=40, agreement=0.1)
    )
    assert verdict.kind is VerdictKind.FAIL


def test_no_reads_is_inconclusive(engine):
    verdict = engine.verdict(_estimate([], total=0, matched=0, agreement=0.0))
    assert verdict.kind is VerdictKind.INCONCLUSIVE
    assert verdict.reasons == ("No reads in sample",)


def test_mostly_unmatched_is_inconclusive(engine):
    verdict = engine.verdict(
        _estimate([_result("Bos_taurus", HalalStatus.HALAL, 30.0)], matched=300)
    )
    assert verdict.kind is VerdictKind.INCONCLUSIVE
    assert "classified" in verdict.reasons[0]


def test_too_few_reads_is_inconclusive(engine):
    verdict = engine.verdict(
        _estimate([_result("Bos_taurus", HalalStatus.HALAL, 90.0)], total=10, matched=9)
    )
    assert verdict.kind is VerdictKind.INCONCLUSIVE


def test_low_agreement_is_inconclusive(engine):
    verdict = engine.verdict(
        _estimate([_result("Bos_taurus", HalalStatus.HALAL, 95.0)], agreement=0.5)
    )
    assert verdict.kind is VerdictKind.INCONCLUSIVE
    assert any("agreement" in r for r in verdict.reasons)


def test_non_convergence_is_inconclusive(engine):
    verdict = engine.verdict(
        _estimate([_result("Bos_taurus", HalalStatus.HALAL, 95.0)], converged=False)
    )
    assert verdict.kind is VerdictKind.INCONCLUSIVE


def test_doubtful_species_is_inconclusive(engine):
    verdict = engine.verdict(
        _estimate([
            _result("Bos_taurus", HalalStatus.HALAL, 80.0),
            _result("Equus_caballus", HalalStatus.DOUBTFUL, 15.0),
        ])
    )
    assert verdict.kind is VerdictKind.INCONCLUSIVE
    assert verdict.flagged_species == ("Equus_caballus",)


def test_doubtful_species_allowed_by_policy():
    engine = VerdictEngine(VerdictPolicy(doubtful_is_inconclusive=False))
    verdict = engine.verdict(
        _estimate([
            _result("Bos_taurus", HalalStatus.HALAL, 80.0),
            _result("Equus_caballus", HalalStatus.DOUBTFUL, 15.0),
        ])
    )
    assert verdict.kind is VerdictKind.PASS


def test_custom_threshold():
    engine = VerdictEngine(VerdictPolicy(haram_threshold_pct=5.0))
    verdict = engine.verdict(
        _estimate([
            _result("Bos_taurus", HalalStatus.HALAL, 92.0),
            _result("Sus_scrofa", HalalStatus.HARAM, 3.0),
        ])
    )
    assert verdict.kind is VerdictKind.PASS


@pytest.mark.parametrize(
    "agreement, label",
    [(1.0, "Very High"), (0.95, "Very High"), (0.9, "High"), (0.7, "Moderate"), (0.2, "Low")],
)
def test_confidence_label(agreement, label):
    assert confidence_label(agreement) == label


# --- Species results with the reference database ---


def test_results_list_uses_database_status(engine, database):
    results = [
        _result("Bos_taurus", HalalStatus.UNKNOWN, 90.0),
        _result("Sus_scrofa", HalalStatus.UNKNOWN, 5.0),
    ]
    verdict = engine.verdict(results, database)
    assert verdict.kind is VerdictKind.FAIL
    assert verdict.flagged_species == ("Sus_scrofa",)


def test_results_list_of_halal_species_passes(engine, database):
    results = [
        _result("Bos_taurus", HalalStatus.UNKNOWN, 60.0),
        _result("Gallus_gallus", HalalStatus.UNKNOWN, 40.0),
    ]
    assert engine.verdict(results, database).kind is VerdictKind.PASS


def test_species_missing_from_database_is_unknown(engine, database):
    results = [
        _result("Bos_taurus", HalalStatus.HALAL, 80.0),
        _result("Canis_lupus", HalalStatus.HALAL, 20.0),
    ]
    verdict = engine.verdict(results, database)
    assert verdict.kind is VerdictKind.INCONCLUSIVE
    assert verdict.flagged_species == ("Canis_lupus",)


def test_empty_results_list_is_inconclusive(engine, database):
    verdict = engine.verdict([_result("Bos_taurus", HalalStatus.HALAL, 0.0)], database)
    assert verdict.kind is VerdictKind.INCONCLUSIVE
    assert verdict.reasons == ("No species detected",)
