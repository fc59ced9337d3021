"""
Calibrated abundance estimation from per-bucket read counts.

Raw read fractions are biased: species differ in mitochondrial copy number
and markers differ in amplification efficiency. The estimator reconciles the
per-marker fractions into one abundance vector, corrects for copy number,
and attaches bootstrap confidence intervals.

Reconciliation, for each sample (vectorised over bootstrap draws):

1. Per-marker raw fractions F[s, m] = C[s, m] / N[m].
2. Marker weights w[m] = share[m] * bias[m], normalised, where share[m] is
   the marker's share of classified reads and bias[m] its estimated
   amplification-bias coefficient (initially 1).
3. Abundance a[s] ∝ Σ_m w[m] F[s, m] / copy_number[s], renormalised.
4. Each marker's bias coefficient is re-estimated from how far its observed
   fractions lie from the consensus expected fractions
   a[s] * copy_number[s] (total variation distance): markers that disagree
   with the consensus lose weight.
5. Repeat 2-4 until no species changes by more than epsilon, or the
   iteration budget runs out (the last iterate is kept and flagged).
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import numpy.typing as npt

from .classify import ClassificationCounts
from .database import HalalStatus, ReferenceDatabase
from .exceptions import EstimatorNonConvergence
from .genomic_types import SpeciesId

logger = logging.getLogger(__name__)

# Added to the marker distance before inverting it into a bias coefficient;
# bounds the weight of a marker that matches the consensus exactly.
BIAS_FLOOR = 0.05


@dataclass(frozen=True)
class SpeciesResult:
    """Calibrated result for one species. Percentages are of all reads."""

    species_id: SpeciesId
    common_name: str
    status: HalalStatus
    weight_pct: float
    read_pct: float
    ci_lo: float
    ci_hi: float
    read_count: int = 0


@dataclass(frozen=True)
class Reconciliation:
    """Output of `reconcile` for a batch of count matrices."""

    abundance: npt.NDArray[np.float64]  # (batch, species), rows sum to 1 or 0
    bias: npt.NDArray[np.float64]  # (batch, markers)
    converged: npt.NDArray[np.bool_]  # (batch,)
    iterations: int


@dataclass(frozen=True)
class AbundanceEstimate:
    """Everything the estimator derives for one sample."""

    species: List[SpeciesResult]
    total_reads: int
    matched_reads: int
    unmatched_pct: float
    cross_marker_agreement: float
    converged: bool
    iterations: int
    marker_reads: Dict[str, int] = field(default_factory=dict)
    marker_bias: Dict[str, float] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    @property
    def classified_fraction(self) -> float:
        return self.matched_reads / self.total_reads if self.total_reads else 0.0

    def get(self, species_id: SpeciesId) -> Optional[SpeciesResult]:
        for result in self.species:
            if result.species_id == species_id:
                return result
        return None


def _safe(denominator: np.ndarray) -> np.ndarray:
    return np.where(denominator > 0, denominator, 1.0)


def _combine(
    fractions: np.ndarray, weights: np.ndarray, copy_numbers: np.ndarray
) -> np.ndarray:
    """Weighted, copy-number corrected, renormalised abundance (batch x species)."""
    raw = (fractions * weights[:, None, :]).sum(axis=2) / copy_numbers[None, :]
    return raw / _safe(raw.sum(axis=1, keepdims=True))


def reconcile(
    counts: np.ndarray,
    copy_numbers: np.ndarray,
    max_iterations: int = 500,
    epsilon: float = 1e-6,
) -> Reconciliation:
    """
    Reconciles per-marker counts into copy-number corrected abundances.

    Args:
        counts: (species x markers) or (batch x species x markers) read counts.
        copy_numbers: Mitochondrial copy number per species (all > 0).
        max_iterations: Iteration budget.
        epsilon: Convergence threshold on the largest per-species change.

    Returns:
        A Reconciliation with a leading batch axis (size 1 for 2-D input).
    """
    C = np.asarray(counts, dtype=np.float64)
    if C.ndim == 2:
        C = C[None, :, :]
    if C.ndim != 3:
        raise ValueError("counts must be 2- or 3-dimensional.")
    cn = np.asarray(copy_numbers, dtype=np.float64)
    if cn.shape != (C.shape[1],) or (cn <= 0).any():
        raise ValueError("copy_numbers must hold one positive value per species.")

    marker_totals = C.sum(axis=1)  # (B, M)
    fractions = C / _safe(marker_totals)[:, None, :]
    share = marker_totals / _safe(marker_totals.sum(axis=1, keepdims=True))
    has_reads = marker_totals.sum(axis=1) > 0

    bias = np.ones_like(share)
    abundance = _combine(fractions, share, cn)
    converged = ~has_reads
    iterations = 0

    for iteration in range(1, max_iterations + 1):
        expected = abundance * cn[None, :]
        expected = expected / _safe(expected.sum(axis=1, keepdims=True))
        distance = 0.5 * np.abs(fractions - expected[:, :, None]).sum(axis=1)
        bias = 1.0 / (distance + BIAS_FLOOR)

        weights = share * bias
        weights = weights / _safe(weights.sum(axis=1, keepdims=True))
        updated = _combine(fractions, weights, cn)

        delta = np.abs(updated - abundance).max(axis=1)
        abundance = updated
        iterations = iteration
        converged = converged | (delta < epsilon)
        if converged.all():
            break

    # Report bias relative to the read-weighted mean of markers that have reads.
    mean_bias = (bias * share).sum(axis=1, keepdims=True)
    bias = np.where(share > 0, bias / _safe(mean_bias), 0.0)
    return Reconciliation(abundance=abundance, bias=bias, converged=converged, iterations=iterations)


def cross_marker_agreement(
    counts: np.ndarray, copy_numbers: np.ndarray, min_marker_reads: int = 1
) -> float:
    """
    Mean pairwise cosine similarity of per-marker abundance vectors.

    Each marker with at least `min_marker_reads` classified reads gives an
    independent, copy-number corrected abundance vector. Returns 1.0 when a
    single marker is informative (nothing to disagree with) and 0.0 when none
    is.
    """
    C = np.asarray(counts, dtype=np.float64)
    cn = np.asarray(copy_numbers, dtype=np.float64)
    informative = np.flatnonzero(C.sum(axis=0) >= max(min_marker_reads, 1))
    if informative.size == 0:
        return 0.0
    if informative.size == 1:
        return 1.0

    vectors = C[:, informative] / cn[:, None]
    vectors = vectors / np.linalg.norm(vectors, axis=0, keepdims=True)
    similarity = vectors.T @ vectors
    upper = np.triu_indices(informative.size, k=1)
    return float(np.clip(similarity[upper].mean(), 0.0, 1.0))


class AbundanceEstimator:
    """
    Turns ClassificationCounts into calibrated SpeciesResults.

    Args:
        bootstrap_resamples: Number of multinomial resamples for the
            confidence intervals (0 disables them; intervals collapse onto
            the point estimate).
        confidence_level: Two-sided level of the percentile interval.
        max_iterations: Reconciliation iteration budget.
        epsilon: Reconciliation convergence threshold.
        seed: Seed of the bootstrap generator; equal seeds give equal results.
    """

    def __init__(
        self,
        bootstrap_resamples: int = 1000,
        confidence_level: float = 0.95,
        max_iterations: int = 500,
        epsilon: float = 1e-6,
        seed: Optional[int] = 42,
    ) -> None:
        if bootstrap_resamples < 0:
            raise ValueError("bootstrap_resamples must be non-negative.")
        if not 0.0 < confidence_level < 1.0:
            raise ValueError("confidence_level must be in (0, 1).")
        self.bootstrap_resamples = bootstrap_resamples
        self.confidence_level = confidence_level
        self.max_iterations = max_iterations
        self.epsilon = epsilon
        self.seed = seed

    def estimate(
        self, counts: ClassificationCounts, database: ReferenceDatabase
    ) -> AbundanceEstimate:
        """
        Estimates calibrated weight percentages with confidence intervals.

        Weight percentages are expressed over all reads: the calibrated
        species shares are scaled by the classified fraction, so species plus
        the unmatched percentage add up to 100.

        Args:
            counts: Finalised per-bucket counts of one sample.
            database: Reference database (species order, copy numbers, names).

        Returns:
            An AbundanceEstimate with species ordered by weight, descending.
        """
        if counts.shape != (database.num_species, database.num_markers):
            raise ValueError(
                f"Counts shape {counts.shape} does not match database "
                f"({database.num_species} species x {database.num_markers} markers)"
            )
        copy_numbers = np.array([s.mito_copy_number for s in database.species])
        total = counts.total
        matched = counts.matched
        warnings: List[str] = []

        point = reconcile(counts.counts, copy_numbers, self.max_iterations, self.epsilon)
        converged = bool(point.converged[0])
        if not converged:
            warning = EstimatorNonConvergence(
                f"Abundance reconciliation did not converge in {self.max_iterations} iterations",
                {"iterations": point.iterations},
            )
            logger.warning(str(warning))
            warnings.append(str(warning))

        matched_share = matched / total if total else 0.0
        weight_pct = point.abundance[0] * matched_share * 100.0
        read_pct = counts.species_totals() / total * 100.0 if total else np.zeros(database.num_species)
        unmatched_pct = counts.unmatched / total * 100.0 if total else 100.0

        ci_lo, ci_hi = self._bootstrap(counts, copy_numbers, weight_pct)
        agreement = cross_marker_agreement(counts.counts, copy_numbers)

        species_totals = counts.species_totals()
        results = [
            SpeciesResult(
                species_id=species.species_id,
                common_name=species.common_name,
                status=species.status,
                weight_pct=float(weight_pct[i]),
                read_pct=float(read_pct[i]),
                ci_lo=float(ci_lo[i]),
                ci_hi=float(ci_hi[i]),
                read_count=int(species_totals[i]),
            )
            for i, species in enumerate(database.species)
        ]
        # Stable sort keeps database order among equal weights.
        results.sort(key=lambda r: r.weight_pct, reverse=True)

        marker_totals = counts.per_marker_totals()
        estimate = AbundanceEstimate(
            species=results,
            total_reads=total,
            matched_reads=matched,
            unmatched_pct=float(unmatched_pct),
            cross_marker_agreement=agreement,
            converged=converged,
            iterations=point.iterations,
            marker_reads={m.marker_id: int(marker_totals[j]) for j, m in enumerate(database.markers)},
            marker_bias={m.marker_id: float(point.bias[0, j]) for j, m in enumerate(database.markers)},
            warnings=tuple(warnings),
        )
        logger.debug(
            f"Estimated abundances: {matched}/{total} reads classified, agreement "
            f"{agreement:.3f}, {point.iterations} iterations, converged={converged}"
        )
        return estimate

    def _bootstrap(
        self,
        counts: ClassificationCounts,
        copy_numbers: np.ndarray,
        point_pct: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Percentile intervals from multinomial resampling of every bucket."""
        total = counts.total
        if self.bootstrap_resamples == 0 or total == 0:
            return point_pct.copy(), point_pct.copy()

        num_species, num_markers = counts.shape
        buckets = np.append(counts.counts.ravel(), counts.unmatched).astype(np.float64)
        rng = np.random.default_rng(self.seed)
        draws = rng.multinomial(total, buckets / total, size=self.bootstrap_resamples)
        resampled = draws[:, :-1].reshape(self.bootstrap_resamples, num_species, num_markers)

        rec = reconcile(resampled, copy_numbers, self.max_iterations, self.epsilon)
        matched_share = resampled.sum(axis=(1, 2)) / total
        pct = rec.abundance * matched_share[:, None] * 100.0

        alpha = (1.0 - self.confidence_level) / 2.0
        lo = np.percentile(pct, alpha * 100.0, axis=0)
        hi = np.percentile(pct, (1.0 - alpha) * 100.0, axis=0)
        # Percentile bounds can exclude the point estimate for skewed,
        # near-zero species; the interval always contains it.
        return np.minimum(lo, point_pct), np.maximum(hi, point_pct)
