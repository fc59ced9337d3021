"""
Halal verdict from calibrated abundances.

A sample fails when any haram species exceeds the policy threshold. Otherwise
it passes only when the evidence is strong enough; weak evidence (few or
mostly unassigned reads, markers that disagree, a non-converged estimate, a
doubtful species) makes it inconclusive rather than a pass.
"""

import enum
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from .abundance import AbundanceEstimate, SpeciesResult
from .config import VerdictPolicy
from .database import HalalStatus, ReferenceDatabase
from .genomic_types import SpeciesId

logger = logging.getLogger(__name__)


class VerdictKind(str, enum.Enum):
    PASS = "pass"
    FAIL = "fail"
    INCONCLUSIVE = "inconclusive"


@dataclass(frozen=True)
class Verdict:
    """
    Outcome of the verdict rules for one sample.

    Attributes:
        kind: PASS, FAIL or INCONCLUSIVE.
        reasons: Human-readable explanations, most important first.
        flagged_species: Species that caused a FAIL or an INCONCLUSIVE.
    """

    kind: VerdictKind
    reasons: Tuple[str, ...] = ()
    flagged_species: Tuple[SpeciesId, ...] = ()

    @property
    def passed(self) -> bool:
        return self.kind is VerdictKind.PASS


def confidence_label(agreement: float) -> str:
    """Maps cross-marker agreement to a confidence label."""
    if agreement >= 0.95:
        return "Very High"
    if agreement >= 0.85:
        return "High"
    if agreement >= 0.70:
        return "Moderate"
    return "Low"


class VerdictEngine:
    """Applies a VerdictPolicy to the calibrated abundances of one sample."""

    def __init__(self, policy: Optional[VerdictPolicy] = None) -> None:
        self.policy = policy or VerdictPolicy()

    def verdict(
        self,
        results: Union[AbundanceEstimate, Sequence[SpeciesResult]],
        database: Optional[ReferenceDatabase] = None,
    ) -> Verdict:
        """
        Derives the verdict of one sample.

        Rules, in order:
            1. FAIL if any haram species has weight_pct above the threshold.
            2. INCONCLUSIVE if there are no reads, too few or too small a
               share of classified reads, the estimate did not converge, the
               markers disagree, or (when the policy says so) a doubtful or
               unknown species is above the threshold.
            3. PASS otherwise.

        The read-level checks of rule 2 need an AbundanceEstimate; given only
        a list of species results, a sample without any detected species is
        inconclusive.

        Args:
            results: An AbundanceEstimate, or its per-species results.
            database: When given, halal status is looked up here instead of
                taken from the results; species missing from it count as
                UNKNOWN.

        Returns:
            The Verdict with its reasons.
        """
        policy = self.policy
        threshold = policy.haram_threshold_pct
        if isinstance(results, AbundanceEstimate):
            estimate: Optional[AbundanceEstimate] = results
            species = list(results.species)
        else:
            estimate = None
            species = list(results)
        statuses = {r.species_id: self._status_of(r, database) for r in species}

        haram = [
            r for r in species
            if statuses[r.species_id] is HalalStatus.HARAM and r.weight_pct > threshold
        ]
        if haram:
            reasons = tuple(
                f"{r.common_name} ({r.species_id}) detected at {r.weight_pct:.2f}% "
                f"(threshold {threshold:g}%)"
                for r in haram
            )
            return Verdict(VerdictKind.FAIL, reasons, tuple(r.species_id for r in haram))

        reasons: List[str] = []
        flagged: List[SpeciesId] = []
        if estimate is None:
            if not any(r.weight_pct > 0 for r in species):
                reasons.append("No species detected")
        else:
            reasons.extend(self._evidence_problems(estimate))

        if policy.doubtful_is_inconclusive:
            for r in species:
                status = statuses[r.species_id]
                if status in (HalalStatus.DOUBTFUL, HalalStatus.UNKNOWN) and r.weight_pct > threshold:
                    reasons.append(
                        f"{r.common_name} ({r.species_id}) has {status.label.lower()} "
                        f"status and is present at {r.weight_pct:.2f}%"
                    )
                    flagged.append(r.species_id)

        if reasons:
            logger.debug(f"Inconclusive verdict: {'; '.join(reasons)}")
            return Verdict(VerdictKind.INCONCLUSIVE, tuple(reasons), tuple(flagged))
        return Verdict(VerdictKind.PASS, ("No haram species above threshold",))

    @staticmethod
    def _status_of(result: SpeciesResult, database: Optional[ReferenceDatabase]) -> HalalStatus:
        if database is None:
            return result.status
        try:
            return database.get_species(result.species_id).status
        except KeyError:
            return HalalStatus.UNKNOWN

    def _evidence_problems(self, estimate: AbundanceEstimate) -> List[str]:
        policy = self.policy
        if estimate.total_reads == 0:
            return ["No reads in sample"]
        problems: List[str] = []
        if estimate.classified_fraction < policy.min_classified_fraction:
            problems.append(
                f"Only {estimate.classified_fraction:.1%} of reads classified "
                f"(minimum {policy.min_classified_fraction:.0%})"
            )
        if estimate.matched_reads < policy.min_classified_reads:
            problems.append(
                f"Only {estimate.matched_reads} classified reads "
                f"(minimum {policy.min_classified_reads})"
            )
        if not estimate.converged:
            problems.append(
                f"Abundance estimate did not converge after {estimate.iterations} iterations"
            )
        if estimate.matched_reads and estimate.cross_marker_agreement < policy.min_agreement:
            problems.append(
                f"Low cross-marker agreement ({estimate.cross_marker_agreement:.2f} "
                f"< {policy.min_agreement:.2f})"
            )
        return problems
