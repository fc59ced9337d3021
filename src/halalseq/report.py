"""
Per-sample reports and their tabular, JSON and console renderings.
"""

import json
import logging
import pathlib
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd

from .abundance import AbundanceEstimate, SpeciesResult
from .verdict import Verdict, VerdictKind, confidence_label

logger = logging.getLogger(__name__)

# Common food names for the species usually found in halal reference panels.
FRIENDLY_SPECIES_NAMES: Dict[str, str] = {
    "Bos_taurus": "Beef (Cow)",
    "Sus_scrofa": "Pork (Pig)",
    "Ovis_aries": "Lamb (Sheep)",
    "Gallus_gallus": "Chicken",
    "Capra_hircus": "Goat",
    "Equus_caballus": "Horse",
    "Bubalus_bubalis": "Buffalo",
    "Anas_platyrhynchos": "Duck",
    "Cervus_elaphus": "Deer (Venison)",
    "Meleagris_gallopavo": "Turkey",
    "Oryctolagus_cuniculus": "Rabbit",
    "Camelus_dromedarius": "Camel",
    "Canis_lupus": "Dog",
    "Equus_asinus": "Donkey",
}

_VERDICT_TEXT = {
    VerdictKind.PASS: "HALAL - No haram content detected",
    VerdictKind.FAIL: "NOT HALAL - Haram content detected",
    VerdictKind.INCONCLUSIVE: "INCONCLUSIVE - Unable to determine",
}

# Species below this percentage (by weight and by reads) are summarised, not listed.
DEFAULT_MIN_DISPLAY_PCT = 0.1

REPORT_COLUMNS = [
    "species_id",
    "common_name",
    "status",
    "weight_pct",
    "ci_lo",
    "ci_hi",
    "read_pct",
    "read_count",
]


def friendly_species_name(species_id: str) -> str:
    """Food name for a Latin species identifier, or the identifier itself."""
    return FRIENDLY_SPECIES_NAMES.get(species_id, species_id)


def friendly_verdict(kind: VerdictKind) -> str:
    return _VERDICT_TEXT[kind]


def format_pct(value: float) -> str:
    """Percentage for display; traces below 0.1% are shown as '< 0.1%'."""
    if 0.0 < value < 0.1:
        return "< 0.1%"
    return f"{value:.1f}%"


@dataclass(frozen=True)
class Report:
    """Final result for one sample. Owned by the caller once produced."""

    sample_name: str
    verdict: Verdict
    total_reads: int
    unmatched_reads: int
    unmatched_pct: float
    cross_marker_agreement: float
    converged: bool
    iterations: int
    species: Tuple[SpeciesResult, ...] = ()
    marker_reads: Dict[str, int] = field(default_factory=dict)
    subsampled: bool = False
    reads_seen: int = 0
    warnings: Tuple[str, ...] = ()

    @classmethod
    def from_estimate(
        cls,
        sample_name: str,
        estimate: AbundanceEstimate,
        verdict: Verdict,
        subsampled: bool = False,
        reads_seen: Optional[int] = None,
        warnings: Tuple[str, ...] = (),
    ) -> "Report":
        return cls(
            sample_name=sample_name,
            verdict=verdict,
            total_reads=estimate.total_reads,
            unmatched_reads=estimate.total_reads - estimate.matched_reads,
            unmatched_pct=estimate.unmatched_pct,
            cross_marker_agreement=estimate.cross_marker_agreement,
            converged=estimate.converged,
            iterations=estimate.iterations,
            species=tuple(estimate.species),
            marker_reads=dict(estimate.marker_reads),
            subsampled=subsampled,
            reads_seen=estimate.total_reads if reads_seen is None else reads_seen,
            warnings=tuple(estimate.warnings) + tuple(warnings),
        )

    @property
    def reasons(self) -> Tuple[str, ...]:
        return self.verdict.reasons

    @property
    def confidence(self) -> str:
        return confidence_label(self.cross_marker_agreement)

    def get(self, species_id: str) -> Optional[SpeciesResult]:
        for result in self.species:
            if result.species_id == species_id:
                return result
        return None

    def to_frame(self) -> pd.DataFrame:
        """Species rows in report order, indexed by species_id."""
        rows = [
            {
                "species_id": r.species_id,
                "common_name": r.common_name,
                "status": r.status.value,
                "weight_pct": r.weight_pct,
                "ci_lo": r.ci_lo,
                "ci_hi": r.ci_hi,
                "read_pct": r.read_pct,
                "read_count": r.read_count,
            }
            for r in self.species
        ]
        return pd.DataFrame(rows, columns=REPORT_COLUMNS).set_index("species_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sample_name": self.sample_name,
            "verdict": self.verdict.kind.value,
            "reasons": list(self.verdict.reasons),
            "flagged_species": list(self.verdict.flagged_species),
            "total_reads": self.total_reads,
            "reads_seen": self.reads_seen,
            "subsampled": self.subsampled,
            "unmatched_reads": self.unmatched_reads,
            "unmatched_pct": self.unmatched_pct,
            "cross_marker_agreement": self.cross_marker_agreement,
            "confidence": self.confidence,
            "converged": self.converged,
            "iterations": self.iterations,
            "marker_reads": dict(self.marker_reads),
            "warnings": list(self.warnings),
            "species": [
                {
                    "species_id": r.species_id,
                    "common_name": r.common_name,
                    "status": r.status.value,
                    "weight_pct": r.weight_pct,
                    "ci_lo": r.ci_lo,
                    "ci_hi": r.ci_hi,
                    "read_pct": r.read_pct,
                    "read_count": r.read_count,
                }
                for r in self.species
            ],
        }


def write_report(
    report: Report, output_dir: Union[str, pathlib.Path], parameters: Optional[Dict[str, Any]] = None
) -> Tuple[pathlib.Path, pathlib.Path]:
    """
    Writes `<sample>_abundance_report.tsv` and `<sample>_report.json`.

    Args:
        report: The report to write.
        output_dir: Destination directory (created if missing).
        parameters: Optional run parameters stored in the JSON for
            reproducibility.

    Returns:
        Tuple of (TSV path, JSON path).
    """
    output_dir = pathlib.Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    table = report.to_frame()
    unmatched_row = pd.DataFrame(
        [{
            "common_name": "Unmatched",
            "status": "",
            "weight_pct": report.unmatched_pct,
            "ci_lo": report.unmatched_pct,
            "ci_hi": report.unmatched_pct,
            "read_pct": report.unmatched_pct,
            "read_count": report.unmatched_reads,
        }],
        index=pd.Index(["NA"], name="species_id"),
    )
    table = pd.concat([table, unmatched_row])
    tsv_path = output_dir / f"{report.sample_name}_abundance_report.tsv"
    table.to_csv(tsv_path, sep="\t", float_format="%.6f")

    payload = report.to_dict()
    payload["metadata"] = {
        "python_version": sys.version,
        "execution_timestamp": datetime.now().isoformat(),
        "parameters": parameters or {},
    }
    json_path = output_dir / f"{report.sample_name}_report.json"
    with open(json_path, "w") as f:
        json.dump(payload, f, indent=2)

    logger.info(f"Report for {report.sample_name} saved to: {tsv_path}")
    return tsv_path, json_path


def format_report(
    report: Report, top: Optional[int] = None, min_display_pct: float = DEFAULT_MIN_DISPLAY_PCT
) -> str:
    """
    Human-readable summary of a report for the console.

    Species whose weight and read percentages are both below `min_display_pct`
    are left out and counted on a "N more below X% threshold" line.

    Example:
        Sample: sausage_01
        Verdict: NOT HALAL - Haram content detected
        Confidence: High (agreement 0.91)
          Pork (Pig)       Haram      72.4%  [70.1% - 74.8%]
          ...
    """
    lines: List[str] = [
        f"Sample: {report.sample_name}",
        f"Verdict: {friendly_verdict(report.verdict.kind)}",
        f"Confidence: {report.confidence} (agreement {report.cross_marker_agreement:.2f})",
        f"Reads: {report.total_reads:,} analysed"
        + (f" (subsampled from {report.reads_seen:,})" if report.subsampled else "")
        + f", {format_pct(report.unmatched_pct)} unmatched",
    ]
    hidden = [
        r for r in report.species
        if r.weight_pct < min_display_pct and r.read_pct < min_display_pct
        and (r.weight_pct > 0 or r.read_pct > 0)
    ]
    detected = [
        r for r in report.species
        if (r.weight_pct > 0 or r.read_pct > 0)
        and not (r.weight_pct < min_display_pct and r.read_pct < min_display_pct)
    ]
    if top is not None:
        detected = detected[:top]
    if not detected and not hidden:
        lines.append("  No species detected.")
    width = max((len(friendly_species_name(r.species_id)) for r in detected), default=0)
    for r in detected:
        lines.append(
            f"  {friendly_species_name(r.species_id):<{width}}  {r.status.label:<9} "
            f"{format_pct(r.weight_pct):>7}  [{format_pct(r.ci_lo)} - {format_pct(r.ci_hi)}]"
        )
    if hidden:
        lines.append(f"  {len(hidden)} more below {min_display_pct:.1f}% threshold")
    for reason in report.verdict.reasons:
        lines.append(f"  - {reason}")
    if not report.converged:
        lines.append("  Note: abundance estimate did not converge.")
    return "\n".join(lines)
