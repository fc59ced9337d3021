"""
Run configuration for halalseq.

All policy constants of the analysis (acceptance threshold, verdict
thresholds, subsample cap, bootstrap settings) live here so they can be set
from a config file or the command line instead of being hard-coded.
"""

import json
import pathlib
import tomllib
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# DEFAULT_SUBSAMPLE_CAP: Maximum number of reads kept per sample when
# subsampling is enabled. Reservoir sampling keeps the retained set uniform.
DEFAULT_SUBSAMPLE_CAP = 500_000

# DEFAULT_ACCEPTANCE_THRESHOLD: Minimum fraction of a read's k-mers that must be
# confirmed by the fine set of the winning (species, marker) bucket.
DEFAULT_ACCEPTANCE_THRESHOLD = 0.5

# DEFAULT_CHUNK_SIZE: Reads handed to a worker process at a time.
DEFAULT_CHUNK_SIZE = 5000


class VerdictPolicy(BaseModel):
    """Thresholds used by the VerdictEngine. Policy, not derived from data."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    haram_threshold_pct: float = Field(
        default=1.0,
        ge=0.0,
        le=100.0,
        description="Haram species above this weight percentage fail the sample.",
    )
    min_classified_fraction: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Minimum share of reads that must be classified for a PASS.",
    )
    min_classified_reads: int = Field(
        default=10, ge=0, description="Minimum number of classified reads for a PASS."
    )
    min_agreement: float = Field(
        default=0.70,
        ge=0.0,
        le=1.0,
        description="Minimum cross-marker agreement for a PASS.",
    )
    doubtful_is_inconclusive: bool = Field(
        default=True,
        description="Doubtful or unknown species above the threshold make the sample inconclusive.",
    )


class AnalysisConfig(BaseModel):
    """Pydantic model holding every tunable of an analysis run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    acceptance_threshold: float = Field(
        default=DEFAULT_ACCEPTANCE_THRESHOLD,
        gt=0.0,
        le=1.0,
        description="Minimum confirmed k-mer fraction for a read to be assigned.",
    )
    subsample: bool = Field(
        default=False, description="Cap each sample with reservoir sampling."
    )
    subsample_cap: int = Field(
        default=DEFAULT_SUBSAMPLE_CAP, gt=0, description="Reads kept per sample when subsampling."
    )
    subsample_seed: int = Field(default=20240101, description="Seed for reservoir sampling.")
    bootstrap_resamples: int = Field(
        default=1000, ge=0, description="Number of bootstrap draws for confidence intervals."
    )
    confidence_level: float = Field(
        default=0.95, gt=0.0, lt=1.0, description="Two-sided confidence level."
    )
    bootstrap_seed: int = Field(default=42, description="Seed for bootstrap resampling.")
    max_iterations: int = Field(
        default=500, gt=0, description="Iteration budget of the abundance reconciliation."
    )
    convergence_epsilon: float = Field(
        default=1e-6, gt=0.0, description="Largest per-species change accepted as converged."
    )
    workers: int = Field(default=1, ge=1, description="Processes used to classify reads.")
    chunk_size: int = Field(
        default=DEFAULT_CHUNK_SIZE, gt=0, description="Reads per worker chunk."
    )
    memory_budget_mb: float = Field(
        default=1024.0, gt=0.0, description="RAM above which a sample triggers a warning."
    )
    continue_on_file_error: bool = Field(
        default=False,
        description="Record unreadable samples and keep going instead of stopping the run.",
    )
    verdict: VerdictPolicy = Field(default_factory=VerdictPolicy)

    @field_validator("bootstrap_resamples")
    @classmethod
    def validate_resamples(cls, v: int) -> int:
        """A non-zero resample count below 10 gives meaningless percentiles."""
        if 0 < v < 10:
            raise ValueError("bootstrap_resamples must be 0 (disabled) or at least 10.")
        return v

    @classmethod
    def from_file(cls, path: Union[str, pathlib.Path]) -> "AnalysisConfig":
        """
        Loads a configuration from a JSON or TOML file.

        TOML files may keep the settings at the top level or under an
        ``[analysis]`` table.

        Args:
            path: Path to a ``.json`` or ``.toml`` file.

        Returns:
            The validated configuration.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the extension is not supported or validation fails.
        """
        path = pathlib.Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Config file not found: {path}")

        suffix = path.suffix.lower()
        data: Dict[str, Any]
        if suffix == ".json":
            data = json.loads(path.read_text())
        elif suffix == ".toml":
            with path.open("rb") as fh:
                data = tomllib.load(fh)
            data = data.get("analysis", data)
        else:
            raise ValueError(f"Unsupported config format '{suffix}' (use .json or .toml)")
        return cls.model_validate(data)

    def with_overrides(self, **overrides: Optional[Any]) -> "AnalysisConfig":
        """Returns a copy with the non-None overrides applied and re-validated."""
        values = self.model_dump()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return AnalysisConfig.model_validate(values)
