"""
Exception and warning hierarchy for halalseq.

Fatal conditions are exceptions; conditions that only lower confidence in a
result are warnings that the pipeline logs and attaches to the abundance
estimate and report of the affected sample.
"""

from typing import Any, Dict, Optional


class HalalSeqError(Exception):
    """Base exception for all halalseq errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception with message and optional details.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional context
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


# Reference data exceptions
class IndexLoadError(HalalSeqError):
    """Index file is missing, truncated, corrupt or of an unsupported version."""
    pass


class DatabaseLoadError(IndexLoadError):
    """Reference database section could not be read."""
    pass


# Input exceptions
class InvalidSampleError(HalalSeqError):
    """A sample was constructed with an invalid file list."""
    pass


class FileReadError(HalalSeqError):
    """A sample file is unreadable, malformed, truncated or fails to decompress."""

    def __init__(
        self,
        message: str,
        sample: Optional[str] = None,
        path: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        if sample is not None:
            merged["sample"] = sample
        if path is not None:
            merged["file"] = path
        super().__init__(message, merged)
        self.sample = sample
        self.path = path


# Pipeline exceptions
class PipelineError(HalalSeqError):
    """Base exception for pipeline control errors."""
    pass


class PipelineBusyError(PipelineError):
    """A run was requested while another run is still active."""
    pass


class IllegalTransitionError(PipelineError):
    """The pipeline was asked to move between two states that are not linked."""
    pass


# Non-fatal conditions
class HalalSeqWarning(UserWarning):
    """Base class for conditions that lower confidence but do not stop a run."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class MemoryBudgetExceeded(HalalSeqWarning):
    """Estimated RAM for a sample exceeds the configured budget."""
    pass


class EstimatorNonConvergence(HalalSeqWarning):
    """Abundance reconciliation hit its iteration budget before converging."""
    pass
