"""
Error taxonomy for the transcriptome analysis pipeline.

Every error carries the stage at which it occurred plus, where relevant, the
comparison and database it belongs to, so a caller can retry narrowly.
"""

from typing import Any, Optional


class AnalysisError(Exception):
    """Base class for all user-visible analysis errors."""

    def __init__(
        self,
        message: str,
        stage: str,
        comparison: Optional[str] = None,
        database: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message: str = message
        self.stage: str = stage
        self.comparison: Optional[str] = comparison
        self.database: Optional[str] = database
        self.details: dict[str, Any] = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        context = [f"stage={self.stage}"]
        if self.comparison:
            context.append(f"comparison={self.comparison}")
        if self.database:
            context.append(f"database={self.database}")
        return f"{self.message} [{', '.join(context)}]"


class ParseError(AnalysisError):
    """Malformed input file: missing required columns, empty after header."""

    def __init__(self, message: str, stage: str = "parse", **kwargs):
        super().__init__(message, stage, **kwargs)


class NoIdentifiersTranslated(AnalysisError):
    """No gene identifier could be translated to a symbol. Terminal for the dataset."""

    def __init__(self, message: str, stage: str = "identifier_translation", **kwargs):
        super().__init__(message, stage, **kwargs)


class InsufficientReplication(AnalysisError):
    """A condition group has fewer than 2 samples."""

    def __init__(self, message: str, stage: str = "differential_expression", **kwargs):
        super().__init__(message, stage, **kwargs)


class BackendNotReady(AnalysisError):
    """Analysis requested before the statistical backend finished initializing."""

    def __init__(self, message: str, stage: str = "backend", **kwargs):
        super().__init__(message, stage, **kwargs)


class ClusteringFailed(AnalysisError):
    """Clustering could not produce an ordering; callers fall back to input order."""

    def __init__(self, message: str, stage: str = "clustering", **kwargs):
        super().__init__(message, stage, **kwargs)


class EnrichmentFailed(AnalysisError):
    """Gene-set enrichment failed for one database."""

    def __init__(self, message: str, stage: str = "enrichment", **kwargs):
        super().__init__(message, stage, **kwargs)


class ExternalServiceTimeout(AnalysisError):
    """Identifier translation or backend bring-up exceeded its time bound."""

    def __init__(self, message: str, stage: str = "external_service", **kwargs):
        super().__init__(message, stage, **kwargs)


class AnalysisInProgress(AnalysisError):
    """A primary analysis was requested while another one is still running."""

    def __init__(self, message: str, stage: str = "primary_analysis", **kwargs):
        super().__init__(message, stage, **kwargs)
