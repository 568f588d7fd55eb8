"""
return_purchase/errors.py

Error taxonomy for the pipeline. Every error carries an optional `stage`
which the orchestrator fills in before the run aborts.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for every fatal pipeline error."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage

    def __str__(self):
        msg = super().__str__()
        if self.stage:
            return f"[{self.stage}] {msg}"
        return msg


class ConfigurationError(PipelineError):
    """Invalid run configuration (windows, feature columns, thresholds)."""


class SchemaMismatchError(PipelineError):
    """Scoring input does not have the feature schema the model was trained on."""


class DataQualityError(PipelineError):
    """Structural data problem that the default table cannot recover from.

    Recoverable data-quality issues are nulls in the columns listed in
    config.SESSION_DEFAULTS: apply_session_defaults fills those and logs a
    count per column without raising. Everything else (a missing required
    column, an unparseable date or flag, a non-numeric count, a duplicated
    feature row) raises this error and aborts the run.
    """


class UndefinedMetricError(PipelineError):
    """Metric requested on data where it has no defined value."""


class EmptyPartitionError(PipelineError):
    """A date window selected zero sessions."""


class TrainingDataError(PipelineError):
    """Train partition cannot fit a binary classifier (single class)."""
