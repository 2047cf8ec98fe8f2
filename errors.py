"""
errors.py - Failure taxonomy for the ingestion pipeline.

StructuralError means the uploaded file is bad (re-export it).
PipelineDefect means our own arithmetic or mapping went wrong.
Row-level noise is never raised; it is counted and skipped.
"""


class IngestionError(Exception):
    """Base class. Carries the file being processed and the expectation it broke."""

    kind = "ingestion_error"

    def __init__(self, message, path=None, expectation=None):
        super().__init__(message)
        self.message = message
        self.path = str(path) if path else None
        self.expectation = expectation

    def to_dict(self):
        return {
            "error": self.kind,
            "message": self.message,
            "file": self.path,
            "expectation": self.expectation,
        }

    def __str__(self):
        if self.path:
            return f"{self.message} ({self.path})"
        return self.message


# ── Bad input files ─────────────────────────────────────────────────────────

class StructuralError(IngestionError):
    kind = "structural_error"


class UnrecognizedFormat(StructuralError):
    kind = "unrecognized_format"


class MissingColumnsError(StructuralError):
    kind = "missing_columns"


class EmptyBatchError(StructuralError):
    kind = "empty_batch"


# ── Pipeline bugs ───────────────────────────────────────────────────────────

class PipelineDefect(IngestionError):
    kind = "pipeline_defect"


class WeekWindowError(PipelineDefect):
    kind = "invalid_week_window"


class ZeroRevenueError(PipelineDefect):
    kind = "zero_revenue"
