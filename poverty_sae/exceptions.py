"""
Error taxonomy for the poverty small-area estimation pipeline.

Schema and parse errors abort a run before any modeling. Domain errors raised
by the scalar helpers are caught per row by the preparation stages and turned
into recorded issues. Join mismatches are only counted unless strict joining
is switched on.
"""

from typing import Optional


class SAEError(Exception):
    """Base class for all pipeline errors."""


class SchemaError(SAEError):
    """An expected column is missing or the table shape is unusable."""


class ParseError(SAEError):
    """A field could not be parsed into the required type."""


class DomainError(SAEError):
    """A derived value is undefined for the given inputs (e.g. division by zero)."""


class JoinMismatch(SAEError):
    """A county is present in only one of the two sources."""


class ConfigError(SAEError):
    """Invalid configuration or model method parameters."""


class PipelineStageError(SAEError):
    """
    A fatal failure inside a named pipeline stage.

    Args:
        stage: Name of the stage that failed
        cause: Underlying error
    """

    def __init__(self, stage: str, cause: Optional[BaseException] = None):
        self.stage = stage
        self.cause = cause
        message = f"Stage '{stage}' failed"
        if cause is not None:
            message += f": {type(cause).__name__}: {cause}"
        super().__init__(message)
