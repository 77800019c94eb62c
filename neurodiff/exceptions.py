"""
Exception hierarchy for neurodiff
"""

from typing import Optional


class NeuroDiffError(Exception):
    """Base class for all neurodiff errors"""


class InputValidationError(NeuroDiffError):
    """Malformed dataset, design or parameters"""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        if field:
            message = f"{message} (field: {field})"
        super().__init__(message)


class ModelFitError(NeuroDiffError):
    """A statistical model that gates the run could not be fitted"""


class EnrichmentServiceError(NeuroDiffError):
    """Enrichment lookup failed (network, service or malformed response)"""

    def __init__(self, message: str, database: Optional[str] = None):
        self.database = database
        if database:
            message = f"{database}: {message}"
        super().__init__(message)


class PipelineError(NeuroDiffError):
    """Fatal error raised by a pipeline stage"""

    def __init__(self, stage: str, cause: Exception):
        self.stage = stage
        self.cause = cause
        super().__init__(f"Stage '{stage}' failed: {cause}")
