"""
Error Taxonomy for the Mutation Mapping Pipeline

Per-chromosome problems (DataAbsence, InsufficientSample,
ExternalToolFailure) are caught where a stage merges its per-chromosome
results and recorded on the pipeline state; the run continues for the
other chromosomes. ConfigurationError and NoUsableData abort the run.
"""


class MappingError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(MappingError):
    """Missing input files, invalid pool definitions or bad settings."""


class DataAbsence(MappingError):
    """A chromosome has no qualifying positions or peaks."""


class InsufficientSample(MappingError):
    """Too few points for regression or permutation statistics."""


class ExternalToolFailure(MappingError):
    """An external collaborator failed or returned malformed output."""


class NoUsableData(MappingError):
    """No chromosome produced any data."""


# Issue kinds recorded on the pipeline state
ISSUE_KINDS = {
    DataAbsence: "data_absence",
    InsufficientSample: "insufficient_sample",
    ExternalToolFailure: "external_tool_failure",
}


def issue_kind(error: Exception) -> str:
    """
    Map an exception to the issue kind used in the run summary.

    Examples:
        >>> issue_kind(DataAbsence("chr5"))
        'data_absence'
        >>> issue_kind(RuntimeError("boom"))
        'error'
    """
    for error_type, kind in ISSUE_KINDS.items():
        if isinstance(error, error_type):
            return kind
    return "error"
