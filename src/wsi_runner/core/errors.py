"""
Run Errors
==========

Exception hierarchy for a single model run or a single stored result set.

Every error raised while resolving an engine, building a pipeline or
reloading results derives from :class:`RunnerError`. The process manager and
the result store catch :class:`RunnerError` at the boundary of one run (or
one result set) and log it, so a failure never aborts a whole project.

Classes
-------
RunnerError
    Base class
ConfigurationError
    Missing or malformed model metadata, unsupported problem/resolution pair
ResolutionError
    No (backend, format) pair is available for a model
FormatMismatchError
    A backend is asked to consume a format or post-processing it cannot handle
ArtifactIOError
    Missing or unreadable side file (anchors, attributes, payload)
AnchorFileError
    Anchor file missing or with the wrong number of entries
AttributeParseError
    Malformed ``Attribute`` line in ``attributes.txt``
ArithmeticDegenerateError
    Computed pyramid level is invalid
BackendUnavailableError
    The runtime library for a backend cannot be imported or opened
"""


class RunnerError(Exception):
    """Base class for all errors raised by a model run."""


class ConfigurationError(RunnerError):
    """
    Model metadata could not be turned into a usable configuration.

    Parameters
    ----------
    message : str
        Human-readable summary
    report : ValidationReport, optional
        Aggregated per-field errors, when the error comes from validation
    """

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report


class ResolutionError(RunnerError):
    """No installed backend can consume any format shipped with the model."""


class FormatMismatchError(RunnerError):
    """A backend was paired with a format or post-processing it cannot serve."""


class ArtifactIOError(RunnerError, OSError):
    """A required file next to a model or a stored result is missing or unreadable."""


class AnchorFileError(ArtifactIOError):
    """The detector anchor file is missing or does not hold 2x3 anchor pairs."""


class AttributeParseError(ArtifactIOError):
    """An ``attributes.txt`` line could not be applied to a renderer."""


class ArithmeticDegenerateError(RunnerError, ArithmeticError):
    """A computed pyramid level is negative or otherwise out of range."""


class BackendUnavailableError(RunnerError):
    """The Python runtime behind a backend is not importable."""
