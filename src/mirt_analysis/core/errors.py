"""
Error and warning taxonomy for the estimation engine.

Exceptions stop a computation before it starts (bad input, incompatible
configuration, missing information matrix). Warnings never abort: the
affected result is still returned and the condition is also recorded as a
flag on the returned object.
"""


class MirtError(Exception):
    """Base class for all errors raised by mirt_analysis."""


class InputError(MirtError, ValueError):
    """Malformed response data or an unsatisfiable model specification."""


class ConfigurationError(MirtError, ValueError):
    """Estimation options that cannot be combined or are out of range."""


class InformationMatrixNotComputedError(MirtError, RuntimeError):
    """A consumer needs an information matrix the fit did not produce."""

    def __init__(self, consumer: str) -> None:
        self.consumer = consumer
        super().__init__(
            f"{consumer} requires an information matrix; refit with se=True"
        )


class ConvergenceWarning(UserWarning):
    """Estimation stopped without meeting its convergence criterion."""


class IdentifiabilityWarning(UserWarning):
    """Information matrix is not positive definite or nearly singular."""


class NumericDegeneracyWarning(UserWarning):
    """Per-respondent or per-item estimates sit on a numerical boundary."""
