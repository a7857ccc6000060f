"""
Exception hierarchy for pymixed.

All exceptions inherit from PyMixedError to allow catching any
library-specific error. Domain-specific exceptions should inherit from
the appropriate base class here.

Design principles:
    - Exceptions carry diagnostic information as attributes
    - Error messages are actionable with actual vs expected values
    - Never catch and re-raise with less information

Two families of failure exist:
    - Structural errors (ValidationError and subclasses) are raised before
      any computation begins and always propagate to the caller.
    - Numerical errors (NumericalError and subclasses) occur at trial points
      inside an optimization. The optimizer absorbs them and converts them
      into objective penalties; they only reach the caller from direct,
      single-shot calls such as LinearMixedModel.objective().
"""


class PyMixedError(Exception):
    """Base exception for all pymixed errors."""
    pass


class ValidationError(PyMixedError, ValueError):
    """
    Input validation failed.

    Raised when user-provided inputs or options fail validation checks.
    """
    pass


class DimensionMismatch(ValidationError):
    """
    Array dimensions are incorrect or inconsistent.

    Raised when the row counts of X, the random-effects design matrices,
    the response and the weights disagree, or when an array has the
    wrong number of dimensions.
    """
    pass


class InvalidParameter(ValidationError):
    """
    A covariance parameter vector (or option value) is malformed.

    Attributes:
        expected: Expected length or constraint description
        actual: What was supplied
    """

    def __init__(
        self,
        message: str,
        expected: object | None = None,
        actual: object | None = None,
    ):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class NumericalError(PyMixedError):
    """
    Numerical computation failed.

    Base class for errors arising from numerical issues during computation.
    """
    pass


class NonPositiveDefinite(NumericalError):
    """
    A diagonal block of the scaled system is not positive definite.

    Raised by the blocked Cholesky factorizer. Can occur transiently at
    infeasible trial values of θ.

    Attributes:
        block: Index of the block column being factored
        matrix_name: Name/description of the problematic block
    """

    def __init__(
        self,
        message: str,
        block: int | None = None,
        matrix_name: str | None = None,
    ):
        super().__init__(message)
        self.block = block
        self.matrix_name = matrix_name


class PIRLSDivergence(NumericalError):
    """
    The penalized iteratively reweighted least squares loop diverged.

    Attributes:
        iterations: Number of PIRLS iterations completed
        reason: Why PIRLS failed (e.g. 'nonfinite_weights', 'step_halving')
    """

    def __init__(
        self,
        message: str,
        iterations: int = 0,
        reason: str | None = None,
    ):
        super().__init__(message)
        self.iterations = iterations
        self.reason = reason


class BootstrapSampleFailure(NumericalError):
    """
    One parametric-bootstrap refit failed.

    Never propagated out of the bootstrap driver; instances are recorded
    per sample and excluded from downstream summaries.

    Attributes:
        sample: Index of the bootstrap sample
        reason: Description of the underlying failure
    """

    def __init__(self, message: str, sample: int, reason: str | None = None):
        super().__init__(message)
        self.sample = sample
        self.reason = reason


class ConvergenceError(PyMixedError):
    """
    A stored or computed optimum failed verification.

    Raised when restoring an optimizer summary whose re-evaluated
    deviance does not reproduce the stored value, and by the optimizer
    when the objective fails at every trial point.

    Attributes:
        iterations: Number of evaluations recorded
        final_change: Discrepancy between stored and recomputed objective
        reason: Why verification failed
        threshold: The tolerance that was not met
    """

    def __init__(
        self,
        message: str,
        iterations: int,
        final_change: float | None = None,
        reason: str | None = None,
        threshold: float | None = None
    ):
        super().__init__(message)
        self.iterations = iterations
        self.final_change = final_change
        self.reason = reason
        self.threshold = threshold


class MaxEvaluationsExceeded(RuntimeWarning):
    """
    The optimizer used up its evaluation budget.

    A warning, not a failure: the best θ found so far is returned together
    with status MAX_EVALUATIONS_EXCEEDED.
    """
    pass
