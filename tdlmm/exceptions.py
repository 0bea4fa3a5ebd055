class TDLMMError(Exception):
    """Base class for errors raised by the sampler."""


class NonPositiveDefiniteError(TDLMMError, ArithmeticError):
    """A posterior precision (or covariance) matrix could not be Cholesky factored."""

    def __init__(self, what: str, dim: int):
        super().__init__(f"{what} of dimension {dim} is not positive definite.")
        self.what = what
        self.dim = dim


class ShrinkageDegeneracyError(TDLMMError, ArithmeticError):
    """A half-Cauchy full conditional produced a non-finite or non-positive variance."""

    def __init__(self, name: str, a: float, b: float, value=None):
        super().__init__(
            f"Degenerate draw for shrinkage scale '{name}' (a={a}, b={b}, value={value})."
        )
        self.name = name
        self.a = a
        self.b = b
        self.value = value


class SamplerError(TDLMMError):
    """Fatal error during a sweep, annotated with where it happened."""

    def __init__(self, iteration: int, tree=None, cause: Exception = None):
        where = f"iteration {iteration}"
        if tree is not None:
            where += f", tree pair {tree}"
        super().__init__(f"Sampling failed at {where}: {cause}")
        self.iteration = iteration
        self.tree = tree
        self.cause = cause


class SamplingInterrupted(TDLMMError):
    """Raised when the interrupt callback requests that the run stop."""

    def __init__(self, iteration: int):
        super().__init__(f"Sampling interrupted before iteration {iteration}.")
        self.iteration = iteration
