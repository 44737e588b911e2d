"""
Exception types raised by the PRS scan.

Fatal errors propagate out of the pipeline; recoverable ones are caught by the
pipeline at phenotype, region or row level and logged.
"""


class PRScanError(Exception):
    """Base class for all prscan errors"""


class CategoryOverflowError(PRScanError):
    """A p-value is too far above its interval start to be binned."""


class NoThresholdError(PRScanError):
    """No variant falls inside any p-value threshold."""


class PhenotypeError(PRScanError):
    """Phenotype or covariate data cannot be used for this trait."""


class RegressionConvergenceError(PRScanError):
    """Logistic regression failed to converge for one threshold."""


class NoValidPRSError(PRScanError):
    """No threshold produced a usable regression result."""


class PermutationMemoryError(PRScanError):
    """Not enough memory for even a single permutation worker."""
