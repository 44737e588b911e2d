"""
Regression of the phenotype on the polygenic score.

Every design matrix has the intercept in column 0 and the score in column 1,
followed by covariates. All results describe the column 1 coefficient.

- Continuous traits: least squares through a column-pivoted QR decomposition,
  which stays usable when covariates are collinear.
- Binary traits: logistic regression fitted by IRLS (statsmodels GLM).
  Failure to converge raises RegressionConvergenceError so the caller can
  flag the threshold instead of aborting the scan.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np
import statsmodels.api as sm
from scipy import linalg, stats
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from ..utils.errors import RegressionConvergenceError

SCORE_COLUMN = 1
LOGISTIC_MAX_ITER = 25
SEPARATION_TOL = 1e-8


@dataclass
class RegressionResult:
    coefficient: float
    standard_error: float
    p_value: float
    r2: float
    r2_adjusted: float

    @property
    def t_value(self) -> float:
        if self.standard_error == 0 or not np.isfinite(self.standard_error):
            return 0.0
        return abs(self.coefficient / self.standard_error)


def _pivoted_qr(X: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray, int]:
    """Economic pivoted QR with rank detection.

    A pivot counts towards the rank when its magnitude exceeds
    ``eps * max(n, p)`` times the largest pivot, the tolerance
    numpy.linalg.matrix_rank uses for singular values.
    """
    Q, R, piv = linalg.qr(X, mode='economic', pivoting=True)
    diag = np.abs(np.diag(R))
    if diag.size == 0 or diag[0] == 0:
        return Q, R, piv, 0
    threshold = np.finfo(np.float64).eps * max(X.shape)
    rank = int(np.sum(diag > threshold * diag[0]))
    return Q, R, piv, rank


class PrefactorizedDesign:
    """A design matrix factorized once and solved for many responses.

    Used when only the response changes between fits, e.g. permuted
    phenotypes against a fixed score and covariates, or null scores against
    a fixed phenotype and covariates.
    """

    def __init__(self, X: np.ndarray, target_column: int = SCORE_COLUMN):
        X = np.asarray(X, dtype=np.float64)
        self.n_obs, self.n_col = X.shape
        Q, R, piv, rank = _pivoted_qr(X)
        self.rank = rank
        self.df = self.n_obs - rank
        self.Q = np.ascontiguousarray(Q[:, :rank])
        if rank:
            self.R_inv = linalg.solve_triangular(R[:rank, :rank], np.eye(rank))
        else:
            self.R_inv = np.zeros((0, 0))
        self.pivot = piv
        # Unscaled standard errors: row norms of R^-1
        self.se_unscaled = np.sqrt(np.sum(self.R_inv ** 2, axis=1))
        kept = np.flatnonzero(piv[:rank] == target_column)
        self.target = int(kept[0]) if kept.size else None

    def coefficients(self, y: np.ndarray) -> np.ndarray:
        """Full coefficient vector; columns dropped for rank are NaN."""
        beta = np.full(self.n_col, np.nan)
        beta[self.pivot[:self.rank]] = self.R_inv @ (self.Q.T @ y)
        return beta

    def t_values(self, Y: np.ndarray) -> np.ndarray:
        """|coef / se| of the target column for each response column of ``Y``."""
        Y = np.asarray(Y, dtype=np.float64)
        single = Y.ndim == 1
        if single:
            Y = Y[:, np.newaxis]
        if self.target is None or self.df <= 0:
            out = np.zeros(Y.shape[1])
            return out[0] if single else out
        QtY = self.Q.T @ Y
        beta = self.R_inv[self.target] @ QtY
        resid = Y - self.Q @ QtY
        sigma = np.sqrt(np.sum(resid ** 2, axis=0) / self.df)
        se = sigma * self.se_unscaled[self.target]
        with np.errstate(divide='ignore', invalid='ignore'):
            t = np.where(se > 0, np.abs(beta / se), 0.0)
        return float(t[0]) if single else t

    def t_value(self, y: np.ndarray) -> float:
        return float(self.t_values(y))


def fit_linear(y: np.ndarray, X: np.ndarray) -> RegressionResult:
    """Ordinary least squares for the score column.

    Args:
        y: Response (n,)
        X: Design matrix (n x p), intercept first and score second

    Returns:
        RegressionResult; coefficient, SE and p-value are NaN when the score
        column was dropped as collinear.
    """
    y = np.asarray(y, dtype=np.float64)
    design = PrefactorizedDesign(X)
    QtY = design.Q.T @ y
    fitted = design.Q @ QtY
    rss = float(np.sum((y - fitted) ** 2))
    tss = float(np.sum((y - y.mean()) ** 2))
    r2 = 1.0 - rss / tss if tss > 0 else 0.0
    n = len(y)
    df = design.df
    r2_adjusted = 1.0 - (1.0 - r2) * (n - 1) / df if df > 0 else np.nan

    if design.target is None or df <= 0:
        return RegressionResult(np.nan, np.nan, np.nan, r2, r2_adjusted)

    coefficient = float(design.R_inv[design.target] @ QtY)
    sigma = np.sqrt(rss / df)
    se = float(sigma * design.se_unscaled[design.target])
    if se > 0:
        p_value = float(2.0 * stats.t.sf(abs(coefficient / se), df))
    else:
        p_value = np.nan
    return RegressionResult(coefficient, se, p_value, r2, r2_adjusted)


def fit_logistic(y: np.ndarray, X: np.ndarray,
                 max_iter: int = LOGISTIC_MAX_ITER) -> RegressionResult:
    """Logistic regression by IRLS with a Wald test for the score column.

    R2 is Nagelkerke's pseudo R2.

    Raises:
        RegressionConvergenceError: IRLS did not converge, the data are
            perfectly separated, or the fit is numerically singular.
    """
    y = np.asarray(y, dtype=np.float64)
    try:
        result = sm.GLM(y, X, family=sm.families.Binomial()).fit(maxiter=max_iter)
    except (PerfectSeparationError, np.linalg.LinAlgError, ValueError) as exc:
        raise RegressionConvergenceError(f"Logistic regression failed: {exc}") from exc
    if not result.converged:
        raise RegressionConvergenceError(
            f"Logistic regression did not converge after {max_iter} iterations")
    # Decided from the fit alone; warning filters are shared by all threads
    mu = np.asarray(result.mu, dtype=np.float64)
    if np.allclose(mu, y) or np.any((mu < SEPARATION_TOL) | (mu > 1.0 - SEPARATION_TOL)):
        raise RegressionConvergenceError(
            "Logistic regression did not converge: perfect or quasi-complete separation")

    n = len(y)
    null_deviance = float(result.null_deviance)
    with np.errstate(over='ignore', invalid='ignore', divide='ignore'):
        r2_cox_snell = 1.0 - np.exp((result.deviance - null_deviance) / n)
        r2_max = 1.0 - np.exp(-null_deviance / n)
        r2 = float(r2_cox_snell / r2_max) if r2_max > 0 else 0.0
    coefficient = float(result.params[SCORE_COLUMN])
    se = float(result.bse[SCORE_COLUMN])
    p_value = float(result.pvalues[SCORE_COLUMN])
    if not np.all(np.isfinite([coefficient, se, p_value])):
        raise RegressionConvergenceError("Logistic regression produced non-finite estimates")
    return RegressionResult(coefficient, se, p_value, r2, r2)


def PRSCAN_Regress(y: np.ndarray, X: np.ndarray, is_binary: bool) -> RegressionResult:
    """Regress ``y`` on design ``X`` with the model that suits the trait."""
    if is_binary:
        return fit_logistic(y, X)
    return fit_linear(y, X)


def null_model_r2(y: np.ndarray, X: np.ndarray, is_binary: bool) -> float:
    """R2 of the covariate-only model (score column removed).

    Returns 0 when there are no covariates.
    """
    if X.shape[1] <= 2:
        return 0.0
    keep = [c for c in range(X.shape[1]) if c != SCORE_COLUMN]
    null_design = X[:, keep]
    if is_binary:
        return fit_logistic(y, null_design).r2
    return fit_linear(y, null_design).r2

